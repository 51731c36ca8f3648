"""
Delivery models deciding which messages survive a round.

Each model filters one sender's outbound batch. The per-process model map
assigns a model to every sender; processes without an override use the
global model, or StandardModel if none was declared.
"""

from abc import ABC, abstractmethod

import numpy as np

from ..dsl.ir import ChannelGuarantee, DeliveryModelSpec, DeliveryModelType
from .messages import Message


class DeliveryModel(ABC):
    """Abstract base class for delivery models."""

    model_type: DeliveryModelType

    @abstractmethod
    def sample(self, p: float, count: int, rng: np.random.Generator) -> np.ndarray:
        """Decide delivery for one sender's batch of messages.

        Args:
            p: Delivery probability.
            count: Number of messages in the batch.
            rng: NumPy random number generator for reproducibility.

        Returns:
            Boolean array of length `count`.
        """
        pass

    def apply(self, p: float, num_processes: int, rng: np.random.Generator) -> list[bool]:
        """Decide delivery for every directed slot i -> j, i != j.

        Slots are enumerated sender-major, matching `broadcast_all`.
        """
        delivered: list[bool] = []
        for _ in range(num_processes):
            delivered.extend(bool(d) for d in self.sample(p, num_processes - 1, rng))
        return delivered


class StandardModel(DeliveryModel):
    """Every message is delivered independently with probability p."""

    model_type = DeliveryModelType.STANDARD

    def sample(self, p: float, count: int, rng: np.random.Generator) -> np.ndarray:
        return rng.random(count) < p

    def __repr__(self) -> str:
        return "StandardModel()"


class GuaranteedModel(DeliveryModel):
    """Standard delivery plus a minimum-message constraint.

    The constraint is not enforced while delivering. Runs that violate it are
    rejected by the Monte Carlo aggregator.

    Args:
        min_messages: Required number of delivered messages.
        scope: "per_round" (every round) or "total" (whole run).
    """

    model_type = DeliveryModelType.GUARANTEED

    def __init__(self, min_messages: int, scope: str = "per_round"):
        if min_messages < 0:
            raise ValueError(f"min_messages must be non-negative, got {min_messages}")
        if scope not in ("per_round", "total"):
            raise ValueError(f"scope must be 'per_round' or 'total', got {scope!r}")
        self.min_messages = min_messages
        self.scope = scope

    def sample(self, p: float, count: int, rng: np.random.Generator) -> np.ndarray:
        return rng.random(count) < p

    def is_satisfied(self, messages_per_round: list[int], total_messages: int) -> bool:
        """Check a finished run against the constraint."""
        if self.scope == "per_round":
            return all(m >= self.min_messages for m in messages_per_round)
        return total_messages >= self.min_messages

    def __repr__(self) -> str:
        return f"GuaranteedModel(min_messages={self.min_messages}, scope={self.scope!r})"


class BroadcastModel(DeliveryModel):
    """One draw per sender decides all of that sender's messages.

    Args:
        probability: "per_source" or "uniform". Both draw once per sender per
            round with the channel probability; the mode is kept only for
            reporting (it shows in repr and in the parsed model list).
    """

    model_type = DeliveryModelType.BROADCAST

    def __init__(self, probability: str = "per_source"):
        if probability not in ("per_source", "uniform"):
            raise ValueError(f"probability must be 'per_source' or 'uniform', got {probability!r}")
        self.probability = probability

    def sample(self, p: float, count: int, rng: np.random.Generator) -> np.ndarray:
        if count == 0:
            return np.zeros(0, dtype=bool)
        return np.full(count, rng.random() < p, dtype=bool)

    def __repr__(self) -> str:
        return f"BroadcastModel(probability={self.probability!r})"


def build_delivery_model(spec: DeliveryModelSpec) -> DeliveryModel:
    """Instantiate the model described by a spec."""
    if spec.model_type == DeliveryModelType.STANDARD:
        return StandardModel()
    if spec.model_type == DeliveryModelType.GUARANTEED:
        return GuaranteedModel(
            int(spec.params.get("min_messages", 1)),
            spec.params.get("scope", "per_round"),
        )
    if spec.model_type == DeliveryModelType.BROADCAST:
        return BroadcastModel(spec.params.get("probability", "per_source"))
    raise ValueError(f"Unknown delivery model type: {spec.model_type}")


def build_delivery_model_map(
    specs: tuple[DeliveryModelSpec, ...] | list[DeliveryModelSpec],
    num_processes: int,
) -> dict[int, DeliveryModel]:
    """Assign a delivery model to every process.

    Returns:
        Mapping from 1-based process id to its model.
    """
    global_specs = [s for s in specs if s.process_id is None]
    global_model = build_delivery_model(global_specs[0]) if global_specs else StandardModel()
    overrides = {s.process_id: build_delivery_model(s) for s in specs if s.process_id is not None}
    return {pid: overrides.get(pid, global_model) for pid in range(1, num_processes + 1)}


def guaranteed_models(model_map: dict[int, DeliveryModel]) -> list[GuaranteedModel]:
    """Distinct guaranteed models present in a model map."""
    found: list[GuaranteedModel] = []
    for model in model_map.values():
        if isinstance(model, GuaranteedModel) and all(model is not m for m in found):
            found.append(model)
    return found


def satisfies_guarantees(
    models: list[GuaranteedModel],
    messages_per_round: list[int],
    total_messages: int,
) -> bool:
    """Whether a run meets every guaranteed model's constraint."""
    return all(m.is_satisfied(messages_per_round, total_messages) for m in models)


def deliver(
    outbound: list[Message],
    model_map: dict[int, DeliveryModel],
    p: float,
    rng: np.random.Generator,
) -> tuple[list[Message], list[Message]]:
    """Filter outbound messages through each sender's delivery model.

    Messages are grouped by sender in ascending sender order, keeping their
    original order within a batch, so draws follow the canonical slot order.

    Returns:
        (delivered, undelivered) message lists.
    """
    batches: dict[int, list[Message]] = {}
    for message in outbound:
        batches.setdefault(message.sender, []).append(message)

    delivered: list[Message] = []
    undelivered: list[Message] = []
    for sender in sorted(batches):
        batch = batches[sender]
        mask = model_map.get(sender, StandardModel()).sample(p, len(batch), rng)
        for message, ok in zip(batch, mask):
            (delivered if ok else undelivered).append(message)
    return delivered, undelivered


def enforce_channel_guarantee(
    guarantee: ChannelGuarantee,
    inboxes: dict[int, list[Message]],
    undelivered: list[Message],
    num_processes: int,
) -> None:
    """Top up inboxes from undelivered messages to meet a CHANNEL guarantee.

    Receivers are visited in id order and messages are taken in canonical
    order. Mutates `inboxes` and `undelivered` in place.
    """
    if guarantee == ChannelGuarantee.NONE:
        return
    if guarantee == ChannelGuarantee.AT_LEAST_ONE:
        need = 1
    elif guarantee == ChannelGuarantee.MAJORITY:
        need = num_processes // 2 + 1
    else:
        raise ValueError(f"Unknown channel guarantee: {guarantee}")

    for node in range(1, num_processes + 1):
        inbox = inboxes.setdefault(node, [])
        while len(inbox) < need:
            idx = next((i for i, m in enumerate(undelivered) if m.receiver == node), None)
            if idx is None:
                break
            inbox.append(undelivered.pop(idx))
