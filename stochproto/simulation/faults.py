"""
Fault models applied to outbound messages before delivery.

A fault model may block a (sender, receiver) pair for a round, or rewrite or
suppress individual messages. All randomness is derived from explicit seeds
so runs stay reproducible.
"""

from abc import ABC, abstractmethod
from dataclasses import replace

import numpy as np

from .messages import Message

BYZANTINE_STRATEGIES = ("max_value", "min_value", "random", "opposite", "silent")
CORRUPTION_TYPES = ("flip_bits", "zero", "max", "random")

EXTREME_VALUE = 1e10


class FaultModel(ABC):
    """Abstract base class for fault models."""

    @abstractmethod
    def is_faulty(self, node: int, round_idx: int) -> bool:
        """Whether `node` misbehaves in round `round_idx`."""
        pass

    def can_communicate(self, sender: int, receiver: int, round_idx: int) -> bool:
        return True

    def mutate_or_suppress(self, message: Message, round_idx: int) -> Message | None:
        """Return the message as it will be sent, or None to drop it."""
        return message

    def apply(self, messages: list[Message], round_idx: int) -> list[Message]:
        """Filter and rewrite a round's outbound messages."""
        result = []
        for message in messages:
            if not self.can_communicate(message.sender, message.receiver, round_idx):
                continue
            mutated = self.mutate_or_suppress(message, round_idx)
            if mutated is not None:
                result.append(mutated)
        return result


class NoFaults(FaultModel):
    def is_faulty(self, node: int, round_idx: int) -> bool:
        return False

    def __repr__(self) -> str:
        return "NoFaults()"


class CrashFaults(FaultModel):
    """Processes crash at a given round and stop sending for good.

    Args:
        crash_prob: Probability that each process is one that crashes.
        crash_round: First round in which crashed processes are silent.
        seed: Seed; process i crashes if a draw from seed + i is below crash_prob.
    """

    def __init__(self, crash_prob: float, crash_round: int, seed: int = 0):
        if not 0.0 <= crash_prob <= 1.0:
            raise ValueError(f"crash_prob must be in [0, 1], got {crash_prob}")
        if crash_round < 1:
            raise ValueError(f"crash_round must be positive, got {crash_round}")
        self.crash_prob = crash_prob
        self.crash_round = crash_round
        self.seed = seed

    def crashes(self, node: int) -> bool:
        return np.random.default_rng(self.seed + node).random() < self.crash_prob

    def crashed_nodes(self, n: int) -> set[int]:
        return {node for node in range(1, n + 1) if self.crashes(node)}

    def is_faulty(self, node: int, round_idx: int) -> bool:
        return round_idx >= self.crash_round and self.crashes(node)

    def can_communicate(self, sender: int, receiver: int, round_idx: int) -> bool:
        return not self.is_faulty(sender, round_idx)

    def __repr__(self) -> str:
        return f"CrashFaults(crash_prob={self.crash_prob}, crash_round={self.crash_round})"


class ByzantineFaults(FaultModel):
    """Selected processes lie about their value.

    Strategies:
        max_value: send a huge positive value.
        min_value: send a huge negative value.
        random: send a value drawn uniformly from [-50, 50].
        opposite: send the negated value.
        silent: send nothing.
    """

    def __init__(self, nodes: list[int], strategy: str = "random"):
        if not nodes:
            raise ValueError("ByzantineFaults needs at least one node")
        if any(n < 1 for n in nodes):
            raise ValueError("Node ids must be positive")
        if strategy not in BYZANTINE_STRATEGIES:
            raise ValueError(f"Unknown Byzantine strategy: {strategy!r}")
        self.nodes = frozenset(nodes)
        self.strategy = strategy

    def is_faulty(self, node: int, round_idx: int) -> bool:
        return node in self.nodes

    def mutate_or_suppress(self, message: Message, round_idx: int) -> Message | None:
        if message.sender not in self.nodes:
            return message
        if self.strategy == "silent":
            return None
        if self.strategy == "max_value":
            value = EXTREME_VALUE
        elif self.strategy == "min_value":
            value = -EXTREME_VALUE
        elif self.strategy == "opposite":
            value = -message.payload
        else:
            rng = np.random.default_rng([message.sender, message.receiver, round_idx])
            value = float(rng.uniform(-50.0, 50.0))
        return replace(message, payload=value)

    def __repr__(self) -> str:
        return f"ByzantineFaults(nodes={sorted(self.nodes)}, strategy={self.strategy!r})"


class NetworkPartition(FaultModel):
    """The network splits into groups that cannot reach each other.

    Args:
        partition_round: First round of the partition.
        partition_duration: Rounds the partition lasts; 0 means forever.
        groups: Disjoint groups of process ids.
    """

    def __init__(self, partition_round: int, partition_duration: int, groups: list[list[int]]):
        if partition_round < 1:
            raise ValueError(f"partition_round must be positive, got {partition_round}")
        if partition_duration < 0:
            raise ValueError(f"partition_duration must be non-negative, got {partition_duration}")
        if len(groups) < 2:
            raise ValueError("A partition needs at least 2 groups")
        members = [n for g in groups for n in g]
        if len(members) != len(set(members)):
            raise ValueError("Partition groups must be disjoint")
        self.partition_round = partition_round
        self.partition_duration = partition_duration
        self.groups = [frozenset(g) for g in groups]

    def is_active(self, round_idx: int) -> bool:
        if round_idx < self.partition_round:
            return False
        if self.partition_duration > 0 and round_idx >= self.partition_round + self.partition_duration:
            return False
        return True

    def is_faulty(self, node: int, round_idx: int) -> bool:
        return False

    def can_communicate(self, sender: int, receiver: int, round_idx: int) -> bool:
        if not self.is_active(round_idx):
            return True
        return any(sender in g and receiver in g for g in self.groups)

    def __repr__(self) -> str:
        return (
            f"NetworkPartition(partition_round={self.partition_round}, "
            f"partition_duration={self.partition_duration}, "
            f"groups={[sorted(g) for g in self.groups]})"
        )


class MessageCorruption(FaultModel):
    """Each message is corrupted independently with a fixed probability.

    Corruption types:
        flip_bits: send 1 - value (flips binary values).
        zero: send 0.
        max: send a huge positive value.
        random: send a value drawn uniformly from [-50, 50].
    """

    def __init__(self, corruption_prob: float, corruption_type: str = "random", seed: int = 0):
        if not 0.0 <= corruption_prob <= 1.0:
            raise ValueError(f"corruption_prob must be in [0, 1], got {corruption_prob}")
        if corruption_type not in CORRUPTION_TYPES:
            raise ValueError(f"Unknown corruption type: {corruption_type!r}")
        self.corruption_prob = corruption_prob
        self.corruption_type = corruption_type
        self.seed = seed

    def is_faulty(self, node: int, round_idx: int) -> bool:
        return False

    def mutate_or_suppress(self, message: Message, round_idx: int) -> Message | None:
        rng = np.random.default_rng([self.seed, message.sender, message.receiver, round_idx])
        if rng.random() >= self.corruption_prob:
            return message
        if self.corruption_type == "flip_bits":
            value = 1.0 - message.payload
        elif self.corruption_type == "zero":
            value = 0.0
        elif self.corruption_type == "max":
            value = EXTREME_VALUE
        else:
            value = float(rng.uniform(-50.0, 50.0))
        return replace(message, payload=value)

    def __repr__(self) -> str:
        return f"MessageCorruption(corruption_prob={self.corruption_prob}, corruption_type={self.corruption_type!r})"


class CompositeFaults(FaultModel):
    """Several fault models applied together, in order."""

    def __init__(self, models: list[FaultModel]):
        if not models:
            raise ValueError("CompositeFaults needs at least one model")
        self.models = list(models)

    def is_faulty(self, node: int, round_idx: int) -> bool:
        return any(m.is_faulty(node, round_idx) for m in self.models)

    def can_communicate(self, sender: int, receiver: int, round_idx: int) -> bool:
        return all(m.can_communicate(sender, receiver, round_idx) for m in self.models)

    def mutate_or_suppress(self, message: Message, round_idx: int) -> Message | None:
        for model in self.models:
            message = model.mutate_or_suppress(message, round_idx)
            if message is None:
                return None
        return message

    def __repr__(self) -> str:
        return f"CompositeFaults({self.models!r})"
