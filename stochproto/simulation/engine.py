"""
Synchronous round engine.

One run proceeds as

    initialize -> {deliver -> update all -> commit -> record} x rounds -> [END] -> finalize

Every process computes its provisional value from the pre-round snapshot and
its own inbox; the values are committed together only after all processes
have been evaluated. After the commit each process floods its new value to
every other process, and those messages are delivered in the next round.
"""

import numpy as np

from ..dsl.compiler import ExperimentSpec
from .delivery import build_delivery_model_map, deliver, enforce_channel_guarantee
from .messages import Message, broadcast_all
from .metrics import DEFAULT_CONSENSUS_EPS, RunSummary, discrepancy, is_consensus
from .tracing import RoundTrace, TraceSink


class RoundSimulator:
    """Executes one run of a compiled protocol.

    The simulator owns a private NumPy generator; every delivery decision is
    drawn from it, so the same seed reproduces the same run exactly.
    """

    def __init__(
        self,
        spec: ExperimentSpec,
        seed: int | None = None,
        consensus_eps: float = DEFAULT_CONSENSUS_EPS,
        trace_sink: TraceSink | None = None,
    ):
        """Initialize the simulator.

        Args:
            spec: Compiled experiment.
            seed: Random seed for reproducibility.
            consensus_eps: Discrepancy threshold for consensus.
            trace_sink: Optional receiver of per-round traces.
        """
        self.spec = spec
        self.seed = seed
        self.consensus_eps = consensus_eps
        self.trace_sink = trace_sink

        self.rng = np.random.default_rng(seed)
        self.n = spec.num_processes
        self.model_map = build_delivery_model_map(spec.delivery_models, self.n)
        self._neighbors = (
            {i: spec.topology.neighbors(i, self.n) for i in range(1, self.n + 1)}
            if spec.topology is not None
            else None
        )

    def _prefilter(self, outbound: list[Message], round_idx: int) -> list[Message]:
        """Apply topology and faults before the delivery models see the queue."""
        if self._neighbors is not None:
            outbound = [m for m in outbound if m.receiver in self._neighbors[m.sender]]
        if self.spec.faults is not None:
            outbound = self.spec.faults.apply(outbound, round_idx)
        return outbound

    def _deliver(self, outbound: list[Message], round_idx: int) -> tuple[dict[int, tuple], int]:
        """Deliver a round's queue into per-process inboxes.

        Returns:
            Inboxes as (sender, value) tuples per receiver, and the number of
            messages delivered.
        """
        queue = self._prefilter(outbound, round_idx)
        delivered, undelivered = deliver(queue, self.model_map, self.spec.p, self.rng)

        inboxes: dict[int, list[Message]] = {i: [] for i in range(1, self.n + 1)}
        for message in delivered:
            inboxes[message.receiver].append(message)
        enforce_channel_guarantee(self.spec.channel_guarantee, inboxes, undelivered, self.n)

        count = sum(len(msgs) for msgs in inboxes.values())
        packed = {i: tuple((m.sender, m.payload) for m in msgs) for i, msgs in inboxes.items()}
        return packed, count

    def _record(
        self,
        round_idx: int,
        before: tuple[float, ...],
        inboxes: dict[int, tuple],
        committed: list[float],
        delivered: int,
        is_end_phase: bool = False,
    ) -> None:
        if self.trace_sink is None:
            return
        self.trace_sink.record(
            RoundTrace(
                round=round_idx,
                state_before=before,
                inboxes=inboxes,
                committed=tuple(committed),
                discrepancy=discrepancy(committed),
                consensus=is_consensus(committed, self.consensus_eps),
                diff_flags={
                    i: any(v != before[i - 1] for _, v in inbox) for i, inbox in inboxes.items()
                },
                messages_delivered=delivered,
                is_end_phase=is_end_phase,
            )
        )

    def run(self) -> RunSummary:
        """Run all rounds and the END phase, if any."""
        protocol = self.spec.protocol
        values = [float(self.spec.init_state(i)) for i in range(1, self.n + 1)]

        # Initial broadcast so round 1 has something to react to.
        outbound = broadcast_all(values)
        inboxes: dict[int, tuple] = {i: () for i in range(1, self.n + 1)}

        trace = [discrepancy(values)]
        messages_per_round: list[int] = []

        for round_idx in range(1, self.spec.rounds + 1):
            inboxes, delivered = self._deliver(outbound, round_idx)
            messages_per_round.append(delivered)

            snapshot = tuple(values)
            consensus_now = is_consensus(snapshot, self.consensus_eps)
            provisional = [
                protocol.apply(i, snapshot, inboxes[i], round_idx, consensus_now)
                for i in range(1, self.n + 1)
            ]

            values = provisional
            outbound = broadcast_all(values)
            trace.append(discrepancy(values))
            self._record(round_idx, snapshot, inboxes, values, delivered)

        if protocol.has_end_phase:
            snapshot = tuple(values)
            values = [protocol.apply_end(i, snapshot, inboxes[i]) for i in range(1, self.n + 1)]
            trace.append(discrepancy(values))
            self._record(self.spec.rounds + 1, snapshot, inboxes, values, 0, is_end_phase=True)

        return RunSummary(
            discrepancy_final=trace[-1],
            consensus_final=is_consensus(values, self.consensus_eps),
            discrepancy_by_round=tuple(trace),
            total_messages_delivered=sum(messages_per_round),
            messages_per_round=tuple(messages_per_round),
            final_values=tuple(values),
        )


def run_experiment(
    spec: ExperimentSpec,
    seed: int | None = 1,
    consensus_eps: float = DEFAULT_CONSENSUS_EPS,
    trace_sink: TraceSink | None = None,
) -> RunSummary:
    """Run a single simulation of a compiled experiment."""
    return RoundSimulator(spec, seed=seed, consensus_eps=consensus_eps, trace_sink=trace_sink).run()
