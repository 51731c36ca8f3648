"""
Optional per-round tracing.

A trace sink is passed explicitly into a run; the engine calls it once per
round (and once for the END phase) with a RoundTrace record. The helpers at
the bottom of the module work on the list of records of a single run.
"""

import csv
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Sequence

import structlog

from .metrics import discrepancy

logger = structlog.get_logger(system="trace")

# A discrepancy rise above this factor between consecutive rounds is reported.
DISCREPANCY_RISE_FACTOR = 1.01
LOW_DELIVERY_RATE = 0.5

EXPORT_FIELDS = [
    "round",
    "process",
    "state_before",
    "committed",
    "received",
    "received_diff",
    "discrepancy",
    "consensus",
    "end_phase",
]


@dataclass(frozen=True)
class RoundTrace:
    """What happened in one round of one run.

    Attributes:
        round: 1-based round index; rounds + 1 for the END phase.
        state_before: x of every process before the round.
        inboxes: Delivered (sender, value) pairs per receiver id.
        committed: x of every process after the round.
        discrepancy: Discrepancy after commit.
        consensus: Whether consensus holds after commit.
        diff_flags: Per process, whether a differing value was received.
        messages_delivered: Messages delivered this round.
        is_end_phase: True for the END phase record.
    """

    round: int
    state_before: tuple[float, ...]
    inboxes: dict = field(default_factory=dict)
    committed: tuple[float, ...] = ()
    discrepancy: float = 0.0
    consensus: bool = False
    diff_flags: dict = field(default_factory=dict)
    messages_delivered: int = 0
    is_end_phase: bool = False


class TraceSink(ABC):
    """Receives round traces from the engine."""

    @abstractmethod
    def record(self, trace: RoundTrace) -> None:
        pass


class ListTraceSink(TraceSink):
    """Collects traces in memory, tagged with the run's seed."""

    def __init__(self):
        self.traces: list[tuple[int | None, RoundTrace]] = []
        self.current_seed: int | None = None

    def record(self, trace: RoundTrace) -> None:
        self.traces.append((self.current_seed, trace))

    def rounds(self) -> list[RoundTrace]:
        return [t for _, t in self.traces]

    def runs(self) -> dict[int | None, list[RoundTrace]]:
        """Records grouped by seed, in the order the runs were traced."""
        grouped: dict[int | None, list[RoundTrace]] = {}
        for seed, trace in self.traces:
            grouped.setdefault(seed, []).append(trace)
        return grouped

    def __len__(self) -> int:
        return len(self.traces)


class LoggingTraceSink(TraceSink):
    """Emits each round as a structlog debug event."""

    def __init__(self, level: str = "debug"):
        self.level = level

    def record(self, trace: RoundTrace) -> None:
        log = getattr(logger, self.level)
        log(
            "round_trace",
            round=trace.round,
            end_phase=trace.is_end_phase,
            state_before=list(trace.state_before),
            inboxes={k: list(v) for k, v in trace.inboxes.items()},
            committed=list(trace.committed),
            discrepancy=trace.discrepancy,
            consensus=trace.consensus,
            diff_flags=trace.diff_flags,
            messages_delivered=trace.messages_delivered,
        )


# =============================================================================
# Inspecting a traced run
# =============================================================================


@dataclass(frozen=True)
class TraceSummary:
    """High-level view of one traced run."""

    num_processes: int
    rounds_executed: int
    has_end_phase: bool
    messages_delivered: int
    messages_possible: int
    initial_discrepancy: float
    final_discrepancy: float
    consensus_round: int | None

    @property
    def delivery_rate(self) -> float:
        if self.messages_possible == 0:
            return float("nan")
        return self.messages_delivered / self.messages_possible

    def __str__(self) -> str:
        reached = f"round {self.consensus_round}" if self.consensus_round is not None else "no"
        return (
            f"Processes: {self.num_processes}\n"
            f"Rounds executed: {self.rounds_executed}"
            f"{' (+ END phase)' if self.has_end_phase else ''}\n"
            f"Messages: {self.messages_delivered} of {self.messages_possible} delivered "
            f"({100 * self.delivery_rate:.1f}%)\n"
            f"Initial discrepancy: {self.initial_discrepancy:.6f}\n"
            f"Final discrepancy: {self.final_discrepancy:.6f}\n"
            f"Consensus reached: {reached}"
        )


def state_history(traces: Sequence[RoundTrace]) -> list[tuple[float, ...]]:
    """States of a run: the state before the first record, then each commit."""
    if not traces:
        return []
    return [tuple(traces[0].state_before)] + [tuple(t.committed) for t in traces]


def trace_summary(traces: Sequence[RoundTrace]) -> TraceSummary:
    """Summarize the records of one run.

    Possible messages count the full flood, N * (N - 1) per regular round,
    before topology or fault filtering.

    Raises:
        ValueError: If there are no records.
    """
    if not traces:
        raise ValueError("trace_summary needs at least one round record")
    n = len(traces[0].state_before)
    regular = [t for t in traces if not t.is_end_phase]
    consensus_round = next((t.round for t in regular if t.consensus), None)
    return TraceSummary(
        num_processes=n,
        rounds_executed=len(regular),
        has_end_phase=len(regular) != len(traces),
        messages_delivered=sum(t.messages_delivered for t in regular),
        messages_possible=len(regular) * n * (n - 1),
        initial_discrepancy=discrepancy(traces[0].state_before),
        final_discrepancy=traces[-1].discrepancy,
        consensus_round=consensus_round,
    )


def detect_anomalies(traces: Sequence[RoundTrace]) -> list[str]:
    """Report unexpected behaviour in the records of one run.

    Checks for processes that never receive a message, rounds where the
    discrepancy rises, a delivery rate below 50%, and processes whose value
    never changes. A run already at consensus is not reported for the last.
    """
    if not traces:
        return []
    anomalies = []
    n = len(traces[0].state_before)
    regular = [t for t in traces if not t.is_end_phase]

    for pid in range(1, n + 1):
        if not any(t.inboxes.get(pid) for t in regular):
            anomalies.append(f"Process {pid} never received any messages")

    for prev, cur in zip(traces, traces[1:]):
        if cur.discrepancy > prev.discrepancy * DISCREPANCY_RISE_FACTOR:
            anomalies.append(f"Discrepancy increased at round {cur.round}")

    summary = trace_summary(traces)
    if summary.messages_possible and summary.delivery_rate < LOW_DELIVERY_RATE:
        anomalies.append(f"Low delivery rate: {100 * summary.delivery_rate:.1f}%")

    if summary.initial_discrepancy > 0.0:
        for pid in range(1, n + 1):
            if all(t.committed[pid - 1] == t.state_before[pid - 1] for t in traces):
                anomalies.append(f"Process {pid} never updated its state")

    return anomalies


def filter_trace(
    traces: Sequence[RoundTrace],
    process: int | None = None,
    round: int | None = None,
) -> list[RoundTrace]:
    """Keep only one round, or only the messages touching one process.

    Filtering by process keeps that process's whole inbox and, in every other
    inbox, only the messages it sent. States and discrepancies are unchanged.
    """
    selected = [t for t in traces if round is None or t.round == round]
    if process is None:
        return selected

    filtered = []
    for t in selected:
        inboxes = {
            receiver: tuple(inbox) if receiver == process else tuple(m for m in inbox if m[0] == process)
            for receiver, inbox in t.inboxes.items()
        }
        inboxes = {receiver: inbox for receiver, inbox in inboxes.items() if inbox or receiver == process}
        diff_flags = {pid: flag for pid, flag in t.diff_flags.items() if pid == process}
        filtered.append(replace(t, inboxes=inboxes, diff_flags=diff_flags))
    return filtered


def _export_rows(traces: Sequence[RoundTrace]) -> list[dict]:
    rows = []
    for t in traces:
        for pid in range(1, len(t.state_before) + 1):
            rows.append(
                {
                    "round": t.round,
                    "process": pid,
                    "state_before": t.state_before[pid - 1],
                    "committed": t.committed[pid - 1],
                    "received": len(t.inboxes.get(pid, ())),
                    "received_diff": bool(t.diff_flags.get(pid, False)),
                    "discrepancy": t.discrepancy,
                    "consensus": t.consensus,
                    "end_phase": t.is_end_phase,
                }
            )
    return rows


def export_trace(traces: Sequence[RoundTrace], path: str | Path, format: str = "json") -> Path:
    """Write the records of one run to a file.

    Args:
        traces: Records of one run.
        path: Output file.
        format: "json" writes one object per record, with inboxes as
            [sender, value] pairs; "csv" writes one row per process per round.

    Returns:
        The path written.
    """
    path = Path(path)
    if format == "json":
        records = [
            {
                "round": t.round,
                "end_phase": t.is_end_phase,
                "state_before": list(t.state_before),
                "inboxes": {str(k): [list(m) for m in v] for k, v in t.inboxes.items()},
                "committed": list(t.committed),
                "discrepancy": t.discrepancy,
                "consensus": t.consensus,
                "diff_flags": {str(k): bool(v) for k, v in t.diff_flags.items()},
                "messages_delivered": t.messages_delivered,
            }
            for t in traces
        ]
        with open(path, "w") as f:
            json.dump(records, f, indent=2)
    elif format == "csv":
        with open(path, "w", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=EXPORT_FIELDS)
            writer.writeheader()
            writer.writerows(_export_rows(traces))
    else:
        raise ValueError(f"Unknown export format: {format!r}; use 'json' or 'csv'")
    logger.info("trace_exported", path=str(path), format=format, records=len(traces))
    return path
