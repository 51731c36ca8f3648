"""
Per-run metrics: discrepancy, consensus and the run summary record.
"""

from dataclasses import dataclass
from typing import Iterable

DEFAULT_CONSENSUS_EPS = 1e-6


def discrepancy(values: Iterable[float]) -> float:
    """max(x) - min(x) over all process values; 0.0 for no values."""
    vals = list(values)
    if not vals:
        return 0.0
    return float(max(vals) - min(vals))


def is_consensus(values: Iterable[float], eps: float = DEFAULT_CONSENSUS_EPS) -> bool:
    """Whether the discrepancy is within eps."""
    return discrepancy(values) <= eps


@dataclass(frozen=True)
class RunSummary:
    """Outcome of a single simulation run.

    Attributes:
        discrepancy_final: Discrepancy after the last round (or END phase).
        consensus_final: Whether consensus held at the end.
        discrepancy_by_round: Discrepancy at round 0..rounds, plus one entry
            for the END phase if the protocol has one.
        total_messages_delivered: Messages delivered over all rounds.
        messages_per_round: Messages delivered in each round.
        final_values: Committed x of every process at the end.
    """

    discrepancy_final: float
    consensus_final: bool
    discrepancy_by_round: tuple[float, ...]
    total_messages_delivered: int
    messages_per_round: tuple[int, ...]
    final_values: tuple[float, ...] = ()
