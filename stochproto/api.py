"""
Public entry points: run a protocol over a p sweep, and study two side by side.

Errors raised inside these functions reach the caller as a single
ProtocolError unless debug=True, in which case the original exception
propagates with full detail.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import structlog

from .dsl.parser import parse_protocol, parse_protocol_file
from .errors import wrap_errors
from .monte_carlo import MonteCarloConfig, MonteCarloResult, run_sweep
from .simulation.metrics import DEFAULT_CONSENSUS_EPS
from .simulation.tracing import TraceSink

logger = structlog.get_logger(system="api")

DEFAULT_P_VALUES = tuple(float(p) for p in np.round(np.linspace(0.0, 1.0, 21), 10))


class ProtocolRun(Sequence):
    """Results of one protocol over a p sweep.

    Behaves like a sequence of MonteCarloResult in p order.
    """

    def __init__(
        self,
        name: str,
        num_processes: int,
        rounds: int,
        repetitions: int,
        p_values: list[float],
        consensus_eps: float,
        results: list[MonteCarloResult],
    ):
        self.name = name
        self.num_processes = num_processes
        self.rounds = rounds
        self.repetitions = repetitions
        self.p_values = list(p_values)
        self.consensus_eps = consensus_eps
        self.results = list(results)

    def __getitem__(self, index):
        return self.results[index]

    def __len__(self) -> int:
        return len(self.results)

    def summary(self) -> str:
        """Short textual summary of the sweep."""
        if not self.results:
            return f"No Monte Carlo results available for {self.name}."
        ps = self.p_values
        consensus = [r.consensus_probability for r in self.results]
        best = max(consensus)
        best_idx = len(consensus) - 1 - consensus[::-1].index(best)
        worst_idx = int(np.argmin(consensus))
        discrepancies = [r.mean_discrepancy for r in self.results]
        step = ps[1] - ps[0] if len(ps) > 1 else 0.0
        return "\n".join(
            [
                f"Protocol: {self.name} | processes={self.num_processes} rounds={self.rounds} "
                f"reps={self.repetitions} eps={self.consensus_eps}",
                f"p span: {min(ps)}..{max(ps)} step~{step:.4g}",
                f"Consensus peaks at p={ps[best_idx]}: {consensus[best_idx]:.3f}",
                f"Lowest consensus at p={ps[worst_idx]}: {consensus[worst_idx]:.3f}",
                f"Discrepancy min={min(discrepancies):.3f} max={max(discrepancies):.3f}",
            ]
        )

    def table(self) -> list[dict]:
        """One row per p value."""
        return [
            {
                "p": r.p,
                "mean_discrepancy": r.mean_discrepancy,
                "var_discrepancy": r.var_discrepancy,
                "consensus_probability": r.consensus_probability,
                "repetitions": r.repetitions,
                "attempts": r.attempts,
            }
            for r in self.results
        ]

    def __repr__(self) -> str:
        return f"ProtocolRun(name={self.name!r}, n_p={len(self.results)}, repetitions={self.repetitions})"


def _is_file_path(source) -> bool:
    if isinstance(source, Path):
        return True
    if "\n" in source:
        return False
    try:
        return Path(source).is_file()
    except OSError:
        return False


def load_protocol(source: str | Path):
    """Parse protocol text, or the file it names, into a ProtocolIR."""
    if _is_file_path(source):
        return parse_protocol_file(source)
    return parse_protocol(source)


def run_protocol(
    source,
    p_values=DEFAULT_P_VALUES,
    rounds: int = 1,
    repetitions: int = 2000,
    seed: int | None = None,
    consensus_eps: float = DEFAULT_CONSENSUS_EPS,
    debug: bool = False,
    topology=None,
    faults=None,
    trace_sink: TraceSink | None = None,
    trace_limit: int = 1,
    parallel_workers: int = 1,
) -> ProtocolRun:
    """Parse a protocol and aggregate it over a sweep of delivery probabilities.

    Args:
        source: Protocol text, a path to a protocol file, or an existing
            ProtocolRun (returned unchanged).
        p_values: Delivery probabilities, in the order results are returned.
        rounds: Synchronous rounds per run.
        repetitions: Valid runs per p value.
        seed: Base seed; the idx-th p value uses seed + idx. A random base
            seed is drawn if None.
        consensus_eps: Consensus threshold on the final discrepancy.
        debug: Re-raise internal errors unchanged instead of as ProtocolError.
        topology: Optional communication topology.
        faults: Optional fault model.
        trace_sink: Optional sink for round traces.
        trace_limit: Number of valid runs per p value to trace.
        parallel_workers: Worker processes for repetitions.

    Returns:
        ProtocolRun with one MonteCarloResult per p value.

    Raises:
        ProtocolError: On any parse, evaluation or configuration error when
            debug is False.
    """
    if isinstance(source, ProtocolRun):
        return source

    with wrap_errors(debug):
        ir = load_protocol(source)
        ps = [float(p) for p in p_values]
        base_seed = int(np.random.default_rng().integers(1, 1_000_000)) if seed is None else seed
        config = MonteCarloConfig(
            repetitions=repetitions,
            base_seed=base_seed,
            consensus_eps=consensus_eps,
            parallel_workers=parallel_workers,
        )
        logger.info("protocol_run_started", protocol=ir.name, n_p=len(ps), rounds=rounds, seed=base_seed)
        results = run_sweep(
            ir,
            ps,
            rounds,
            config,
            topology=topology,
            faults=faults,
            trace_sink=trace_sink,
            trace_limit=trace_limit,
        )
        return ProtocolRun(ir.name, ir.num_processes, rounds, repetitions, ps, consensus_eps, results)


@dataclass
class StudyResult:
    """Two protocols run under identical settings.

    Attributes:
        run_a: Results of the first protocol.
        run_b: Results of the second protocol.
        comparison_summary: Qualitative comparison of consensus probability.
        tables: Row tables keyed by "A", "B" and "combined".
    """

    run_a: ProtocolRun
    run_b: ProtocolRun
    comparison_summary: str
    tables: dict = field(default_factory=dict)

    def summary(self) -> str:
        lines = [
            "Study summary",
            "--------------",
            self.run_a.summary(),
            "",
            self.run_b.summary(),
            "",
            "Comparison:",
            self.comparison_summary,
        ]
        return "\n".join(lines)


def _dominance_message(diffs: list[float], label: str) -> str:
    mean = sum(diffs) / len(diffs)
    if mean > 0:
        return f"For {label}, protocol A has higher consensus on average."
    if mean < 0:
        return f"For {label}, protocol B has higher consensus on average."
    return f"For {label}, no clear dominance."


def build_comparison_summary(run_a: ProtocolRun, run_b: ProtocolRun) -> str:
    """Compare mean consensus probability above and below p = 0.5."""
    diffs = [a.consensus_probability - b.consensus_probability for a, b in zip(run_a, run_b)]
    high = [d for p, d in zip(run_a.p_values, diffs) if p > 0.5]
    low = [d for p, d in zip(run_a.p_values, diffs) if p < 0.5]

    messages = []
    if high:
        messages.append(_dominance_message(high, "p > 0.5"))
    if low:
        messages.append(_dominance_message(low, "p < 0.5"))
    if not messages:
        messages.append("No clear dominance under current settings.")
    return " ".join(messages)


def combined_table(run_a: ProtocolRun, run_b: ProtocolRun) -> list[dict]:
    return [
        {
            "p": p,
            "consensus_A": a.consensus_probability,
            "consensus_B": b.consensus_probability,
            "discrepancy_A": a.mean_discrepancy,
            "discrepancy_B": b.mean_discrepancy,
        }
        for p, a, b in zip(run_a.p_values, run_a, run_b)
    ]


def study(
    protocol_a,
    protocol_b,
    p_values=DEFAULT_P_VALUES,
    rounds: int = 1,
    repetitions: int = 2000,
    seed: int = 123,
    consensus_eps: float = DEFAULT_CONSENSUS_EPS,
    debug: bool = False,
) -> StudyResult:
    """Run two protocols with identical settings and contrast them."""
    with wrap_errors(debug):
        kwargs = dict(
            p_values=p_values,
            rounds=rounds,
            repetitions=repetitions,
            seed=seed,
            consensus_eps=consensus_eps,
            debug=debug,
        )
        run_a = run_protocol(protocol_a, **kwargs)
        run_b = run_protocol(protocol_b, **kwargs)
        return StudyResult(
            run_a=run_a,
            run_b=run_b,
            comparison_summary=build_comparison_summary(run_a, run_b),
            tables={"A": run_a.table(), "B": run_b.table(), "combined": combined_table(run_a, run_b)},
        )
