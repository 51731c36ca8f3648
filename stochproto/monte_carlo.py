"""
Monte Carlo aggregation over repeated protocol runs.

Repeats the round engine with seeds seed, seed + 1, ... and aggregates the
final discrepancy of every valid run into a MonteCarloResult.

When a guaranteed delivery model is present, runs violating its minimum
message constraint are rejected and more seeds are tried, up to an attempt
budget of attempt_multiplier x repetitions. A shortfall is reported as a
ConfigurationWarning and the result is built from whatever valid runs were
found.
"""

import math
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field

import numpy as np
import structlog
from scipy import stats as scipy_stats

from .dsl.compiler import ExperimentSpec, compile_protocol
from .dsl.ir import ProtocolIR
from .errors import warn_configuration
from .simulation.delivery import build_delivery_model_map, guaranteed_models, satisfies_guarantees
from .simulation.engine import run_experiment
from .simulation.metrics import DEFAULT_CONSENSUS_EPS, RunSummary
from .simulation.tracing import ListTraceSink, TraceSink

logger = structlog.get_logger(system="monte_carlo")


@dataclass
class MonteCarloConfig:
    """Configuration for Monte Carlo aggregation.

    Attributes:
        repetitions: Number of valid runs to collect per p value.
        base_seed: Seed of the first run; run k uses base_seed + k.
        consensus_eps: Final discrepancy at or below which a run reached consensus.
        parallel_workers: Number of parallel worker processes (1 = sequential).
        attempt_multiplier: Attempt budget per repetition when guaranteed
            delivery models force rejection sampling.
    """

    repetitions: int
    base_seed: int = 1
    consensus_eps: float = DEFAULT_CONSENSUS_EPS
    parallel_workers: int = 1
    attempt_multiplier: int = 100

    def __post_init__(self) -> None:
        if self.repetitions < 1:
            raise ValueError(f"repetitions must be >= 1, got {self.repetitions}")
        if self.consensus_eps < 0:
            raise ValueError(f"consensus_eps must be >= 0, got {self.consensus_eps}")
        if self.parallel_workers < 1:
            raise ValueError(f"parallel_workers must be >= 1, got {self.parallel_workers}")
        if self.attempt_multiplier < 1:
            raise ValueError(f"attempt_multiplier must be >= 1, got {self.attempt_multiplier}")


@dataclass
class MonteCarloResult:
    """Aggregated statistics at one delivery probability.

    Attributes:
        p: Channel delivery probability.
        repetitions: Valid runs actually counted.
        mean_discrepancy: Mean final discrepancy.
        var_discrepancy: Sample variance (n - 1 denominator) of the final
            discrepancy; 0.0 when fewer than two runs were counted.
        consensus_probability: Fraction of valid runs that ended in consensus.
        mean_discrepancy_by_round: Elementwise mean of the per-round traces.
        attempts: Runs executed, including rejected ones.
        requested_repetitions: Valid runs that were asked for.
        discrepancy_samples: Final discrepancy of each valid run, in seed order.
        consensus_eps: Threshold used to decide consensus.
    """

    p: float
    repetitions: int
    mean_discrepancy: float
    var_discrepancy: float
    consensus_probability: float
    mean_discrepancy_by_round: list[float] = field(default_factory=list)
    attempts: int = 0
    requested_repetitions: int = 0
    discrepancy_samples: list[float] = field(default_factory=list)
    consensus_eps: float = DEFAULT_CONSENSUS_EPS

    @property
    def rejected(self) -> int:
        return self.attempts - self.repetitions

    def std_discrepancy(self) -> float:
        """Sample standard deviation of the final discrepancy."""
        if self.repetitions < 2:
            return 0.0
        return math.sqrt(self.var_discrepancy)

    def ci_mean_discrepancy(self, confidence_level: float = 0.95) -> tuple[float, float] | None:
        """Confidence interval for the mean final discrepancy.

        Uses the t-distribution for the CI.

        Args:
            confidence_level: Desired confidence level (e.g., 0.95 for 95% CI).

        Returns:
            Tuple of (lower_bound, upper_bound), or None if fewer than 2 runs
            were counted.
        """
        n = self.repetitions
        if n < 2:
            return None
        alpha = 1.0 - confidence_level
        t_crit = scipy_stats.t.ppf(1 - alpha / 2, df=n - 1)
        margin = t_crit * self.std_discrepancy() / math.sqrt(n)
        return (self.mean_discrepancy - margin, self.mean_discrepancy + margin)

    def ci_consensus_probability(self, confidence_level: float = 0.95) -> tuple[float, float] | None:
        """Wald confidence interval for the consensus probability, clipped to [0, 1]."""
        n = self.repetitions
        if n == 0:
            return None
        prob = self.consensus_probability
        z = scipy_stats.norm.ppf(1 - (1.0 - confidence_level) / 2)
        margin = z * math.sqrt(prob * (1 - prob) / n)
        return (max(0.0, prob - margin), min(1.0, prob + margin))

    def summary(self) -> str:
        """Generate a text summary of results."""
        lines = [
            f"Monte Carlo Results at p={self.p:.3f} ({self.repetitions} runs, {self.attempts} attempts)",
            f"  E[D]: {self.mean_discrepancy:.6f} (std: {self.std_discrepancy():.6f})",
            f"  P(consensus): {self.consensus_probability:.4f}",
        ]
        ci = self.ci_mean_discrepancy()
        if ci is not None:
            lines.append(f"  95% CI for E[D]: [{ci[0]:.6f}, {ci[1]:.6f}]")
        if self.repetitions < self.requested_repetitions:
            lines.append(f"  Only {self.repetitions} of {self.requested_repetitions} requested runs were valid")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return (
            f"MonteCarloResult(p={self.p}, n={self.repetitions}, "
            f"mean_discrepancy={self.mean_discrepancy:.6f}, "
            f"consensus_probability={self.consensus_probability:.4f})"
        )


def aggregate_runs(
    p: float,
    summaries: list[RunSummary],
    consensus_eps: float = DEFAULT_CONSENSUS_EPS,
    attempts: int | None = None,
    requested: int | None = None,
    trace_length: int = 0,
) -> MonteCarloResult:
    """Build a MonteCarloResult from the valid runs at one p value.

    Zero runs give a degenerate result with every statistic at 0 and a
    per-round series of `trace_length` zeros.
    """
    n = len(summaries)
    attempts = n if attempts is None else attempts
    requested = n if requested is None else requested
    if n == 0:
        return MonteCarloResult(
            p=p,
            repetitions=0,
            mean_discrepancy=0.0,
            var_discrepancy=0.0,
            consensus_probability=0.0,
            mean_discrepancy_by_round=[0.0] * trace_length,
            attempts=attempts,
            requested_repetitions=requested,
            consensus_eps=consensus_eps,
        )

    finals = np.array([s.discrepancy_final for s in summaries], dtype=float)
    lengths = {len(s.discrepancy_by_round) for s in summaries}
    assert len(lengths) == 1, f"Discrepancy traces differ in length: {sorted(lengths)}"
    by_round = np.mean([s.discrepancy_by_round for s in summaries], axis=0)

    return MonteCarloResult(
        p=p,
        repetitions=n,
        mean_discrepancy=float(np.mean(finals)),
        var_discrepancy=float(np.var(finals, ddof=1)) if n > 1 else 0.0,
        consensus_probability=float(np.mean(finals <= consensus_eps)),
        mean_discrepancy_by_round=[float(v) for v in by_round],
        attempts=attempts,
        requested_repetitions=requested,
        discrepancy_samples=[float(v) for v in finals],
        consensus_eps=consensus_eps,
    )


def _run_single_simulation(spec: ExperimentSpec, seed: int, consensus_eps: float) -> RunSummary:
    """Run a single simulation (used for parallel execution).

    This is a module-level function to support multiprocessing.
    """
    return run_experiment(spec, seed=seed, consensus_eps=consensus_eps)


class MonteCarloRunner:
    """Runs repeated simulations of one experiment and aggregates results.

    Supports parallel execution for faster results on multi-core systems.
    Parallel and sequential runs scan seeds in the same order, so both give
    identical results for the same configuration.
    """

    def __init__(self, config: MonteCarloConfig):
        """Initialize the runner.

        Args:
            config: Monte Carlo configuration.
        """
        self.config = config

    def max_attempts(self, spec: ExperimentSpec) -> int:
        """Attempt budget for one experiment."""
        model_map = build_delivery_model_map(spec.delivery_models, spec.num_processes)
        if guaranteed_models(model_map):
            return self.config.attempt_multiplier * self.config.repetitions
        return self.config.repetitions

    def run(
        self,
        spec: ExperimentSpec,
        trace_sink: TraceSink | None = None,
        trace_limit: int = 1,
    ) -> MonteCarloResult:
        """Run Monte Carlo simulations of one experiment.

        Args:
            spec: Compiled experiment.
            trace_sink: Optional sink receiving round traces of the first
                `trace_limit` valid runs.
            trace_limit: Number of valid runs to trace.

        Returns:
            Aggregated MonteCarloResult.
        """
        model_map = build_delivery_model_map(spec.delivery_models, spec.num_processes)
        guarantees = guaranteed_models(model_map)
        max_attempts = self.max_attempts(spec)

        valid: list[tuple[int, RunSummary]] = []
        if self.config.parallel_workers > 1:
            attempts = self._run_parallel(spec, guarantees, max_attempts, valid)
        else:
            attempts = self._run_sequential(spec, guarantees, max_attempts, valid)

        if len(valid) < self.config.repetitions:
            warn_configuration(
                f"Only {len(valid)} of {self.config.repetitions} runs satisfied the "
                f"guaranteed delivery constraints after {attempts} attempts at p={spec.p}",
                protocol=spec.name,
                p=spec.p,
                valid=len(valid),
                attempts=attempts,
            )

        if trace_sink is not None:
            self._replay_traced(spec, [seed for seed, _ in valid[:trace_limit]], trace_sink)

        return aggregate_runs(
            spec.p,
            [summary for _, summary in valid],
            consensus_eps=self.config.consensus_eps,
            attempts=attempts,
            requested=self.config.repetitions,
            trace_length=spec.trace_length,
        )

    def _run_sequential(
        self,
        spec: ExperimentSpec,
        guarantees: list,
        max_attempts: int,
        valid: list[tuple[int, RunSummary]],
    ) -> int:
        """Run simulations sequentially. Returns the number of attempts."""
        attempts = 0
        while attempts < max_attempts and len(valid) < self.config.repetitions:
            seed = self.config.base_seed + attempts
            summary = _run_single_simulation(spec, seed, self.config.consensus_eps)
            attempts += 1
            self._collect_result(seed, summary, guarantees, valid)
        return attempts

    def _run_parallel(
        self,
        spec: ExperimentSpec,
        guarantees: list,
        max_attempts: int,
        valid: list[tuple[int, RunSummary]],
    ) -> int:
        """Run simulations in parallel using ProcessPoolExecutor.

        Seeds are submitted in batches; each batch's results are scanned in
        seed order and scanning stops as soon as enough valid runs are found.
        """
        attempts = 0
        with ProcessPoolExecutor(max_workers=self.config.parallel_workers) as executor:
            while attempts < max_attempts and len(valid) < self.config.repetitions:
                needed = self.config.repetitions - len(valid)
                batch_size = min(max(needed, self.config.parallel_workers), max_attempts - attempts)
                seeds = [self.config.base_seed + attempts + k for k in range(batch_size)]
                futures = [
                    executor.submit(_run_single_simulation, spec, seed, self.config.consensus_eps)
                    for seed in seeds
                ]
                for seed, future in zip(seeds, futures):
                    summary = future.result()
                    if len(valid) >= self.config.repetitions:
                        break
                    attempts += 1
                    self._collect_result(seed, summary, guarantees, valid)
                for future in futures:
                    future.cancel()
        return attempts

    def _collect_result(
        self,
        seed: int,
        summary: RunSummary,
        guarantees: list,
        valid: list[tuple[int, RunSummary]],
    ) -> None:
        """Keep a finished run unless it violates a guaranteed model."""
        if guarantees and not satisfies_guarantees(
            guarantees, list(summary.messages_per_round), summary.total_messages_delivered
        ):
            return
        valid.append((seed, summary))

    def _replay_traced(self, spec: ExperimentSpec, seeds: list[int], trace_sink: TraceSink) -> None:
        """Re-run valid seeds with tracing; runs are deterministic per seed."""
        for seed in seeds:
            if isinstance(trace_sink, ListTraceSink):
                trace_sink.current_seed = seed
            run_experiment(spec, seed=seed, consensus_eps=self.config.consensus_eps, trace_sink=trace_sink)


def run_many(
    experiment: ExperimentSpec,
    repetitions: int,
    seed: int = 1,
    consensus_eps: float = DEFAULT_CONSENSUS_EPS,
    parallel_workers: int = 1,
    attempt_multiplier: int = 100,
    trace_sink: TraceSink | None = None,
    trace_limit: int = 1,
) -> MonteCarloResult:
    """Convenience function to aggregate repeated runs of one experiment.

    Args:
        experiment: Compiled experiment.
        repetitions: Number of valid runs to collect.
        seed: Seed of the first run.
        consensus_eps: Consensus threshold on the final discrepancy.
        parallel_workers: Number of parallel workers.
        attempt_multiplier: Attempt budget per repetition under rejection sampling.
        trace_sink: Optional sink for round traces.
        trace_limit: Number of valid runs to trace.

    Returns:
        MonteCarloResult with aggregated statistics.
    """
    config = MonteCarloConfig(
        repetitions=repetitions,
        base_seed=seed,
        consensus_eps=consensus_eps,
        parallel_workers=parallel_workers,
        attempt_multiplier=attempt_multiplier,
    )
    return MonteCarloRunner(config).run(experiment, trace_sink=trace_sink, trace_limit=trace_limit)


def run_sweep(
    ir: ProtocolIR,
    p_values: list[float],
    rounds: int,
    config: MonteCarloConfig,
    topology=None,
    faults=None,
    trace_sink: TraceSink | None = None,
    trace_limit: int = 1,
) -> list[MonteCarloResult]:
    """Aggregate one protocol over a sweep of delivery probabilities.

    The idx-th p value (0-based) starts its seeds at config.base_seed + idx.

    Returns:
        One MonteCarloResult per p value, in input order.
    """
    results = []
    for idx, p in enumerate(p_values):
        spec = compile_protocol(ir, p, rounds, topology=topology, faults=faults)
        point_config = MonteCarloConfig(
            repetitions=config.repetitions,
            base_seed=config.base_seed + idx,
            consensus_eps=config.consensus_eps,
            parallel_workers=config.parallel_workers,
            attempt_multiplier=config.attempt_multiplier,
        )
        logger.info("sweep_point_started", protocol=ir.name, p=p, rounds=rounds, seed=point_config.base_seed)
        result = MonteCarloRunner(point_config).run(spec, trace_sink=trace_sink, trace_limit=trace_limit)
        logger.info(
            "sweep_point_finished",
            protocol=ir.name,
            p=p,
            valid=result.repetitions,
            attempts=result.attempts,
            mean_discrepancy=result.mean_discrepancy,
            consensus_probability=result.consensus_probability,
        )
        results.append(result)
    return results
