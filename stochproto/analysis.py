"""
Convergence analysis over discrepancy traces.

A trace is a sequence of discrepancies indexed by round, starting at round 0
as produced by RunSummary.discrepancy_by_round or
MonteCarloResult.mean_discrepancy_by_round. A state history is the list of
process values per round, as returned by simulation.tracing.state_history.
"""

import math
from typing import Sequence

import numpy as np

ZERO_TOL = 1e-10


def convergence_rate(trace: Sequence[float]) -> float:
    """Estimate the exponential decay rate lambda in D(t) ~ D0 * exp(-lambda t).

    Fits a least-squares line to log D over the rounds where D is positive.

    Returns:
        lambda, or NaN when fewer than 3 positive samples exist or all of
        them sit on the same round.
    """
    rounds = np.array([r for r, d in enumerate(trace) if d > ZERO_TOL], dtype=float)
    if len(rounds) < 3:
        return float("nan")
    log_d = np.log(np.array([trace[int(r)] for r in rounds], dtype=float))

    x_centered = rounds - rounds.mean()
    denominator = float(np.sum(x_centered**2))
    if abs(denominator) < ZERO_TOL:
        return float("nan")
    slope = float(np.sum(x_centered * (log_d - log_d.mean()))) / denominator
    return -slope


def time_to_epsilon_consensus(trace: Sequence[float], epsilon: float) -> int:
    """First round whose discrepancy is below epsilon, or -1 if none is."""
    for round_idx, d in enumerate(trace):
        if d < epsilon:
            return round_idx
    return -1


def stability_metric(traces: Sequence[Sequence[float]]) -> float:
    """Mean across rounds of the spread of discrepancy between runs.

    Traces are truncated to the shortest one. Lower values mean runs converge
    more consistently.
    """
    if not traces:
        return float("nan")
    min_length = min(len(t) for t in traces)
    if min_length == 0:
        return float("nan")
    matrix = np.array([list(t[:min_length]) for t in traces], dtype=float)
    if matrix.shape[0] < 2:
        return 0.0
    return float(np.mean(np.std(matrix, axis=0, ddof=1)))


def contraction_factor(before: float, after: float) -> float:
    """Ratio D(after) / D(before); 0.0 when D(before) is already zero."""
    if before < ZERO_TOL:
        return 0.0
    return after / before


def average_contraction(trace: Sequence[float]) -> float:
    """Geometric mean of the round-to-round contraction factors.

    Only steps starting from a positive discrepancy are counted.

    Returns:
        The geometric mean, 0.0 if any step contracts to exactly zero, or
        NaN for traces shorter than two rounds or with no counted steps.
    """
    if len(trace) < 2:
        return float("nan")
    factors = [contraction_factor(prev, cur) for prev, cur in zip(trace, trace[1:]) if prev > ZERO_TOL]
    if not factors:
        return float("nan")
    if any(f == 0.0 for f in factors):
        return 0.0
    return math.exp(sum(math.log(f) for f in factors) / len(factors))


def variance_reduction_rate(state_history: Sequence[Sequence[float]]) -> float:
    """Exponential decay rate of the across-process variance of the state."""
    variances = [float(np.var(states, ddof=1)) if len(states) > 1 else 0.0 for states in state_history]
    return convergence_rate(variances)


# =============================================================================
# Energy and mixing
# =============================================================================


def lyapunov_function(states: Sequence[float]) -> float:
    """V(x) = sum_i (x_i - mean(x))^2, zero exactly at consensus."""
    values = np.asarray(states, dtype=float)
    if values.size == 0:
        return 0.0
    return float(np.sum((values - values.mean()) ** 2))


def lyapunov_trajectory(state_history: Sequence[Sequence[float]]) -> list[float]:
    """lyapunov_function applied to every state of a run."""
    return [lyapunov_function(states) for states in state_history]


def mixing_time(state_history: Sequence[Sequence[float]], epsilon: float) -> int:
    """First round at which every process is within epsilon of the final mean.

    Returns:
        The round index into state_history, or -1 if no round qualifies.
    """
    if not state_history:
        return -1
    target = float(np.mean(state_history[-1]))
    for round_idx, states in enumerate(state_history):
        if all(abs(x - target) < epsilon for x in states):
            return round_idx
    return -1


# =============================================================================
# Distribution of convergence times
# =============================================================================


def convergence_probability(traces: Sequence[Sequence[float]], epsilon: float, max_round: int) -> float:
    """Fraction of traces whose discrepancy at max_round is below epsilon.

    Traces too short to reach max_round count as not converged.
    """
    if not traces:
        return 0.0
    converged = sum(1 for t in traces if len(t) > max_round and t[max_round] < epsilon)
    return converged / len(traces)


def tail_bound_analysis(
    convergence_rounds: Sequence[int],
    confidence: float = 0.95,
) -> tuple[float, float, float]:
    """Mean and empirical two-sided quantile bounds of convergence times.

    Args:
        convergence_rounds: Per-run rounds to consensus.
        confidence: Probability mass between the bounds.

    Returns:
        (mean, lower, upper); all NaN for no samples.
    """
    if not 0.0 < confidence < 1.0:
        raise ValueError(f"confidence must be in (0, 1), got {confidence}")
    if len(convergence_rounds) == 0:
        return (float("nan"), float("nan"), float("nan"))
    ordered = np.sort(np.asarray(convergence_rounds, dtype=float))
    n = len(ordered)
    alpha = 1.0 - confidence
    lower_rank = max(1, math.floor(n * alpha / 2))
    upper_rank = min(n, math.ceil(n * (1 - alpha / 2)))
    return (float(ordered.mean()), float(ordered[lower_rank - 1]), float(ordered[upper_rank - 1]))


def expected_rounds_to_consensus(convergence_rounds: Sequence[int]) -> tuple[float, float, float, float]:
    """Mean, median, 90th and 99th percentile of rounds to consensus.

    Runs that never converged (-1) are left out. Percentiles are order
    statistics of the remaining runs.

    Returns:
        (mean, median, p90, p99); all NaN when no run converged.
    """
    valid = np.sort(np.array([r for r in convergence_rounds if r >= 0], dtype=float))
    if valid.size == 0:
        return (float("nan"),) * 4
    n = len(valid)
    return (
        float(valid.mean()),
        float(valid[n // 2]),
        float(valid[min(n, math.ceil(0.9 * n)) - 1]),
        float(valid[min(n, math.ceil(0.99 * n)) - 1]),
    )


# =============================================================================
# Sweeps and topology
# =============================================================================


def phase_transition_detection(p_values: Sequence[float], convergence_times: Sequence[float]) -> float:
    """The p at which the convergence time changes fastest.

    Uses the absolute discrete derivative between neighbouring p values and
    returns the right end of the steepest step.

    Returns:
        p*, or NaN with fewer than three points.
    """
    if len(p_values) != len(convergence_times):
        raise ValueError(
            f"p_values and convergence_times differ in length: {len(p_values)} != {len(convergence_times)}"
        )
    if len(p_values) < 3:
        return float("nan")
    ps = np.asarray(p_values, dtype=float)
    times = np.asarray(convergence_times, dtype=float)
    dp = np.diff(ps)
    dt = np.diff(times)
    slopes = np.zeros_like(dp)
    steps = np.abs(dp) > ZERO_TOL
    slopes[steps] = np.abs(dt[steps] / dp[steps])
    return float(ps[int(np.argmax(slopes)) + 1])


def diameter_bound_efficiency(actual_rounds: int, diameter: int, p: float) -> float:
    """Ratio of observed rounds to the diameter / p heuristic bound.

    Returns:
        actual / (diameter / p), lower is better; NaN for p ~ 0 or a
        diameter that is zero or -1 (disconnected).
    """
    if p < ZERO_TOL or diameter <= 0:
        return float("nan")
    return actual_rounds / (diameter / p)


def spectral_gap_estimate(rate: float, diameter: int) -> float:
    """Heuristic spectral gap, taking convergence rate ~ gap / diameter."""
    if diameter <= 0:
        return float("nan")
    return rate * diameter
