"""
Tests for convergence analysis over discrepancy traces.
"""

import math

import pytest

from stochproto.analysis import (
    average_contraction,
    contraction_factor,
    convergence_probability,
    convergence_rate,
    diameter_bound_efficiency,
    expected_rounds_to_consensus,
    lyapunov_function,
    lyapunov_trajectory,
    mixing_time,
    phase_transition_detection,
    spectral_gap_estimate,
    stability_metric,
    tail_bound_analysis,
    time_to_epsilon_consensus,
    variance_reduction_rate,
)
from stochproto.dsl.compiler import compile_protocol
from stochproto.dsl.parser import parse_protocol
from stochproto.monte_carlo import MonteCarloConfig, run_sweep
from stochproto.simulation.engine import run_experiment
from stochproto.simulation.tracing import ListTraceSink, state_history


def geometric_trace(d0: float, factor: float, rounds: int) -> list[float]:
    return [d0 * factor**t for t in range(rounds + 1)]


# =============================================================================
# Convergence Rate
# =============================================================================


class TestConvergenceRate:
    def test_exact_exponential(self):
        trace = [math.exp(-0.7 * t) for t in range(6)]
        assert convergence_rate(trace) == pytest.approx(0.7)

    def test_halving(self):
        assert convergence_rate(geometric_trace(1.0, 0.5, 5)) == pytest.approx(math.log(2))

    def test_ignores_zero_rounds(self):
        trace = [1.0, 0.5, 0.25, 0.0, 0.0]
        assert convergence_rate(trace) == pytest.approx(math.log(2))

    def test_growth_is_negative(self):
        assert convergence_rate([1.0, 2.0, 4.0]) == pytest.approx(-math.log(2))

    def test_too_few_samples(self):
        assert math.isnan(convergence_rate([1.0, 0.5]))
        assert math.isnan(convergence_rate([1.0, 0.0, 0.0, 0.0]))
        assert math.isnan(convergence_rate([]))


class TestTimeToEpsilon:
    def test_first_round_below(self):
        assert time_to_epsilon_consensus([1.0, 0.5, 0.05, 0.01], 0.1) == 2

    def test_strictly_below(self):
        assert time_to_epsilon_consensus([1.0, 0.1, 0.09], 0.1) == 2

    def test_initially_converged(self):
        assert time_to_epsilon_consensus([0.0, 0.0], 1e-6) == 0

    def test_never(self):
        assert time_to_epsilon_consensus([1.0, 0.9, 0.8], 0.1) == -1


# =============================================================================
# Stability and Contraction
# =============================================================================


class TestStabilityMetric:
    def test_identical_traces(self):
        assert stability_metric([[1.0, 0.5], [1.0, 0.5]]) == 0.0

    def test_spread(self):
        # Per-round sample std: 0 at round 0 and sqrt(0.5) at round 1.
        value = stability_metric([[1.0, 0.0], [1.0, 1.0]])
        assert value == pytest.approx(math.sqrt(0.5) / 2)

    def test_truncates_to_shortest(self):
        assert stability_metric([[1.0, 0.5, 0.0], [1.0, 0.5]]) == 0.0

    def test_single_trace(self):
        assert stability_metric([[1.0, 0.2]]) == 0.0

    def test_empty(self):
        assert math.isnan(stability_metric([]))
        assert math.isnan(stability_metric([[], [1.0]]))


class TestContraction:
    def test_factor(self):
        assert contraction_factor(1.0, 0.25) == 0.25
        assert contraction_factor(0.0, 0.5) == 0.0

    def test_geometric_mean(self):
        assert average_contraction([1.0, 0.5, 0.125]) == pytest.approx(math.sqrt(0.5 * 0.25))

    def test_zero_step(self):
        assert average_contraction([1.0, 0.5, 0.0, 0.0]) == 0.0

    def test_undefined(self):
        assert math.isnan(average_contraction([1.0]))
        assert math.isnan(average_contraction([0.0, 0.0, 0.0]))


class TestAnalysisOnSweeps:
    def test_averaging_protocol_contracts(self):
        text = "\n".join(
            [
                "PROTOCOL Avg",
                "PROCESSES: 4",
                "STATE: x",
                "INITIAL VALUES: [0, 0.25, 0.75, 1]",
                "UPDATE RULE: midpoint",
            ]
        )
        (result,) = run_sweep(parse_protocol(text), [0.6], rounds=6, config=MonteCarloConfig(repetitions=200))
        trace = result.mean_discrepancy_by_round
        assert len(trace) == 7
        assert trace[0] == 1.0
        assert trace[-1] < trace[0]
        assert 0.0 <= average_contraction(trace) < 1.0


# =============================================================================
# Energy and Mixing
# =============================================================================


HALVING_HISTORY = [[0.0, 1.0], [0.25, 0.75], [0.375, 0.625], [0.4375, 0.5625]]


class TestLyapunov:
    def test_single_state(self):
        assert lyapunov_function([0.0, 1.0]) == pytest.approx(0.5)
        assert lyapunov_function([0.3, 0.3, 0.3]) == 0.0
        assert lyapunov_function([]) == 0.0

    def test_trajectory(self):
        assert lyapunov_trajectory([[0.0, 1.0], [0.5, 0.5]]) == [pytest.approx(0.5), 0.0]

    def test_variance_reduction_rate(self):
        # Spread halves each round, so the variance quarters.
        assert variance_reduction_rate(HALVING_HISTORY) == pytest.approx(math.log(4))

    def test_variance_reduction_single_process(self):
        assert math.isnan(variance_reduction_rate([[1.0], [1.0], [1.0]]))


class TestMixingTime:
    def test_first_round_within_epsilon(self):
        history = [[0.0, 1.0], [0.4, 0.6], [0.5, 0.5]]
        assert mixing_time(history, 0.2) == 1
        assert mixing_time(history, 1e-9) == 2

    def test_never_mixes(self):
        assert mixing_time([[0.0, 1.0], [0.0, 1.0]], 0.1) == -1

    def test_empty(self):
        assert mixing_time([], 0.1) == -1


# =============================================================================
# Convergence Time Distribution
# =============================================================================


class TestConvergenceProbability:
    def test_fraction_below_epsilon(self):
        traces = [[1.0, 0.5, 0.0], [1.0, 0.9, 0.8], [1.0, 0.0]]
        assert convergence_probability(traces, 0.1, 2) == pytest.approx(1 / 3)

    def test_round_zero(self):
        assert convergence_probability([[0.0, 0.0], [1.0, 0.0]], 0.1, 0) == 0.5

    def test_empty(self):
        assert convergence_probability([], 0.1, 1) == 0.0


class TestTailBounds:
    def test_bounds(self):
        mean, lower, upper = tail_bound_analysis(list(range(1, 21)))
        assert mean == pytest.approx(10.5)
        assert lower == 1.0
        assert upper == 20.0

    def test_order_does_not_matter(self):
        assert tail_bound_analysis([5, 1, 3]) == tail_bound_analysis([1, 3, 5])

    def test_empty(self):
        assert all(math.isnan(v) for v in tail_bound_analysis([]))

    def test_invalid_confidence(self):
        with pytest.raises(ValueError, match="confidence"):
            tail_bound_analysis([1, 2, 3], confidence=1.0)


class TestExpectedRounds:
    def test_order_statistics(self):
        mean, median, p90, p99 = expected_rounds_to_consensus([3, 1, 2, -1, 4])
        assert mean == pytest.approx(2.5)
        assert median == 3.0
        assert p90 == 4.0
        assert p99 == 4.0

    def test_initial_consensus_counts(self):
        assert expected_rounds_to_consensus([0, 0, 2])[0] == pytest.approx(2 / 3)

    def test_never_converged(self):
        assert all(math.isnan(v) for v in expected_rounds_to_consensus([-1, -1]))
        assert all(math.isnan(v) for v in expected_rounds_to_consensus([]))


# =============================================================================
# Sweeps and Topology
# =============================================================================


class TestPhaseTransition:
    def test_steepest_step(self):
        assert phase_transition_detection([0.1, 0.2, 0.3, 0.4], [10.0, 9.0, 3.0, 2.5]) == 0.3

    def test_repeated_p_is_ignored(self):
        assert phase_transition_detection([0.1, 0.1, 0.2], [5.0, 1.0, 0.0]) == 0.2

    def test_too_few_points(self):
        assert math.isnan(phase_transition_detection([0.1, 0.2], [3.0, 1.0]))

    def test_length_mismatch(self):
        with pytest.raises(ValueError, match="differ in length"):
            phase_transition_detection([0.1, 0.2, 0.3], [1.0, 2.0])


class TestDiameterHeuristics:
    def test_bound_efficiency(self):
        assert diameter_bound_efficiency(6, 3, 0.5) == pytest.approx(1.0)
        assert diameter_bound_efficiency(4, 2, 1.0) == pytest.approx(2.0)

    def test_bound_efficiency_undefined(self):
        assert math.isnan(diameter_bound_efficiency(3, 2, 0.0))
        assert math.isnan(diameter_bound_efficiency(3, 0, 0.5))
        assert math.isnan(diameter_bound_efficiency(3, -1, 0.5))

    def test_spectral_gap(self):
        assert spectral_gap_estimate(0.5, 4) == 2.0
        assert math.isnan(spectral_gap_estimate(0.5, 0))


class TestAnalysisOnTracedRun:
    def test_state_history_of_full_averaging(self):
        text = "\n".join(
            [
                "PROTOCOL Avg3",
                "PROCESSES: 3",
                "STATE: x",
                "INITIAL VALUES: [0, 0.5, 1]",
                "UPDATE RULE: x ← avg(all)",
            ]
        )
        spec = compile_protocol(parse_protocol(text), p=1.0, rounds=3)
        sink = ListTraceSink()
        run_experiment(spec, seed=1, trace_sink=sink)
        history = state_history(sink.rounds())
        assert len(history) == 4
        assert lyapunov_trajectory(history) == [pytest.approx(0.5), 0.0, 0.0, 0.0]
        assert mixing_time(history, 1e-9) == 1
