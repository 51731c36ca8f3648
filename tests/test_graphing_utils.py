"""
Tests for the plotly graphing helpers.
"""

import plotly.graph_objects as go
import pytest

from stochproto.api import ProtocolRun
from stochproto.graphing_utils import (
    COLORS,
    make_consensus_ci_plot,
    make_discrepancy_by_round_plot,
    make_discrepancy_histogram,
    make_sweep_plot,
)
from stochproto.monte_carlo import MonteCarloResult


def make_result(p: float, consensus: float = 0.5, samples: list[float] | None = None) -> MonteCarloResult:
    samples = samples if samples is not None else [0.0, 0.5, 1.0, 0.5]
    return MonteCarloResult(
        p=p,
        repetitions=len(samples),
        mean_discrepancy=sum(samples) / len(samples) if samples else 0.0,
        var_discrepancy=0.0,
        consensus_probability=consensus,
        mean_discrepancy_by_round=[1.0, 0.6, 0.5] if samples else [],
        discrepancy_samples=samples,
    )


def make_run(name: str, consensus: list[float]) -> ProtocolRun:
    ps = [i / (len(consensus) - 1) for i in range(len(consensus))]
    results = [make_result(p, c) for p, c in zip(ps, consensus)]
    return ProtocolRun(name, 2, 1, 4, ps, 1e-6, results)


# =============================================================================
# Sweep Plots
# =============================================================================


class TestSweepPlot:
    def test_one_line_per_run(self):
        fig = make_sweep_plot([make_run("AMP", [0.0, 0.3, 1.0]), make_run("FV", [0.0, 0.5, 0.0])])
        assert isinstance(fig, go.Figure)
        assert [t.name for t in fig.data] == ["AMP", "FV"]
        assert list(fig.data[0].y) == [0.0, 0.3, 1.0]
        assert list(fig.data[1].x) == [0.0, 0.5, 1.0]
        assert fig.data[1].line.color == COLORS[1]
        assert fig.layout.title.text == "P(consensus) vs p"

    def test_discrepancy_metric_and_labels(self):
        fig = make_sweep_plot([make_run("AMP", [0.0, 1.0])], metric="discrepancy", labels=["mine"])
        assert fig.data[0].name == "mine"
        assert list(fig.data[0].y) == [0.5, 0.5]
        assert fig.layout.yaxis.title.text == "E[D]"

    def test_unsupported_metric(self):
        with pytest.raises(ValueError, match="Unsupported metric"):
            make_sweep_plot([make_run("AMP", [0.0, 1.0])], metric="latency")

    def test_no_data(self):
        fig = make_sweep_plot([])
        assert len(fig.data) == 0
        assert fig.layout.title.text.endswith("(no data)")


# =============================================================================
# Round and Distribution Plots
# =============================================================================


class TestDiscrepancyByRoundPlot:
    def test_lines(self):
        fig = make_discrepancy_by_round_plot([make_result(0.2), make_result(0.8)])
        assert [t.name for t in fig.data] == ["p=0.2", "p=0.8"]
        assert list(fig.data[0].x) == [0, 1, 2]
        assert list(fig.data[0].y) == [1.0, 0.6, 0.5]

    def test_log_axis(self):
        fig = make_discrepancy_by_round_plot([make_result(0.5)], log_y=True)
        assert fig.layout.yaxis.type == "log"

    def test_skips_empty_traces(self):
        fig = make_discrepancy_by_round_plot([make_result(0.1, samples=[]), make_result(0.9)])
        assert len(fig.data) == 1

    def test_no_data(self):
        fig = make_discrepancy_by_round_plot([make_result(0.1, samples=[])])
        assert fig.layout.title.text == "Mean discrepancy by round (no data)"


class TestConsensusCIPlot:
    def test_error_bars(self):
        fig = make_consensus_ci_plot(make_run("AMP", [0.0, 0.5, 1.0]))
        (trace,) = fig.data
        assert trace.name == "AMP"
        assert trace.error_y.array[0] == 0.0
        assert trace.error_y.array[1] > 0.0
        assert trace.error_y.arrayminus[2] == 0.0
        assert fig.layout.title.text == "P(consensus) with 95% CI"

    def test_no_data(self):
        run = ProtocolRun("Empty", 2, 1, 4, [], 1e-6, [])
        assert make_consensus_ci_plot(run).layout.title.text.endswith("(no data)")


class TestDiscrepancyHistogram:
    def test_histogram(self):
        fig = make_discrepancy_histogram(make_result(0.5), bins=10)
        (trace,) = fig.data
        assert isinstance(trace, go.Histogram)
        assert trace.nbinsx == 10
        assert list(trace.x) == [0.0, 0.5, 1.0, 0.5]
        assert fig.layout.title.text == "Final discrepancy at p=0.5"
        assert len(fig.layout.shapes) == 1

    def test_without_mean_line(self):
        fig = make_discrepancy_histogram(make_result(0.5), show_mean=False)
        assert len(fig.layout.shapes) == 0

    def test_no_data(self):
        fig = make_discrepancy_histogram(make_result(0.5, samples=[]))
        assert len(fig.data) == 0
        assert fig.layout.title.text.endswith("(no data)")
