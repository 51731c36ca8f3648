"""
Graphing utilities for visualizing protocol sweeps.

Provides line plots of metrics against the delivery probability, per-round
discrepancy traces, consensus probability with confidence bands and
histograms of final discrepancy.
"""

import numpy as np
import plotly.graph_objects as go

COLORS = ["steelblue", "coral", "green", "purple", "orange", "brown"]

METRIC_LABELS = {
    "consensus": "P(consensus)",
    "discrepancy": "E[D]",
}


def _metric_values(run, metric: str) -> list[float]:
    if metric == "consensus":
        return [r.consensus_probability for r in run]
    if metric == "discrepancy":
        return [r.mean_discrepancy for r in run]
    raise ValueError(f"Unsupported metric: {metric!r}")


def make_sweep_plot(
    runs: list,
    metric: str = "consensus",
    title: str | None = None,
    labels: list[str] | None = None,
) -> go.Figure:
    """Plot a metric against p, one line per protocol run.

    Args:
        runs: ProtocolRun objects (or any sequences of MonteCarloResult).
        metric: "consensus" or "discrepancy".
        title: Plot title; defaults to the metric label.
        labels: Line names; defaults to each run's name.

    Returns:
        Plotly Figure object.
    """
    y_label = METRIC_LABELS.get(metric)
    if y_label is None:
        raise ValueError(f"Unsupported metric: {metric!r}")
    title = title or f"{y_label} vs p"

    if not runs or all(len(run) == 0 for run in runs):
        fig = go.Figure()
        fig.update_layout(title=f"{title} (no data)")
        return fig

    fig = go.Figure()
    for i, run in enumerate(runs):
        name = labels[i] if labels else getattr(run, "name", f"run {i + 1}")
        fig.add_trace(
            go.Scatter(
                x=[r.p for r in run],
                y=_metric_values(run, metric),
                mode="lines+markers",
                name=name,
                line=dict(color=COLORS[i % len(COLORS)], width=2),
            )
        )

    fig.update_layout(
        title=title,
        xaxis_title="p",
        yaxis_title=y_label,
        showlegend=True,
    )
    return fig


def make_discrepancy_by_round_plot(
    results: list,
    labels: list[str] | None = None,
    title: str = "Mean discrepancy by round",
    log_y: bool = False,
) -> go.Figure:
    """Plot mean discrepancy per round for several MonteCarloResult objects.

    Args:
        results: MonteCarloResult objects.
        labels: Line names; defaults to "p=<p>".
        title: Plot title.
        log_y: Use a log-scaled y axis.

    Returns:
        Plotly Figure object.
    """
    traces = [r for r in results if r.mean_discrepancy_by_round]
    if not traces:
        fig = go.Figure()
        fig.update_layout(title=f"{title} (no data)")
        return fig

    fig = go.Figure()
    for i, result in enumerate(results):
        if not result.mean_discrepancy_by_round:
            continue
        name = labels[i] if labels else f"p={result.p:g}"
        fig.add_trace(
            go.Scatter(
                x=list(range(len(result.mean_discrepancy_by_round))),
                y=result.mean_discrepancy_by_round,
                mode="lines+markers",
                name=name,
                line=dict(color=COLORS[i % len(COLORS)], width=2),
            )
        )

    fig.update_layout(
        title=title,
        xaxis_title="Round",
        yaxis_title="E[D]",
        showlegend=True,
    )
    if log_y:
        fig.update_yaxes(type="log")
    return fig


def make_consensus_ci_plot(
    run,
    confidence_level: float = 0.95,
    title: str | None = None,
    color: str = "steelblue",
) -> go.Figure:
    """Plot consensus probability against p with Wald error bars.

    Args:
        run: ProtocolRun (or sequence of MonteCarloResult).
        confidence_level: Confidence level of the error bars.
        title: Plot title.
        color: Line color.

    Returns:
        Plotly Figure object.
    """
    title = title or f"P(consensus) with {confidence_level:.0%} CI"
    if len(run) == 0:
        fig = go.Figure()
        fig.update_layout(title=f"{title} (no data)")
        return fig

    ps, probs, upper, lower = [], [], [], []
    for result in run:
        ci = result.ci_consensus_probability(confidence_level)
        lo, hi = ci if ci is not None else (result.consensus_probability, result.consensus_probability)
        ps.append(result.p)
        probs.append(result.consensus_probability)
        upper.append(hi - result.consensus_probability)
        lower.append(result.consensus_probability - lo)

    fig = go.Figure()
    fig.add_trace(
        go.Scatter(
            x=ps,
            y=probs,
            mode="lines+markers",
            name=getattr(run, "name", "P(consensus)"),
            line=dict(color=color, width=2),
            error_y=dict(type="data", symmetric=False, array=upper, arrayminus=lower),
        )
    )
    fig.update_layout(
        title=title,
        xaxis_title="p",
        yaxis_title="P(consensus)",
        yaxis_range=[0, 1.05],
        showlegend=False,
    )
    return fig


def make_discrepancy_histogram(
    result,
    title: str | None = None,
    bins: int = 50,
    color: str = "steelblue",
    show_mean: bool = True,
) -> go.Figure:
    """Histogram of the final discrepancy of every valid run at one p.

    Args:
        result: MonteCarloResult.
        title: Plot title.
        bins: Number of histogram bins.
        color: Bar color.
        show_mean: Whether to show a vertical line at the mean.

    Returns:
        Plotly Figure object.
    """
    title = title or f"Final discrepancy at p={result.p:g}"
    if not result.discrepancy_samples:
        fig = go.Figure()
        fig.update_layout(title=f"{title} (no data)")
        return fig

    samples = np.array(result.discrepancy_samples)
    fig = go.Figure()
    fig.add_trace(
        go.Histogram(
            x=samples,
            nbinsx=bins,
            histnorm="probability",
            name="D",
            marker_color=color,
            opacity=0.7,
        )
    )

    if show_mean:
        mean_val = float(np.mean(samples))
        fig.add_vline(
            x=mean_val,
            line_dash="dash",
            line_color="red",
            annotation_text=f"Mean: {mean_val:.3f}",
            annotation_position="top right",
        )

    fig.update_layout(
        title=title,
        xaxis_title="Final discrepancy",
        yaxis_title="Probability",
        showlegend=False,
    )
    return fig
