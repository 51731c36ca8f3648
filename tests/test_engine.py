"""
Tests for the synchronous round engine.

Tests cover the round loop on small deterministic configurations (p = 0 and
p = 1), seeded reproducibility, END phases, topology and fault hooks, the
legacy CHANNEL guarantees, and per-round tracing.
"""

import csv
import json

import pytest

from stochproto.errors import EvaluationError
from stochproto.dsl.parser import parse_protocol
from stochproto.dsl.compiler import compile_protocol
from stochproto.simulation.engine import RoundSimulator, run_experiment
from stochproto.simulation.faults import ByzantineFaults, CrashFaults, NetworkPartition
from stochproto.simulation.metrics import RunSummary, discrepancy, is_consensus
from stochproto.simulation.topology import Ring, Star
from stochproto.simulation.tracing import (
    ListTraceSink,
    LoggingTraceSink,
    RoundTrace,
    detect_anomalies,
    export_trace,
    filter_trace,
    state_history,
    trace_summary,
)


AMP_TEXT = """
PROTOCOL AMP
PROCESSES: 2
STATE:
    x ∈ {0,1}
INITIAL VALUES:
    [0, 1]
PARAMETERS:
    y ∈ [0,1] = 0.5
CHANNEL:
    stochastic
UPDATE RULE:
    if received_diff(x) then
        xᵢ ← y
    else
        xᵢ ← xᵢ
    end
METRICS:
    discrepancy
    consensus
"""

FV_TEXT = """
PROTOCOL FV
PROCESSES: 2
STATE:
    x ∈ {0,1}
INITIAL VALUES:
    [0.0, 1.0]
CHANNEL:
    stochastic
UPDATE RULE:
    EACH ROUND:
        if received_diff then
            xᵢ ← received_other(x)
        else
            xᵢ ← x
        end
"""


def make_spec(text: str, p: float, rounds: int = 1, **kwargs):
    return compile_protocol(parse_protocol(text), p=p, rounds=rounds, **kwargs)


def averaging_text(
    n: int = 3,
    rule: str = "x ← avg(all)",
    extra: str = "",
) -> str:
    """N processes starting at 0, 1/(N-1), ..., 1 with a one-line rule."""
    values = ", ".join(str(i / (n - 1)) for i in range(n))
    return "\n".join(
        [
            "PROTOCOL Avg",
            f"PROCESSES: {n}",
            "STATE: x ∈ [0,1]",
            f"INITIAL VALUES: [{values}]",
            extra,
            "UPDATE RULE:",
            rule,
        ]
    )


# =============================================================================
# Metrics
# =============================================================================


class TestMetrics:
    def test_discrepancy(self):
        assert discrepancy([0.0, 0.25, 1.0]) == 1.0
        assert discrepancy([0.5]) == 0.0
        assert discrepancy([]) == 0.0

    def test_consensus_threshold(self):
        assert is_consensus([0.5, 0.5 + 1e-7])
        assert not is_consensus([0.5, 0.6])
        assert is_consensus([0.5, 0.6], eps=0.2)


# =============================================================================
# Deterministic Runs
# =============================================================================


class TestDeterministicRuns:
    def test_amp_full_delivery_reaches_consensus(self):
        summary = run_experiment(make_spec(AMP_TEXT, p=1.0), seed=1)
        assert summary.discrepancy_by_round == (1.0, 0.0)
        assert summary.consensus_final
        assert summary.final_values == (0.5, 0.5)
        assert summary.messages_per_round == (2,)
        assert summary.total_messages_delivered == 2

    def test_amp_no_delivery_keeps_values(self):
        summary = run_experiment(make_spec(AMP_TEXT, p=0.0, rounds=3), seed=1)
        assert summary.discrepancy_by_round == (1.0, 1.0, 1.0, 1.0)
        assert not summary.consensus_final
        assert summary.final_values == (0.0, 1.0)
        assert summary.total_messages_delivered == 0

    def test_updates_commit_atomically(self):
        # Both processes adopt the other's pre-round value, so they swap.
        summary = run_experiment(make_spec(FV_TEXT, p=1.0), seed=1)
        assert summary.final_values == (1.0, 0.0)
        assert summary.discrepancy_final == 1.0

    def test_averaging_contracts(self):
        summary = run_experiment(make_spec(averaging_text(), p=1.0, rounds=2), seed=1)
        assert summary.discrepancy_by_round[0] == 1.0
        assert summary.discrepancy_by_round[1] == pytest.approx(0.0)
        assert summary.final_values == pytest.approx((0.5, 0.5, 0.5))

    def test_zero_rounds(self):
        summary = run_experiment(make_spec(AMP_TEXT, p=1.0, rounds=0), seed=1)
        assert summary.discrepancy_by_round == (1.0,)
        assert summary.messages_per_round == ()
        assert summary.discrepancy_final == 1.0

    def test_summary_type_and_trace_length(self):
        spec = make_spec(averaging_text(n=4), p=0.5, rounds=5)
        summary = run_experiment(spec, seed=3)
        assert isinstance(summary, RunSummary)
        assert len(summary.discrepancy_by_round) == spec.trace_length == 6
        assert len(summary.messages_per_round) == 5

    def test_evaluation_errors_propagate(self):
        spec = make_spec(averaging_text(rule="x ← avg(inbox)"), p=0.0)
        with pytest.raises(EvaluationError):
            run_experiment(spec, seed=1)


# =============================================================================
# Reproducibility
# =============================================================================


class TestReproducibility:
    def test_same_seed_same_run(self):
        spec = make_spec(averaging_text(n=5, rule="midpoint"), p=0.4, rounds=6)
        assert run_experiment(spec, seed=17) == run_experiment(spec, seed=17)

    def test_different_seeds_differ(self):
        spec = make_spec(averaging_text(n=6, rule="midpoint"), p=0.5, rounds=4)
        runs = {run_experiment(spec, seed=s).messages_per_round for s in range(10)}
        assert len(runs) > 1

    def test_simulator_owns_its_rng(self):
        spec = make_spec(averaging_text(n=4), p=0.5, rounds=3)
        sim = RoundSimulator(spec, seed=5)
        assert sim.run() == run_experiment(spec, seed=5)


# =============================================================================
# END Phase
# =============================================================================


class TestEndPhase:
    def test_end_phase_adds_trace_entry(self):
        rule = "EACH ROUND: x ← x\nEND: midpoint"
        spec = make_spec(averaging_text(n=2, rule=rule), p=1.0, rounds=1)
        summary = run_experiment(spec, seed=1)
        assert summary.discrepancy_by_round == (1.0, 1.0, 0.0)
        assert summary.consensus_final
        # END delivers nothing new.
        assert summary.messages_per_round == (2,)

    def test_end_phase_after_zero_rounds_sees_empty_inbox(self):
        spec = make_spec(averaging_text(n=2, rule="END: midpoint"), p=1.0, rounds=0)
        summary = run_experiment(spec, seed=1)
        assert summary.discrepancy_by_round == (1.0, 1.0)


# =============================================================================
# Channel Guarantees, Topology and Faults
# =============================================================================


class TestChannelGuarantees:
    def test_at_least_one_with_no_delivery(self):
        extra = "CHANNEL: stochastic with guarantee at_least(1)"
        spec = make_spec(averaging_text(n=3, extra=extra), p=0.0, rounds=2)
        summary = run_experiment(spec, seed=1)
        assert summary.messages_per_round == (3, 3)

    def test_majority_with_no_delivery(self):
        extra = "CHANNEL: stochastic with guarantee majority"
        spec = make_spec(averaging_text(n=4, extra=extra), p=0.0, rounds=1)
        assert run_experiment(spec, seed=1).messages_per_round == (12,)


class TestTopologyAndFaults:
    def test_star_limits_messages(self):
        spec = make_spec(averaging_text(n=4), p=1.0, rounds=2, topology=Star())
        assert run_experiment(spec, seed=1).messages_per_round == (6, 6)

    def test_ring_limits_messages(self):
        spec = make_spec(averaging_text(n=5), p=1.0, rounds=1, topology=Ring())
        assert run_experiment(spec, seed=1).messages_per_round == (10,)

    def test_partition_blocks_agreement(self):
        partition = NetworkPartition(partition_round=1, partition_duration=0, groups=[[1], [2]])
        summary = run_experiment(make_spec(AMP_TEXT, p=1.0, rounds=3, faults=partition), seed=1)
        assert summary.discrepancy_by_round == (1.0, 1.0, 1.0, 1.0)
        assert summary.total_messages_delivered == 0

    def test_crashed_processes_stop_sending(self):
        crash = CrashFaults(crash_prob=1.0, crash_round=2)
        summary = run_experiment(make_spec(averaging_text(), p=1.0, rounds=3, faults=crash), seed=1)
        assert summary.messages_per_round == (6, 0, 0)

    def test_byzantine_values_reach_inboxes(self):
        byz = ByzantineFaults([2], strategy="max_value")
        summary = run_experiment(make_spec(AMP_TEXT, p=1.0, faults=byz), seed=1)
        # Process 1 sees a differing value and moves to y; process 2 does too.
        assert summary.final_values == (0.5, 0.5)


# =============================================================================
# Tracing
# =============================================================================


class TestTracing:
    def test_list_sink_records_each_round(self):
        sink = ListTraceSink()
        spec = make_spec(AMP_TEXT, p=1.0, rounds=3)
        run_experiment(spec, seed=1, trace_sink=sink)
        rounds = sink.rounds()
        assert len(sink) == 3
        assert [t.round for t in rounds] == [1, 2, 3]
        first = rounds[0]
        assert first.state_before == (0.0, 1.0)
        assert first.committed == (0.5, 0.5)
        assert first.inboxes == {1: ((2, 1.0),), 2: ((1, 0.0),)}
        assert first.diff_flags == {1: True, 2: True}
        assert first.consensus
        assert first.messages_delivered == 2
        assert not any(t.is_end_phase for t in rounds)

    def test_end_phase_record(self):
        sink = ListTraceSink()
        rule = "EACH ROUND: x ← x\nEND: midpoint"
        spec = make_spec(averaging_text(n=2, rule=rule), p=1.0, rounds=2)
        run_experiment(spec, seed=1, trace_sink=sink)
        last = sink.rounds()[-1]
        assert len(sink) == 3
        assert last.is_end_phase
        assert last.round == 3
        assert last.messages_delivered == 0

    def test_traces_tagged_with_seed(self):
        sink = ListTraceSink()
        sink.current_seed = 42
        run_experiment(make_spec(AMP_TEXT, p=1.0), seed=42, trace_sink=sink)
        assert [seed for seed, _ in sink.traces] == [42]

    def test_tracing_does_not_change_results(self):
        spec = make_spec(averaging_text(n=4, rule="midpoint"), p=0.5, rounds=4)
        assert run_experiment(spec, seed=8, trace_sink=ListTraceSink()) == run_experiment(spec, seed=8)

    def test_logging_sink(self):
        spec = make_spec(AMP_TEXT, p=1.0, rounds=2)
        summary = run_experiment(spec, seed=1, trace_sink=LoggingTraceSink())
        assert summary.consensus_final


def traced_rounds(text: str, p: float, rounds: int) -> list[RoundTrace]:
    sink = ListTraceSink()
    run_experiment(make_spec(text, p=p, rounds=rounds), seed=1, trace_sink=sink)
    return sink.rounds()


# =============================================================================
# Trace Inspection
# =============================================================================


class TestTraceSummary:
    def test_full_delivery(self):
        summary = trace_summary(traced_rounds(AMP_TEXT, p=1.0, rounds=2))
        assert summary.num_processes == 2
        assert summary.rounds_executed == 2
        assert not summary.has_end_phase
        assert summary.messages_delivered == 4
        assert summary.messages_possible == 4
        assert summary.delivery_rate == 1.0
        assert summary.initial_discrepancy == 1.0
        assert summary.final_discrepancy == 0.0
        assert summary.consensus_round == 1
        assert "Consensus reached: round 1" in str(summary)

    def test_no_delivery(self):
        summary = trace_summary(traced_rounds(AMP_TEXT, p=0.0, rounds=3))
        assert summary.messages_delivered == 0
        assert summary.delivery_rate == 0.0
        assert summary.consensus_round is None
        assert "Consensus reached: no" in str(summary)

    def test_end_phase_not_counted_as_round(self):
        rule = "EACH ROUND: x ← x\nEND: midpoint"
        summary = trace_summary(traced_rounds(averaging_text(n=2, rule=rule), p=1.0, rounds=2))
        assert summary.rounds_executed == 2
        assert summary.has_end_phase
        assert summary.messages_possible == 4
        assert summary.final_discrepancy == 0.0

    def test_empty(self):
        with pytest.raises(ValueError, match="at least one round"):
            trace_summary([])

    def test_state_history(self):
        history = state_history(traced_rounds(AMP_TEXT, p=1.0, rounds=2))
        assert history == [(0.0, 1.0), (0.5, 0.5), (0.5, 0.5)]
        assert state_history([]) == []

    def test_runs_grouped_by_seed(self):
        spec = make_spec(AMP_TEXT, p=0.5, rounds=3)
        sink = ListTraceSink()
        for seed in (4, 9):
            sink.current_seed = seed
            run_experiment(spec, seed=seed, trace_sink=sink)
        runs = sink.runs()
        assert list(runs) == [4, 9]
        assert all(len(rounds) == 3 for rounds in runs.values())


class TestDetectAnomalies:
    def test_clean_run(self):
        assert detect_anomalies(traced_rounds(AMP_TEXT, p=1.0, rounds=2)) == []

    def test_silent_run(self):
        assert detect_anomalies(traced_rounds(AMP_TEXT, p=0.0, rounds=3)) == [
            "Process 1 never received any messages",
            "Process 2 never received any messages",
            "Low delivery rate: 0.0%",
            "Process 1 never updated its state",
            "Process 2 never updated its state",
        ]

    def test_rising_discrepancy(self):
        inboxes = {1: ((2, 0.5),), 2: ((1, 0.0),)}
        traces = [
            RoundTrace(1, (0.0, 0.5), inboxes, (0.0, 0.5), discrepancy=0.5, messages_delivered=2),
            RoundTrace(2, (0.0, 0.5), inboxes, (0.0, 1.0), discrepancy=1.0, messages_delivered=2),
        ]
        assert detect_anomalies(traces) == [
            "Discrepancy increased at round 2",
            "Process 1 never updated its state",
        ]

    def test_run_starting_at_consensus(self):
        text = averaging_text(n=2).replace("INITIAL VALUES: [0.0, 1.0]", "INITIAL VALUES: [0.5, 0.5]")
        assert detect_anomalies(traced_rounds(text, p=1.0, rounds=2)) == []

    def test_empty(self):
        assert detect_anomalies([]) == []


class TestFilterTrace:
    def test_by_round(self):
        rounds = traced_rounds(AMP_TEXT, p=1.0, rounds=3)
        (only,) = filter_trace(rounds, round=2)
        assert only is rounds[1]
        assert filter_trace(rounds, round=7) == []

    def test_by_process(self):
        (record,) = filter_trace(traced_rounds(averaging_text(n=3), p=1.0, rounds=1), process=1)
        assert record.inboxes == {
            1: ((2, 0.5), (3, 1.0)),
            2: ((1, 0.0),),
            3: ((1, 0.0),),
        }
        assert record.diff_flags == {1: True}
        assert record.state_before == (0.0, 0.5, 1.0)
        assert record.committed == (0.5, 0.5, 0.5)

    def test_no_filters(self):
        rounds = traced_rounds(AMP_TEXT, p=1.0, rounds=2)
        assert filter_trace(rounds) == rounds


class TestExportTrace:
    def test_json(self, tmp_path):
        path = export_trace(traced_rounds(AMP_TEXT, p=1.0, rounds=2), tmp_path / "trace.json")
        records = json.loads(path.read_text())
        assert len(records) == 2
        assert records[0]["inboxes"] == {"1": [[2, 1.0]], "2": [[1, 0.0]]}
        assert records[0]["committed"] == [0.5, 0.5]
        assert records[1]["round"] == 2
        assert records[1]["end_phase"] is False

    def test_csv(self, tmp_path):
        path = export_trace(traced_rounds(AMP_TEXT, p=1.0, rounds=2), tmp_path / "trace.csv", format="csv")
        with open(path, newline="") as f:
            rows = list(csv.DictReader(f))
        assert len(rows) == 4
        assert rows[0]["round"] == "1"
        assert rows[0]["process"] == "1"
        assert float(rows[0]["state_before"]) == 0.0
        assert float(rows[0]["committed"]) == 0.5
        assert rows[0]["received"] == "1"
        assert rows[0]["received_diff"] == "True"

    def test_unknown_format(self, tmp_path):
        with pytest.raises(ValueError, match="Unknown export format"):
            export_trace([], tmp_path / "trace.xml", format="xml")
