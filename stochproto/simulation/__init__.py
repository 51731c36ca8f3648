"""
Synchronous round simulation for stochastic-channel consensus protocols.

This package provides the round engine, delivery models, per-run metrics and
the optional topology, fault and tracing hooks.
"""

from .messages import Message, LocalState, broadcast_all
from .metrics import DEFAULT_CONSENSUS_EPS, RunSummary, discrepancy, is_consensus
from .delivery import (
    DeliveryModel,
    StandardModel,
    GuaranteedModel,
    BroadcastModel,
    build_delivery_model,
    build_delivery_model_map,
    guaranteed_models,
    satisfies_guarantees,
    deliver,
    enforce_channel_guarantee,
)
from .topology import (
    Topology,
    CompleteGraph,
    Ring,
    Star,
    Grid,
    RandomGraph,
    KRegular,
    BipartiteGraph,
    CustomTopology,
)
from .faults import (
    FaultModel,
    NoFaults,
    CrashFaults,
    ByzantineFaults,
    NetworkPartition,
    MessageCorruption,
    CompositeFaults,
)
from .tracing import (
    RoundTrace,
    TraceSink,
    ListTraceSink,
    LoggingTraceSink,
    TraceSummary,
    state_history,
    trace_summary,
    detect_anomalies,
    filter_trace,
    export_trace,
)
from .engine import RoundSimulator, run_experiment

__all__ = [
    # Messages
    "Message",
    "LocalState",
    "broadcast_all",
    # Metrics
    "DEFAULT_CONSENSUS_EPS",
    "RunSummary",
    "discrepancy",
    "is_consensus",
    # Delivery
    "DeliveryModel",
    "StandardModel",
    "GuaranteedModel",
    "BroadcastModel",
    "build_delivery_model",
    "build_delivery_model_map",
    "guaranteed_models",
    "satisfies_guarantees",
    "deliver",
    "enforce_channel_guarantee",
    # Topology
    "Topology",
    "CompleteGraph",
    "Ring",
    "Star",
    "Grid",
    "RandomGraph",
    "KRegular",
    "BipartiteGraph",
    "CustomTopology",
    # Faults
    "FaultModel",
    "NoFaults",
    "CrashFaults",
    "ByzantineFaults",
    "NetworkPartition",
    "MessageCorruption",
    "CompositeFaults",
    # Tracing
    "RoundTrace",
    "TraceSink",
    "ListTraceSink",
    "LoggingTraceSink",
    "TraceSummary",
    "state_history",
    "trace_summary",
    "detect_anomalies",
    "filter_trace",
    "export_trace",
    # Engine
    "RoundSimulator",
    "run_experiment",
]
