"""
Protocol description language: IR, parser and compiler.
"""

from .ir import (
    ChannelGuarantee,
    DeliveryModelSpec,
    DeliveryModelType,
    Metric,
    PhaseKind,
    ProtocolIR,
    UpdatePhase,
)
from .parser import RuleParser, parse_expr, parse_predicate, parse_update, parse_protocol, parse_protocol_file
from .compiler import (
    EvalContext,
    evaluate_expr,
    evaluate_predicate,
    evaluate_update,
    phase_active,
    CompiledProtocol,
    ExperimentSpec,
    compile_protocol,
)

__all__ = [
    # IR
    "ChannelGuarantee",
    "DeliveryModelSpec",
    "DeliveryModelType",
    "Metric",
    "PhaseKind",
    "ProtocolIR",
    "UpdatePhase",
    # Parser
    "RuleParser",
    "parse_expr",
    "parse_predicate",
    "parse_update",
    "parse_protocol",
    "parse_protocol_file",
    # Compiler
    "EvalContext",
    "evaluate_expr",
    "evaluate_predicate",
    "evaluate_update",
    "phase_active",
    "CompiledProtocol",
    "ExperimentSpec",
    "compile_protocol",
]
