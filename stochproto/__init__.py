"""
Monte Carlo simulation of consensus protocols over stochastic channels.

Protocols are written in a small paper-like notation, parsed into an IR,
compiled into a synchronous round engine and aggregated over many seeded
repetitions and a sweep of delivery probabilities.
"""

from .errors import (
    StochProtocolError,
    ParseError,
    EvaluationError,
    ProtocolError,
    ConfigurationWarning,
)
from .dsl import ProtocolIR, ExperimentSpec, parse_protocol, parse_protocol_file, compile_protocol
from .simulation import RunSummary, run_experiment
from .monte_carlo import MonteCarloConfig, MonteCarloResult, MonteCarloRunner, run_many, run_sweep
from .api import ProtocolRun, StudyResult, run_protocol, study
from .comparisons import ComparisonResult, compare
from .logging_utils import LoggingConfig, setup_logging

__all__ = [
    # Errors
    "StochProtocolError",
    "ParseError",
    "EvaluationError",
    "ProtocolError",
    "ConfigurationWarning",
    # DSL
    "ProtocolIR",
    "ExperimentSpec",
    "parse_protocol",
    "parse_protocol_file",
    "compile_protocol",
    # Simulation
    "RunSummary",
    "run_experiment",
    # Monte Carlo
    "MonteCarloConfig",
    "MonteCarloResult",
    "MonteCarloRunner",
    "run_many",
    "run_sweep",
    # API
    "ProtocolRun",
    "StudyResult",
    "run_protocol",
    "study",
    "ComparisonResult",
    "compare",
    # Logging
    "LoggingConfig",
    "setup_logging",
]
