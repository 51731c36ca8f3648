"""
Error taxonomy for protocol parsing, evaluation and the public API.

Parse and evaluation errors propagate through the engine and Monte Carlo
layers untouched. Only the public entry points convert them into a
ProtocolError, unless debug mode is requested.
"""

import warnings
from contextlib import contextmanager
from typing import Iterator

import structlog

logger = structlog.get_logger(system="errors")


class StochProtocolError(Exception):
    """Base class for all errors raised by this package."""


class ParseError(StochProtocolError):
    """Protocol source text could not be parsed.

    Attributes:
        line: 1-based source line number, or None if not tied to a line.
        message: Description of what was expected or found.
    """

    def __init__(self, line: int | None, message: str):
        self.line = line
        self.message = message
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.line is None:
            return self.message
        return f"line {self.line}: {self.message}"

    def __reduce__(self):
        return (type(self), (self.line, self.message))


class EvaluationError(StochProtocolError):
    """An expression, predicate or rule failed while a run was executing."""


class ProtocolError(StochProtocolError):
    """User-facing error raised by the public API in non-debug mode."""


class ConfigurationWarning(UserWarning):
    """Non-fatal problem with an experiment configuration."""


def warn_configuration(message: str, **context) -> None:
    """Log and emit a ConfigurationWarning."""
    logger.warning("configuration_warning", message=message, **context)
    warnings.warn(message, ConfigurationWarning, stacklevel=3)


@contextmanager
def wrap_errors(debug: bool = False) -> Iterator[None]:
    """Convert unexpected exceptions into a ProtocolError.

    Args:
        debug: If True, exceptions propagate unchanged with full detail.
    """
    try:
        yield
    except ProtocolError:
        raise
    except Exception as exc:
        if debug:
            raise
        logger.debug("wrapped_error", error_type=type(exc).__name__, error=str(exc))
        raise ProtocolError(str(exc)) from None
