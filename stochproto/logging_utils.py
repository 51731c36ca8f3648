"""
Structured logging setup.

All logging goes through structlog. Module loggers carry a `system` field
naming the area of the package that emitted the event.
"""

import logging
import sys
from dataclasses import dataclass
from typing import Any

import structlog

LOG_FORMATS = ("console", "json")


@dataclass
class LoggingConfig:
    """Logging configuration.

    Attributes:
        level: Root log level name.
        format: "console" for human-readable output, "json" for one JSON
            object per line.
    """

    level: str = "INFO"
    format: str = "console"

    def __post_init__(self) -> None:
        if self.format not in LOG_FORMATS:
            raise ValueError(f"format must be one of {LOG_FORMATS}, got {self.format!r}")
        if not isinstance(logging.getLevelName(self.level.upper()), int):
            raise ValueError(f"Unknown log level: {self.level!r}")


def setup_logging(config: LoggingConfig | None = None, stream=None) -> None:
    """
    Configure structured logging for the whole package.

    Args:
        config: Logging configuration; defaults to INFO console output.
        stream: Output stream; defaults to stderr.
    """
    config = config or LoggingConfig()

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderer: Any
    if config.format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, config.level.upper(), logging.INFO))
