"""structlog setup shared by the CLI and the services."""

import logging
import sys
from typing import TYPE_CHECKING, TextIO

import structlog

if TYPE_CHECKING:
    from vibey.config import LoggingConfig


def _level_number(level: str) -> int:
    value = getattr(logging, level.upper(), None)
    return value if isinstance(value, int) else logging.INFO


def configure_logging(config: "LoggingConfig | None" = None, stream: TextIO | None = None) -> None:
    """Apply the ``logging`` config section.

    ``format`` selects ``console`` (human readable) or ``json`` lines; records
    go to ``stream``, stderr by default.
    """
    if config is None:
        from vibey.config import get_config

        config = get_config().logging

    renderer = structlog.processors.JSONRenderer() if config.format == "json" else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_level_number(config.level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Module logger; call sites log an event name plus key/value fields."""
    return structlog.get_logger(name) if name else structlog.get_logger()
