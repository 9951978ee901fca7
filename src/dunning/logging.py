"""
Structured logging for dunning processes.

Library modules log event-style names (``dunning.started``,
``dunning.step.skipped``) through ``structlog.get_logger(__name__)``. Hosts
call ``setup_logging()`` once at startup to route those events through the
stdlib root logger as JSON lines or console output, per
``DUNNING_OBSERVABILITY__LOG_FORMAT``.
"""

import logging
import sys

import structlog

from dunning.settings import DunningSettings, get_settings


def setup_logging(settings: DunningSettings | None = None) -> None:
    """Configure structlog from the observability settings group."""
    settings = settings or get_settings()
    observability = settings.observability

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=observability.log_level.value,
    )

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if observability.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "dunning") -> structlog.stdlib.BoundLogger:
    """Get a logger for host code that wants to log alongside dunning events."""
    return structlog.get_logger(name)
