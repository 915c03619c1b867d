"""Structured logging for fundtrace.

Both structlog and stdlib loggers (SQLAlchemy, dynaconf) are routed through
one ProcessorFormatter, so every line on stdout has the same shape whether it
came from get_logger() or logging.getLogger().

Engine events are logged as an event name plus key=value fields
(unit_committed, row_quarantined, duplicate_delivery, run_completed, ...).
Run and message context is attached with bind_context().
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog
from structlog.stdlib import ProcessorFormatter

if TYPE_CHECKING:
    from fundtrace.core.config import LoggingSettings

# Held at WARNING or above regardless of the configured level.
_NOISY_LOGGERS: tuple[str, ...] = (
    "sqlalchemy",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "dynaconf",
)


def _drop_formatter_fields(logger: logging.Logger | None, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    # ProcessorFormatter always sets both keys.
    del event_dict["_record"]
    del event_dict["_from_structlog"]
    return event_dict


def _plain_values(logger: logging.Logger | None, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Render amounts, dates and enum members as their plain string form.

    Decimal totals would otherwise be logged as Decimal('12.50') by the JSON
    fallback serializer.
    """
    for key, value in event_dict.items():
        if isinstance(value, Enum):
            event_dict[key] = value.value
        elif isinstance(value, (Decimal, date)):
            event_dict[key] = str(value)
    return event_dict


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        _plain_values,
    ]


def _final_processors(json_output: bool) -> list[Any]:
    if json_output:
        return [_drop_formatter_fields, structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [_drop_formatter_fields, structlog.dev.ConsoleRenderer(colors=False)]


def configure_logging(*, json_output: bool = False, level: str = "INFO") -> None:
    """Configure structlog and stdlib logging.

    Safe to call repeatedly; the root handler is replaced each time.

    Args:
        json_output: Emit one JSON object per line instead of console output.
        level: Root log level (DEBUG, INFO, WARNING, ERROR).
    """
    log_level = getattr(logging, level.upper())
    shared = _shared_processors()

    structlog.configure(
        processors=[*shared, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Tests reconfigure between cases
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ProcessorFormatter(processors=_final_processors(json_output), foreign_pre_chain=shared))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def configure_from_settings(settings: LoggingSettings, *, verbose: bool = False, json_output: bool = False) -> None:
    """Apply the logging section of the settings file.

    Command-line flags only ever widen it: verbose forces DEBUG and
    json_output forces JSON lines.
    """
    configure_logging(
        json_output=json_output or settings.json_output,
        level="DEBUG" if verbose else settings.level,
    )


@contextmanager
def bind_context(**values: Any) -> Iterator[None]:
    """Attach fields (run_id, topic, offset, ...) to every event logged in the block."""
    with structlog.contextvars.bound_contextvars(**values):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a bound logger for a module (typically __name__)."""
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger
