"""structlog setup for allowsync.

Lines emitted while a cycle runs carry its ``cycle_id``.
"""

import contextlib
import logging
import sys
from contextvars import ContextVar
from typing import Iterator, Optional

import structlog
from structlog.types import EventDict, Processor

cycle_id_var: ContextVar[Optional[str]] = ContextVar("cycle_id", default=None)


def add_cycle_id(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    cycle_id = cycle_id_var.get()
    if cycle_id:
        event_dict["cycle_id"] = cycle_id
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    cache_loggers: bool = True,
) -> None:
    """Configure structlog for the daemon.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
        json_output: JSON lines (journald, log shippers) or the console renderer.
        cache_loggers: Tests turn this off so ``structlog.testing.capture_logs``
            sees module-level loggers.
    """
    renderer: Processor = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_cycle_id,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=cache_loggers,
    )


def get_logger(name: str = "allowsync") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextlib.contextmanager
def cycle_context(cycle_id: str) -> Iterator[None]:
    """Tag every log line inside the block with ``cycle_id``."""
    token = cycle_id_var.set(cycle_id)
    try:
        yield
    finally:
        cycle_id_var.reset(token)


# Defaults until run.py applies the loaded config
configure_logging()
