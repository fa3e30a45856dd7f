"""Structured logging configuration for the inbox triage engine.

Uses structlog for JSON-formatted logs to stdout. Each batch retriage run and
each single-message triage gets a run ID stored in a context variable, so all
log lines for one run can be traced together.

Usage:
    from inbox_triage.core.logging import get_logger, set_run_id

    logger = get_logger(__name__)

    # At the start of a batch run:
    set_run_id(str(uuid.uuid4()))

    # The run ID is added automatically:
    logger.info("conversation_retriaged", conversation_id="c-1", changed=True)
"""

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog

_run_id: ContextVar[str | None] = ContextVar("run_id", default=None)


def set_run_id(run_id: str | None) -> None:
    """Set the run ID for the current context, or None to clear it."""
    _run_id.set(run_id)


def get_run_id() -> str | None:
    """Get the current run ID, if set."""
    return _run_id.get()


def add_run_id(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor to add the run ID to log entries."""
    run_id = _run_id.get()
    if run_id is not None:
        event_dict["run_id"] = run_id
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable format
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        add_run_id,
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__ of the calling module)
    """
    return structlog.get_logger(name)
