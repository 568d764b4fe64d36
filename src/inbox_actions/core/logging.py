"""Structured logging configuration for inbox-actions.

Uses structlog on top of the standard library logger. Every sync/analysis run
gets a run_id stored in a context variable, so all log lines emitted while
processing one user can be traced together.

Usage:
    from inbox_actions.core.logging import get_logger, set_correlation_id

    logger = get_logger(__name__)

    set_correlation_id(str(uuid.uuid4()))
    logger.info("sync_pass_complete", provider="GMAIL", created=3)

Message bodies are never logged. Message ids are logged truncated.
"""

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog

# Context variable for the current run id
_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def set_correlation_id(correlation_id: str | None) -> None:
    """Set the run id for the current context.

    Args:
        correlation_id: UUID string for this run, or None to clear
    """
    _correlation_id.set(correlation_id)


def get_correlation_id() -> str | None:
    """Get the current run id, if set."""
    return _correlation_id.get()


def add_correlation_id(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor to add the run id to log entries."""
    correlation_id = _correlation_id.get()
    if correlation_id is not None:
        event_dict["run_id"] = correlation_id
    return event_dict


def short_id(message_id: str | None, length: int = 12) -> str | None:
    """Shorten a provider message id for log output."""
    if message_id is None or len(message_id) <= length:
        return message_id
    return message_id[:length] + "..."


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
    # basicConfig only runs once per process
    logging.getLogger().setLevel(getattr(logging, log_level.upper()))

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        add_correlation_id,
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

    Returns:
        A structlog BoundLogger instance configured for this application
    """
    return structlog.get_logger(name)
