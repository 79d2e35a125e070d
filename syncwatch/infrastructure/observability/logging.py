"""
Structured logging setup for the sync orchestration service.
Provides JSON-formatted logs with consistent fields for production monitoring.
"""

import logging
import sys

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output for production.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    structlog.configure(
        processors=[
            # Context bound with bind_sync_context() (user_id, integration_type, trigger)
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def bind_sync_context(user_id: str, integration_type: str, trigger: str | None = None) -> None:
    """Attach integration identity to every log line emitted by the current task."""
    context = {"user_id": user_id, "integration_type": integration_type}
    if trigger:
        context["trigger"] = trigger
    structlog.contextvars.bind_contextvars(**context)


def clear_sync_context() -> None:
    structlog.contextvars.unbind_contextvars("user_id", "integration_type", "trigger")


def log_sync_run(
    outcome: str,
    duration_ms: float,
    skip_reason: str | None = None,
    error_kind: str | None = None,
    items_applied: int = 0,
):
    """Log a finished sync run with consistent fields."""
    logger = get_logger("sync")

    log_data = {
        "outcome": outcome,
        "duration_ms": round(duration_ms, 2),
        "items_applied": items_applied,
        "event_name": "sync_run",
    }

    if skip_reason:
        log_data["skip_reason"] = skip_reason
    if error_kind:
        log_data["error_kind"] = error_kind

    if outcome == "failure":
        logger.warning("Sync run failed", **log_data)
    else:
        logger.info("Sync run completed", **log_data)
