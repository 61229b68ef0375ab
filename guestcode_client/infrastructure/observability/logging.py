"""
Structured logging setup for the GuestCode session client.
Provides JSON-formatted logs in production and readable console logs locally.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO", environment: str = "production") -> None:
    """
    Configure structured logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        environment: "development" switches to the console renderer
    """
    renderer = (
        structlog.dev.ConsoleRenderer()
        if environment == "development"
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_session_context,
            renderer,
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
    logging.getLogger("socketio.client").setLevel(logging.WARNING)
    logging.getLogger("engineio.client").setLevel(logging.WARNING)


def _add_session_context(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Merge context bound with structlog.contextvars (e.g. user_id of the active session)."""
    return structlog.contextvars.merge_contextvars(logger, method_name, event_dict)


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def log_request(method: str, path: str, status_code: int | None, duration_ms: float):
    """Log outbound API requests with consistent fields."""
    logger = get_logger("http")

    log_data = {
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": round(duration_ms, 2),
    }

    if status_code is None or status_code >= 400:
        logger.warning("API request failed", **log_data)
    else:
        logger.debug("API request completed", **log_data)


def log_connection_state(state: str, **context: Any):
    """Log realtime connection transitions with consistent fields."""
    logger = get_logger("realtime")

    if state in ("failed", "error"):
        logger.error("Realtime connection state changed", state=state, **context)
    else:
        logger.info("Realtime connection state changed", state=state, **context)
