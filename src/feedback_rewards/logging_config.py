"""Logging configuration."""

import logging
import sys
from typing import Any

import structlog

from feedback_rewards.settings import settings


def add_app_name(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Tag every event with the application name."""
    event_dict.setdefault("app", settings.app_name)
    return event_dict


def configure_logging(level: str | None = None, log_format: str | None = None) -> None:
    """Configure structured logging.

    Args:
        level: Log level name (defaults to settings)
        log_format: "json" or "console" (defaults to settings)
    """
    level = (level or settings.log_level).upper()
    log_format = log_format or settings.log_format

    shared = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        add_app_name,
    ]
    if log_format == "json":
        processors = shared + [
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared + [
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # Standard logging for SQLAlchemy and uvicorn
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level),
    )
    # SQL statements only when DB_ECHO is on
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if settings.db_echo else logging.WARNING)


def bind_caller(user_id: int, business_id: int | None = None) -> None:
    """Attach the caller to every event logged for the current request."""
    structlog.contextvars.bind_contextvars(user_id=user_id, business_id=business_id)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)
