"""
Structured logging configuration using structlog.

JSON logs in production, colored console output in development. Supports
contextual logging with bound fields (e.g. ``alert_code``, ``trigger_id``).
"""

import logging
import sys
import uuid

import structlog
from structlog.types import Processor

from src.config.settings import get_settings

# Provider SDKs and HTTP clients that log every request at INFO.
NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "urllib3", "asyncpg")

# Channel credential fields that must never reach log output.
SECRET_KEYS = frozenset({
    "password", "auth_token", "authToken", "vapid_private_key", "vapidPrivateKey",
})


def redact_secrets(logger, method_name, event_dict):
    """Mask credential values bound to a log event."""
    for key in SECRET_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def setup_logging() -> None:
    """
    Configure structured logging for the application.

    Usage:
        setup_logging()
        logger = structlog.get_logger()
        logger.info("Alert fired", alert_code="TRESORERIE_SEUIL")
    """
    settings = get_settings()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        redact_secrets,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.is_production:
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

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level),
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger."""
    return structlog.get_logger(name)


def bind_trigger_context(alert_code: str, **kwargs) -> str:
    """
    Bind an alert code and a fresh trigger id to subsequent log messages.

    Args:
        alert_code: Alert being triggered
        **kwargs: Extra key-value pairs to bind

    Returns:
        The generated trigger id
    """
    trigger_id = uuid.uuid4().hex[:12]
    structlog.contextvars.bind_contextvars(
        alert_code=alert_code, trigger_id=trigger_id, **kwargs,
    )
    return trigger_id


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()
