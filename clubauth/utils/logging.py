# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Structured logging configuration using structlog.

Logs are rendered as colored console output in development and as JSON
otherwise. Module loggers are plain ``logging.getLogger(__name__)`` loggers;
structlog loggers from get_logger() are used where key/value events read
better (login auditing).

Passwords, password hashes and reset tokens must never be passed to a logger.
As a backstop, redact_secrets masks any structlog event key naming one.

Example:
    >>> from clubauth.utils.logging import setup_logging, get_logger
    >>> from clubauth.core.config import get_settings
    >>> setup_logging(get_settings())
    >>> logger = get_logger(__name__)
    >>> logger.info("login_succeeded", username="alice")
"""

import logging
import sys
from typing import TYPE_CHECKING

import structlog
from structlog.types import EventDict, Processor

if TYPE_CHECKING:
    from clubauth.core.config.settings import Settings

REDACTED = "[REDACTED]"

# Any event key containing one of these is masked
SECRET_KEY_MARKERS = ("password", "token", "secret")


def redact_secrets(logger: object, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask the values of secret-looking keys in a structlog event.

    Example:
        >>> redact_secrets(None, "info", {"event": "x", "new_password": "p"})
        {'event': 'x', 'new_password': '[REDACTED]'}
    """
    for key in event_dict:
        if key != "event" and any(marker in key.lower() for marker in SECRET_KEY_MARKERS):
            event_dict[key] = REDACTED
    return event_dict


def setup_logging(settings: "Settings") -> None:
    """Configure structured logging for the application.

    Args:
        settings: Application settings containing log_level and debug flag.
    """
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

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

    if settings.is_development or settings.debug:
        processors: list[Processor] = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    # SQL echo would print bound parameters, including submitted usernames
    for logger_name in ["sqlalchemy", "sqlalchemy.engine", "sqlalchemy.pool"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    logging.getLogger("clubauth").setLevel(log_level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger for the given module name.

    Args:
        name: Usually __name__ of the calling module.

    Returns:
        A bound structlog logger instance.
    """
    return structlog.get_logger(name)


def bind_context(**kwargs: object) -> None:
    """Bind context variables to all subsequent log calls in this context.

    Args:
        **kwargs: Key-value pairs to bind to the logging context.

    Example:
        >>> bind_context(user_id="user-456", tenant_id="school-1")
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear all bound context variables.

    Called on logout so identity does not leak into later log lines.
    """
    structlog.contextvars.clear_contextvars()
