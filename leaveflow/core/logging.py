"""
Logging configuration.

structlog on top of the stdlib logging module. Call configure_logging() once
at startup; modules grab a bound logger with get_logger(__name__).
"""

import logging
import sys
from typing import Optional

import structlog

from leaveflow.core.config import settings

SENSITIVE_KEYS = ("password", "token", "secret", "key", "credentials", "authorization")

_configured = False


def redact_sensitive(logger, method_name, event_dict):
    """Mask values whose key looks like a credential."""
    for key in list(event_dict.keys()):
        if key == "event":
            continue
        if any(s in key.lower() for s in SENSITIVE_KEYS):
            event_dict[key] = "[REDACTED]"
    return event_dict


def configure_logging(level: Optional[str] = None, json_logs: Optional[bool] = None):
    global _configured
    level = (level or settings.LOG_LEVEL).upper()
    json_logs = settings.LOG_JSON if json_logs is None else json_logs

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level, logging.INFO),
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Quiet chatty client libraries
    for name in ("httpx", "httpcore", "hpack"):
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True


def get_logger(name: Optional[str] = None):
    return structlog.get_logger(name)
