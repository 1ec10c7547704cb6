"""Logging setup for the rate limiter.

Standard library logging configured through dictConfig. Decision and
failure-policy records carry rate limit context (bucket key, policy,
reason, store) which the ``structured`` and ``json`` formats render.
"""

import json
import logging
import logging.config
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from bucketgate.app.core.config import settings

# Attributes the facade and stores attach through get_log_context()
CONTEXT_FIELDS = ("rate_limit_key", "policy", "reason", "store", "duration_ms")

# Present on every LogRecord; never copied into "extra"
_RECORD_ATTRIBUTES = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, rate limit context at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now().astimezone().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRIBUTES and key not in CONTEXT_FIELDS
        }
        if extra:
            log_data["extra"] = extra

        if record.exc_info and record.exc_info != (None, None, None):
            log_data["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(log_data, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Give every record the context attributes the structured format expects."""

    CONTEXT_DEFAULTS = dict.fromkeys(CONTEXT_FIELDS)

    def filter(self, record: logging.LogRecord) -> bool:
        for field, default in self.CONTEXT_DEFAULTS.items():
            if not hasattr(record, field):
                setattr(record, field, default)
        return True


def get_logging_config() -> Dict[str, Any]:
    """Build the dictConfig dictionary from settings.log_format / log_level."""
    log_format = getattr(settings, "log_format", "text").lower()
    log_level = getattr(settings, "log_level", "INFO").upper()

    formatters: Dict[str, Any] = {
        "standard": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        },
        "structured": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            " - key=%(rate_limit_key)s - policy=%(policy)s - reason=%(reason)s"
        },
    }
    if log_format == "json":
        formatters["json"] = {"()": "bucketgate.app.core.logging.JSONFormatter"}
        formatter = "json"
    else:
        formatter = "structured" if log_format == "structured" else "standard"

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {
            "context": {"()": "bucketgate.app.core.logging.ContextFilter"},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": formatter,
                "stream": sys.stdout,
                "filters": ["context"],
            },
        },
        "loggers": {
            "bucketgate": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
        },
        "root": {
            "level": log_level,
            "handlers": ["console"],
        },
    }


def setup_logging() -> None:
    """Configure logging for the rate limiter."""
    logging.config.dictConfig(get_logging_config())

    # Reduce noise from the Redis client
    logging.getLogger("redis").setLevel(logging.WARNING)


def get_logger(name: str = "bucketgate") -> logging.Logger:
    return logging.getLogger(name)


def get_log_context(
    rate_limit_key: Optional[str] = None,
    policy: Optional[str] = None,
    reason: Optional[str] = None,
    store: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """Build an ``extra=`` mapping, dropping unset fields.

    Example:
        >>> logger.warning(
        ...     "Store unavailable, allowing request",
        ...     extra=get_log_context(rate_limit_key="ip:ab12", policy="open")
        ... )
    """
    context = {
        "rate_limit_key": rate_limit_key,
        "policy": policy,
        "reason": reason,
        "store": store,
    }
    context.update(extra)
    return {k: v for k, v in context.items() if v is not None}
