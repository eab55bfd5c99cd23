"""Logging for verbaguard.

Every throttling decision is logged with the identifier, policy and strategy
that produced it, plus the request id of the HTTP request being served.
``LOG_FORMAT`` picks plain text, text with those fields appended, or one JSON
object per line for log aggregation.
"""

import json
import logging
import logging.config
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from verbaguard.app.core.config import settings

_request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Fields a throttling log line may carry; the filter fills the missing ones
CONTEXT_FIELDS = (
    "request_id",
    "identifier",   # user:<id>:<endpoint>, ip:<addr>:<endpoint>, global:...
    "policy",
    "strategy",
    "client_ip",
    "user_id",
    "path",
    "method",
    "status_code",
)

# Attributes every LogRecord has; anything else came in through extra=
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime"}

_TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_STRUCTURED_FORMAT = (
    _TEXT_FORMAT
    + " - request_id=%(request_id)s identifier=%(identifier)s"
    + " policy=%(policy)s strategy=%(strategy)s"
)


def set_request_id(request_id: Optional[str]) -> None:
    """Bind a request id to the current async context."""
    _request_id_var.set(request_id)


def current_request_id() -> Optional[str]:
    """Return the request id bound to the current async context, if any."""
    return _request_id_var.get()


class JSONFormatter(logging.Formatter):
    """Render a record as a single JSON line.

    Context fields that are set go at the top level, other ``extra=`` values
    under ``"extra"``, and a traceback under ``"exception"`` as one string.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.lineno}",
        }

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value

        extra = {
            key: value
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and key not in CONTEXT_FIELDS
        }
        if extra:
            entry["extra"] = extra

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Make every context field present on the record.

    Text formats reference the fields by name, so a record without them
    would fail to render. The request id defaults to the one bound by the
    request id middleware.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for field in CONTEXT_FIELDS:
            if not hasattr(record, field):
                setattr(record, field, None)
        if record.request_id is None:
            record.request_id = current_request_id()
        return True


def get_logging_config() -> Dict[str, Any]:
    """Build the ``dictConfig`` mapping for the configured format and level."""
    log_format = settings.log_format.lower()
    log_level = settings.log_level.upper()

    if log_format == "json":
        formatter = {"()": JSONFormatter}
    elif log_format == "structured":
        formatter = {"format": _STRUCTURED_FORMAT}
    else:
        formatter = {"format": _TEXT_FORMAT}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": formatter},
        "filters": {"context": {"()": ContextFilter}},
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": "default",
                "stream": sys.stdout,
                "filters": ["context"],
            },
        },
        "loggers": {
            "verbaguard": {
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
    """Configure logging for the application."""
    logging.config.dictConfig(get_logging_config())

    # One line per request from the server is noise next to our own
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str = "verbaguard") -> logging.Logger:
    return logging.getLogger(name)


def get_log_context(
    request_id: Optional[str] = None,
    identifier: Optional[str] = None,
    policy: Optional[str] = None,
    strategy: Optional[str] = None,
    **extra
) -> Dict[str, Any]:
    """Create a log context dictionary for use with extra parameter.

    None values are dropped so the filter defaults apply.

    Example:
        >>> logger.warning(
        ...     "Rate limit exceeded",
        ...     extra=get_log_context(
        ...         identifier="user:42:/api/translate",
        ...         policy="translation",
        ...         strategy="fixed_window",
        ...     )
        ... )
    """
    context = {
        "request_id": request_id,
        "identifier": identifier,
        "policy": policy,
        "strategy": strategy,
    }
    context.update(extra)
    return {k: v for k, v in context.items() if v is not None}
