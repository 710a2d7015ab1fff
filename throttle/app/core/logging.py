"""Logging setup for the throttle package.

Configures stdlib logging through ``dictConfig``. Three output formats are
available via ``THROTTLE_LOG_FORMAT``:

- ``text``: plain one-line records
- ``structured``: one-line records with the throttle context appended
- ``json``: one JSON object per record, for log shippers

Throttle code passes its context (key, mode, rate, burst) through ``extra=``;
build it with ``get_log_context``.
"""

import json
import logging
import logging.config
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from throttle.app.core.config import Settings, settings

# Record attributes the throttle code may attach through ``extra=``
CONTEXT_FIELDS = (
    "request_id",
    "throttle_key",
    "mode",
    "rate",
    "burst",
    "path",
    "method",
    "status_code",
)

# Attributes every LogRecord carries, plus keys JSONFormatter writes itself
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
STRUCTURED_FORMAT = TEXT_FORMAT + " - throttle_key=%(throttle_key)s mode=%(mode)s rate=%(rate)s"


class JSONFormatter(logging.Formatter):
    """Render a record as a single JSON line.

    Known context fields are promoted to the top level when set; any other
    ``extra=`` attributes are grouped under ``"extra"``.
    """

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()

        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            "source": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        extra: Dict[str, Any] = {}
        for key, value in vars(record).items():
            if key in CONTEXT_FIELDS:
                if value is not None:
                    payload[key] = value
            elif key not in _RECORD_ATTRS:
                extra[key] = value
        if extra:
            payload["extra"] = extra

        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(payload, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Give every record the context attributes, so format strings never fail."""

    def filter(self, record: logging.LogRecord) -> bool:
        for field in CONTEXT_FIELDS:
            if not hasattr(record, field):
                setattr(record, field, None)
        return True


def _stream_handler(stream: Any, level: str, formatter: str) -> Dict[str, Any]:
    return {
        "class": "logging.StreamHandler",
        "stream": stream,
        "level": level,
        "formatter": formatter,
        "filters": ["context"],
    }


def get_logging_config(app_settings: Optional[Settings] = None) -> Dict[str, Any]:
    """Build the ``dictConfig`` for the throttle and uvicorn loggers.

    Args:
        app_settings: Source of ``log_level`` and ``log_format``
            (global settings by default)

    Returns:
        Configuration dict for ``logging.config.dictConfig``
    """
    app_settings = app_settings or settings
    level = app_settings.log_level.upper()
    log_format = app_settings.log_format

    formatters: Dict[str, Dict[str, Any]] = {
        "standard": {"format": TEXT_FORMAT},
        "structured": {"format": STRUCTURED_FORMAT},
    }
    if log_format == "json":
        formatters["json"] = {"()": JSONFormatter}
    formatter = {"json": "json", "structured": "structured"}.get(log_format, "standard")

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"context": {"()": ContextFilter}},
        "formatters": formatters,
        "handlers": {
            "console": _stream_handler(sys.stdout, level, formatter),
            "error_console": _stream_handler(sys.stderr, "ERROR", formatter),
        },
        "loggers": {
            "throttle": {
                "level": level,
                "handlers": ["console", "error_console"],
                "propagate": False,
            },
            "uvicorn": {"level": level, "handlers": ["console"], "propagate": False},
        },
        "root": {"level": level, "handlers": ["console"]},
    }


def setup_logging(app_settings: Optional[Settings] = None) -> None:
    logging.config.dictConfig(get_logging_config(app_settings))
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str = "throttle") -> logging.Logger:
    return logging.getLogger(name)


def get_log_context(
    throttle_key: Optional[str] = None,
    mode: Optional[str] = None,
    rate: Optional[float] = None,
    burst: Optional[float] = None,
    request_id: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """Collect throttle context for a logging ``extra=`` argument.

    None values are dropped.

    Example:
        >>> logger.warning("Rate limit exceeded", extra=get_log_context(throttle_key="10.0.0.1", rate=1.0))
    """
    context = dict(
        throttle_key=throttle_key,
        mode=mode,
        rate=rate,
        burst=burst,
        request_id=request_id,
        **extra,
    )
    return {key: value for key, value in context.items() if value is not None}
