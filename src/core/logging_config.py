"""
Logging configuration for the permission engine.

Engine modules log through plain ``logging.getLogger(__name__)``; this module
decides where those records go and what they carry:
- JSON lines for log aggregation, or a compact colored line for development
- The request id and user id of the HTTP request being served (bound by
  ``core.rbac.middleware.RBACMiddleware``) stamped onto every record
- Structured ``extra_data`` for authorization decisions
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from config.settings import get_settings

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)

# Third-party loggers that drown engine output at DEBUG
_QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "redis", "asyncio")


def _context_fields(record: logging.LogRecord) -> Dict[str, str]:
    fields = {}
    request_id = getattr(record, "request_id", None) or request_id_var.get()
    if request_id:
        fields["request_id"] = request_id
    user_id = getattr(record, "user_id", None) or user_id_var.get()
    if user_id:
        fields["user_id"] = user_id
    return fields


class RequestContextFilter(logging.Filter):
    """Copy the current request/user ids onto the record before it is queued or formatted."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _context_fields(record).items():
            setattr(record, key, value)
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(_context_fields(record))
        entry.update(getattr(record, "extra_data", None) or {})
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ReadableFormatter(logging.Formatter):
    """``HH:MM:SS.mmm LEVEL [logger] [request] message | key=value``"""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        level = f"{record.levelname:8s}"
        if self.use_color and record.levelname in self.LEVEL_COLORS:
            level = f"{self.LEVEL_COLORS[record.levelname]}{level}{self.RESET}"

        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        request_id = _context_fields(record).get("request_id")
        request = f"[{request_id}] " if request_id else ""
        line = f"{timestamp} {level} [{record.name}] {request}{record.getMessage()}"

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            line += " | " + " ".join(f"{key}={value}" for key, value in extra_data.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """Adapter merging fixed key/value context into each record's ``extra_data``."""

    def process(self, msg: str, kwargs: Dict) -> tuple:
        extra = kwargs.setdefault("extra", {})
        extra_data = dict(self.extra)
        extra_data.update(extra.get("extra_data") or {})
        extra["extra_data"] = extra_data
        return msg, kwargs


def decision_extra(user_id: str, permission: str, allowed: bool, **details: Any) -> Dict[str, Any]:
    """``extra=`` payload for logging one authorization decision."""
    return {
        "extra_data": {
            "subject": user_id,
            "permission": permission,
            "decision": "allow" if allowed else "deny",
            **details,
        }
    }


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[Union[str, Path]] = None,
) -> None:
    """
    Replace the root handlers with a console handler (and optionally a file).

    Files always receive JSON regardless of ``json_output``.
    """
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(JsonFormatter() if json_output else ReadableFormatter(sys.stdout.isatty()))
    console.addFilter(RequestContextFilter())
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path)
        file_handler.setFormatter(JsonFormatter())
        file_handler.addFilter(RequestContextFilter())
        root.addHandler(file_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def configure_logging_from_settings() -> None:
    """Configure logging from LOG_* environment settings."""
    settings = get_settings().logging
    configure_logging(settings.level, settings.json_output, settings.file)


def get_logger(name: str, **context: Any) -> ContextLogger:
    """Logger whose records all carry ``context`` in ``extra_data``."""
    return ContextLogger(logging.getLogger(name), context)
