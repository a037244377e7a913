"""Logging configuration."""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from reverse_etl.core.config import get_settings

_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info",
    "taskName", "message", "asctime",
})

_run_context: ContextVar[Dict[str, Any]] = ContextVar("reverse_etl_run_context", default={})


@contextmanager
def run_log_context(**fields: Any) -> Iterator[None]:
    """
    Attach ``fields`` (sync_id, sync_run_id, ...) to every record logged
    inside the block, including from tasks spawned within it.
    """
    token = _run_context.set({**_run_context.get(), **fields})
    try:
        yield
    finally:
        _run_context.reset(token)


class RunContextFilter(logging.Filter):
    """Copies the current run context onto log records that lack those fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _run_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        settings = get_settings()
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": settings.service_name,
            "environment": settings.environment,
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        log_data.update(
            (key, value) for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS
        )
        return json.dumps(log_data, default=str)


def setup_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> logging.Handler:
    """Install a stdout handler on the root logger and return it."""
    settings = get_settings()
    log_format = log_format or settings.log_format

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RunContextFilter())
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )

    logging.root.handlers = [handler]
    logging.root.setLevel(level or settings.log_level)

    # HTTP clients log every request at INFO
    for noisy in ("httpx", "httpcore", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return handler
