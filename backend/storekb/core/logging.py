"""Structured logging for the API process and ingest workers."""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

import orjson

_DEFAULT_LEVEL = os.environ.get("STOREKB_LOG_LEVEL", "INFO")
_CONTEXT_PREFIX = "ctx_"

# Per-request chatter from the HTTP and browser clients.
_QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    ``extra`` keys starting with ``ctx_`` (see :func:`job_context`) are grouped
    under ``context`` without the prefix, so a job's records can be filtered on
    ``context.job_id``.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        context = {
            key[len(_CONTEXT_PREFIX) :]: value
            for key, value in record.__dict__.items()
            if key.startswith(_CONTEXT_PREFIX)
        }
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return orjson.dumps(payload, default=str).decode("utf-8")


class ContextFormatter(logging.Formatter):
    """Plain-text formatter that appends job context as ``key=value`` pairs."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        pairs = [
            f"{key[len(_CONTEXT_PREFIX) :]}={value}"
            for key, value in record.__dict__.items()
            if key.startswith(_CONTEXT_PREFIX)
        ]
        return f"{line} [{' '.join(pairs)}]" if pairs else line


def configure_logging(level: str | int = _DEFAULT_LEVEL, use_json: bool = True) -> None:
    """Install a single stdout handler on the root logger."""
    logging.captureWarnings(True)
    root = logging.getLogger()
    root.setLevel(level)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if use_json else ContextFormatter())
    root.handlers = [handler]
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = "storekb") -> logging.Logger:
    """Return a logger, configuring the root logger on first use."""
    if not logging.getLogger().handlers:
        configure_logging()
    return logging.getLogger(name)


def job_context(job_id: str, source_ref: str | None = None, **extra: Any) -> dict[str, Any]:
    """Build the ``extra`` mapping for job-scoped log records."""
    context: dict[str, Any] = {f"{_CONTEXT_PREFIX}job_id": job_id}
    if source_ref is not None:
        context[f"{_CONTEXT_PREFIX}source_ref"] = source_ref
    for key, value in extra.items():
        context[f"{_CONTEXT_PREFIX}{key}"] = value
    return context


__all__ = ["JsonFormatter", "ContextFormatter", "configure_logging", "get_logger", "job_context"]
