"""Structured logging configuration for postage."""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

LOG_LEVEL_ENV = "POSTAGE_LOG_LEVEL"
LOG_FORMAT_ENV = "POSTAGE_LOG_FORMAT"  # "json" | "text" (default)


def get_logger(name: str) -> logging.Logger:
    """Return a logger for the given module name. Configures root postage logger on first use."""
    logger = logging.getLogger("postage" if name == "postage" else f"postage.{name}")
    if not logger.handlers and logger.level == logging.NOTSET:
        _configure_postage_logging()
    return logger


class RunLoggerAdapter(logging.LoggerAdapter):
    """Tags every record with the run id: `[<run id>] message` in text, a run_id field in json."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        run_id = self.extra["run_id"] if self.extra else "?"
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("run_id", run_id)
        kwargs["extra"] = extra
        return f"[{run_id}] {msg}", kwargs


def get_run_logger(name: str, run_id: str) -> RunLoggerAdapter:
    """Logger for code acting on behalf of one scenario run."""
    return RunLoggerAdapter(get_logger(name), {"run_id": run_id})


def _configure_postage_logging() -> None:
    root = logging.getLogger("postage")
    if root.handlers:
        return
    level_name = (os.environ.get(LOG_LEVEL_ENV) or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    root.setLevel(level)
    fmt_env = (os.environ.get(LOG_FORMAT_ENV) or "text").lower()
    handler = logging.StreamHandler(sys.stderr)
    if fmt_env == "json":
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    root.addHandler(handler)


class _JsonFormatter(logging.Formatter):
    """Simple JSON log formatter for structured logging (e.g. log shippers)."""

    def format(self, record: logging.LogRecord) -> str:
        import json
        obj: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt or "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        run_id = getattr(record, "run_id", None)
        if run_id is not None:
            obj["run_id"] = run_id
        if record.exc_info:
            obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False)
