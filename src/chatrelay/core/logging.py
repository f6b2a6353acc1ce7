"""
chatrelay Logging — readable in a terminal, one JSON object per line in production.

Both formatters understand the relay's context fields, passed as
logger.info(..., extra={...}):

    external_id, message_id, recipient, state, status_code, attempt,
    duration_ms, reason

Text output appends them as "key=value" after the message; JSON output puts
them at the top level.

Env vars read by setup_logging():
    CHATRELAY_LOG_LEVEL   DEBUG / INFO / WARNING / ERROR (default INFO)
    CHATRELAY_LOG_FORMAT  text / json (default text)
    CHATRELAY_LOG_COLOR   true / false / auto (default auto: color on a TTY)
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone

CONTEXT_FIELDS = (
    "external_id",
    "message_id",
    "recipient",
    "state",
    "status_code",
    "attempt",
    "duration_ms",
    "reason",
)

# Libraries that log every request/frame at INFO or DEBUG
NOISY_LOGGERS = (
    "httpx",
    "httpcore",
    "websockets",
    "uvicorn.access",
)

_RESET = "\033[0m"
_DIM = "\033[2m"
_LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[1;31m",
}


def _context(record: logging.LogRecord) -> dict:
    return {
        key: getattr(record, key)
        for key in CONTEXT_FIELDS
        if getattr(record, key, None) is not None
    }


class ColorFormatter(logging.Formatter):
    """Terminal formatter: "12:00:01 [logger] LEVEL: message key=value ..."."""

    def __init__(self, use_color: bool = True):
        super().__init__(
            fmt="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
            datefmt="%H:%M:%S",
        )
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        levelname, name = record.levelname, record.name
        if self.use_color:
            record.levelname = (
                f"{_LEVEL_COLORS.get(levelname, '')}{levelname}{_RESET}"
            )
            record.name = f"{_DIM}{name}{_RESET}"
        try:
            line = super().format(record)
        finally:
            record.levelname, record.name = levelname, name

        context = _context(record)
        if not context:
            return line
        suffix = " ".join(f"{k}={v}" for k, v in context.items())
        if self.use_color:
            suffix = f"{_DIM}{suffix}{_RESET}"
        head, sep, rest = line.partition("\n")
        return f"{head} {suffix}{sep}{rest}"


class StructuredFormatter(logging.Formatter):
    """JSON-lines formatter for log aggregation (CHATRELAY_LOG_FORMAT=json)."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(_context(record))
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _use_color() -> bool:
    setting = os.getenv("CHATRELAY_LOG_COLOR", "auto").lower()
    if setting in ("true", "false"):
        return setting == "true"
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def setup_logging() -> None:
    """Install a single stdout handler on the root logger. Call once at startup."""
    level_name = os.getenv("CHATRELAY_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    log_format = os.getenv("CHATRELAY_LOG_FORMAT", "text").lower()

    if log_format == "json":
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = ColorFormatter(use_color=_use_color())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    # uvicorn's startup/shutdown lines follow our level
    logging.getLogger("uvicorn.error").setLevel(level)

    logging.getLogger("chatrelay").debug(
        "Logging configured (level=%s, format=%s)", level_name, log_format
    )
