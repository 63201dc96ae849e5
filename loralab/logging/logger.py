# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Structured JSON logging for loralab.

Training runs happen on a background worker thread, so plain text logs
interleave badly with whatever the interactive surface prints. Every record
is therefore rendered as one JSON object per line:

  {"ts": "...", "level": "INFO", "module": "loralab.session.core",
   "thread": "loralab-scheduler", "msg": "session created", "mode": "adapter"}

Structured context goes through the standard ``extra={...}`` kwarg and is
merged into the object at the top level.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# LogRecord attributes that are bookkeeping, not caller context.
_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "relativeCreated",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "pathname",
        "filename",
        "module",
        "levelno",
        "levelname",
        "processName",
        "process",
        "threadName",
        "thread",
        "message",
        "msecs",
        "taskName",
    }
)

_VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class JsonFormatter(logging.Formatter):
    """
    Render a LogRecord as a single JSON line.

    Mandatory keys are ``ts`` (UTC, ISO 8601), ``level``, ``module`` (the
    logger name), ``thread`` and ``msg``. Exceptions logged with
    ``exc_info=True`` land in an ``exc`` key as formatted traceback text.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key.startswith("_"):
                continue
            entry[key] = value

        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def _resolve_log_level(level_name: str) -> int:
    upper = level_name.upper()
    if upper not in _VALID_LOG_LEVELS:
        raise ValueError(
            f"Invalid log level '{level_name}'. Must be one of: {', '.join(_VALID_LOG_LEVELS)}"
        )
    return getattr(logging, upper)


def get_logger(
    name: str,
    log_level: str = "INFO",
    log_file: Optional[Path] = None,
) -> logging.Logger:
    """
    Return a JSON logger for ``name``.

    Calling this again for the same name only updates the level; handlers
    are attached once, so repeated calls from tests or from a re-created
    scheduler never duplicate output.

    Args:
        name: Logger name, usually ``__name__``.
        log_level: One of DEBUG, INFO, WARNING, ERROR, CRITICAL.
        log_file: When given, records are also appended to this file.

    Returns:
        The configured logger.
    """
    logger = logging.getLogger(name)
    level = _resolve_log_level(log_level)
    logger.setLevel(level)

    if logger.handlers:
        return logger

    formatter = JsonFormatter()

    stdout_handler = logging.StreamHandler(stream=sys.stdout)
    stdout_handler.setLevel(level)
    stdout_handler.setFormatter(formatter)
    logger.addHandler(stdout_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False

    return logger
