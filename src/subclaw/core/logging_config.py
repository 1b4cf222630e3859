"""Centralized logging configuration for subclaw.

One log directory holds everything a running gateway writes::

    ~/.subclaw/.logs/
    ├── subclaw.log            # root logger output (rotating)
    ├── task-events.log        # one JSON line per sub-agent tool call
    ├── activity.log           # notifications, human readable
    └── audit.jsonl            # mirror of every data_dir audit event

Modules only ever call ``logging.getLogger("subclaw.<module>")``; handlers
are attached here, once, by ``setup_logging``.
"""
from __future__ import annotations

import json
import logging
import logging.handlers
import os
import time
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"
ROTATE_BYTES = 10 * 1024 * 1024
ROTATE_BACKUPS = 5
# Per-field cap for task-event args/results
EVENT_FIELD_LIMIT = 5000

# Set by setup_logging()
_log_dir: Optional[str] = None

task_event_logger = logging.getLogger("subclaw._task_events")


def get_log_dir() -> str:
    if _log_dir:
        return _log_dir
    default = str(Path(os.path.expanduser("~")) / ".subclaw" / ".logs")
    return os.getenv("subclaw_LOG_DIR", default)


def _rotating(path: str, formatter: logging.Formatter, level: int = logging.DEBUG) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=ROTATE_BYTES, backupCount=ROTATE_BACKUPS, encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(log_dir: str, log_level: str = "info") -> None:
    """Route the root logger to stdout and ``subclaw.log``, and open the task-event stream.

    Safe to call more than once; previously attached handlers are replaced.
    """
    global _log_dir
    _log_dir = log_dir
    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(formatter)
    root.addHandler(console)
    # The file keeps debug output even when the console is quieter
    root.addHandler(_rotating(os.path.join(log_dir, "subclaw.log"), formatter))

    # Records are pre-serialized JSON; keep them out of the root handlers
    task_event_logger.setLevel(logging.INFO)
    task_event_logger.propagate = False
    task_event_logger.handlers.clear()
    task_event_logger.addHandler(
        _rotating(os.path.join(log_dir, "task-events.log"), logging.Formatter("%(message)s"), logging.INFO)
    )

    logging.getLogger("subclaw").info("Logging initialized: log_dir=%s, level=%s", log_dir, log_level)


def log_task_event_central(
    task_id: str,
    tool: str,
    args_summary: str,
    result_summary: str,
    is_error: bool = False,
) -> None:
    """Append one tool dispatch to ``task-events.log``."""
    record = {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "task_id": task_id,
        "tool": tool,
        "args": args_summary[:EVENT_FIELD_LIMIT],
        "result": result_summary[:EVENT_FIELD_LIMIT],
        "error": is_error,
    }
    try:
        task_event_logger.info(json.dumps(record, default=str))
    except Exception:  # noqa: BLE001
        pass


def get_activity_log_path() -> str:
    return os.path.join(get_log_dir(), "activity.log")


def get_audit_log_path() -> str:
    return os.path.join(get_log_dir(), "audit.jsonl")


def append_to_file(path: str, line: str) -> None:
    """Append *line* prefixed with a local timestamp; never raises."""
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(f"{time.strftime(DATE_FORMAT)} {line}\n")
    except OSError:
        pass
