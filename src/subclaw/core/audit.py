from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import os
from typing import Any, Dict, Optional

from subclaw.core.logging_config import append_to_file, get_audit_log_path

logger = logging.getLogger("subclaw.audit")


def log_event(
    data_dir: Optional[str],
    event_type: str,
    payload: Dict[str, Any],
) -> None:
    """Append a structured audit record to ``<data_dir>/audit.jsonl``.

    Audit writes never raise; a broken disk must not take a task down.
    """
    if not data_dir:
        return
    record: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "type": event_type,
        "payload": payload,
    }
    line = json.dumps(record, default=str)
    path = os.path.join(data_dir, "audit.jsonl")
    try:
        os.makedirs(data_dir, exist_ok=True)
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(line + "\n")
    except OSError as exc:
        logger.error("Failed to write audit event %s: %s", event_type, exc)
        return
    # Mirror to centralized audit log
    try:
        central = get_audit_log_path()
        if os.path.abspath(central) != os.path.abspath(path):
            append_to_file(central, line)
    except Exception:  # noqa: BLE001
        pass
