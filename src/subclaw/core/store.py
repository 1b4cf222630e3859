"""Durable per-task JSON store.

One ``<task_id>.json`` file per task under ``<data_dir>/subagents``.  Writes
are atomic (tmp file + fsync + replace) so a crash never leaves a torn
record behind; last write wins per task id.
"""
from __future__ import annotations

import json
import logging
import os
import threading
from typing import Any, Dict, List

logger = logging.getLogger("subclaw.store")


class TaskStore:
    def __init__(self, data_dir: str) -> None:
        self.root = os.path.join(data_dir, "subagents")
        self._lock = threading.RLock()
        os.makedirs(self.root, exist_ok=True)

    def _path(self, task_id: str) -> str:
        return os.path.join(self.root, f"{task_id}.json")

    def persist(self, task_id: str, record: Dict[str, Any]) -> None:
        path = self._path(task_id)
        tmp = f"{path}.tmp"
        with self._lock:
            try:
                with open(tmp, "w", encoding="utf-8") as handle:
                    json.dump(record, handle, ensure_ascii=False, indent=2, default=str)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp, path)
            except OSError as exc:
                logger.warning("Persist failed for %s: %s", task_id, exc)

    def restore_all(self) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        with self._lock:
            try:
                names = sorted(os.listdir(self.root))
            except OSError as exc:
                logger.error("Failed to list task store %s: %s", self.root, exc)
                return records
            for name in names:
                if not name.endswith(".json"):
                    continue
                path = os.path.join(self.root, name)
                try:
                    with open(path, "r", encoding="utf-8") as handle:
                        raw = json.load(handle)
                except (OSError, ValueError) as exc:
                    logger.warning("Failed to restore %s: %s", name, exc)
                    continue
                if isinstance(raw, dict) and raw.get("task_id"):
                    records.append(raw)
        return records

    def delete(self, task_id: str) -> None:
        with self._lock:
            try:
                os.remove(self._path(task_id))
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Failed to delete record %s: %s", task_id, exc)
