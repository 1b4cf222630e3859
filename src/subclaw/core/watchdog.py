"""Liveness watchdog for sub-agents.

Tracks one entry per task: plan snapshot, current step, last activity and
the lineage's respawn count.  A periodic sweep marks entries idle past the
stuck threshold as ``stuck``, reconciles them with the engine's real status,
then either aborts and respawns from the first unfinished step or gives up.

Entry statuses: running | stuck | completed | failed.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Protocol

from subclaw.core.audit import log_event
from subclaw.core.engine import TaskObserver
from subclaw.core.notifier import LogNotifier, Notifier
from subclaw.core.tasks import Destination

logger = logging.getLogger("subclaw.watchdog")

# Engine statuses that block on an answer or another task, each with its own deadline
WAITING_STATUSES = ("waiting_dependency", "waiting_approval", "waiting_clarification")


class SupervisedEngine(Protocol):
    def spawn(self, goal: str, **options: Any) -> str: ...

    def get_status(self, task_id: str) -> Optional[dict]: ...

    def abort(self, task_id: str) -> bool: ...


@dataclass
class WatchdogEntry:
    task_id: str
    goal: str
    plan: List[str] = field(default_factory=list)
    current_step: int = 0
    started_at: float = 0.0
    last_activity: float = 0.0
    status: str = "running"
    respawn_count: int = 0
    options: Dict[str, Any] = field(default_factory=dict)
    completed_at: Optional[float] = None
    error: Optional[str] = None
    respawned_as: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")

    @property
    def destination(self) -> Destination:
        dest = self.options.get("destination")
        return dest if isinstance(dest, Destination) else Destination()


def resume_context(plan: List[str], current_step: int) -> str:
    remaining = plan[current_step:]
    lines = "\n".join(f"{current_step + i + 1}. {step}" for i, step in enumerate(remaining))
    return (
        f"RESUMING from step {current_step + 1}. Previous attempt got stuck.\n"
        f"Remaining steps:\n{lines}"
    )


class Watchdog(TaskObserver):
    def __init__(
        self,
        engine: SupervisedEngine,
        notifier: Optional[Notifier] = None,
        interval: float = 300.0,
        stuck_after: float = 300.0,
        cleanup_after: float = 1800.0,
        max_respawns: int = 3,
        data_dir: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.engine = engine
        self.notifier: Notifier = notifier or LogNotifier()
        self.interval = interval
        self.stuck_after = stuck_after
        self.cleanup_after = cleanup_after
        self.max_respawns = max_respawns
        self.data_dir = data_dir
        self._clock = clock
        self._entries: Dict[str, WatchdogEntry] = {}
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ── Registration and events ──────────────────────────────

    def register(
        self,
        task_id: str,
        goal: str,
        plan: Optional[List[str]] = None,
        respawn_count: int = 0,
        options: Optional[Dict[str, Any]] = None,
    ) -> WatchdogEntry:
        """Track ``task_id``; re-registering keeps progress and raises the respawn count."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(task_id)
            if entry is None:
                entry = WatchdogEntry(
                    task_id=task_id,
                    goal=goal,
                    plan=list(plan or []),
                    started_at=now,
                    last_activity=now,
                    respawn_count=respawn_count,
                    options=dict(options or {}),
                )
                self._entries[task_id] = entry
                logger.info("Watchdog tracking [%s]: %s", task_id, goal[:60])
            else:
                entry.respawn_count = max(entry.respawn_count, respawn_count)
                if plan and not entry.plan:
                    entry.plan = list(plan)
                if options:
                    entry.options = dict(options)
            return entry

    def task_spawned(self, task_id: str, goal: str, options: Dict[str, Any]) -> None:
        self.register(task_id, goal, options=options)

    def plan_ready(self, task_id: str, plan: List[str]) -> None:
        with self._lock:
            entry = self._entries.get(task_id)
            if entry is not None:
                entry.plan = list(plan)
                entry.current_step = 0
                entry.last_activity = self._clock()

    def activity(self, task_id: str) -> None:
        with self._lock:
            entry = self._entries.get(task_id)
            if entry is not None:
                entry.last_activity = self._clock()

    def step_completed(self, task_id: str, index: int) -> None:
        with self._lock:
            entry = self._entries.get(task_id)
            if entry is not None:
                entry.current_step = max(entry.current_step, index + 1)
                entry.last_activity = self._clock()

    def _mark_terminal(self, task_id: str, status: str, error: Optional[str] = None) -> None:
        with self._lock:
            entry = self._entries.get(task_id)
            if entry is None or entry.is_terminal:
                return
            entry.status = status
            entry.error = error
            entry.completed_at = self._clock()
            entry.last_activity = entry.completed_at
        logger.info("Watchdog: [%s] %s", task_id, status)

    def task_completed(self, task_id: str, result: str) -> None:
        self._mark_terminal(task_id, "completed")

    def task_failed(self, task_id: str, error: str) -> None:
        self._mark_terminal(task_id, "failed", error)

    # ── Sweep ────────────────────────────────────────────────

    def check(self, now: Optional[float] = None) -> List[str]:
        """Run one sweep.  Returns ids of tasks spawned as respawns."""
        now = self._clock() if now is None else now
        idle: List[WatchdogEntry] = []
        with self._lock:
            for task_id, entry in list(self._entries.items()):
                if entry.is_terminal:
                    if entry.completed_at is not None and now - entry.completed_at > self.cleanup_after:
                        del self._entries[task_id]
                        logger.info("Watchdog: cleaned up [%s]", task_id)
                    continue
                if entry.status != "running":
                    continue
                if now - entry.last_activity > self.stuck_after:
                    idle.append(entry)

        spawned: List[str] = []
        for entry in idle:
            snapshot = self.engine.get_status(entry.task_id)
            actual = snapshot.get("status") if snapshot else None
            with self._lock:
                if entry.status != "running":
                    continue
                if actual in WAITING_STATUSES:
                    # Each wait is bounded by its own timeout
                    entry.last_activity = now
                    logger.debug("Watchdog: [%s] idle but %s", entry.task_id, actual)
                    continue
                logger.warning("Watchdog: [%s] stuck (idle %ds)", entry.task_id, int(now - entry.last_activity))
                entry.status = "stuck"
            new_id = self._handle_stuck(entry, now, actual)
            if new_id:
                spawned.append(new_id)
        return spawned

    def _handle_stuck(self, entry: WatchdogEntry, now: float, actual: Optional[str]) -> Optional[str]:
        if actual in ("completed", "failed", "aborted"):
            with self._lock:
                entry.status = "completed" if actual == "completed" else "failed"
                entry.completed_at = now
            logger.info("Watchdog: [%s] actually %s, updating", entry.task_id, actual)
            return None

        self.engine.abort(entry.task_id)

        with self._lock:
            can_resume = bool(entry.plan) and entry.current_step < len(entry.plan)
            if not can_resume or entry.respawn_count >= self.max_respawns:
                reason = "max respawns reached" if entry.respawn_count >= self.max_respawns else "no plan to resume from"
                entry.status = "failed"
                entry.error = reason
                entry.completed_at = now
                respawn_count = None
            else:
                respawn_count = entry.respawn_count + 1
                remaining = entry.plan[entry.current_step:]
                options = dict(entry.options)
                context = resume_context(entry.plan, entry.current_step)

        if respawn_count is None:
            logger.warning("Watchdog: [%s] not respawning (%s)", entry.task_id, reason)
            log_event(self.data_dir, "watchdog.abandoned", {"task_id": entry.task_id, "reason": reason})
            self._notify(entry, f"🐕 Agent [{entry.task_id}] stuck and abandoned ({reason})")
            return None

        spawn_options = dict(options)
        spawn_options["context"] = f"{options.get('context') or ''}\n\n{context}".strip()
        try:
            new_id = self.engine.spawn(entry.goal, **spawn_options)
        except Exception as exc:  # noqa: BLE001
            logger.error("Watchdog: respawn failed for [%s]: %s", entry.task_id, exc)
            with self._lock:
                entry.status = "failed"
                entry.error = f"respawn failed: {exc}"
                entry.completed_at = now
            return None

        self.register(new_id, entry.goal, plan=remaining, respawn_count=respawn_count, options=options)
        with self._lock:
            entry.respawn_count = respawn_count
            entry.status = "failed"
            entry.error = f"respawned as {new_id}"
            entry.respawned_as = new_id
            entry.completed_at = now
        message = (
            f"🐕 Watchdog respawned stuck agent [{entry.task_id}] → [{new_id}] "
            f"(attempt {respawn_count}/{self.max_respawns}, from step {entry.current_step + 1})"
        )
        logger.info(message)
        log_event(self.data_dir, "watchdog.respawned", {
            "task_id": entry.task_id,
            "new_task_id": new_id,
            "respawn_count": respawn_count,
            "from_step": entry.current_step + 1,
        })
        self._notify(entry, message)
        return new_id

    def _notify(self, entry: WatchdogEntry, text: str) -> None:
        try:
            self.notifier.notify(entry.destination, text)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Watchdog notify failed for %s: %s", entry.task_id, exc)

    # ── Introspection ────────────────────────────────────────

    def get_entry(self, task_id: str) -> Optional[WatchdogEntry]:
        with self._lock:
            return self._entries.get(task_id)

    def get_status(self) -> List[dict]:
        now = self._clock()
        with self._lock:
            return [
                {
                    "task_id": e.task_id,
                    "goal": e.goal[:60],
                    "status": e.status,
                    "current_step": e.current_step,
                    "total_steps": len(e.plan),
                    "idle_seconds": int(now - e.last_activity),
                    "respawns": e.respawn_count,
                    "respawned_as": e.respawned_as,
                }
                for e in self._entries.values()
            ]

    # ── Thread ───────────────────────────────────────────────

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()

        def _loop() -> None:
            logger.info("Watchdog started (check every %ss)", self.interval)
            while not self._stop_event.wait(self.interval):
                try:
                    self.check()
                except Exception as exc:  # noqa: BLE001
                    logger.error("Watchdog sweep failed: %s", exc)

        self._thread = threading.Thread(target=_loop, daemon=True, name="subagent-watchdog")
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
