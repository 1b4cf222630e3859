from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger("subclaw.dependency")


class DependencyFailed(RuntimeError):
    """The awaited task failed, was aborted, vanished, or the wait ran out."""


@dataclass
class DependencyOutcome:
    task_id: str
    result: Optional[str]


class DependencyResolver:
    """Gate a task behind another task's completion by polling its status."""

    def __init__(
        self,
        get_status: Callable[[str], Optional[dict]],
        poll_interval: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._get_status = get_status
        self.poll_interval = poll_interval
        self._clock = clock

    def wait_for(
        self,
        dependency_id: str,
        timeout: float,
        abort_event: Optional[threading.Event] = None,
    ) -> Optional[DependencyOutcome]:
        """Return the dependency's outcome, ``None`` if aborted while waiting.

        Raises ``DependencyFailed`` when the dependency fails, is aborted,
        is unknown, or does not finish within ``timeout`` seconds.
        """
        deadline = self._clock() + timeout
        while True:
            if abort_event is not None and abort_event.is_set():
                return None
            snapshot = self._get_status(dependency_id)
            if snapshot is None:
                raise DependencyFailed(f"Dependency {dependency_id} failed or timed out (unknown task)")
            status = snapshot.get("status")
            if status == "completed":
                return DependencyOutcome(task_id=dependency_id, result=snapshot.get("result"))
            if status in ("failed", "aborted"):
                raise DependencyFailed(f"Dependency {dependency_id} failed or timed out ({status})")
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise DependencyFailed(f"Dependency {dependency_id} failed or timed out")
            wait = min(self.poll_interval, remaining)
            if abort_event is not None:
                abort_event.wait(wait)
            else:
                time.sleep(wait)
