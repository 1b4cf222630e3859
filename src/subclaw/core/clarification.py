"""Clarification gate: one pending answer slot per task with a deadline.

The loop ``open``s a slot, tells the caller what it is waiting for, then
``wait``s.  The slot ends one of three ways: ``resolve`` (an answer),
``cancel`` (abort, resolves to ``None`` at once) or the deadline passing
(``None``).
"""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
import threading
import time
from typing import Callable, Dict, Optional

logger = logging.getLogger("subclaw.clarification")

NO_ANSWER_PLACEHOLDER = "No answer provided. Continue with your best judgment."


@dataclass
class ClarificationSlot:
    task_id: str
    question: str
    deadline: float
    answer: Optional[str] = None
    resolved_by: str = ""             # answer | cancel | timeout
    done: threading.Event = field(default_factory=threading.Event, repr=False)


class ClarificationGate:
    def __init__(self, timeout: float = 300.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.timeout = timeout
        self._clock = clock
        self._slots: Dict[str, ClarificationSlot] = {}
        self._lock = threading.Lock()

    def open(self, task_id: str, question: str, timeout: Optional[float] = None) -> ClarificationSlot:
        """Open the task's slot, cancelling any slot it already had."""
        slot = ClarificationSlot(
            task_id=task_id,
            question=question,
            deadline=self._clock() + (self.timeout if timeout is None else timeout),
        )
        with self._lock:
            previous = self._slots.get(task_id)
            self._slots[task_id] = slot
        if previous is not None and not previous.done.is_set():
            previous.resolved_by = "cancel"
            previous.done.set()
        return slot

    def wait(self, slot: ClarificationSlot) -> Optional[str]:
        """Block until the slot is resolved, cancelled or its deadline passes."""
        try:
            while not slot.done.is_set():
                remaining = slot.deadline - self._clock()
                if remaining <= 0:
                    slot.resolved_by = "timeout"
                    logger.info("Clarification for %s timed out", slot.task_id)
                    return None
                slot.done.wait(remaining)
            return slot.answer
        finally:
            with self._lock:
                if self._slots.get(slot.task_id) is slot:
                    del self._slots[slot.task_id]

    def resolve(self, task_id: str, answer: str) -> bool:
        with self._lock:
            slot = self._slots.get(task_id)
        if slot is None or slot.done.is_set():
            return False
        slot.answer = answer
        slot.resolved_by = "answer"
        slot.done.set()
        return True

    def cancel(self, task_id: str) -> bool:
        with self._lock:
            slot = self._slots.get(task_id)
        if slot is None or slot.done.is_set():
            return False
        slot.answer = None
        slot.resolved_by = "cancel"
        slot.done.set()
        return True

    def pending_question(self, task_id: str) -> Optional[str]:
        with self._lock:
            slot = self._slots.get(task_id)
        return slot.question if slot and not slot.done.is_set() else None
