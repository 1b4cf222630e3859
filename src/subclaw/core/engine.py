"""Sub-agent execution engine.

Each spawned task runs on its own daemon thread:

    pending → [waiting_dependency] → planning → [waiting_approval]
            → running ⇄ waiting_clarification → completed | failed | aborted

Abort is cooperative.  ``abort`` sets a per-task event and cancels any open
clarification slot; the loop notices at its next checkpoint.  Every field
change on a task goes through ``_step``, which refuses to touch a terminal
task, so nothing mutates after ``completed_at`` is set.  Observers (the
watchdog) are always called outside the registry lock.
"""
from __future__ import annotations

from contextlib import contextmanager
import json
import logging
import re
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

from subclaw.core.audit import log_event
from subclaw.core.clarification import NO_ANSWER_PLACEHOLDER, ClarificationGate
from subclaw.core.dependency import DependencyFailed, DependencyResolver
from subclaw.core.knowledge import KnowledgeSource, gather_knowledge
from subclaw.core.notifier import LogNotifier, Notifier
from subclaw.core.planner import make_plan
from subclaw.core.store import TaskStore
from subclaw.core.tasks import (
    Destination,
    KnowledgeScope,
    TERMINAL_STATUSES,
    Task,
    new_task_id,
)
from subclaw.core.tools import CLARIFICATION_TOOL, STEP_TOOL, ToolRegistry
from subclaw.integrations.llm import (
    DEFAULT_TEMPERATURE,
    EXECUTION_MAX_TOKENS,
    SUMMARY_MAX_TOKENS,
    ChatProvider,
    ChatResult,
    is_transient,
    max_tokens_for,
)

logger = logging.getLogger("subclaw.engine")

REJECT_PATTERN = re.compile(r"\b(no|nope|nah|reject(?:ed)?|cancel|stop|deny|denied|don'?t)\b|👎", re.IGNORECASE)
INTERRUPTED_ERROR = "Interrupted: process restarted while task was running"
ABORT_ALL_ERROR = "Stopped by abort_all"
MAX_TURNS_PROMPT = "Max execution turns reached. Give a final summary of what was accomplished and what remains."
TIMEOUT_PROMPT = "Time budget exhausted. Give a final summary of what was accomplished and what remains."


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TaskObserver:
    """Receives lifecycle events from the engine.  Methods default to no-ops."""

    def task_spawned(self, task_id: str, goal: str, options: Dict[str, Any]) -> None:
        pass

    def plan_ready(self, task_id: str, plan: List[str]) -> None:
        pass

    def activity(self, task_id: str) -> None:
        pass

    def step_completed(self, task_id: str, index: int) -> None:
        pass

    def task_completed(self, task_id: str, result: str) -> None:
        pass

    def task_failed(self, task_id: str, error: str) -> None:
        pass


class _Aborted(Exception):
    """Raised inside a task thread once its abort flag is seen."""


def build_system_prompt(task: Task, knowledge: str = "") -> str:
    prompt = f"You are an autonomous sub-agent executing a specific task.\n\nGOAL: {task.goal}"
    if task.context:
        prompt += f"\nCONTEXT: {task.context}"
    prompt += (
        "\n\nYou have access to tools. Use them to accomplish the goal step by step.\n"
        "When the goal is fully achieved, respond with a final summary WITHOUT calling any tools.\n\n"
        "Rules:\n"
        "- Be methodical: verify each step before moving to the next\n"
        "- If a command fails, try to fix it or find alternatives\n"
        "- Keep output concise and focused on results"
    )
    if task.can_ask_clarification:
        prompt += f"\n- Only use {CLARIFICATION_TOOL} when absolutely stuck and cannot proceed"
    if task.plan:
        prompt += f"\n- Call {STEP_TOOL} with the step number after finishing each plan step"
        prompt += f"\n\nPLAN:\n{task.numbered_plan()}"
    if knowledge:
        prompt += f"\n\nRELEVANT KNOWLEDGE:\n{knowledge}"
    return prompt


class SubAgentEngine:
    def __init__(
        self,
        provider: ChatProvider,
        tools: ToolRegistry,
        *,
        store: Optional[TaskStore] = None,
        notifier: Optional[Notifier] = None,
        knowledge_rag: Optional[KnowledgeSource] = None,
        knowledge_collections: Optional[KnowledgeSource] = None,
        data_dir: Optional[str] = None,
        planner_model: str = "openai/gpt-4o",
        executor_model: str = "openai/gpt-4o-mini",
        max_turns: int = 100,
        timeout: float = 3600.0,
        report_every: int = 5,
        clarification_timeout: float = 300.0,
        dependency_poll_interval: float = 2.0,
        retry_delays: Sequence[float] = (10.0, 20.0, 30.0),
        task_retention: float = 7200.0,
        restore_max_age: float = 86400.0,
    ) -> None:
        self.provider = provider
        self.tools = tools
        self.store = store
        self.notifier: Notifier = notifier or LogNotifier()
        self.knowledge_rag = knowledge_rag
        self.knowledge_collections = knowledge_collections
        self.data_dir = data_dir
        self.planner_model = planner_model
        self.executor_model = executor_model
        self.max_turns = max_turns
        self.timeout = timeout
        self.report_every = report_every
        self.retry_delays = tuple(retry_delays)
        self.task_retention = task_retention
        self.restore_max_age = restore_max_age

        self.gate = ClarificationGate(timeout=clarification_timeout)
        self.dependencies = DependencyResolver(self.get_status, poll_interval=dependency_poll_interval)

        self._tasks: Dict[str, Task] = {}
        self._aborts: Dict[str, threading.Event] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._observers: List[TaskObserver] = []
        self._lock = threading.RLock()

        self._restore()

    # ── Observers / notifications ────────────────────────────

    def add_observer(self, observer: TaskObserver) -> None:
        self._observers.append(observer)

    def _emit(self, event: str, *args: Any) -> None:
        for observer in list(self._observers):
            try:
                getattr(observer, event)(*args)
            except Exception as exc:  # noqa: BLE001
                logger.error("Observer %s.%s failed: %s", type(observer).__name__, event, exc)

    def _notify(self, task: Task, message: str) -> None:
        try:
            self.notifier.notify(task.destination, f"🤖 [{task.task_id}] {message}")
        except Exception as exc:  # noqa: BLE001
            logger.warning("Notify failed for %s: %s", task.task_id, exc)

    def _persist(self, task: Task) -> None:
        if self.store is None:
            return
        # Evicted or cleared tasks are never written back
        with self._lock:
            if self._tasks.get(task.task_id) is not task:
                return
            self.store.persist(task.task_id, task.to_record())

    # ── Exposed interface ────────────────────────────────────

    def spawn(
        self,
        goal: str,
        context: str = "",
        planner_model: Optional[str] = None,
        executor_model: Optional[str] = None,
        max_turns: Optional[int] = None,
        timeout: Optional[float] = None,
        allowed_tools: Optional[List[str]] = None,
        can_ask_clarification: bool = False,
        require_plan_approval: bool = False,
        depends_on: Optional[str] = None,
        report_every: Optional[int] = None,
        knowledge: Optional[KnowledgeScope] = None,
        destination: Optional[Destination] = None,
    ) -> str:
        if not goal or not goal.strip():
            raise ValueError("goal must not be empty")
        self.tools.validate_allow_list(allowed_tools)
        task = Task(
            task_id=new_task_id(),
            goal=goal.strip(),
            context=context or "",
            planner_model=planner_model or self.planner_model,
            executor_model=executor_model or self.executor_model,
            max_turns=max(1, max_turns if max_turns is not None else self.max_turns),
            timeout=timeout if timeout is not None else self.timeout,
            report_every=report_every if report_every is not None else self.report_every,
            allowed_tools=list(allowed_tools) if allowed_tools is not None else None,
            can_ask_clarification=can_ask_clarification,
            require_plan_approval=require_plan_approval,
            depends_on=depends_on or None,
            knowledge=knowledge,
            destination=destination or Destination(),
        )
        abort = threading.Event()
        thread = threading.Thread(
            target=self._run, args=(task, abort), daemon=True, name=f"subagent-{task.task_id}"
        )
        with self._lock:
            self._tasks[task.task_id] = task
            self._aborts[task.task_id] = abort
            self._threads[task.task_id] = thread
        self._persist(task)
        logger.info("SubAgent [%s] spawned: %s", task.task_id, task.goal[:120])
        self._emit("task_spawned", task.task_id, task.goal, self._spawn_options(task))
        thread.start()
        return task.task_id

    @staticmethod
    def _spawn_options(task: Task) -> Dict[str, Any]:
        return {
            "context": task.context,
            "planner_model": task.planner_model,
            "executor_model": task.executor_model,
            "max_turns": task.max_turns,
            "timeout": task.timeout,
            "allowed_tools": list(task.allowed_tools) if task.allowed_tools is not None else None,
            "can_ask_clarification": task.can_ask_clarification,
            "require_plan_approval": task.require_plan_approval,
            "depends_on": task.depends_on,
            "report_every": task.report_every,
            "knowledge": task.knowledge,
            "destination": task.destination,
        }

    def get_status(self, task_id: str) -> Optional[dict]:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.to_snapshot() if task else None

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._lock:
            return self._tasks.get(task_id)

    def list_all(self) -> List[dict]:
        with self._lock:
            return [t.to_row() for t in self._tasks.values()]

    def answer_clarification(self, task_id: str, answer: str) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status not in ("waiting_clarification", "waiting_approval"):
                return False
        return self.gate.resolve(task_id, answer)

    def abort(self, task_id: str) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            abort = self._aborts.get(task_id)
            if task is None or task.is_terminal or abort is None:
                return False
            abort.set()
        self.gate.cancel(task_id)
        logger.info("SubAgent [%s] abort requested", task_id)
        return True

    def abort_all(self) -> int:
        with self._lock:
            live = [t for t in self._tasks.values() if not t.is_terminal]
            for task in live:
                abort = self._aborts.get(task.task_id)
                if abort is not None:
                    abort.set()
        count = 0
        for task in live:
            self.gate.cancel(task.task_id)
            if self._finish(task, "aborted", error=ABORT_ALL_ERROR, notice="🛑 Stopped."):
                count += 1
        if count:
            logger.info("Aborted %d sub-agents", count)
        return count

    def clear_all(self) -> int:
        self.abort_all()
        with self._lock:
            ids = list(self._tasks)
            self._tasks.clear()
            self._aborts.clear()
            self._threads.clear()
        if self.store is not None:
            for task_id in ids:
                self.store.delete(task_id)
        logger.info("Cleared %d sub-agents", len(ids))
        return len(ids)

    def wait(self, task_id: str, timeout: Optional[float] = None) -> Optional[dict]:
        """Block until the task's thread exits (or ``timeout``); return its snapshot."""
        with self._lock:
            thread = self._threads.get(task_id)
        if thread is not None:
            thread.join(timeout)
        return self.get_status(task_id)

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """Evict terminal tasks finished longer than the retention window ago."""
        cutoff = (now or _now()) - timedelta(seconds=self.task_retention)
        with self._lock:
            stale = [
                tid for tid, t in self._tasks.items()
                if t.is_terminal and t.completed_at and t.completed_at < cutoff
            ]
            for tid in stale:
                self._tasks.pop(tid, None)
                self._aborts.pop(tid, None)
                self._threads.pop(tid, None)
        for tid in stale:
            if self.store is not None:
                self.store.delete(tid)
            logger.info("SubAgent [%s] cleaned up", tid)
        return len(stale)

    # ── Restore ──────────────────────────────────────────────

    def _restore(self) -> None:
        if self.store is None:
            return
        cutoff = _now() - timedelta(seconds=self.restore_max_age)
        restored = 0
        for record in self.store.restore_all():
            try:
                task = Task.from_record(record)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable task record: %s", exc)
                continue
            if task.created_at < cutoff:
                self.store.delete(task.task_id)
                continue
            if not task.is_terminal:
                task.status = "failed"
                task.error = INTERRUPTED_ERROR
                task.clarification_question = None
                task.completed_at = _now()
                task.touch()
                self.store.persist(task.task_id, task.to_record())
                log_event(self.data_dir, "subagent.interrupted", {"task_id": task.task_id})
            self._tasks[task.task_id] = task
            restored += 1
        if restored:
            logger.info("Restored %d sub-agent tasks from disk", restored)

    # ── Task thread ──────────────────────────────────────────

    @contextmanager
    def _step(self, task: Task, abort: threading.Event) -> Iterator[None]:
        """Mutation checkpoint: refuses terminal tasks and honours abort."""
        with self._lock:
            if task.is_terminal or abort.is_set():
                raise _Aborted()
            yield
            task.touch()

    def _finish(
        self,
        task: Task,
        status: str,
        result: Optional[str] = None,
        error: Optional[str] = None,
        notice: Optional[str] = None,
    ) -> bool:
        """Single terminal transition; later calls for the same task are no-ops."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"not a terminal status: {status}")
        with self._lock:
            if task.is_terminal:
                return False
            task.status = status
            task.result = result
            task.error = error
            task.clarification_question = None
            task.completed_at = _now()
            task.touch()
        self._persist(task)
        log_event(self.data_dir, f"subagent.{status}", {
            "task_id": task.task_id,
            "turns": task.turn_count,
            "tokens": task.tokens_used,
            "error": error,
        })
        logger.info(
            "SubAgent [%s] %s after %d turns (%d tokens)",
            task.task_id, status, task.turn_count, task.tokens_used,
        )
        if status == "completed":
            self._emit("task_completed", task.task_id, result or "")
        else:
            self._emit("task_failed", task.task_id, error or status)
        if notice:
            self._notify(task, notice)
        return True

    def _run(self, task: Task, abort: threading.Event) -> None:
        try:
            self._execute(task, abort)
        except _Aborted:
            self._finish(task, "aborted", error="Aborted by request", notice="🛑 Task aborted.")
        except Exception as exc:  # noqa: BLE001
            logger.exception("SubAgent [%s] fatal: %s", task.task_id, exc)
            self._finish(task, "failed", error=f"Internal error: {exc}", notice=f"❌ Failed: {exc}")

    def _execute(self, task: Task, abort: threading.Event) -> None:
        started = time.monotonic()
        deadline = started + task.timeout

        if task.depends_on:
            with self._step(task, abort):
                task.status = "waiting_dependency"
            self._persist(task)
            logger.info("SubAgent [%s] waiting for dependency %s", task.task_id, task.depends_on)
            try:
                outcome = self.dependencies.wait_for(task.depends_on, task.timeout, abort)
            except DependencyFailed as exc:
                self._finish(task, "failed", error=str(exc), notice=f"❌ {exc}")
                return
            if outcome is None:
                raise _Aborted()
            if outcome.result:
                with self._step(task, abort):
                    task.context += f"\n\nOutput from previous task ({outcome.task_id}):\n{outcome.result}"

        knowledge = gather_knowledge(task.knowledge, self.knowledge_rag, self.knowledge_collections)
        if knowledge:
            logger.info("SubAgent [%s] loaded %d chars of knowledge", task.task_id, len(knowledge))

        with self._step(task, abort):
            task.status = "planning"
        self._persist(task)
        self._emit("activity", task.task_id)
        plan = make_plan(self.provider, task.planner_model, task.goal, task.context, knowledge, task.task_id)
        with self._step(task, abort):
            task.plan = list(plan)
        self._persist(task)
        self._emit("plan_ready", task.task_id, list(plan))
        logger.info("SubAgent [%s] plan: %d steps", task.task_id, len(plan))
        self._notify(task, f"📋 Plan ({len(plan)} steps):\n{task.numbered_plan()}")

        if task.require_plan_approval and not self._await_approval(task, abort):
            return

        self._loop(task, abort, knowledge, deadline)

    def _await_approval(self, task: Task, abort: threading.Event) -> bool:
        with self._step(task, abort):
            task.status = "waiting_approval"
            slot = self.gate.open(task.task_id, "Approve this plan?")
        self._persist(task)
        self._notify(task, "⏳ Waiting for plan approval...")
        answer = self.gate.wait(slot)
        if abort.is_set():
            raise _Aborted()
        if answer is None or REJECT_PATTERN.search(answer):
            self._finish(task, "aborted", error="Plan rejected", notice="🛑 Plan rejected, task aborted.")
            return False
        self._emit("activity", task.task_id)
        return True

    def _chat(
        self,
        task: Task,
        abort: threading.Event,
        tools: Optional[List[Dict[str, Any]]],
        max_tokens: int,
    ) -> ChatResult:
        """Provider call with fixed backoff on transient errors; fatal errors raise."""
        with self._lock:
            messages = list(task.messages)
        attempts = len(self.retry_delays)
        for attempt in range(attempts + 1):
            try:
                return self.provider.chat(
                    messages,
                    tools,
                    model=task.executor_model,
                    max_tokens=max_tokens,
                    temperature=DEFAULT_TEMPERATURE,
                )
            except Exception as exc:  # noqa: BLE001
                if not is_transient(exc) or attempt >= attempts:
                    raise
                delay = self.retry_delays[attempt]
                logger.warning(
                    "SubAgent [%s] retryable error (attempt %d/%d): %s. Retrying in %ss",
                    task.task_id, attempt + 1, attempts, exc, delay,
                )
                if abort.wait(delay):
                    raise _Aborted()
        raise AssertionError("unreachable")

    def _loop(self, task: Task, abort: threading.Event, knowledge: str, deadline: float) -> None:
        model_name = task.executor_model.split("/", 1)[-1]
        with self._step(task, abort):
            task.status = "running"
            task.messages = [
                {"role": "system", "content": build_system_prompt(task, knowledge)},
                {"role": "user", "content": f"Execute this goal: {task.goal}\n\nPlan:\n{task.numbered_plan()}"},
            ]
        self._persist(task)
        specs = self.tools.effective(task.allowed_tools, task.can_ask_clarification, bool(task.plan))
        definitions = self.tools.definitions(specs)
        offered = {s.name for s in specs}

        timed_out = False
        while task.turn_count < task.max_turns:
            if abort.is_set():
                raise _Aborted()
            if time.monotonic() > deadline:
                timed_out = True
                break
            with self._step(task, abort):
                task.turn_count += 1
            self._emit("activity", task.task_id)
            logger.debug("SubAgent [%s] turn %d/%d", task.task_id, task.turn_count, task.max_turns)

            try:
                response = self._chat(
                    task, abort, definitions, max_tokens_for(model_name, EXECUTION_MAX_TOKENS)
                )
            except _Aborted:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.error("SubAgent [%s] AI error: %s", task.task_id, exc)
                self._finish(task, "failed", error=f"AI call failed: {exc}", notice=f"❌ Failed: {exc}")
                return

            with self._step(task, abort):
                task.tokens_used += response.tokens_used
            self._emit("activity", task.task_id)

            if not response.tool_calls:
                result = response.text or "(no output)"
                self._finish(
                    task, "completed", result=result,
                    notice=f"✅ Done ({task.turn_count} turns, {task.tokens_used} tokens):\n{result[:2000]}",
                )
                return

            results: List[str] = []
            for call in response.tool_calls:
                logger.info("SubAgent [%s] tool: %s(%s)", task.task_id, call.name, str(call.input)[:80])
                if call.name == CLARIFICATION_TOOL and call.name in offered:
                    results.append(self._ask(task, abort, call.input))
                elif call.name == STEP_TOOL and call.name in offered:
                    results.append(self._complete_step(task, call.input))
                elif call.name not in offered:
                    results.append(f"Unknown tool: {call.name}")
                else:
                    results.append(self.tools.execute(call.name, call.input, task_id=task.task_id))
                self._emit("activity", task.task_id)

            with self._step(task, abort):
                task.messages.append({
                    "role": "assistant",
                    "content": response.text or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": _dump(call.input)},
                        }
                        for call in response.tool_calls
                    ],
                })
                for call, result in zip(response.tool_calls, results):
                    task.messages.append({"role": "tool", "tool_call_id": call.id, "content": result})
            self._persist(task)

            if task.report_every > 0 and task.turn_count % task.report_every == 0:
                names = ", ".join(dict.fromkeys(c.name for c in response.tool_calls))
                self._notify(
                    task,
                    f"🔄 Turn {task.turn_count}/{task.max_turns} | Tools: {names} | Tokens: {task.tokens_used}",
                )

        self._summarize(task, abort, timed_out)

    def _ask(self, task: Task, abort: threading.Event, tool_input: Dict[str, Any]) -> str:
        question = str((tool_input or {}).get("question") or "Need clarification")
        with self._step(task, abort):
            task.status = "waiting_clarification"
            task.clarification_question = question
            slot = self.gate.open(task.task_id, question)
        self._persist(task)
        self._notify(task, f"❓ Asks: {question}")
        answer = self.gate.wait(slot)
        with self._step(task, abort):
            task.status = "running"
            task.clarification_question = None
        self._persist(task)
        self._emit("activity", task.task_id)
        return answer or NO_ANSWER_PLACEHOLDER

    def _complete_step(self, task: Task, tool_input: Dict[str, Any]) -> str:
        try:
            step = int((tool_input or {}).get("step"))
        except (TypeError, ValueError):
            return f"Error [{STEP_TOOL}]: 'step' must be a number"
        if not 1 <= step <= len(task.plan):
            return f"Error [{STEP_TOOL}]: step must be between 1 and {len(task.plan)}"
        self._emit("step_completed", task.task_id, step - 1)
        return f"Step {step} marked complete."

    def _summarize(self, task: Task, abort: threading.Event, timed_out: bool) -> None:
        logger.info(
            "SubAgent [%s] %s, requesting summary",
            task.task_id, "time budget exhausted" if timed_out else "max turns reached",
        )
        with self._step(task, abort):
            task.messages.append({"role": "user", "content": TIMEOUT_PROMPT if timed_out else MAX_TURNS_PROMPT})
            if timed_out:
                task.timed_out = True
            else:
                task.max_turns_reached = True
        model_name = task.executor_model.split("/", 1)[-1]
        try:
            with self._lock:
                messages = list(task.messages)
            summary = self.provider.chat(
                messages,
                None,
                model=task.executor_model,
                max_tokens=max_tokens_for(model_name, SUMMARY_MAX_TOKENS),
                temperature=DEFAULT_TEMPERATURE,
            )
            with self._step(task, abort):
                task.tokens_used += summary.tokens_used
            result = summary.text or "(max turns reached, no summary)"
        except _Aborted:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("SubAgent [%s] summary failed: %s", task.task_id, exc)
            result = _last_content(task.messages[:-1]) or "(max turns reached, no summary)"
        if abort.is_set():
            raise _Aborted()
        header = "⏰ Time budget exhausted." if timed_out else "⚠️ Max turns reached."
        self._finish(task, "completed", result=result, notice=f"{header} Summary:\n{result[:2000]}")


def _dump(value: Any) -> str:
    try:
        return json.dumps(value or {}, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return "{}"


def _last_content(messages: List[Dict[str, Any]]) -> str:
    for message in reversed(messages):
        content = message.get("content")
        if isinstance(content, str) and content:
            return content
    return ""
