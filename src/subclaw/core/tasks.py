"""Task record and state model for autonomous sub-agents.

A ``Task`` is the durable unit of work: goal, plan, transcript, status and
counters.  The engine owns every ``Task`` exclusively; everything else sees
either a snapshot (``to_snapshot``) or the capped persisted record
(``to_record``).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Dict, List, Optional
import uuid

logger = logging.getLogger("subclaw.tasks")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ── Statuses ─────────────────────────────────────────────────

TASK_STATUSES = {
    "pending",
    "waiting_dependency",
    "planning",
    "waiting_approval",
    "running",
    "waiting_clarification",
    "completed",
    "failed",
    "aborted",
}
TERMINAL_STATUSES = {"completed", "failed", "aborted"}

# Persisted-record caps
PERSIST_MAX_MESSAGES = 30
PERSIST_MESSAGE_CHARS = 5000
PERSIST_TOOL_RESULT_CHARS = 2000
PERSIST_CONTEXT_CHARS = 2000
PERSIST_RESULT_CHARS = 5000


def new_task_id() -> str:
    return uuid.uuid4().hex[:8]


# ── Data models ──────────────────────────────────────────────

@dataclass
class Destination:
    """Where notifications about a task are delivered."""
    channel: str = ""       # telegram | log | ...
    target: str = ""        # chat id / peer id
    reply_to: str = ""

    def to_dict(self) -> dict:
        return {"channel": self.channel, "target": self.target, "reply_to": self.reply_to}

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> Destination:
        d = d or {}
        return cls(
            channel=str(d.get("channel", "") or ""),
            target=str(d.get("target", "") or ""),
            reply_to=str(d.get("reply_to", "") or ""),
        )


@dataclass
class KnowledgeScope:
    """Which knowledge sources a task consults before planning."""
    query: str = ""
    collections: List[str] = field(default_factory=list)
    max_docs: int = 5

    def to_dict(self) -> dict:
        return {"query": self.query, "collections": list(self.collections), "max_docs": self.max_docs}

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> Optional[KnowledgeScope]:
        if not d:
            return None
        return cls(
            query=str(d.get("query", "") or ""),
            collections=[str(c) for c in d.get("collections", []) or []],
            max_docs=int(d.get("max_docs", 5) or 5),
        )


@dataclass
class Task:
    """One autonomous goal pursuit with its own plan, transcript and outcome."""
    task_id: str
    goal: str
    context: str = ""
    planner_model: str = ""
    executor_model: str = ""
    max_turns: int = 100
    timeout: float = 3600.0             # seconds of wall-clock budget
    report_every: int = 5
    allowed_tools: Optional[List[str]] = None
    can_ask_clarification: bool = False
    require_plan_approval: bool = False
    depends_on: Optional[str] = None
    knowledge: Optional[KnowledgeScope] = None
    destination: Destination = field(default_factory=Destination)

    status: str = "pending"
    plan: List[str] = field(default_factory=list)
    messages: List[Dict[str, Any]] = field(default_factory=list)
    turn_count: int = 0
    tokens_used: int = 0
    result: Optional[str] = None
    error: Optional[str] = None
    clarification_question: Optional[str] = None
    max_turns_reached: bool = False
    timed_out: bool = False

    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def touch(self) -> None:
        self.updated_at = _now()

    def numbered_plan(self) -> str:
        return "\n".join(f"{i + 1}. {step}" for i, step in enumerate(self.plan))

    def to_snapshot(self) -> dict:
        """Point-in-time view handed to callers; never includes the transcript."""
        return {
            "task_id": self.task_id,
            "goal": self.goal,
            "status": self.status,
            "plan": list(self.plan),
            "turn_count": self.turn_count,
            "max_turns": self.max_turns,
            "tokens_used": self.tokens_used,
            "result": self.result,
            "error": self.error,
            "clarification_question": self.clarification_question,
            "max_turns_reached": self.max_turns_reached,
            "timed_out": self.timed_out,
            "depends_on": self.depends_on,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }

    def to_row(self) -> dict:
        return {
            "task_id": self.task_id,
            "goal": self.goal[:80],
            "status": self.status,
            "turn_count": self.turn_count,
            "tokens_used": self.tokens_used,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }

    def to_record(self) -> dict:
        """Capped durable form: enough to inspect history after a crash."""
        return {
            "task_id": self.task_id,
            "goal": self.goal,
            "context": self.context[:PERSIST_CONTEXT_CHARS],
            "planner_model": self.planner_model,
            "executor_model": self.executor_model,
            "max_turns": self.max_turns,
            "timeout": self.timeout,
            "report_every": self.report_every,
            "allowed_tools": list(self.allowed_tools) if self.allowed_tools is not None else None,
            "can_ask_clarification": self.can_ask_clarification,
            "require_plan_approval": self.require_plan_approval,
            "depends_on": self.depends_on,
            "knowledge": self.knowledge.to_dict() if self.knowledge else None,
            "destination": self.destination.to_dict(),
            "status": self.status,
            "plan": list(self.plan),
            "messages": [_cap_message(m) for m in self.messages[-PERSIST_MAX_MESSAGES:]],
            "turn_count": self.turn_count,
            "tokens_used": self.tokens_used,
            "result": self.result[:PERSIST_RESULT_CHARS] if self.result else self.result,
            "error": self.error[:PERSIST_RESULT_CHARS] if self.error else self.error,
            "clarification_question": self.clarification_question,
            "max_turns_reached": self.max_turns_reached,
            "timed_out": self.timed_out,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_record(cls, d: dict) -> Task:
        allowed = d.get("allowed_tools")
        return cls(
            task_id=d["task_id"],
            goal=d.get("goal", ""),
            context=d.get("context", "") or "",
            planner_model=d.get("planner_model", ""),
            executor_model=d.get("executor_model", ""),
            max_turns=int(d.get("max_turns", 100)),
            timeout=float(d.get("timeout", 3600.0)),
            report_every=int(d.get("report_every", 5)),
            allowed_tools=list(allowed) if allowed is not None else None,
            can_ask_clarification=bool(d.get("can_ask_clarification", False)),
            require_plan_approval=bool(d.get("require_plan_approval", False)),
            depends_on=d.get("depends_on"),
            knowledge=KnowledgeScope.from_dict(d.get("knowledge")),
            destination=Destination.from_dict(d.get("destination")),
            status=d["status"] if d.get("status") in TASK_STATUSES else "pending",
            plan=[str(s) for s in d.get("plan", []) or []],
            messages=list(d.get("messages", []) or []),
            turn_count=int(d.get("turn_count", 0)),
            tokens_used=int(d.get("tokens_used", 0)),
            result=d.get("result"),
            error=d.get("error"),
            clarification_question=d.get("clarification_question"),
            max_turns_reached=bool(d.get("max_turns_reached", False)),
            timed_out=bool(d.get("timed_out", False)),
            created_at=_parse_dt(d.get("created_at")) or _now(),
            updated_at=_parse_dt(d.get("updated_at")) or _now(),
            completed_at=_parse_dt(d.get("completed_at")),
        )


def _cap_message(message: Dict[str, Any]) -> Dict[str, Any]:
    capped = dict(message)
    limit = PERSIST_TOOL_RESULT_CHARS if capped.get("role") == "tool" else PERSIST_MESSAGE_CHARS
    content = capped.get("content")
    if isinstance(content, str):
        capped["content"] = content[:limit]
    return capped
