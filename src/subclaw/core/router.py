"""Chat command router for sub-agents.

Parses an inbound message from any channel into a ``ChatRequest`` and
dispatches the ``/subagent`` command family.  Spawned tasks report back to
the chat they were started from.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from subclaw.core.audit import log_event
from subclaw.core.engine import SubAgentEngine
from subclaw.core.logging_config import append_to_file, get_activity_log_path
from subclaw.core.tasks import Destination
from subclaw.core.watchdog import Watchdog

logger = logging.getLogger("subclaw.router")

STATUS_EMOJI = {
    "pending": "⏳",
    "waiting_dependency": "🔗",
    "planning": "🧠",
    "waiting_approval": "📋",
    "running": "🔄",
    "waiting_clarification": "❓",
    "completed": "✅",
    "failed": "❌",
    "aborted": "🛑",
}


@dataclass
class ChatRequest:
    """Channel-agnostic inbound message."""
    channel: str            # "telegram" | "http" | ...
    sender_id: str
    chat_id: str
    text: str
    message_id: Optional[str] = None


@dataclass
class ChatResponse:
    """What to send back."""
    text: str
    status: str = "ok"      # ok | denied | ignored | error


def handle_chat(
    req: ChatRequest,
    *,
    engine: SubAgentEngine,
    watchdog: Optional[Watchdog] = None,
    allow_from: Optional[list[str]] = None,
    owner_id: Optional[str] = None,
    data_dir: Optional[str] = None,
) -> ChatResponse:
    """Route a normalised chat request and return a response."""
    text = req.text.strip()
    append_to_file(get_activity_log_path(), f"[{req.channel}:{req.sender_id}] {text[:200]}")

    if text == "/help" or text == "/subagent:help":
        return _cmd_help()
    if text.startswith("/whoami"):
        return ChatResponse(text=f"{req.channel}:{req.sender_id}")

    if not text.startswith("/subagent"):
        return ChatResponse(text="Unknown command. Try /help.", status="ignored")

    allowed = allow_from or []
    if allowed and req.sender_id not in allowed and not (owner_id and req.sender_id == owner_id):
        logger.warning("Denied %s:%s: %s", req.channel, req.sender_id, text[:80])
        return ChatResponse(text="Not authorized", status="denied")

    log_event(data_dir, f"{req.channel}.command", {
        "sender_id": req.sender_id, "chat_id": req.chat_id, "command": text.split(" ", 1)[0],
    })

    command, _, rest = text.partition(" ")
    rest = rest.strip()

    if command == "/subagent":
        return _cmd_spawn(engine, req, rest)
    if command == "/subagent:status":
        return _cmd_status(engine, rest)
    if command == "/subagent:abort":
        return _cmd_abort(engine, rest)
    if command == "/subagent:answer":
        return _cmd_answer(engine, rest)
    if command == "/subagent:abort_all":
        count = engine.abort_all()
        return ChatResponse(text=f"🛑 Aborted {count} sub-agent(s).")
    if command == "/subagent:clear":
        count = engine.clear_all()
        return ChatResponse(text=f"🧹 Cleared {count} sub-agent(s).")
    if command == "/subagent:watchdog":
        return _cmd_watchdog(watchdog)
    return ChatResponse(text=f"Unknown command: {command}. Try /help.", status="ignored")


# ── Command implementations ──────────────────────────────────

def _cmd_help() -> ChatResponse:
    help_text = (
        "🤖 **subclaw commands:**\n\n"
        "`/subagent <goal>` — Spawn an autonomous sub-agent\n"
        "`/subagent:status [id]` — List sub-agents, or details for one\n"
        "`/subagent:abort <id>` — Abort a sub-agent\n"
        "`/subagent:answer <id> <answer>` — Answer a question or approve a plan\n"
        "`/subagent:abort_all` — Abort every running sub-agent\n"
        "`/subagent:clear` — Abort all and forget every sub-agent\n"
        "`/subagent:watchdog` — Watchdog tracking table\n"
        "`/whoami` — Show your channel:sender_id\n"
        "`/help` — This help message"
    )
    return ChatResponse(text=help_text)


def _cmd_spawn(engine: SubAgentEngine, req: ChatRequest, goal: str) -> ChatResponse:
    if not goal:
        return ChatResponse(text="Usage: /subagent <goal>", status="error")
    destination = Destination(channel=req.channel, target=req.chat_id, reply_to=req.message_id or "")
    try:
        task_id = engine.spawn(goal, can_ask_clarification=True, destination=destination)
    except ValueError as exc:
        return ChatResponse(text=f"Error: {exc}", status="error")
    return ChatResponse(text=f"🤖 Sub-agent `{task_id}` started: {goal[:120]}")


def _cmd_status(engine: SubAgentEngine, task_id: str) -> ChatResponse:
    if not task_id:
        rows = engine.list_all()
        if not rows:
            return ChatResponse(text="No sub-agents.")
        lines = [
            f"{STATUS_EMOJI.get(r['status'], '•')} `{r['task_id']}` {r['status']} "
            f"({r['turn_count']} turns, {r['tokens_used']} tokens) — {r['goal']}"
            for r in rows
        ]
        return ChatResponse(text=f"🤖 **{len(rows)} sub-agent(s):**\n" + "\n".join(lines))

    snap = engine.get_status(task_id)
    if snap is None:
        return ChatResponse(text=f"Sub-agent not found: `{task_id}`", status="error")
    lines = [
        f"{STATUS_EMOJI.get(snap['status'], '•')} **{snap['goal'][:200]}** (`{task_id}`)",
        f"Status: {snap['status']} | Turns: {snap['turn_count']}/{snap['max_turns']} | "
        f"Tokens: {snap['tokens_used']} | Started: {_time_ago(snap['created_at'])}",
    ]
    if snap["plan"]:
        lines.append("Plan:\n" + "\n".join(f"{i + 1}. {s}" for i, s in enumerate(snap["plan"])))
    if snap["clarification_question"]:
        lines.append(f"❓ Waiting for answer: {snap['clarification_question']}")
    if snap["max_turns_reached"]:
        lines.append("⚠️ Max turns reached")
    if snap["timed_out"]:
        lines.append("⏰ Time budget exhausted")
    if snap["result"]:
        lines.append(f"Result:\n{snap['result'][:1500]}")
    if snap["error"]:
        lines.append(f"Error: {snap['error']}")
    return ChatResponse(text="\n".join(lines))


def _cmd_abort(engine: SubAgentEngine, task_id: str) -> ChatResponse:
    if not task_id:
        return ChatResponse(text="Usage: /subagent:abort <id>", status="error")
    if engine.abort(task_id):
        return ChatResponse(text=f"🛑 Abort requested for `{task_id}`.")
    return ChatResponse(text=f"Sub-agent `{task_id}` not found or already finished.", status="error")


def _cmd_answer(engine: SubAgentEngine, rest: str) -> ChatResponse:
    task_id, _, answer = rest.partition(" ")
    answer = answer.strip()
    if not task_id or not answer:
        return ChatResponse(text="Usage: /subagent:answer <id> <answer>", status="error")
    if engine.answer_clarification(task_id, answer):
        return ChatResponse(text=f"✅ Answer delivered to `{task_id}`.")
    return ChatResponse(text=f"Sub-agent `{task_id}` is not waiting for an answer.", status="error")


def _cmd_watchdog(watchdog: Optional[Watchdog]) -> ChatResponse:
    if watchdog is None:
        return ChatResponse(text="Watchdog not available.")
    rows = watchdog.get_status()
    if not rows:
        return ChatResponse(text="🐕 Watchdog: nothing tracked.")
    lines = [
        f"`{r['task_id']}` {r['status']} step {r['current_step']}/{r['total_steps']} "
        f"idle {r['idle_seconds']}s respawns {r['respawns']} — {r['goal']}"
        for r in rows
    ]
    return ChatResponse(text="🐕 **Watchdog:**\n" + "\n".join(lines))


def _time_ago(iso: Optional[str]) -> str:
    """Return a human-readable 'X ago' string."""
    if not iso:
        return "?"
    dt = datetime.fromisoformat(iso)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    seconds = int((datetime.now(timezone.utc) - dt).total_seconds())
    if seconds < 60:
        return f"{seconds}s ago"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"
