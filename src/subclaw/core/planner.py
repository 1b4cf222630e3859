from __future__ import annotations

import json
import logging
import re
from typing import List, Optional

from subclaw.integrations.llm import (
    DEFAULT_TEMPERATURE,
    PLANNING_MAX_TOKENS,
    ChatProvider,
    max_tokens_for,
)

logger = logging.getLogger("subclaw.planner")

PLANNER_SYSTEM_PROMPT = (
    "You are a planning agent. Given a goal and context, generate a concise step-by-step plan.\n"
    "Output ONLY a JSON array of step strings. No markdown, no explanation.\n"
    'Example: ["Step 1: Check current state", "Step 2: Make changes", "Step 3: Verify"]'
)

_JSON_ARRAY = re.compile(r"\[[\s\S]*\]")
_LIST_MARKER = re.compile(r"^(?:\d+[\.\)]|[-*•])\s*")


def build_planner_messages(goal: str, context: str = "", knowledge: str = "") -> list[dict]:
    user = f"Goal: {goal}"
    if context:
        user += f"\n\nContext: {context}"
    if knowledge:
        user += f"\n\nRelevant Knowledge:\n{knowledge}"
    user += "\n\nGenerate a plan."
    return [
        {"role": "system", "content": PLANNER_SYSTEM_PROMPT},
        {"role": "user", "content": user},
    ]


def parse_plan(text: str, goal: str) -> List[str]:
    """Parse planner output into steps, degrading to line splitting, then ``[goal]``."""
    text = (text or "").strip()
    match = _JSON_ARRAY.search(text)
    if match:
        try:
            steps = json.loads(match.group(0))
        except ValueError:
            steps = None
        if isinstance(steps, list):
            steps = [str(s) for s in steps if s is not None and str(s).strip()]
            if steps:
                return steps
    # Only list-shaped lines count; bare prose is not a plan
    lines = [
        _LIST_MARKER.sub("", line.strip()).strip()
        for line in text.splitlines()
        if _LIST_MARKER.match(line.strip())
    ]
    lines = [line for line in lines if line]
    return lines or [goal]


def make_plan(
    provider: ChatProvider,
    model: str,
    goal: str,
    context: str = "",
    knowledge: str = "",
    task_id: Optional[str] = None,
) -> List[str]:
    """One bounded provider call; any failure yields the single-step plan."""
    messages = build_planner_messages(goal, context, knowledge)
    model_name = model.split("/", 1)[-1]
    try:
        result = provider.chat(
            messages,
            None,
            model=model,
            max_tokens=max_tokens_for(model_name, PLANNING_MAX_TOKENS),
            temperature=DEFAULT_TEMPERATURE,
        )
    except Exception as exc:  # noqa: BLE001
        logger.error("Planning failed for %s: %s", task_id or goal[:40], exc)
        return [goal]
    return parse_plan(result.text, goal)
