"""Tool gateway: a closed name → handler registry the execution loop calls.

Tool kinds:

* ``builtin``       ordinary tools, filtered by a task's allow-list
* ``background``    background command start/check, always on when wired
* ``clarification`` the ask-a-question gate, on when the task may ask
* ``step``          plan step tracking, on when the task has a plan

Clarification and step tools are intercepted by the engine; only
``builtin`` and ``background`` tools are dispatched through ``execute``.
Registration is where names are checked: duplicates and unknown
allow-list entries raise ``ValueError``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from subclaw.core.logging_config import log_task_event_central

logger = logging.getLogger("subclaw.tools")

TOOL_KINDS = {"builtin", "background", "clarification", "step"}
DISPATCHED_KINDS = {"builtin", "background"}
DEFAULT_OUTPUT_LIMIT = 10240

CLARIFICATION_TOOL = "ask_clarification"
STEP_TOOL = "complete_step"


def _schema(properties: Dict[str, Dict[str, Any]], required: Optional[List[str]] = None) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": list(required if required is not None else properties.keys()),
    }


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    input_schema: Dict[str, Any]
    handler: Optional[Callable[[Dict[str, Any]], str]] = None
    kind: str = "builtin"

    def definition(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "input_schema": self.input_schema}


CONTROL_TOOLS = (
    ToolSpec(
        name=CLARIFICATION_TOOL,
        description=(
            "Ask the user/main task a clarification question when you are stuck and cannot "
            "proceed without more information. Only use when absolutely necessary."
        ),
        input_schema=_schema({"question": {"type": "string", "description": "The clarification question"}}),
        kind="clarification",
    ),
    ToolSpec(
        name=STEP_TOOL,
        description="Mark a plan step as finished once it is done and verified.",
        input_schema=_schema({"step": {"type": "integer", "description": "1-based plan step number"}}),
        kind="step",
    ),
)


def _summarize(value: Any, limit: int = 200) -> str:
    try:
        text = json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        text = str(value)
    return text[:limit]


@dataclass
class ToolRegistry:
    specs: List[ToolSpec] = field(default_factory=list)
    output_limit: int = DEFAULT_OUTPUT_LIMIT

    def __post_init__(self) -> None:
        self._by_name: Dict[str, ToolSpec] = {}
        for spec in list(self.specs) + [c for c in CONTROL_TOOLS if c.name not in {s.name for s in self.specs}]:
            if spec.kind not in TOOL_KINDS:
                raise ValueError(f"Unknown tool kind for {spec.name}: {spec.kind}")
            if spec.name in self._by_name:
                raise ValueError(f"Duplicate tool name: {spec.name}")
            if spec.kind in DISPATCHED_KINDS and spec.handler is None:
                raise ValueError(f"Tool {spec.name} has no handler")
            self._by_name[spec.name] = spec

    def names(self) -> List[str]:
        return list(self._by_name)

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._by_name.get(name)

    def has_background(self) -> bool:
        return any(s.kind == "background" for s in self._by_name.values())

    def validate_allow_list(self, allowed: Optional[Iterable[str]]) -> None:
        if allowed is None:
            return
        unknown = sorted(set(allowed) - set(self._by_name))
        if unknown:
            raise ValueError(f"Unknown tool(s) in allow-list: {', '.join(unknown)}")

    def effective(
        self,
        allowed: Optional[Iterable[str]] = None,
        can_ask_clarification: bool = False,
        has_plan: bool = False,
    ) -> List[ToolSpec]:
        """Registry ∩ allow-list ∪ the always-on capabilities for this task."""
        allow = set(allowed) if allowed is not None else None
        selected: List[ToolSpec] = []
        for spec in self._by_name.values():
            if spec.kind == "builtin":
                if allow is None or spec.name in allow:
                    selected.append(spec)
            elif spec.kind == "background":
                selected.append(spec)
            elif spec.kind == "clarification":
                if can_ask_clarification:
                    selected.append(spec)
            elif spec.kind == "step" and has_plan:
                selected.append(spec)
        return selected

    def definitions(self, specs: Iterable[ToolSpec]) -> List[Dict[str, Any]]:
        return [s.definition() for s in specs]

    def execute(self, name: str, tool_input: Dict[str, Any], task_id: str = "") -> str:
        """Dispatch one call; exceptions come back as ``Error [name]: ...``."""
        spec = self._by_name.get(name)
        if spec is None or spec.kind not in DISPATCHED_KINDS:
            result = f"Unknown tool: {name}"
            log_task_event_central(task_id, name, _summarize(tool_input), result, is_error=True)
            return result
        is_error = False
        try:
            result = spec.handler(tool_input or {})  # type: ignore[misc]
            if not isinstance(result, str):
                result = _summarize(result, self.output_limit)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Tool %s failed for %s: %s", name, task_id or "-", exc)
            result = f"Error [{name}]: {exc}"
            is_error = True
        result = result[: self.output_limit]
        log_task_event_central(task_id, name, _summarize(tool_input), result[:500], is_error=is_error)
        return result
