from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional, Union

import pytest

from subclaw.core.engine import SubAgentEngine
from subclaw.core.planner import PLANNER_SYSTEM_PROMPT
from subclaw.core.store import TaskStore
from subclaw.core.tasks import Destination
from subclaw.core.tools import ToolRegistry, ToolSpec, _schema
from subclaw.integrations.llm import ChatResult, ToolCall

Reply = Union[ChatResult, Exception, Callable[[List[Dict[str, Any]]], ChatResult]]


class FakeProvider:
    """Scripted chat provider.

    Planner calls get ``plan_text``; every other call pops the next reply.
    Once the script runs out, calls return ``default``.
    """

    def __init__(self, replies: Optional[List[Reply]] = None, plan_text: str = '["Step one", "Step two"]',
                 default: Optional[ChatResult] = None) -> None:
        self.replies: List[Reply] = list(replies or [])
        self.plan_text = plan_text
        self.default = default or ChatResult(text="done", tokens_used=1)
        self.calls: List[Dict[str, Any]] = []
        self.planner_calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def chat(self, messages, tools=None, *, model, max_tokens=4096, temperature=0.3) -> ChatResult:
        call = {"messages": list(messages), "tools": tools, "model": model, "max_tokens": max_tokens}
        if messages and messages[0].get("content") == PLANNER_SYSTEM_PROMPT:
            with self._lock:
                self.planner_calls.append(call)
            if isinstance(self.plan_text, Exception):
                raise self.plan_text
            return ChatResult(text=self.plan_text, tokens_used=1)
        with self._lock:
            self.calls.append(call)
            reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(messages)
        return reply


def tool_call(name: str, call_id: str = "call_1", **tool_input: Any) -> ChatResult:
    return ChatResult(text="", tool_calls=[ToolCall(id=call_id, name=name, input=tool_input)], tokens_used=10)


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: List[tuple[Destination, str]] = []
        self._lock = threading.Lock()

    def notify(self, destination: Destination, text: str) -> None:
        with self._lock:
            self.sent.append((destination, text))

    def texts(self) -> List[str]:
        with self._lock:
            return [text for _, text in self.sent]


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def _echo(tool_input: Dict[str, Any]) -> str:
    return f"echo: {tool_input.get('text', '')}"


def _boom(tool_input: Dict[str, Any]) -> str:
    raise RuntimeError("kaboom")


def make_registry(**kwargs: Any) -> ToolRegistry:
    return ToolRegistry([
        ToolSpec("echo", "Echo text back", _schema({"text": {"type": "string"}}), _echo),
        ToolSpec("boom", "Always fails", _schema({}), _boom),
    ], **kwargs)


@pytest.fixture(autouse=True)
def _isolated_logs(tmp_path, monkeypatch):
    monkeypatch.setenv("subclaw_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setattr("subclaw.core.logging_config._log_dir", None)


@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "data"
    path.mkdir()
    return str(path)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_engine(data_dir, notifier):
    engines: List[SubAgentEngine] = []

    def _make(provider: FakeProvider, tools: Optional[ToolRegistry] = None, **kwargs: Any) -> SubAgentEngine:
        options: Dict[str, Any] = {
            "store": TaskStore(data_dir),
            "notifier": notifier,
            "data_dir": data_dir,
            "retry_delays": (0.01, 0.01, 0.01),
            "dependency_poll_interval": 0.02,
            "clarification_timeout": 5.0,
        }
        options.update(kwargs)
        engine = SubAgentEngine(provider, tools or make_registry(), **options)
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.abort_all()
