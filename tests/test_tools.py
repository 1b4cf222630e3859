"""Tests for the tool registry and the built-in tool handlers."""
from __future__ import annotations

import json
import os

import pytest

from subclaw.core.background import BackgroundJobManager
from subclaw.core.policy import ShellPolicy, ShellResult
from subclaw.core.toolbox import Toolbox, background_specs
from subclaw.core.tools import ToolRegistry, ToolSpec, _schema

from conftest import make_registry, wait_until


def _names(specs):
    return {s.name for s in specs}


# ── Registry ─────────────────────────────────────────────────

class TestRegistry:
    def test_control_tools_always_registered(self):
        registry = make_registry()
        assert {"echo", "boom", "ask_clarification", "complete_step"} <= set(registry.names())

    def test_duplicate_name_rejected(self):
        spec = ToolSpec("echo", "x", _schema({}), lambda i: "")
        with pytest.raises(ValueError, match="Duplicate"):
            ToolRegistry([spec, spec])

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError, match="kind"):
            ToolRegistry([ToolSpec("odd", "x", _schema({}), lambda i: "", kind="magic")])

    def test_dispatched_tool_needs_handler(self):
        with pytest.raises(ValueError, match="handler"):
            ToolRegistry([ToolSpec("empty", "x", _schema({}))])

    def test_allow_list_validation(self):
        registry = make_registry()
        registry.validate_allow_list(None)
        registry.validate_allow_list(["echo"])
        with pytest.raises(ValueError, match="ghost"):
            registry.validate_allow_list(["echo", "ghost"])

    def test_effective_set(self):
        registry = ToolRegistry(
            make_registry().specs + background_specs(BackgroundJobManager(runner=lambda c, t: None))
        )
        assert _names(registry.effective()) == {"echo", "boom", "background_task", "check_task"}
        assert _names(registry.effective(["echo"])) == {"echo", "background_task", "check_task"}
        assert _names(registry.effective([], can_ask_clarification=True, has_plan=True)) == {
            "background_task", "check_task", "ask_clarification", "complete_step",
        }
        assert registry.has_background()

    def test_definitions_shape(self):
        registry = make_registry()
        (definition,) = registry.definitions([registry.get("echo")])
        assert definition == {
            "name": "echo",
            "description": "Echo text back",
            "input_schema": {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
        }


class TestExecute:
    def test_dispatch(self):
        assert make_registry().execute("echo", {"text": "hi"}, task_id="t1") == "echo: hi"

    def test_exception_becomes_error_string(self):
        assert make_registry().execute("boom", {}) == "Error [boom]: kaboom"

    def test_unknown_and_control_names(self):
        registry = make_registry()
        assert registry.execute("nope", {}) == "Unknown tool: nope"
        assert registry.execute("ask_clarification", {"question": "?"}) == "Unknown tool: ask_clarification"

    def test_output_truncated(self):
        registry = ToolRegistry([ToolSpec("big", "x", _schema({}), lambda i: "z" * 50000)], output_limit=100)
        assert len(registry.execute("big", {})) == 100

    def test_non_string_result_serialized(self):
        registry = ToolRegistry([ToolSpec("obj", "x", _schema({}), lambda i: {"a": 1})])
        assert json.loads(registry.execute("obj", {})) == {"a": 1}

    def test_dispatch_is_logged_centrally(self, tmp_path):
        from subclaw.core.logging_config import setup_logging

        setup_logging(str(tmp_path / "central"))
        make_registry().execute("echo", {"text": "logged"}, task_id="t9")
        with open(tmp_path / "central" / "task-events.log", encoding="utf-8") as handle:
            record = json.loads(handle.readlines()[-1])
        assert record["task_id"] == "t9"
        assert record["tool"] == "echo"
        assert record["error"] is False


# ── Built-in handlers ────────────────────────────────────────

class FakeWeb:
    def search(self, query):
        from subclaw.integrations.web import SearchResult

        return [SearchResult(title="Python", url="https://python.org", snippet="home")]

    def fetch(self, url):
        from subclaw.integrations.web import FetchedPage

        return FetchedPage(url=url, title="Example", content="body text")


class FakeImages:
    def __init__(self):
        self.seen = []

    def analyze(self, source, prompt=""):
        self.seen.append((source, prompt))
        return "a cat"


@pytest.fixture
def workdir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def toolbox(workdir):
    return Toolbox(web=FakeWeb(), images=FakeImages(), workdir=str(workdir))


@pytest.fixture
def registry(toolbox):
    return ToolRegistry(toolbox.specs())


class TestToolbox:
    def test_all_builtins_registered(self, registry):
        assert {"shell", "search", "fetch", "read", "write", "ls", "image"} <= set(registry.names())

    def test_write_read_ls(self, registry, workdir):
        assert registry.execute("write", {"path": "sub/note.txt", "content": "hello"}) == "Written 5 chars to sub/note.txt"
        assert registry.execute("read", {"path": "sub/note.txt"}) == "hello"
        assert registry.execute("ls", {"path": "."}) == "sub/"
        assert (workdir / "sub" / "note.txt").read_text() == "hello"

    def test_read_missing_file(self, registry):
        assert registry.execute("read", {"path": "missing.txt"}).startswith("Error [read]:")

    def test_shell(self, registry):
        assert registry.execute("shell", {"command": "echo hi"}) == "hi"

    def test_shell_denied_by_policy(self, registry):
        result = registry.execute("shell", {"command": "shutdown -h now"})
        assert result.startswith("Error [shell]: command not allowed")

    def test_shell_missing_argument(self, registry):
        assert registry.execute("shell", {}) == "Error [shell]: missing 'command'"

    def test_search_and_fetch(self, registry):
        assert "1. Python\n   https://python.org\n   home" == registry.execute("search", {"query": "python"})
        assert registry.execute("fetch", {"url": "https://example.com"}) == "Title: Example\n\nbody text"

    def test_image_resolves_relative_paths(self, toolbox, registry, workdir):
        assert registry.execute("image", {"path": "cat.png", "prompt": "what?"}) == "a cat"
        assert toolbox.images.seen == [(os.path.join(str(workdir), "cat.png"), "what?")]
        registry.execute("image", {"path": "https://x.test/cat.png"})
        assert toolbox.images.seen[-1][0] == "https://x.test/cat.png"

    def test_image_not_configured(self, tmp_path):
        registry = ToolRegistry(Toolbox(web=FakeWeb(), workdir=str(tmp_path)).specs())
        assert registry.execute("image", {"path": "x.png"}) == "Error [image]: image analysis not configured"


class TestBackgroundTools:
    def test_start_and_check(self):
        manager = BackgroundJobManager(runner=lambda cmd, t: ShellResult(stdout="ready 95", stderr="", returncode=0))
        registry = ToolRegistry(background_specs(manager))
        started = registry.execute("background_task", {"command": "build", "condition": ">=90"})
        assert started.startswith("Background task started: ")
        job_id = started.split(": ", 1)[1].split(".", 1)[0]
        assert wait_until(lambda: manager.get(job_id).status == "completed")
        report = registry.execute("check_task", {"task_id": job_id})
        assert "Status: completed" in report
        assert "ready 95" in report
        assert "Condition '>=90': met" in report

    def test_capacity_error(self):
        manager = BackgroundJobManager(max_concurrent=0, runner=lambda cmd, t: None)
        registry = ToolRegistry(background_specs(manager))
        assert registry.execute("background_task", {"command": "x"}) == (
            "Error: too many background tasks running (max 0)"
        )

    def test_check_unknown(self):
        registry = ToolRegistry(background_specs(BackgroundJobManager()))
        assert registry.execute("check_task", {"task_id": "zzz"}) == "Task 'zzz' not found"


def test_shell_policy_in_allow_list_mode(tmp_path):
    toolbox = Toolbox(policy=ShellPolicy(allowed_commands={"echo"}), web=FakeWeb(), workdir=str(tmp_path))
    registry = ToolRegistry(toolbox.specs())
    assert registry.execute("shell", {"command": "echo ok"}) == "ok"
    assert registry.execute("shell", {"command": "ls"}).startswith("Error [shell]")
