from __future__ import annotations

import threading

import pytest

from subclaw.core.background import BackgroundJobManager, evaluate_condition, sanitize_command
from subclaw.core.policy import ShellResult

from conftest import wait_until


class BlockingRunner:
    def __init__(self, result: ShellResult | None = None) -> None:
        self.release = threading.Event()
        self.result = result or ShellResult(stdout="ok", stderr="", returncode=0)
        self.commands: list[str] = []

    def __call__(self, command: str, timeout: float) -> ShellResult:
        self.commands.append(command)
        self.release.wait(5)
        return self.result


@pytest.mark.parametrize("output,condition,expected", [
    ("BUILD OK", "contains:OK", True),
    ("BUILD OK", "contains:FAIL", False),
    ("BUILD OK", "!contains:FAIL", True),
    ("coverage 95%", ">=90", True),
    ("coverage 85%", ">=90", False),
    ("12 errors", "<20", True),
    ("12 errors", ">20", False),
    ("3", "==3", True),
    ("3", "!=3", False),
    ("ready", "==ready", True),
    ("no numbers", ">5", False),
    ("changed", "baseline", True),
    ("baseline", "baseline", False),
])
def test_evaluate_condition(output, condition, expected) -> None:
    assert evaluate_condition(output, condition) is expected


def test_sanitize_command() -> None:
    masked = sanitize_command("API_KEY=abc123 curl -H 'Authorization: Bearer tok' x")
    assert "abc123" not in masked
    assert "tok'" not in masked


class TestManager:
    def test_job_completes(self):
        manager = BackgroundJobManager(runner=lambda cmd, t: ShellResult("done", "", 0))
        job_id = manager.start("make")
        assert wait_until(lambda: manager.get(job_id).status == "completed")
        assert manager.describe(job_id) == "Status: completed\nOutput:\ndone"

    def test_running_job_reports_elapsed(self):
        runner = BlockingRunner()
        manager = BackgroundJobManager(runner=runner)
        job_id = manager.start("sleep")
        assert manager.describe(job_id).startswith("Status: running (")
        runner.release.set()

    def test_duplicate_running_command_is_deduplicated(self):
        runner = BlockingRunner()
        manager = BackgroundJobManager(runner=runner)
        first = manager.start("npm install")
        second = manager.start("npm install")
        assert first == second
        runner.release.set()
        assert wait_until(lambda: len(runner.commands) == 1)

    def test_cooldown_returns_previous_job(self):
        manager = BackgroundJobManager(runner=lambda cmd, t: ShellResult("x", "", 0))
        first = manager.start("build")
        assert wait_until(lambda: manager.get(first).status == "completed")
        assert manager.start("build") == first

    def test_cooldown_expired_starts_new_job(self):
        manager = BackgroundJobManager(cooldown=0, runner=lambda cmd, t: ShellResult("x", "", 0))
        first = manager.start("build")
        assert wait_until(lambda: manager.get(first).status == "completed")
        assert manager.start("build") != first

    def test_max_concurrent(self):
        runner = BlockingRunner()
        manager = BackgroundJobManager(max_concurrent=2, runner=runner)
        assert manager.start("a") is not None
        assert manager.start("b") is not None
        assert manager.start("c") is None
        runner.release.set()

    def test_failed_and_timeout_statuses(self):
        failing = BackgroundJobManager(runner=lambda cmd, t: ShellResult("", "bad flag", 2))
        job_id = failing.start("cmd --bad")
        assert wait_until(lambda: failing.get(job_id).status == "failed")
        assert failing.get(job_id).error == "bad flag"

        slow = BackgroundJobManager(timeout=1, runner=lambda cmd, t: ShellResult("", "killed", -1, timed_out=True))
        job_id = slow.start("sleep 100")
        assert wait_until(lambda: slow.get(job_id).status == "timeout")
        assert slow.get(job_id).error == "Command timed out after 1s"

    def test_runner_exception_marks_failed(self):
        def broken(cmd, t):
            raise PermissionError("command not allowed by policy: dd")

        manager = BackgroundJobManager(runner=broken)
        job_id = manager.start("dd if=/dev/zero")
        assert wait_until(lambda: manager.get(job_id).status == "failed")
        assert "not allowed" in manager.describe(job_id)

    def test_condition_verdict(self):
        manager = BackgroundJobManager(runner=lambda cmd, t: ShellResult("tests failed: 3", "", 0))
        job_id = manager.start("pytest", condition="contains:passed")
        assert wait_until(lambda: manager.get(job_id).status == "completed")
        assert manager.describe(job_id).endswith("Condition 'contains:passed': not met")

    def test_output_capped(self):
        manager = BackgroundJobManager(runner=lambda cmd, t: ShellResult("y" * 9000, "", 0))
        job_id = manager.start("yes")
        assert wait_until(lambda: manager.get(job_id).status == "completed")
        assert manager.describe(job_id).count("y") == 5000

    def test_real_shell_runner(self):
        manager = BackgroundJobManager()
        job_id = manager.start("echo background")
        assert wait_until(lambda: manager.get(job_id).status != "running")
        assert manager.get(job_id).output == "background"
