"""Tests for the liveness watchdog: stall detection, reconcile, respawn, GC."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

from subclaw.core.tasks import Destination
from subclaw.core.watchdog import Watchdog, resume_context
from subclaw.integrations.llm import ChatResult

from conftest import FakeProvider, RecordingNotifier, tool_call, wait_until


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEngine:
    def __init__(self) -> None:
        self.spawned: List[tuple[str, str, Dict[str, Any]]] = []
        self.aborted: List[str] = []
        self.statuses: Dict[str, dict] = {}

    def spawn(self, goal: str, **options: Any) -> str:
        new_id = f"new{len(self.spawned) + 1}"
        self.spawned.append((new_id, goal, options))
        self.statuses[new_id] = {"status": "planning"}
        return new_id

    def get_status(self, task_id: str) -> Optional[dict]:
        return self.statuses.get(task_id)

    def abort(self, task_id: str) -> bool:
        self.aborted.append(task_id)
        return True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def watchdog(engine, notifier, clock, data_dir):
    return Watchdog(engine, notifier=notifier, data_dir=data_dir, clock=clock)


def _track(watchdog: Watchdog, engine: FakeEngine, task_id: str = "t1", plan=("a", "b", "c"), **options):
    engine.statuses[task_id] = {"status": "running"}
    return watchdog.register(task_id, "build the thing", plan=list(plan), options=options)


# ── Stall detection ──────────────────────────────────────────

class TestStall:
    def test_idle_entry_respawns_once_with_remaining_steps(self, watchdog, engine, clock, notifier):
        _track(watchdog, engine, destination=Destination(channel="telegram", target="7"))
        watchdog.step_completed("t1", 0)
        clock.advance(360)

        spawned = watchdog.check()

        assert spawned == ["new1"]
        assert len(engine.spawned) == 1
        assert engine.aborted == ["t1"]
        _, goal, options = engine.spawned[0]
        assert goal == "build the thing"
        assert "RESUMING from step 2" in options["context"]
        assert "2. b" in options["context"]
        assert "3. c" in options["context"]

        old = watchdog.get_entry("t1")
        assert old.status == "failed"
        assert old.status != "running"
        assert old.respawned_as == "new1"
        assert old.completed_at is not None

        new = watchdog.get_entry("new1")
        assert new.respawn_count == 1
        assert new.plan == ["b", "c"]
        assert new.status == "running"

        text = notifier.texts()[-1]
        assert "[t1]" in text and "[new1]" in text
        assert notifier.sent[-1][0] == Destination(channel="telegram", target="7")

    def test_recent_activity_is_not_stuck(self, watchdog, engine, clock):
        _track(watchdog, engine)
        clock.advance(200)
        watchdog.activity("t1")
        clock.advance(200)
        assert watchdog.check() == []
        assert watchdog.get_entry("t1").status == "running"
        assert engine.aborted == []

    def test_exactly_at_threshold_is_not_stuck(self, watchdog, engine, clock):
        _track(watchdog, engine)
        clock.advance(300)
        assert watchdog.check() == []

    def test_reconciles_finished_task_without_respawn(self, watchdog, engine, clock):
        _track(watchdog, engine)
        engine.statuses["t1"] = {"status": "completed"}
        clock.advance(600)
        assert watchdog.check() == []
        assert watchdog.get_entry("t1").status == "completed"
        assert engine.spawned == []
        assert engine.aborted == []

    def test_reconciles_aborted_task_as_failed(self, watchdog, engine, clock):
        _track(watchdog, engine)
        engine.statuses["t1"] = {"status": "aborted"}
        clock.advance(600)
        watchdog.check()
        assert watchdog.get_entry("t1").status == "failed"

    def test_no_plan_fails_entry(self, watchdog, engine, clock, notifier):
        _track(watchdog, engine, plan=())
        clock.advance(600)
        assert watchdog.check() == []
        entry = watchdog.get_entry("t1")
        assert entry.status == "failed"
        assert entry.error == "no plan to resume from"
        assert engine.aborted == ["t1"]
        assert "abandoned" in notifier.texts()[-1]

    def test_all_steps_done_is_not_resumable(self, watchdog, engine, clock):
        _track(watchdog, engine, plan=("a",))
        watchdog.step_completed("t1", 0)
        clock.advance(600)
        assert watchdog.check() == []
        assert watchdog.get_entry("t1").status == "failed"

    def test_fourth_stall_ends_lineage(self, watchdog, engine, clock, notifier):
        _track(watchdog, engine)
        current = "t1"
        for attempt in range(1, 4):
            clock.advance(360)
            spawned = watchdog.check()
            assert len(spawned) == 1
            current = spawned[0]
            assert watchdog.get_entry(current).respawn_count == attempt

        clock.advance(360)
        assert watchdog.check() == []
        assert len(engine.spawned) == 3
        last = watchdog.get_entry(current)
        assert last.status == "failed"
        assert last.error == "max respawns reached"
        assert last.respawn_count == 3
        assert "max respawns reached" in notifier.texts()[-1]

    @pytest.mark.parametrize("waiting", ["waiting_dependency", "waiting_approval", "waiting_clarification"])
    def test_waiting_task_is_not_stuck(self, watchdog, engine, clock, waiting):
        _track(watchdog, engine)
        engine.statuses["t1"] = {"status": waiting}
        clock.advance(600)
        assert watchdog.check() == []
        assert engine.aborted == []
        entry = watchdog.get_entry("t1")
        assert entry.status == "running"
        assert entry.last_activity == clock.now

        # Once the wait is over, silence counts again
        engine.statuses["t1"] = {"status": "running"}
        clock.advance(360)
        assert watchdog.check() == ["new1"]
        assert engine.aborted == ["t1"]

    def test_respawn_failure_marks_entry_failed(self, watchdog, engine, clock):
        def broken_spawn(goal, **options):
            raise ValueError("no capacity")

        engine.spawn = broken_spawn
        _track(watchdog, engine)
        clock.advance(600)
        assert watchdog.check() == []
        entry = watchdog.get_entry("t1")
        assert entry.status == "failed"
        assert "respawn failed" in entry.error


# ── Bookkeeping ──────────────────────────────────────────────

class TestBookkeeping:
    def test_register_is_upsert_and_count_never_decreases(self, watchdog):
        watchdog.register("t1", "goal", plan=["a"], respawn_count=2)
        watchdog.step_completed("t1", 0)
        entry = watchdog.register("t1", "goal", respawn_count=1)
        assert entry.respawn_count == 2
        assert entry.current_step == 1

    def test_plan_ready_resets_step(self, watchdog):
        watchdog.register("t1", "goal", plan=["a", "b"])
        watchdog.step_completed("t1", 0)
        watchdog.plan_ready("t1", ["x", "y", "z"])
        entry = watchdog.get_entry("t1")
        assert entry.plan == ["x", "y", "z"]
        assert entry.current_step == 0

    def test_step_completed_is_monotonic(self, watchdog):
        watchdog.register("t1", "goal", plan=["a", "b", "c"])
        watchdog.step_completed("t1", 2)
        watchdog.step_completed("t1", 0)
        assert watchdog.get_entry("t1").current_step == 3

    def test_terminal_events(self, watchdog):
        watchdog.register("t1", "goal")
        watchdog.register("t2", "goal")
        watchdog.task_completed("t1", "ok")
        watchdog.task_failed("t2", "boom")
        assert watchdog.get_entry("t1").status == "completed"
        assert watchdog.get_entry("t2").status == "failed"
        assert watchdog.get_entry("t2").error == "boom"

    def test_terminal_entries_are_garbage_collected(self, watchdog, clock):
        watchdog.register("t1", "goal")
        watchdog.task_completed("t1", "ok")
        clock.advance(1700)
        watchdog.check()
        assert watchdog.get_entry("t1") is not None
        clock.advance(200)
        watchdog.check()
        assert watchdog.get_entry("t1") is None

    def test_events_for_unknown_task_are_ignored(self, watchdog):
        watchdog.activity("ghost")
        watchdog.step_completed("ghost", 1)
        watchdog.task_completed("ghost", "")
        assert watchdog.get_status() == []

    def test_get_status_rows(self, watchdog, clock):
        watchdog.register("t1", "x" * 100, plan=["a", "b"])
        watchdog.step_completed("t1", 0)
        clock.advance(42)
        rows = watchdog.get_status()
        assert rows == [{
            "task_id": "t1",
            "goal": "x" * 60,
            "status": "running",
            "current_step": 1,
            "total_steps": 2,
            "idle_seconds": 42,
            "respawns": 0,
            "respawned_as": None,
        }]


def test_resume_context_lists_remaining_steps() -> None:
    text = resume_context(["a", "b", "c"], 1)
    assert text.startswith("RESUMING from step 2.")
    assert "2. b\n3. c" in text
    assert "1. a" not in text


def test_watchdog_follows_real_engine(make_engine) -> None:
    engine = make_engine(FakeProvider([ChatResult(text="ok")]))
    watchdog = Watchdog(engine, notifier=RecordingNotifier())
    engine.add_observer(watchdog)
    task_id = engine.spawn("observed")
    engine.wait(task_id, 5)
    entry = watchdog.get_entry(task_id)
    assert entry is not None
    assert entry.plan == ["Step one", "Step two"]
    assert entry.status == "completed"
    assert entry.options["destination"] == Destination()


def test_start_and_stop_thread(watchdog) -> None:
    watchdog.interval = 0.01
    watchdog.start()
    assert watchdog._thread is not None and watchdog._thread.is_alive()
    watchdog.stop()
    assert watchdog._thread is None


def test_long_waits_survive_sweeps_with_real_engine(make_engine, clock) -> None:
    provider = FakeProvider([
        tool_call("ask_clarification", question="Which region?"),
        ChatResult(text="A done"),
        ChatResult(text="B done"),
    ])
    engine = make_engine(provider)
    watchdog = Watchdog(engine, notifier=RecordingNotifier(), stuck_after=0.3, clock=clock)
    engine.add_observer(watchdog)

    first = engine.spawn("task A", can_ask_clarification=True)
    assert wait_until(lambda: engine.get_status(first)["status"] == "waiting_clarification")
    second = engine.spawn("task B", depends_on=first)
    assert wait_until(lambda: engine.get_status(second)["status"] == "waiting_dependency")

    for _ in range(3):
        clock.advance(600)
        assert watchdog.check() == []
    assert watchdog.get_entry(first).status == "running"
    assert watchdog.get_entry(second).status == "running"
    assert engine.get_status(second)["status"] == "waiting_dependency"

    assert engine.answer_clarification(first, "eu-west") is True
    assert engine.wait(first, 5)["status"] == "completed"
    snap = engine.wait(second, 5)
    assert snap["status"] == "completed"
    assert snap["result"] == "B done"
    assert watchdog.get_entry(second).status == "completed"
