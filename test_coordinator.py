"""Tests for the schedule coordinator."""

import asyncio
import json

import pytest

from shellglance.config import CommandSpec
from shellglance.coordinator import ScheduleCoordinator
from shellglance.executor import PENDING_RESULT, TIMEOUT_MESSAGE, ExecutionResult
from shellglance.settings import MemorySettingsStore
from shellglance.timers import CancellableTimer


class FakeTimer(CancellableTimer):
    """Timer that only ticks when fire() is called."""

    def __init__(self, spec):
        self.spec = spec
        self.interval = None
        self.callback = None
        self.cancelled = False

    def start(self, interval, callback):
        self.interval = interval
        self.callback = callback

    def cancel(self):
        self.cancelled = True

    @property
    def active(self):
        return self.callback is not None and not self.cancelled

    def fire(self):
        if self.active:
            self.callback()


class TimerRegistry:
    """Timer factory that remembers every timer it created."""

    def __init__(self):
        self.created = []

    def __call__(self, spec):
        timer = FakeTimer(spec)
        self.created.append(timer)
        return timer

    def active(self, command_id):
        timers = [t for t in self.created if t.spec.id == command_id and t.active]
        assert len(timers) <= 1
        return timers[0] if timers else None


class FakeExecutor:
    """Executor returning canned results; commands with a gate block until it is set."""

    def __init__(self):
        self.calls = []
        self.gates = {}
        self.results = {}

    async def execute(self, command, timeout):
        self.calls.append(command)
        gate = self.gates.get(command)
        if gate is not None:
            await gate.wait()
        return self.results.get(command, ExecutionResult(True, f"out:{command}", ""))

    def count(self, command):
        return self.calls.count(command)


def make_commands(*specs):
    return json.dumps([
        {
            "id": spec["id"],
            "name": spec.get("name", ""),
            "command": spec.get("command", f"cmd-{spec['id']}"),
            "interval": spec.get("interval", 5),
            "timeout": spec.get("timeout", 10),
            "enabled": spec.get("enabled", True),
        }
        for spec in specs
    ])


@pytest.fixture
def store():
    return MemorySettingsStore({
        "commands": make_commands({"id": "a"}, {"id": "b"}, {"id": "c", "enabled": False}),
    })


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def timers():
    return TimerRegistry()


@pytest.fixture
def coordinator(store, executor, timers):
    coordinator = ScheduleCoordinator(store, executor=executor, timer_factory=timers)
    yield coordinator
    coordinator.destroy()


def test_pending_default_before_any_run(coordinator):
    assert coordinator.get_result("a") == PENDING_RESULT
    assert coordinator.get_result("unknown") == ExecutionResult(True, "", "")


def test_views_are_copies(coordinator):
    enabled = coordinator.get_enabled_commands()
    enabled.clear()

    assert [c.id for c in coordinator.get_enabled_commands()] == ["a", "b"]
    assert [c.id for c in coordinator.get_commands()] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_start_all_runs_immediately_and_arms_timers(coordinator, executor, timers):
    coordinator.start_all()
    await coordinator.wait_idle()

    assert executor.count("cmd-a") == 1
    assert executor.count("cmd-b") == 1
    assert executor.count("cmd-c") == 0
    assert coordinator.has_timer("a") and coordinator.has_timer("b")
    assert not coordinator.has_timer("c")
    assert timers.active("a").interval == 5
    assert coordinator.get_result("a") == ExecutionResult(True, "out:cmd-a", "")


@pytest.mark.asyncio
async def test_start_all_is_idempotent(coordinator, executor, timers):
    coordinator.start_all()
    coordinator.start_all()
    await coordinator.wait_idle()

    assert len(timers.created) == 2
    assert executor.count("cmd-a") == 1


@pytest.mark.asyncio
async def test_tick_runs_command(coordinator, executor, timers):
    coordinator.start_all()
    await coordinator.wait_idle()

    executor.results["cmd-a"] = ExecutionResult(False, "", "broken")
    timers.active("a").fire()
    await coordinator.wait_idle()

    assert executor.count("cmd-a") == 2
    assert coordinator.get_result("a") == ExecutionResult(False, "", "broken")


@pytest.mark.asyncio
async def test_tick_skipped_while_previous_run_in_flight(coordinator, executor, timers):
    gate = asyncio.Event()
    executor.gates["cmd-a"] = gate
    coordinator.start_all()
    await asyncio.sleep(0)

    assert coordinator.is_running("a")
    timers.active("a").fire()
    timers.active("a").fire()
    await asyncio.sleep(0)
    assert executor.count("cmd-a") == 1

    gate.set()
    await coordinator.wait_idle()
    assert not coordinator.is_running("a")

    timers.active("a").fire()
    await coordinator.wait_idle()
    assert executor.count("cmd-a") == 2


@pytest.mark.asyncio
async def test_overlap_allowed_when_configured(store, executor, timers):
    coordinator = ScheduleCoordinator(store, executor=executor, timer_factory=timers, allow_overlap=True)
    gate = asyncio.Event()
    executor.gates["cmd-a"] = gate
    coordinator.start_all()
    await asyncio.sleep(0)

    timers.active("a").fire()
    await asyncio.sleep(0)
    assert executor.count("cmd-a") == 2

    gate.set()
    await coordinator.wait_idle()
    coordinator.destroy()


@pytest.mark.asyncio
async def test_reconfigure_does_not_overlap_slow_run(coordinator, store, executor, timers):
    gate = asyncio.Event()
    executor.gates["cmd-a"] = gate
    coordinator.start_all()
    await asyncio.sleep(0)
    assert coordinator.is_running("a")

    store.set_string("commands", make_commands({"id": "a", "interval": 9}, {"id": "b"}))
    await asyncio.sleep(0)

    # Timer re-armed with the new interval, but no second run of the slow command
    assert timers.active("a").interval == 9
    assert executor.count("cmd-a") == 1
    assert executor.count("cmd-b") == 2

    gate.set()
    await coordinator.wait_idle()
    timers.active("a").fire()
    await coordinator.wait_idle()
    assert executor.count("cmd-a") == 2


@pytest.mark.asyncio
async def test_reconfigure_overlaps_when_allowed(store, executor, timers):
    coordinator = ScheduleCoordinator(store, executor=executor, timer_factory=timers, allow_overlap=True)
    gate = asyncio.Event()
    executor.gates["cmd-a"] = gate
    coordinator.start_all()
    await asyncio.sleep(0)

    store.set_string("commands", make_commands({"id": "a", "interval": 9}, {"id": "b"}))
    await asyncio.sleep(0)
    assert executor.count("cmd-a") == 2

    gate.set()
    await coordinator.wait_idle()
    coordinator.destroy()


@pytest.mark.asyncio
async def test_stop_all_cancels_timers_but_keeps_results(coordinator, executor, timers):
    coordinator.start_all()
    await coordinator.wait_idle()

    coordinator.stop_all()

    assert coordinator.timer_count == 0
    assert all(t.cancelled for t in timers.created)
    assert coordinator.get_result("a").output == "out:cmd-a"


@pytest.mark.asyncio
async def test_disabled_command_has_no_timer_and_is_not_refreshed(coordinator, executor):
    coordinator.start_all()
    await coordinator.refresh_all()

    assert not coordinator.has_timer("c")
    assert executor.count("cmd-c") == 0
    assert coordinator.get_result("c") == PENDING_RESULT


@pytest.mark.asyncio
async def test_disable_then_enable_resets_cadence(coordinator, store, executor, timers):
    coordinator.start_all()
    await coordinator.wait_idle()
    first_timer = timers.active("b")

    store.set_string("commands", make_commands({"id": "a"}, {"id": "b", "enabled": False}))
    await coordinator.wait_idle()
    assert not coordinator.has_timer("b")
    assert first_timer.cancelled
    runs_while_disabled = executor.count("cmd-b")

    store.set_string("commands", make_commands({"id": "a"}, {"id": "b"}))
    # Immediate run on re-enable, before any tick
    await coordinator.wait_idle()

    assert executor.count("cmd-b") == runs_while_disabled + 1
    second_timer = timers.active("b")
    assert second_timer is not first_timer
    assert second_timer.interval == 5


@pytest.mark.asyncio
async def test_interval_change_does_not_affect_other_commands(store, executor, timers):
    store.set_string("commands", make_commands(
        {"id": "a", "interval": 2}, {"id": "b", "interval": 3}, {"id": "c", "interval": 7},
    ))
    coordinator = ScheduleCoordinator(store, executor=executor, timer_factory=timers)
    coordinator.start_all()
    await coordinator.wait_idle()

    store.set_string("commands", make_commands(
        {"id": "a", "interval": 2}, {"id": "b", "interval": 60}, {"id": "c", "interval": 7},
    ))
    await coordinator.wait_idle()

    assert timers.active("a").interval == 2
    assert timers.active("b").interval == 60
    assert timers.active("c").interval == 7

    # Each timer drives only its own command
    before = {cmd: executor.count(cmd) for cmd in ("cmd-a", "cmd-b", "cmd-c")}
    timers.active("b").fire()
    await coordinator.wait_idle()
    assert executor.count("cmd-b") == before["cmd-b"] + 1
    assert executor.count("cmd-a") == before["cmd-a"]
    assert executor.count("cmd-c") == before["cmd-c"]
    coordinator.destroy()


@pytest.mark.asyncio
async def test_refresh_all_waits_for_slow_command(coordinator, executor, timers):
    coordinator.start_all()
    await coordinator.wait_idle()
    timers_before = list(timers.created)

    gate = asyncio.Event()
    executor.gates["cmd-b"] = gate
    executor.results["cmd-a"] = ExecutionResult(True, "fresh-a", "")
    executor.results["cmd-b"] = ExecutionResult(True, "fresh-b", "")

    refresh = asyncio.ensure_future(coordinator.refresh_all())
    for _ in range(5):
        await asyncio.sleep(0)

    # Fast result is visible while the slow one is still running
    assert coordinator.get_result("a").output == "fresh-a"
    assert coordinator.get_result("b").output == "out:cmd-b"
    assert not refresh.done()

    gate.set()
    results = await refresh

    assert [r.output for r in results] == ["fresh-a", "fresh-b"]
    assert coordinator.get_result("b").output == "fresh-b"
    # Timers untouched
    assert timers.created == timers_before
    assert not any(t.cancelled for t in timers.created)


@pytest.mark.asyncio
async def test_refresh_all_with_nothing_enabled(executor, timers):
    store = MemorySettingsStore({"commands": make_commands({"id": "x", "enabled": False})})
    coordinator = ScheduleCoordinator(store, executor=executor, timer_factory=timers)

    assert await coordinator.refresh_all() == []
    coordinator.destroy()


@pytest.mark.asyncio
async def test_malformed_configuration_yields_no_commands(executor, timers):
    store = MemorySettingsStore({"commands": "{definitely not json"})
    coordinator = ScheduleCoordinator(store, executor=executor, timer_factory=timers)

    coordinator.start_all()

    assert coordinator.get_commands() == []
    assert coordinator.timer_count == 0
    assert executor.calls == []
    coordinator.destroy()


@pytest.mark.asyncio
async def test_malformed_reload_clears_timers(coordinator, store):
    coordinator.start_all()
    await coordinator.wait_idle()

    store.set_string("commands", '[{"id": "a"}]')

    assert coordinator.get_commands() == []
    assert coordinator.timer_count == 0
    assert coordinator.get_result("a") == PENDING_RESULT


@pytest.mark.asyncio
async def test_load_configuration_accepts_specs(coordinator):
    notified = []
    coordinator.subscribe(lambda: notified.append(True))

    coordinator.load_configuration([
        CommandSpec(id="z", command="date"),
        {"id": "y", "command": "uptime", "enabled": False},
    ])

    assert [c.id for c in coordinator.get_commands()] == ["z", "y"]
    assert [c.id for c in coordinator.get_enabled_commands()] == ["z"]
    assert notified == [True]


def test_load_configuration_rejects_bad_shapes(coordinator):
    coordinator.load_configuration(42)
    assert coordinator.get_commands() == []

    coordinator.load_configuration([{"id": "a", "command": "x"}, {"id": "a", "command": "y"}])
    assert coordinator.get_commands() == []


@pytest.mark.asyncio
async def test_commands_change_notifies_once_after_reload(coordinator, store, executor):
    coordinator.start_all()
    await coordinator.wait_idle()

    gate = asyncio.Event()
    executor.gates["cmd-d"] = gate
    seen = []
    coordinator.subscribe(lambda: seen.append([c.id for c in coordinator.get_enabled_commands()]))

    store.set_string("commands", make_commands({"id": "d"}))

    # One pass, after the new list and timers are in place
    assert seen == [["d"]]
    assert coordinator.has_timer("d")
    assert not coordinator.has_timer("a")

    gate.set()
    await coordinator.wait_idle()
    assert len(seen) == 2


@pytest.mark.asyncio
async def test_display_setting_change_only_notifies(coordinator, store, timers):
    coordinator.start_all()
    await coordinator.wait_idle()
    timers_before = list(timers.created)
    notified = []
    coordinator.subscribe(lambda: notified.append(True))

    store.set_string("separator", " / ")
    store.set_int("max-length", 12)

    assert notified == [True, True]
    assert timers.created == timers_before
    assert not any(t.cancelled for t in timers.created)


@pytest.mark.asyncio
async def test_removed_command_drops_result_and_late_result(coordinator, store, executor):
    coordinator.start_all()
    await coordinator.wait_idle()
    assert coordinator.get_result("b").output == "out:cmd-b"

    gate = asyncio.Event()
    executor.gates["cmd-a"] = gate
    refresh = asyncio.ensure_future(coordinator.refresh_all())
    await asyncio.sleep(0)

    store.set_string("commands", make_commands({"id": "b"}))
    assert coordinator.get_result("a") == PENDING_RESULT

    notified = []
    coordinator.subscribe(lambda: notified.append(True))
    gate.set()
    await refresh
    await coordinator.wait_idle()

    assert coordinator.get_result("a") == PENDING_RESULT
    assert "a" not in coordinator.get_all_results()


@pytest.mark.asyncio
async def test_result_after_stop_all_still_lands(coordinator, executor):
    gate = asyncio.Event()
    executor.gates["cmd-a"] = gate
    coordinator.start_all()
    await asyncio.sleep(0)

    coordinator.stop_all()
    gate.set()
    await coordinator.wait_idle()

    assert coordinator.get_result("a").output == "out:cmd-a"


@pytest.mark.asyncio
async def test_failing_observer_does_not_block_others(coordinator, timers):
    calls = []

    def broken():
        raise RuntimeError("observer bug")

    coordinator.subscribe(broken)
    coordinator.subscribe(lambda: calls.append(coordinator.get_result("a")))

    coordinator.start_all()
    await coordinator.wait_idle()
    calls.clear()

    for _ in range(10):
        timers.active("a").fire()
        await coordinator.wait_idle()

    assert len(calls) == 10
    assert all(result.output == "out:cmd-a" for result in calls)
    assert coordinator.has_timer("a")


def test_unsubscribe(coordinator):
    calls = []
    observer = lambda: calls.append(True)  # noqa: E731

    coordinator.subscribe(observer)
    assert coordinator.unsubscribe(observer) is True
    assert coordinator.unsubscribe(observer) is False

    coordinator.load_configuration()
    assert calls == []


@pytest.mark.asyncio
async def test_executor_exception_becomes_failed_result(store, timers):
    class BrokenExecutor:
        async def execute(self, command, timeout):
            raise RuntimeError("cannot spawn")

    coordinator = ScheduleCoordinator(store, executor=BrokenExecutor(), timer_factory=timers)
    results = await coordinator.refresh_all()

    assert [r.success for r in results] == [False, False]
    assert coordinator.get_result("a").error == "cannot spawn"
    coordinator.destroy()


@pytest.mark.asyncio
async def test_destroy_is_idempotent_and_detaches(coordinator, store, executor, timers):
    notified = []
    coordinator.subscribe(lambda: notified.append(True))
    coordinator.start_all()
    await coordinator.wait_idle()
    notified.clear()

    gate = asyncio.Event()
    executor.gates["cmd-a"] = gate
    timers.active("a").fire()
    await asyncio.sleep(0)

    coordinator.destroy()
    coordinator.destroy()

    assert coordinator.destroyed
    assert coordinator.timer_count == 0
    assert all(t.cancelled for t in timers.created)
    assert coordinator.get_result("b") == PENDING_RESULT

    # No longer listening to the store
    store.set_string("commands", make_commands({"id": "z"}))
    assert [c.id for c in coordinator.get_commands()] == ["a", "b", "c"]

    # Late result is discarded
    gate.set()
    await coordinator.wait_idle()
    assert coordinator.get_result("a") == PENDING_RESULT
    assert notified == []


class TestRealScheduling:
    """Coordinator with real subprocesses and APScheduler timers."""

    @pytest.mark.asyncio
    async def test_echo_command_result(self):
        store = MemorySettingsStore({"commands": json.dumps([
            {"id": "a", "command": "echo hi", "interval": 1, "timeout": 5, "enabled": True},
        ])})
        coordinator = ScheduleCoordinator(store)
        updates = []
        coordinator.subscribe(lambda: updates.append(coordinator.get_result("a")))

        coordinator.start_all()
        await asyncio.sleep(1.6)

        assert coordinator.get_result("a") == ExecutionResult(True, "hi", "")
        # Immediate run plus at least one tick
        assert len(updates) >= 2

        coordinator.destroy()
        await coordinator.wait_idle()

    @pytest.mark.asyncio
    async def test_timed_out_command_result(self):
        store = MemorySettingsStore({"commands": json.dumps([
            {"id": "b", "command": "sleep 10", "interval": 1, "timeout": 1, "enabled": True},
        ])})
        coordinator = ScheduleCoordinator(store)

        coordinator.start_all()
        await asyncio.sleep(1.8)

        assert coordinator.get_result("b") == ExecutionResult(False, "", TIMEOUT_MESSAGE)

        coordinator.destroy()
        coordinator.cancel_runs()
        await coordinator.wait_idle()
        assert coordinator.running_count == 0

    @pytest.mark.asyncio
    async def test_refresh_all_with_real_commands(self):
        store = MemorySettingsStore({"commands": json.dumps([
            {"id": "fast", "command": "echo fast", "interval": 60, "timeout": 5, "enabled": True},
            {"id": "slow", "command": "sleep 0.5; echo slow", "interval": 60, "timeout": 5, "enabled": True},
        ])})
        coordinator = ScheduleCoordinator(store)
        order = []
        coordinator.subscribe(lambda: order.append(
            [cid for cid, r in coordinator.get_all_results().items() if r.output]
        ))

        results = await coordinator.refresh_all()

        assert [r.output for r in results] == ["fast", "slow"]
        assert order == [["fast"], ["fast", "slow"]]
        assert coordinator.timer_count == 0
        coordinator.destroy()
