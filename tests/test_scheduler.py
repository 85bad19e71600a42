import asyncio

import pytest

from opentasks_sync.core.scheduler import PERIODIC_JOB_ID, DebounceTimer, SchedulerState, SyncScheduler
from opentasks_sync.core.tasks_sync import SyncReport

DEBOUNCE = 0.05


class FakeEngine:
    """Records passes; ``gate`` holds a pass open until it is set."""

    def __init__(self):
        self.calls: list[str] = []
        self.gate = asyncio.Event()
        self.gate.set()
        self.started = asyncio.Event()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_pass(self, reason: str = "manual") -> SyncReport:
        self._running = True
        self.calls.append(reason)
        self.started.set()
        try:
            await self.gate.wait()
        finally:
            self._running = False
        return SyncReport(reason=reason)


@pytest.fixture
async def engine():
    return FakeEngine()


@pytest.fixture
async def scheduler(engine):
    sync_scheduler = SyncScheduler(engine, debounce_seconds=DEBOUNCE, interval_minutes=0)
    yield sync_scheduler
    engine.gate.set()
    await sync_scheduler.stop()


async def _settle(scheduler):
    await asyncio.sleep(DEBOUNCE * 3)
    await scheduler.wait_until_idle()


async def test_burst_of_changes_runs_one_pass(scheduler, engine):
    await scheduler.start(initial_sync=False)

    for task_id in range(3):
        scheduler.notify_change(1, "update", task_id)
        await asyncio.sleep(DEBOUNCE / 5)
    assert scheduler.state == SchedulerState.QUEUED

    await _settle(scheduler)

    assert engine.calls == ["local changes (3)"]
    assert scheduler.state == SchedulerState.IDLE
    assert scheduler.last_report.reason == "local changes (3)"


async def test_start_requests_initial_pass(scheduler, engine):
    await scheduler.start()
    await _settle(scheduler)

    assert engine.calls == ["startup"]


async def test_request_sync_is_ignored_while_running(scheduler, engine):
    await scheduler.start(initial_sync=False)
    engine.gate.clear()

    assert scheduler.request_sync("first") is True
    await asyncio.wait_for(engine.started.wait(), 1)
    assert scheduler.state == SchedulerState.RUNNING
    assert scheduler.request_sync("second") is False

    engine.gate.set()
    await _settle(scheduler)

    assert engine.calls == ["first"]


async def test_changes_during_pass_trigger_follow_up_pass(scheduler, engine):
    await scheduler.start(initial_sync=False)
    engine.gate.clear()

    scheduler.request_sync("first")
    await asyncio.wait_for(engine.started.wait(), 1)
    scheduler.notify_change(1, "create", 7)
    scheduler.notify_change(1, "update", 7)
    assert engine.calls == ["first"]

    engine.gate.set()
    await _settle(scheduler)

    assert engine.calls == ["first", "local changes (1)"]
    assert scheduler.state == SchedulerState.IDLE


async def test_queued_requests_are_coalesced(scheduler, engine):
    assert scheduler.request_sync("a") is True
    assert scheduler.request_sync("b") is False

    await scheduler.start(initial_sync=False)
    await _settle(scheduler)

    assert engine.calls == ["a"]


async def test_request_sync_cancels_pending_debounce(scheduler, engine):
    await scheduler.start(initial_sync=False)

    scheduler.notify_change(1, "update", 1)
    scheduler.request_sync("manual")
    await _settle(scheduler)

    assert engine.calls == ["manual"]


async def test_sync_now_waits_for_pass(scheduler, engine):
    report = await scheduler.sync_now("cli")

    assert report.reason == "cli"
    assert scheduler.last_report is report
    assert scheduler.state == SchedulerState.IDLE


async def test_sync_now_returns_none_while_running(scheduler, engine):
    await scheduler.start(initial_sync=False)
    engine.gate.clear()

    scheduler.request_sync("background")
    await asyncio.wait_for(engine.started.wait(), 1)

    assert await scheduler.sync_now("cli") is None

    engine.gate.set()
    await _settle(scheduler)
    assert engine.calls == ["background"]


async def test_periodic_job_lifecycle(engine):
    sync_scheduler = SyncScheduler(engine, debounce_seconds=DEBOUNCE, interval_minutes=15)

    await sync_scheduler.start(initial_sync=False)
    job = sync_scheduler._scheduler.get_job(PERIODIC_JOB_ID)
    assert job is not None
    assert job.max_instances == 1

    await sync_scheduler.stop()
    assert sync_scheduler._scheduler is None
    assert not sync_scheduler.is_running


async def test_debounce_timer_restart_fires_once():
    fired = []
    timer = DebounceTimer(DEBOUNCE, lambda: fired.append(True))

    timer.restart()
    await asyncio.sleep(DEBOUNCE / 2)
    timer.restart()
    assert timer.pending

    await asyncio.sleep(DEBOUNCE * 3)
    assert fired == [True]
    assert not timer.pending


async def test_debounce_timer_cancel():
    fired = []
    timer = DebounceTimer(DEBOUNCE, lambda: fired.append(True))

    timer.restart()
    timer.cancel()
    await asyncio.sleep(DEBOUNCE * 2)

    assert fired == []
