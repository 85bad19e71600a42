"""Sync triggering: debounced local changes, periodic ticks and explicit requests.

All triggers end up as a :class:`SyncRequest` in the scheduler's inbox; a
single consumer task drains it and runs one engine pass at a time.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from opentasks_sync.core.tasks_sync import SyncReport, TasksSyncEngine

logger = logging.getLogger(__name__)

PERIODIC_JOB_ID = "caldav_periodic_sync"


class SchedulerState(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"


@dataclass
class SyncRequest:
    reason: str


class DebounceTimer:
    """One-shot timer that is pushed back every time it is restarted."""

    def __init__(self, delay: float, callback: Callable[[], None]):
        self.delay = delay
        self.callback = callback
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def restart(self) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self.callback()


class SyncScheduler:
    """Decides when the sync engine runs.

    States:
    - IDLE: nothing pending
    - QUEUED: local changes seen, debounce timer running (or a request waits in the inbox)
    - RUNNING: a pass is in flight; further changes are remembered for the next pass

    Features:
    - Coalesces bursts of local changes into one pass
    - Periodic passes via APScheduler
    - Explicit "sync now"
    """

    def __init__(
        self,
        engine: TasksSyncEngine,
        *,
        debounce_seconds: float = 2.0,
        interval_minutes: int = 15,
    ):
        """Initialize the scheduler.

        Args:
            engine: Engine whose passes are scheduled
            debounce_seconds: Quiet time after the last local change before syncing
            interval_minutes: Period of background passes (0 disables them)
        """
        self.engine = engine
        self.interval_minutes = interval_minutes
        self.state = SchedulerState.IDLE
        self.last_report: SyncReport | None = None

        self._inbox: asyncio.Queue[SyncRequest] = asyncio.Queue()
        self._timer = DebounceTimer(debounce_seconds, self._on_debounce_expired)
        self._pending_changes = 0
        self._changes_during_run = False
        self._consumer: asyncio.Task | None = None
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def is_running(self) -> bool:
        """Return True if the background consumer is active."""
        return self._consumer is not None and not self._consumer.done()

    async def start(self, initial_sync: bool = True) -> None:
        """Start the inbox consumer and the periodic trigger."""
        if self.is_running:
            logger.warning("Sync scheduler already running")
            return

        self._consumer = asyncio.create_task(self._consume(), name="caldav-sync-consumer")

        if self.interval_minutes > 0:
            self._scheduler = AsyncIOScheduler()
            self._scheduler.add_job(
                self._periodic_tick,
                trigger=IntervalTrigger(minutes=self.interval_minutes),
                id=PERIODIC_JOB_ID,
                replace_existing=True,
                name="CalDAV periodic sync",
                max_instances=1,
                coalesce=True,
            )
            self._scheduler.start()

        logger.info(f"Sync scheduler started (interval: {self.interval_minutes} min)")

        if initial_sync:
            self.request_sync("startup")

    async def stop(self) -> None:
        """Stop triggering passes. A pass already running is allowed to finish."""
        self._timer.cancel()

        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None

        logger.info("Sync scheduler stopped")

    def notify_change(self, list_id: int | None = None, operation: str = "update", task_id: int | None = None) -> None:
        """
        Record a local mutation.

        Args:
            list_id: List the change happened in
            operation: create, update or delete
            task_id: Task affected, if any
        """
        logger.debug(f"Local change: {operation} task={task_id} list={list_id}")

        if self.state == SchedulerState.RUNNING:
            self._changes_during_run = True
            return

        self.state = SchedulerState.QUEUED
        self._pending_changes += 1
        self._timer.restart()

    def request_sync(self, reason: str = "manual") -> bool:
        """
        Ask for a pass as soon as possible.

        Returns:
            False if the request was dropped because a pass is running or
            another request is already waiting
        """
        if self.state == SchedulerState.RUNNING or self.engine.is_running:
            logger.debug(f"Sync request ignored while a pass is running ({reason})")
            return False

        self._timer.cancel()
        return self._post(SyncRequest(reason=reason))

    async def sync_now(self, reason: str = "manual") -> SyncReport | None:
        """
        Run a pass immediately and wait for it.

        Returns:
            The pass report, or None if a pass is already running
        """
        if self.state == SchedulerState.RUNNING or self.engine.is_running:
            logger.info("Sync already in progress")
            return None

        self._timer.cancel()
        return await self._run(reason)

    async def wait_until_idle(self) -> None:
        """Wait until every queued request has been processed."""
        await self._inbox.join()

    async def _periodic_tick(self) -> None:
        self.request_sync("periodic")

    def _on_debounce_expired(self) -> None:
        count = self._pending_changes
        self._post(SyncRequest(reason=f"local changes ({count})"))

    def _post(self, request: SyncRequest) -> bool:
        if self.state == SchedulerState.RUNNING:
            self._changes_during_run = True
            return False
        if not self._inbox.empty():
            logger.debug(f"Sync already queued; coalescing ({request.reason})")
            return False

        self.state = SchedulerState.QUEUED
        self._inbox.put_nowait(request)
        return True

    async def _consume(self) -> None:
        while True:
            request = await self._inbox.get()
            try:
                if self.state == SchedulerState.RUNNING:
                    logger.debug(f"Dropping queued request while running ({request.reason})")
                    self._changes_during_run = True
                else:
                    await self._run(request.reason)
            except Exception as e:
                logger.error(f"Scheduled sync failed: {e}")
            finally:
                self._inbox.task_done()

    async def _run(self, reason: str) -> SyncReport:
        self.state = SchedulerState.RUNNING
        self._pending_changes = 0
        self._changes_during_run = False

        try:
            report = await self.engine.run_pass(reason)
            self.last_report = report
            return report
        finally:
            if self._changes_during_run:
                self._changes_during_run = False
                self.state = SchedulerState.QUEUED
                self._pending_changes = 1
                self._timer.restart()
            else:
                self.state = SchedulerState.IDLE
