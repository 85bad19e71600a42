"""Core synchronization logic for the local task store ↔ CalDAV."""

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta

from opentasks_sync.core.errors import RemoteError
from opentasks_sync.core.events import (
    CollectionCreated,
    CollectionRetired,
    EventBroadcaster,
    SyncCompleted,
    SyncFailed,
    TaskDeleted,
    TaskUpserted,
)
from opentasks_sync.core.models import (
    ACCOUNT_CALDAV,
    LocalTask,
    RemoteTaskRecord,
    SyncState,
    TaskList,
    copy_fields,
)
from opentasks_sync.sources.caldav.client import CalDAVTaskClient
from opentasks_sync.sources.caldav.discovery import CollectionDiscovery, collection_display_name
from opentasks_sync.utils.db import TaskStore

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_ERROR = "error"
STATUS_SKIPPED = "skipped"

PHASE_PUSH = "push"
PHASE_PULL = "pull"

_COUNTERS = (
    "created_local",
    "updated_local",
    "deleted_local",
    "created_remote",
    "updated_remote",
    "deleted_remote",
    "unchanged",
    "suppressed",
    "skipped",
    "errors",
    "collections_created",
    "collections_retired",
)


@dataclass
class ItemFailure:
    """One task or collection that could not be synced during a pass."""

    phase: str
    target: str
    message: str


@dataclass
class SyncReport:
    """Outcome of one reconciliation pass."""

    reason: str = "manual"
    status: str = STATUS_SUCCESS
    error: str | None = None
    started_at: float | None = None
    finished_at: float | None = None
    discovery_source: str | None = None

    created_local: int = 0
    updated_local: int = 0
    deleted_local: int = 0
    created_remote: int = 0
    updated_remote: int = 0
    deleted_remote: int = 0
    unchanged: int = 0
    suppressed: int = 0
    skipped: int = 0
    errors: int = 0
    collections_created: int = 0
    collections_retired: int = 0

    failures: list[ItemFailure] = field(default_factory=list)

    def record_failure(self, phase: str, target: str, error: Exception | str) -> None:
        message = str(error)
        self.failures.append(ItemFailure(phase=phase, target=target, message=message))
        self.errors += 1
        logger.warning(f"Sync {phase} failed for {target}: {message}")

    @property
    def stats(self) -> dict[str, int]:
        return {name: getattr(self, name) for name in _COUNTERS}

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at


class TasksSyncEngine:
    """
    Reconciles the local task store with the task collections of one CalDAV account.

    Sync Algorithm (one pass):
    1. Discover collections; create lists for new ones, retire lists whose
       collection disappeared; prune expired tombstones
    2. Push every dirty task of every discovered collection
    3. Pull every collection; create, update or delete local tasks

    Conflict rule: a local task is overwritten by the server version iff the
    stored identity tag (ETag) differs from the server's. Timestamps are
    never compared.

    Only an unreachable server during discovery ends a pass early. Any other
    failure, including a dropped connection while pushing or pulling, is
    recorded against its task or collection and the pass carries on.
    """

    def __init__(
        self,
        client: CalDAVTaskClient,
        store: TaskStore,
        *,
        collection_root: str,
        account_name: str,
        discovery: CollectionDiscovery | None = None,
        tombstone_retention: timedelta = timedelta(hours=24),
        events: EventBroadcaster | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the sync engine.

        Args:
            client: CalDAV client for the account
            store: Local task store
            collection_root: Server path under which collections are discovered
            account_name: Sync target key that owns the CalDAV lists
            discovery: Collection discovery (built from the client when omitted)
            tombstone_retention: How long a local deletion suppresses recreation
            events: Broadcaster receiving change notifications
            clock: Source of Unix timestamps
        """
        self.client = client
        self.store = store
        self.collection_root = collection_root
        self.account_name = account_name
        self.discovery = discovery or CollectionDiscovery(
            client, collection_root, client.task_extension
        )
        self.tombstone_retention = tombstone_retention
        self.events = events or EventBroadcaster()
        self.clock = clock
        self._in_flight = False

    @property
    def is_running(self) -> bool:
        return self._in_flight

    async def run_pass(self, reason: str = "manual") -> SyncReport:
        """
        Run one full reconciliation pass.

        Only one pass runs at a time; a call made while a pass is in flight
        returns immediately with status ``skipped``.

        Args:
            reason: What triggered the pass (for logs and events)

        Returns:
            The pass outcome
        """
        if self._in_flight:
            logger.info(f"Sync already in progress, skipping ({reason})")
            return SyncReport(reason=reason, status=STATUS_SKIPPED)

        self._in_flight = True
        report = SyncReport(reason=reason, started_at=self.clock())
        logger.info(f"Starting CalDAV sync ({reason})")

        try:
            task_lists = await self.sync_collections(report)
            await self.push_dirty_tasks(task_lists, report)
            await self.pull_remote_tasks(task_lists, report)
            report.status = STATUS_PARTIAL if report.failures else STATUS_SUCCESS
        except Exception as e:
            report.status = STATUS_ERROR
            report.error = str(e)
            logger.error(f"CalDAV sync failed: {e}")
        finally:
            report.finished_at = self.clock()

        try:
            await self._record_outcome(report)
        finally:
            self._in_flight = False

        if report.status == STATUS_ERROR:
            logger.info(f"Sync ended with error after {report.duration:.1f}s")
        else:
            logger.info(f"Sync completed ({report.status}): {report.stats}")
        return report

    async def sync_collections(self, report: SyncReport) -> list[TaskList]:
        """
        Make the set of active CalDAV lists match the discovered collections.

        Returns:
            The active list for every discovered collection, in discovery order
        """
        now = self.clock()
        cutoff = now - self.tombstone_retention.total_seconds()
        await self.store.prune_tombstones(cutoff)
        await self.store.purge_retired_tasks(cutoff)

        result = await self.discovery.discover()
        report.discovery_source = result.source
        if result.error:
            logger.warning(f"Collection discovery degraded to fallback: {result.error}")

        task_lists: list[TaskList] = []
        for path in result.paths:
            task_list = await self.store.get_list_by_path(self.account_name, path)
            if task_list is None:
                task_list = await self.store.create_list(
                    collection_display_name(path),
                    account_type=ACCOUNT_CALDAV,
                    account_name=self.account_name,
                    collection_path=path,
                    created_at=now,
                )
                report.collections_created += 1
                logger.info(f"Created task list '{task_list.name}' for collection {path}")
                await self.events.publish(CollectionCreated(task_list=task_list))
            task_lists.append(task_list)

        discovered = set(result.paths)
        for known in await self.store.list_collections(self.account_name):
            if known.collection_path in discovered:
                continue
            deleted = await self.store.retire_list(known.id, now)
            known.retired_at = now
            report.collections_retired += 1
            logger.info(
                f"Retired task list '{known.name}' ({known.collection_path} no longer on server, "
                f"{deleted} task(s) removed locally)"
            )
            await self.events.publish(CollectionRetired(task_list=known, tasks_deleted=deleted))

        return task_lists

    async def push_dirty_tasks(self, task_lists: list[TaskList], report: SyncReport) -> None:
        """Upload local creations/edits and issue deletions for dirty tasks."""
        for task_list in task_lists:
            if not task_list.is_caldav or not task_list.is_active:
                continue

            dirty_tasks = await self.store.get_dirty_tasks(task_list.id)
            if dirty_tasks:
                logger.info(f"Pushing {len(dirty_tasks)} local change(s) to {task_list.collection_path}")

            for task in dirty_tasks:
                try:
                    await self._push_task(task_list, task, report)
                except Exception as e:
                    report.record_failure(PHASE_PUSH, _task_label(task), e)

    async def _push_task(self, task_list: TaskList, task: LocalTask, report: SyncReport) -> None:
        path = task_list.collection_path

        if task.deleted:
            if task.uid:
                existed = await self.client.delete(path, task.uid)
                if existed:
                    report.deleted_remote += 1
                    logger.debug(f"Deleted remote task {task.uid}")
                else:
                    logger.debug(f"Remote task {task.uid} was already gone")
            await self.store.purge_task(task.id)
            return

        is_new = not task.etag
        if not task.uid:
            task.uid = str(uuid.uuid4())
            await self.store.assign_uid(task.id, task.uid)

        result = await self.client.put(path, task)
        clean = await self.store.mark_pushed(task.id, result.etag, task.revision)
        if not clean:
            logger.debug(f"Task {task.id} changed during upload; it stays dirty")

        if is_new:
            report.created_remote += 1
            logger.debug(f"Created remote task {task.uid}: {task.title}")
        else:
            report.updated_remote += 1
            logger.debug(f"Updated remote task {task.uid}: {task.title}")

    async def pull_remote_tasks(self, task_lists: list[TaskList], report: SyncReport) -> None:
        """Apply server-side creations, changes and deletions to the local store."""
        for task_list in task_lists:
            path = task_list.collection_path
            try:
                fetched = await self.client.fetch_all(path)
            except RemoteError as e:
                report.record_failure(PHASE_PULL, path, e)
                continue

            report.skipped += len(fetched.skipped)

            for record in fetched.tasks:
                try:
                    await self._pull_task(task_list, record, report)
                except Exception as e:
                    report.record_failure(PHASE_PULL, f"{path}{record.uid}", e)

            try:
                await self._remove_vanished(task_list, fetched.present_uids(self.client.task_extension), report)
            except Exception as e:
                report.record_failure(PHASE_PULL, path, e)

    async def _pull_task(self, task_list: TaskList, record: RemoteTaskRecord, report: SyncReport) -> None:
        local = await self.store.get_live_task_by_uid(task_list.id, record.uid)

        if local is None:
            tombstone = await self.store.get_tombstone(task_list.id, record.uid)
            if tombstone is not None:
                if tombstone.is_live(self.clock(), self.tombstone_retention.total_seconds()):
                    report.suppressed += 1
                    logger.debug(f"Not recreating {record.uid}: deleted locally")
                    return
                await self.store.delete_tombstone(task_list.id, record.uid)

            task = LocalTask(list_id=task_list.id, uid=record.uid, etag=record.etag)
            copy_fields(record, task)
            task = await self.store.insert_task(task)
            report.created_local += 1
            logger.debug(f"Created local task {task.id} from {record.uid}: {task.title}")
            await self.events.publish(TaskUpserted(task=task, created=True))
            return

        if local.etag and local.etag == record.etag:
            report.unchanged += 1
            return

        updated = await self.store.update_task_from_remote(local.id, record)
        report.updated_local += 1
        logger.debug(f"Updated local task {local.id} from {record.uid} (etag {local.etag} -> {record.etag})")
        await self.events.publish(TaskUpserted(task=updated, created=False))

    async def _remove_vanished(self, task_list: TaskList, present_uids: set[str], report: SyncReport) -> None:
        for task in await self.store.tasks_in_list(task_list.id):
            if task.dirty or not task.etag or not task.uid:
                continue
            if task.uid in present_uids:
                continue
            await self.store.purge_task(task.id)
            report.deleted_local += 1
            logger.debug(f"Removed local task {task.id} ({task.uid}): deleted on server")
            await self.events.publish(TaskDeleted(task_id=task.id, list_id=task_list.id, uid=task.uid))

    async def _record_outcome(self, report: SyncReport) -> None:
        target = self.account_name
        try:
            previous = await self.store.get_sync_state(target)
            state = SyncState(
                target=target,
                last_sync_at=previous.last_sync_at if previous else None,
                last_attempt_at=report.started_at,
                status=report.status,
                last_error=report.error,
                stats=report.stats,
            )
            if report.status != STATUS_ERROR:
                state.last_sync_at = report.finished_at
            await self.store.save_sync_state(state)
        except Exception as e:
            logger.error(f"Failed to record sync state: {e}")

        if report.status == STATUS_ERROR:
            await self.events.publish(SyncFailed(reason=report.reason, error=report.error or ""))
        else:
            await self.events.publish(
                SyncCompleted(reason=report.reason, status=report.status, stats=report.stats)
            )

    async def status(self) -> SyncState | None:
        """Persisted outcome of the most recent pass."""
        return await self.store.get_sync_state(self.account_name)


def _task_label(task: LocalTask) -> str:
    return task.uid or f"task {task.id}"
