"""Composition root wiring configuration, store, client, engine and scheduler."""

import logging

import httpx

from opentasks_sync.core.config import AppConfig
from opentasks_sync.core.errors import ConfigurationError
from opentasks_sync.core.events import EventBroadcaster
from opentasks_sync.core.models import SyncState
from opentasks_sync.core.scheduler import SyncScheduler
from opentasks_sync.core.tasks_sync import SyncReport, TasksSyncEngine
from opentasks_sync.sources.caldav.client import CalDAVTaskClient
from opentasks_sync.sources.caldav.discovery import CollectionDiscovery
from opentasks_sync.utils.db import TaskStore

logger = logging.getLogger(__name__)


class TasksSyncService:
    """
    Owns every long-lived object of the sync stack for one CalDAV account.

    Nothing here is global: an application builds one service from its
    configuration, calls :meth:`initialize`, and passes the service (or its
    ``store``/``events``) to whoever needs them.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        store: TaskStore | None = None,
        events: EventBroadcaster | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the service.

        Args:
            config: Application configuration
            store: Task store (defaults to the SQLite store under the data directory)
            events: Event broadcaster shared with the embedding application
            transport: Optional httpx transport for the CalDAV client
        """
        self.config = config
        self.store = store or TaskStore(config.tasks_db_path)
        self.events = events or EventBroadcaster()
        self._transport = transport

        self.client: CalDAVTaskClient | None = None
        self.engine: TasksSyncEngine | None = None
        self.scheduler: SyncScheduler | None = None

    async def __aenter__(self) -> "TasksSyncService":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def initialize(self) -> None:
        """
        Validate configuration and build the sync stack.

        Raises:
            ConfigurationError: if CalDAV sync is disabled or incompletely configured
        """
        caldav = self.config.caldav
        if not caldav.enabled:
            raise ConfigurationError("CalDAV sync is disabled in the configuration")
        if not caldav.is_configured:
            raise ConfigurationError("CalDAV server URL and username must be configured")

        password = caldav.get_password()
        if not password:
            raise ConfigurationError(
                f"No CalDAV password found for {caldav.username}; "
                "run 'opentasks-sync set-password' or set OPENTASKS_CALDAV_PASSWORD"
            )

        await self.store.initialize()

        self.client = CalDAVTaskClient(
            caldav.server_url,
            caldav.username,
            password,
            timeout=caldav.request_timeout_seconds,
            ssl_verify=caldav.ssl_verify,
            task_extension=caldav.task_extension,
            transport=self._transport,
        )
        root = caldav.resolved_collection_path
        self.engine = TasksSyncEngine(
            self.client,
            self.store,
            collection_root=root,
            account_name=self.config.sync_target,
            discovery=CollectionDiscovery(self.client, root, caldav.task_extension),
            tombstone_retention=caldav.tombstone_retention,
            events=self.events,
        )
        self.scheduler = SyncScheduler(
            self.engine,
            debounce_seconds=caldav.debounce_seconds,
            interval_minutes=caldav.sync_interval_minutes,
        )
        logger.info(f"CalDAV sync service initialized for {self.config.sync_target}")

    async def start(self, initial_sync: bool = True) -> None:
        """Start background syncing."""
        await self._require_scheduler().start(initial_sync=initial_sync)

    async def stop(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()

    async def close(self) -> None:
        """Stop background syncing and release network resources."""
        await self.stop()
        if self.client is not None:
            await self.client.close()
            self.client = None

    async def sync_now(self, reason: str = "manual") -> SyncReport | None:
        """Run a pass immediately; None if one is already running."""
        return await self._require_scheduler().sync_now(reason)

    def notify_change(self, list_id: int | None = None, operation: str = "update", task_id: int | None = None) -> None:
        """Tell the scheduler the local CRUD layer changed a task."""
        self._require_scheduler().notify_change(list_id, operation, task_id)

    async def status(self) -> SyncState | None:
        return await self.store.get_sync_state(self.config.sync_target)

    def _require_scheduler(self) -> SyncScheduler:
        if self.scheduler is None:
            raise RuntimeError("TasksSyncService.initialize() has not been called")
        return self.scheduler
