"""Records shared by the store, the codec and the sync engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum


class TaskStatus(IntEnum):
    """Local task status. Values match the stored integers."""

    PENDING = 0
    IN_PROGRESS = 1
    COMPLETED = 2
    CANCELLED = 3


ACCOUNT_CALDAV = "caldav"
ACCOUNT_LOCAL = "local"


@dataclass
class TaskFields:
    """Task content that travels over the wire."""

    title: str = ""
    description: str | None = None
    location: str | None = None
    url: str | None = None
    organizer: str | None = None
    priority: int = 0
    status: TaskStatus = TaskStatus.PENDING
    start: datetime | None = None
    due: datetime | None = None
    completed_at: datetime | None = None
    created: datetime | None = None
    modified: datetime | None = None
    percent_complete: int = 0
    categories: list[str] = field(default_factory=list)


@dataclass
class LocalTask(TaskFields):
    """A task row in the local store."""

    id: int | None = None
    list_id: int | None = None
    uid: str | None = None
    etag: str | None = None
    dirty: bool = False
    deleted: bool = False
    revision: int = 0


@dataclass
class RemoteTaskRecord(TaskFields):
    """A VTODO parsed from the server during one pass. Never persisted as-is."""

    uid: str = ""
    etag: str | None = None
    last_modified: datetime | None = None
    href: str | None = None


@dataclass
class TaskList:
    """A local task list. CalDAV-backed lists map 1:1 to a remote collection."""

    id: int
    name: str
    account_type: str = ACCOUNT_LOCAL
    account_name: str | None = None
    collection_path: str | None = None
    created_at: float | None = None
    retired_at: float | None = None

    @property
    def is_caldav(self) -> bool:
        return self.account_type == ACCOUNT_CALDAV

    @property
    def is_active(self) -> bool:
        return self.retired_at is None


@dataclass
class Tombstone:
    """A local deletion that suppresses remote-to-local resurrection."""

    list_id: int
    uid: str
    deleted_at: float

    def is_live(self, now: float, retention_seconds: float) -> bool:
        return now - self.deleted_at < retention_seconds


@dataclass
class SyncState:
    """Persisted outcome of the most recent pass for a sync target."""

    target: str
    last_sync_at: float | None = None
    last_attempt_at: float | None = None
    status: str | None = None
    last_error: str | None = None
    stats: dict[str, int] = field(default_factory=dict)


def copy_fields(source: TaskFields, target: TaskFields) -> None:
    """Copy wire-level task content from ``source`` onto ``target``."""
    target.title = source.title
    target.description = source.description
    target.location = source.location
    target.url = source.url
    target.organizer = source.organizer
    target.priority = source.priority
    target.status = source.status
    target.start = source.start
    target.due = source.due
    target.completed_at = source.completed_at
    target.created = source.created
    target.modified = source.modified
    target.percent_complete = source.percent_complete
    target.categories = list(source.categories)
