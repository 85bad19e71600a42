"""SQLite task store used by the sync engine."""

import json
import logging
import time
from pathlib import Path

import aiosqlite

from opentasks_sync.core.models import (
    ACCOUNT_CALDAV,
    ACCOUNT_LOCAL,
    LocalTask,
    RemoteTaskRecord,
    SyncState,
    TaskList,
    TaskStatus,
    Tombstone,
)
from opentasks_sync.utils.datetime_utils import from_iso, to_iso

logger = logging.getLogger(__name__)

_TASK_FIELD_COLUMNS = (
    "title",
    "description",
    "location",
    "url",
    "organizer",
    "priority",
    "status",
    "start",
    "due",
    "completed_at",
    "created",
    "modified",
    "percent_complete",
    "categories",
)


class TaskStore:
    """
    Manages the SQLite database holding task lists, tasks and sync bookkeeping.

    Each task row carries the sync columns the engine needs: ``uid`` (identity
    shared with the server), ``etag`` (last identity tag seen), ``dirty``
    (local edit not yet pushed), ``deleted`` (soft delete) and ``revision``
    (bumped by every local edit).
    """

    def __init__(self, db_path: Path):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    async def initialize(self) -> None:
        """
        Initialize database schema if it doesn't exist.

        Creates the task_lists, tasks, tombstones and sync_state tables.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS task_lists (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    account_type TEXT NOT NULL DEFAULT 'local',
                    account_name TEXT,
                    collection_path TEXT,
                    created_at REAL NOT NULL,
                    retired_at REAL
                )
                """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    list_id INTEGER NOT NULL REFERENCES task_lists(id),
                    uid TEXT,
                    title TEXT NOT NULL DEFAULT '',
                    description TEXT,
                    location TEXT,
                    url TEXT,
                    organizer TEXT,
                    priority INTEGER NOT NULL DEFAULT 0,
                    status INTEGER NOT NULL DEFAULT 0,
                    start TEXT,
                    due TEXT,
                    completed_at TEXT,
                    created TEXT,
                    modified TEXT,
                    percent_complete INTEGER NOT NULL DEFAULT 0,
                    categories TEXT NOT NULL DEFAULT '[]',
                    etag TEXT,
                    dirty INTEGER NOT NULL DEFAULT 0,
                    deleted INTEGER NOT NULL DEFAULT 0,
                    revision INTEGER NOT NULL DEFAULT 0
                )
                """
            )

            await db.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_tasks_list_uid
                ON tasks(list_id, uid)
                """
            )

            await db.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_tasks_dirty
                ON tasks(dirty)
                """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS tombstones (
                    list_id INTEGER NOT NULL,
                    uid TEXT NOT NULL,
                    deleted_at REAL NOT NULL,
                    PRIMARY KEY (list_id, uid)
                )
                """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_state (
                    target TEXT PRIMARY KEY,
                    last_sync_at REAL,
                    last_attempt_at REAL,
                    status TEXT,
                    last_error TEXT,
                    stats_json TEXT
                )
                """
            )

            await db.commit()
            logger.debug(f"Task database initialized at {self.db_path}")

    async def create_list(
        self,
        name: str,
        *,
        account_type: str = ACCOUNT_LOCAL,
        account_name: str | None = None,
        collection_path: str | None = None,
        created_at: float | None = None,
    ) -> TaskList:
        """
        Create a task list.

        Args:
            name: Display name
            account_type: ``caldav`` for server-backed lists, ``local`` otherwise
            account_name: Sync target owning a CalDAV list
            collection_path: Server path of the backing collection
            created_at: Creation time (Unix timestamp, defaults to now)

        Returns:
            The stored list
        """
        created_at = time.time() if created_at is None else created_at
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO task_lists (name, account_type, account_name, collection_path, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (name, account_type, account_name, collection_path, created_at),
            )
            await db.commit()
            list_id = cursor.lastrowid

        logger.debug(f"Created task list {list_id}: {name} ({account_type})")
        return TaskList(
            id=list_id,
            name=name,
            account_type=account_type,
            account_name=account_name,
            collection_path=collection_path,
            created_at=created_at,
        )

    async def get_list_by_path(self, account_name: str, collection_path: str) -> TaskList | None:
        """
        Get the active CalDAV list backed by a collection.

        Retired lists are never returned; a collection that reappears after
        retirement gets a fresh list.
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT * FROM task_lists
                WHERE account_type = ? AND account_name = ? AND collection_path = ?
                  AND retired_at IS NULL
                ORDER BY id
                LIMIT 1
                """,
                (ACCOUNT_CALDAV, account_name, collection_path),
            ) as cursor:
                row = await cursor.fetchone()
                return _row_to_list(row) if row else None

    async def list_collections(
        self, account_name: str | None = None, *, include_retired: bool = False
    ) -> list[TaskList]:
        """
        Get CalDAV-backed lists.

        Args:
            account_name: Restrict to one sync target (all targets when None)
            include_retired: Also return retired lists

        Returns:
            Lists ordered by id
        """
        query = "SELECT * FROM task_lists WHERE account_type = ?"
        params: list = [ACCOUNT_CALDAV]
        if account_name is not None:
            query += " AND account_name = ?"
            params.append(account_name)
        if not include_retired:
            query += " AND retired_at IS NULL"
        query += " ORDER BY id"

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
                return [_row_to_list(row) for row in rows]

    async def get_all_lists(self, include_retired: bool = False) -> list[TaskList]:
        query = "SELECT * FROM task_lists"
        if not include_retired:
            query += " WHERE retired_at IS NULL"
        query += " ORDER BY id"
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query) as cursor:
                rows = await cursor.fetchall()
                return [_row_to_list(row) for row in rows]

    async def retire_list(self, list_id: int, retired_at: float | None = None) -> int:
        """
        Retire a list whose collection disappeared from the server.

        Its live tasks are soft-deleted with ``dirty`` cleared so that nothing
        is pushed back to the server for them. Deletions still waiting to be
        pushed can no longer reach the server, so those rows and the list's
        tombstones are dropped outright. The soft-deleted rows themselves are
        removed later by :meth:`purge_retired_tasks`.

        Returns:
            Number of tasks soft-deleted
        """
        retired_at = time.time() if retired_at is None else retired_at
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "UPDATE task_lists SET retired_at = ? WHERE id = ?",
                (retired_at, list_id),
            )
            await db.execute("DELETE FROM tasks WHERE list_id = ? AND deleted = 1", (list_id,))
            await db.execute("DELETE FROM tombstones WHERE list_id = ?", (list_id,))
            cursor = await db.execute(
                "UPDATE tasks SET deleted = 1, dirty = 0 WHERE list_id = ? AND deleted = 0",
                (list_id,),
            )
            await db.commit()
            count = cursor.rowcount

        logger.debug(f"Retired task list {list_id} ({count} tasks soft-deleted)")
        return count

    async def purge_retired_tasks(self, cutoff: float) -> int:
        """
        Hard-delete the tasks of lists retired before ``cutoff``.

        Returns:
            Number of task rows removed
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                DELETE FROM tasks
                WHERE list_id IN (
                    SELECT id FROM task_lists WHERE retired_at IS NOT NULL AND retired_at < ?
                )
                """,
                (cutoff,),
            )
            await db.commit()
            count = cursor.rowcount

        if count > 0:
            logger.info(f"Purged {count} task(s) of retired lists")
        return count

    async def insert_task(self, task: LocalTask) -> LocalTask:
        """
        Insert a task row exactly as given.

        Args:
            task: Task to insert; ``list_id`` is required

        Returns:
            The same task with ``id`` populated
        """
        if task.list_id is None:
            raise ValueError("Task must belong to a list")

        columns = ("list_id", "uid", *_TASK_FIELD_COLUMNS, "etag", "dirty", "deleted", "revision")
        values = (
            task.list_id,
            task.uid,
            *_field_values(task),
            task.etag,
            int(task.dirty),
            int(task.deleted),
            task.revision,
        )
        placeholders = ", ".join("?" for _ in columns)

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"INSERT INTO tasks ({', '.join(columns)}) VALUES ({placeholders})",
                values,
            )
            await db.commit()
            task.id = cursor.lastrowid

        logger.debug(f"Inserted task {task.id} in list {task.list_id}: {task.title}")
        return task

    async def create_local_task(self, task: LocalTask) -> LocalTask:
        """Insert a task created by the local CRUD layer (dirty, first revision)."""
        task.dirty = True
        task.deleted = False
        task.revision = max(task.revision, 1)
        return await self.insert_task(task)

    async def save_local_edit(self, task: LocalTask) -> LocalTask:
        """
        Persist a local edit of a task's content.

        Marks the task dirty and bumps its revision.

        Returns:
            The refreshed task
        """
        assignments = ", ".join(f"{column} = ?" for column in _TASK_FIELD_COLUMNS)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"""
                UPDATE tasks
                SET {assignments}, dirty = 1, revision = revision + 1
                WHERE id = ?
                """,
                (*_field_values(task), task.id),
            )
            await db.commit()

        refreshed = await self.get_task(task.id)
        logger.debug(f"Saved local edit of task {task.id}")
        return refreshed

    async def update_task_from_remote(self, task_id: int, record: RemoteTaskRecord) -> LocalTask | None:
        """
        Overwrite a task's content with the server's version.

        The stored identity tag becomes the record's tag and ``dirty`` is cleared.
        """
        assignments = ", ".join(f"{column} = ?" for column in _TASK_FIELD_COLUMNS)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"""
                UPDATE tasks
                SET {assignments}, uid = ?, etag = ?, dirty = 0
                WHERE id = ?
                """,
                (*_field_values(record), record.uid, record.etag, task_id),
            )
            await db.commit()

        return await self.get_task(task_id)

    async def get_task(self, task_id: int) -> LocalTask | None:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)) as cursor:
                row = await cursor.fetchone()
                return _row_to_task(row) if row else None

    async def get_live_task_by_uid(self, list_id: int, uid: str) -> LocalTask | None:
        """
        Get the non-deleted task with a uid in a list.

        Args:
            list_id: ID of the list
            uid: Cross-system task identity

        Returns:
            The task, or None if no live task carries that uid
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT * FROM tasks
                WHERE list_id = ? AND uid = ? AND deleted = 0
                ORDER BY id
                LIMIT 1
                """,
                (list_id, uid),
            ) as cursor:
                row = await cursor.fetchone()
                return _row_to_task(row) if row else None

    async def get_dirty_tasks(self, list_id: int) -> list[LocalTask]:
        """Tasks of a list with local changes (including pending deletions) not yet pushed."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM tasks WHERE list_id = ? AND dirty = 1 ORDER BY id",
                (list_id,),
            ) as cursor:
                rows = await cursor.fetchall()
                return [_row_to_task(row) for row in rows]

    async def tasks_in_list(self, list_id: int, include_deleted: bool = False) -> list[LocalTask]:
        query = "SELECT * FROM tasks WHERE list_id = ?"
        if not include_deleted:
            query += " AND deleted = 0"
        query += " ORDER BY id"
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, (list_id,)) as cursor:
                rows = await cursor.fetchall()
                return [_row_to_task(row) for row in rows]

    async def assign_uid(self, task_id: int, uid: str) -> None:
        """Persist a freshly generated uid before the task's first upload."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("UPDATE tasks SET uid = ? WHERE id = ?", (uid, task_id))
            await db.commit()
        logger.debug(f"Assigned uid {uid} to task {task_id}")

    async def mark_pushed(self, task_id: int, etag: str, revision: int) -> bool:
        """
        Record a successful upload.

        ``dirty`` is cleared only if the task was not edited again while the
        upload was in flight (its revision is still ``revision``).

        Returns:
            True if the task is now clean
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE tasks
                SET etag = ?, dirty = CASE WHEN revision = ? THEN 0 ELSE dirty END
                WHERE id = ?
                """,
                (etag, revision, task_id),
            )
            await db.commit()
            if cursor.rowcount == 0:
                return False

        task = await self.get_task(task_id)
        return task is not None and not task.dirty

    async def soft_delete_task(self, task_id: int, deleted_at: float | None = None) -> LocalTask | None:
        """
        Delete a task locally.

        The row stays (deleted and dirty) until the deletion has been pushed;
        a tombstone suppresses the task from being recreated by a pull
        in the meantime.

        Returns:
            The deleted task, or None if it does not exist
        """
        task = await self.get_task(task_id)
        if task is None:
            return None

        deleted_at = time.time() if deleted_at is None else deleted_at
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "UPDATE tasks SET deleted = 1, dirty = 1, revision = revision + 1 WHERE id = ?",
                (task_id,),
            )
            if task.uid:
                await db.execute(
                    """
                    INSERT INTO tombstones (list_id, uid, deleted_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(list_id, uid) DO UPDATE SET deleted_at = excluded.deleted_at
                    """,
                    (task.list_id, task.uid, deleted_at),
                )
            await db.commit()

        logger.debug(f"Soft-deleted task {task_id} (uid={task.uid})")
        return await self.get_task(task_id)

    async def purge_task(self, task_id: int) -> None:
        """Remove a task row for good."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            await db.commit()
        logger.debug(f"Purged task {task_id}")

    async def task_counts(self) -> dict[str, int]:
        """Row counts for status output."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT
                    COALESCE(SUM(CASE WHEN deleted = 0 THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN dirty = 1 THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN deleted = 1 THEN 1 ELSE 0 END), 0)
                FROM tasks
                """
            ) as cursor:
                live, dirty, deleted = await cursor.fetchone()
            async with db.execute("SELECT COUNT(*) FROM tombstones") as cursor:
                (tombstones,) = await cursor.fetchone()

        return {"live": live, "dirty": dirty, "deleted": deleted, "tombstones": tombstones}

    async def record_tombstone(self, list_id: int, uid: str, deleted_at: float | None = None) -> None:
        deleted_at = time.time() if deleted_at is None else deleted_at
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO tombstones (list_id, uid, deleted_at)
                VALUES (?, ?, ?)
                ON CONFLICT(list_id, uid) DO UPDATE SET deleted_at = excluded.deleted_at
                """,
                (list_id, uid, deleted_at),
            )
            await db.commit()

    async def get_tombstone(self, list_id: int, uid: str) -> Tombstone | None:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM tombstones WHERE list_id = ? AND uid = ?",
                (list_id, uid),
            ) as cursor:
                row = await cursor.fetchone()
                if not row:
                    return None
                return Tombstone(list_id=row["list_id"], uid=row["uid"], deleted_at=row["deleted_at"])

    async def delete_tombstone(self, list_id: int, uid: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "DELETE FROM tombstones WHERE list_id = ? AND uid = ?",
                (list_id, uid),
            )
            await db.commit()

    async def prune_tombstones(self, cutoff: float) -> int:
        """
        Delete tombstones written before ``cutoff``.

        Args:
            cutoff: Unix timestamp; older tombstones are removed

        Returns:
            Number of tombstones removed
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM tombstones WHERE deleted_at < ?", (cutoff,))
            await db.commit()
            count = cursor.rowcount

        if count > 0:
            logger.info(f"Pruned {count} expired tombstone(s)")
        return count

    async def get_sync_state(self, target: str) -> SyncState | None:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM sync_state WHERE target = ?", (target,)) as cursor:
                row = await cursor.fetchone()
                if not row:
                    return None
                return SyncState(
                    target=row["target"],
                    last_sync_at=row["last_sync_at"],
                    last_attempt_at=row["last_attempt_at"],
                    status=row["status"],
                    last_error=row["last_error"],
                    stats=json.loads(row["stats_json"]) if row["stats_json"] else {},
                )

    async def save_sync_state(self, state: SyncState) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO sync_state (target, last_sync_at, last_attempt_at, status, last_error, stats_json)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(target) DO UPDATE SET
                    last_sync_at = excluded.last_sync_at,
                    last_attempt_at = excluded.last_attempt_at,
                    status = excluded.status,
                    last_error = excluded.last_error,
                    stats_json = excluded.stats_json
                """,
                (
                    state.target,
                    state.last_sync_at,
                    state.last_attempt_at,
                    state.status,
                    state.last_error,
                    json.dumps(state.stats),
                ),
            )
            await db.commit()
            logger.debug(f"Saved sync state for {state.target}: {state.status}")


def _field_values(task) -> tuple:
    return (
        task.title or "",
        task.description,
        task.location,
        task.url,
        task.organizer,
        int(task.priority or 0),
        int(task.status),
        to_iso(task.start),
        to_iso(task.due),
        to_iso(task.completed_at),
        to_iso(task.created),
        to_iso(task.modified),
        int(task.percent_complete or 0),
        json.dumps(list(task.categories or [])),
    )


def _row_to_task(row: aiosqlite.Row) -> LocalTask:
    return LocalTask(
        id=row["id"],
        list_id=row["list_id"],
        uid=row["uid"],
        title=row["title"],
        description=row["description"],
        location=row["location"],
        url=row["url"],
        organizer=row["organizer"],
        priority=row["priority"],
        status=TaskStatus(row["status"]),
        start=from_iso(row["start"]),
        due=from_iso(row["due"]),
        completed_at=from_iso(row["completed_at"]),
        created=from_iso(row["created"]),
        modified=from_iso(row["modified"]),
        percent_complete=row["percent_complete"],
        categories=json.loads(row["categories"] or "[]"),
        etag=row["etag"],
        dirty=bool(row["dirty"]),
        deleted=bool(row["deleted"]),
        revision=row["revision"],
    )


def _row_to_list(row: aiosqlite.Row) -> TaskList:
    return TaskList(
        id=row["id"],
        name=row["name"],
        account_type=row["account_type"],
        account_name=row["account_name"],
        collection_path=row["collection_path"],
        created_at=row["created_at"],
        retired_at=row["retired_at"],
    )
