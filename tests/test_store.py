from datetime import datetime

from opentasks_sync.core.models import ACCOUNT_CALDAV, LocalTask, RemoteTaskRecord, SyncState, TaskStatus

ACCOUNT = "caldav:alice@https://dav.example.com"


async def _caldav_list(store, path="/calendars/alice/home/"):
    return await store.create_list(
        "home",
        account_type=ACCOUNT_CALDAV,
        account_name=ACCOUNT,
        collection_path=path,
        created_at=1000.0,
    )


async def test_initialize_is_idempotent(store):
    await store.initialize()
    assert await store.get_all_lists() == []


async def test_task_fields_survive_storage(store):
    task_list = await _caldav_list(store)
    task = LocalTask(
        list_id=task_list.id,
        title="Plan trip",
        description="Flights\nHotel",
        priority=2,
        status=TaskStatus.IN_PROGRESS,
        due=datetime(2024, 5, 1, 9, 0),
        percent_complete=40,
        categories=["travel", "family"],
    )

    created = await store.create_local_task(task)
    loaded = await store.get_task(created.id)

    assert loaded.title == "Plan trip"
    assert loaded.description == "Flights\nHotel"
    assert loaded.status == TaskStatus.IN_PROGRESS
    assert loaded.due == datetime(2024, 5, 1, 9, 0)
    assert loaded.categories == ["travel", "family"]
    assert loaded.dirty is True
    assert loaded.deleted is False
    assert loaded.revision == 1
    assert loaded.uid is None


async def test_get_list_by_path_ignores_retired_lists(store):
    task_list = await _caldav_list(store)
    assert (await store.get_list_by_path(ACCOUNT, "/calendars/alice/home/")).id == task_list.id

    await store.retire_list(task_list.id, retired_at=2000.0)

    assert await store.get_list_by_path(ACCOUNT, "/calendars/alice/home/") is None
    assert await store.list_collections(ACCOUNT) == []
    retired = await store.list_collections(ACCOUNT, include_retired=True)
    assert [(lst.id, lst.retired_at) for lst in retired] == [(task_list.id, 2000.0)]


async def test_list_collections_filters_by_account(store):
    await _caldav_list(store)
    await store.create_list("other", account_type=ACCOUNT_CALDAV, account_name="caldav:bob@x", collection_path="/b/")
    await store.create_list("Inbox")

    assert [lst.name for lst in await store.list_collections(ACCOUNT)] == ["home"]
    assert len(await store.list_collections()) == 2
    assert len(await store.get_all_lists()) == 3


async def test_retire_list_soft_deletes_tasks_without_marking_dirty(store):
    task_list = await _caldav_list(store)
    first = await store.create_local_task(LocalTask(list_id=task_list.id, title="a"))
    await store.create_local_task(LocalTask(list_id=task_list.id, title="b"))

    count = await store.retire_list(task_list.id)

    assert count == 2
    task = await store.get_task(first.id)
    assert task.deleted is True
    assert task.dirty is False
    assert await store.get_dirty_tasks(task_list.id) == []


async def test_retire_list_drops_pending_deletions_and_tombstones(store):
    task_list = await _caldav_list(store)
    pending = await store.insert_task(LocalTask(list_id=task_list.id, uid="U1", etag="E1", title="a"))
    await store.soft_delete_task(pending.id, deleted_at=1500.0)
    live = await store.create_local_task(LocalTask(list_id=task_list.id, title="b"))

    count = await store.retire_list(task_list.id, retired_at=2000.0)

    assert count == 1
    assert await store.get_task(pending.id) is None
    assert await store.get_tombstone(task_list.id, "U1") is None
    assert (await store.get_task(live.id)).deleted is True


async def test_purge_retired_tasks_honours_cutoff(store):
    retired = await _caldav_list(store)
    active = await _caldav_list(store, path="/calendars/alice/work/")
    old = await store.create_local_task(LocalTask(list_id=retired.id, title="a"))
    other = await store.create_local_task(LocalTask(list_id=active.id, title="b"))
    await store.retire_list(retired.id, retired_at=2000.0)

    assert await store.purge_retired_tasks(2000.0) == 0
    assert await store.purge_retired_tasks(2000.5) == 1
    assert await store.get_task(old.id) is None
    assert await store.get_task(other.id) is not None


async def test_save_local_edit_bumps_revision(store):
    task_list = await _caldav_list(store)
    task = await store.insert_task(LocalTask(list_id=task_list.id, title="a", uid="U1", etag="E1", revision=3))

    task.title = "b"
    edited = await store.save_local_edit(task)

    assert edited.title == "b"
    assert edited.dirty is True
    assert edited.revision == 4


async def test_mark_pushed_keeps_task_dirty_when_edited_during_upload(store):
    task_list = await _caldav_list(store)
    task = await store.create_local_task(LocalTask(list_id=task_list.id, title="a", uid="U1"))
    pushed_revision = task.revision

    # Edit lands while the PUT is in flight
    task.title = "edited"
    await store.save_local_edit(task)

    clean = await store.mark_pushed(task.id, "E1", pushed_revision)

    stored = await store.get_task(task.id)
    assert clean is False
    assert stored.dirty is True
    assert stored.etag == "E1"


async def test_mark_pushed_clears_dirty(store):
    task_list = await _caldav_list(store)
    task = await store.create_local_task(LocalTask(list_id=task_list.id, title="a", uid="U1"))

    assert await store.mark_pushed(task.id, "E1", task.revision) is True
    assert (await store.get_task(task.id)).dirty is False
    assert await store.mark_pushed(9999, "E1", 1) is False


async def test_update_from_remote_overwrites_content(store):
    task_list = await _caldav_list(store)
    task = await store.create_local_task(LocalTask(list_id=task_list.id, title="old", uid="U1"))

    record = RemoteTaskRecord(uid="U1", title="new", status=TaskStatus.COMPLETED, etag="E2")
    updated = await store.update_task_from_remote(task.id, record)

    assert updated.title == "new"
    assert updated.status == TaskStatus.COMPLETED
    assert updated.etag == "E2"
    assert updated.dirty is False


async def test_soft_delete_writes_tombstone(store):
    task_list = await _caldav_list(store)
    task = await store.insert_task(LocalTask(list_id=task_list.id, title="a", uid="U1", etag="E1"))

    deleted = await store.soft_delete_task(task.id, deleted_at=5000.0)

    assert deleted.deleted is True
    assert deleted.dirty is True
    assert await store.get_live_task_by_uid(task_list.id, "U1") is None
    tombstone = await store.get_tombstone(task_list.id, "U1")
    assert tombstone.deleted_at == 5000.0
    assert tombstone.is_live(now=5000.0 + 60, retention_seconds=3600)
    assert not tombstone.is_live(now=5000.0 + 3600, retention_seconds=3600)


async def test_soft_delete_without_uid_writes_no_tombstone(store):
    task_list = await _caldav_list(store)
    task = await store.create_local_task(LocalTask(list_id=task_list.id, title="never pushed"))

    await store.soft_delete_task(task.id)

    assert (await store.task_counts())["tombstones"] == 0
    assert await store.soft_delete_task(12345) is None


async def test_prune_tombstones(store):
    await store.record_tombstone(1, "old", deleted_at=100.0)
    await store.record_tombstone(1, "new", deleted_at=900.0)

    removed = await store.prune_tombstones(cutoff=500.0)

    assert removed == 1
    assert await store.get_tombstone(1, "old") is None
    assert await store.get_tombstone(1, "new") is not None

    await store.delete_tombstone(1, "new")
    assert await store.get_tombstone(1, "new") is None


async def test_task_counts(store):
    task_list = await _caldav_list(store)
    await store.insert_task(LocalTask(list_id=task_list.id, title="clean", uid="U1", etag="E1"))
    dirty = await store.create_local_task(LocalTask(list_id=task_list.id, title="dirty"))
    gone = await store.insert_task(LocalTask(list_id=task_list.id, title="gone", uid="U3", etag="E3"))
    await store.soft_delete_task(gone.id)
    await store.purge_task(dirty.id)

    assert await store.task_counts() == {"live": 1, "dirty": 1, "deleted": 1, "tombstones": 1}


async def test_sync_state_round_trip(store):
    assert await store.get_sync_state(ACCOUNT) is None

    await store.save_sync_state(
        SyncState(target=ACCOUNT, last_sync_at=10.0, last_attempt_at=10.0, status="success", stats={"created_local": 2})
    )
    await store.save_sync_state(
        SyncState(target=ACCOUNT, last_sync_at=10.0, last_attempt_at=20.0, status="error", last_error="boom")
    )

    state = await store.get_sync_state(ACCOUNT)
    assert state.last_sync_at == 10.0
    assert state.last_attempt_at == 20.0
    assert state.status == "error"
    assert state.last_error == "boom"
    assert state.stats == {}
