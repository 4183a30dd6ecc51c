"""Tests for the local record set and its reconciliation with remote changes."""

from __future__ import annotations

import logging

import pytest

from src.heartsync.base import FIELD_VALUE, RemoteRecord, sort_newest_first
from src.heartsync.reconciler import HeartRateStore
from src.heartsync.remote.memory import InMemoryRecordStore
from src.heartsync.storage.staging import StagingStore
from src.heartsync.sync.engine import CloudSyncEngine
from src.heartsync.tests.conftest import OTHER_ACCOUNT, ZONE, RecordingSleep, make_record, make_remote


class TestLocalMutations:
    @pytest.mark.asyncio
    async def test_save_publishes_sorted_view(self, store: HeartRateStore, engine: CloudSyncEngine) -> None:
        views: list[list] = []
        store.on_records_changed(views.append)
        old, new = make_record(60, minutes=0), make_record(80, minutes=10)

        await store.save([old])
        await store.save([new])
        await engine.wait_idle()

        assert views[-1] == [new, old]
        assert store.records == [new, old]
        assert store.get(old.record_id) == old

    @pytest.mark.asyncio
    async def test_save_pushes_to_remote(
        self, store: HeartRateStore, engine: CloudSyncEngine, remote: InMemoryRecordStore
    ) -> None:
        record = make_record(70)
        assert await store.save([record]) is True
        assert record.record_id in remote.records(ZONE)
        await engine.wait_idle()

    @pytest.mark.asyncio
    async def test_delete_removes_locally_and_remotely(
        self, store: HeartRateStore, engine: CloudSyncEngine, remote: InMemoryRecordStore
    ) -> None:
        keep, doomed = make_record(70), make_record(71, minutes=1)
        await store.save([keep, doomed])
        assert await store.delete([doomed]) is True
        await engine.wait_idle()
        assert store.records == [keep]
        assert set(remote.records(ZONE)) == {keep.record_id}

    @pytest.mark.asyncio
    async def test_delete_all(self, store: HeartRateStore, engine: CloudSyncEngine, remote: InMemoryRecordStore) -> None:
        await store.save([make_record(70), make_record(71, minutes=1)])
        assert await store.delete_all() is True
        await engine.wait_idle()
        assert store.records == []
        assert remote.records(ZONE) == {}

    @pytest.mark.asyncio
    async def test_observer_failure_does_not_block_others(self, store: HeartRateStore, engine: CloudSyncEngine, caplog) -> None:
        seen: list[int] = []

        def broken(view) -> None:
            raise RuntimeError("observer down")

        store.on_records_changed(broken)
        store.on_records_changed(lambda view: seen.append(len(view)))
        with caplog.at_level(logging.ERROR, logger="heartsync.reconciler"):
            await store.save([make_record(70)])
            await engine.wait_idle()
        assert seen == [1]
        assert "observer" in caplog.text


class TestRemoteMerge:
    @pytest.mark.asyncio
    async def test_remote_changes_merge_into_sorted_view(
        self, store: HeartRateStore, engine: CloudSyncEngine, remote: InMemoryRecordStore
    ) -> None:
        local = make_record(70, minutes=5)
        await store.save([local])
        newer, older = make_record(90, minutes=20), make_record(50, minutes=-20)
        remote.put_record(make_remote(newer))
        remote.put_record(make_remote(older))

        await engine.fetch_zone_changes()
        await engine.wait_idle()

        assert store.records == [newer, local, older]
        assert store.records == sort_newest_first(store.records)

    @pytest.mark.asyncio
    async def test_remote_write_wins_for_same_id(
        self, store: HeartRateStore, engine: CloudSyncEngine, remote: InMemoryRecordStore
    ) -> None:
        record = make_record(70)
        await store.save([record])
        edited = make_remote(record)
        edited.fields[FIELD_VALUE] = 99
        remote.put_record(edited)

        await engine.fetch_zone_changes()
        await engine.wait_idle()
        assert [r.value for r in store.records] == [99]

    @pytest.mark.asyncio
    async def test_remote_delete(self, store: HeartRateStore, engine: CloudSyncEngine, remote: InMemoryRecordStore) -> None:
        record = make_record(70)
        await store.save([record])
        await engine.fetch_zone_changes()
        remote.remove_record(ZONE, record.record_id)
        await engine.fetch_zone_changes()
        await engine.wait_idle()
        assert store.records == []

    @pytest.mark.asyncio
    async def test_malformed_remote_record_is_ignored(
        self, store: HeartRateStore, engine: CloudSyncEngine, remote: InMemoryRecordStore
    ) -> None:
        remote.put_record(RemoteRecord(record_id=make_record().record_id, zone_id=ZONE, fields={FIELD_VALUE: 70}))
        await engine.fetch_zone_changes()
        await engine.wait_idle()
        assert store.records == []

    @pytest.mark.asyncio
    async def test_view_stays_sorted_through_mixed_changes(
        self, store: HeartRateStore, engine: CloudSyncEngine, remote: InMemoryRecordStore
    ) -> None:
        views: list[list] = []
        store.on_records_changed(views.append)
        await store.save([make_record(60, minutes=3), make_record(61, minutes=1)])
        remote.put_record(make_remote(make_record(62, minutes=2)))
        await engine.fetch_zone_changes()
        await store.save([make_record(63, minutes=0)])
        remote.put_record(make_remote(make_record(64, minutes=4)))
        await engine.fetch_zone_changes()
        await engine.wait_idle()

        assert views
        for view in views:
            assert view == sort_newest_first(view)
        assert [r.value for r in store.records] == [64, 60, 62, 61, 63]


class TestPersistence:
    @pytest.mark.asyncio
    async def test_records_survive_restart(
        self, store: HeartRateStore, engine: CloudSyncEngine, remote: InMemoryRecordStore, staging: StagingStore
    ) -> None:
        records = [make_record(70), make_record(71, minutes=1)]
        await store.save(records)
        await engine.wait_idle()
        await engine.close()

        engine2 = CloudSyncEngine(remote, staging, sleep=RecordingSleep())
        reloaded = HeartRateStore(engine2, staging)
        await reloaded.load()
        assert reloaded.records == sort_newest_first(records)
        await engine2.close()

    @pytest.mark.asyncio
    async def test_wipe_local_leaves_remote(
        self, store: HeartRateStore, engine: CloudSyncEngine, remote: InMemoryRecordStore, staging: StagingStore
    ) -> None:
        record = make_record(70)
        await store.save([record])
        store.wipe_local()
        await engine.wait_idle()
        assert store.records == []
        assert staging.load_records() == []
        assert record.record_id in remote.records(ZONE)


class TestAccountChange:
    @pytest.mark.asyncio
    async def test_reupload_sends_every_record_to_new_account(
        self, store: HeartRateStore, engine: CloudSyncEngine, remote: InMemoryRecordStore
    ) -> None:
        records = [make_record(70), make_record(71, minutes=1)]
        await engine.refresh_account()
        await store.save(records)
        await engine.wait_idle()

        engine.on_account_changed(store.reupload_all)
        remote.switch_account(OTHER_ACCOUNT)
        assert await engine.refresh_account() is True
        await engine.wait_idle()

        assert set(remote.records(ZONE)) == {r.record_id for r in records}
        assert await engine.pending_records() == ([], [])
