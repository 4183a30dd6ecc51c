"""Tests for live workout telemetry: message channel, workout session and bridge."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from src.heartsync.base import utc_now
from src.heartsync.reconciler import HeartRateStore
from src.heartsync.sync.engine import CloudSyncEngine
from src.heartsync.telemetry import (
    HeartRateSample,
    InProcessMessageChannel,
    LiveTelemetryBridge,
    MessageKey,
    QueueSampleSource,
    WorkoutConfiguration,
    WorkoutSession,
    WorkoutState,
    heart_rate_message,
)
from src.heartsync.tests.conftest import T0


class FailingSource(QueueSampleSource):
    async def start(self, config: WorkoutConfiguration) -> None:
        raise RuntimeError("sensor unavailable")


async def _wait_until(predicate, timeout: float = 1.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0)

    await asyncio.wait_for(poll(), timeout)


class TestMessageChannel:
    def test_send_requires_reachable_peer(self) -> None:
        watch, phone = InProcessMessageChannel.pair()
        received: list[dict] = []
        phone.add_handler(received.append)

        assert watch.send({"a": 1}) is True
        phone.set_active(False)
        assert watch.send({"b": 2}) is False
        assert received == [{"a": 1}]

    def test_transfer_waits_for_peer(self) -> None:
        watch, phone = InProcessMessageChannel.pair()
        received: list[dict] = []
        phone.add_handler(received.append)
        phone.set_active(False)

        watch.transfer({"n": 1})
        watch.transfer({"n": 2})
        assert received == []
        phone.set_active(True)
        assert received == [{"n": 1}, {"n": 2}]

    def test_removed_handler_stops_receiving(self) -> None:
        watch, phone = InProcessMessageChannel.pair()
        received: list[dict] = []
        remove = phone.add_handler(received.append)
        remove()
        watch.send({"a": 1})
        assert received == []

    def test_unpaired_channel_is_unreachable(self) -> None:
        assert InProcessMessageChannel().reachable is False


class TestLiveTelemetryBridge:
    @pytest.mark.asyncio
    async def test_each_sample_becomes_one_record(self, store: HeartRateStore, engine: CloudSyncEngine) -> None:
        bridge = LiveTelemetryBridge(store, InProcessMessageChannel())
        for i, value in enumerate([70, 72, 75]):
            record = bridge.handle_message(heart_rate_message(value, T0 + timedelta(seconds=i)))
            assert record is not None
        await engine.wait_idle()

        assert [r.value for r in store.records] == [75, 72, 70]
        assert len({r.record_id for r in store.records}) == 3
        assert bridge.state is WorkoutState.RUNNING

    @pytest.mark.asyncio
    async def test_malformed_sample_is_ignored(self, store: HeartRateStore) -> None:
        bridge = LiveTelemetryBridge(store, InProcessMessageChannel())
        bad_value = {MessageKey.HEART_RATE_VALUE: "fast", MessageKey.HEART_RATE_DATE: T0.isoformat()}
        bad_date = {MessageKey.HEART_RATE_VALUE: 70, MessageKey.HEART_RATE_DATE: "soon"}
        value_only = {MessageKey.HEART_RATE_VALUE: 70}

        assert bridge.handle_message(bad_value) is None
        assert bridge.handle_message(bad_date) is None
        assert bridge.handle_message(value_only) is None
        assert store.records == []
        assert bridge.state is WorkoutState.NOT_STARTED

    def test_workout_events_drive_state(self, store: HeartRateStore) -> None:
        bridge = LiveTelemetryBridge(store, InProcessMessageChannel())
        states: list[WorkoutState] = []
        bridge.on_workout_state_changed(states.append)

        bridge.handle_message({MessageKey.WORKOUT_START: True})
        bridge.handle_message({MessageKey.WORKOUT_STOP: True})
        bridge.handle_message({MessageKey.WORKOUT_ERROR: "permission denied"})

        assert states == [WorkoutState.RUNNING, WorkoutState.NOT_STARTED, WorkoutState.ERROR]
        assert bridge.last_error == "permission denied"

    def test_failing_state_handler_does_not_block_delivery(self, store: HeartRateStore, caplog) -> None:
        watch, phone = InProcessMessageChannel.pair()
        bridge = LiveTelemetryBridge(store, phone)
        states: list[WorkoutState] = []

        def broken(state: WorkoutState) -> None:
            raise RuntimeError("display gone")

        bridge.on_workout_state_changed(broken)
        bridge.on_workout_state_changed(states.append)

        assert watch.send({MessageKey.WORKOUT_START: True}) is True
        assert bridge.state is WorkoutState.RUNNING
        assert states == [WorkoutState.RUNNING]
        assert "Workout state handler" in caplog.text

    def test_stop_request_falls_back_to_transfer(self, store: HeartRateStore) -> None:
        watch, phone = InProcessMessageChannel.pair()
        bridge = LiveTelemetryBridge(store, phone)
        received: list[dict] = []
        watch.add_handler(received.append)
        watch.set_active(False)

        bridge.request_stop()
        assert received == []
        watch.set_active(True)
        assert received == [{MessageKey.WORKOUT_STOP: True}]


class TestWorkoutSession:
    @pytest.mark.asyncio
    async def test_samples_stream_to_phone_store(self, store: HeartRateStore, engine: CloudSyncEngine) -> None:
        watch, phone = InProcessMessageChannel.pair()
        bridge = LiveTelemetryBridge(store, phone)
        source = QueueSampleSource()
        session = WorkoutSession(source, watch)

        assert await session.start() is True
        assert session.running
        assert bridge.state is WorkoutState.RUNNING
        assert source.config == WorkoutConfiguration()

        now = utc_now()
        source.push([HeartRateSample(88, now), HeartRateSample(90, now + timedelta(seconds=1))])
        source.push([HeartRateSample(50, now - timedelta(hours=1))])
        await session.stop()
        await engine.wait_idle()

        assert not session.running
        assert bridge.state is WorkoutState.NOT_STARTED
        assert [r.value for r in store.records] == [90, 88]

    @pytest.mark.asyncio
    async def test_start_failure_is_reported(self, store: HeartRateStore) -> None:
        watch, phone = InProcessMessageChannel.pair()
        bridge = LiveTelemetryBridge(store, phone)
        session = WorkoutSession(FailingSource(), watch)

        assert await session.start() is False
        assert not session.running
        assert bridge.state is WorkoutState.ERROR
        assert bridge.last_error == "sensor unavailable"

    @pytest.mark.asyncio
    async def test_phone_can_stop_workout(self, store: HeartRateStore) -> None:
        watch, phone = InProcessMessageChannel.pair()
        bridge = LiveTelemetryBridge(store, phone)
        source = QueueSampleSource()
        session = WorkoutSession(source, watch)
        await session.start()

        bridge.request_stop()
        await _wait_until(lambda: bridge.state is WorkoutState.NOT_STARTED)
        assert not session.running
        assert source.running is False
