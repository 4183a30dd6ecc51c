"""Live telemetry between the workout capture device and the phone side.

Watch side: ``WorkoutSession`` runs a workout on a ``SampleSource`` and sends
each captured heart-rate sample over a ``MessageChannel`` as soon as it
arrives.  Phone side: ``LiveTelemetryBridge`` listens on its channel and
turns every heart-rate message into exactly one record saved through the
``HeartRateStore``, in arrival order.  Workout start/stop/error messages
update the bridge's ``WorkoutState``.

Messages are flat dicts keyed by ``MessageKey`` values, e.g.::

    {"HeartRate.integerValue": 72, "HeartRate.recordDate": "2026-01-05T08:30:00+00:00"}
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Callable

from src.heartsync.base import HeartRateRecord, parse_timestamp, utc_now
from src.heartsync.reconciler import HeartRateStore

logger = logging.getLogger("heartsync.telemetry")

Message = dict[str, Any]
MessageHandler = Callable[[Message], None]


class MessageKey:
    WORKOUT_START = "Workout.start"
    WORKOUT_STOP = "Workout.stop"
    WORKOUT_ERROR = "Workout.error"

    HEART_RATE_VALUE = "HeartRate.integerValue"
    HEART_RATE_DATE = "HeartRate.recordDate"


def heart_rate_message(value: int, timestamp: datetime) -> Message:
    return {
        MessageKey.HEART_RATE_VALUE: int(value),
        MessageKey.HEART_RATE_DATE: timestamp.isoformat(),
    }


# ---------------------------------------------------------------------------
# Message transport
# ---------------------------------------------------------------------------


class MessageChannel(ABC):
    """Device-to-device message transport.

    ``send`` is best-effort and only delivers while the peer is reachable.
    ``transfer`` queues the message and delivers it once the peer is.
    """

    @abstractmethod
    def send(self, message: Message) -> bool:
        """Deliver immediately if the peer is reachable.  Returns whether it was."""

    @abstractmethod
    def transfer(self, message: Message) -> None:
        """Queue ``message`` for guaranteed, in-order delivery."""

    @abstractmethod
    def add_handler(self, handler: MessageHandler) -> Callable[[], None]:
        """Register a handler for incoming messages; returns a callable that removes it."""

    @property
    @abstractmethod
    def reachable(self) -> bool:
        """Whether the peer currently receives ``send`` messages."""


class InProcessMessageChannel(MessageChannel):
    """One endpoint of an in-process channel.

    Endpoints are connected with ``pair()``.  ``deliver`` injects a message
    as if it came from the peer; the HTTP sample ingest uses it to feed
    messages posted by a capture device.
    """

    def __init__(self, name: str = "phone") -> None:
        self.name = name
        self.active = True
        self._peer: InProcessMessageChannel | None = None
        self._handlers: list[MessageHandler] = []
        self._outbox: list[Message] = []

    @classmethod
    def pair(cls) -> tuple["InProcessMessageChannel", "InProcessMessageChannel"]:
        watch, phone = cls("watch"), cls("phone")
        watch._peer, phone._peer = phone, watch
        return watch, phone

    @property
    def reachable(self) -> bool:
        return self._peer is not None and self._peer.active

    def send(self, message: Message) -> bool:
        if not self.reachable:
            logger.debug("%s: peer unreachable, dropping %s", self.name, sorted(message))
            return False
        self._peer.deliver(message)
        return True

    def transfer(self, message: Message) -> None:
        self._outbox.append(dict(message))
        self.flush()

    def flush(self) -> None:
        """Hand queued transfers to the peer if it is reachable."""
        while self._outbox and self.reachable:
            self._peer.deliver(self._outbox.pop(0))

    def set_active(self, active: bool) -> None:
        self.active = active
        if active and self._peer is not None:
            self._peer.flush()

    def add_handler(self, handler: MessageHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def remove() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return remove

    def deliver(self, message: Message) -> None:
        for handler in list(self._handlers):
            try:
                handler(dict(message))
            except Exception:
                logger.exception("%s: message handler failed", self.name)


# ---------------------------------------------------------------------------
# Sample capture (watch side)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HeartRateSample:
    value: int
    timestamp: datetime


@dataclass(frozen=True)
class WorkoutConfiguration:
    activity_type: str = "walking"
    location_type: str = "outdoor"


class SampleSource(ABC):
    """Sensor session producing heart-rate samples while a workout runs."""

    @abstractmethod
    async def start(self, config: WorkoutConfiguration) -> None:
        """Begin a workout session.  Raises if the session cannot start."""

    @abstractmethod
    async def stop(self) -> None:
        """End the workout session and finish any open sample stream."""

    @abstractmethod
    def stream_samples(self, since: datetime) -> AsyncIterator[list[HeartRateSample]]:
        """Yield batches of samples captured at or after ``since`` until stopped."""


class QueueSampleSource(SampleSource):
    """Sample source fed by ``push``; used for local development and tests."""

    def __init__(self) -> None:
        self.running = False
        self.config: WorkoutConfiguration | None = None
        self._batches: asyncio.Queue[list[HeartRateSample] | None] = asyncio.Queue()

    async def start(self, config: WorkoutConfiguration) -> None:
        self.config = config
        self.running = True

    async def stop(self) -> None:
        self.running = False
        self._batches.put_nowait(None)

    def push(self, samples: list[HeartRateSample]) -> None:
        self._batches.put_nowait(list(samples))

    async def stream_samples(self, since: datetime) -> AsyncIterator[list[HeartRateSample]]:
        while True:
            batch = await self._batches.get()
            if batch is None:
                return
            fresh = [s for s in batch if s.timestamp >= since]
            if fresh:
                yield fresh


class WorkoutSession:
    """Runs a workout and streams its samples to the paired phone."""

    def __init__(self, source: SampleSource, channel: MessageChannel) -> None:
        self._source = source
        self._channel = channel
        self._task: asyncio.Task | None = None
        self._remove_handler = channel.add_handler(self._handle_message)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, config: WorkoutConfiguration | None = None) -> bool:
        """Start the workout.  A failure is reported to the phone as ``Workout.error``."""
        if self.running:
            return True
        try:
            await self._source.start(config or WorkoutConfiguration())
        except Exception as exc:
            logger.error("Workout failed to start: %s", exc)
            self._channel.send({MessageKey.WORKOUT_ERROR: str(exc)})
            return False
        self._channel.send({MessageKey.WORKOUT_START: True})
        self._task = asyncio.ensure_future(self._forward(utc_now()))
        logger.info("Workout started")
        return True

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        await self._source.stop()
        # Samples already captured go out before the stop notice
        await task
        self._channel.send({MessageKey.WORKOUT_STOP: True})
        logger.info("Workout stopped")

    async def _forward(self, since: datetime) -> None:
        async for batch in self._source.stream_samples(since):
            for sample in batch:
                self._channel.send(heart_rate_message(sample.value, sample.timestamp))

    def _handle_message(self, message: Message) -> None:
        # The phone may ask the workout to stop
        if MessageKey.WORKOUT_STOP in message and self.running:
            asyncio.ensure_future(self.stop())

    def close(self) -> None:
        self._remove_handler()


# ---------------------------------------------------------------------------
# Phone side
# ---------------------------------------------------------------------------


class WorkoutState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    ERROR = "error"


class LiveTelemetryBridge:
    """Turns incoming live samples into saved records."""

    def __init__(self, store: HeartRateStore, channel: MessageChannel) -> None:
        self._store = store
        self._channel = channel
        self.state = WorkoutState.NOT_STARTED
        self.last_error: str | None = None
        self._state_handlers: list[Callable[[WorkoutState], None]] = []
        self._remove_handler = channel.add_handler(self.handle_message)

    def on_workout_state_changed(self, handler: Callable[[WorkoutState], None]) -> None:
        self._state_handlers.append(handler)

    def _set_state(self, state: WorkoutState) -> None:
        if state is self.state:
            return
        self.state = state
        for handler in list(self._state_handlers):
            try:
                handler(state)
            except Exception:
                logger.exception("Workout state handler %r failed", handler)

    def handle_message(self, message: Message) -> HeartRateRecord | None:
        """Apply one incoming message; returns the saved record, if any."""
        value = message.get(MessageKey.HEART_RATE_VALUE)
        timestamp = parse_timestamp(message.get(MessageKey.HEART_RATE_DATE))
        if MessageKey.HEART_RATE_VALUE in message and MessageKey.HEART_RATE_DATE in message:
            if not isinstance(value, int) or isinstance(value, bool) or timestamp is None:
                logger.warning("Ignoring malformed heart-rate message: %r", message)
                return None
            record = HeartRateRecord.create(value, timestamp)
            self._store.save([record])
            self._set_state(WorkoutState.RUNNING)
            return record
        if MessageKey.WORKOUT_STOP in message:
            self._set_state(WorkoutState.NOT_STARTED)
        elif MessageKey.WORKOUT_START in message:
            self._set_state(WorkoutState.RUNNING)
        elif MessageKey.WORKOUT_ERROR in message:
            self.last_error = str(message[MessageKey.WORKOUT_ERROR])
            logger.warning("Workout error reported: %s", self.last_error)
            self._set_state(WorkoutState.ERROR)
        return None

    def request_stop(self) -> None:
        """Ask the capture device to end its workout."""
        message = {MessageKey.WORKOUT_STOP: True}
        if not self._channel.send(message):
            self._channel.transfer(message)

    def close(self) -> None:
        self._remove_handler()
