"""Serial execution queue for sync state.

All mutable synchronization state (pending queues, change tokens, zone and
subscription flags) is touched only from jobs on one ``SerialQueue``.  Jobs
run one at a time in submission order.  A job may be a plain callable or a
coroutine function; blocking work inside a job (disk writes) should be pushed
to a thread with ``asyncio.to_thread`` so the event loop keeps serving the
foreground while the queue stays ordered.

Network calls are never awaited inside a job.  The engine awaits them
outside the queue and submits the follow-up state change as a new job.

Usage::

    queue = SerialQueue()
    queue.submit(staging.persist, pending_saves=saves)   # fire-and-forget
    tokens = await queue.run(lambda: dict(state.zone_tokens))
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

logger = logging.getLogger("heartsync.sync.scheduler")

SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class _Job:
    fn: Callable[..., Any]
    args: tuple
    future: asyncio.Future
    detached: bool


class SerialQueue:
    """FIFO job queue drained by a single worker task."""

    def __init__(self, name: str = "sync") -> None:
        self._name = name
        self._queue: asyncio.Queue[_Job] | None = None
        self._worker: asyncio.Task | None = None

    def _ensure_worker(self) -> asyncio.Queue[_Job]:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(
                self._drain(), name=f"serial-queue-{self._name}"
            )
        return self._queue

    async def _drain(self) -> None:
        assert self._queue is not None
        while True:
            job = await self._queue.get()
            try:
                result = job.fn(*job.args)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as exc:
                if job.detached:
                    logger.exception("Job %s on queue %s failed", _job_name(job.fn), self._name)
                    if not job.future.done():
                        job.future.set_result(None)
                elif not job.future.done():
                    job.future.set_exception(exc)
            else:
                if not job.future.done():
                    job.future.set_result(result)
            finally:
                self._queue.task_done()

    def _enqueue(self, fn: Callable[..., Any], args: tuple, detached: bool) -> asyncio.Future:
        queue = self._ensure_worker()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        queue.put_nowait(_Job(fn=fn, args=args, future=future, detached=detached))
        return future

    def submit(self, fn: Callable[..., Any], *args: Any) -> asyncio.Future:
        """Enqueue ``fn(*args)`` without waiting.

        Failures are logged by the worker; the returned future resolves to
        the job's result, or None if it failed.
        """
        return self._enqueue(fn, args, detached=True)

    async def run(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Enqueue ``fn(*args)`` and wait for its result (exceptions propagate)."""
        return await self._enqueue(fn, args, detached=False)

    async def join(self) -> None:
        """Wait until every job submitted so far has run."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None


def _job_name(fn: Callable[..., Any]) -> str:
    return getattr(fn, "__qualname__", None) or repr(fn)
