"""Tests for the serial job queue."""

from __future__ import annotations

import asyncio
import logging

import pytest

from src.heartsync.sync.scheduler import SerialQueue


class TestSerialQueue:
    @pytest.mark.asyncio
    async def test_jobs_run_in_submission_order(self) -> None:
        queue = SerialQueue("test")
        seen: list[int] = []
        for i in range(5):
            queue.submit(seen.append, i)
        await queue.join()
        assert seen == [0, 1, 2, 3, 4]
        await queue.close()

    @pytest.mark.asyncio
    async def test_coroutine_jobs_do_not_interleave(self) -> None:
        queue = SerialQueue("test")
        trace: list[str] = []

        async def job(name: str) -> str:
            trace.append(f"{name}:start")
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            trace.append(f"{name}:end")
            return name

        results = await asyncio.gather(queue.run(job, "a"), queue.run(job, "b"))
        assert results == ["a", "b"]
        assert trace == ["a:start", "a:end", "b:start", "b:end"]
        await queue.close()

    @pytest.mark.asyncio
    async def test_run_propagates_exceptions(self) -> None:
        queue = SerialQueue("test")

        def boom() -> None:
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await queue.run(boom)
        # The worker survives the failure
        assert await queue.run(lambda: 42) == 42
        await queue.close()

    @pytest.mark.asyncio
    async def test_submit_logs_failures(self, caplog) -> None:
        queue = SerialQueue("test")

        def boom() -> None:
            raise ValueError("bad job")

        with caplog.at_level(logging.ERROR, logger="heartsync.sync.scheduler"):
            future = queue.submit(boom)
            assert await future is None
        assert "failed" in caplog.text
        await queue.close()

    @pytest.mark.asyncio
    async def test_queue_restarts_after_close(self) -> None:
        queue = SerialQueue("test")
        assert await queue.run(lambda: 1) == 1
        await queue.close()
        assert await queue.run(lambda: 2) == 2
        await queue.close()
