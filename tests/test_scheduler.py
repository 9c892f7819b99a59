"""Tests for batch scheduling: ordering, bounded concurrency, pacing, isolation."""

import asyncio

import pytest

from sourcewatch.scheduler import BatchScheduler


class TestBatchScheduler:
    @pytest.mark.asyncio
    async def test_preserves_input_order(self) -> None:
        async def check(n: int) -> int:
            await asyncio.sleep(0.001 * (10 - n))
            return n * 10

        scheduler = BatchScheduler(concurrency=3, pacing_ms=0)
        assert await scheduler.run(list(range(10)), check, lambda n, e: -1) == [n * 10 for n in range(10)]

    @pytest.mark.asyncio
    async def test_bounded_concurrency_and_pacing(self) -> None:
        active = 0
        peak = 0
        pauses: list[float] = []

        async def check(n: int) -> int:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.005)
            active -= 1
            return n

        async def fake_sleep(seconds: float) -> None:
            pauses.append(seconds)

        scheduler = BatchScheduler(concurrency=2, pacing_ms=250, sleep=fake_sleep)
        await scheduler.run([1, 2, 3, 4, 5], check, lambda n, e: -1)
        assert peak == 2
        assert pauses == [0.25, 0.25]

    @pytest.mark.asyncio
    async def test_exception_isolated_to_one_item(self) -> None:
        async def check(n: int) -> str:
            if n == 3:
                raise RuntimeError("boom")
            return f"ok{n}"

        scheduler = BatchScheduler(concurrency=3, pacing_ms=0)
        results = await scheduler.run([1, 2, 3, 4, 5], check, lambda n, e: f"failed{n}:{e}")
        assert results == ["ok1", "ok2", "failed3:boom", "ok4", "ok5"]

    def test_batches(self) -> None:
        assert BatchScheduler(concurrency=0).concurrency == 1
        assert [list(b) for b in BatchScheduler(concurrency=2).batches([1, 2, 3])] == [[1, 2], [3]]
