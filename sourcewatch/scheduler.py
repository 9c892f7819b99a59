"""
Batch scheduler: bounded, paced fan-out with per-item failure isolation.

Items run in fixed-size batches. A batch's checks run concurrently and the whole
batch finishes before the next starts, with a fixed pacing pause in between. A check
that raises is turned into a result by ``on_error``; it never aborts its batch.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import Generic, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")
R = TypeVar("R")


class BatchScheduler(Generic[T, R]):
    def __init__(
        self,
        concurrency: int = 3,
        pacing_ms: int = 200,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.concurrency = max(1, concurrency)
        self.pacing_ms = max(0, pacing_ms)
        self._sleep = sleep

    def batches(self, items: Sequence[T]) -> list[Sequence[T]]:
        return [items[i : i + self.concurrency] for i in range(0, len(items), self.concurrency)]

    async def run(
        self,
        items: Sequence[T],
        check: Callable[[T], Awaitable[R]],
        on_error: Callable[[T, Exception], R],
    ) -> list[R]:
        """Run ``check`` over ``items``; results come back in input order."""

        async def guarded(item: T) -> R:
            try:
                return await check(item)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                return on_error(item, e)

        results: list[R] = []
        chunks = self.batches(items)
        for index, chunk in enumerate(chunks):
            results.extend(await asyncio.gather(*(guarded(item) for item in chunk)))
            if index < len(chunks) - 1 and self.pacing_ms:
                await self._sleep(self.pacing_ms / 1000.0)
        logger.debug("batch_scheduled", items=len(items), batches=len(chunks), concurrency=self.concurrency)
        return results
