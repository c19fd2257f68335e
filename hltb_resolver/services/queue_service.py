from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, TypeVar

from ..config import QUEUE, QueueConfig
from ..utils.utilities import AsyncRateLimiter

T = TypeVar("T")


class QueueService:
    """
    Serializes outbound calls in arrival order and spaces their starts by a minimum interval.

    Each task's outcome goes only to its own caller: a failure does not block or fail the
    tasks queued behind it, and a cancelled waiter simply leaves the line.
    """

    def __init__(
        self,
        *,
        config: QueueConfig = QUEUE,
        min_interval_s: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        interval = config.min_interval_s if min_interval_s is None else min_interval_s
        self._limiter = AsyncRateLimiter(interval, clock=clock, sleep=sleep)
        self._turn = asyncio.Lock()
        self.stats: dict[str, int] = {"enqueued": 0, "processed": 0, "failed": 0, "cancelled": 0}
        self._pending = 0

    @property
    def min_interval_s(self) -> float:
        return self._limiter.min_interval_s

    @property
    def pending(self) -> int:
        return self._pending

    async def enqueue(self, fn: Callable[[], Awaitable[T]], *, label: str = "") -> T:
        self.stats["enqueued"] += 1
        self._pending += 1
        try:
            async with self._turn:
                await self._limiter.wait()
                try:
                    result = await fn()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.stats["failed"] += 1
                    logging.debug(f"[QUEUE] Task {label or fn!r} failed: {type(e).__name__}: {e}")
                    raise
                self.stats["processed"] += 1
                return result
        except asyncio.CancelledError:
            self.stats["cancelled"] += 1
            raise
        finally:
            self._pending -= 1

    def format_stats(self) -> str:
        s = self.stats
        return (
            f"enqueued={s['enqueued']} processed={s['processed']} failed={s['failed']} "
            f"cancelled={s['cancelled']} pending={self._pending}"
        )
