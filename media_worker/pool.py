"""
Concurrency-limited worker pools.

A pool admits submitted tasks in FIFO order while its active count is
below the cap. The cap can change at any time: raising it admits waiting
tasks immediately, lowering it only holds back future admissions.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, TypeVar

logger = logging.getLogger("media_worker")

T = TypeVar("T")


class WorkerPool:
    """Bounded admission gate for coroutines"""

    def __init__(self, name: str, max_concurrent: int, min_limit: int = 1,
                 max_limit: Optional[int] = None):
        self.name = name
        self.min_limit = min_limit
        self.max_limit = max_limit
        self.active_count = 0
        self._max_concurrent = self._clamp(max_concurrent)
        self._waiters: Deque[asyncio.Future] = deque()

    def _clamp(self, value: int) -> int:
        value = max(self.min_limit, int(value))
        if self.max_limit is not None:
            value = min(self.max_limit, value)
        return value

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def pending_count(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    def set_max_concurrent(self, value: int) -> int:
        """Change the cap; running tasks are never preempted"""
        self._max_concurrent = self._clamp(value)
        logger.info(f"Pool '{self.name}' max concurrency set to {self._max_concurrent}")
        self._admit_waiters()
        return self._max_concurrent

    def _admit_waiters(self) -> None:
        while self._waiters and self.active_count < self._max_concurrent:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self.active_count += 1
            waiter.set_result(None)

    async def acquire(self) -> None:
        if self.active_count < self._max_concurrent and self.pending_count == 0:
            self.active_count += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was granted just before cancellation
                self.release()
            else:
                waiter.cancel()
            raise

    def release(self) -> None:
        self.active_count -= 1
        self._admit_waiters()

    async def submit(self, task: Callable[[], Awaitable[T]]) -> T:
        """Wait for a slot, run the task, free the slot on success or failure"""
        await self.acquire()
        try:
            return await task()
        finally:
            self.release()

    async def run_all(self, items: Iterable[Any], worker: Callable[[Any], Awaitable[T]],
                      cancelled: Optional[Callable[[], bool]] = None) -> List[Any]:
        """
        Run worker(item) for every item through the pool.

        Items not yet started when cancelled() turns true are skipped and
        their result is None. Exceptions are returned in place of results.
        """
        async def run_one(item):
            await self.acquire()
            try:
                if cancelled and cancelled():
                    return None
                return await worker(item)
            finally:
                self.release()

        return await asyncio.gather(*(run_one(item) for item in items), return_exceptions=True)

    def snapshot(self) -> Dict[str, int]:
        return {
            "max_concurrent": self._max_concurrent,
            "active": self.active_count,
            "pending": self.pending_count,
        }
