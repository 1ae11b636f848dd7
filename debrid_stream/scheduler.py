"""
Admission-Controlled Scheduler
Bounds concurrently running resolution tasks and rejects work once the wait queue is full.
"""

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, TypeVar

from .exceptions import SchedulerRejectedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AdmissionScheduler:
    """
    Runs at most max_concurrent tasks at once with up to high_water waiting.

    Waiting tasks are admitted in FIFO order. A finishing task hands its slot
    straight to the oldest waiter, so the slot never looks free to a newcomer
    in between. A submission arriving while every slot is busy and the wait
    queue is full is rejected immediately.
    """

    def __init__(self, max_concurrent: int = 20, high_water: int = 50):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if high_water < 0:
            raise ValueError("high_water must not be negative")
        self.max_concurrent = max_concurrent
        self.high_water = high_water
        self._waiters: Deque[asyncio.Future] = deque()
        self._running = 0
        self._completed = 0
        self._rejected = 0

    @property
    def running(self) -> int:
        return self._running

    @property
    def waiting(self) -> int:
        return len(self._waiters)

    async def schedule(self, task: Callable[[], Awaitable[T]]) -> T:
        """
        Run task once a slot is free.

        Raises:
            SchedulerRejectedError: all slots busy and the wait queue at high_water
        """
        if self._running >= self.max_concurrent and len(self._waiters) >= self.high_water:
            self._rejected += 1
            logger.warning(
                f"Scheduler rejected task: {self._running} running, {len(self._waiters)} waiting"
            )
            raise SchedulerRejectedError(self.max_concurrent, self.high_water)

        if self._running < self.max_concurrent and not self._waiters:
            self._running += 1
        else:
            await self._wait_for_slot()

        try:
            return await task()
        finally:
            self._completed += 1
            self._release()

    async def _wait_for_slot(self) -> None:
        slot = asyncio.get_running_loop().create_future()
        self._waiters.append(slot)
        try:
            await slot
        except asyncio.CancelledError:
            if slot.done() and not slot.cancelled():
                # cancelled after the slot was handed over
                self._release()
            else:
                self._waiters.remove(slot)
            raise

    def _release(self) -> None:
        while self._waiters:
            slot = self._waiters.popleft()
            if not slot.done():
                slot.set_result(None)
                return
        self._running -= 1

    def get_stats(self) -> dict:
        """Get scheduler statistics."""
        return {
            "max_concurrent": self.max_concurrent,
            "high_water": self.high_water,
            "running": self._running,
            "waiting": len(self._waiters),
            "completed": self._completed,
            "rejected": self._rejected,
        }
