"""
Tests for the Admission-Controlled Scheduler (debrid_stream/scheduler.py)
"""

import asyncio

import pytest

from debrid_stream.exceptions import SchedulerRejectedError
from debrid_stream.scheduler import AdmissionScheduler


class TestAdmissionScheduler:
    """Tests for AdmissionScheduler."""

    def test_invalid_limits(self):
        """Test limits are validated."""
        with pytest.raises(ValueError):
            AdmissionScheduler(max_concurrent=0)
        with pytest.raises(ValueError):
            AdmissionScheduler(high_water=-1)

    @pytest.mark.asyncio
    async def test_returns_task_result(self):
        """Test the task result is passed through."""
        scheduler = AdmissionScheduler()

        async def task():
            return "done"

        assert await scheduler.schedule(task) == "done"
        assert scheduler.get_stats()["completed"] == 1

    @pytest.mark.asyncio
    async def test_task_errors_release_the_slot(self):
        """Test a failing task still frees its slot."""
        scheduler = AdmissionScheduler(max_concurrent=1, high_water=0)

        async def failing():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await scheduler.schedule(failing)

        async def task():
            return 1

        assert await scheduler.schedule(task) == 1
        assert scheduler.running == 0

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        """Test no more than max_concurrent tasks run at once."""
        scheduler = AdmissionScheduler(max_concurrent=2, high_water=10)
        active = 0
        peak = 0

        async def task():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        await asyncio.gather(*(scheduler.schedule(task) for _ in range(6)))

        assert peak == 2
        assert scheduler.get_stats()["completed"] == 6

    @pytest.mark.asyncio
    async def test_rejects_when_queue_is_full(self):
        """Test a submission is rejected once running and waiting are both full."""
        scheduler = AdmissionScheduler(max_concurrent=1, high_water=1)
        release = asyncio.Event()

        async def blocked():
            await release.wait()
            return "ok"

        running = asyncio.create_task(scheduler.schedule(blocked))
        await asyncio.sleep(0)
        waiting = asyncio.create_task(scheduler.schedule(blocked))
        await asyncio.sleep(0)

        assert scheduler.running == 1
        assert scheduler.waiting == 1

        with pytest.raises(SchedulerRejectedError) as exc_info:
            await scheduler.schedule(blocked)
        assert exc_info.value.max_concurrent == 1
        assert exc_info.value.high_water == 1

        release.set()
        assert await asyncio.gather(running, waiting) == ["ok", "ok"]
        assert scheduler.get_stats()["rejected"] == 1

    @pytest.mark.asyncio
    async def test_waiting_tasks_run_in_order(self):
        """Test waiting tasks are admitted first in, first out."""
        scheduler = AdmissionScheduler(max_concurrent=1, high_water=10)
        order = []

        def make_task(n):
            async def task():
                order.append(n)
                await asyncio.sleep(0)
            return task

        await asyncio.gather(*(scheduler.schedule(make_task(n)) for n in range(5)))

        assert order == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_finished_slot_goes_to_the_oldest_waiter(self):
        """Test a newcomer cannot queue past high_water while a slot changes hands."""
        scheduler = AdmissionScheduler(max_concurrent=1, high_water=1)
        first_done = asyncio.Event()
        second_done = asyncio.Event()

        def blocked_on(event):
            async def task():
                await event.wait()
                return "ok"
            return task

        async def quick():
            return "quick"

        async def first():
            result = await scheduler.schedule(blocked_on(first_done))
            # the second task holds the slot but has not resumed yet
            snapshot = (scheduler.running, scheduler.waiting)
            third = asyncio.create_task(scheduler.schedule(quick))
            await asyncio.sleep(0)
            with pytest.raises(SchedulerRejectedError):
                await scheduler.schedule(quick)
            return result, snapshot, third

        first_task = asyncio.create_task(first())
        await asyncio.sleep(0)
        second = asyncio.create_task(scheduler.schedule(blocked_on(second_done)))
        await asyncio.sleep(0)
        assert scheduler.waiting == 1

        first_done.set()
        result, snapshot, third = await first_task

        assert result == "ok"
        assert snapshot == (1, 0)
        assert (scheduler.running, scheduler.waiting) == (1, 1)

        second_done.set()
        assert await second == "ok"
        assert await third == "quick"
        assert scheduler.get_stats()["rejected"] == 1
        assert scheduler.running == 0


    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_the_queue(self):
        """Test cancelling a waiting task frees its place in the queue."""
        scheduler = AdmissionScheduler(max_concurrent=1, high_water=1)
        release = asyncio.Event()

        async def blocked():
            await release.wait()
            return "ok"

        running = asyncio.create_task(scheduler.schedule(blocked))
        await asyncio.sleep(0)
        waiting = asyncio.create_task(scheduler.schedule(blocked))
        await asyncio.sleep(0)

        waiting.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiting

        assert scheduler.waiting == 0
        release.set()
        assert await running == "ok"
        assert scheduler.running == 0
