"""
Tests for the Stream Engine (debrid_stream/engine.py)
"""

import asyncio

import pytest

from conftest import API_KEY, HASH_A, HASH_B, video_file
from debrid_stream.availability import TorrentDescriptor
from debrid_stream.engine import StreamEngine
from debrid_stream.exceptions import SchedulerRejectedError
from debrid_stream.provider import JobStatus
from debrid_stream.resolver import PendingReason
from debrid_stream.scheduler import AdmissionScheduler


def add_ready_job(provider, info_hash=HASH_A):
    return provider.add_job(
        info_hash,
        JobStatus.READY,
        files=[video_file(1, selected=True)],
        links=["https://rd.example/l1"],
    )


class TestResolveStream:
    """Tests for StreamEngine.resolve_stream."""

    @pytest.mark.asyncio
    async def test_resolved_url_is_memoized(self, provider, engine):
        """Test a second resolve within the TTL makes no provider calls."""
        add_ready_job(provider)

        first = await engine.resolve_stream(HASH_A, 0, API_KEY)
        calls = len(provider.calls)
        second = await engine.resolve_stream(HASH_A.upper(), 0, API_KEY)

        assert first == second == "https://download.example.com/l1.mkv"
        assert len(provider.calls) == calls
        assert provider.calls_to("unrestrict") == [("https://rd.example/l1",)]

    @pytest.mark.asyncio
    async def test_memoized_url_is_per_account(self, provider, engine):
        """Test another api key does not share the resolved URL."""
        add_ready_job(provider)

        await engine.resolve_stream(HASH_A, 0, API_KEY)
        await engine.resolve_stream(HASH_A, 0, "other-key")

        assert len(provider.calls_to("unrestrict")) == 2

    @pytest.mark.asyncio
    async def test_pending_results_are_not_cached(self, provider, engine):
        """Test pending outcomes are recomputed on every request."""
        provider.add_job(HASH_A, JobStatus.DOWNLOADING, files=[video_file(1, selected=True)])

        assert await engine.resolve_stream(HASH_A, 0, API_KEY) is PendingReason.DOWNLOADING
        assert await engine.resolve_stream(HASH_A, 0, API_KEY) is PendingReason.DOWNLOADING

        assert len(provider.calls_to("list_jobs")) == 2

    @pytest.mark.asyncio
    async def test_no_cache_resolves_every_time(self, provider, memory_store, resolver):
        """Test no_cache disables URL memoization."""
        engine = StreamEngine(provider, memory_store, resolver=resolver, no_cache=True)
        add_ready_job(provider)

        await engine.resolve_stream(HASH_A, 0, API_KEY)
        await engine.resolve_stream(HASH_A, 0, API_KEY)

        assert len(provider.calls_to("unrestrict")) == 2

    @pytest.mark.asyncio
    async def test_saturated_scheduler_rejects(self, provider, memory_store, resolver):
        """Test resolves are rejected once the scheduler is full."""
        release = asyncio.Event()
        original_list_jobs = provider.list_jobs

        async def slow_list_jobs(*args, **kwargs):
            await release.wait()
            return await original_list_jobs(*args, **kwargs)

        provider.list_jobs = slow_list_jobs
        engine = StreamEngine(
            provider,
            memory_store,
            scheduler=AdmissionScheduler(max_concurrent=1, high_water=0),
            resolver=resolver,
        )
        add_ready_job(provider)

        running = asyncio.create_task(engine.resolve_stream(HASH_A, 0, API_KEY))
        await asyncio.sleep(0)

        with pytest.raises(SchedulerRejectedError):
            await engine.resolve_stream(HASH_B, 0, API_KEY)

        release.set()
        assert await running == "https://download.example.com/l1.mkv"


class TestEngineLifecycle:
    """Tests for engine setup, teardown and stats."""

    @pytest.mark.asyncio
    async def test_close_closes_provider(self, provider, engine):
        """Test closing the engine closes the provider session."""
        await engine.initialize()
        await engine.close()
        assert provider.closed

    @pytest.mark.asyncio
    async def test_stats(self, provider, engine):
        """Test stats cover the scheduler and caches."""
        add_ready_job(provider)
        await engine.resolve_stream(HASH_A, 0, API_KEY)

        stats = await engine.get_stats()

        assert stats["provider"] == "fake"
        assert stats["scheduler"]["completed"] == 1
        assert stats["resolved_url_cache"]["misses"] == 1
        assert stats["store"]["backend"] == "memory"

    @pytest.mark.asyncio
    async def test_availability_uses_shared_store(self, provider, engine):
        """Test availability lookups go through the engine's availability cache."""
        provider.availability[HASH_A] = [{"1": "Movie.mkv"}]

        await engine.list_cached_availability([TorrentDescriptor(HASH_A, 0)], API_KEY)
        tagged = await engine.list_cached_availability([TorrentDescriptor(HASH_A, 0)], API_KEY)

        assert tagged[HASH_A]["cached"] is True
        assert len(provider.calls_to("instant_availability")) == 1
