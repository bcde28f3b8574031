"""Tests for the cache sweep worker and resilient worker restarts."""

import asyncio

import pytest

from hairsim.app import create_resilient_worker
from hairsim.core.config import Settings
from hairsim.services.generation.cache import GenerationCache
from hairsim.workers.cache_sweep_worker import run_cache_sweep_worker


@pytest.mark.asyncio
async def test_sweep_worker_removes_expired_entries():
    # Arrange
    now = [1000.0]
    cache = GenerationCache(default_ttl=10, time_fn=lambda: now[0])
    await cache.put("hair_sim:old", "https://cdn/old.jpg")
    now[0] += 60
    settings = Settings(DATABASE_URL="sqlite+aiosqlite://", CACHE_SWEEP_INTERVAL_SECONDS=0)

    # Act
    task = asyncio.create_task(run_cache_sweep_worker(cache, settings))
    await asyncio.sleep(0.05)
    task.cancel()

    # Assert
    with pytest.raises(asyncio.CancelledError):
        await task
    assert cache.stats()["memoryCacheSize"] == 0


@pytest.mark.asyncio
async def test_resilient_worker_restarts_after_crash():
    runs = []
    restarted = asyncio.Event()

    async def flaky_worker(label: str):
        runs.append(label)
        if len(runs) == 1:
            raise RuntimeError("boom")
        restarted.set()
        await asyncio.sleep(3600)

    shutdown_event = asyncio.Event()
    task = create_resilient_worker(flaky_worker, ("sweep",), "flaky", shutdown_event)

    await asyncio.wait_for(restarted.wait(), timeout=5)
    shutdown_event.set()
    task.cancel()

    assert runs == ["sweep", "sweep"]
