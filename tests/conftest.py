"""
Pytest configuration and shared fixtures for Comic Aggregator tests.

Provides:
    - A scriptable in-memory source adapter
    - Fast request queues (no rate limiting, millisecond backoff)
    - Integrity services with a controllable clock
    - Temporary SQLite caches
    - Orchestrators wired from the pieces above
"""

from pathlib import Path

import pytest

from comic_aggregator.orchestrator.cache_manager import CacheManager
from comic_aggregator.orchestrator.data_integrity import DataIntegrityService
from comic_aggregator.orchestrator.request_queue import RequestQueue
from comic_aggregator.orchestrator.scrape_orchestrator import ScrapeOrchestrator
from comic_aggregator.orchestrator.source_health import SourceHealthTracker
from comic_aggregator.sources.base import SourceRegistry
from tests.fakes import THRESHOLDS, FakeAdapter, FakeClock, make_items


# ========== Directory and Path Fixtures ==========


@pytest.fixture
def cache_path(tmp_path: Path) -> Path:
    """Path of a throwaway SQLite cache database."""
    return tmp_path / "scrape_cache.db"


# ========== Component Fixtures ==========


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def integrity(clock: FakeClock) -> DataIntegrityService:
    """Integrity service on a fake clock with md5 fingerprints."""
    return DataIntegrityService(
        hash_expiry=3600,
        stale_threshold=300,
        freshness_retention=3600,
        hash_algorithm="md5",
        clock=clock,
    )


@pytest.fixture
def cache(cache_path: Path):
    """
    Create a cache manager backed by a temporary database.

    Yields:
        CacheManager instance

    Cleanup:
        Closes the database connection after the test
    """
    manager = CacheManager(db_path=cache_path, ttl_seconds=300)
    yield manager
    manager.close()


@pytest.fixture
def fast_queue() -> RequestQueue:
    """Request queue without rate limiting and with millisecond backoff."""
    return RequestQueue(
        max_concurrent=5,
        max_queue_size=100,
        retry_attempts=3,
        retry_delay=0.01,
        timeout=1.0,
        provider_min_delay=0.0,
    )


@pytest.fixture
def health() -> SourceHealthTracker:
    return SourceHealthTracker(max_consecutive_failures=5, min_attempts=10, max_failure_ratio=0.5)


@pytest.fixture
def aqua() -> FakeAdapter:
    return FakeAdapter(
        "aqua",
        pages={1: make_items("Aqua", 3)},
        popular=make_items("Aqua", 2),
    )


@pytest.fixture
def dex() -> FakeAdapter:
    return FakeAdapter("dex", popular=make_items("Dex", 2))


@pytest.fixture
def registry(aqua: FakeAdapter, dex: FakeAdapter) -> SourceRegistry:
    return SourceRegistry([aqua, dex])


@pytest.fixture
async def orchestrator(registry, fast_queue, integrity, cache, health):
    """
    Orchestrator wired to the fake sources, the fast queue and a temp cache.

    Yields:
        ScrapeOrchestrator instance

    Cleanup:
        Cancels in-flight scrapes and closes the queue
    """
    instance = ScrapeOrchestrator(
        registry,
        queue=fast_queue,
        integrity=integrity,
        cache=cache,
        thresholds=THRESHOLDS,
        health=health,
        max_history_size=50,
    )
    yield instance
    await instance.close()


# ========== Sample Data Fixtures ==========


@pytest.fixture
def complete_item() -> dict:
    """Listing with every scored field present."""
    return {
        "title": "Solo Leveling",
        "href": "/manga/solo-leveling/",
        "thumbnail": "https://cdn.example.com/covers/solo-leveling.jpg",
        "description": "A weak hunter gains the power to level up without limits after a dungeon.",
        "rating": "8.5",
        "chapter": "Chapter 200",
        "genre": "Action, Fantasy",
        "author": "Chugong",
        "status": "Completed",
        "type": "Manhwa",
    }
