"""
ScrapeOrchestrator Demo.

Runs single-source, multi-source and paginated scrapes against simulated
comic sources, including one that is slow and one that fails half the time.

Usage:
    python examples/orchestrator_demo.py
"""

import asyncio
import random
import sys
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from comic_aggregator.normalizer import ComicItem
from comic_aggregator.orchestrator.cache_manager import CacheManager
from comic_aggregator.orchestrator.data_integrity import DataIntegrityService
from comic_aggregator.orchestrator.request_queue import RequestQueue
from comic_aggregator.orchestrator.scrape_orchestrator import ScrapeOrchestrator
from comic_aggregator.sources import SourceAdapter, SourceRegistry
from comic_aggregator.utils.exceptions import AggregatorError, NetworkError
from comic_aggregator.utils.logger import configure_logging, setup_logger

logger = setup_logger("examples.orchestrator_demo")

TITLES = [
    "One Piece", "Solo Leveling", "Omniscient Reader", "Blue Lock", "Kingdom",
    "Vagabond", "Berserk", "Chainsaw Man", "Dandadan", "Frieren",
]


def print_separator(title: str = ""):
    """Print a formatted separator line."""
    print(f"\n{'=' * 80}")
    if title:
        print(f"  {title}")
        print(f"{'=' * 80}\n")


class SimulatedAdapter(SourceAdapter):
    """Serves generated listings with configurable latency and failure rate."""

    def __init__(self, source_id: str, latency: float = 0.1, failure_rate: float = 0.0, pages: int = 3):
        self.source_id = source_id
        self.name = source_id.title()
        self.latency = latency
        self.failure_rate = failure_rate
        self.pages = pages

    async def _maybe_fail(self):
        await asyncio.sleep(self.latency)
        if random.random() < self.failure_rate:
            raise NetworkError(f"{self.name} returned 502", status_code=502)

    async def get_latest(self, page: int = 1):
        await self._maybe_fail()
        offset = (page - 1) * 4
        items = [
            ComicItem(
                title=title,
                href=f"/manga/{title.lower().replace(' ', '-')}/",
                chapter=str(100 + page),
                type="Manga",
            )
            for title in TITLES[offset:offset + 4]
        ]
        return {
            "current_page": page,
            "length_page": self.pages,
            "data": items,
        }

    async def get_popular(self):
        await self._maybe_fail()
        return [
            {"title": title, "href": f"/manga/{title.lower().replace(' ', '-')}/", "rating": 9.0}
            for title in random.sample(TITLES, 5)
        ]


async def demo_single_source(orchestrator: ScrapeOrchestrator):
    print_separator("Single Source (cold, then cached)")

    for attempt in range(2):
        result = await orchestrator.scrape("latest", "aqua", args=(1,))
        items = result["data"]["data"]
        print(f"  Attempt {attempt + 1}: source={result['source']}, items={len(items)}")


async def demo_in_flight(orchestrator: ScrapeOrchestrator):
    print_separator("Concurrent Identical Requests")

    results = await asyncio.gather(
        *(orchestrator.scrape("latest", "dex", args=(1,)) for _ in range(5))
    )
    print(f"  5 callers, {orchestrator.get_statistics()['counters']['in_flight_joins']} joined in flight")
    print(f"  All identical: {all(r['data'] == results[0]['data'] for r in results)}")


async def demo_multi_source(orchestrator: ScrapeOrchestrator):
    print_separator("Multi-Source Aggregation")

    try:
        result = await orchestrator.scrape_multi_provider("popular", timeout=1.0)
    except AggregatorError as e:
        print(f"  Aggregation failed: {e}")
        return

    print(f"  Successful: {result['sources']['successful']}")
    print(f"  Failed:     {result['sources']['failed']}")
    print(f"  Items:      {len(result['data'])} ({result['new_items']} new)")


async def demo_pagination(orchestrator: ScrapeOrchestrator):
    print_separator("Paginated Crawl")

    result = await orchestrator.scrape_paginated("latest", "aqua", max_pages=10)
    print(f"  Pages:       {[page['page'] for page in result['page_results']]}")
    print(f"  Stop reason: {result['stop_reason']}")
    print(f"  Unique:      {result['stats']['unique_items']}")


async def main():
    configure_logging()

    registry = SourceRegistry([
        SimulatedAdapter("aqua", latency=0.05),
        SimulatedAdapter("dex", latency=0.2),
        SimulatedAdapter("flaky", latency=0.1, failure_rate=0.5),
        SimulatedAdapter("sluggish", latency=2.0),
    ])

    cache = CacheManager(db_path=":memory:")
    orchestrator = ScrapeOrchestrator(
        registry,
        queue=RequestQueue(max_concurrent=3, retry_attempts=2, retry_delay=0.2, provider_min_delay=0.1),
        integrity=DataIntegrityService(),
        cache=cache,
    )

    async with orchestrator:
        await demo_single_source(orchestrator)
        await demo_in_flight(orchestrator)
        await demo_multi_source(orchestrator)
        await demo_pagination(orchestrator)

        print_separator("Source Health")
        for source_id, stats in orchestrator.get_statistics()["sources"].items():
            print(
                f"  {source_id:10} healthy={stats['healthy']!s:5} "
                f"success_rate={stats['success_rate']:.0%} "
                f"avg={stats['avg_response_time_ms']:.0f}ms"
            )

    await registry.close()
    cache.close()
    logger.info("Demo finished")


if __name__ == "__main__":
    asyncio.run(main())
