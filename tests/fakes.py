"""
Test doubles shared by the test modules.
"""

import asyncio
from typing import Any, Dict, List, Optional

from comic_aggregator.config import OperationPolicy
from comic_aggregator.sources.base import SourceAdapter

# Freshness thresholds independent of the deployment profile
THRESHOLDS = {
    "latest": OperationPolicy(stale_seconds=180, cache_ttl_seconds=600),
    "popular": OperationPolicy(stale_seconds=600, cache_ttl_seconds=600),
}


class FakeClock:
    """Manually advanced time source for ledger tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAdapter(SourceAdapter):
    """
    In-memory source adapter.

    Args:
        source_id: Registered id
        pages: Page number -> result (or exception to raise) for latest/genre
        popular: Result (or exception) for popular
        delay: Seconds every call sleeps before answering
        errors: Exceptions raised by the first calls, in order
    """

    def __init__(
        self,
        source_id: str,
        pages: Optional[Dict[int, Any]] = None,
        popular: Any = None,
        delay: float = 0.0,
        errors: Optional[List[Exception]] = None,
    ):
        self.source_id = source_id
        self.name = source_id.title()
        self.pages = pages or {}
        self.popular = popular if popular is not None else []
        self.delay = delay
        self.errors = list(errors or [])
        self.calls: List[tuple] = []
        self.cancelled = False

    async def _respond(self, call: tuple, value: Any) -> Any:
        self.calls.append(call)
        if self.delay:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        if self.errors:
            raise self.errors.pop(0)
        if isinstance(value, Exception):
            raise value
        return value

    async def get_latest(self, page: int = 1) -> Any:
        return await self._respond(("latest", page), self.pages.get(page, []))

    async def get_popular(self) -> Any:
        return await self._respond(("popular",), self.popular)

    async def get_by_genre(self, genre_slug: str, page: int = 1) -> Any:
        return await self._respond(("genre", genre_slug, page), self.pages.get(page, []))


def make_items(prefix: str, count: int, start: int = 0) -> List[dict]:
    """Distinct listing items ``<prefix> <n>`` with matching hrefs."""
    return [
        {"title": f"{prefix} {chr(ord('a') + n)}", "href": f"/manga/{prefix.lower()}-{n}"}
        for n in range(start, start + count)
    ]


