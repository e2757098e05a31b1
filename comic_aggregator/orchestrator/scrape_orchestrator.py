"""
Scrape Orchestrator.

Single-source, multi-source and paginated scrape workflows on top of the
request queue, the integrity engine and the cache store, with in-flight
request collapsing and advisory source health.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Sequence

from comic_aggregator.config import (
    IntegrityConfig,
    OperationPolicy,
    OrchestratorConfig,
    StaleThresholdConfig,
)
from comic_aggregator.normalizer.transformer import ResultNormalizer
from comic_aggregator.orchestrator.cache_manager import CacheManager, CacheStore
from comic_aggregator.orchestrator.data_integrity import DataIntegrityService
from comic_aggregator.orchestrator.maintenance import MaintenanceScheduler
from comic_aggregator.orchestrator.request_queue import RequestQueue
from comic_aggregator.orchestrator.source_health import SourceHealthTracker
from comic_aggregator.sources.base import SourceRegistry
from comic_aggregator.utils.exceptions import CacheError, MultiSourceError, NoHealthySourcesError
from comic_aggregator.utils.logger import configure_logging

logger = logging.getLogger(__name__)

ITEM_KEY_FIELDS = ("title", "href")
AGGREGATE_STRATEGIES = ("merge", "first")


@dataclass
class OperationRecord:
    """One settled scrape, kept in the bounded operation history."""

    operation: str
    source_id: str
    success: bool
    duration_ms: float
    item_count: int = 0
    error: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(eq=False)
class _InFlight:
    task: asyncio.Task
    waiters: int = 0


class ScrapeOrchestrator:
    """
    Entry point for every scrape.

    Workflow (``scrape``):
        1. Join an identical in-flight execution if there is one
        2. Serve the cached result unless ``skip_cache``/``force_refresh``
        3. Serve the cache while the source/operation pair is fresh
        4. Otherwise submit the adapter call to the request queue, normalize,
           deduplicate, validate, refresh freshness, cache and record health

    Features:
        - At most one execution per operation key; waiters share it
        - Multi-source aggregation tolerating partial failure
        - Sequential pagination with empty/duplicate/last-page stops
        - Bounded operation history, per-source health statistics

    Example:
        >>> registry = SourceRegistry([AquaAdapter(), DexAdapter()])
        >>> async with ScrapeOrchestrator(registry) as orchestrator:
        ...     result = await orchestrator.scrape("latest", "aqua", args=(1,))
        ...     combined = await orchestrator.scrape_multi_provider("popular")
        >>> result["source"]
        'scrape'
    """

    def __init__(
        self,
        registry: SourceRegistry,
        queue: Optional[RequestQueue] = None,
        integrity: Optional[DataIntegrityService] = None,
        cache: Optional[CacheStore] = None,
        thresholds: Optional[Dict[str, OperationPolicy]] = None,
        health: Optional[SourceHealthTracker] = None,
        max_history_size: Optional[int] = None,
        maintenance: Optional[MaintenanceScheduler] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            registry: Registered source adapters
            queue: Request queue (default: built from QueueConfig)
            integrity: Integrity engine (default: built from IntegrityConfig)
            cache: Cache store (default: SQLite CacheManager)
            thresholds: Operation name to freshness/TTL policy (default: active profile table)
            health: Source health tracker
            max_history_size: Operation history capacity
            maintenance: Maintenance scheduler started by ``start()`` and stopped by ``close()``
        """
        self.registry = registry
        self.queue = queue or RequestQueue()
        self.integrity = integrity or DataIntegrityService()
        self._owns_cache = cache is None
        self.cache: CacheStore = cache if cache is not None else CacheManager()
        self.thresholds = thresholds if thresholds is not None else StaleThresholdConfig.for_profile()
        self.health = health or SourceHealthTracker()
        self.max_history_size = max_history_size or OrchestratorConfig.MAX_HISTORY_SIZE
        self.maintenance = maintenance
        self.normalizer = ResultNormalizer

        self._history: Deque[OperationRecord] = deque(maxlen=self.max_history_size)
        self._in_flight: Dict[str, _InFlight] = {}
        self._stats = {
            "scrapes": 0,
            "cache_hits": 0,
            "in_flight_joins": 0,
            "multi_source_calls": 0,
            "paginated_calls": 0,
        }

        logger.info(
            f"ScrapeOrchestrator initialized with {len(registry)} sources",
            extra={"sources": registry.list_sources(), "max_history_size": self.max_history_size},
        )

    @classmethod
    def from_config(
        cls, registry: SourceRegistry, setup_logging: bool = True, **overrides: Any
    ) -> "ScrapeOrchestrator":
        """
        Build an orchestrator with the configured defaults.

        Sets up the package loggers unless ``setup_logging`` is False and
        attaches a maintenance scheduler when IntegrityConfig enables it.
        """
        if setup_logging:
            configure_logging()
        integrity = overrides.pop("integrity", None) or DataIntegrityService()
        cache = overrides.pop("cache", None)
        owns_cache = cache is None
        if owns_cache:
            cache = CacheManager()
        if "maintenance" not in overrides and IntegrityConfig.MAINTENANCE_ENABLED:
            overrides["maintenance"] = MaintenanceScheduler(integrity, cache)
        orchestrator = cls(registry, integrity=integrity, cache=cache, **overrides)
        orchestrator._owns_cache = owns_cache
        return orchestrator

    # ========== Keys and policies ==========

    @staticmethod
    def operation_key(operation: str, source_id: str, args: Sequence[Any] = ()) -> str:
        return f"{source_id}:{operation}:{'_'.join(str(arg) for arg in args)}"

    @staticmethod
    def cache_key(operation_key: str) -> str:
        return f"scrape_{operation_key}"

    @staticmethod
    def freshness_key(operation: str, source_id: str) -> str:
        return f"{source_id}_{operation}"

    def get_policy(self, operation: str) -> OperationPolicy:
        return StaleThresholdConfig.get_policy(operation, self.thresholds)

    # ========== Single source ==========

    async def scrape(
        self,
        operation: str,
        source_id: str,
        args: Sequence[Any] = (),
        force_refresh: bool = False,
        skip_cache: bool = False,
        priority: bool = False,
        deduplication: bool = True,
    ) -> Dict[str, Any]:
        """
        Scrape one operation from one source.

        Args:
            operation: Operation name (latest, popular, search ...)
            source_id: Registered source id
            args: Positional arguments for the adapter operation
            force_refresh: Ignore cache and freshness
            skip_cache: Do not serve from cache (freshness may still serve it)
            priority: Queue the job ahead of normal jobs
            deduplication: Deduplicate list-shaped results

        Returns:
            Result envelope. Fresh scrapes: ``{success, data, source: "scrape",
            source_id, from_cache: False, duration_ms}``; cache hits:
            ``{success, data, source: "cache", source_id, from_cache: True, fresh}``

        Raises:
            Whatever the final queue attempt raised (RetryExhaustedError,
            NotFoundError, QueueError ...)
        """
        args = tuple(args)
        operation_key = self.operation_key(operation, source_id, args)

        entry = self._in_flight.get(operation_key)
        if entry is not None and not entry.task.done():
            self._stats["in_flight_joins"] += 1
            logger.debug(f"Joining in-flight scrape {operation_key}")
            return await self._wait(entry)

        policy = self.get_policy(operation)
        freshness_key = self.freshness_key(operation, source_id)
        cache_key = self.cache_key(operation_key)
        stale = self.integrity.is_stale(freshness_key, policy.stale_seconds)

        if not skip_cache and not force_refresh:
            cached = self._read_cache(cache_key)
            if cached is not None:
                return self._cached_envelope(cached, source_id, fresh=not stale)

        if not stale and not force_refresh:
            cached = self._read_cache(cache_key)
            if cached is not None:
                return self._cached_envelope(cached, source_id, fresh=True)

        # Registered before the first await so concurrent callers find it
        task = asyncio.get_running_loop().create_task(
            self._execute(
                operation=operation,
                source_id=source_id,
                args=args,
                operation_key=operation_key,
                freshness_key=freshness_key,
                cache_key=cache_key,
                policy=policy,
                priority=priority,
                deduplication=deduplication,
            )
        )
        entry = _InFlight(task=task)
        self._in_flight[operation_key] = entry
        task.add_done_callback(lambda _, key=operation_key, owner=entry: self._release(key, owner))

        return await self._wait(entry)

    async def _wait(self, entry: _InFlight) -> Dict[str, Any]:
        """Await a shared execution; the last waiter to leave cancels it."""
        entry.waiters += 1
        try:
            return await asyncio.shield(entry.task)
        except asyncio.CancelledError:
            if entry.waiters == 1 and not entry.task.done():
                entry.task.cancel()
            raise
        finally:
            entry.waiters -= 1

    def _release(self, operation_key: str, entry: _InFlight) -> None:
        if self._in_flight.get(operation_key) is entry:
            del self._in_flight[operation_key]

    def _cached_envelope(self, data: Any, source_id: str, fresh: bool) -> Dict[str, Any]:
        self._stats["cache_hits"] += 1
        return {
            "success": True,
            "data": data,
            "source": "cache",
            "source_id": source_id,
            "from_cache": True,
            "fresh": fresh,
        }

    def _read_cache(self, cache_key: str) -> Any:
        try:
            return self.cache.get(cache_key)
        except CacheError as e:
            logger.warning(f"Cache read failed, treating as miss: {e}")
            return None

    def _write_cache(self, cache_key: str, data: Any, ttl_seconds: int) -> None:
        try:
            self.cache.set(cache_key, data, ttl_seconds)
        except CacheError as e:
            logger.error(f"Cache write failed: {e}", extra={"cache_key": cache_key})

    async def _execute(
        self,
        operation: str,
        source_id: str,
        args: tuple,
        operation_key: str,
        freshness_key: str,
        cache_key: str,
        policy: OperationPolicy,
        priority: bool,
        deduplication: bool,
    ) -> Dict[str, Any]:
        start_time = time.monotonic()
        self._stats["scrapes"] += 1

        try:
            raw = await self.queue.submit(
                lambda: self.registry.execute(source_id, operation, *args),
                priority=priority,
                source_id=source_id,
                operation_label=operation_key,
            )
            data = self.normalizer.normalize(raw, source=source_id)

            if deduplication and self.normalizer.is_list_shaped(data):
                items, _ = self.normalizer.extract_items(data)
                deduped = self.integrity.deduplicate(
                    items,
                    fields=ITEM_KEY_FIELDS,
                    strategy="best_quality",
                    context=operation_key,
                )
                data = self.normalizer.replace_items(data, deduped["items"])
                if deduped["stats"]["duplicates"]:
                    logger.info(
                        f"Deduplication: {deduped['stats']['duplicates']} duplicates removed from {operation}",
                        extra={"source_id": source_id},
                    )

            items, _ = self.normalizer.extract_items(data)
            if self.normalizer.is_list_shaped(data):
                validation = self.integrity.validate_integrity(items)
                if not validation["valid"] or validation["warnings"]:
                    logger.warning(
                        f"Data integrity issues for {operation_key}: "
                        f"{len(validation['errors'])} errors, {len(validation['warnings'])} warnings",
                        extra={"errors": validation["errors"][:5], "warnings": validation["warnings"][:5]},
                    )

            self.integrity.update_freshness(
                freshness_key,
                {"operation": operation, "source_id": source_id, "item_count": len(items)},
            )
            self._write_cache(cache_key, data, policy.cache_ttl_seconds)

            duration_ms = (time.monotonic() - start_time) * 1000
            self.health.record_success(source_id, duration_ms)
            self._record(OperationRecord(operation, source_id, True, round(duration_ms, 2), len(items)))

            return {
                "success": True,
                "data": data,
                "source": "scrape",
                "source_id": source_id,
                "from_cache": False,
                "duration_ms": round(duration_ms, 2),
            }

        except Exception as e:
            duration_ms = (time.monotonic() - start_time) * 1000
            self.health.record_failure(source_id, e)
            self._record(
                OperationRecord(operation, source_id, False, round(duration_ms, 2), error=str(e))
            )
            logger.error(
                f"Scrape failed for {operation_key}: {e}",
                extra={"source_id": source_id, "error_type": type(e).__name__},
            )
            raise

    # ========== Multi source ==========

    async def scrape_multi_provider(
        self,
        operation: str,
        sources: Optional[Sequence[str]] = None,
        args: Sequence[Any] = (),
        aggregate_strategy: str = "merge",
        failure_threshold: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Scrape one operation from several sources concurrently.

        Args:
            operation: Operation name
            sources: Explicit source ids (default: every healthy registered source)
            args: Positional arguments for the adapter operation
            aggregate_strategy: ``merge`` (concatenate all) or ``first`` (first successful source)
            failure_threshold: Tolerated fraction of failed sources
            timeout: Per-source timeout in seconds

        Returns:
            ``{success, data, sources: {requested, successful, failed},
            new_items, duration_ms, errors}``

        Raises:
            NoHealthySourcesError: No source to ask
            MultiSourceError: Failure fraction above threshold and nothing succeeded
        """
        if aggregate_strategy not in AGGREGATE_STRATEGIES:
            raise ValueError(f"Unknown aggregate strategy: {aggregate_strategy}")
        failure_threshold = (
            failure_threshold if failure_threshold is not None
            else OrchestratorConfig.MULTI_SOURCE_FAILURE_THRESHOLD
        )
        timeout = timeout if timeout is not None else OrchestratorConfig.MULTI_SOURCE_TIMEOUT_SECONDS

        if sources:
            requested = list(sources)
        else:
            requested = self.health.filter_healthy(self.registry.list_sources())
        if not requested:
            raise NoHealthySourcesError(operation=operation)

        self._stats["multi_source_calls"] += 1
        start_time = time.monotonic()

        async def run(source_id: str) -> Dict[str, Any]:
            try:
                result = await asyncio.wait_for(
                    self.scrape(operation, source_id, args=args, deduplication=False),
                    timeout=timeout,
                )
                return {"source_id": source_id, "success": True, "result": result}
            except asyncio.TimeoutError:
                message = f"Source timeout after {timeout}s"
                self.health.record_failure(source_id, TimeoutError(message))
                self._record(
                    OperationRecord(operation, source_id, False, round(timeout * 1000, 2), error=message)
                )
                return {"source_id": source_id, "success": False, "error": message}
            except Exception as e:
                return {"source_id": source_id, "success": False, "error": str(e)}

        outcomes = await asyncio.gather(*(run(source_id) for source_id in requested))
        successes = [outcome for outcome in outcomes if outcome["success"]]
        errors = [
            {"source_id": outcome["source_id"], "error": outcome["error"]}
            for outcome in outcomes if not outcome["success"]
        ]

        failure_rate = len(errors) / len(requested)
        if failure_rate > failure_threshold and not successes:
            raise MultiSourceError(
                f"Too many source failures: {len(errors)}/{len(requested)}",
                errors=errors,
                operation=operation,
            )

        aggregated = self._aggregate(successes, aggregate_strategy)
        context = f"multi_{operation}"
        aggregated = self.integrity.deduplicate(
            aggregated, fields=ITEM_KEY_FIELDS, strategy="best_quality", context=context
        )["items"]
        detection = self.integrity.detect_new_items(aggregated, context)

        duration_ms = round((time.monotonic() - start_time) * 1000, 2)
        logger.info(
            f"Multi-source {operation}: {len(successes)}/{len(requested)} sources, "
            f"{len(aggregated)} items ({len(detection['new_items'])} new)",
            extra={"failed": [error["source_id"] for error in errors]},
        )

        return {
            "success": bool(successes),
            "data": aggregated,
            "sources": {
                "requested": requested,
                "successful": [outcome["source_id"] for outcome in successes],
                "failed": [error["source_id"] for error in errors],
            },
            "new_items": len(detection["new_items"]),
            "duration_ms": duration_ms,
            "errors": errors,
        }

    def _aggregate(self, successes: List[Dict[str, Any]], strategy: str) -> List[dict]:
        if strategy == "first":
            successes = successes[:1]

        aggregated: List[dict] = []
        for outcome in successes:
            items, _ = self.normalizer.extract_items(outcome["result"].get("data"))
            for item in items:
                if isinstance(item, dict):
                    aggregated.append({**item, "_source": outcome["source_id"]})
        return aggregated

    # ========== Pagination ==========

    async def scrape_paginated(
        self,
        operation: str,
        source_id: str,
        max_pages: int = 10,
        start_page: int = 1,
        stop_on_empty: bool = True,
        stop_on_duplicate: bool = True,
        duplicate_threshold: float = 0.8,
        args: Sequence[Any] = (),
    ) -> Dict[str, Any]:
        """
        Crawl pages of one operation sequentially.

        Page arguments are ``(*args, page)``. Only the first page may be
        served from cache. After each page the loop stops on two empty pages
        in a row, on a duplicate rate of at least ``duplicate_threshold``
        (that page's items are dropped), on the source's last page, or after
        ``max_pages`` attempts. A failed page stops the loop when
        ``stop_on_empty`` is set and is skipped otherwise.

        Returns:
            ``{success, data, pagination, page_results, stop_reason, stats}``
        """
        self._stats["paginated_calls"] += 1
        all_items: List[dict] = []
        page_results: List[Dict[str, Any]] = []
        consecutive_empty = 0
        last_pagination: Optional[dict] = None
        stop_reason = "max_pages"

        page = start_page
        while page < start_page + max_pages:
            try:
                result = await self.scrape(
                    operation,
                    source_id,
                    args=(*args, page),
                    deduplication=False,
                    skip_cache=page > start_page,
                )
            except Exception as e:
                page_results.append({"page": page, "count": 0, "success": False, "error": str(e)})
                if stop_on_empty:
                    logger.info(f"Stopping pagination at page {page}: {e}")
                    stop_reason = "error"
                    break
                page += 1
                continue

            page_items, pagination = self.normalizer.extract_items(result.get("data"))

            if not page_items:
                consecutive_empty += 1
                if consecutive_empty >= 2:
                    page_results.append({"page": page, "count": 0, "success": True})
                    logger.info(f"Stopping pagination at page {page}: empty results")
                    stop_reason = "empty_pages"
                    break
            else:
                consecutive_empty = 0

            if stop_on_duplicate and all_items and page_items:
                duplicate_rate = self._page_duplicate_rate(all_items, page_items)
                if duplicate_rate >= duplicate_threshold:
                    page_results.append({
                        "page": page,
                        "count": len(page_items),
                        "success": True,
                        "duplicate_rate": round(duplicate_rate, 4),
                    })
                    logger.info(
                        f"Stopping pagination at page {page}: {duplicate_rate:.0%} duplicates"
                    )
                    stop_reason = "duplicates"
                    break

            all_items.extend(page_items)
            page_results.append({"page": page, "count": len(page_items), "success": True})
            if pagination:
                last_pagination = pagination

            if pagination and self._is_last_page(pagination):
                stop_reason = "last_page"
                break

            page += 1

        deduped = self.integrity.deduplicate(
            all_items,
            fields=ITEM_KEY_FIELDS,
            strategy="best_quality",
            context=f"paginated_{operation}",
        )

        return {
            "success": bool(all_items),
            "data": deduped["items"],
            "pagination": last_pagination,
            "page_results": page_results,
            "stop_reason": stop_reason,
            "stats": {
                "total_pages": len(page_results),
                "successful_pages": sum(1 for result in page_results if result["success"]),
                "total_items": len(all_items),
                "unique_items": len(deduped["items"]),
                "duplicates_removed": deduped["stats"]["duplicates"],
            },
        }

    def _page_duplicate_rate(self, seen: List[dict], page_items: List[dict]) -> float:
        before = self.integrity.count_unique(seen, fields=ITEM_KEY_FIELDS)
        after = self.integrity.count_unique(seen + page_items, fields=ITEM_KEY_FIELDS)
        return 1 - (after - before) / len(page_items)

    @staticmethod
    def _is_last_page(pagination: dict) -> bool:
        if pagination.get("has_next") is False:
            return True
        current = pagination.get("current_page")
        length = pagination.get("length_page")
        return current is not None and length is not None and current >= length

    # ========== History and statistics ==========

    def _record(self, record: OperationRecord) -> None:
        self._history.appendleft(record)

    def get_history(self, limit: Optional[int] = None) -> List[dict]:
        """Most recent operation records first."""
        records = list(self._history)
        if limit is not None:
            records = records[:limit]
        return [record.to_dict() for record in records]

    @property
    def active_operations(self) -> int:
        return len(self._in_flight)

    def get_statistics(self) -> dict:
        """
        Get orchestrator statistics.

        Returns:
            Dictionary with queue, integrity and per-source health statistics,
            the active operation count, counters and the ten latest operations
        """
        statistics = {
            "queue": self.queue.get_statistics(),
            "integrity": self.integrity.get_statistics(),
            "sources": self.health.get_statistics(),
            "active_operations": self.active_operations,
            "counters": dict(self._stats),
            "recent_operations": self.get_history(10),
        }
        if self.maintenance is not None:
            statistics["maintenance"] = self.maintenance.get_statistics()
        return statistics

    # ========== Lifecycle ==========

    def start(self) -> None:
        """Start background maintenance, if attached."""
        if self.maintenance is not None and not self.maintenance.is_running():
            self.maintenance.start()

    async def close(self) -> None:
        """Stop maintenance, cancel in-flight scrapes and close the queue."""
        if self.maintenance is not None:
            self.maintenance.stop(wait=False)

        pending = [entry.task for entry in list(self._in_flight.values()) if not entry.task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        await self.queue.close()

        if self._owns_cache and callable(getattr(self.cache, "close", None)):
            self.cache.close()

        logger.info("ScrapeOrchestrator closed")

    async def __aenter__(self) -> "ScrapeOrchestrator":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return (
            f"ScrapeOrchestrator(sources={self.registry.list_sources()}, "
            f"active={len(self._in_flight)}, history={len(self._history)})"
        )
