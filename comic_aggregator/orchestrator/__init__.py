"""
Orchestrator Module

Scrape scheduling, data integrity and workflow coordination.

Components:
    - RequestQueue: Concurrency-bounded job queue with rate limiting and retries
    - DataIntegrityService: Fingerprinting, deduplication and freshness
    - SourceHealthTracker: Soft circuit breaker for sources
    - CacheManager: SQLite-based cache with TTL and statistics
    - MaintenanceScheduler: APScheduler-based ledger and cache sweeps
    - ScrapeOrchestrator: Single, multi-source and paginated scrape workflows
"""

__all__ = [
    "RequestQueue",
    "DataIntegrityService",
    "SourceHealthTracker",
    "CacheManager",
    "MaintenanceScheduler",
    "ScrapeOrchestrator",
]


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    if name == "RequestQueue":
        from .request_queue import RequestQueue
        return RequestQueue
    elif name == "DataIntegrityService":
        from .data_integrity import DataIntegrityService
        return DataIntegrityService
    elif name == "SourceHealthTracker":
        from .source_health import SourceHealthTracker
        return SourceHealthTracker
    elif name == "CacheManager":
        from .cache_manager import CacheManager
        return CacheManager
    elif name == "MaintenanceScheduler":
        from .maintenance import MaintenanceScheduler
        return MaintenanceScheduler
    elif name == "ScrapeOrchestrator":
        from .scrape_orchestrator import ScrapeOrchestrator
        return ScrapeOrchestrator
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
