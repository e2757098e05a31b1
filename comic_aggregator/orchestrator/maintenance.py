"""
Maintenance Scheduler.

APScheduler-based background sweeps that keep the integrity ledgers and
the cache store bounded.
"""

import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from comic_aggregator.config import IntegrityConfig
from comic_aggregator.orchestrator.data_integrity import DataIntegrityService

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """
    Background scheduler for ledger and cache maintenance.

    Scheduled Tasks:
        - Every ``cleanup_interval_minutes``: purge expired fingerprints and
          freshness entries past retention
        - Hourly: clear expired cache rows (when the cache supports it)

    Jobs run on the scheduler's worker threads; the integrity service and the
    cache manager lock their own state.

    Example:
        >>> with MaintenanceScheduler(integrity, cache) as maintenance:
        ...     await orchestrator.scrape("latest", "aqua")
    """

    def __init__(
        self,
        integrity: DataIntegrityService,
        cache=None,
        cleanup_interval_minutes: Optional[int] = None,
    ):
        """
        Initialize maintenance scheduler.

        Args:
            integrity: Integrity service to sweep
            cache: Cache store; swept only if it provides ``clear_expired()``
            cleanup_interval_minutes: Integrity sweep interval (default: IntegrityConfig)
        """
        self.integrity = integrity
        self.cache = cache
        self.cleanup_interval_minutes = (
            cleanup_interval_minutes or IntegrityConfig.CLEANUP_INTERVAL_MINUTES
        )
        self.scheduler = BackgroundScheduler()

        self._is_running = False
        self._last_integrity_cleanup: Optional[datetime] = None
        self._last_cache_cleanup: Optional[datetime] = None

        self._stats = {
            "integrity_cleanups": 0,
            "fingerprints_removed": 0,
            "freshness_removed": 0,
            "cache_cleanups": 0,
            "cache_entries_removed": 0,
            "failed_runs": 0,
        }

        logger.info(
            f"MaintenanceScheduler initialized with {self.cleanup_interval_minutes}min interval"
        )

    def start(self) -> None:
        """Register the sweep jobs and start the background scheduler."""
        if self._is_running:
            logger.warning("Maintenance scheduler is already running")
            return

        self.scheduler.add_job(
            func=self._cleanup_integrity,
            trigger=IntervalTrigger(minutes=self.cleanup_interval_minutes),
            id="cleanup_integrity",
            name="Integrity Ledger Cleanup",
            replace_existing=True,
            max_instances=1,
        )

        if self._cache_sweepable():
            self.scheduler.add_job(
                func=self._cleanup_cache,
                trigger=IntervalTrigger(hours=1),
                id="cleanup_cache",
                name="Cache Cleanup",
                replace_existing=True,
                max_instances=1,
            )

        self.scheduler.start()
        self._is_running = True

        logger.info(
            "MaintenanceScheduler started",
            extra={"jobs": [job.id for job in self.scheduler.get_jobs()]},
        )

    def stop(self, wait: bool = True) -> None:
        """
        Stop the scheduler.

        Args:
            wait: Wait for running sweeps to finish (default: True)
        """
        if not self._is_running:
            logger.debug("Maintenance scheduler is not running")
            return

        self.scheduler.shutdown(wait=wait)
        self._is_running = False
        logger.info("MaintenanceScheduler stopped")

    def _cache_sweepable(self) -> bool:
        return self.cache is not None and callable(getattr(self.cache, "clear_expired", None))

    def _cleanup_integrity(self) -> None:
        try:
            removed = self.integrity.cleanup()
            self._last_integrity_cleanup = datetime.now()
            self._stats["integrity_cleanups"] += 1
            self._stats["fingerprints_removed"] += removed["fingerprints_removed"]
            self._stats["freshness_removed"] += removed["freshness_removed"]
            logger.debug("Integrity cleanup completed", extra=removed)

        except Exception as e:
            self._stats["failed_runs"] += 1
            logger.error(f"Error during integrity cleanup: {e}", exc_info=True)

    def _cleanup_cache(self) -> None:
        try:
            deleted_count = self.cache.clear_expired()
            self._last_cache_cleanup = datetime.now()
            self._stats["cache_cleanups"] += 1
            self._stats["cache_entries_removed"] += deleted_count
            logger.info(
                f"Cache cleanup completed: {deleted_count} entries removed",
                extra={"deleted_entries": deleted_count},
            )

        except Exception as e:
            self._stats["failed_runs"] += 1
            logger.error(f"Error during cache cleanup: {e}", exc_info=True)

    def run_now(self) -> None:
        """Run every sweep immediately on the calling thread."""
        logger.info("Forcing immediate maintenance run")
        self._cleanup_integrity()
        if self._cache_sweepable():
            self._cleanup_cache()

    def is_running(self) -> bool:
        return self._is_running

    def get_statistics(self) -> dict:
        """
        Get maintenance statistics.

        Returns:
            Dictionary with running state, last sweep times, sweep counters
            and scheduled jobs
        """
        return {
            "is_running": self._is_running,
            "cleanup_interval_minutes": self.cleanup_interval_minutes,
            "last_activity": {
                "last_integrity_cleanup": (
                    self._last_integrity_cleanup.isoformat() if self._last_integrity_cleanup else None
                ),
                "last_cache_cleanup": (
                    self._last_cache_cleanup.isoformat() if self._last_cache_cleanup else None
                ),
            },
            "metrics": dict(self._stats),
            "scheduled_jobs": [
                {
                    "id": job.id,
                    "name": job.name,
                    "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
                }
                for job in self.scheduler.get_jobs()
            ]
            if self._is_running
            else [],
        }

    def __repr__(self) -> str:
        return (
            f"MaintenanceScheduler(interval={self.cleanup_interval_minutes}min, "
            f"running={self._is_running})"
        )

    def __enter__(self):
        """Context manager entry - starts scheduler."""
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - stops scheduler."""
        self.stop()
