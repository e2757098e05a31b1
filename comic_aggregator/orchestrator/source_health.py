"""
Source Health Tracking.

Soft circuit breaker for comic sources. Unhealthy sources are left out of
default multi-source selection but are never blocked when requested
explicitly.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional

from comic_aggregator.config import OrchestratorConfig

logger = logging.getLogger(__name__)


class HealthState(str, Enum):
    """Advisory health states."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass
class SourceHealth:
    """Per-source counters, mutated only after a scrape settles."""

    source_id: str
    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    total_response_time_ms: float = 0.0
    last_error: Optional[str] = None

    @property
    def attempts(self) -> int:
        return self.success_count + self.failure_count

    @property
    def failure_ratio(self) -> float:
        return self.failure_count / self.attempts if self.attempts else 0.0

    @property
    def success_rate(self) -> float:
        return self.success_count / self.attempts if self.attempts else 0.0

    @property
    def avg_response_time_ms(self) -> float:
        return self.total_response_time_ms / self.success_count if self.success_count else 0.0


class SourceHealthTracker:
    """
    Soft circuit breaker over every source the orchestrator talks to.

    State Rules:
        HEALTHY → UNHEALTHY: ``max_consecutive_failures`` failures in a row, or
            at least ``min_attempts`` attempts with a failure ratio above
            ``max_failure_ratio``
        UNHEALTHY → HEALTHY: a success resets the consecutive failure count;
            the source is healthy again once the ratio rule no longer applies

    Sources never seen are healthy.

    Example:
        >>> health = SourceHealthTracker()
        >>> for _ in range(5):
        ...     health.record_failure("aqua")
        >>> health.is_healthy("aqua")
        False
        >>> health.record_success("aqua", 120.0)
        >>> health.is_healthy("aqua")
        True
    """

    def __init__(
        self,
        max_consecutive_failures: Optional[int] = None,
        min_attempts: Optional[int] = None,
        max_failure_ratio: Optional[float] = None,
    ):
        """
        Initialize health tracker.

        Args:
            max_consecutive_failures: Failures in a row that mark a source unhealthy (default: 5)
            min_attempts: Attempts required before the ratio rule applies (default: 10)
            max_failure_ratio: Failure ratio above which a source is unhealthy (default: 0.5)
        """
        self.max_consecutive_failures = (
            max_consecutive_failures if max_consecutive_failures is not None
            else OrchestratorConfig.HEALTH_MAX_CONSECUTIVE_FAILURES
        )
        self.min_attempts = min_attempts if min_attempts is not None else OrchestratorConfig.HEALTH_MIN_ATTEMPTS
        self.max_failure_ratio = (
            max_failure_ratio if max_failure_ratio is not None
            else OrchestratorConfig.HEALTH_MAX_FAILURE_RATIO
        )

        self._sources: Dict[str, SourceHealth] = {}
        self._lock = threading.Lock()
        self._state_changes: List[dict] = []

    def _entry(self, source_id: str) -> SourceHealth:
        entry = self._sources.get(source_id)
        if entry is None:
            entry = SourceHealth(source_id=source_id)
            self._sources[source_id] = entry
        return entry

    def _state_of(self, entry: SourceHealth) -> HealthState:
        if entry.consecutive_failures >= self.max_consecutive_failures:
            return HealthState.UNHEALTHY
        if entry.attempts >= self.min_attempts and entry.failure_ratio > self.max_failure_ratio:
            return HealthState.UNHEALTHY
        return HealthState.HEALTHY

    def _record_state_change(self, entry: SourceHealth, old: HealthState, new: HealthState) -> None:
        if old == new:
            return
        self._state_changes.append(
            {
                "timestamp": datetime.now().isoformat(),
                "source_id": entry.source_id,
                "from_state": old.value,
                "to_state": new.value,
                "consecutive_failures": entry.consecutive_failures,
            }
        )
        if new == HealthState.UNHEALTHY:
            logger.warning(
                f"Source {entry.source_id}: {old.value} → {new.value}",
                extra={
                    "consecutive_failures": entry.consecutive_failures,
                    "failure_ratio": round(entry.failure_ratio, 2),
                },
            )
        else:
            logger.info(f"Source {entry.source_id}: {old.value} → {new.value} (recovered)")

    def record_success(self, source_id: str, response_time_ms: float = 0.0) -> None:
        """Record a successful scrape and its response time."""
        with self._lock:
            entry = self._entry(source_id)
            before = self._state_of(entry)
            entry.success_count += 1
            entry.consecutive_failures = 0
            entry.last_success_at = datetime.now()
            entry.total_response_time_ms += response_time_ms
            self._record_state_change(entry, before, self._state_of(entry))

    def record_failure(self, source_id: str, error: Optional[BaseException] = None) -> None:
        """Record a failed scrape."""
        with self._lock:
            entry = self._entry(source_id)
            before = self._state_of(entry)
            entry.failure_count += 1
            entry.consecutive_failures += 1
            entry.last_failure_at = datetime.now()
            if error is not None:
                entry.last_error = str(error)
            logger.debug(
                f"Source {source_id}: recorded failure "
                f"({entry.consecutive_failures}/{self.max_consecutive_failures})"
            )
            self._record_state_change(entry, before, self._state_of(entry))

    def is_healthy(self, source_id: str) -> bool:
        with self._lock:
            entry = self._sources.get(source_id)
            if entry is None:
                return True
            return self._state_of(entry) == HealthState.HEALTHY

    def filter_healthy(self, source_ids: Iterable[str]) -> List[str]:
        """Keep the healthy sources, preserving order."""
        return [source_id for source_id in source_ids if self.is_healthy(source_id)]

    def get(self, source_id: str) -> Optional[SourceHealth]:
        with self._lock:
            return self._sources.get(source_id)

    def reset(self, source_id: Optional[str] = None) -> None:
        """Forget one source's counters, or every source's when no id is given."""
        with self._lock:
            if source_id is None:
                self._sources.clear()
                self._state_changes.clear()
            else:
                self._sources.pop(source_id, None)
        logger.info(f"Source health reset: {source_id or 'all sources'}")

    def get_statistics(self) -> Dict[str, dict]:
        """
        Get per-source health statistics.

        Returns:
            Mapping of source id to counters, success rate, average response
            time and healthy flag
        """
        with self._lock:
            snapshot = list(self._sources.values())
            return {
                entry.source_id: {
                    "healthy": self._state_of(entry) == HealthState.HEALTHY,
                    "success_count": entry.success_count,
                    "failure_count": entry.failure_count,
                    "consecutive_failures": entry.consecutive_failures,
                    "success_rate": round(entry.success_rate, 4),
                    "avg_response_time_ms": round(entry.avg_response_time_ms, 2),
                    "last_success_at": entry.last_success_at.isoformat() if entry.last_success_at else None,
                    "last_failure_at": entry.last_failure_at.isoformat() if entry.last_failure_at else None,
                    "last_error": entry.last_error,
                }
                for entry in snapshot
            }

    def get_state_changes(self, limit: int = 10) -> List[dict]:
        with self._lock:
            return list(self._state_changes[-limit:])

    def __repr__(self) -> str:
        unhealthy = [s for s, e in self._sources.items() if self._state_of(e) == HealthState.UNHEALTHY]
        return f"SourceHealthTracker(sources={len(self._sources)}, unhealthy={unhealthy})"
