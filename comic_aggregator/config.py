"""
Configuration management for the Comic Aggregator.

Environment-based configuration using python-dotenv. Most defaults depend on
the deployment profile: ``standard`` for long-running processes and
``serverless`` for short-lived, memory-constrained function runtimes.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _detect_profile() -> str:
    profile = os.getenv("DEPLOYMENT_PROFILE")
    if profile:
        return profile.lower()
    if os.getenv("VERCEL") == "1" or os.getenv("VERCEL_ENV"):
        return "serverless"
    return "standard"


PROFILE: str = _detect_profile()
IS_SERVERLESS: bool = PROFILE == "serverless"


def _pick(standard, serverless):
    """Return the default matching the active deployment profile."""
    return serverless if IS_SERVERLESS else standard


class QueueConfig:
    """Request queue concurrency, retry and rate limit configuration."""

    # Maximum jobs executing at once
    MAX_CONCURRENT: int = int(os.getenv("QUEUE_MAX_CONCURRENT", _pick("5", "3")))

    # Maximum jobs waiting in the queue
    MAX_QUEUE_SIZE: int = int(os.getenv("QUEUE_MAX_SIZE", _pick("100", "50")))

    # Total attempts per job (first try included)
    RETRY_ATTEMPTS: int = int(os.getenv("QUEUE_RETRY_ATTEMPTS", _pick("3", "1")))

    # Base backoff delay in seconds (doubles per attempt)
    RETRY_DELAY_SECONDS: float = float(os.getenv("QUEUE_RETRY_DELAY_SECONDS", _pick("1.0", "0.5")))

    # Per-job timeout in seconds
    TIMEOUT_SECONDS: float = float(os.getenv("QUEUE_TIMEOUT_SECONDS", _pick("30", "8")))

    # Minimum spacing between two dispatches to the same source
    PROVIDER_MIN_DELAY_SECONDS: float = float(
        os.getenv("QUEUE_PROVIDER_MIN_DELAY_SECONDS", _pick("0.5", "0.1"))
    )

    # Whether not-found errors consume retry budget like any other failure
    RETRY_NOT_FOUND: bool = os.getenv("QUEUE_RETRY_NOT_FOUND", "true").lower() == "true"


class IntegrityConfig:
    """Fingerprint ledger, freshness and maintenance configuration."""

    # Fingerprint ledger expiry in seconds (24h standard, 6h serverless)
    HASH_EXPIRY_SECONDS: int = int(os.getenv("HASH_EXPIRY_SECONDS", _pick(str(24 * 3600), str(6 * 3600))))

    # Default staleness threshold in seconds
    STALE_THRESHOLD_SECONDS: int = int(os.getenv("STALE_THRESHOLD_SECONDS", _pick("300", "120")))

    # Freshness entries older than this are purged by maintenance
    FRESHNESS_RETENTION_SECONDS: int = int(os.getenv("FRESHNESS_RETENTION_SECONDS", "3600"))

    # Fingerprint digest: md5 (hex) or djb2 (fast, base-36)
    HASH_ALGORITHM: str = os.getenv("HASH_ALGORITHM", _pick("md5", "djb2")).lower()

    # Fuzzy title match threshold (strictly greater than)
    FUZZY_THRESHOLD: float = float(os.getenv("FUZZY_THRESHOLD", "0.85"))

    # Maintenance sweep interval in minutes
    CLEANUP_INTERVAL_MINUTES: int = int(os.getenv("CLEANUP_INTERVAL_MINUTES", "5"))

    # Background maintenance is pointless in short-lived processes
    MAINTENANCE_ENABLED: bool = (
        os.getenv("MAINTENANCE_ENABLED", _pick("true", "false")).lower() == "true"
    )


@dataclass(frozen=True)
class OperationPolicy:
    """Freshness threshold and cache TTL for one scrape operation.

    Attributes:
        stale_seconds: Age after which a source/operation pair is stale
        cache_ttl_seconds: TTL used when caching the operation's result
    """

    stale_seconds: int
    cache_ttl_seconds: int


class StaleThresholdConfig:
    """Per-operation freshness thresholds and cache TTLs by deployment profile."""

    DEFAULT_POLICY = OperationPolicy(stale_seconds=300, cache_ttl_seconds=300)

    STANDARD: Dict[str, OperationPolicy] = {
        "latest": OperationPolicy(180, 180),
        "popular": OperationPolicy(600, 600),
        "recommended": OperationPolicy(600, 600),
        "search": OperationPolicy(120, 120),
        "detail": OperationPolicy(900, 900),
        "chapter": OperationPolicy(1800, 1800),
        "genre": OperationPolicy(900, 900),
        "genres": OperationPolicy(3600, 3600),
    }

    SERVERLESS: Dict[str, OperationPolicy] = {
        "latest": OperationPolicy(60, 60),
        "popular": OperationPolicy(300, 300),
        "recommended": OperationPolicy(300, 300),
        "search": OperationPolicy(30, 30),
        "detail": OperationPolicy(300, 300),
        "chapter": OperationPolicy(600, 600),
        "genre": OperationPolicy(300, 300),
        "genres": OperationPolicy(1800, 1800),
    }

    @classmethod
    def for_profile(cls, profile: Optional[str] = None) -> Dict[str, OperationPolicy]:
        """Get a copy of the threshold table for a profile (defaults to active)."""
        profile = (profile or PROFILE).lower()
        table = cls.SERVERLESS if profile == "serverless" else cls.STANDARD
        return dict(table)

    @classmethod
    def get_policy(cls, operation: str, table: Optional[Dict[str, OperationPolicy]] = None) -> OperationPolicy:
        """Look up an operation's policy, falling back to the default."""
        table = table if table is not None else cls.for_profile()
        return table.get(operation, cls.DEFAULT_POLICY)


class OrchestratorConfig:
    """Scrape orchestration, aggregation and source health configuration."""

    # Operation history capacity
    MAX_HISTORY_SIZE: int = int(os.getenv("MAX_HISTORY_SIZE", _pick("100", "20")))

    # Per-source timeout for multi-source aggregation in seconds
    MULTI_SOURCE_TIMEOUT_SECONDS: float = float(os.getenv("MULTI_SOURCE_TIMEOUT_SECONDS", "30"))

    # Fraction of failed sources tolerated by multi-source aggregation
    MULTI_SOURCE_FAILURE_THRESHOLD: float = float(os.getenv("MULTI_SOURCE_FAILURE_THRESHOLD", "0.5"))

    # Consecutive failures that exclude a source from default selection
    HEALTH_MAX_CONSECUTIVE_FAILURES: int = int(os.getenv("HEALTH_MAX_CONSECUTIVE_FAILURES", "5"))

    # Attempts required before the failure ratio is considered
    HEALTH_MIN_ATTEMPTS: int = int(os.getenv("HEALTH_MIN_ATTEMPTS", "10"))

    # Failure ratio above which a source is unhealthy
    HEALTH_MAX_FAILURE_RATIO: float = float(os.getenv("HEALTH_MAX_FAILURE_RATIO", "0.5"))


class CacheConfig:
    """Cache and database configuration."""

    # Default cache time-to-live in seconds
    TTL_SECONDS: int = int(os.getenv("CACHE_TTL_SECONDS", "300"))

    # Base directory for data storage
    DATA_DIR: Path = Path(os.getenv("DATA_DIR", "data"))

    # SQLite database path
    DB_PATH: Path = DATA_DIR / "scrape_cache.db"

    @classmethod
    def ensure_directories(cls) -> None:
        """Create necessary directories if they don't exist."""
        cls.DATA_DIR.mkdir(parents=True, exist_ok=True)


class HttpConfig:
    """Outbound HTTP configuration for source clients."""

    # Request timeout in seconds
    REQUEST_TIMEOUT: int = int(os.getenv("REQUEST_TIMEOUT", _pick("30", "8")))

    # Block detection confidence needed to treat a response as blocked
    BLOCK_CONFIDENCE_THRESHOLD: int = int(os.getenv("BLOCK_CONFIDENCE_THRESHOLD", "50"))

    # User agents rotated across requests
    USER_AGENTS: list[str] = [
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:123.0) Gecko/20100101 Firefox/123.0",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/17.3 Safari/605.1.15",
    ]


class LoggingConfig:
    """Logging configuration."""

    # Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Log directory
    LOG_DIR: Path = Path(os.getenv("LOG_DIR", "logs"))

    # Log format
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Date format
    DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"

    # Maximum log file size in bytes (10MB default)
    MAX_LOG_SIZE: int = int(os.getenv("MAX_LOG_SIZE", str(10 * 1024 * 1024)))

    # Number of backup log files to keep
    BACKUP_COUNT: int = int(os.getenv("BACKUP_COUNT", "5"))

    @classmethod
    def ensure_log_directory(cls) -> None:
        """Create log directory if it doesn't exist."""
        cls.LOG_DIR.mkdir(parents=True, exist_ok=True)


class AppConfig:
    """Main application configuration aggregating all config classes."""

    queue = QueueConfig
    integrity = IntegrityConfig
    thresholds = StaleThresholdConfig
    orchestrator = OrchestratorConfig
    cache = CacheConfig
    http = HttpConfig
    logging = LoggingConfig

    # Application metadata
    APP_NAME: str = "Comic Aggregator"
    VERSION: str = "0.1.0"
    PROFILE: str = PROFILE

    @classmethod
    def initialize(cls) -> None:
        """Create directories required by the cache and the logger."""
        CacheConfig.ensure_directories()
        LoggingConfig.ensure_log_directory()

    @classmethod
    def validate(cls) -> tuple[bool, list[str]]:
        """
        Validate configuration settings.

        Returns:
            Tuple of (is_valid, error_messages)
        """
        errors = []

        if PROFILE not in ("standard", "serverless"):
            errors.append(f"Unknown DEPLOYMENT_PROFILE: {PROFILE}")

        if QueueConfig.MAX_CONCURRENT < 1:
            errors.append("QUEUE_MAX_CONCURRENT must be at least 1")

        if QueueConfig.MAX_QUEUE_SIZE < 1:
            errors.append("QUEUE_MAX_SIZE must be at least 1")

        if QueueConfig.RETRY_ATTEMPTS < 1:
            errors.append("QUEUE_RETRY_ATTEMPTS must be at least 1")

        if QueueConfig.TIMEOUT_SECONDS <= 0:
            errors.append("QUEUE_TIMEOUT_SECONDS must be greater than 0")

        if IntegrityConfig.HASH_ALGORITHM not in ("md5", "djb2"):
            errors.append("HASH_ALGORITHM must be 'md5' or 'djb2'")

        if not 0 < IntegrityConfig.FUZZY_THRESHOLD <= 1:
            errors.append("FUZZY_THRESHOLD must be within (0, 1]")

        if not 0 <= OrchestratorConfig.MULTI_SOURCE_FAILURE_THRESHOLD <= 1:
            errors.append("MULTI_SOURCE_FAILURE_THRESHOLD must be within [0, 1]")

        return (len(errors) == 0, errors)


# Initialize configuration on module import
AppConfig.initialize()
