"""
Custom exception classes for the Comic Aggregator.

Provides a hierarchy of exceptions for source failures, request queue
admission and retry outcomes, multi-source aggregation and cache errors,
each carrying context for debugging.
"""

from typing import Any, Optional


class AggregatorError(Exception):
    """Base exception for all Comic Aggregator errors.

    All custom exceptions inherit from this class, allowing
    catch-all error handling when needed.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
    """

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


def _compact(details: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in details.items() if v is not None}


# ========== Source failures ==========


class ParsingError(AggregatorError):
    """Raised when source content cannot be parsed.

    Indicates malformed HTML/JSON or an unexpected response shape
    from a source.

    Attributes:
        source: Source identifier that failed to parse
        parser: Parser type used (json/html)
        raw_data: Raw data snippet (optional, for debugging)
    """

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        parser: Optional[str] = None,
        raw_data: Optional[str] = None,
        **kwargs
    ):
        details = {
            "source": source,
            "parser": parser,
            **kwargs
        }
        if raw_data:
            # Truncate raw data for readability
            details["raw_data_preview"] = raw_data[:200] + "..." if len(raw_data) > 200 else raw_data

        super().__init__(message, _compact(details))
        self.source = source
        self.parser = parser
        self.raw_data = raw_data


class DataNormalizationError(ParsingError):
    """Raised when a source result has a shape the normalizer cannot handle.

    Attributes:
        field: Specific field that caused the error
        value: Value that failed normalization
    """

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        **kwargs
    ):
        extra = {"field": field, **kwargs}
        if value is not None:
            value_str = str(value)
            extra["value"] = value_str[:100] + "..." if len(value_str) > 100 else value_str
        super().__init__(message, source=source, parser="normalizer", **_compact(extra))
        self.field = field
        self.value = value


class NotFoundError(AggregatorError):
    """Raised when a resource (or a whole source) does not exist upstream.

    Attributes:
        resource: What was looked up (url, slug, source id)
        source: Source identifier
    """

    def __init__(
        self,
        message: str = "Resource not found",
        resource: Optional[str] = None,
        source: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, _compact({"resource": resource, "source": source, **kwargs}))
        self.resource = resource
        self.source = source


class NetworkError(AggregatorError):
    """Raised on transport failures, upstream errors or detected blocking.

    Attributes:
        url: URL that failed
        status_code: HTTP status code (if applicable)
        blocked: True when an anti-bot challenge was detected
        block_type: Kind of block (challenge/captcha/forbidden)
    """

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        blocked: bool = False,
        block_type: Optional[str] = None,
        **kwargs
    ):
        details = {
            "url": url,
            "status_code": status_code,
            "block_type": block_type,
            **kwargs
        }
        if blocked:
            details["blocked"] = True
        super().__init__(message, _compact(details))
        self.url = url
        self.status_code = status_code
        self.blocked = blocked
        self.block_type = block_type


class JobTimeoutError(NetworkError):
    """Raised when a queued job exceeds the queue timeout."""

    def __init__(self, message: str = "Request timeout", timeout: Optional[float] = None, **kwargs):
        super().__init__(message, timeout=timeout, **kwargs)
        self.timeout = timeout


class UnsupportedOperationError(AggregatorError):
    """Raised when a source adapter does not implement an operation."""

    def __init__(self, message: str, source: Optional[str] = None, operation: Optional[str] = None):
        super().__init__(message, _compact({"source": source, "operation": operation}))
        self.source = source
        self.operation = operation


# ========== Request queue ==========


class QueueError(AggregatorError):
    """Base class for request queue failures.

    Attributes:
        source_id: Source of the affected job
        operation: Operation label of the affected job
    """

    def __init__(
        self,
        message: str,
        source_id: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, _compact({"source_id": source_id, "operation": operation, **kwargs}))
        self.source_id = source_id
        self.operation = operation


class QueueOverflowError(QueueError):
    """Raised on a queued job that was evicted to admit a newer one."""


class QueueFullError(QueueError):
    """Raised on a submission rejected because no queued job could be evicted."""


class QueueClearedError(QueueError):
    """Raised on queued jobs when the queue is cleared."""


class RetryExhaustedError(QueueError):
    """Raised when a job failed on every allowed attempt.

    Attributes:
        last_error: Exception raised by the final attempt
        attempts: Number of attempts made
    """

    def __init__(
        self,
        message: str,
        last_error: Optional[BaseException] = None,
        attempts: Optional[int] = None,
        **kwargs
    ):
        super().__init__(
            message,
            attempts=attempts,
            last_error=str(last_error) if last_error is not None else None,
            **kwargs
        )
        self.last_error = last_error
        self.attempts = attempts


# ========== Multi-source aggregation ==========


class NoHealthySourcesError(AggregatorError):
    """Raised when no registered source is eligible for default selection."""

    def __init__(self, message: str = "No healthy sources available", operation: Optional[str] = None):
        super().__init__(message, _compact({"operation": operation}))
        self.operation = operation


class MultiSourceError(AggregatorError):
    """Raised when too many sources failed and none succeeded.

    Attributes:
        errors: Per-source failure records
    """

    def __init__(self, message: str, errors: Optional[list[dict[str, Any]]] = None, **kwargs):
        self.errors = errors or []
        super().__init__(message, _compact({"failed_sources": len(self.errors), **kwargs}))


# ========== Cache ==========


class CacheError(AggregatorError):
    """Raised when cache operations fail.

    Covers failures in reading from, writing to, or invalidating cache.

    Attributes:
        operation: The cache operation that failed (read/write/delete/clear)
        cache_key: The key involved in the failed operation
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        cache_key: Optional[str] = None,
        **kwargs
    ):
        details = {
            "operation": operation,
            "cache_key": cache_key,
            **kwargs
        }
        super().__init__(message, _compact(details))
        self.operation = operation
        self.cache_key = cache_key
