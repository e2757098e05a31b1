"""
Request Queue.

Bounded-concurrency asyncio job queue for outbound source calls with
per-source rate limiting, priority reordering, retry with exponential
backoff and overflow eviction.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from comic_aggregator.config import QueueConfig
from comic_aggregator.utils.exceptions import (
    JobTimeoutError,
    NotFoundError,
    QueueClearedError,
    QueueFullError,
    QueueOverflowError,
    RetryExhaustedError,
)

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


@dataclass(eq=False)
class Job:
    """
    A unit of work owned by the queue until it succeeds or fails for good.

    Attributes:
        task: Zero-argument callable producing the awaitable to run (re-invoked on retry)
        future: Future handed back to the submitter
        source_id: Source the job talks to, used for rate limiting
        operation_label: Free-form label for logs and errors
        priority: Priority jobs are queued at the front
        attempts: Executions started so far
        created_at: Monotonic submission time
        runner: Task executing the job while it is dispatched
    """

    task: TaskFactory
    future: asyncio.Future
    source_id: str = "default"
    operation_label: Optional[str] = None
    priority: bool = False
    attempts: int = 0
    created_at: float = field(default_factory=time.monotonic)
    runner: Optional[asyncio.Task] = None


class RequestQueue:
    """
    Concurrency gate for every outbound source request.

    Dispatch Rules:
        - At most ``max_concurrent`` jobs run at once
        - A source is not dispatched twice within ``provider_min_delay`` seconds;
          the queue is scanned in order for the first eligible job
        - Priority jobs (and retries) jump to the front of the queue
        - A full queue evicts its oldest non-priority job, or rejects the
          new submission when every queued job is priority

    Failure Handling:
        - Each execution races ``timeout``; a timeout is a failure
        - Failed jobs are retried after ``retry_delay * 2 ** (attempts - 1)``
          seconds until ``retry_attempts`` executions were made
        - The final failure surfaces as RetryExhaustedError

    Example:
        >>> queue = RequestQueue(max_concurrent=3)
        >>> result = await queue.submit(lambda: adapter.get_latest(1), source_id="aqua")
        >>> queue.get_statistics()["completed"]
        1
    """

    def __init__(
        self,
        max_concurrent: Optional[int] = None,
        max_queue_size: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        provider_min_delay: Optional[float] = None,
        retry_not_found: Optional[bool] = None,
    ):
        """
        Initialize request queue.

        Args:
            max_concurrent: Jobs allowed to run simultaneously
            max_queue_size: Jobs allowed to wait in the queue
            retry_attempts: Total executions per job, first try included
            retry_delay: Base backoff delay in seconds
            timeout: Per-execution timeout in seconds
            provider_min_delay: Minimum seconds between dispatches to one source
            retry_not_found: Retry NotFoundError like any other failure

        Unset arguments fall back to QueueConfig.
        """
        self.max_concurrent = max_concurrent if max_concurrent is not None else QueueConfig.MAX_CONCURRENT
        self.max_queue_size = max_queue_size if max_queue_size is not None else QueueConfig.MAX_QUEUE_SIZE
        self.retry_attempts = retry_attempts if retry_attempts is not None else QueueConfig.RETRY_ATTEMPTS
        self.retry_delay = retry_delay if retry_delay is not None else QueueConfig.RETRY_DELAY_SECONDS
        self.timeout = timeout if timeout is not None else QueueConfig.TIMEOUT_SECONDS
        self.provider_min_delay = (
            provider_min_delay if provider_min_delay is not None else QueueConfig.PROVIDER_MIN_DELAY_SECONDS
        )
        self.retry_not_found = retry_not_found if retry_not_found is not None else QueueConfig.RETRY_NOT_FOUND

        # Queue state
        self._queue: List[Job] = []
        self._running = 0
        self._completed = 0
        self._failed = 0
        self._paused = False
        self._closed = False

        # Rate limiting: source id -> monotonic time of last dispatch
        self._last_dispatch: Dict[str, float] = {}
        self._recheck_handle: Optional[asyncio.TimerHandle] = None
        self._runners: Set[asyncio.Task] = set()

        # Statistics
        self._stats = {
            "total_processed": 0,
            "total_failed": 0,
            "retries": 0,
            "evicted": 0,
            "rejected": 0,
            "avg_processing_time_ms": 0.0,
            "last_processed_at": None,
        }

        logger.info(
            f"RequestQueue initialized: max_concurrent={self.max_concurrent}, "
            f"max_queue_size={self.max_queue_size}, retry_attempts={self.retry_attempts}",
            extra={
                "timeout": self.timeout,
                "retry_delay": self.retry_delay,
                "provider_min_delay": self.provider_min_delay,
            },
        )

    # ========== Submission ==========

    def submit(
        self,
        task: TaskFactory,
        priority: bool = False,
        source_id: str = "default",
        operation_label: Optional[str] = None,
    ) -> asyncio.Future:
        """
        Add a job to the queue.

        Must be called from inside a running event loop.

        Args:
            task: Zero-argument callable returning an awaitable
            priority: Insert at the front of the queue
            source_id: Source identifier used for rate limiting
            operation_label: Label for logs and errors

        Returns:
            Future resolving to the task result. It fails with
            QueueFullError, QueueOverflowError, QueueClearedError (also on a
            closed queue) or RetryExhaustedError.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        job = Job(
            task=task,
            future=future,
            source_id=source_id,
            operation_label=operation_label,
            priority=priority,
        )

        if self._closed:
            self._stats["rejected"] += 1
            logger.warning(
                "Queue is closed - rejecting submission",
                extra={"source_id": source_id, "operation": operation_label},
            )
            future.set_exception(
                QueueClearedError("Queue closed", source_id=source_id, operation=operation_label)
            )
            return future

        if len(self._queue) >= self.max_queue_size:
            victim = next((queued for queued in self._queue if not queued.priority), None)
            if victim is None:
                self._stats["rejected"] += 1
                logger.warning(
                    "Queue is full of priority jobs - rejecting submission",
                    extra={"source_id": source_id, "operation": operation_label},
                )
                future.set_exception(
                    QueueFullError("Queue is full", source_id=source_id, operation=operation_label)
                )
                return future

            self._queue.remove(victim)
            self._stats["evicted"] += 1
            logger.warning(
                "Queue overflow - evicting oldest non-priority job",
                extra={"source_id": victim.source_id, "operation": victim.operation_label},
            )
            self._reject(
                victim,
                QueueOverflowError(
                    "Request removed from queue due to overflow",
                    source_id=victim.source_id,
                    operation=victim.operation_label,
                ),
            )

        if priority:
            self._queue.insert(0, job)
        else:
            self._queue.append(job)

        future.add_done_callback(lambda done, job=job: self._on_future_done(job, done))
        self._process_queue()
        return future

    def _on_future_done(self, job: Job, future: asyncio.Future) -> None:
        """Drop or stop a job whose future was cancelled by its submitter."""
        if not future.cancelled():
            return
        if job in self._queue:
            self._queue.remove(job)
            logger.debug(f"Cancelled queued job for {job.source_id}")
        elif job.runner is not None and not job.runner.done():
            job.runner.cancel()

    # ========== Dispatch ==========

    def _process_queue(self) -> None:
        """Dispatch jobs while capacity and rate limits allow."""
        if self._paused or self._closed:
            return

        while self._running < self.max_concurrent and self._queue:
            job = self._next_job()
            if job is None:
                break
            self._dispatch(job)

    def _next_job(self) -> Optional[Job]:
        """
        Pop the first queued job whose source is out of its cooldown.

        Schedules a re-check when every queued job has to wait.
        """
        now = time.monotonic()
        for index, job in enumerate(self._queue):
            last = self._last_dispatch.get(job.source_id)
            if last is None or now - last >= self.provider_min_delay:
                return self._queue.pop(index)

        self._schedule_recheck()
        return None

    def _schedule_recheck(self) -> None:
        if self._recheck_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._recheck_handle = loop.call_later(self.provider_min_delay, self._on_recheck)

    def _on_recheck(self) -> None:
        self._recheck_handle = None
        self._process_queue()

    def _dispatch(self, job: Job) -> None:
        # Record the dispatch before the job starts so concurrent picks see it
        self._last_dispatch[job.source_id] = time.monotonic()
        self._running += 1

        runner = asyncio.get_running_loop().create_task(self._execute(job))
        job.runner = runner
        self._runners.add(runner)
        runner.add_done_callback(self._runners.discard)

    # ========== Execution ==========

    async def _execute(self, job: Job) -> None:
        """Run one attempt of a job with timeout, then settle or retry it."""
        job.attempts += 1
        start_time = time.monotonic()

        try:
            result = await asyncio.wait_for(job.task(), timeout=self.timeout)
        except asyncio.CancelledError:
            self._abandon(job)
            raise
        except asyncio.TimeoutError:
            error: BaseException = JobTimeoutError(
                f"Request timeout after {self.timeout}s",
                timeout=self.timeout,
                source=job.source_id,
            )
        except Exception as e:
            error = e
        else:
            self._handle_success(job, result, start_time)
            return

        await self._handle_failure(job, error)

    def _handle_success(self, job: Job, result: Any, start_time: float) -> None:
        processing_ms = (time.monotonic() - start_time) * 1000

        self._running -= 1
        self._completed += 1
        self._stats["total_processed"] += 1
        self._stats["last_processed_at"] = datetime.now().isoformat()

        total = self._stats["total_processed"]
        avg = self._stats["avg_processing_time_ms"]
        self._stats["avg_processing_time_ms"] = (avg * (total - 1) + processing_ms) / total

        logger.debug(
            f"Job succeeded for {job.source_id} in {processing_ms:.0f}ms",
            extra={
                "source_id": job.source_id,
                "operation": job.operation_label,
                "attempts": job.attempts,
            },
        )

        job.runner = None
        if not job.future.done():
            job.future.set_result(result)
        self._process_queue()

    async def _handle_failure(self, job: Job, error: BaseException) -> None:
        if isinstance(error, NotFoundError) and not self.retry_not_found:
            self._fail(job, error)
            return

        if job.attempts >= self.retry_attempts:
            exhausted = RetryExhaustedError(
                f"Request failed after {job.attempts} attempt(s): {error}",
                last_error=error,
                attempts=job.attempts,
                source_id=job.source_id,
                operation=job.operation_label,
            )
            exhausted.__cause__ = error
            self._fail(job, exhausted)
            return

        delay = self.retry_delay * (2 ** (job.attempts - 1))
        self._stats["retries"] += 1
        logger.warning(
            f"Request failed (attempt {job.attempts}/{self.retry_attempts}), "
            f"retrying in {delay:.2f}s: {error}",
            extra={"source_id": job.source_id, "operation": job.operation_label},
        )

        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            self._abandon(job)
            raise

        if job.future.done():
            # Cancelled or cleared while backing off
            job.runner = None
            self._running -= 1
            self._process_queue()
            return

        job.priority = True
        job.runner = None
        self._queue.insert(0, job)
        self._running -= 1
        self._process_queue()

    def _fail(self, job: Job, error: BaseException) -> None:
        self._running -= 1
        self._failed += 1
        self._stats["total_failed"] += 1

        logger.error(
            f"Job failed for {job.source_id}: {error}",
            extra={
                "source_id": job.source_id,
                "operation": job.operation_label,
                "attempts": job.attempts,
            },
        )

        job.runner = None
        self._reject(job, error)
        self._process_queue()

    def _abandon(self, job: Job) -> None:
        """Release the slot of a job whose runner was cancelled."""
        self._running -= 1
        job.runner = None
        if not job.future.done():
            job.future.cancel()
        self._process_queue()

    @staticmethod
    def _reject(job: Job, error: BaseException) -> None:
        if not job.future.done():
            job.future.set_exception(error)

    # ========== Control ==========

    def pause(self) -> None:
        """Stop dispatching new jobs; queued jobs stay queued."""
        self._paused = True
        logger.info("RequestQueue paused", extra={"queued": len(self._queue)})

    def resume(self) -> None:
        """Resume dispatching from the current queue state."""
        self._paused = False
        logger.info("RequestQueue resumed", extra={"queued": len(self._queue)})
        self._process_queue()

    def clear(self) -> int:
        """
        Reject every queued job with QueueClearedError.

        Running jobs are not affected.

        Returns:
            Number of jobs removed
        """
        pending, self._queue = self._queue, []
        for job in pending:
            self._reject(
                job,
                QueueClearedError("Queue cleared", source_id=job.source_id, operation=job.operation_label),
            )
        if pending:
            logger.warning(f"Cleared {len(pending)} queued jobs")
        return len(pending)

    async def close(self) -> None:
        """Clear the queue, cancel running jobs and stop dispatching."""
        self._closed = True
        self.clear()

        if self._recheck_handle is not None:
            self._recheck_handle.cancel()
            self._recheck_handle = None

        runners = list(self._runners)
        for runner in runners:
            runner.cancel()
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)

        logger.info("RequestQueue closed")

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def running(self) -> int:
        return self._running

    def __len__(self) -> int:
        return len(self._queue)

    def get_statistics(self) -> dict:
        """
        Get queue statistics.

        Returns:
            Dictionary with queue length, running/completed/failed counters,
            retry and eviction counts and the average processing time
        """
        return {
            "queued": len(self._queue),
            "running": self._running,
            "completed": self._completed,
            "failed": self._failed,
            "paused": self._paused,
            "total_processed": self._stats["total_processed"],
            "total_failed": self._stats["total_failed"],
            "retries": self._stats["retries"],
            "evicted": self._stats["evicted"],
            "rejected": self._stats["rejected"],
            "avg_processing_time_ms": round(self._stats["avg_processing_time_ms"], 2),
            "last_processed_at": self._stats["last_processed_at"],
        }

    async def __aenter__(self) -> "RequestQueue":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"RequestQueue(queued={len(self._queue)}, running={self._running}, "
            f"max_concurrent={self.max_concurrent}, completed={self._completed}, "
            f"failed={self._failed})"
        )
