"""
Tests for RequestQueue.

Covers concurrency limits, priority ordering, overflow handling, retries
with backoff, timeouts, rate limiting and cancellation.
"""

import asyncio
import time

import pytest

from comic_aggregator.orchestrator.request_queue import RequestQueue
from comic_aggregator.utils.exceptions import (
    JobTimeoutError,
    NetworkError,
    NotFoundError,
    QueueClearedError,
    QueueFullError,
    QueueOverflowError,
    RetryExhaustedError,
)


def make_queue(**overrides) -> RequestQueue:
    settings = {
        "max_concurrent": 5,
        "max_queue_size": 100,
        "retry_attempts": 3,
        "retry_delay": 0.01,
        "timeout": 1.0,
        "provider_min_delay": 0.0,
    }
    settings.update(overrides)
    return RequestQueue(**settings)


class TestSubmission:
    """Test basic job submission and results."""

    @pytest.mark.asyncio
    async def test_submit_resolves_with_task_result(self):
        """Test a submitted task resolves its future with the result."""
        queue = make_queue()

        async def task():
            return {"data": [1, 2, 3]}

        result = await queue.submit(task, source_id="aqua")

        assert result == {"data": [1, 2, 3]}
        stats = queue.get_statistics()
        assert stats["completed"] == 1
        assert stats["failed"] == 0
        assert stats["total_processed"] == 1
        assert stats["last_processed_at"] is not None
        await queue.close()

    @pytest.mark.asyncio
    async def test_concurrency_never_exceeds_limit(self):
        """Test no more than max_concurrent jobs run at once."""
        queue = make_queue(max_concurrent=2)
        running = 0
        peak = 0

        async def task():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.02)
            running -= 1
            return "done"

        futures = [queue.submit(task) for _ in range(6)]
        assert queue.running == 2
        assert len(queue) == 4

        results = await asyncio.gather(*futures)

        assert results == ["done"] * 6
        assert peak == 2
        assert queue.running == 0
        await queue.close()

    @pytest.mark.asyncio
    async def test_priority_jobs_run_first(self):
        """Test priority submissions jump ahead of queued jobs."""
        queue = make_queue(max_concurrent=1)
        order = []

        def job(label):
            async def task():
                order.append(label)
            return task

        queue.pause()
        futures = [
            queue.submit(job("first")),
            queue.submit(job("second")),
            queue.submit(job("urgent"), priority=True),
        ]
        queue.resume()
        await asyncio.gather(*futures)

        assert order == ["urgent", "first", "second"]
        await queue.close()

    @pytest.mark.asyncio
    async def test_average_processing_time_tracked(self):
        """Test average processing time is recorded in milliseconds."""
        queue = make_queue()

        async def task():
            await asyncio.sleep(0.01)

        await queue.submit(task)
        await queue.submit(task)

        stats = queue.get_statistics()
        assert stats["total_processed"] == 2
        assert stats["avg_processing_time_ms"] >= 5
        await queue.close()


class TestOverflow:
    """Test queue size limits."""

    @pytest.mark.asyncio
    async def test_overflow_evicts_oldest_non_priority_job(self):
        """Test a full queue evicts its oldest non-priority job."""
        queue = make_queue(max_queue_size=2)
        queue.pause()

        async def task():
            return "ok"

        oldest = queue.submit(task, source_id="aqua")
        second = queue.submit(task, source_id="aqua")
        newest = queue.submit(task, source_id="dex")

        with pytest.raises(QueueOverflowError):
            await oldest
        assert len(queue) == 2
        assert queue.get_statistics()["evicted"] == 1

        queue.resume()
        assert await second == "ok"
        assert await newest == "ok"
        await queue.close()

    @pytest.mark.asyncio
    async def test_overflow_skips_priority_jobs(self):
        """Test eviction picks the first non-priority job, not a priority one."""
        queue = make_queue(max_queue_size=2)
        queue.pause()

        async def task():
            return "ok"

        urgent = queue.submit(task, priority=True)
        normal = queue.submit(task)
        queue.submit(task)

        with pytest.raises(QueueOverflowError):
            await normal
        assert not urgent.done()
        await queue.close()

    @pytest.mark.asyncio
    async def test_full_priority_queue_rejects_submission(self):
        """Test a queue full of priority jobs rejects the new job."""
        queue = make_queue(max_queue_size=2)
        queue.pause()

        async def task():
            return "ok"

        queue.submit(task, priority=True)
        queue.submit(task, priority=True)
        rejected = queue.submit(task)

        assert rejected.done()
        with pytest.raises(QueueFullError):
            await rejected
        assert len(queue) == 2
        assert queue.get_statistics()["rejected"] == 1
        await queue.close()


class TestRetries:
    """Test retry and failure handling."""

    @pytest.mark.asyncio
    async def test_retry_until_success(self):
        """Test a job failing twice succeeds on its third execution."""
        queue = make_queue(retry_attempts=3)
        calls = 0

        async def flaky():
            nonlocal calls
            calls += 1
            if calls < 3:
                raise NetworkError("connection reset")
            return "recovered"

        result = await queue.submit(flaky, source_id="aqua")

        assert result == "recovered"
        assert calls == 3
        stats = queue.get_statistics()
        assert stats["retries"] == 2
        assert stats["completed"] == 1
        assert stats["failed"] == 0
        await queue.close()

    @pytest.mark.asyncio
    async def test_retry_exhausted_wraps_last_error(self):
        """Test the final failure surfaces as RetryExhaustedError."""
        queue = make_queue(retry_attempts=3)
        calls = 0

        async def broken():
            nonlocal calls
            calls += 1
            raise NetworkError(f"failure {calls}")

        with pytest.raises(RetryExhaustedError) as exc_info:
            await queue.submit(broken, source_id="aqua", operation_label="aqua:latest:1")

        error = exc_info.value
        assert calls == 3
        assert error.attempts == 3
        assert isinstance(error.last_error, NetworkError)
        assert str(error.last_error) == "failure 3"
        assert error.__cause__ is error.last_error
        assert error.operation == "aqua:latest:1"

        stats = queue.get_statistics()
        assert stats["failed"] == 1
        assert stats["total_failed"] == 1
        assert stats["running"] == 0
        await queue.close()

    @pytest.mark.asyncio
    async def test_backoff_grows_exponentially(self):
        """Test retries wait retry_delay, then twice retry_delay."""
        queue = make_queue(retry_attempts=3, retry_delay=0.05)
        starts = []

        async def broken():
            starts.append(time.monotonic())
            raise NetworkError("down")

        with pytest.raises(RetryExhaustedError):
            await queue.submit(broken)

        assert len(starts) == 3
        assert starts[1] - starts[0] >= 0.045
        assert starts[2] - starts[1] >= 0.095
        await queue.close()

    @pytest.mark.asyncio
    async def test_not_found_retried_by_default(self):
        """Test NotFoundError consumes retry budget like other failures."""
        queue = make_queue(retry_attempts=2)
        calls = 0

        async def missing():
            nonlocal calls
            calls += 1
            raise NotFoundError("gone")

        with pytest.raises(RetryExhaustedError):
            await queue.submit(missing)
        assert calls == 2
        await queue.close()

    @pytest.mark.asyncio
    async def test_not_found_fails_fast_when_configured(self):
        """Test retry_not_found=False surfaces NotFoundError immediately."""
        queue = make_queue(retry_attempts=3, retry_not_found=False)
        calls = 0

        async def missing():
            nonlocal calls
            calls += 1
            raise NotFoundError("gone", resource="/manga/none")

        with pytest.raises(NotFoundError):
            await queue.submit(missing)
        assert calls == 1
        assert queue.get_statistics()["retries"] == 0
        await queue.close()


class TestTimeouts:
    """Test per-execution timeouts."""

    @pytest.mark.asyncio
    async def test_timeout_cancels_task_and_fails_job(self):
        """Test a slow task is cancelled and reported as JobTimeoutError."""
        queue = make_queue(timeout=0.05, retry_attempts=1)
        cancelled = False

        async def slow():
            nonlocal cancelled
            try:
                await asyncio.sleep(1)
            except asyncio.CancelledError:
                cancelled = True
                raise

        with pytest.raises(RetryExhaustedError) as exc_info:
            await queue.submit(slow, source_id="aqua")

        assert isinstance(exc_info.value.last_error, JobTimeoutError)
        assert exc_info.value.last_error.timeout == 0.05
        assert cancelled is True
        await queue.close()

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self):
        """Test a timed-out execution is retried."""
        queue = make_queue(timeout=0.05, retry_attempts=2)
        calls = 0

        async def slow_then_fast():
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(1)
            return "fast"

        assert await queue.submit(slow_then_fast) == "fast"
        assert calls == 2
        await queue.close()


class TestRateLimiting:
    """Test per-source dispatch spacing."""

    @pytest.mark.asyncio
    async def test_same_source_dispatches_are_spaced(self):
        """Test two dispatches to one source are provider_min_delay apart."""
        queue = make_queue(provider_min_delay=0.05)
        starts = []

        async def task():
            starts.append(time.monotonic())

        await asyncio.gather(*(queue.submit(task, source_id="aqua") for _ in range(3)))

        assert len(starts) == 3
        assert starts[1] - starts[0] >= 0.045
        assert starts[2] - starts[1] >= 0.045
        await queue.close()

    @pytest.mark.asyncio
    async def test_other_sources_are_not_held_back(self):
        """Test a cooling-down source does not block jobs for other sources."""
        queue = make_queue(provider_min_delay=0.5)
        order = []

        def job(label):
            async def task():
                order.append(label)
            return task

        queue.pause()
        first = queue.submit(job("aqua-1"), source_id="aqua")
        second = queue.submit(job("aqua-2"), source_id="aqua")
        other = queue.submit(job("dex-1"), source_id="dex")
        queue.resume()

        await asyncio.gather(first, other)
        await asyncio.sleep(0.01)

        assert order == ["aqua-1", "dex-1"]
        assert not second.done()
        await queue.close()


class TestControl:
    """Test pause, resume, clear and cancellation."""

    @pytest.mark.asyncio
    async def test_pause_holds_jobs_until_resume(self):
        """Test a paused queue dispatches nothing."""
        queue = make_queue()
        queue.pause()

        async def task():
            return 42

        future = queue.submit(task)
        await asyncio.sleep(0.01)

        assert queue.paused is True
        assert not future.done()
        assert len(queue) == 1

        queue.resume()
        assert await future == 42
        await queue.close()

    @pytest.mark.asyncio
    async def test_clear_rejects_queued_jobs(self):
        """Test clear() fails queued jobs with QueueClearedError."""
        queue = make_queue()
        queue.pause()

        async def task():
            return 1

        futures = [queue.submit(task) for _ in range(3)]
        removed = queue.clear()

        assert removed == 3
        assert len(queue) == 0
        for future in futures:
            with pytest.raises(QueueClearedError):
                await future
        await queue.close()

    @pytest.mark.asyncio
    async def test_submit_after_close_is_rejected(self):
        """Test a closed queue settles new submissions at once instead of holding them."""
        queue = make_queue()
        await queue.close()

        async def task():
            return 1

        future = queue.submit(task)

        assert future.done()
        assert len(queue) == 0
        with pytest.raises(QueueClearedError):
            await future
        assert queue.get_statistics()["rejected"] == 1

    @pytest.mark.asyncio
    async def test_cancel_queued_job_removes_it(self):
        """Test cancelling a queued job's future drops it from the queue."""
        queue = make_queue()
        queue.pause()

        async def task():
            return 1

        future = queue.submit(task)
        future.cancel()
        await asyncio.sleep(0)

        assert len(queue) == 0
        await queue.close()

    @pytest.mark.asyncio
    async def test_cancel_running_job_stops_task(self):
        """Test cancelling a running job's future cancels the task and frees its slot."""
        queue = make_queue()
        cancelled = asyncio.Event()

        async def slow():
            try:
                await asyncio.sleep(1)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        future = queue.submit(slow)
        await asyncio.sleep(0.01)
        assert queue.running == 1

        future.cancel()
        await asyncio.wait_for(cancelled.wait(), timeout=0.5)
        await asyncio.sleep(0.01)

        assert queue.running == 0
        await queue.close()

    @pytest.mark.asyncio
    async def test_close_rejects_pending_and_cancels_running(self):
        """Test close() clears the queue and cancels running jobs."""
        queue = make_queue(max_concurrent=1)

        async def slow():
            await asyncio.sleep(1)

        running = queue.submit(slow)
        queued = queue.submit(slow)
        await asyncio.sleep(0.01)

        await queue.close()

        assert running.cancelled()
        with pytest.raises(QueueClearedError):
            await queued

    @pytest.mark.asyncio
    async def test_async_context_manager_closes_queue(self):
        """Test leaving the context closes the queue."""
        async with make_queue() as queue:
            queue.pause()

            async def task():
                return 1

            future = queue.submit(task)

        with pytest.raises(QueueClearedError):
            await future

    def test_repr(self):
        """Test string representation shows queue counters."""
        queue = make_queue(max_concurrent=4)
        assert "max_concurrent=4" in repr(queue)
