"""Tests for the reconciliation job queue.

The in-memory backend is exercised directly. The Redis backend runs only
when CLAIMFLOW_TEST_REDIS_URL points at a disposable Redis database.
"""

from __future__ import annotations

import asyncio
import os
import threading
import time
import uuid

import pytest

from claimflow.jobs.queue import (
    InMemoryJobQueue,
    Job,
    QueueConsumer,
    RedisJobQueue,
    RetryPolicy,
    create_job_queue,
)

TEST_REDIS_URL_ENV = "CLAIMFLOW_TEST_REDIS_URL"

FAST_RETRY = RetryPolicy(attempts=3, backoff_base_seconds=0, backoff_cap_seconds=0)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FlakyHandler:
    """Fails the first `failures` calls, then returns the payload."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def __call__(self, job: Job) -> dict:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"transient failure {self.calls}")
        return {"ok": True, "payload": job.payload}


class TestRetryPolicy:
    def test_exponential_backoff(self) -> None:
        policy = RetryPolicy()

        assert [policy.backoff_seconds(i) for i in range(3)] == [2.0, 4.0, 8.0]

    def test_backoff_is_capped(self) -> None:
        assert RetryPolicy(backoff_cap_seconds=60.0).backoff_seconds(10) == 60.0

    def test_exhaustion(self) -> None:
        policy = RetryPolicy(attempts=3)

        assert not policy.is_exhausted(2)
        assert policy.is_exhausted(3)

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CLAIMFLOW_QUEUE_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("CLAIMFLOW_QUEUE_BACKOFF_MS", "500")

        policy = RetryPolicy.from_env()

        assert policy.attempts == 5
        assert policy.backoff_base_seconds == 0.5


class TestJobSerialization:
    def test_job_json_keeps_retry_state(self) -> None:
        job = Job(
            queue_name="q",
            job_id="j-1",
            name="process",
            payload={"event_id": "e-1"},
            retry_policy=RetryPolicy(attempts=4),
            attempts_made=2,
            last_error="RuntimeError: boom",
        )

        restored = Job.from_json(job.to_json())

        assert restored == job
        assert restored.raw == job.to_json()


class TestInMemoryDeduplication:
    def test_duplicate_job_id_ignored(self) -> None:
        queue = InMemoryJobQueue(FAST_RETRY)

        assert queue.enqueue("q", "job-1", {"n": 1}) is True
        assert queue.enqueue("q", "job-1", {"n": 2}) is False
        assert queue.pending_count("q") == 1

    def test_job_id_reusable_after_retention(self) -> None:
        clock = FakeClock()
        queue = InMemoryJobQueue(FAST_RETRY, clock=clock, dedup_retention_seconds=10)

        queue.enqueue("q", "job-1", {})
        clock.now = 11

        assert queue.enqueue("q", "job-1", {}) is True

    def test_expired_ids_are_forgotten(self) -> None:
        clock = FakeClock()
        queue = InMemoryJobQueue(FAST_RETRY, clock=clock, dedup_retention_seconds=10)
        for n in range(3):
            queue.enqueue("q", f"old-{n}", {})
        clock.now = 5
        queue.enqueue("q", "recent", {})

        clock.now = 12
        queue.enqueue("q", "new", {})

        assert queue.tracked_job_ids() == ["recent", "new"]

    def test_same_id_on_other_queue_is_duplicate(self) -> None:
        """Job ids are global, not per queue."""
        queue = InMemoryJobQueue(FAST_RETRY)

        queue.enqueue("q1", "job-1", {})

        assert queue.enqueue("q2", "job-1", {}) is False


class TestInMemoryConsumption:
    def test_completed_job_recorded(self) -> None:
        queue = InMemoryJobQueue(FAST_RETRY)
        queue.enqueue("q", "job-1", {"event_id": "e-1"}, name="process-admission")

        asyncio.run(queue.consume("q", lambda job: {"seen": job.name}, stop_when_idle=True))

        completed = queue.completed_jobs("q")
        assert len(completed) == 1
        job, result = completed[0]
        assert job.attempts_made == 1
        assert result == {"seen": "process-admission"}
        assert queue.pending_count("q") == 0

    def test_transient_failures_are_retried(self) -> None:
        """A job that fails twice succeeds on its third attempt."""
        queue = InMemoryJobQueue(FAST_RETRY)
        queue.enqueue("q", "job-1", {"n": 1})
        handler = FlakyHandler(failures=2)

        asyncio.run(queue.consume("q", handler, stop_when_idle=True))

        assert handler.calls == 3
        [(job, _)] = queue.completed_jobs("q")
        assert job.attempts_made == 3
        assert queue.failed_jobs("q") == []

    def test_exhausted_job_is_failed(self) -> None:
        queue = InMemoryJobQueue(FAST_RETRY)
        queue.enqueue("q", "job-1", {})
        handler = FlakyHandler(failures=10)

        asyncio.run(queue.consume("q", handler, stop_when_idle=True))

        assert handler.calls == 3
        [failed] = queue.failed_jobs("q")
        assert failed.attempts_made == 3
        assert failed.last_error == "RuntimeError: transient failure 3"
        assert queue.completed_jobs("q") == []

    def test_retry_waits_for_backoff(self) -> None:
        """A retried job is not redelivered before its backoff elapses."""
        policy = RetryPolicy(attempts=2, backoff_base_seconds=0.3, backoff_cap_seconds=1)
        queue = InMemoryJobQueue(policy)
        queue.enqueue("q", "job-1", {})
        call_times: list[float] = []

        def handler(job: Job) -> None:
            call_times.append(time.monotonic())
            if len(call_times) == 1:
                raise RuntimeError("first attempt")

        asyncio.run(queue.consume("q", handler, stop_when_idle=True))

        assert len(call_times) == 2
        assert call_times[1] - call_times[0] >= 0.3

    def test_concurrency_is_bounded(self) -> None:
        queue = InMemoryJobQueue(FAST_RETRY)
        for i in range(8):
            queue.enqueue("q", f"job-{i}", {"i": i})
        lock = threading.Lock()
        state = {"running": 0, "peak": 0}

        def handler(job: Job) -> None:
            with lock:
                state["running"] += 1
                state["peak"] = max(state["peak"], state["running"])
            time.sleep(0.05)
            with lock:
                state["running"] -= 1

        asyncio.run(queue.consume("q", handler, concurrency=2, stop_when_idle=True))

        assert len(queue.completed_jobs("q")) == 8
        assert state["peak"] <= 2

    def test_stop_finishes_in_flight_jobs(self) -> None:
        queue = InMemoryJobQueue(FAST_RETRY)
        queue.enqueue("q", "job-1", {})
        started = threading.Event()

        def handler(job: Job) -> str:
            started.set()
            time.sleep(0.1)
            return "done"

        async def main() -> None:
            consumer = QueueConsumer(queue, "q", handler, concurrency=1, poll_interval=0.05)
            task = asyncio.create_task(consumer.run())
            await asyncio.to_thread(started.wait, 2)
            consumer.stop()
            await asyncio.wait_for(task, timeout=2)

        asyncio.run(main())

        assert len(queue.completed_jobs("q")) == 1

    def test_concurrency_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            QueueConsumer(InMemoryJobQueue(), "q", lambda job: None, concurrency=0)


class TestQueueFactory:
    def test_in_memory_without_redis(self) -> None:
        assert isinstance(create_job_queue(), InMemoryJobQueue)


@pytest.fixture
def redis_queue() -> RedisJobQueue:
    url = os.environ.get(TEST_REDIS_URL_ENV)
    if not url:
        pytest.skip(f"Redis queue tests require {TEST_REDIS_URL_ENV}")

    import redis

    client = redis.Redis.from_url(url, decode_responses=True)
    return RedisJobQueue(client, FAST_RETRY, key_prefix=f"claimflow-test:{uuid.uuid4().hex}")


class TestRedisJobQueue:
    def test_dedup_and_complete(self, redis_queue: RedisJobQueue) -> None:
        assert redis_queue.enqueue("q", "job-1", {"n": 1}) is True
        assert redis_queue.enqueue("q", "job-1", {"n": 1}) is False

        asyncio.run(redis_queue.consume("q", lambda job: job.payload, stop_when_idle=True))

        assert redis_queue.pending_count("q") == 0

    def test_retry_then_fail(self, redis_queue: RedisJobQueue) -> None:
        redis_queue.enqueue("q", "job-1", {})
        handler = FlakyHandler(failures=10)

        asyncio.run(redis_queue.consume("q", handler, stop_when_idle=True))

        assert handler.calls == 3
        assert redis_queue.pending_count("q") == 0

    def test_requeue_stalled(self, redis_queue: RedisJobQueue) -> None:
        redis_queue.enqueue("q", "job-1", {})
        job = redis_queue.reserve("q", timeout=1)
        assert job is not None
        assert redis_queue.pending_count("q") == 0

        assert redis_queue.requeue_stalled("q") == 1
        assert redis_queue.pending_count("q") == 1
