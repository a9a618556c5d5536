"""Durable work queue for reconciliation jobs.

Semantics:
- At-least-once delivery. A job is removed only after its handler returns,
  or after its last allowed attempt fails.
- Deduplication by job id: enqueue() of a job id seen within the retention
  window is a no-op returning False.
- Retry with capped exponential backoff, base * 2^retry_index, capped.
- Completed and failed history is bounded (100 and 500 entries per queue).

Backends:
- InMemoryJobQueue: process-local, for development and tests.
- RedisJobQueue: ready list, delayed sorted set, processing list and
  SET NX EX job-id markers.

Environment Variables:
    CLAIMFLOW_REDIS_URL: Use the Redis backend when set
    CLAIMFLOW_QUEUE_MAX_ATTEMPTS: Attempts per job (default: 3)
    CLAIMFLOW_QUEUE_BACKOFF_MS: Backoff base in milliseconds (default: 2000)
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
import time
from collections import OrderedDict, deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Final, Protocol

if TYPE_CHECKING:
    from redis import Redis

logger = logging.getLogger(__name__)

REDIS_URL_ENV = "CLAIMFLOW_REDIS_URL"
QUEUE_MAX_ATTEMPTS_ENV = "CLAIMFLOW_QUEUE_MAX_ATTEMPTS"
QUEUE_BACKOFF_MS_ENV = "CLAIMFLOW_QUEUE_BACKOFF_MS"

DEFAULT_ATTEMPTS: Final[int] = 3
DEFAULT_BACKOFF_BASE_SECONDS: Final[float] = 2.0
DEFAULT_BACKOFF_CAP_SECONDS: Final[float] = 60.0
DEDUP_RETENTION_SECONDS: Final[int] = 86400
COMPLETED_HISTORY: Final[int] = 100
FAILED_HISTORY: Final[int] = 500


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently a failed job is retried.

    Attributes:
        attempts: Total attempts, including the first.
        backoff_base_seconds: Delay before the first retry.
        backoff_cap_seconds: Upper bound on any single delay.
    """

    attempts: int = DEFAULT_ATTEMPTS
    backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS
    backoff_cap_seconds: float = DEFAULT_BACKOFF_CAP_SECONDS

    @classmethod
    def from_env(cls) -> RetryPolicy:
        return cls(
            attempts=int(os.environ.get(QUEUE_MAX_ATTEMPTS_ENV, str(DEFAULT_ATTEMPTS))),
            backoff_base_seconds=int(os.environ.get(QUEUE_BACKOFF_MS_ENV, "2000")) / 1000,
        )

    def backoff_seconds(self, retry_index: int) -> float:
        """Delay before retry number retry_index (zero-based).

        Example:
            >>> RetryPolicy().backoff_seconds(0), RetryPolicy().backoff_seconds(2)
            (2.0, 8.0)
        """
        if retry_index < 0:
            return 0.0
        return min(self.backoff_base_seconds * (2**retry_index), self.backoff_cap_seconds)

    def is_exhausted(self, attempts_made: int) -> bool:
        return attempts_made >= self.attempts


@dataclass
class Job:
    """One unit of queued work."""

    queue_name: str
    job_id: str
    name: str
    payload: dict[str, Any]
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    attempts_made: int = 0
    last_error: str | None = None
    enqueued_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    raw: str | None = field(default=None, repr=False, compare=False)

    def to_json(self) -> str:
        data = asdict(self)
        data.pop("raw")
        return json.dumps(data, sort_keys=True, default=str)

    @classmethod
    def from_json(cls, raw: str) -> Job:
        data = json.loads(raw)
        data["retry_policy"] = RetryPolicy(**data["retry_policy"])
        return cls(**data, raw=raw)


JobHandler = Callable[[Job], Any]


class JobQueue(Protocol):
    """Durable queue as seen by producers and consumers."""

    def enqueue(
        self,
        queue_name: str,
        job_id: str,
        payload: dict[str, Any],
        retry_policy: RetryPolicy | None = None,
        *,
        name: str | None = None,
    ) -> bool: ...

    async def consume(
        self,
        queue_name: str,
        handler: JobHandler,
        concurrency: int = 5,
        *,
        stop_when_idle: bool = False,
    ) -> None: ...


class _QueueBackend(Protocol):
    """Storage primitives a QueueConsumer drives. All calls are blocking."""

    def reserve(self, queue_name: str, timeout: float) -> Job | None: ...

    def complete(self, job: Job, result: Any) -> None: ...

    def retry_later(self, job: Job, delay_seconds: float) -> None: ...

    def fail(self, job: Job) -> None: ...

    def pending_count(self, queue_name: str) -> int: ...


class QueueConsumer:
    """Runs a handler over one queue with bounded concurrency.

    Each handler call runs in a worker thread via asyncio.to_thread, so the
    caller's contextvars are copied into it and blocking database calls do
    not stall the event loop.
    """

    def __init__(
        self,
        backend: _QueueBackend,
        queue_name: str,
        handler: JobHandler,
        concurrency: int = 5,
        poll_interval: float = 0.2,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._backend = backend
        self._queue_name = queue_name
        self._handler = handler
        self._concurrency = concurrency
        self._poll_interval = poll_interval
        self._stopping = False
        self._in_flight: set[asyncio.Task[None]] = set()

    def stop(self) -> None:
        """Stop reserving new jobs. In-flight jobs run to completion."""
        self._stopping = True

    async def run(self, *, stop_when_idle: bool = False) -> None:
        """Consume until stop() is called.

        Args:
            stop_when_idle: Return once nothing is ready, delayed or in flight.
        """
        slots = asyncio.Semaphore(self._concurrency)
        try:
            while not self._stopping:
                await slots.acquire()
                job = await asyncio.to_thread(
                    self._backend.reserve, self._queue_name, self._poll_interval
                )
                if job is None:
                    slots.release()
                    if stop_when_idle and not self._in_flight:
                        pending = await asyncio.to_thread(
                            self._backend.pending_count, self._queue_name
                        )
                        if pending == 0:
                            return
                    continue

                task = asyncio.create_task(self._run_job(job, slots))
                self._in_flight.add(task)
                task.add_done_callback(self._in_flight.discard)
        finally:
            if self._in_flight:
                await asyncio.gather(*self._in_flight, return_exceptions=True)

    async def _run_job(self, job: Job, slots: asyncio.Semaphore) -> None:
        job.attempts_made += 1
        try:
            result = await asyncio.to_thread(self._handler, job)
        except Exception as e:
            job.last_error = f"{type(e).__name__}: {e}"
            await asyncio.to_thread(self._after_failure, job)
        else:
            await asyncio.to_thread(self._backend.complete, job, result)
        finally:
            slots.release()

    def _after_failure(self, job: Job) -> None:
        policy = job.retry_policy
        if policy.is_exhausted(job.attempts_made):
            logger.error(
                "Job %s failed permanently after %d attempts: %s",
                job.job_id,
                job.attempts_made,
                job.last_error,
                extra={"queue": job.queue_name, "job_id": job.job_id},
            )
            self._backend.fail(job)
            return

        delay = policy.backoff_seconds(job.attempts_made - 1)
        logger.warning(
            "Job %s attempt %d failed, retrying in %.1fs: %s",
            job.job_id,
            job.attempts_made,
            delay,
            job.last_error,
            extra={"queue": job.queue_name, "job_id": job.job_id},
        )
        self._backend.retry_later(job, delay)


class InMemoryJobQueue:
    """Process-local queue. Jobs do not survive a restart."""

    def __init__(
        self,
        default_retry_policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        dedup_retention_seconds: int = DEDUP_RETENTION_SECONDS,
    ) -> None:
        self._default_policy = default_retry_policy or RetryPolicy.from_env()
        self._clock = clock
        self._retention = dedup_retention_seconds
        self._cond = threading.Condition()
        self._ready: dict[str, deque[Job]] = {}
        self._delayed: dict[str, list[tuple[float, Job]]] = {}
        # job_id -> dedup expiry, kept in expiry order so expired ids trim from the front
        self._seen: OrderedDict[str, float] = OrderedDict()
        self._completed: dict[str, deque[tuple[Job, Any]]] = {}
        self._failed: dict[str, deque[Job]] = {}

    def enqueue(
        self,
        queue_name: str,
        job_id: str,
        payload: dict[str, Any],
        retry_policy: RetryPolicy | None = None,
        *,
        name: str | None = None,
    ) -> bool:
        now = self._clock()
        with self._cond:
            self._evict_expired_ids(now)
            if job_id in self._seen:
                logger.debug("Duplicate job %s ignored", job_id)
                return False
            self._seen[job_id] = now + self._retention
            job = Job(
                queue_name=queue_name,
                job_id=job_id,
                name=name or queue_name,
                payload=dict(payload),
                retry_policy=retry_policy or self._default_policy,
            )
            self._ready.setdefault(queue_name, deque()).append(job)
            self._cond.notify_all()
        return True

    def tracked_job_ids(self) -> list[str]:
        """Job ids still inside the dedup window (for tests)."""
        with self._cond:
            self._evict_expired_ids(self._clock())
            return list(self._seen)

    def _evict_expired_ids(self, now: float) -> None:
        while self._seen and next(iter(self._seen.values())) <= now:
            self._seen.popitem(last=False)

    async def consume(
        self,
        queue_name: str,
        handler: JobHandler,
        concurrency: int = 5,
        *,
        stop_when_idle: bool = False,
    ) -> None:
        await QueueConsumer(self, queue_name, handler, concurrency).run(
            stop_when_idle=stop_when_idle
        )

    def _promote_due(self, queue_name: str, now: float) -> float | None:
        """Move due delayed jobs to ready. Returns the next due time, if any."""
        delayed = self._delayed.get(queue_name)
        if not delayed:
            return None
        still_delayed = []
        for ready_at, job in delayed:
            if ready_at <= now:
                self._ready.setdefault(queue_name, deque()).append(job)
            else:
                still_delayed.append((ready_at, job))
        self._delayed[queue_name] = still_delayed
        return min((t for t, _ in still_delayed), default=None)

    def reserve(self, queue_name: str, timeout: float) -> Job | None:
        deadline = self._clock() + timeout
        with self._cond:
            while True:
                now = self._clock()
                next_due = self._promote_due(queue_name, now)
                ready = self._ready.get(queue_name)
                if ready:
                    return ready.popleft()
                remaining = deadline - now
                if remaining <= 0:
                    return None
                if next_due is not None:
                    remaining = min(remaining, max(next_due - now, 0.0))
                self._cond.wait(remaining)

    def complete(self, job: Job, result: Any) -> None:
        with self._cond:
            history = self._completed.setdefault(job.queue_name, deque(maxlen=COMPLETED_HISTORY))
            history.append((job, result))

    def retry_later(self, job: Job, delay_seconds: float) -> None:
        with self._cond:
            self._delayed.setdefault(job.queue_name, []).append(
                (self._clock() + delay_seconds, job)
            )
            self._cond.notify_all()

    def fail(self, job: Job) -> None:
        with self._cond:
            self._failed.setdefault(job.queue_name, deque(maxlen=FAILED_HISTORY)).append(job)

    def pending_count(self, queue_name: str) -> int:
        with self._cond:
            return len(self._ready.get(queue_name, ())) + len(self._delayed.get(queue_name, ()))

    def completed_jobs(self, queue_name: str) -> list[tuple[Job, Any]]:
        with self._cond:
            return list(self._completed.get(queue_name, ()))

    def failed_jobs(self, queue_name: str) -> list[Job]:
        with self._cond:
            return list(self._failed.get(queue_name, ()))


class RedisJobQueue:
    """Redis-backed queue shared by every API and worker process.

    Keys per queue (prefix claimflow:queue:{name}):
        :ready       list, producers LPUSH, consumers BLMOVE to :processing
        :processing  list of reserved job bodies, for redelivery after a crash
        :delayed     sorted set of job bodies scored by due epoch seconds
        :completed   capped list of completed job summaries
        :failed      capped list of exhausted job bodies
    and claimflow:queue:dedup:{job_id} set with NX and a retention TTL.
    """

    def __init__(
        self,
        client: Redis,
        default_retry_policy: RetryPolicy | None = None,
        key_prefix: str = "claimflow:queue",
        dedup_retention_seconds: int = DEDUP_RETENTION_SECONDS,
    ) -> None:
        self._client = client
        self._default_policy = default_retry_policy or RetryPolicy.from_env()
        self._prefix = key_prefix
        self._retention = dedup_retention_seconds

    def _key(self, queue_name: str, part: str) -> str:
        return f"{self._prefix}:{queue_name}:{part}"

    def enqueue(
        self,
        queue_name: str,
        job_id: str,
        payload: dict[str, Any],
        retry_policy: RetryPolicy | None = None,
        *,
        name: str | None = None,
    ) -> bool:
        dedup_key = f"{self._prefix}:dedup:{job_id}"
        if not self._client.set(dedup_key, "1", nx=True, ex=self._retention):
            logger.debug("Duplicate job %s ignored", job_id)
            return False
        job = Job(
            queue_name=queue_name,
            job_id=job_id,
            name=name or queue_name,
            payload=dict(payload),
            retry_policy=retry_policy or self._default_policy,
        )
        self._client.lpush(self._key(queue_name, "ready"), job.to_json())
        return True

    async def consume(
        self,
        queue_name: str,
        handler: JobHandler,
        concurrency: int = 5,
        *,
        stop_when_idle: bool = False,
    ) -> None:
        await QueueConsumer(self, queue_name, handler, concurrency, poll_interval=1.0).run(
            stop_when_idle=stop_when_idle
        )

    def requeue_stalled(self, queue_name: str) -> int:
        """Move every reserved-but-unfinished job back to ready.

        Call only when no other consumer of this queue is running, since
        their in-flight jobs would be delivered a second time.
        """
        moved = 0
        while self._client.lmove(
            self._key(queue_name, "processing"), self._key(queue_name, "ready"), "RIGHT", "LEFT"
        ):
            moved += 1
        if moved:
            logger.info("Requeued %d stalled jobs on %s", moved, queue_name)
        return moved

    def _promote_due(self, queue_name: str) -> None:
        delayed_key = self._key(queue_name, "delayed")
        for body in self._client.zrangebyscore(delayed_key, 0, time.time()):
            # Only the consumer whose ZREM succeeds promotes the job.
            if self._client.zrem(delayed_key, body):
                self._client.lpush(self._key(queue_name, "ready"), body)

    def reserve(self, queue_name: str, timeout: float) -> Job | None:
        self._promote_due(queue_name)
        body = self._client.blmove(
            self._key(queue_name, "ready"),
            self._key(queue_name, "processing"),
            timeout,
            "RIGHT",
            "LEFT",
        )
        if body is None:
            return None
        if isinstance(body, bytes):
            body = body.decode("utf-8")
        return Job.from_json(body)

    def complete(self, job: Job, result: Any) -> None:
        summary = json.dumps(
            {"job_id": job.job_id, "attempts_made": job.attempts_made, "result": result},
            default=str,
        )
        completed_key = self._key(job.queue_name, "completed")
        pipe = self._client.pipeline()
        pipe.lrem(self._key(job.queue_name, "processing"), 1, job.raw)
        pipe.lpush(completed_key, summary)
        pipe.ltrim(completed_key, 0, COMPLETED_HISTORY - 1)
        pipe.execute()

    def retry_later(self, job: Job, delay_seconds: float) -> None:
        pipe = self._client.pipeline()
        pipe.lrem(self._key(job.queue_name, "processing"), 1, job.raw)
        due_at = time.time() + delay_seconds
        pipe.zadd(self._key(job.queue_name, "delayed"), {job.to_json(): due_at})
        pipe.execute()

    def fail(self, job: Job) -> None:
        failed_key = self._key(job.queue_name, "failed")
        pipe = self._client.pipeline()
        pipe.lrem(self._key(job.queue_name, "processing"), 1, job.raw)
        pipe.lpush(failed_key, job.to_json())
        pipe.ltrim(failed_key, 0, FAILED_HISTORY - 1)
        pipe.execute()

    def pending_count(self, queue_name: str) -> int:
        return int(self._client.llen(self._key(queue_name, "ready"))) + int(
            self._client.zcard(self._key(queue_name, "delayed"))
        )


def create_job_queue() -> InMemoryJobQueue | RedisJobQueue:
    """Build the process job queue from the environment.

    Uses Redis when CLAIMFLOW_REDIS_URL is set, otherwise a process-local queue.
    """
    url = os.environ.get(REDIS_URL_ENV)
    if not url:
        logger.info("No %s set; using in-memory job queue", REDIS_URL_ENV)
        return InMemoryJobQueue()

    import redis

    logger.info("Using Redis job queue")
    return RedisJobQueue(redis.Redis.from_url(url, decode_responses=True))
