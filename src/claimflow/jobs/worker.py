"""Background worker consuming the reconciliation queues.

Runs one consumer per queue in JOB_HANDLERS, each with bounded concurrency.
Every job run is wrapped in a tracing span and recorded in the job counters.

Environment Variables:
    CLAIMFLOW_WORKER_CONCURRENCY: Concurrent jobs per queue (default: 5)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import time
from collections.abc import Callable, Mapping
from typing import Any

from claimflow.cache import CacheLayer
from claimflow.jobs.queue import InMemoryJobQueue, Job, JobHandler, QueueConsumer, RedisJobQueue
from claimflow.jobs.reconciliation import bind_handlers
from claimflow.observability.metrics import record_job_run
from claimflow.observability.tracing import job_span

logger = logging.getLogger(__name__)

WORKER_CONCURRENCY_ENV = "CLAIMFLOW_WORKER_CONCURRENCY"
DEFAULT_CONCURRENCY = 5


def get_worker_concurrency() -> int:
    return int(os.environ.get(WORKER_CONCURRENCY_ENV, str(DEFAULT_CONCURRENCY)))


def instrument_handler(
    queue_name: str, handler: Callable[[Mapping[str, Any]], dict[str, Any]]
) -> JobHandler:
    """Adapt a payload handler to a queue handler with a span and job metrics."""

    def run(job: Job) -> dict[str, Any]:
        started = time.perf_counter()
        status = "failed"
        try:
            with job_span(
                f"job.{job.name}",
                {
                    "job.id": job.job_id,
                    "job.queue": queue_name,
                    "job.attempt": job.attempts_made,
                    "organization_id": job.payload.get("organization_id"),
                },
            ):
                result = handler(job.payload)
            status = "skipped" if result.get("skipped") else "completed"
            return result
        finally:
            record_job_run(queue_name, status, time.perf_counter() - started)

    return run


class ReconciliationWorker:
    """Consumes every reconciliation queue until stopped."""

    def __init__(
        self,
        queue: InMemoryJobQueue | RedisJobQueue,
        cache: CacheLayer | None = None,
        concurrency: int | None = None,
    ) -> None:
        """Initialize worker.

        Args:
            queue: Queue backend shared with the producers.
            cache: Claim cache to invalidate after each reconciliation.
            concurrency: Concurrent jobs per queue. Defaults to the environment.
        """
        self._queue = queue
        self._concurrency = concurrency or get_worker_concurrency()
        self._handlers = {
            name: instrument_handler(name, handler)
            for name, handler in bind_handlers(cache).items()
        }
        self._consumers: list[QueueConsumer] = []
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def queue_names(self) -> list[str]:
        return list(self._handlers)

    def _build_consumers(self) -> list[QueueConsumer]:
        return [
            QueueConsumer(self._queue, name, handler, self._concurrency)
            for name, handler in self._handlers.items()
        ]

    async def start(self) -> None:
        """Start one consumer task per queue."""
        if self._tasks:
            logger.warning("Worker already running")
            return

        if isinstance(self._queue, RedisJobQueue):
            for name in self._handlers:
                await asyncio.to_thread(self._queue.requeue_stalled, name)

        self._consumers = self._build_consumers()
        self._tasks = [asyncio.create_task(c.run()) for c in self._consumers]
        logger.info(
            "Reconciliation worker started on %s (concurrency %d)",
            ", ".join(self._handlers),
            self._concurrency,
        )

    async def stop(self) -> None:
        """Stop consuming. In-flight jobs finish first."""
        if not self._tasks:
            return

        for consumer in self._consumers:
            consumer.stop()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._consumers = []
        self._tasks = []
        logger.info("Reconciliation worker stopped")

    async def run_until_idle(self) -> None:
        """Drain every queue, including retries, then return."""
        await asyncio.gather(*(c.run(stop_when_idle=True) for c in self._build_consumers()))

    async def run_forever(self) -> None:
        await self.start()
        try:
            await asyncio.gather(*self._tasks)
        finally:
            await self.stop()
