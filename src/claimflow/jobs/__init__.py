"""Claim reconciliation jobs: queue, dispatch, handlers and worker."""

from claimflow.jobs.dispatch import EventDispatchService
from claimflow.jobs.queue import InMemoryJobQueue, RedisJobQueue, RetryPolicy, create_job_queue
from claimflow.jobs.reconciliation import (
    JOB_HANDLERS,
    process_patient_admission,
    process_patient_discharge,
    process_treatment_initiated,
)
from claimflow.jobs.worker import ReconciliationWorker

__all__ = [
    "JOB_HANDLERS",
    "EventDispatchService",
    "InMemoryJobQueue",
    "ReconciliationWorker",
    "RedisJobQueue",
    "RetryPolicy",
    "create_job_queue",
    "process_patient_admission",
    "process_patient_discharge",
    "process_treatment_initiated",
]
