"""Prometheus counters emitted by the claim core and the job worker.

Metric emission is fire-and-forget: nothing here may fail an operation.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

METRIC_PREFIX = "claimflow"


def _counter(name: str, documentation: str, labels: list[str]) -> Counter:
    return Counter(f"{METRIC_PREFIX}_{name}", documentation, labels)


CLAIMS_CREATED = _counter(
    "claims_created", "Claims created", ["organization_id"]
)
CLAIM_STATUS_TRANSITIONS = _counter(
    "claim_status_transitions", "Claim status transitions", ["from_status", "to_status"]
)
CACHE_HITS = _counter("cache_hits", "Cache hits", ["cache_type"])
CACHE_MISSES = _counter("cache_misses", "Cache misses", ["cache_type"])
PATIENT_EVENTS = _counter(
    "patient_events", "Patient history events recorded", ["event_type", "organization_id"]
)
JOBS_PROCESSED = _counter(
    "jobs_processed", "Reconciliation job runs", ["job_type", "status"]
)
JOB_DURATION = Histogram(
    f"{METRIC_PREFIX}_job_duration_seconds",
    "Reconciliation job run duration",
    ["job_type", "status"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10),
)


def record_claim_created(organization_id: str) -> None:
    CLAIMS_CREATED.labels(organization_id=organization_id).inc()


def record_status_transition(from_status: str, to_status: str) -> None:
    CLAIM_STATUS_TRANSITIONS.labels(from_status=from_status, to_status=to_status).inc()


def record_cache_lookup(cache_type: str, hit: bool) -> None:
    (CACHE_HITS if hit else CACHE_MISSES).labels(cache_type=cache_type).inc()


def record_patient_event(event_type: str, organization_id: str) -> None:
    PATIENT_EVENTS.labels(event_type=event_type, organization_id=organization_id).inc()


def record_job_run(job_type: str, status: str, duration_seconds: float) -> None:
    JOBS_PROCESSED.labels(job_type=job_type, status=status).inc()
    JOB_DURATION.labels(job_type=job_type, status=status).observe(duration_seconds)
