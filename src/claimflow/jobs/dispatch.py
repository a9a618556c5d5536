"""EventDispatchService - turns a recorded patient event into one queued job.

Each event type routes to its own queue and job name. The job id is derived
from the event type and id, so the queue's job-id deduplication drops a
second enqueue of the same event. That deduplication is only a first line of
defense: the event's processed_at marker is what makes reconciliation
idempotent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict

from claimflow.jobs.queue import JobQueue, RetryPolicy
from claimflow.models.patient_history import EventType, PatientHistoryEvent

logger = logging.getLogger(__name__)

ADMISSION_QUEUE = "patient-admission"
DISCHARGE_QUEUE = "patient-discharge"
TREATMENT_QUEUE = "treatment-initiated"

UNKNOWN_TREATMENT_TYPE = "unknown"


@dataclass(frozen=True)
class JobRoute:
    queue_name: str
    job_name: str


EVENT_ROUTES: dict[str, JobRoute] = {
    EventType.ADMISSION.value: JobRoute(ADMISSION_QUEUE, "process-admission"),
    EventType.DISCHARGE.value: JobRoute(DISCHARGE_QUEUE, "process-discharge"),
    EventType.TREATMENT.value: JobRoute(TREATMENT_QUEUE, "process-treatment"),
}


class ReconciliationPayload(BaseModel):
    """Job payload for every reconciliation queue."""

    model_config = ConfigDict(extra="ignore")

    event_id: str
    patient_id: str
    organization_id: str
    occurred_at: datetime
    treatment_type: str | None = None


def build_job_id(event_type: str, event_id: str) -> str:
    return f"{event_type}-{event_id}"


class EventDispatchService:
    """Enqueues one reconciliation job per patient event."""

    def __init__(self, queue: JobQueue, retry_policy: RetryPolicy | None = None) -> None:
        self._queue = queue
        self._retry_policy = retry_policy

    def dispatch(self, event: PatientHistoryEvent) -> str | None:
        """Enqueue the reconciliation job for event.

        Returns:
            The job id, or None if the event type has no route. An already
            queued job id is still returned; the queue ignores the duplicate.
        """
        event_type = event.event_type.value if isinstance(event.event_type, EventType) else str(
            event.event_type
        )
        route = EVENT_ROUTES.get(event_type)
        if route is None:
            logger.warning(
                "Unknown event type %r; no job enqueued",
                event_type,
                extra={"event_id": event.id, "organization_id": event.organization_id},
            )
            return None

        payload: dict[str, Any] = ReconciliationPayload(
            event_id=event.id,
            patient_id=event.patient_id,
            organization_id=event.organization_id,
            occurred_at=event.occurred_at,
        ).model_dump(mode="json", exclude_none=True)
        if event_type == EventType.TREATMENT.value:
            payload["treatment_type"] = event.details or UNKNOWN_TREATMENT_TYPE

        job_id = build_job_id(event_type, event.id)
        enqueued = self._queue.enqueue(
            route.queue_name,
            job_id,
            payload,
            self._retry_policy,
            name=route.job_name,
        )
        logger.info(
            "Dispatched %s job %s%s",
            route.job_name,
            job_id,
            "" if enqueued else " (duplicate ignored)",
            extra={"event_id": event.id, "organization_id": event.organization_id},
        )
        return job_id
