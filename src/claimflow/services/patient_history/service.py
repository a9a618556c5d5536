"""PatientHistoryService - recording and reading clinical events.

A recorded event is committed before its reconciliation job is enqueued, so
a worker never picks up a job whose event is not yet visible.
"""

from __future__ import annotations

import logging

from claimflow.jobs.dispatch import EventDispatchService
from claimflow.models.patient_history import (
    CreatePatientEventInput,
    PaginatedPatientHistory,
    PatientHistoryEvent,
    PatientHistoryQuery,
)
from claimflow.observability.metrics import record_patient_event
from claimflow.persistence.unit_of_work import open_unit_of_work
from claimflow.services.claims import permissions
from claimflow.tenancy import get_tenant_context

logger = logging.getLogger(__name__)


class PatientHistoryService:
    """Service layer for patient history events."""

    def __init__(self, dispatcher: EventDispatchService) -> None:
        self._dispatcher = dispatcher

    def create_event(self, data: CreatePatientEventInput) -> PatientHistoryEvent:
        """Record an event and enqueue its reconciliation job.

        Raises:
            ForbiddenError: If the caller is neither admin nor provider.
        """
        ctx = get_tenant_context()
        permissions.check_history_write(ctx)

        with open_unit_of_work(ctx.organization_id) as uow:
            event = uow.patient_history.create(
                patient_id=data.patient_id,
                event_type=data.event_type,
                occurred_at=data.occurred_at,
                details=data.details,
            )

        self._dispatcher.dispatch(event)
        record_patient_event(event.event_type.value, ctx.organization_id)

        logger.info(
            "Patient event %s recorded",
            event.id,
            extra={
                "event_type": event.event_type.value,
                "patient_id": event.patient_id,
                "organization_id": ctx.organization_id,
            },
        )
        return event

    def get_patient_history(
        self, patient_id: str, query: PatientHistoryQuery | None = None
    ) -> PaginatedPatientHistory:
        """One patient's events, most recent first.

        Raises:
            ForbiddenError: If the caller may not read this patient's history.
        """
        ctx = get_tenant_context()
        permissions.check_history_read(ctx, patient_id)
        query = query or PatientHistoryQuery()

        with open_unit_of_work(ctx.organization_id) as uow:
            events, total = uow.patient_history.list_by_patient(patient_id, query)

        return PaginatedPatientHistory(
            data=events, total=total, limit=query.limit, offset=query.offset
        )
