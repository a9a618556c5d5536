"""Event reconciliation jobs: apply a clinical event to a patient's claims.

Three job kinds differ only in the status transition they apply:

    admission  submitted     -> under_review
    treatment  submitted     -> under_review
    discharge  under_review  -> approved

Every run follows the same steps under the organization's system context:

1. Load the event, tenant-scoped. Absent (or owned by another tenant):
   skipped, "Event not found".
2. processed_at already set: skipped, "Already processed".
3. Conditional bulk update of the patient's claims whose status equals the
   required status. Claims that already moved on are left alone by the
   status predicate itself.
4. Mark the event processed.
5. After commit, bump the tenant's cache generation and delete the updated
   claims' cache keys and the tenant's list-cache prefix.
6. Return the count and ids of updated claims.

Steps 1 to 4 run in one unit of work, so the claim update and processed_at
commit together or not at all, and any failure before commit leaves the
event unprocessed for the queue's next attempt.

Two in-flight attempts of the same job can both pass step 2 before either
commits. This is tolerated, not prevented: the status predicate makes the
second application a no-op for every rule in this module, and any new rule
must keep that property or add real mutual exclusion.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from claimflow.cache import CacheLayer
from claimflow.jobs.dispatch import (
    ADMISSION_QUEUE,
    DISCHARGE_QUEUE,
    TREATMENT_QUEUE,
    ReconciliationPayload,
)
from claimflow.models.claim import ClaimStatus
from claimflow.models.patient_history import EventType
from claimflow.persistence.unit_of_work import open_unit_of_work
from claimflow.tenancy import system_context, tenant_scope

logger = logging.getLogger(__name__)

EVENT_NOT_FOUND = "Event not found"
ALREADY_PROCESSED = "Already processed"
EVENT_TYPE_MISMATCH = "Event type mismatch"


@dataclass(frozen=True)
class ReconciliationRule:
    event_type: EventType
    required_status: ClaimStatus
    new_status: ClaimStatus


ADMISSION_RULE = ReconciliationRule(
    EventType.ADMISSION, ClaimStatus.SUBMITTED, ClaimStatus.UNDER_REVIEW
)
TREATMENT_RULE = ReconciliationRule(
    EventType.TREATMENT, ClaimStatus.SUBMITTED, ClaimStatus.UNDER_REVIEW
)
DISCHARGE_RULE = ReconciliationRule(
    EventType.DISCHARGE, ClaimStatus.UNDER_REVIEW, ClaimStatus.APPROVED
)


class ReconciliationResult(BaseModel):
    """Outcome of one job run. Skips are successful no-ops, not errors."""

    processed: bool = False
    skipped: bool = False
    reason: str | None = None
    claims_updated: int | None = None
    claim_ids: list[str] | None = None
    treatment_type: str | None = None

    @classmethod
    def skip(cls, reason: str) -> ReconciliationResult:
        return cls(skipped=True, reason=reason)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


def reconcile_event(
    rule: ReconciliationRule,
    payload: ReconciliationPayload | Mapping[str, Any],
    cache: CacheLayer | None = None,
) -> ReconciliationResult:
    """Apply rule to the claims of the payload's event.

    Raises whatever the store raises before commit, so the queue retries.
    """
    if not isinstance(payload, ReconciliationPayload):
        payload = ReconciliationPayload.model_validate(payload)
    org_id = payload.organization_id
    log_extra = {"event_id": payload.event_id, "organization_id": org_id}

    with tenant_scope(system_context(org_id)), open_unit_of_work(org_id) as uow:
        event = uow.patient_history.find_by_id(payload.event_id)
        if event is None:
            logger.warning("Event %s not found; skipping", payload.event_id, extra=log_extra)
            return ReconciliationResult.skip(EVENT_NOT_FOUND)
        if event.is_processed:
            logger.info("Event %s already processed", payload.event_id, extra=log_extra)
            return ReconciliationResult.skip(ALREADY_PROCESSED)
        if event.event_type != rule.event_type:
            logger.warning(
                "Event %s is %s, not %s; skipping",
                event.id,
                event.event_type.value,
                rule.event_type.value,
                extra=log_extra,
            )
            return ReconciliationResult.skip(EVENT_TYPE_MISMATCH)

        updated = uow.claims.update_status_by_patient(
            event.patient_id, rule.required_status, rule.new_status
        )
        if not uow.patient_history.mark_processed(event.id):
            logger.warning(
                "Event %s was marked processed by a concurrent run",
                event.id,
                extra=log_extra,
            )

    if updated and cache is not None:
        cache.invalidate_claims(org_id, [c.id for c in updated])

    claim_ids = [c.id for c in updated]
    logger.info(
        "Reconciled %s event %s: %d claims %s -> %s",
        rule.event_type.value,
        payload.event_id,
        len(claim_ids),
        rule.required_status.value,
        rule.new_status.value,
        extra=log_extra,
    )
    return ReconciliationResult(processed=True, claims_updated=len(claim_ids), claim_ids=claim_ids)


def process_patient_admission(
    payload: Mapping[str, Any], cache: CacheLayer | None = None
) -> dict[str, Any]:
    return reconcile_event(ADMISSION_RULE, payload, cache).to_dict()


def process_patient_discharge(
    payload: Mapping[str, Any], cache: CacheLayer | None = None
) -> dict[str, Any]:
    return reconcile_event(DISCHARGE_RULE, payload, cache).to_dict()


def process_treatment_initiated(
    payload: Mapping[str, Any], cache: CacheLayer | None = None
) -> dict[str, Any]:
    """Treatment reconciliation; processed results echo the treatment type."""
    result = reconcile_event(TREATMENT_RULE, payload, cache)
    if result.processed:
        result = result.model_copy(
            update={"treatment_type": payload.get("treatment_type") or "unknown"}
        )
    return result.to_dict()


ReconciliationHandler = Callable[..., dict[str, Any]]

JOB_HANDLERS: dict[str, ReconciliationHandler] = {
    ADMISSION_QUEUE: process_patient_admission,
    DISCHARGE_QUEUE: process_patient_discharge,
    TREATMENT_QUEUE: process_treatment_initiated,
}


def bind_handlers(cache: CacheLayer | None) -> dict[str, Callable[[Mapping[str, Any]], dict]]:
    """JOB_HANDLERS with the cache bound in."""
    return {name: functools.partial(fn, cache=cache) for name, fn in JOB_HANDLERS.items()}
