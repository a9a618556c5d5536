"""Patient history event models.

A PatientHistoryEvent records one clinical event (admission, discharge,
treatment). processed_at is the idempotency marker for reconciliation: it is
set at most once, in the same transaction that applied the claim update.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from claimflow.models.claim import assume_utc


class EventType(str, Enum):
    """Clinical event kinds that drive claim reconciliation."""

    ADMISSION = "admission"
    DISCHARGE = "discharge"
    TREATMENT = "treatment"


class PatientHistoryEvent(BaseModel):
    """A clinical event for one patient within one organization."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    organization_id: str
    patient_id: str
    event_type: EventType
    occurred_at: datetime
    details: str | None = None
    processed_at: datetime | None = None
    created_at: datetime

    @property
    def is_processed(self) -> bool:
        return self.processed_at is not None


class CreatePatientEventInput(BaseModel):
    """Input for recording a clinical event."""

    model_config = ConfigDict(extra="forbid")

    patient_id: str = Field(..., min_length=1, max_length=100)
    event_type: EventType
    occurred_at: datetime
    details: str | None = Field(default=None, max_length=5000)

    @field_validator("occurred_at")
    @classmethod
    def occurred_at_as_utc(cls, value: datetime) -> datetime | None:
        return assume_utc(value)


class PatientHistoryQuery(BaseModel):
    """Filters and page for reading one patient's history."""

    model_config = ConfigDict(extra="forbid")

    event_type: EventType | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None
    limit: int = Field(default=50, ge=1, le=100)
    offset: int = Field(default=0, ge=0)

    @field_validator("from_date", "to_date")
    @classmethod
    def dates_as_utc(cls, value: datetime | None) -> datetime | None:
        return assume_utc(value)

    @model_validator(mode="after")
    def check_range(self) -> PatientHistoryQuery:
        if (
            self.from_date is not None
            and self.to_date is not None
            and self.from_date > self.to_date
        ):
            raise ValueError("from_date must be before or equal to to_date")
        return self


class PaginatedPatientHistory(BaseModel):
    """One page of a patient's events, most recent first."""

    data: list[PatientHistoryEvent]
    total: int
    limit: int
    offset: int
