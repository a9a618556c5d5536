"""Claim models: the persisted entity and the validated inputs that mutate it."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def assume_utc(value: datetime | None) -> datetime | None:
    """Read a datetime without a timezone as UTC so it compares with stored timestamps."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class ClaimStatus(str, Enum):
    """Lifecycle status of a claim."""

    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"


class Claim(BaseModel):
    """An insurance claim owned by exactly one organization.

    Claims are never physically deleted. Every read and write is filtered by
    organization_id.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., description="Claim identifier")
    organization_id: str = Field(..., description="Owning organization")
    patient_id: str = Field(..., description="Patient the claim is for")
    provider_id: str = Field(..., description="Provider who filed the claim")
    diagnosis_code: str = Field(..., min_length=1, max_length=50)
    amount: Decimal = Field(..., max_digits=10, decimal_places=2)
    status: ClaimStatus = Field(default=ClaimStatus.SUBMITTED)
    assigned_processor_id: str | None = Field(default=None)
    created_at: datetime
    updated_at: datetime


class CreateClaimInput(BaseModel):
    """Input for creating a claim. Status is not accepted; new claims start submitted."""

    model_config = ConfigDict(extra="forbid")

    patient_id: str = Field(..., min_length=1, max_length=64)
    provider_id: str = Field(..., min_length=1, max_length=64)
    diagnosis_code: str = Field(..., min_length=1, max_length=50)
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    assigned_processor_id: str | None = Field(default=None, min_length=1, max_length=64)


class UpdateClaimInput(BaseModel):
    """Partial update of a claim. At least one field must be provided."""

    model_config = ConfigDict(extra="forbid")

    status: ClaimStatus | None = None
    assigned_processor_id: str | None = Field(default=None, min_length=1, max_length=64)
    diagnosis_code: str | None = Field(default=None, min_length=1, max_length=50)
    amount: Decimal | None = Field(default=None, gt=0, max_digits=10, decimal_places=2)

    @model_validator(mode="after")
    def require_at_least_one_field(self) -> UpdateClaimInput:
        if not self.changes():
            raise ValueError("At least one field must be provided for update")
        return self

    def changes(self) -> dict[str, Any]:
        """Return only the fields the caller supplied."""
        return self.model_dump(exclude_none=True)


ClaimSortField = Literal["created_at", "updated_at", "amount", "status"]


class ListClaimsQuery(BaseModel):
    """Filters, sort and page for listing claims."""

    model_config = ConfigDict(extra="forbid")

    status: ClaimStatus | None = None
    patient_id: str | None = Field(default=None, max_length=100)
    provider_id: str | None = Field(default=None, max_length=100)
    assigned_processor_id: str | None = Field(default=None, max_length=100)
    from_date: datetime | None = None
    to_date: datetime | None = None
    min_amount: Decimal | None = Field(default=None, gt=0)
    max_amount: Decimal | None = Field(default=None, gt=0)
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)
    sort_by: ClaimSortField = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"

    @field_validator("from_date", "to_date")
    @classmethod
    def dates_as_utc(cls, value: datetime | None) -> datetime | None:
        return assume_utc(value)

    @model_validator(mode="after")
    def check_ranges(self) -> ListClaimsQuery:
        if (
            self.min_amount is not None
            and self.max_amount is not None
            and self.min_amount > self.max_amount
        ):
            raise ValueError("min_amount must be less than or equal to max_amount")
        if (
            self.from_date is not None
            and self.to_date is not None
            and self.from_date > self.to_date
        ):
            raise ValueError("from_date must be before or equal to to_date")
        return self

    def cache_filters(self) -> dict[str, Any]:
        """Every set field, stringified, for building the list cache key."""
        return {
            key: str(value)
            for key, value in self.model_dump(mode="json", exclude_none=True).items()
        }


class BulkStatusUpdateInput(BaseModel):
    """Set one status on many claims at once."""

    model_config = ConfigDict(extra="forbid")

    claim_ids: list[str] = Field(..., min_length=1, max_length=100)
    status: ClaimStatus


class Pagination(BaseModel):
    """Page metadata for list responses."""

    total: int
    limit: int
    offset: int
    has_more: bool


class PaginatedClaims(BaseModel):
    """One page of claims."""

    data: list[Claim]
    pagination: Pagination
