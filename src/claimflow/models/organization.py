"""Organization model: the tenant root."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class Organization(BaseModel):
    """A tenant. Immutable after creation."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    name: str = Field(..., min_length=1, max_length=255)
    created_at: datetime
