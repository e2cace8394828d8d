from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.schemas.base import ApiRequest


class SeatingPreference(str, Enum):
    BOOTH = "booth"
    BAR = "bar"
    TABLE = "table"
    PATIO = "patio"
    NONE = "none"


class QueueStatus(str, Enum):
    WAITING = "waiting"
    CALLED = "called"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Names the staff UI and older clients use for the same states
STATUS_ALIASES = {
    "ready": QueueStatus.CALLED.value,
    "seated": QueueStatus.COMPLETED.value,
}

TERMINAL_STATUSES = frozenset({QueueStatus.COMPLETED, QueueStatus.CANCELLED})


class QueueEntryCreate(ApiRequest):
    """Schema for joining a restaurant's queue."""

    user_id: UUID
    restaurant_id: UUID
    party_size: int = Field(..., ge=1, le=20)
    phone: Optional[str] = Field(None, max_length=20)
    notes: Optional[str] = None
    seating_preference: Optional[SeatingPreference] = None
    sms_notifications: bool = False


class QueueStatusUpdate(ApiRequest):
    """Schema for a queue status transition."""

    status: QueueStatus

    @field_validator("status", mode="before")
    @classmethod
    def normalize_alias(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return STATUS_ALIASES.get(lowered, lowered)
        return value


class WaitTimeUpdate(ApiRequest):
    """Schema for a staff turnover update."""

    average_table_turnover: int = Field(..., ge=1, le=240)
    concurrent_tables: Optional[int] = Field(None, ge=1, le=200)


class ExpireCallsRequest(ApiRequest):
    grace_minutes: Optional[int] = Field(None, ge=0)


class QueueEntryRead(BaseModel):
    """Schema for reading a queue entry."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    restaurant_id: UUID
    user_id: UUID
    party_size: int
    phone: Optional[str]
    notes: Optional[str]
    seating_preference: Optional[str]
    sms_notifications: bool
    status: str
    position: Optional[int]
    estimated_wait_minutes: int
    joined_at: datetime
    called_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    actual_wait_minutes: Optional[int]


class QueueSnapshot(BaseModel):
    """Waiting queue for one restaurant, in position order."""

    restaurant_id: UUID
    total_waiting: int
    average_table_turnover: int
    concurrent_tables: int
    queue: List[QueueEntryRead]


class ExpireCallsResponse(BaseModel):
    expired: int
    entry_ids: List[UUID]
