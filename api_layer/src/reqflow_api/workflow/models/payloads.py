"""
Action Payload Models

Validation for the free-form payloads callers attach to create, update and
reschedule operations.
"""

from datetime import date
from datetime import datetime
from datetime import timezone
from typing import Any
from typing import Optional

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator


def coerce_event_date(value: Any) -> Any:
    """Accept bare dates (YYYY-MM-DD or date objects) as midnight UTC."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str) and len(value.strip()) == 10:
        return f"{value.strip()}T00:00:00+00:00"
    return value


class EventDetails(BaseModel):
    """Requested event. Unknown keys are kept as-is."""

    title: str = Field(min_length=1)
    start_date: datetime
    end_date: Optional[datetime] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    location: Optional[str] = None
    category: Optional[str] = None

    class Config:
        extra = "allow"

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def parse_dates(cls, v: Any) -> Any:
        return coerce_event_date(v)


class ReschedulePayload(BaseModel):
    """Counter-proposal attached to a reschedule action."""

    proposed_date: datetime
    proposed_start_time: Optional[str] = None
    proposed_end_time: Optional[str] = None
    notes: str = ""

    @field_validator("proposed_date", mode="before")
    @classmethod
    def parse_date(cls, v: Any) -> Any:
        return coerce_event_date(v)


class DecisionPayload(BaseModel):
    """Optional notes attached to accept/reject/confirm/decline/cancel."""

    notes: str = ""

    class Config:
        extra = "ignore"
