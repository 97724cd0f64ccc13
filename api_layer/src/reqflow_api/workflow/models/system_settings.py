"""
System Settings Model

Runtime workflow configuration editable by administrators. Stored as a single
versioned document and updated under optimistic concurrency.
"""

from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import List
from typing import Optional

from pydantic import BaseModel
from pydantic import Field


class SystemSettings(BaseModel):
    """Global workflow settings (single document)."""

    # Claim lease windows
    claim_active_ttl_minutes: int = Field(default=30, ge=1)
    claim_hold_ttl_minutes: int = Field(default=24 * 60, ge=1)

    # Bounded retries for optimistic-concurrency conflicts
    conflict_retry_attempts: int = Field(default=3, ge=1, le=10)

    # When disabled, domain events are not dispatched
    notifications_enabled: bool = True

    # Scheduling constraints checked on create and reschedule
    allow_weekend_events: bool = False
    advance_booking_days: int = Field(default=30, ge=0)
    blocked_weekdays: List[int] = Field(default_factory=list)  # 0..6 (Mon..Sun)
    blocked_dates: List[str] = Field(default_factory=list)  # YYYY-MM-DD

    version: int = 0
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None

    def date_violation(self, value: datetime, now: datetime) -> Optional[str]:
        """
        Check an event date against the scheduling rules.

        Returns:
            A message describing the violated rule, or None if the date is allowed
        """
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        day = value.astimezone(timezone.utc).date()
        today = now.astimezone(timezone.utc).date()

        if day < today:
            return "Event date is in the past"
        if day > today + timedelta(days=self.advance_booking_days):
            return f"Events can only be booked up to {self.advance_booking_days} days in advance"
        if not self.allow_weekend_events and day.weekday() >= 5:
            return "Weekend events are not allowed"
        if day.weekday() in self.blocked_weekdays:
            return "Events cannot be booked on this weekday"
        if day.isoformat() in self.blocked_dates:
            return f"{day.isoformat()} is a blocked date"
        return None
