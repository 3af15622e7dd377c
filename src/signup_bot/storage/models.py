"""
Pydantic models matching the PostgreSQL schema in schema.sql.

Table names and field names match the database columns, so rows can be
converted with ``Model(**dict(record))``.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


DAYS_OF_WEEK = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)


# =============================================================================
# TRACKED PATTERNS
# =============================================================================


class TrackedPattern(BaseModel):
    """
    A member's recurring class pattern.

    The selector fields are stored as entered. They are validated when the
    scheduler evaluates the pattern, not here, so a malformed row only
    affects its own evaluation.
    """

    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    activity_id: str
    activity_name: str = ""
    instructor_id: Optional[str] = None
    instructor_name: Optional[str] = None
    location_id: Optional[str] = None  # None = any location under the venue
    location_name: Optional[str] = None
    day_of_week: str  # "Monday" .. "Sunday"
    start_time: str  # "HH:MM" in venue local time
    match_instructor: bool = False
    match_exact_time: bool = False
    time_tolerance_minutes: int = 15
    auto_signup_enabled: bool = False
    signup_lead_hours: int = 46
    created_at: Optional[datetime] = None

    @property
    def label(self) -> str:
        """Short human-readable description used in logs."""
        who = f" w/ {self.instructor_name}" if self.match_instructor and self.instructor_name else ""
        where = f" @ {self.location_name}" if self.location_name else ""
        return f"{self.activity_name or self.activity_id} {self.day_of_week} {self.start_time}{who}{where}"


# =============================================================================
# SIGNUP LOGS (attempt ledger)
# =============================================================================


class AttemptOutcome(str, Enum):
    """Outcome stored on each signup log row."""

    SUCCESS = "success"
    WAITLISTED = "waitlisted"
    FAILED = "failed"
    CANCELLED = "cancelled"  # member cancelled or left the waitlist manually

    @property
    def is_terminal(self) -> bool:
        """Whether this outcome stops further automatic attempts."""
        return self is not AttemptOutcome.FAILED


class AttemptRecord(BaseModel):
    """One append-only entry in the signup attempt ledger."""

    id: Optional[int] = None
    occurrence_id: str
    pattern_id: Optional[int] = None
    outcome: AttemptOutcome
    reason: Optional[str] = None
    activity_name: Optional[str] = None
    instructor_name: Optional[str] = None
    location_name: Optional[str] = None
    class_time: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
