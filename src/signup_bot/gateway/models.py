"""
Data models for the booking gateway.

These models represent:
- Occurrences parsed from the upstream schedule listing
- Outcomes returned by the write operations (register, waitlist, cancel)

Occurrences are transient. They live in the fetch cache for at most one TTL
and are never persisted. The ``lock_version`` carried by a listed occurrence
is informational only; writes always re-read it through
``BookingGateway.fetch_concurrency_token``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional


class OccurrenceStatus(str, Enum):
    """Lifecycle status reported by the platform."""
    SCHEDULED = "Scheduled"
    RESCHEDULED = "Rescheduled"
    REMINDED = "Reminded"
    COMPLETED = "Completed"
    REQUESTED = "Requested"
    COUNTED = "Counted"
    VERIFIED = "Verified"
    CANCELLED = "Cancelled"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "OccurrenceStatus":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_bookable(self) -> bool:
        return self in (OccurrenceStatus.SCHEDULED, OccurrenceStatus.RESCHEDULED)


# Statuses requested from the schedule listing (everything except Cancelled)
LISTED_STATUSES = (
    OccurrenceStatus.RESCHEDULED,
    OccurrenceStatus.SCHEDULED,
    OccurrenceStatus.REMINDED,
    OccurrenceStatus.COMPLETED,
    OccurrenceStatus.REQUESTED,
    OccurrenceStatus.COUNTED,
    OccurrenceStatus.VERIFIED,
)


@dataclass(frozen=True)
class Occurrence:
    """
    A single scheduled instance of a recurring activity.

    Attributes:
        id: Upstream occurrence id (always a string)
        activity_id: Upstream service id
        start_time: Timezone-aware start instant
        capacity: Group size (0 when the platform does not report one)
        attended_count: Clients already booked
        booking_lead_hours: Platform booking-open restriction (0 = unrestricted)
        lock_version: Concurrency token as listed (may be stale or None)
    """
    id: str
    activity_id: str
    start_time: datetime
    activity_name: str = ""
    instructor_id: Optional[str] = None
    instructor_name: Optional[str] = None
    location_id: Optional[str] = None
    location_name: Optional[str] = None
    duration_minutes: int = 0
    capacity: int = 0
    attended_count: int = 0
    is_enrolled: bool = False
    is_waitlisted: bool = False
    is_full_group: bool = False
    waitlist_enabled: bool = False
    booking_lead_hours: int = 0
    lock_version: Optional[int] = None
    status: OccurrenceStatus = OccurrenceStatus.SCHEDULED

    def __post_init__(self):
        if self.start_time.tzinfo is None:
            raise ValueError(f"Occurrence {self.id} start_time must be timezone-aware")

    @property
    def spots_available(self) -> int:
        return max(0, self.capacity - self.attended_count)

    @property
    def is_full(self) -> bool:
        """Full when the platform says so or no spots remain out of a known capacity."""
        return self.is_full_group or (self.capacity > 0 and self.spots_available == 0)

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(minutes=self.duration_minutes)

    def booking_open(self, now: datetime) -> bool:
        """Whether the platform's own booking-open restriction has lifted."""
        if self.booking_lead_hours <= 0:
            return True
        return self.start_time - now <= timedelta(hours=self.booking_lead_hours)

    def has_started(self, now: datetime) -> bool:
        return now >= self.start_time

    def can_register(self, now: datetime) -> bool:
        """Platform-side view of whether a direct registration could succeed now."""
        return (
            not self.is_enrolled
            and not self.is_full
            and self.booking_open(now)
            and not self.has_started(now)
            and self.status.is_bookable
        )

    def can_join_waitlist(self, now: datetime) -> bool:
        return (
            self.is_full
            and self.waitlist_enabled
            and not self.is_waitlisted
            and not self.is_enrolled
            and not self.has_started(now)
        )


@dataclass(frozen=True)
class OccurrenceFilter:
    """Range and location filter for a schedule listing."""
    since: datetime
    till: datetime
    location_ids: tuple[str, ...] = ()

    def __post_init__(self):
        if self.till < self.since:
            raise ValueError("OccurrenceFilter.till must not be before since")


# =============================================================================
# Outcomes
# =============================================================================


class OutcomeKind(Enum):
    """Closed set of results a booking write can produce."""

    BOOKED = "booked"
    WAITLISTED = "waitlisted"
    ALREADY_ENROLLED = "already_enrolled"
    ALREADY_WAITLISTED = "already_waitlisted"
    FULL = "full"
    WAITLIST_FULL = "waitlist_full"
    WAITLIST_UNAVAILABLE = "waitlist_unavailable"
    ERROR = "error"
    CANCELLED = "cancelled"  # cancel / leave-waitlist succeeded


@dataclass(frozen=True)
class Outcome:
    """
    Base outcome returned by every gateway write.

    Outcomes are values, not exceptions: semantic failures such as a full
    class are ordinary results. Only programming errors escape as exceptions.
    """

    kind: OutcomeKind
    detail: str = ""

    @property
    def is_success(self) -> bool:
        """Whether this outcome ends further attempts for the occurrence."""
        return self.kind in (
            OutcomeKind.BOOKED,
            OutcomeKind.WAITLISTED,
            OutcomeKind.ALREADY_ENROLLED,
            OutcomeKind.ALREADY_WAITLISTED,
            OutcomeKind.CANCELLED,
        )


@dataclass(frozen=True)
class Booked(Outcome):
    """Direct registration succeeded."""

    kind: OutcomeKind = field(default=OutcomeKind.BOOKED, init=False)


@dataclass(frozen=True)
class Waitlisted(Outcome):
    """Joined the waiting list."""

    kind: OutcomeKind = field(default=OutcomeKind.WAITLISTED, init=False)


@dataclass(frozen=True)
class AlreadyEnrolled(Outcome):
    kind: OutcomeKind = field(default=OutcomeKind.ALREADY_ENROLLED, init=False)


@dataclass(frozen=True)
class AlreadyWaitlisted(Outcome):
    kind: OutcomeKind = field(default=OutcomeKind.ALREADY_WAITLISTED, init=False)


@dataclass(frozen=True)
class Full(Outcome):
    """
    Registration refused because the class has no free spots.

    The caller decides whether to fall back to the waitlist.
    """

    kind: OutcomeKind = field(default=OutcomeKind.FULL, init=False)


@dataclass(frozen=True)
class WaitlistFull(Outcome):
    """
    The waiting list itself is full.

    Can persist for hours; retried every tick with throttled logging.
    """

    kind: OutcomeKind = field(default=OutcomeKind.WAITLIST_FULL, init=False)


@dataclass(frozen=True)
class WaitlistUnavailable(Outcome):
    """Class is full and has no waiting list (or it is disabled)."""

    kind: OutcomeKind = field(default=OutcomeKind.WAITLIST_UNAVAILABLE, init=False)


@dataclass(frozen=True)
class GatewayError(Outcome):
    """
    Transient failure: network, timeout, 5xx, or authentication.

    status_code is None for failures that never produced a response.
    """

    kind: OutcomeKind = field(default=OutcomeKind.ERROR, init=False)
    status_code: Optional[int] = None


@dataclass(frozen=True)
class Cancelled(Outcome):
    """Booking cancelled or waiting list left."""

    kind: OutcomeKind = field(default=OutcomeKind.CANCELLED, init=False)
