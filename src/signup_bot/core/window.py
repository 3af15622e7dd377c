"""
Signup window calculator.

Decides when an attempt for an occurrence may start:

    effective_lead = min(user_lead, platform_lead)  if platform_lead > 0
                   = user_lead                      otherwise
    opens_at       = start - effective_lead hours
    is_open        = opens_at <= now < start

The platform lead is how far ahead the platform accepts bookings. The engine
waits for the user's preferred lead, but never past the point the platform
itself opens booking.

Also hosts the cheap local estimate the fetch cache uses to decide whether a
window is about to open, without calling upstream.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta, tzinfo
from typing import TYPE_CHECKING, Optional

from dateutil import tz as dateutil_tz

from .matcher import PatternConfigError, build_rule

if TYPE_CHECKING:
    from signup_bot.gateway.models import Occurrence
    from signup_bot.storage.models import TrackedPattern


@dataclass(frozen=True)
class SignupWindow:
    """Result of compute_window for one (pattern, occurrence) pair."""

    opens_at: datetime
    closes_at: datetime  # the occurrence start
    is_open: bool
    has_passed: bool
    effective_lead_hours: int


def effective_lead_hours(signup_lead_hours: int, platform_lead_hours: int) -> int:
    if platform_lead_hours > 0:
        return min(signup_lead_hours, platform_lead_hours)
    return signup_lead_hours


def _require_aware(now: datetime) -> None:
    if now.tzinfo is None or now.utcoffset() is None:
        raise ValueError("now must be timezone-aware")


def compute_window(
    pattern: "TrackedPattern",
    occurrence: "Occurrence",
    now: datetime,
) -> SignupWindow:
    """
    Compute the signup window of an occurrence for a pattern.

    Pure and deterministic.

    Raises:
        PatternConfigError: If the pattern's lead hours are negative.
        ValueError: If ``now`` is naive.
    """
    _require_aware(now)
    if pattern.signup_lead_hours is None or pattern.signup_lead_hours < 0:
        raise PatternConfigError(
            pattern.id, f"signup lead hours must be >= 0, got {pattern.signup_lead_hours}"
        )

    lead = effective_lead_hours(pattern.signup_lead_hours, occurrence.booking_lead_hours)
    start = occurrence.start_time
    opens_at = start - timedelta(hours=lead)

    return SignupWindow(
        opens_at=opens_at,
        closes_at=start,
        is_open=opens_at <= now < start,
        has_passed=now >= start,
        effective_lead_hours=lead,
    )


def estimate_next_occurrence(
    pattern: "TrackedPattern",
    now: datetime,
    venue_tz: tzinfo,
) -> Optional[datetime]:
    """
    Next local weekday/time instant of the pattern strictly after ``now``.

    Returns None for malformed patterns; the scheduler reports those when
    it matches them.
    """
    _require_aware(now)
    try:
        rule = build_rule(pattern)
    except PatternConfigError:
        return None

    target = time(rule.minute_of_day // 60, rule.minute_of_day % 60)
    local_now = now.astimezone(venue_tz)

    for offset in range(8):
        day = local_now.date() + timedelta(days=offset)
        if day.weekday() != rule.weekday:
            continue
        # A wall-clock time inside a DST gap is shifted forward
        candidate = dateutil_tz.resolve_imaginary(
            datetime.combine(day, target, tzinfo=venue_tz)
        )
        if candidate > now:
            return candidate

    return None


def minutes_until_estimated_window(
    pattern: "TrackedPattern",
    now: datetime,
    venue_tz: tzinfo,
) -> Optional[float]:
    """
    Minutes until the estimated signup window of the next occurrence opens.

    Negative when the window is already open. Uses the user's lead hours:
    the platform can only shorten the lead, so this is the earliest the
    window can open.
    """
    next_start = estimate_next_occurrence(pattern, now, venue_tz)
    if next_start is None or pattern.signup_lead_hours is None:
        return None

    opens_at = next_start - timedelta(hours=max(0, pattern.signup_lead_hours))
    return (opens_at - now).total_seconds() / 60
