"""
Pattern matcher.

Pure functions that decide which upstream occurrences satisfy a tracked
pattern. Nothing here performs I/O, so the CLI preview uses it directly.

All day and time comparisons happen in one venue time zone. An occurrence's
UTC start is converted to venue local time before its weekday and
time-of-day are read, so a Monday 18:00 class stays a Monday 18:00 class on
both sides of a daylight-saving change.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import TYPE_CHECKING, Iterable, Optional

from signup_bot.storage.models import DAYS_OF_WEEK

if TYPE_CHECKING:
    from signup_bot.gateway.models import Occurrence
    from signup_bot.storage.models import TrackedPattern


class PatternConfigError(ValueError):
    """A tracked pattern row cannot be evaluated."""

    def __init__(self, pattern_id, message: str):
        super().__init__(f"Pattern {pattern_id}: {message}")
        self.pattern_id = pattern_id


@dataclass(frozen=True)
class PatternRule:
    """Validated, comparison-ready form of a TrackedPattern's selectors."""

    activity_id: str
    location_id: Optional[str]
    weekday: int  # Monday == 0
    minute_of_day: int
    instructor_id: Optional[str]
    tolerance_minutes: int  # 0 when exact time is required


def parse_start_time(value: str) -> int:
    """Parse "HH:MM" (seconds are ignored) into minutes past midnight."""
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"expected HH:MM, got {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"time out of range: {value!r}")
    return hour * 60 + minute


def parse_weekday(value: str) -> int:
    normalized = value.strip().capitalize()
    if normalized not in DAYS_OF_WEEK:
        raise ValueError(f"unknown day of week {value!r}")
    return DAYS_OF_WEEK.index(normalized)


def build_rule(pattern: "TrackedPattern") -> PatternRule:
    """
    Validate a pattern and convert it to a PatternRule.

    Raises:
        PatternConfigError: If any selector is missing or malformed.
    """
    if not pattern.activity_id:
        raise PatternConfigError(pattern.id, "activity_id is required")

    try:
        weekday = parse_weekday(pattern.day_of_week or "")
        minute_of_day = parse_start_time(pattern.start_time or "")
    except ValueError as e:
        raise PatternConfigError(pattern.id, str(e)) from e

    if pattern.match_exact_time:
        tolerance = 0
    else:
        tolerance = pattern.time_tolerance_minutes
        if tolerance is None or tolerance < 0:
            raise PatternConfigError(
                pattern.id, f"time tolerance must be >= 0, got {tolerance}"
            )

    # Without an instructor id any instructor matches
    instructor_id = None
    if pattern.match_instructor and pattern.instructor_id:
        instructor_id = str(pattern.instructor_id)

    return PatternRule(
        activity_id=str(pattern.activity_id),
        location_id=str(pattern.location_id) if pattern.location_id else None,
        weekday=weekday,
        minute_of_day=minute_of_day,
        instructor_id=instructor_id,
        tolerance_minutes=tolerance,
    )


def local_minute_of_day(moment: datetime, tz: tzinfo) -> tuple[int, int]:
    """Return (weekday, minutes past midnight) of an aware instant in ``tz``."""
    local = moment.astimezone(tz)
    return local.weekday(), local.hour * 60 + local.minute


def rule_matches(rule: PatternRule, occurrence: "Occurrence", tz: tzinfo) -> bool:
    if occurrence.activity_id != rule.activity_id:
        return False

    if rule.location_id is not None and occurrence.location_id != rule.location_id:
        return False

    weekday, minute_of_day = local_minute_of_day(occurrence.start_time, tz)
    if weekday != rule.weekday:
        return False

    if rule.instructor_id is not None and occurrence.instructor_id != rule.instructor_id:
        return False

    return abs(minute_of_day - rule.minute_of_day) <= rule.tolerance_minutes


def match(
    pattern: "TrackedPattern",
    occurrences: Iterable["Occurrence"],
    tz: tzinfo,
) -> list["Occurrence"]:
    """
    Return the occurrences that satisfy the pattern.

    Every rule is a hard filter. Input order is preserved but callers must
    not rely on it; use ``sort_soonest_first`` when order matters.

    Raises:
        PatternConfigError: If the pattern is malformed.
    """
    rule = build_rule(pattern)
    return [o for o in occurrences if rule_matches(rule, o, tz)]


def sort_soonest_first(occurrences: Iterable["Occurrence"]) -> list["Occurrence"]:
    return sorted(occurrences, key=lambda o: (o.start_time, o.id))
