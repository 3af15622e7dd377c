"""
Core layer test fixtures.

Core tests verify orchestration logic, so the booking gateway is an
AsyncMock and the pattern/log stores are small in-memory fakes that keep
real ledger semantics.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from dateutil import tz as dateutil_tz

from signup_bot.core import (
    AttemptLedger,
    FetchCache,
    SchedulerConfig,
    SignupScheduler,
)
from signup_bot.gateway.models import Booked, Occurrence, Waitlisted
from signup_bot.storage.models import AttemptOutcome, AttemptRecord, TrackedPattern


VENUE_TZ = dateutil_tz.gettz("America/New_York")

# Monday 2026-10-19 18:00 EDT
MONDAY_1800 = datetime(2026, 10, 19, 22, 0, tzinfo=timezone.utc)


# =============================================================================
# In-memory stores
# =============================================================================


class InMemoryPatternRepository:
    def __init__(self, patterns=None):
        self.patterns = list(patterns or [])

    async def list_patterns(self):
        return list(self.patterns)


class InMemoryLogRepository:
    """Append-only list with the same query surface as SignupLogRepository."""

    def __init__(self):
        self.records: list[AttemptRecord] = []

    async def append(self, record):
        stored = record.model_copy(update={"id": len(self.records) + 1})
        self.records.append(stored)
        return stored

    async def has_outcome(self, occurrence_id, outcomes):
        return any(
            r.occurrence_id == occurrence_id and r.outcome in outcomes
            for r in self.records
        )

    async def get_by_occurrence(self, occurrence_id, outcome=None, limit=50):
        rows = [
            r for r in self.records
            if r.occurrence_id == occurrence_id and (outcome is None or r.outcome == outcome)
        ]
        return list(reversed(rows))[:limit]

    async def prune_failures(self, class_time_before):
        keep = [
            r for r in self.records
            if not (
                r.outcome == AttemptOutcome.FAILED
                and r.class_time is not None
                and r.class_time < class_time_before
            )
        ]
        removed = len(self.records) - len(keep)
        self.records = keep
        return removed

    def outcomes_for(self, occurrence_id):
        return [r.outcome for r in self.records if r.occurrence_id == occurrence_id]


# =============================================================================
# Time Fixtures
# =============================================================================


@pytest.fixture
def venue_tz():
    return VENUE_TZ


@pytest.fixture
def class_start():
    return MONDAY_1800


@pytest.fixture
def window_open_now(class_start):
    """40 hours before class: inside a 46 hour window."""
    return class_start - timedelta(hours=40)


# =============================================================================
# Model Fixtures
# =============================================================================


@pytest.fixture
def pattern():
    """Monday 18:00 activity A, any instructor, 46 hour lead."""
    return TrackedPattern(
        id=1,
        activity_id="A",
        activity_name="Cycle",
        day_of_week="Monday",
        start_time="18:00",
        match_instructor=False,
        match_exact_time=False,
        time_tolerance_minutes=15,
        auto_signup_enabled=True,
        signup_lead_hours=46,
    )


@pytest.fixture
def occurrence(class_start):
    return Occurrence(
        id="occ-1",
        activity_id="A",
        activity_name="Cycle",
        instructor_id="T1",
        instructor_name="Dana",
        location_id="L1",
        location_name="Downtown",
        start_time=class_start,
        duration_minutes=45,
        capacity=20,
        attended_count=10,
        waitlist_enabled=True,
        booking_lead_hours=48,
        lock_version=1,
    )


# =============================================================================
# Collaborator Fixtures
# =============================================================================


@pytest.fixture
def gateway(occurrence):
    """Gateway mock whose calls act as call-count spies."""
    gateway = AsyncMock()
    gateway.fetch_occurrences = AsyncMock(return_value=[occurrence])
    gateway.fetch_concurrency_token = AsyncMock(return_value=7)
    gateway.register = AsyncMock(return_value=Booked())
    gateway.join_waitlist = AsyncMock(return_value=Waitlisted())
    gateway.cancel = AsyncMock()
    gateway.leave_waitlist = AsyncMock()
    return gateway


@pytest.fixture
def pattern_repo(pattern):
    return InMemoryPatternRepository([pattern])


@pytest.fixture
def log_repo():
    return InMemoryLogRepository()


@pytest.fixture
def ledger(log_repo):
    return AttemptLedger(log_repo)


@pytest.fixture
def cache(gateway, venue_tz):
    return FetchCache(gateway, venue_tz)


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def scheduler_config():
    return SchedulerConfig(venue_timezone="America/New_York")


@pytest.fixture
def scheduler(scheduler_config, pattern_repo, ledger, gateway, cache, sleep):
    return SignupScheduler(
        config=scheduler_config,
        patterns=pattern_repo,
        ledger=ledger,
        gateway=gateway,
        cache=cache,
        sleep=sleep,
    )
