"""
Storage layer test fixtures.

Repository tests run against a mocked Database so they exercise the
SQL parameter plumbing and the row-to-model conversion without needing
a live PostgreSQL instance.
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from signup_bot.storage.models import AttemptOutcome, AttemptRecord, TrackedPattern
from signup_bot.storage.repositories import PatternRepository, SignupLogRepository


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def mock_db():
    """Mock database for unit tests."""
    db = AsyncMock()
    db.execute = AsyncMock(return_value="DELETE 0")
    db.fetch = AsyncMock(return_value=[])
    db.fetchrow = AsyncMock(return_value=None)
    db.fetchval = AsyncMock(return_value=None)
    return db


@pytest.fixture
def pattern_repo(mock_db) -> PatternRepository:
    return PatternRepository(mock_db)


@pytest.fixture
def log_repo(mock_db) -> SignupLogRepository:
    return SignupLogRepository(mock_db)


# =============================================================================
# Sample Data Fixtures
# =============================================================================


@pytest.fixture
def sample_pattern() -> TrackedPattern:
    return TrackedPattern(
        activity_id="svc-101",
        activity_name="Cycle",
        instructor_id="tr-7",
        instructor_name="Dana",
        location_id="loc-3",
        location_name="Downtown",
        day_of_week="Tuesday",
        start_time="18:00",
        match_instructor=True,
        auto_signup_enabled=True,
    )


@pytest.fixture
def pattern_row(sample_pattern: TrackedPattern) -> dict:
    """Dict shaped like an asyncpg Record for tracked_patterns."""
    row = sample_pattern.model_dump()
    row["id"] = 1
    row["created_at"] = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
    return row


@pytest.fixture
def sample_record() -> AttemptRecord:
    return AttemptRecord(
        occurrence_id="occ-555",
        pattern_id=1,
        outcome=AttemptOutcome.SUCCESS,
        reason="booked",
        activity_name="Cycle",
        instructor_name="Dana",
        location_name="Downtown",
        class_time=datetime(2026, 10, 20, 22, 0, tzinfo=timezone.utc),
        created_at=datetime(2026, 10, 18, 22, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def record_row(sample_record: AttemptRecord) -> dict:
    """Dict shaped like an asyncpg Record for signup_logs."""
    row = sample_record.model_dump()
    row["id"] = 42
    row["outcome"] = sample_record.outcome.value
    return row
