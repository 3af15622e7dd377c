"""
Test fixtures for the booking gateway.

IMPORTANT: All upstream calls must be mocked.
Never hit the real booking platform in tests.
"""
from datetime import datetime, timedelta, timezone

import pytest

from signup_bot.gateway.client import FisikalClient, SessionContext
from signup_bot.gateway.models import Occurrence


@pytest.fixture
def now():
    return datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def client():
    """Client with a pre-built session so no login is attempted."""
    client = FisikalClient(
        email="member@example.com",
        password="secret",
        base_url="https://gym.example.com",
        retry_delay=0,
    )
    client._context = SessionContext(cookie="abc", csrf_token="csrf-123")
    return client


@pytest.fixture
def raw_occurrence():
    """Listing entry shaped like the platform's JSON."""
    return {
        "id": 98765,
        "occurs_at": "2026-10-20T22:00:00.000Z",
        "duration_in_minutes": 45,
        "service_id": 101,
        "service_title": "Cycle",
        "trainer_id": 7,
        "trainer_name": "Dana",
        "location_id": 3,
        "location_name": "Downtown",
        "service_group_size": 20,
        "attended_clients_count": 20,
        "is_joined": False,
        "is_waited": False,
        "full_group": True,
        "waiting_list_enabled": True,
        "restrict_to_book_in_advance_time_in_hours": 48,
        "lock_version": 12,
        "status": "Scheduled",
    }


@pytest.fixture
def occurrence(now):
    """Open occurrence starting in two days."""
    return Occurrence(
        id="98765",
        activity_id="101",
        activity_name="Cycle",
        start_time=now + timedelta(days=2),
        duration_minutes=45,
        capacity=20,
        attended_count=5,
        waitlist_enabled=True,
        booking_lead_hours=48,
    )
