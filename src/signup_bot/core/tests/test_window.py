"""
Tests for the signup window calculator and the local window estimate.
"""
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from signup_bot.core import (
    PatternConfigError,
    compute_window,
    effective_lead_hours,
    estimate_next_occurrence,
    minutes_until_estimated_window,
)


class TestEffectiveLead:

    def test_user_lead_shorter_than_platform(self):
        assert effective_lead_hours(46, 48) == 46

    def test_platform_caps_user_lead(self):
        assert effective_lead_hours(72, 48) == 48

    def test_unrestricted_platform(self):
        assert effective_lead_hours(46, 0) == 46
        assert effective_lead_hours(0, 0) == 0


class TestComputeWindow:

    def test_opens_at_user_lead(self, pattern, occurrence, class_start):
        window = compute_window(pattern, occurrence, class_start - timedelta(hours=47))

        assert window.opens_at == class_start - timedelta(hours=46)
        assert window.closes_at == class_start
        assert window.effective_lead_hours == 46
        assert window.is_open is False
        assert window.has_passed is False

    def test_open_exactly_at_opens_at(self, pattern, occurrence, class_start):
        window = compute_window(pattern, occurrence, class_start - timedelta(hours=46))
        assert window.is_open is True

    def test_closed_at_start(self, pattern, occurrence, class_start):
        window = compute_window(pattern, occurrence, class_start)
        assert window.is_open is False
        assert window.has_passed is True

    def test_open_until_just_before_start(self, pattern, occurrence, class_start):
        window = compute_window(pattern, occurrence, class_start - timedelta(seconds=1))
        assert window.is_open is True

    def test_platform_restriction_caps_lead(self, pattern, occurrence, class_start):
        eager = pattern.model_copy(update={"signup_lead_hours": 100})
        window = compute_window(eager, occurrence, class_start - timedelta(hours=60))

        assert window.effective_lead_hours == 48
        assert window.is_open is False

    def test_zero_lead_means_never_open(self, pattern, occurrence, class_start):
        never = pattern.model_copy(update={"signup_lead_hours": 0})
        window = compute_window(never, occurrence, class_start - timedelta(minutes=1))
        assert window.is_open is False

    def test_unrestricted_platform_uses_user_lead(self, pattern, occurrence, class_start):
        window = compute_window(
            pattern, replace(occurrence, booking_lead_hours=0), class_start - timedelta(hours=45)
        )
        assert window.effective_lead_hours == 46
        assert window.is_open is True

    def test_negative_lead_is_config_error(self, pattern, occurrence, class_start):
        with pytest.raises(PatternConfigError):
            compute_window(
                pattern.model_copy(update={"signup_lead_hours": -1}), occurrence, class_start
            )

    def test_naive_now_rejected(self, pattern, occurrence, class_start):
        with pytest.raises(ValueError):
            compute_window(pattern, occurrence, class_start.replace(tzinfo=None))


class TestEstimate:

    def test_next_monday_local_time(self, pattern, venue_tz):
        # Sunday 2026-10-18 12:00 UTC
        now = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)

        estimate = estimate_next_occurrence(pattern, now, venue_tz)

        assert estimate == datetime(2026, 10, 19, 22, 0, tzinfo=timezone.utc)

    def test_strictly_after_now(self, pattern, venue_tz, class_start):
        estimate = estimate_next_occurrence(pattern, class_start, venue_tz)
        assert estimate == class_start + timedelta(days=7)

    def test_across_dst_change(self, pattern, venue_tz):
        now = datetime(2026, 10, 27, 12, 0, tzinfo=timezone.utc)

        estimate = estimate_next_occurrence(pattern, now, venue_tz)

        # Monday 2026-11-02 18:00 EST
        assert estimate == datetime(2026, 11, 2, 23, 0, tzinfo=timezone.utc)

    def test_malformed_pattern_returns_none(self, pattern, venue_tz, class_start):
        broken = pattern.model_copy(update={"start_time": "late"})
        assert estimate_next_occurrence(broken, class_start, venue_tz) is None
        assert minutes_until_estimated_window(broken, class_start, venue_tz) is None

    def test_minutes_until_window(self, pattern, venue_tz, class_start):
        now = class_start - timedelta(hours=47)
        assert minutes_until_estimated_window(pattern, now, venue_tz) == pytest.approx(60)

    def test_minutes_negative_when_open(self, pattern, venue_tz, window_open_now):
        assert minutes_until_estimated_window(pattern, window_open_now, venue_tz) < 0
