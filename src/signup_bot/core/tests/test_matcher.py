"""
Tests for the pattern matcher.
"""
import random
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from signup_bot.core import PatternConfigError, match, sort_soonest_first
from signup_bot.core.matcher import build_rule, parse_start_time, parse_weekday
from signup_bot.gateway.models import Occurrence


def occurrence_at(start, occurrence_id="occ"):
    return Occurrence(id=occurrence_id, activity_id="A", start_time=start)


class TestParsing:

    def test_parse_start_time(self):
        assert parse_start_time("18:00") == 18 * 60
        assert parse_start_time("06:05:00") == 6 * 60 + 5
        assert parse_start_time(" 7:30 ") == 7 * 60 + 30

    @pytest.mark.parametrize("value", ["", "18", "25:00", "12:60", "noon"])
    def test_parse_start_time_rejects(self, value):
        with pytest.raises(ValueError):
            parse_start_time(value)

    def test_parse_weekday_is_case_insensitive(self):
        assert parse_weekday("monday") == 0
        assert parse_weekday("SUNDAY") == 6

    def test_parse_weekday_rejects_abbreviations(self):
        with pytest.raises(ValueError):
            parse_weekday("Mon")


class TestBuildRule:

    def test_exact_time_zeroes_tolerance(self, pattern):
        rule = build_rule(pattern.model_copy(update={"match_exact_time": True}))
        assert rule.tolerance_minutes == 0

    def test_instructor_ignored_unless_matching(self, pattern):
        rule = build_rule(pattern.model_copy(update={"instructor_id": "T9"}))
        assert rule.instructor_id is None

    def test_match_instructor_without_id_is_any_instructor(self, pattern):
        rule = build_rule(
            pattern.model_copy(update={"match_instructor": True, "instructor_id": None})
        )
        assert rule.instructor_id is None

    @pytest.mark.parametrize(
        "update",
        [
            {"activity_id": ""},
            {"day_of_week": "Funday"},
            {"start_time": "6pm"},
            {"time_tolerance_minutes": -5},
        ],
    )
    def test_malformed_patterns_raise(self, pattern, update):
        with pytest.raises(PatternConfigError) as exc_info:
            build_rule(pattern.model_copy(update=update))
        assert exc_info.value.pattern_id == 1
        assert "Pattern 1" in str(exc_info.value)


class TestMatch:

    def test_matches_activity_weekday_and_time(self, pattern, occurrence, venue_tz):
        assert match(pattern, [occurrence], venue_tz) == [occurrence]

    def test_other_activity_never_matches(self, pattern, occurrence, venue_tz):
        other = replace(occurrence, activity_id="B")
        assert match(pattern, [other], venue_tz) == []

    def test_tolerance_boundary(self, pattern, occurrence, venue_tz):
        at_15 = replace(occurrence, id="15", start_time=occurrence.start_time + timedelta(minutes=15))
        at_16 = replace(occurrence, id="16", start_time=occurrence.start_time + timedelta(minutes=16))
        early_15 = replace(occurrence, id="-15", start_time=occurrence.start_time - timedelta(minutes=15))

        result = match(pattern, [at_15, at_16, early_15], venue_tz)

        assert [o.id for o in result] == ["15", "-15"]

    def test_exact_time(self, pattern, occurrence, venue_tz):
        exact = pattern.model_copy(update={"match_exact_time": True})
        late = replace(occurrence, id="late", start_time=occurrence.start_time + timedelta(minutes=1))

        assert match(exact, [occurrence, late], venue_tz) == [occurrence]

    def test_location_filter(self, pattern, occurrence, venue_tz):
        pinned = pattern.model_copy(update={"location_id": "L2"})
        elsewhere = replace(occurrence, id="elsewhere", location_id="L2")

        assert match(pinned, [occurrence, elsewhere], venue_tz) == [elsewhere]
        # No location on the pattern means any location
        assert len(match(pattern, [occurrence, elsewhere], venue_tz)) == 2

    def test_instructor_filter(self, pattern, occurrence, venue_tz):
        by_instructor = pattern.model_copy(
            update={"match_instructor": True, "instructor_id": "T2"}
        )
        substitute = replace(occurrence, id="sub", instructor_id="T2")

        assert match(by_instructor, [occurrence, substitute], venue_tz) == [substitute]

    def test_instructor_flag_without_id_matches_anyone(self, pattern, occurrence, venue_tz):
        no_id = pattern.model_copy(update={"match_instructor": True, "instructor_id": None})
        substitute = replace(occurrence, id="sub", instructor_id="T2")

        assert match(no_id, [occurrence, substitute], venue_tz) == [occurrence, substitute]

    def test_weekday_is_read_in_venue_time(self, pattern, venue_tz):
        # Monday 22:30 in New York is already Tuesday in UTC
        late = pattern.model_copy(update={"start_time": "22:30"})
        occ = occurrence_at(datetime(2026, 10, 20, 2, 30, tzinfo=timezone.utc))

        assert match(late, [occ], venue_tz) == [occ]

    def test_same_local_time_across_dst_change(self, pattern, venue_tz):
        summer = occurrence_at(datetime(2026, 10, 26, 22, 0, tzinfo=timezone.utc), "edt")
        winter = occurrence_at(datetime(2026, 11, 2, 23, 0, tzinfo=timezone.utc), "est")
        wrong = occurrence_at(datetime(2026, 11, 2, 22, 0, tzinfo=timezone.utc), "utc-copy")

        result = match(pattern.model_copy(update={"match_exact_time": True}), [summer, winter, wrong], venue_tz)

        assert [o.id for o in result] == ["edt", "est"]

    def test_idempotent_and_order_independent(self, pattern, occurrence, venue_tz):
        occurrences = [
            replace(occurrence, id=str(i), start_time=occurrence.start_time + timedelta(minutes=i))
            for i in range(6)
        ] + [replace(occurrence, id="other", activity_id="B")]

        first = sort_soonest_first(match(pattern, occurrences, venue_tz))
        shuffled = list(occurrences)
        random.Random(3).shuffle(shuffled)
        second = sort_soonest_first(match(pattern, shuffled, venue_tz))

        assert first == second
        assert [o.id for o in first] == [str(i) for i in range(6)]

    def test_malformed_pattern_raises(self, pattern, occurrence, venue_tz):
        with pytest.raises(PatternConfigError):
            match(pattern.model_copy(update={"day_of_week": ""}), [occurrence], venue_tz)


def test_sort_soonest_first_breaks_ties_by_id(occurrence):
    b = replace(occurrence, id="b")
    a = replace(occurrence, id="a")
    later = replace(occurrence, id="0", start_time=occurrence.start_time + timedelta(hours=1))

    assert [o.id for o in sort_soonest_first([later, b, a])] == ["a", "b", "0"]
