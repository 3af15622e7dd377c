"""
Tests for AttemptLedger.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from signup_bot.core import AttemptLedger, WAITLIST_FULL_REASON
from signup_bot.storage.models import AttemptOutcome, AttemptRecord


NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def record(outcome, occurrence_id="occ-1", reason=None, created_at=NOW, class_time=None):
    return AttemptRecord(
        occurrence_id=occurrence_id,
        outcome=outcome,
        reason=reason,
        created_at=created_at,
        class_time=class_time,
    )


@pytest.mark.asyncio
class TestTerminalState:

    async def test_empty_ledger(self, ledger):
        assert await ledger.has_succeeded("occ-1") is False
        assert await ledger.is_terminal("occ-1") is False

    async def test_failures_are_not_terminal(self, ledger):
        await ledger.record(record(AttemptOutcome.FAILED, reason="Class full"))
        assert await ledger.is_terminal("occ-1") is False

    @pytest.mark.parametrize(
        "outcome", [AttemptOutcome.SUCCESS, AttemptOutcome.WAITLISTED]
    )
    async def test_success_outcomes(self, ledger, outcome):
        await ledger.record(record(outcome))

        assert await ledger.has_succeeded("occ-1") is True
        assert await ledger.is_terminal("occ-1") is True
        assert await ledger.has_succeeded("occ-2") is False

    async def test_cancellation_is_terminal_not_success(self, ledger):
        await ledger.record(record(AttemptOutcome.CANCELLED))

        assert await ledger.is_cancelled_by_user("occ-1") is True
        assert await ledger.has_succeeded("occ-1") is False
        assert await ledger.is_terminal("occ-1") is True

    async def test_recent_failures_newest_first(self, ledger):
        await ledger.record(record(AttemptOutcome.FAILED, reason="first"))
        await ledger.record(record(AttemptOutcome.SUCCESS))
        await ledger.record(record(AttemptOutcome.FAILED, reason="second"))

        failures = await ledger.recent_failures("occ-1")

        assert [f.reason for f in failures] == ["second", "first"]


@pytest.mark.asyncio
class TestFailureThrottling:

    async def test_ordinary_failures_always_logged(self, ledger):
        await ledger.record(record(AttemptOutcome.FAILED, reason="Class full"))
        assert await ledger.should_log_failure("occ-1", "Class full", NOW) is True

    async def test_first_waitlist_full_logged(self, ledger):
        assert await ledger.should_log_failure("occ-1", WAITLIST_FULL_REASON, NOW) is True

    async def test_waitlist_full_throttled_within_interval(self, ledger):
        await ledger.record(record(AttemptOutcome.FAILED, reason=WAITLIST_FULL_REASON))

        assert await ledger.should_log_failure(
            "occ-1", WAITLIST_FULL_REASON, NOW + timedelta(minutes=3)
        ) is False
        assert await ledger.should_log_failure(
            "occ-1", WAITLIST_FULL_REASON, NOW + timedelta(minutes=4)
        ) is True

    async def test_other_failure_does_not_reset_throttle(self, ledger):
        await ledger.record(record(AttemptOutcome.FAILED, reason=WAITLIST_FULL_REASON))
        await ledger.record(
            record(AttemptOutcome.FAILED, reason="Upstream error", created_at=NOW + timedelta(minutes=2))
        )

        assert await ledger.should_log_failure(
            "occ-1", WAITLIST_FULL_REASON, NOW + timedelta(minutes=5)
        ) is True

    async def test_custom_interval(self, log_repo):
        ledger = AttemptLedger(log_repo, waitlist_full_log_interval=timedelta(minutes=30))
        await ledger.record(record(AttemptOutcome.FAILED, reason=WAITLIST_FULL_REASON))

        assert await ledger.should_log_failure(
            "occ-1", WAITLIST_FULL_REASON, NOW + timedelta(minutes=10)
        ) is False


@pytest.mark.asyncio
class TestLocks:

    async def test_same_lock_per_occurrence(self, ledger):
        assert ledger.lock("occ-1") is ledger.lock("occ-1")
        assert ledger.lock("occ-1") is not ledger.lock("occ-2")

    async def test_lock_serializes_attempts(self, ledger):
        order = []

        async def attempt(name):
            async with ledger.lock("occ-1"):
                order.append(f"{name}-start")
                await asyncio.sleep(0)
                order.append(f"{name}-end")

        await asyncio.gather(attempt("a"), attempt("b"))

        assert order == ["a-start", "a-end", "b-start", "b-end"]

    async def test_release_idle_locks_keeps_held(self, ledger):
        held = ledger.lock("occ-1")
        ledger.lock("occ-2")

        async with held:
            assert ledger.release_idle_locks() == 1
            assert ledger.lock("occ-1") is held


@pytest.mark.asyncio
class TestPrune:

    async def test_prunes_only_old_failures(self, ledger, log_repo):
        old_class = NOW - timedelta(days=40)
        await ledger.record(record(AttemptOutcome.FAILED, "old", class_time=old_class))
        await ledger.record(record(AttemptOutcome.SUCCESS, "old-ok", class_time=old_class))
        await ledger.record(record(AttemptOutcome.FAILED, "recent", class_time=NOW - timedelta(days=1)))

        removed = await ledger.prune(NOW, timedelta(days=30))

        assert removed == 1
        assert [r.occurrence_id for r in log_repo.records] == ["old-ok", "recent"]

    async def test_disabled_prune(self, ledger, log_repo):
        await ledger.record(record(AttemptOutcome.FAILED, class_time=NOW - timedelta(days=400)))

        assert await ledger.prune(NOW, None) == 0
        assert len(log_repo.records) == 1
