"""
Attempt ledger.

Append-only history of signup attempts per occurrence, kept in the
``signup_logs`` table. The scheduler consults it before every attempt:

    - a success/waitlisted row means the member already has a place
    - a cancelled row means the member backed out by hand; never re-book
    - failed rows are informational; failures are retried every tick

The one throttled failure is "waiting list full", which can persist for
hours. It is still retried every tick, but a duplicate row is written at
most once per ``waitlist_full_log_interval``.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from signup_bot.storage.models import AttemptOutcome, AttemptRecord

if TYPE_CHECKING:
    from signup_bot.storage.repositories import SignupLogRepository

logger = logging.getLogger(__name__)

WAITLIST_FULL_REASON = "Waitlist full - will retry"

SUCCESS_OUTCOMES = (AttemptOutcome.SUCCESS, AttemptOutcome.WAITLISTED)
TERMINAL_OUTCOMES = (
    AttemptOutcome.SUCCESS,
    AttemptOutcome.WAITLISTED,
    AttemptOutcome.CANCELLED,
)


class AttemptLedger:
    """
    Idempotency and audit trail for signup attempts.

    Usage:
        ledger = AttemptLedger(SignupLogRepository(db))

        async with ledger.lock(occurrence.id):
            if await ledger.is_terminal(occurrence.id):
                return
            outcome = await gateway.register(...)
            await ledger.record(AttemptRecord(...))
    """

    def __init__(
        self,
        repo: "SignupLogRepository",
        waitlist_full_log_interval: timedelta = timedelta(minutes=4),
    ) -> None:
        self._repo = repo
        self._waitlist_full_log_interval = waitlist_full_log_interval
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, occurrence_id: str) -> asyncio.Lock:
        """
        Per-occurrence lock.

        Hold it across check, attempt and record so two tasks never register
        the same occurrence concurrently.
        """
        lock = self._locks.get(occurrence_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[occurrence_id] = lock
        return lock

    def release_idle_locks(self) -> int:
        """Drop locks nobody holds. Returns how many were dropped."""
        idle = [key for key, lock in self._locks.items() if not lock.locked()]
        for key in idle:
            del self._locks[key]
        return len(idle)

    async def has_succeeded(self, occurrence_id: str) -> bool:
        return await self._repo.has_outcome(occurrence_id, SUCCESS_OUTCOMES)

    async def is_cancelled_by_user(self, occurrence_id: str) -> bool:
        return await self._repo.has_outcome(occurrence_id, (AttemptOutcome.CANCELLED,))

    async def is_terminal(self, occurrence_id: str) -> bool:
        """has_succeeded or is_cancelled_by_user, in a single query."""
        return await self._repo.has_outcome(occurrence_id, TERMINAL_OUTCOMES)

    async def recent_failures(
        self, occurrence_id: str, limit: int = 10
    ) -> list[AttemptRecord]:
        """Failed attempts for the occurrence, newest first."""
        return await self._repo.get_by_occurrence(
            occurrence_id, AttemptOutcome.FAILED, limit=limit
        )

    async def should_log_failure(
        self, occurrence_id: str, reason: str, now: datetime
    ) -> bool:
        """
        Whether a failed attempt with this reason should be written.

        Only the waiting-list-full reason is throttled.
        """
        if reason != WAITLIST_FULL_REASON:
            return True

        failures = await self.recent_failures(occurrence_id, limit=5)
        last_same = next((f for f in failures if f.reason == reason), None)
        if last_same is None:
            return True

        return now - last_same.created_at >= self._waitlist_full_log_interval

    async def record(self, record: AttemptRecord) -> AttemptRecord:
        """Append one attempt record."""
        stored = await self._repo.append(record)
        logger.debug(
            f"Ledger: {record.outcome.value} for occurrence {record.occurrence_id}"
            f" ({record.reason or 'no reason'})"
        )
        return stored

    async def prune(self, now: datetime, older_than: Optional[timedelta]) -> int:
        """
        Delete old failed records for classes that have already happened.

        Terminal records are never pruned, so booking behaviour is unchanged.
        Does nothing when ``older_than`` is None.
        """
        if older_than is None:
            return 0
        removed = await self._repo.prune_failures(now - older_than)
        if removed:
            logger.info(f"Pruned {removed} failed attempt records")
        return removed
