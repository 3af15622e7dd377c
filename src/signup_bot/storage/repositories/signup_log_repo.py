"""
Signup log repository (the log store behind the attempt ledger).

Rows are only ever appended. The one exception is ``prune_failures``,
which removes old ``failed`` rows for classes that have already happened;
terminal rows (success, waitlisted, cancelled) are never deleted.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from signup_bot.storage.models import AttemptOutcome, AttemptRecord
from signup_bot.storage.repositories.base import BaseRepository


class SignupLogRepository(BaseRepository[AttemptRecord]):
    """Repository for ``signup_logs``."""

    model_class = AttemptRecord

    async def append(self, record: AttemptRecord) -> AttemptRecord:
        """Append a record and return it with its id."""
        query = """
            INSERT INTO signup_logs
            (occurrence_id, pattern_id, outcome, reason, activity_name,
             instructor_name, location_name, class_time, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING *
        """
        row = await self.db.fetchrow(
            query,
            record.occurrence_id,
            record.pattern_id,
            record.outcome.value,
            record.reason,
            record.activity_name,
            record.instructor_name,
            record.location_name,
            record.class_time,
            record.created_at,
        )
        return self._record_to_model(row) if row else record

    async def has_outcome(
        self, occurrence_id: str, outcomes: tuple[AttemptOutcome, ...]
    ) -> bool:
        """Whether any row for the occurrence has one of the given outcomes."""
        query = """
            SELECT 1 FROM signup_logs
            WHERE occurrence_id = $1 AND outcome = ANY($2::text[])
            LIMIT 1
        """
        result = await self.db.fetchval(
            query, occurrence_id, [o.value for o in outcomes]
        )
        return result is not None

    async def get_by_occurrence(
        self,
        occurrence_id: str,
        outcome: Optional[AttemptOutcome] = None,
        limit: int = 50,
    ) -> list[AttemptRecord]:
        """Rows for an occurrence, newest first."""
        if outcome is not None:
            query = """
                SELECT * FROM signup_logs
                WHERE occurrence_id = $1 AND outcome = $2
                ORDER BY created_at DESC, id DESC
                LIMIT $3
            """
            records = await self.db.fetch(query, occurrence_id, outcome.value, limit)
        else:
            query = """
                SELECT * FROM signup_logs
                WHERE occurrence_id = $1
                ORDER BY created_at DESC, id DESC
                LIMIT $2
            """
            records = await self.db.fetch(query, occurrence_id, limit)
        return self._records_to_models(records)

    async def get_by_pattern(self, pattern_id: int, limit: int = 50) -> list[AttemptRecord]:
        """Rows written on behalf of a pattern, newest first."""
        query = """
            SELECT * FROM signup_logs
            WHERE pattern_id = $1
            ORDER BY created_at DESC, id DESC
            LIMIT $2
        """
        records = await self.db.fetch(query, pattern_id, limit)
        return self._records_to_models(records)

    async def get_recent(self, limit: int = 50) -> list[AttemptRecord]:
        """Most recent rows across all occurrences."""
        query = """
            SELECT * FROM signup_logs
            ORDER BY created_at DESC, id DESC
            LIMIT $1
        """
        records = await self.db.fetch(query, limit)
        return self._records_to_models(records)

    async def prune_failures(self, class_time_before: datetime) -> int:
        """
        Delete ``failed`` rows for classes that started before the cut-off.

        Returns the number of rows removed.
        """
        query = """
            DELETE FROM signup_logs
            WHERE outcome = 'failed'
              AND class_time IS NOT NULL
              AND class_time < $1
        """
        result = await self.db.execute(query, class_time_before)
        # asyncpg status string: "DELETE <n>"
        try:
            return int(result.split()[-1])
        except (AttributeError, ValueError, IndexError):
            return 0
