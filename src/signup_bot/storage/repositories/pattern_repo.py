"""
Tracked pattern repository (the pattern store).

Patterns are created and deleted by the member. The only mutations are
toggling auto-signup and editing the signup lead hours; the scheduler
itself only reads.
"""
from __future__ import annotations

from typing import Optional

from signup_bot.storage.models import TrackedPattern
from signup_bot.storage.repositories.base import BaseRepository


class PatternRepository(BaseRepository[TrackedPattern]):
    """Repository for ``tracked_patterns``."""

    model_class = TrackedPattern

    async def list_patterns(self) -> list[TrackedPattern]:
        """
        Return every tracked pattern, oldest first.

        Filtering to auto-signup-enabled patterns is the scheduler's job.
        """
        query = "SELECT * FROM tracked_patterns ORDER BY id"
        records = await self.db.fetch(query)
        return self._records_to_models(records)

    async def create(self, pattern: TrackedPattern) -> TrackedPattern:
        """Insert a new pattern and return it with its id."""
        query = """
            INSERT INTO tracked_patterns
            (activity_id, activity_name, instructor_id, instructor_name,
             location_id, location_name, day_of_week, start_time,
             match_instructor, match_exact_time, time_tolerance_minutes,
             auto_signup_enabled, signup_lead_hours)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
            RETURNING *
        """
        record = await self.db.fetchrow(
            query,
            pattern.activity_id,
            pattern.activity_name,
            pattern.instructor_id,
            pattern.instructor_name,
            pattern.location_id,
            pattern.location_name,
            pattern.day_of_week,
            pattern.start_time,
            pattern.match_instructor,
            pattern.match_exact_time,
            pattern.time_tolerance_minutes,
            pattern.auto_signup_enabled,
            pattern.signup_lead_hours,
        )
        return self._record_to_model(record) if record else pattern

    async def set_auto_signup(
        self, pattern_id: int, enabled: bool
    ) -> Optional[TrackedPattern]:
        """Enable or disable automatic signup. Returns None if not found."""
        query = """
            UPDATE tracked_patterns
            SET auto_signup_enabled = $2
            WHERE id = $1
            RETURNING *
        """
        record = await self.db.fetchrow(query, pattern_id, enabled)
        return self._record_to_model(record)

    async def set_signup_lead_hours(
        self, pattern_id: int, lead_hours: int
    ) -> Optional[TrackedPattern]:
        """Change how many hours before class the signup should be attempted."""
        if lead_hours < 0:
            raise ValueError(f"signup lead hours must be >= 0, got {lead_hours}")

        query = """
            UPDATE tracked_patterns
            SET signup_lead_hours = $2
            WHERE id = $1
            RETURNING *
        """
        record = await self.db.fetchrow(query, pattern_id, lead_hours)
        return self._record_to_model(record)

    async def delete(self, pattern_id: int) -> bool:
        """Delete a pattern. Returns True if a row was removed."""
        query = "DELETE FROM tracked_patterns WHERE id = $1"
        result = await self.db.execute(query, pattern_id)
        return result != "DELETE 0"
