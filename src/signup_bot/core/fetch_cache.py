"""
Fetch cache for the upstream schedule listing.

Keeps one immutable snapshot of the listing. Whether a tick may reuse it is
decided in exactly one place, ``refresh_decision``:

    - no snapshot yet                          -> refresh
    - a pattern's window opens within margin   -> refresh (already-open counts)
    - snapshot older than the TTL              -> refresh
    - otherwise                                -> serve the snapshot

Refreshes build a new snapshot and swap it in whole, so readers never see a
half-updated listing. Concurrency tokens in the listing are never used for
writes; the scheduler re-reads them.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import TYPE_CHECKING, Iterable, Optional

from signup_bot.gateway.client import GatewayAPIError
from signup_bot.gateway.models import Occurrence, OccurrenceFilter

from .window import minutes_until_estimated_window

if TYPE_CHECKING:
    from signup_bot.gateway.protocol import BookingGateway
    from signup_bot.storage.models import TrackedPattern

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheSnapshot:
    """One complete schedule listing."""

    occurrences: tuple[Occurrence, ...]
    fetched_at: datetime
    occurrence_filter: OccurrenceFilter

    def age(self, now: datetime) -> timedelta:
        return now - self.fetched_at

    def covers(self, occurrence_filter: OccurrenceFilter) -> bool:
        """Whether this snapshot's range and locations include the filter's."""
        mine = self.occurrence_filter
        return (
            mine.since <= occurrence_filter.since
            and mine.till >= occurrence_filter.till
            and set(mine.location_ids) == set(occurrence_filter.location_ids)
        )


@dataclass(frozen=True)
class RefreshDecision:
    """Outcome of refresh_decision."""

    should_refresh: bool
    reason: str  # "empty", "window_imminent", "stale" or "fresh"
    imminent_pattern_ids: tuple = field(default=())


@dataclass
class FetchCacheStats:
    """Runtime statistics for the cache."""

    refreshes: int = 0
    hits: int = 0
    failures: int = 0


class FetchCache:
    """
    Throttles schedule listing calls.

    Usage:
        cache = FetchCache(gateway, venue_tz)

        decision = cache.refresh_decision(patterns, now)
        occurrences = await cache.get_occurrences(
            force_refresh=decision.should_refresh, now=now
        )
    """

    def __init__(
        self,
        gateway: "BookingGateway",
        venue_tz: tzinfo,
        ttl: timedelta = timedelta(minutes=10),
        window_margin: timedelta = timedelta(minutes=15),
        days_ahead: int = 7,
        location_ids: Iterable[str] = (),
        call_timeout: float = 30.0,
    ) -> None:
        self._gateway = gateway
        self._venue_tz = venue_tz
        self._ttl = ttl
        self._window_margin = window_margin
        self._days_ahead = days_ahead
        self._location_ids = tuple(str(i) for i in location_ids)
        self._call_timeout = call_timeout

        self._snapshot: Optional[CacheSnapshot] = None
        self._refresh_lock = asyncio.Lock()
        self.stats = FetchCacheStats()

    @property
    def snapshot(self) -> Optional[CacheSnapshot]:
        return self._snapshot

    def default_filter(self, now: datetime) -> OccurrenceFilter:
        return OccurrenceFilter(
            since=now,
            till=now + timedelta(days=self._days_ahead),
            location_ids=self._location_ids,
        )

    def refresh_decision(
        self,
        patterns: Iterable["TrackedPattern"],
        now: datetime,
    ) -> RefreshDecision:
        """
        Decide whether the next read must go upstream.

        Uses only local day-of-week/time arithmetic; never calls upstream.
        """
        snapshot = self._snapshot
        if snapshot is None:
            return RefreshDecision(True, "empty")

        margin_minutes = self._window_margin.total_seconds() / 60
        imminent = []
        for pattern in patterns:
            minutes = minutes_until_estimated_window(pattern, now, self._venue_tz)
            if minutes is not None and minutes <= margin_minutes:
                imminent.append(pattern.id)

        if imminent:
            return RefreshDecision(True, "window_imminent", tuple(imminent))

        if snapshot.age(now) >= self._ttl:
            return RefreshDecision(True, "stale")

        return RefreshDecision(False, "fresh")

    async def get_occurrences(
        self,
        occurrence_filter: Optional[OccurrenceFilter] = None,
        force_refresh: bool = False,
        now: Optional[datetime] = None,
    ) -> tuple[Occurrence, ...]:
        """
        Return the listing, from the snapshot when allowed.

        With no filter the cache's default range (now .. now + days_ahead)
        is used and any fresh snapshot is served.

        Raises:
            GatewayAPIError: When a refresh is needed and the fetch fails.
                The previous snapshot is kept.
        """
        now = now or datetime.now(timezone.utc)

        snapshot = self._snapshot
        if not force_refresh and snapshot is not None and snapshot.age(now) < self._ttl:
            if occurrence_filter is None or snapshot.covers(occurrence_filter):
                self.stats.hits += 1
                return snapshot.occurrences

        return (await self._refresh(occurrence_filter or self.default_filter(now), now)).occurrences

    async def _refresh(self, occurrence_filter: OccurrenceFilter, now: datetime) -> CacheSnapshot:
        async with self._refresh_lock:
            try:
                occurrences = await asyncio.wait_for(
                    self._gateway.fetch_occurrences(occurrence_filter),
                    timeout=self._call_timeout,
                )
            except asyncio.TimeoutError as e:
                self.stats.failures += 1
                raise GatewayAPIError("Schedule fetch timed out") from e
            except GatewayAPIError:
                self.stats.failures += 1
                raise

            snapshot = CacheSnapshot(
                occurrences=tuple(occurrences),
                fetched_at=now,
                occurrence_filter=occurrence_filter,
            )
            self._snapshot = snapshot
            self.stats.refreshes += 1
            logger.info(f"Schedule refreshed: {len(snapshot.occurrences)} occurrences")
            return snapshot

    def invalidate(self) -> None:
        """Drop the snapshot so the next read goes upstream."""
        self._snapshot = None
