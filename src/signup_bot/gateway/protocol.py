"""
Booking gateway protocol.

The scheduler only talks to the upstream platform through this interface.
Reads raise ``GatewayAPIError`` on failure; writes never raise for upstream
problems and return an ``Outcome`` instead.
"""
from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from .models import Occurrence, OccurrenceFilter, Outcome


@runtime_checkable
class BookingGateway(Protocol):
    """
    Protocol the upstream booking client implements.

    Example implementation:
        class FakeGateway:
            async def fetch_occurrences(self, occurrence_filter):
                return [Occurrence(id="1", activity_id="A", start_time=...)]

            async def fetch_concurrency_token(self, occurrence_id):
                return 7

            async def register(self, occurrence_id, token):
                return Booked()
            ...
    """

    async def fetch_occurrences(
        self, occurrence_filter: OccurrenceFilter
    ) -> list[Occurrence]:
        """
        List occurrences in the filter's range.

        Raises:
            GatewayAPIError: When the listing cannot be fetched.
        """
        ...

    async def fetch_bookings(
        self, occurrence_filter: OccurrenceFilter
    ) -> list[Occurrence]:
        """
        List the member's own bookings and waitlist places in the filter's range.

        Raises:
            GatewayAPIError: When the bookings cannot be fetched.
        """
        ...

    async def fetch_concurrency_token(self, occurrence_id: str) -> Optional[int]:
        """
        Read the current lock version of one occurrence.

        Returns None when the platform does not expose one. Never cached.

        Raises:
            GatewayAPIError: When the occurrence details cannot be fetched.
        """
        ...

    async def register(self, occurrence_id: str, token: Optional[int]) -> Outcome:
        """Book the occurrence directly. Returns ``Full`` when no spots remain."""
        ...

    async def join_waitlist(self, occurrence_id: str) -> Outcome:
        ...

    async def cancel(self, occurrence_id: str) -> Outcome:
        ...

    async def leave_waitlist(self, occurrence_id: str) -> Outcome:
        ...
