"""
Booking Gateway - Access to the upstream booking platform.

Public API:
    BookingGateway - Protocol the scheduler depends on
    FisikalClient - aiohttp implementation for Fisikal-hosted schedules

    Models:
        Occurrence, OccurrenceStatus, OccurrenceFilter
        Outcome, OutcomeKind and its variants (Booked, Waitlisted,
        AlreadyEnrolled, AlreadyWaitlisted, Full, WaitlistFull,
        WaitlistUnavailable, GatewayError, Cancelled)

    Errors:
        GatewayAPIError, RateLimitError, AuthenticationError
"""
from .client import (
    AuthenticationError,
    FisikalClient,
    GatewayAPIError,
    RateLimitError,
    SessionContext,
)
from .models import (
    AlreadyEnrolled,
    AlreadyWaitlisted,
    Booked,
    Cancelled,
    Full,
    GatewayError,
    Occurrence,
    OccurrenceFilter,
    OccurrenceStatus,
    Outcome,
    OutcomeKind,
    WaitlistFull,
    Waitlisted,
    WaitlistUnavailable,
)
from .protocol import BookingGateway

__all__ = [
    # Protocol and client
    "BookingGateway",
    "FisikalClient",
    "SessionContext",
    # Errors
    "GatewayAPIError",
    "RateLimitError",
    "AuthenticationError",
    # Models
    "Occurrence",
    "OccurrenceFilter",
    "OccurrenceStatus",
    # Outcomes
    "Outcome",
    "OutcomeKind",
    "Booked",
    "Waitlisted",
    "AlreadyEnrolled",
    "AlreadyWaitlisted",
    "Full",
    "WaitlistFull",
    "WaitlistUnavailable",
    "GatewayError",
    "Cancelled",
]
