"""
Storage Layer - Async PostgreSQL database and repositories.

Public API:
    Database, DatabaseConfig - Connection pool management

    Models:
        TrackedPattern - A member's recurring class pattern
        AttemptRecord, AttemptOutcome - Signup ledger rows

    Repositories:
        PatternRepository - The pattern store
        SignupLogRepository - The log store behind the attempt ledger
"""
from signup_bot.storage.database import Database, DatabaseConfig
from signup_bot.storage.models import (
    DAYS_OF_WEEK,
    AttemptOutcome,
    AttemptRecord,
    TrackedPattern,
)
from signup_bot.storage.repositories import (
    PatternRepository,
    SignupLogRepository,
)

__all__ = [
    # Database
    "Database",
    "DatabaseConfig",
    # Models
    "DAYS_OF_WEEK",
    "TrackedPattern",
    "AttemptOutcome",
    "AttemptRecord",
    # Repositories
    "PatternRepository",
    "SignupLogRepository",
]
