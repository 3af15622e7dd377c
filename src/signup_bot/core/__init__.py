"""
Core Layer - Auto-signup scheduling and matching engine.

This module provides:
    - match, sort_soonest_first: Pure pattern matcher
    - PatternConfigError: Raised for malformed tracked patterns
    - compute_window, SignupWindow: Signup window calculator
    - estimate_next_occurrence: Local next-occurrence estimate
    - AttemptLedger: Append-only attempt history with per-occurrence locks
    - FetchCache, CacheSnapshot, RefreshDecision: Schedule listing cache
    - SignupScheduler, SchedulerConfig, TickReport: Per-tick orchestration
    - TickRunner: Periodic tick source

Data Flow:
    1. TickRunner fires a tick
    2. FetchCache decides whether to refresh the listing
    3. Matcher selects occurrences per pattern
    4. Window calculator and ledger decide eligibility
    5. Gateway books (or waitlists), ledger records the outcome
"""

# Pure functions
from .matcher import PatternConfigError, match, sort_soonest_first
from .window import (
    SignupWindow,
    compute_window,
    effective_lead_hours,
    estimate_next_occurrence,
    minutes_until_estimated_window,
)

# State
from .ledger import AttemptLedger, WAITLIST_FULL_REASON
from .fetch_cache import CacheSnapshot, FetchCache, RefreshDecision

# Orchestration
from .scheduler import (
    EvaluationState,
    SchedulerConfig,
    SchedulerStats,
    SignupScheduler,
    TickReport,
    translate_outcome,
)
from .tick_runner import TickRunner

__all__ = [
    # Matcher
    "match",
    "sort_soonest_first",
    "PatternConfigError",
    # Window
    "SignupWindow",
    "compute_window",
    "effective_lead_hours",
    "estimate_next_occurrence",
    "minutes_until_estimated_window",
    # Ledger
    "AttemptLedger",
    "WAITLIST_FULL_REASON",
    # Fetch cache
    "FetchCache",
    "CacheSnapshot",
    "RefreshDecision",
    # Scheduler
    "SignupScheduler",
    "SchedulerConfig",
    "SchedulerStats",
    "TickReport",
    "EvaluationState",
    "translate_outcome",
    "TickRunner",
]
