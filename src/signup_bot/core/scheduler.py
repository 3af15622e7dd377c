"""
Signup Scheduler - Per-tick orchestration of automatic signups.

Each tick:
1. Loads tracked patterns and keeps the auto-signup-enabled ones
2. Asks the fetch cache whether the schedule must be refreshed
3. Matches every pattern against the listing
4. Evaluates each (pattern, occurrence) pair:

       EXPIRED           class has started               -> nothing
       TOO_EARLY         signup window not open yet      -> nothing
       ALREADY_TERMINAL  booked, waitlisted or cancelled -> nothing
       ELIGIBLE          window open, nothing terminal   -> attempt

5. For ELIGIBLE pairs, under the occurrence's lock: re-check the ledger,
   re-read the concurrency token, register, fall back to the waiting list
   on FULL, and append exactly one ledger record.

There is no persisted per-pair state. Every tick recomputes it from the
window and the ledger, so a restart loses nothing.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from dateutil import tz as dateutil_tz

from signup_bot.gateway.client import AuthenticationError, GatewayAPIError
from signup_bot.gateway.models import GatewayError, Occurrence, Outcome, OutcomeKind
from signup_bot.storage.models import AttemptOutcome, AttemptRecord

from .ledger import WAITLIST_FULL_REASON
from .matcher import PatternConfigError, match, sort_soonest_first
from .window import SignupWindow, compute_window

if TYPE_CHECKING:
    from signup_bot.gateway.protocol import BookingGateway
    from signup_bot.storage.models import TrackedPattern
    from signup_bot.storage.repositories import PatternRepository

    from .fetch_cache import FetchCache
    from .ledger import AttemptLedger

logger = logging.getLogger(__name__)


class EvaluationState(Enum):
    """Derived state of one (pattern, occurrence) pair for one tick."""

    TOO_EARLY = "too_early"
    EXPIRED = "expired"
    ALREADY_TERMINAL = "already_terminal"
    ELIGIBLE = "eligible"


# Every OutcomeKind a booking attempt can produce, and how it is recorded.
# CANCELLED is absent: register and join_waitlist never return it.
OUTCOME_RECORDS: dict[OutcomeKind, tuple[AttemptOutcome, str]] = {
    OutcomeKind.BOOKED: (AttemptOutcome.SUCCESS, "Booked"),
    OutcomeKind.ALREADY_ENROLLED: (AttemptOutcome.SUCCESS, "Already enrolled"),
    OutcomeKind.WAITLISTED: (AttemptOutcome.WAITLISTED, "Joined waitlist"),
    OutcomeKind.ALREADY_WAITLISTED: (AttemptOutcome.WAITLISTED, "Already on waitlist"),
    OutcomeKind.FULL: (AttemptOutcome.FAILED, "Class full"),
    OutcomeKind.WAITLIST_FULL: (AttemptOutcome.FAILED, WAITLIST_FULL_REASON),
    OutcomeKind.WAITLIST_UNAVAILABLE: (
        AttemptOutcome.FAILED,
        "Class full, waitlist not available",
    ),
    OutcomeKind.ERROR: (AttemptOutcome.FAILED, "Upstream error"),
}


def translate_outcome(outcome: Outcome) -> tuple[AttemptOutcome, str]:
    """
    Map a gateway outcome to the ledger outcome and reason.

    Raises:
        ValueError: For an outcome kind a booking attempt cannot produce.
    """
    try:
        recorded, reason = OUTCOME_RECORDS[outcome.kind]
    except KeyError:
        raise ValueError(f"Unexpected booking outcome: {outcome.kind}") from None

    if outcome.kind is OutcomeKind.ERROR and outcome.detail:
        reason = f"{reason}: {outcome.detail}"
    return recorded, reason


@dataclass
class SchedulerConfig:
    """Configuration for the signup scheduler."""

    venue_timezone: str = "America/New_York"

    # Upper bound on every upstream call
    call_timeout_seconds: float = 30.0

    join_waitlist_when_full: bool = True

    # Pattern-evaluation parallelism (1 = sequential)
    max_concurrent_patterns: int = 1

    # Chosen once per process, awaited before each tick's upstream work
    jitter_seconds: float = 0.0

    # Delete failed records this many days after the class (0 = keep all)
    ledger_prune_after_days: int = 0


@dataclass
class TickReport:
    """What happened during one tick."""

    started_at: datetime
    patterns_total: int = 0
    patterns_enabled: int = 0
    refreshed: bool = False
    refresh_reason: str = ""
    occurrences: int = 0
    candidates: int = 0
    attempts: int = 0
    booked: int = 0
    waitlisted: int = 0
    failed: int = 0
    throttled: int = 0
    skipped_terminal: int = 0
    config_errors: int = 0
    aborted: bool = False
    error: Optional[str] = None
    attempted_ids: list[str] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"patterns={self.patterns_enabled}/{self.patterns_total} "
            f"occurrences={self.occurrences} candidates={self.candidates} "
            f"attempts={self.attempts} booked={self.booked} "
            f"waitlisted={self.waitlisted} failed={self.failed}"
        )


@dataclass
class SchedulerStats:
    """Runtime statistics across ticks."""

    ticks: int = 0
    aborted_ticks: int = 0
    attempts: int = 0
    booked: int = 0
    waitlisted: int = 0
    failed: int = 0
    config_errors: int = 0
    last_tick_at: Optional[datetime] = None


class SignupScheduler:
    """
    Auto-signup scheduling and matching engine.

    Usage:
        scheduler = SignupScheduler(
            config=SchedulerConfig(jitter_seconds=random.uniform(0, 60)),
            patterns=PatternRepository(db),
            ledger=AttemptLedger(SignupLogRepository(db)),
            gateway=client,
            cache=FetchCache(client, venue_tz),
        )

        report = await scheduler.run_tick()
    """

    def __init__(
        self,
        config: SchedulerConfig,
        patterns: "PatternRepository",
        ledger: "AttemptLedger",
        gateway: "BookingGateway",
        cache: "FetchCache",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            config: Scheduler configuration
            patterns: Pattern store (read only)
            ledger: Attempt ledger over the log store
            gateway: Booking gateway for upstream writes
            cache: Fetch cache over the same gateway
            sleep: Awaitable used for the jitter delay
        """
        venue_tz = dateutil_tz.gettz(config.venue_timezone)
        if venue_tz is None:
            raise ValueError(f"Unknown venue time zone: {config.venue_timezone}")

        self.config = config
        self.venue_tz = venue_tz
        self._patterns = patterns
        self._ledger = ledger
        self._gateway = gateway
        self._cache = cache
        self._sleep = sleep

        self._tick_lock = asyncio.Lock()
        self._jitter_lock = asyncio.Lock()
        self._jitter_done = False
        self._last_prune: Optional[datetime] = None

        self.stats = SchedulerStats()

    # =========================================================================
    # Tick
    # =========================================================================

    async def run_tick(self, now: Optional[datetime] = None) -> TickReport:
        """
        Run one scheduler tick.

        Configuration errors and failed attempts never abort the tick. A
        failed schedule fetch ends it early; the next tick retries.
        """
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            raise ValueError("run_tick requires a timezone-aware now")

        async with self._tick_lock:
            report = TickReport(started_at=now)
            self._jitter_done = False

            try:
                await self._run(now, report)
            finally:
                self._ledger.release_idle_locks()
                self._record_stats(report)

            logger.info(f"Tick complete: {report.summary()}")
            return report

    async def _run(self, now: datetime, report: TickReport) -> None:
        patterns = await self._patterns.list_patterns()
        enabled = [p for p in patterns if p.auto_signup_enabled]
        report.patterns_total = len(patterns)
        report.patterns_enabled = len(enabled)

        if not enabled:
            logger.debug("No auto-signup patterns enabled")
            return

        decision = self._cache.refresh_decision(enabled, now)
        report.refreshed = decision.should_refresh
        report.refresh_reason = decision.reason
        if decision.should_refresh:
            logger.debug(f"Refreshing schedule ({decision.reason})")
            await self._ensure_jittered()

        try:
            occurrences = await self._cache.get_occurrences(
                force_refresh=decision.should_refresh, now=now
            )
        except GatewayAPIError as e:
            report.aborted = True
            report.error = str(e)
            logger.warning(f"Schedule fetch failed, skipping tick: {e}")
            return

        report.occurrences = len(occurrences)

        # Occurrence ids attempted this tick, shared across patterns
        attempted: set[str] = set()
        semaphore = asyncio.Semaphore(max(1, self.config.max_concurrent_patterns))

        async def evaluate_one(pattern: "TrackedPattern") -> None:
            async with semaphore:
                await self._evaluate_pattern(pattern, occurrences, now, report, attempted)

        await asyncio.gather(*(evaluate_one(p) for p in enabled))

        await self._maybe_prune(now)

    async def _evaluate_pattern(
        self,
        pattern: "TrackedPattern",
        occurrences: tuple[Occurrence, ...],
        now: datetime,
        report: TickReport,
        attempted: set[str],
    ) -> None:
        try:
            matches = sort_soonest_first(match(pattern, occurrences, self.venue_tz))
            logger.debug(f"Pattern {pattern.id} ({pattern.label}): {len(matches)} matches")

            for occurrence in matches:
                state, window = await self.evaluate(pattern, occurrence, now)
                logger.debug(
                    f"  occurrence {occurrence.id} at {occurrence.start_time.isoformat()}: "
                    f"{state.value} (opens {window.opens_at.isoformat()}, "
                    f"lead {window.effective_lead_hours}h)"
                )

                if state is EvaluationState.ALREADY_TERMINAL:
                    report.skipped_terminal += 1
                    continue
                if state is not EvaluationState.ELIGIBLE:
                    continue

                report.candidates += 1
                if occurrence.id in attempted:
                    continue
                attempted.add(occurrence.id)

                await self._attempt(pattern, occurrence, now, report)

        except PatternConfigError as e:
            report.config_errors += 1
            logger.error(f"Skipping misconfigured pattern: {e}")

        except Exception as e:
            logger.exception(f"Unexpected error evaluating pattern {pattern.id}: {e}")

    async def evaluate(
        self,
        pattern: "TrackedPattern",
        occurrence: Occurrence,
        now: datetime,
    ) -> tuple[EvaluationState, SignupWindow]:
        """Derive the pair's state from its window and the ledger."""
        window = compute_window(pattern, occurrence, now)

        if window.has_passed:
            return EvaluationState.EXPIRED, window
        if not window.is_open:
            return EvaluationState.TOO_EARLY, window
        if occurrence.is_enrolled or occurrence.is_waitlisted:
            return EvaluationState.ALREADY_TERMINAL, window
        if await self._ledger.is_terminal(occurrence.id):
            return EvaluationState.ALREADY_TERMINAL, window
        return EvaluationState.ELIGIBLE, window

    # =========================================================================
    # Attempts
    # =========================================================================

    async def _attempt(
        self,
        pattern: "TrackedPattern",
        occurrence: Occurrence,
        now: datetime,
        report: TickReport,
    ) -> None:
        async with self._ledger.lock(occurrence.id):
            # Another task may have finished this occurrence while we waited
            if await self._ledger.is_terminal(occurrence.id):
                report.skipped_terminal += 1
                return

            await self._ensure_jittered()

            if not occurrence.can_register(now) and not occurrence.can_join_waitlist(now):
                logger.warning(
                    f"Occurrence {occurrence.id} looks unbookable upstream, attempting anyway"
                )

            logger.info(
                f"Attempting signup: {occurrence.activity_name or occurrence.activity_id} "
                f"at {occurrence.start_time.astimezone(self.venue_tz):%a %Y-%m-%d %H:%M} "
                f"(occurrence {occurrence.id}, pattern {pattern.id})"
            )
            report.attempts += 1
            report.attempted_ids.append(occurrence.id)

            outcome = await self._book(occurrence)
            await self._record(pattern, occurrence, outcome, now, report)

    async def _book(self, occurrence: Occurrence) -> Outcome:
        """Re-read the token, register, and fall back to the waiting list."""
        try:
            token = await asyncio.wait_for(
                self._gateway.fetch_concurrency_token(occurrence.id),
                timeout=self.config.call_timeout_seconds,
            )
        except AuthenticationError as e:
            return GatewayError(detail=str(e), status_code=e.status_code)
        except (GatewayAPIError, asyncio.TimeoutError) as e:
            logger.warning(
                f"Could not read lock version for {occurrence.id} ({e!r}), registering without it"
            )
            token = None

        outcome = await self._write(self._gateway.register(occurrence.id, token), "register")

        if outcome.kind is OutcomeKind.FULL and self.config.join_waitlist_when_full:
            logger.info(f"Occurrence {occurrence.id} is full, joining waitlist")
            outcome = await self._write(
                self._gateway.join_waitlist(occurrence.id), "join_waitlist"
            )

        return outcome

    async def _write(self, call: Awaitable[Outcome], name: str) -> Outcome:
        """Await a gateway write once, turning every failure into an Outcome."""
        try:
            return await asyncio.wait_for(call, timeout=self.config.call_timeout_seconds)
        except asyncio.TimeoutError:
            return GatewayError(detail=f"{name} timed out")
        except GatewayAPIError as e:
            return GatewayError(detail=str(e), status_code=e.status_code)
        except Exception as e:
            logger.exception(f"Unexpected error during {name}: {e}")
            return GatewayError(detail=f"{name} failed: {e}")

    async def _record(
        self,
        pattern: "TrackedPattern",
        occurrence: Occurrence,
        outcome: Outcome,
        now: datetime,
        report: TickReport,
    ) -> None:
        recorded, reason = translate_outcome(outcome)

        if recorded is AttemptOutcome.SUCCESS:
            report.booked += 1
            logger.info(f"Signed up for occurrence {occurrence.id}: {reason}")
        elif recorded is AttemptOutcome.WAITLISTED:
            report.waitlisted += 1
            logger.info(f"Waitlisted for occurrence {occurrence.id}: {reason}")
        else:
            report.failed += 1
            logger.warning(f"Signup failed for occurrence {occurrence.id}: {reason}")

            if not await self._ledger.should_log_failure(occurrence.id, reason, now):
                report.throttled += 1
                return

        await self._ledger.record(
            AttemptRecord(
                occurrence_id=occurrence.id,
                pattern_id=pattern.id,
                outcome=recorded,
                reason=reason,
                activity_name=occurrence.activity_name or pattern.activity_name,
                instructor_name=occurrence.instructor_name,
                location_name=occurrence.location_name,
                class_time=occurrence.start_time,
                created_at=now,
            )
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _ensure_jittered(self) -> None:
        """Sleep the process jitter once per tick, before the first upstream call."""
        if self.config.jitter_seconds <= 0:
            return
        async with self._jitter_lock:
            if self._jitter_done:
                return
            logger.debug(f"Applying jitter of {self.config.jitter_seconds:.1f}s")
            await self._sleep(self.config.jitter_seconds)
            self._jitter_done = True

    async def _maybe_prune(self, now: datetime) -> None:
        days = self.config.ledger_prune_after_days
        if days <= 0:
            return
        if self._last_prune is not None and now - self._last_prune < timedelta(days=1):
            return
        try:
            await self._ledger.prune(now, timedelta(days=days))
            self._last_prune = now
        except Exception as e:
            logger.warning(f"Ledger pruning failed: {e}")

    def _record_stats(self, report: TickReport) -> None:
        self.stats.ticks += 1
        self.stats.last_tick_at = report.started_at
        if report.aborted:
            self.stats.aborted_ticks += 1
        self.stats.attempts += report.attempts
        self.stats.booked += report.booked
        self.stats.waitlisted += report.waitlisted
        self.stats.failed += report.failed
        self.stats.config_errors += report.config_errors
