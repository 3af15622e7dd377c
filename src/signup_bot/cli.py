#!/usr/bin/env python3
"""
Command line tools for managing tracked patterns and the attempt ledger.

Usage:
    python -m signup_bot.cli patterns
    python -m signup_bot.cli track --activity-id 101 --day Monday --time 18:00 --enable
    python -m signup_bot.cli untrack 3
    python -m signup_bot.cli enable 3
    python -m signup_bot.cli disable 3
    python -m signup_bot.cli set-lead 3 40
    python -m signup_bot.cli preview            # match patterns against the live schedule
    python -m signup_bot.cli logs --limit 20
    python -m signup_bot.cli classes --activity-id 101   # find ids to track
    python -m signup_bot.cli bookings
    python -m signup_bot.cli book 98765 --waitlist
    python -m signup_bot.cli join-waitlist 98765
    python -m signup_bot.cli cancel 98765
    python -m signup_bot.cli leave-waitlist 98765

``book`` and ``join-waitlist`` record their outcome in the ledger like a
scheduled attempt. ``cancel`` and ``leave-waitlist`` record a cancellation,
so the scheduler will not book that occurrence again.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from dateutil import tz as dateutil_tz

from signup_bot.core import (
    PatternConfigError,
    compute_window,
    match,
    sort_soonest_first,
    translate_outcome,
)
from signup_bot.core.matcher import build_rule
from signup_bot.gateway.client import AuthenticationError, GatewayAPIError
from signup_bot.gateway.models import Occurrence, OccurrenceFilter, Outcome, OutcomeKind
from signup_bot.main import BotConfig, load_env_file
from signup_bot.storage.models import DAYS_OF_WEEK, AttemptOutcome, AttemptRecord, TrackedPattern

if TYPE_CHECKING:
    from signup_bot.gateway.protocol import BookingGateway
    from signup_bot.storage.repositories import PatternRepository, SignupLogRepository

logger = logging.getLogger(__name__)


@dataclass
class CliContext:
    """Collaborators shared by the subcommands."""

    config: BotConfig
    patterns: "PatternRepository"
    logs: "SignupLogRepository"
    gateway: Optional["BookingGateway"] = None

    def require_gateway(self) -> "BookingGateway":
        if self.gateway is None:
            raise RuntimeError("This command needs FISIKAL_EMAIL and FISIKAL_PASSWORD")
        return self.gateway


# =============================================================================
# Pattern commands
# =============================================================================


def _format_pattern(pattern: TrackedPattern) -> str:
    status = "ON " if pattern.auto_signup_enabled else "off"
    if pattern.match_exact_time:
        timing = "exact"
    else:
        timing = f"+/-{pattern.time_tolerance_minutes}m"
    return (
        f"[{pattern.id:>3}] {status} {pattern.label} ({timing}, lead {pattern.signup_lead_hours}h)"
    )


async def cmd_patterns(ctx: CliContext, args: argparse.Namespace) -> int:
    patterns = await ctx.patterns.list_patterns()
    if not patterns:
        print("No tracked patterns")
        return 0
    for pattern in patterns:
        print(_format_pattern(pattern))
    return 0


async def cmd_track(ctx: CliContext, args: argparse.Namespace) -> int:
    lead = args.lead if args.lead is not None else ctx.config.default_signup_lead_hours
    pattern = TrackedPattern(
        activity_id=args.activity_id,
        activity_name=args.activity_name or "",
        instructor_id=args.instructor_id,
        instructor_name=args.instructor_name,
        location_id=args.location_id,
        location_name=args.location_name,
        day_of_week=args.day,
        start_time=args.time,
        match_instructor=args.match_instructor,
        match_exact_time=args.exact,
        time_tolerance_minutes=args.tolerance,
        auto_signup_enabled=args.enable,
        signup_lead_hours=lead,
    )

    # Reject what the scheduler would skip every tick
    try:
        build_rule(pattern)
    except PatternConfigError as e:
        logger.error(f"Invalid pattern: {e}")
        return 2
    if lead < 0:
        logger.error("Signup lead hours must be >= 0")
        return 2

    created = await ctx.patterns.create(pattern)
    print(f"Tracking {_format_pattern(created)}")
    return 0


async def cmd_untrack(ctx: CliContext, args: argparse.Namespace) -> int:
    if not await ctx.patterns.delete(args.pattern_id):
        logger.error(f"Pattern {args.pattern_id} not found")
        return 1
    print(f"Pattern {args.pattern_id} removed")
    return 0


async def _set_enabled(ctx: CliContext, pattern_id: int, enabled: bool) -> int:
    pattern = await ctx.patterns.set_auto_signup(pattern_id, enabled)
    if pattern is None:
        logger.error(f"Pattern {pattern_id} not found")
        return 1
    print(_format_pattern(pattern))
    return 0


async def cmd_enable(ctx: CliContext, args: argparse.Namespace) -> int:
    return await _set_enabled(ctx, args.pattern_id, True)


async def cmd_disable(ctx: CliContext, args: argparse.Namespace) -> int:
    return await _set_enabled(ctx, args.pattern_id, False)


async def cmd_set_lead(ctx: CliContext, args: argparse.Namespace) -> int:
    try:
        pattern = await ctx.patterns.set_signup_lead_hours(args.pattern_id, args.hours)
    except ValueError as e:
        logger.error(str(e))
        return 2
    if pattern is None:
        logger.error(f"Pattern {args.pattern_id} not found")
        return 1
    print(_format_pattern(pattern))
    return 0


# =============================================================================
# Schedule and bookings
# =============================================================================


def _venue_tz(ctx: CliContext):
    venue_tz = dateutil_tz.gettz(ctx.config.venue_timezone)
    if venue_tz is None:
        logger.error(f"Unknown VENUE_TIMEZONE: {ctx.config.venue_timezone}")
    return venue_tz


def _listing_filter(ctx: CliContext, now: datetime, days: Optional[int]) -> OccurrenceFilter:
    return OccurrenceFilter(
        since=now,
        till=now + timedelta(days=days or ctx.config.fetch_days_ahead),
        location_ids=tuple(ctx.config.preferred_location_ids),
    )


def _format_occurrence(occurrence: Occurrence, tz) -> str:
    flags = " enrolled" if occurrence.is_enrolled else ""
    flags += " waitlisted" if occurrence.is_waitlisted else ""
    if occurrence.is_full:
        flags += " full"
    elif occurrence.capacity:
        flags += f" {occurrence.spots_available}/{occurrence.capacity} open"
    return (
        f"{occurrence.id:>8} {occurrence.start_time.astimezone(tz):%a %m-%d %H:%M} "
        f"{occurrence.activity_name or '?'} [{occurrence.activity_id}] "
        f"{occurrence.instructor_name or '?'} [{occurrence.instructor_id or '-'}] "
        f"@ {occurrence.location_name or '?'} [{occurrence.location_id or '-'}]{flags}"
    )


async def cmd_classes(ctx: CliContext, args: argparse.Namespace) -> int:
    """List upcoming classes with the ids ``track`` needs."""
    gateway = ctx.require_gateway()
    venue_tz = _venue_tz(ctx)
    if venue_tz is None:
        return 2
    now = datetime.now(timezone.utc)

    try:
        occurrences = await gateway.fetch_occurrences(_listing_filter(ctx, now, args.days))
    except GatewayAPIError as e:
        logger.error(f"Could not list classes: {e}")
        return 1

    if args.activity_id:
        occurrences = [o for o in occurrences if o.activity_id == args.activity_id]
    if not occurrences:
        print("No classes listed")
        return 0
    for occurrence in sort_soonest_first(occurrences):
        print(_format_occurrence(occurrence, venue_tz))
    return 0


async def cmd_bookings(ctx: CliContext, args: argparse.Namespace) -> int:
    """List the member's upcoming bookings and waitlist places."""
    gateway = ctx.require_gateway()
    venue_tz = _venue_tz(ctx)
    if venue_tz is None:
        return 2
    now = datetime.now(timezone.utc)

    try:
        bookings = await gateway.fetch_bookings(_listing_filter(ctx, now, args.days))
    except GatewayAPIError as e:
        logger.error(f"Could not list bookings: {e}")
        return 1

    if not bookings:
        print("No upcoming bookings")
        return 0
    for occurrence in sort_soonest_first(bookings):
        print(_format_occurrence(occurrence, venue_tz))
    return 0


async def _record_manual(ctx: CliContext, occurrence_id: str, outcome: Outcome) -> int:
    """Append the outcome of a manual write to the ledger."""
    recorded, reason = translate_outcome(outcome)
    await ctx.logs.append(
        AttemptRecord(
            occurrence_id=occurrence_id,
            outcome=recorded,
            reason=f"{reason} (manual)",
        )
    )
    if not outcome.is_success:
        logger.error(f"{reason} for {occurrence_id}")
        return 1
    print(f"{reason}: occurrence {occurrence_id}")
    return 0


async def cmd_book(ctx: CliContext, args: argparse.Namespace) -> int:
    """Register for one occurrence now, optionally falling back to its waitlist."""
    gateway = ctx.require_gateway()
    occurrence_id = args.occurrence_id

    try:
        token = await gateway.fetch_concurrency_token(occurrence_id)
    except AuthenticationError as e:
        logger.error(f"Booking failed for {occurrence_id}: {e}")
        return 1
    except GatewayAPIError as e:
        logger.warning(f"Could not read lock version for {occurrence_id} ({e}), booking without it")
        token = None

    outcome = await gateway.register(occurrence_id, token)
    if outcome.kind is OutcomeKind.FULL and args.waitlist:
        logger.info(f"Occurrence {occurrence_id} is full, joining waitlist")
        outcome = await gateway.join_waitlist(occurrence_id)
    return await _record_manual(ctx, occurrence_id, outcome)


async def cmd_join_waitlist(ctx: CliContext, args: argparse.Namespace) -> int:
    gateway = ctx.require_gateway()
    outcome = await gateway.join_waitlist(args.occurrence_id)
    return await _record_manual(ctx, args.occurrence_id, outcome)


# =============================================================================
# Preview
# =============================================================================


async def cmd_preview(ctx: CliContext, args: argparse.Namespace) -> int:
    """Show which listed occurrences each pattern matches and when its window opens."""
    gateway = ctx.require_gateway()
    venue_tz = _venue_tz(ctx)
    if venue_tz is None:
        return 2

    now = datetime.now(timezone.utc)
    try:
        occurrences = await gateway.fetch_occurrences(_listing_filter(ctx, now, args.days))
    except GatewayAPIError as e:
        logger.error(f"Could not list occurrences: {e}")
        return 1
    print(f"{len(occurrences)} occurrences listed")

    patterns = await ctx.patterns.list_patterns()
    if args.pattern_id is not None:
        patterns = [p for p in patterns if p.id == args.pattern_id]

    for pattern in patterns:
        print(_format_pattern(pattern))
        try:
            matches = sort_soonest_first(match(pattern, occurrences, venue_tz))
            windows = [compute_window(pattern, o, now) for o in matches]
        except PatternConfigError as e:
            print(f"    misconfigured: {e}")
            continue

        if not matches:
            print("    no matching occurrences")
        for occurrence, window in zip(matches, windows):
            if window.has_passed:
                state = "started"
            elif window.is_open:
                state = "OPEN"
            else:
                state = f"opens {window.opens_at.astimezone(venue_tz):%a %m-%d %H:%M}"
            flags = " enrolled" if occurrence.is_enrolled else ""
            flags += " waitlisted" if occurrence.is_waitlisted else ""
            flags += " full" if occurrence.is_full else ""
            print(
                f"    {occurrence.id}: {occurrence.start_time.astimezone(venue_tz):%a %m-%d %H:%M} "
                f"{occurrence.instructor_name or '?'} @ {occurrence.location_name or '?'} "
                f"[{state}]{flags}"
            )
    return 0


# =============================================================================
# Ledger commands
# =============================================================================


async def cmd_logs(ctx: CliContext, args: argparse.Namespace) -> int:
    if args.occurrence_id:
        records = await ctx.logs.get_by_occurrence(args.occurrence_id, limit=args.limit)
    elif args.pattern_id is not None:
        records = await ctx.logs.get_by_pattern(args.pattern_id, limit=args.limit)
    else:
        records = await ctx.logs.get_recent(limit=args.limit)

    if not records:
        print("No signup attempts recorded")
        return 0

    for record in records:
        class_time = record.class_time.isoformat() if record.class_time else "?"
        print(
            f"{record.created_at:%Y-%m-%d %H:%M:%S} {record.outcome.value:<10} "
            f"{record.occurrence_id} {record.activity_name or ''} at {class_time}"
            f" - {record.reason or ''}"
        )
    return 0


async def _withdraw(
    ctx: CliContext,
    occurrence_id: str,
    call: Callable[[str], Awaitable],
    reason: str,
) -> int:
    try:
        outcome = await call(occurrence_id)
    except GatewayAPIError as e:
        logger.error(f"{reason} failed for {occurrence_id}: {e}")
        return 1

    if outcome.kind is not OutcomeKind.CANCELLED:
        logger.error(f"{reason} failed for {occurrence_id}: {outcome.kind.value} {outcome.detail}")
        return 1

    await ctx.logs.append(
        AttemptRecord(
            occurrence_id=occurrence_id,
            outcome=AttemptOutcome.CANCELLED,
            reason=reason,
        )
    )
    print(f"{reason}: occurrence {occurrence_id} will not be re-booked")
    return 0


async def cmd_cancel(ctx: CliContext, args: argparse.Namespace) -> int:
    gateway = ctx.require_gateway()
    return await _withdraw(ctx, args.occurrence_id, gateway.cancel, "Cancelled by member")


async def cmd_leave_waitlist(ctx: CliContext, args: argparse.Namespace) -> int:
    gateway = ctx.require_gateway()
    return await _withdraw(ctx, args.occurrence_id, gateway.leave_waitlist, "Left waitlist")


COMMANDS = {
    "patterns": cmd_patterns,
    "track": cmd_track,
    "untrack": cmd_untrack,
    "enable": cmd_enable,
    "disable": cmd_disable,
    "set-lead": cmd_set_lead,
    "preview": cmd_preview,
    "logs": cmd_logs,
    "classes": cmd_classes,
    "bookings": cmd_bookings,
    "book": cmd_book,
    "join-waitlist": cmd_join_waitlist,
    "cancel": cmd_cancel,
    "leave-waitlist": cmd_leave_waitlist,
}

# Commands that talk to the booking site
GATEWAY_COMMANDS = {
    "preview",
    "classes",
    "bookings",
    "book",
    "join-waitlist",
    "cancel",
    "leave-waitlist",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage tracked class patterns and signup history",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Log level (default: WARNING)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("patterns", help="List tracked patterns")

    track = sub.add_parser("track", help="Track a new recurring class")
    track.add_argument("--activity-id", required=True)
    track.add_argument("--activity-name")
    track.add_argument("--day", required=True, choices=DAYS_OF_WEEK, type=str.capitalize)
    track.add_argument("--time", required=True, help="Local start time, HH:MM")
    track.add_argument("--instructor-id")
    track.add_argument("--instructor-name")
    track.add_argument(
        "--match-instructor",
        action="store_true",
        help="Only book classes taught by --instructor-id (any instructor without it)",
    )
    track.add_argument("--location-id")
    track.add_argument("--location-name")
    track.add_argument("--exact", action="store_true", help="Require the exact start time")
    track.add_argument("--tolerance", type=int, default=15, help="Minutes either side (default: 15)")
    track.add_argument("--lead", type=int, help="Signup lead hours (default: DEFAULT_SIGNUP_LEAD_HOURS)")
    track.add_argument("--enable", action="store_true", help="Enable auto-signup immediately")

    for name, help_text in (
        ("untrack", "Delete a tracked pattern"),
        ("enable", "Enable auto-signup for a pattern"),
        ("disable", "Disable auto-signup for a pattern"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("pattern_id", type=int)

    set_lead = sub.add_parser("set-lead", help="Change a pattern's signup lead hours")
    set_lead.add_argument("pattern_id", type=int)
    set_lead.add_argument("hours", type=int)

    preview = sub.add_parser("preview", help="Match patterns against the live schedule")
    preview.add_argument("pattern_id", type=int, nargs="?")
    preview.add_argument("--days", type=int, help="Days ahead to list (default: FETCH_DAYS_AHEAD)")

    logs = sub.add_parser("logs", help="Show signup attempt history")
    logs.add_argument("--occurrence-id")
    logs.add_argument("--pattern-id", type=int)
    logs.add_argument("--limit", type=int, default=50)

    classes = sub.add_parser("classes", help="List upcoming classes and their ids")
    classes.add_argument("--activity-id")
    classes.add_argument("--days", type=int, help="Days ahead to list (default: FETCH_DAYS_AHEAD)")

    bookings = sub.add_parser("bookings", help="List your upcoming bookings and waitlist places")
    bookings.add_argument("--days", type=int, help="Days ahead to list (default: FETCH_DAYS_AHEAD)")

    book = sub.add_parser("book", help="Register for one occurrence now")
    book.add_argument("occurrence_id")
    book.add_argument("--waitlist", action="store_true", help="Join the waitlist when the class is full")

    join = sub.add_parser("join-waitlist", help="Join the waitlist for one occurrence now")
    join.add_argument("occurrence_id")

    for name, help_text in (
        ("cancel", "Cancel a booking and stop auto-signup for it"),
        ("leave-waitlist", "Leave a waitlist and stop auto-signup for it"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("occurrence_id")

    return parser


async def run(args: argparse.Namespace, config: BotConfig) -> int:
    """Connect to the database (and the site when needed) and run one command."""
    from signup_bot.gateway import FisikalClient
    from signup_bot.storage import (
        Database,
        DatabaseConfig,
        PatternRepository,
        SignupLogRepository,
    )

    if not config.database_url:
        logger.error("DATABASE_URL not set. Set environment variable or add to .env")
        return 1

    db = Database(DatabaseConfig(url=config.database_url))
    await db.initialize()
    client = None

    try:
        await db.apply_schema()

        if args.command in GATEWAY_COMMANDS:
            if not (config.fisikal_email and config.fisikal_password):
                logger.error("FISIKAL_EMAIL and FISIKAL_PASSWORD are required for this command")
                return 1
            client = FisikalClient(
                email=config.fisikal_email,
                password=config.fisikal_password,
                base_url=config.fisikal_base_url,
                timeout=config.call_timeout_seconds,
            )

        ctx = CliContext(
            config=config,
            patterns=PatternRepository(db),
            logs=SignupLogRepository(db),
            gateway=client,
        )
        return await COMMANDS[args.command](ctx, args)

    finally:
        if client is not None:
            await client.close()
        await db.close()


def main(argv: Optional[list[str]] = None) -> int:
    load_env_file()
    args = build_parser().parse_args(argv)
    logging.getLogger().setLevel(getattr(logging, args.log_level))

    try:
        return asyncio.run(run(args, BotConfig.from_env()))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
