"""
Class Auto-Signup Bot - Main Entry Point

Runs the signup scheduler: one tick at start-up, then one every
CHECK_INTERVAL_MINUTES until stopped.

Usage:
    python -m signup_bot.main                 # Run forever
    python -m signup_bot.main --once          # Run a single tick and exit
    python -m signup_bot.main --log-level DEBUG

Configuration:
    The bot reads configuration from:
    1. Environment variables (see .env.example)
    2. A .env file in the working directory (does not override the environment)
    3. Command line arguments

Environment Variables:
    DATABASE_URL                        PostgreSQL connection string (required)
    FISIKAL_BASE_URL                    Booking site root (default: https://ymca-triangle.fisikal.com)
    FISIKAL_EMAIL                       Member login email (required)
    FISIKAL_PASSWORD                    Member password (required)
    VENUE_TIMEZONE                      Venue time zone (default: America/New_York)
    CHECK_INTERVAL_MINUTES              Minutes between ticks (default: 5)
    MAX_JITTER_SECONDS                  Upper bound of the per-process start delay (default: 60)
    DEFAULT_SIGNUP_LEAD_HOURS           Lead for newly tracked patterns (default: 46)
    FETCH_DAYS_AHEAD                    Days of schedule to list (default: 7)
    CACHE_TTL_MINUTES                   Schedule cache lifetime (default: 10)
    WINDOW_MARGIN_MINUTES               Refresh margin before a window opens (default: 15)
    CALL_TIMEOUT_SECONDS                Timeout for each upstream call (default: 30)
    WAITLIST_FULL_LOG_INTERVAL_MINUTES  Throttle for "waitlist full" records (default: 4)
    JOIN_WAITLIST_WHEN_FULL             Join the waitlist when a class is full (default: true)
    PREFERRED_LOCATION_IDS              Comma-separated location filter (default: all)
    MAX_CONCURRENT_PATTERNS             Patterns evaluated in parallel (default: 1)
    LEDGER_PRUNE_AFTER_DAYS             Delete old failed records after N days (default: 0 = never)
    LOG_LEVEL                           Logging level (DEBUG/INFO/WARNING/ERROR)
"""

from __future__ import annotations

import argparse
import asyncio
import atexit
import fcntl
import logging
import os
import random
import signal
import sys
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator, Optional

from dateutil import tz as dateutil_tz

# Configure logging before imports
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

DEFAULT_PID_FILE = "/tmp/signup-bot.pid"


class SingletonBotError(Exception):
    """Raised when another bot instance is already running."""
    pass


@contextmanager
def singleton_lock(pid_file: str = DEFAULT_PID_FILE) -> Generator[None, None, None]:
    """
    Ensure only one bot instance runs at a time.

    Holds an exclusive, non-blocking flock on the PID file until exit.

    Raises:
        SingletonBotError: If another instance holds the lock
    """
    pid_path = Path(pid_file)

    existing_pid = None
    try:
        existing_pid = pid_path.read_text().strip()
    except FileNotFoundError:
        pass

    # "a+" so the file is not truncated before we own the lock
    fp = open(pid_path, "a+")

    try:
        fcntl.flock(fp.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        fp.close()
        if existing_pid:
            raise SingletonBotError(
                f"Another bot instance is already running (PID: {existing_pid}). "
                f"Kill it with: kill {existing_pid}"
            )
        raise SingletonBotError(
            "Another bot instance is already running. "
            "Check for existing processes: ps aux | grep signup_bot"
        )

    fp.seek(0)
    fp.truncate()
    fp.write(str(os.getpid()))
    fp.flush()

    def cleanup():
        if fp.closed:
            return
        try:
            fcntl.flock(fp.fileno(), fcntl.LOCK_UN)
            fp.close()
            pid_path.unlink(missing_ok=True)
        except OSError as e:
            logger.debug(f"PID file cleanup failed: {e}")

    atexit.register(cleanup)

    try:
        logger.info(f"Acquired singleton lock (PID: {os.getpid()}, file: {pid_file})")
        yield
    finally:
        cleanup()
        atexit.unregister(cleanup)


def _split_ids(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class BotConfig:
    """Complete bot configuration."""

    # Database
    database_url: str = ""

    # Upstream
    fisikal_base_url: str = "https://ymca-triangle.fisikal.com"
    fisikal_email: str = ""
    fisikal_password: str = ""
    call_timeout_seconds: float = 30.0

    # Scheduling
    venue_timezone: str = "America/New_York"
    check_interval_minutes: float = 5
    max_jitter_seconds: float = 60
    default_signup_lead_hours: int = 46
    join_waitlist_when_full: bool = True
    max_concurrent_patterns: int = 1

    # Fetch cache
    fetch_days_ahead: int = 7
    cache_ttl_minutes: float = 10
    window_margin_minutes: float = 15
    preferred_location_ids: list[str] = field(default_factory=list)

    # Ledger
    waitlist_full_log_interval_minutes: float = 4
    ledger_prune_after_days: int = 0

    @classmethod
    def from_env(cls) -> "BotConfig":
        """Load configuration from environment variables."""
        return cls(
            database_url=os.environ.get("DATABASE_URL", ""),
            fisikal_base_url=os.environ.get("FISIKAL_BASE_URL", "https://ymca-triangle.fisikal.com"),
            fisikal_email=os.environ.get("FISIKAL_EMAIL", ""),
            fisikal_password=os.environ.get("FISIKAL_PASSWORD", ""),
            call_timeout_seconds=float(os.environ.get("CALL_TIMEOUT_SECONDS", "30")),
            venue_timezone=os.environ.get("VENUE_TIMEZONE", "America/New_York"),
            check_interval_minutes=float(os.environ.get("CHECK_INTERVAL_MINUTES", "5")),
            max_jitter_seconds=float(os.environ.get("MAX_JITTER_SECONDS", "60")),
            default_signup_lead_hours=int(os.environ.get("DEFAULT_SIGNUP_LEAD_HOURS", "46")),
            join_waitlist_when_full=os.environ.get("JOIN_WAITLIST_WHEN_FULL", "true").lower() == "true",
            max_concurrent_patterns=int(os.environ.get("MAX_CONCURRENT_PATTERNS", "1")),
            fetch_days_ahead=int(os.environ.get("FETCH_DAYS_AHEAD", "7")),
            cache_ttl_minutes=float(os.environ.get("CACHE_TTL_MINUTES", "10")),
            window_margin_minutes=float(os.environ.get("WINDOW_MARGIN_MINUTES", "15")),
            preferred_location_ids=_split_ids(os.environ.get("PREFERRED_LOCATION_IDS", "")),
            waitlist_full_log_interval_minutes=float(
                os.environ.get("WAITLIST_FULL_LOG_INTERVAL_MINUTES", "4")
            ),
            ledger_prune_after_days=int(os.environ.get("LEDGER_PRUNE_AFTER_DAYS", "0")),
        )

    def missing_required(self) -> list[str]:
        """Names of required settings that are empty."""
        required = {
            "DATABASE_URL": self.database_url,
            "FISIKAL_EMAIL": self.fisikal_email,
            "FISIKAL_PASSWORD": self.fisikal_password,
        }
        return [name for name, value in required.items() if not value]


class SignupBot:
    """
    Main bot orchestrator.

    Manages the lifecycle of all components:
    - Database connection and schema
    - Fisikal client (login session, rate limiting)
    - Fetch cache, attempt ledger and scheduler
    - Tick runner
    """

    def __init__(self, config: BotConfig):
        self.config = config
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._started_at: Optional[datetime] = None

        # Components (initialized on start)
        self._db = None
        self._client = None
        self._scheduler = None
        self._runner = None

    @property
    def scheduler(self):
        return self._scheduler

    @property
    def runner(self):
        return self._runner

    async def start(self, once: bool = False) -> None:
        """
        Start the bot.

        Args:
            once: Run a single tick and return instead of looping
        """
        logger.info("=" * 60)
        logger.info("CLASS AUTO-SIGNUP BOT")
        logger.info("=" * 60)
        logger.info(f"Mode: {'SINGLE TICK' if once else 'CONTINUOUS'}")
        logger.info(f"Venue time zone: {self.config.venue_timezone}")
        logger.info("=" * 60)

        self._running = True
        self._started_at = datetime.now(timezone.utc)
        self._shutdown_event.clear()

        self._setup_signal_handlers()

        try:
            await self._init_database()

            if self._shutdown_event.is_set():
                logger.info("Shutdown requested during startup")
                return

            await self._init_gateway()
            self._init_scheduler()

            if once:
                report = await self._runner.run_once()
                if report is None:
                    raise RuntimeError("Scheduler tick failed")
                return

            await self._runner.start()

            logger.info("=" * 60)
            logger.info("Bot started successfully")
            logger.info("Press Ctrl+C to stop")
            logger.info("=" * 60)

            await self._shutdown_event.wait()

        except Exception as e:
            logger.exception(f"Fatal error: {e}")
            raise
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the bot gracefully."""
        if not self._running:
            return

        logger.info("Shutting down...")
        self._running = False
        self._shutdown_event.set()

        # Stop components in reverse order
        if self._runner:
            try:
                await self._runner.stop()
            except Exception as e:
                logger.warning(f"Error stopping tick runner: {e}")

        if self._client:
            try:
                await self._client.close()
            except Exception as e:
                logger.warning(f"Error closing Fisikal client: {e}")

        if self._db:
            try:
                await self._db.close()
            except Exception as e:
                logger.warning(f"Error closing database: {e}")

        if self._scheduler:
            stats = self._scheduler.stats
            logger.info(
                f"Stats: ticks={stats.ticks}, attempts={stats.attempts}, "
                f"booked={stats.booked}, waitlisted={stats.waitlisted}, failed={stats.failed}"
            )

        logger.info("Shutdown complete")

    async def _init_database(self) -> None:
        """Initialize database connection and apply the schema."""
        from signup_bot.storage import Database, DatabaseConfig

        if not self.config.database_url:
            raise ValueError("DATABASE_URL environment variable is required")

        self._db = Database(DatabaseConfig(url=self.config.database_url))
        await self._db.initialize()

        if not await self._db.health_check():
            raise RuntimeError("Database health check failed")

        await self._db.apply_schema()
        logger.info("Database: Connected")

    async def _init_gateway(self) -> None:
        """Create the Fisikal client. Login happens lazily on the first call."""
        from signup_bot.gateway import FisikalClient

        self._client = FisikalClient(
            email=self.config.fisikal_email,
            password=self.config.fisikal_password,
            base_url=self.config.fisikal_base_url,
            timeout=self.config.call_timeout_seconds,
        )
        logger.info(f"Gateway: {self.config.fisikal_base_url}")

    def _init_scheduler(self) -> None:
        """Wire ledger, cache and scheduler over the database and client."""
        from signup_bot.core import (
            AttemptLedger,
            FetchCache,
            SchedulerConfig,
            SignupScheduler,
            TickRunner,
        )
        from signup_bot.storage import PatternRepository, SignupLogRepository

        jitter = random.uniform(0, max(0.0, self.config.max_jitter_seconds))
        logger.info(f"Per-tick jitter for this process: {jitter:.1f}s")

        scheduler_config = SchedulerConfig(
            venue_timezone=self.config.venue_timezone,
            call_timeout_seconds=self.config.call_timeout_seconds,
            join_waitlist_when_full=self.config.join_waitlist_when_full,
            max_concurrent_patterns=self.config.max_concurrent_patterns,
            jitter_seconds=jitter,
            ledger_prune_after_days=self.config.ledger_prune_after_days,
        )

        ledger = AttemptLedger(
            SignupLogRepository(self._db),
            waitlist_full_log_interval=timedelta(
                minutes=self.config.waitlist_full_log_interval_minutes
            ),
        )

        venue_tz = dateutil_tz.gettz(self.config.venue_timezone)
        if venue_tz is None:
            raise ValueError(f"Unknown VENUE_TIMEZONE: {self.config.venue_timezone}")

        cache = FetchCache(
            self._client,
            venue_tz,
            ttl=timedelta(minutes=self.config.cache_ttl_minutes),
            window_margin=timedelta(minutes=self.config.window_margin_minutes),
            days_ahead=self.config.fetch_days_ahead,
            location_ids=self.config.preferred_location_ids,
            call_timeout=self.config.call_timeout_seconds,
        )

        self._scheduler = SignupScheduler(
            config=scheduler_config,
            patterns=PatternRepository(self._db),
            ledger=ledger,
            gateway=self._client,
            cache=cache,
        )

        self._runner = TickRunner(
            self._scheduler,
            interval_seconds=self.config.check_interval_minutes * 60,
        )
        logger.info(f"Scheduler: every {self.config.check_interval_minutes:g} minutes")

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def handle_signal(sig):
            logger.info(f"Received signal {sig}")
            self._shutdown_event.set()

        try:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass


def load_env_file(path: str = ".env") -> None:
    """Load environment variables from .env file if it exists."""
    env_path = Path(path)
    if env_path.exists():
        logger.info(f"Loading environment from {env_path}")
        with open(env_path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, _, value = line.partition("=")
                    value = value.strip().strip('"').strip("'")
                    os.environ.setdefault(key.strip(), value)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Class Auto-Signup Bot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single scheduler tick and exit",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level",
    )
    parser.add_argument(
        "--pid-file",
        default=DEFAULT_PID_FILE,
        help=f"Singleton lock file (default: {DEFAULT_PID_FILE})",
    )
    return parser.parse_args(argv)


async def main_async(args: argparse.Namespace) -> int:
    """Async main function."""
    config = BotConfig.from_env()

    missing = config.missing_required()
    if missing:
        logger.error(f"Missing required configuration: {', '.join(missing)}")
        logger.error("See .env.example for configuration")
        return 1

    bot = SignupBot(config)

    try:
        await bot.start(once=args.once)
        return 0
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
        return 0
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    load_env_file()

    args = parse_args(argv)

    if args.log_level:
        logging.getLogger().setLevel(getattr(logging, args.log_level))

    try:
        with singleton_lock(args.pid_file):
            try:
                return asyncio.run(main_async(args))
            except KeyboardInterrupt:
                return 0
    except SingletonBotError as e:
        logger.error(str(e))
        print(f"\n{e}\n", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
