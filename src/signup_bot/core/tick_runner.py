"""
TickRunner - Periodic driver for the signup scheduler.

The single tick source for the process: runs one scheduler tick right away,
then one every ``interval_seconds`` until stopped. A tick that raises is
logged and the loop carries on; the next tick retries.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .scheduler import SignupScheduler, TickReport

logger = logging.getLogger(__name__)


class TickRunner:
    """
    Runs scheduler ticks in a background task.

    Usage:
        runner = TickRunner(scheduler, interval_seconds=300)
        await runner.start()
        # ... bot runs ...
        await runner.stop()
    """

    def __init__(
        self,
        scheduler: "SignupScheduler",
        interval_seconds: float = 300,
        run_immediately: bool = True,
    ) -> None:
        self._scheduler = scheduler
        self._interval = interval_seconds
        self._run_immediately = run_immediately

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

        self.ticks_run = 0
        self.tick_errors = 0
        self.last_report: Optional["TickReport"] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the tick loop."""
        if self._running:
            logger.warning("TickRunner already running")
            return

        self._running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop(), name="scheduler_tick")
        logger.info(f"Tick runner started (interval={self._interval}s)")

    async def stop(self) -> None:
        """Stop the loop, letting an in-flight tick finish if it can."""
        if not self._running:
            return

        logger.info("Stopping tick runner...")
        self._running = False
        self._stop_event.set()

        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=self._interval)
            except asyncio.TimeoutError:
                self._task.cancel()
                await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

        logger.info("Tick runner stopped")

    async def wait(self) -> None:
        """Block until the loop exits."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def run_once(self, now: Optional[datetime] = None) -> Optional["TickReport"]:
        """Run a single tick, logging instead of raising on failure."""
        now = now or datetime.now(timezone.utc)
        try:
            report = await self._scheduler.run_tick(now)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.tick_errors += 1
            logger.exception(f"Scheduler tick failed: {e}")
            return None

        self.ticks_run += 1
        self.last_report = report
        return report

    async def _loop(self) -> None:
        if self._run_immediately and self._running:
            await self.run_once()

        while self._running:
            try:
                # Wait for interval or stop
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
                    break  # Stop requested
                except asyncio.TimeoutError:
                    pass

                if not self._running:
                    break

                await self.run_once()

            except asyncio.CancelledError:
                break
