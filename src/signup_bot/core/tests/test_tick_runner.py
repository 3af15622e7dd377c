"""
Tests for TickRunner.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from signup_bot.core import TickRunner


@pytest.fixture
def fake_scheduler():
    scheduler = MagicMock()
    scheduler.run_tick = AsyncMock(return_value=MagicMock(name="report"))
    return scheduler


@pytest.mark.asyncio
class TestTickRunner:

    async def test_run_once_returns_report(self, fake_scheduler, window_open_now):
        runner = TickRunner(fake_scheduler)

        report = await runner.run_once(window_open_now)

        fake_scheduler.run_tick.assert_awaited_once_with(window_open_now)
        assert report is fake_scheduler.run_tick.return_value
        assert runner.ticks_run == 1
        assert runner.last_report is report

    async def test_run_once_swallows_tick_failure(self, fake_scheduler):
        fake_scheduler.run_tick.side_effect = RuntimeError("boom")
        runner = TickRunner(fake_scheduler)

        assert await runner.run_once() is None
        assert runner.tick_errors == 1
        assert runner.ticks_run == 0

    async def test_runs_immediately_then_on_interval(self, fake_scheduler):
        runner = TickRunner(fake_scheduler, interval_seconds=0.01)

        await runner.start()
        await asyncio.sleep(0.05)
        await runner.stop()

        assert fake_scheduler.run_tick.await_count >= 2
        assert runner.is_running is False

    async def test_loop_survives_failing_ticks(self, fake_scheduler):
        fake_scheduler.run_tick.side_effect = RuntimeError("boom")
        runner = TickRunner(fake_scheduler, interval_seconds=0.01)

        await runner.start()
        await asyncio.sleep(0.05)
        await runner.stop()

        assert runner.tick_errors >= 2

    async def test_no_immediate_tick(self, fake_scheduler):
        runner = TickRunner(fake_scheduler, interval_seconds=10, run_immediately=False)

        await runner.start()
        await asyncio.sleep(0)
        await runner.stop()

        fake_scheduler.run_tick.assert_not_called()

    async def test_start_twice_is_noop(self, fake_scheduler):
        runner = TickRunner(fake_scheduler, interval_seconds=10, run_immediately=False)

        await runner.start()
        task = runner._task
        await runner.start()

        assert runner._task is task
        await runner.stop()

    async def test_stop_when_not_running(self, fake_scheduler):
        runner = TickRunner(fake_scheduler)
        await runner.stop()
        assert runner.is_running is False
