"""Tests for the clocks."""

import asyncio

import pytest

from sermonsync.clock import SystemClock
from sermonsync.testing import ManualClock


class TestManualClock:
    def test_timers_fire_in_due_order(self):
        clock = ManualClock()
        fired = []
        clock.call_later(20, lambda: fired.append(("b", clock.monotonic())))
        clock.call_later(10, lambda: fired.append(("a", clock.monotonic())))

        assert clock.advance(15) == 1
        assert clock.advance(5) == 1

        assert fired == [("a", 10.0), ("b", 20.0)]
        assert clock.monotonic() == 20.0

    def test_cancelled_timer_does_not_fire(self):
        clock = ManualClock()
        fired = []
        handle = clock.call_later(5, lambda: fired.append(1))
        handle.cancel()

        assert clock.advance(10) == 0
        assert fired == []
        assert clock.pending_delays == []

    def test_now_tracks_elapsed_time(self):
        clock = ManualClock()
        start = clock.now()
        clock.advance_minutes(2)
        assert (clock.now() - start).total_seconds() == 120

    @pytest.mark.asyncio
    async def test_sleep_advances(self):
        clock = ManualClock()
        await clock.sleep(3)
        assert clock.sleeps == [3]
        assert clock.monotonic() == 3


class TestSystemClock:
    @pytest.mark.asyncio
    async def test_call_later(self):
        clock = SystemClock()
        fired = asyncio.Event()

        clock.call_later(0, fired.set)

        await asyncio.wait_for(fired.wait(), timeout=1)
        assert clock.now().tzinfo is not None
