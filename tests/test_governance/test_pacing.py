"""
Tests for governance/pacing.py — PacingScheduler.

Covers:
  - First dispatch never waits
  - Wait = target - elapsed when the gap is short; no wait otherwise
  - Targets drawn within [min, max]
  - A cancelled wait does not record a release
"""

import asyncio
import random

import pytest

from market_governor.governance.models import GovernanceConfig
from market_governor.governance.pacing import PacingScheduler


def _fixed(delay: float) -> GovernanceConfig:
    return GovernanceConfig(min_delay_seconds=delay, max_delay_seconds=delay)


class TestWaitTurn:
    @pytest.mark.asyncio
    async def test_first_call_does_not_wait(self, clock):
        pacer = PacingScheduler(clock=clock, sleep=clock.sleep)
        waited = await pacer.wait_turn(_fixed(5.0))

        assert waited == 0.0
        assert clock.sleeps == []
        assert pacer.last_dispatch_at == clock.now

    @pytest.mark.asyncio
    async def test_back_to_back_waits_full_target(self, clock):
        pacer = PacingScheduler(clock=clock, sleep=clock.sleep)
        await pacer.wait_turn(_fixed(2.0))
        waited = await pacer.wait_turn(_fixed(2.0))

        assert waited == pytest.approx(2.0)
        assert clock.sleeps == [pytest.approx(2.0)]

    @pytest.mark.asyncio
    async def test_waits_only_the_remainder(self, clock):
        pacer = PacingScheduler(clock=clock, sleep=clock.sleep)
        await pacer.wait_turn(_fixed(2.0))
        clock.advance(0.5)
        waited = await pacer.wait_turn(_fixed(2.0))

        assert waited == pytest.approx(1.5)

    @pytest.mark.asyncio
    async def test_no_wait_when_gap_already_elapsed(self, clock):
        pacer = PacingScheduler(clock=clock, sleep=clock.sleep)
        await pacer.wait_turn(_fixed(2.0))
        clock.advance(10.0)
        waited = await pacer.wait_turn(_fixed(2.0))

        assert waited == 0.0
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_release_recorded_after_wait(self, clock):
        pacer = PacingScheduler(clock=clock, sleep=clock.sleep)
        await pacer.wait_turn(_fixed(3.0))
        start = clock.now
        await pacer.wait_turn(_fixed(3.0))
        assert pacer.last_dispatch_at == pytest.approx(start + 3.0)

    @pytest.mark.asyncio
    async def test_zero_delay_never_waits(self, clock):
        pacer = PacingScheduler(clock=clock, sleep=clock.sleep)
        for _ in range(5):
            await pacer.wait_turn(_fixed(0.0))
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_cancelled_wait_does_not_record_release(self, clock):
        gate = asyncio.Event()

        async def blocking_sleep(seconds: float) -> None:
            await gate.wait()

        pacer = PacingScheduler(clock=clock, sleep=blocking_sleep)
        await pacer.wait_turn(_fixed(5.0))
        first_release = pacer.last_dispatch_at

        clock.advance(1.0)
        task = asyncio.create_task(pacer.wait_turn(_fixed(5.0)))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert pacer.last_dispatch_at == first_release


class TestComputeTarget:
    def test_targets_within_bounds(self, clock):
        pacer = PacingScheduler(clock=clock, rng=random.Random(7))
        cfg = GovernanceConfig(min_delay_seconds=5.0, max_delay_seconds=15.0)
        targets = [pacer.compute_target(cfg) for _ in range(200)]

        assert all(5.0 <= t <= 15.0 for t in targets)
        assert max(targets) - min(targets) > 5.0

    def test_equal_bounds_give_constant_target(self, clock):
        pacer = PacingScheduler(clock=clock)
        assert pacer.compute_target(_fixed(4.0)) == 4.0
