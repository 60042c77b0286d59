"""
Shared pytest fixtures for the market governor test suite.

Provides:
  - ``clock``: A ``FakeClock`` whose ``sleep`` advances time instead of
    suspending, so pacing and TTL tests run instantly and deterministically.
  - ``make_governor``: Factory for a ``RequestGovernor`` wired to the fake
    clock and a seeded RNG.  HTTP is mocked per test with ``respx``.
  - ``settings_db``: A fresh in-memory SQLite connection with the settings
    schema applied.
"""

from __future__ import annotations

import random
import sqlite3
from typing import Any, Callable, Generator

import pytest

from market_governor.db.schema import apply_schema
from market_governor.governance.governor import RequestGovernor
from market_governor.governance.models import GovernanceConfig


# ── Fake time ─────────────────────────────────────────────────────────────────


class FakeClock:
    """Monotonic clock stand-in.

    ``sleep`` records the requested duration and advances ``now`` by it
    without yielding to the event loop.
    """

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ── Governor factory ──────────────────────────────────────────────────────────

# No pacing, no cache: each test opts into the behaviour it exercises.
FAST_POLICY = dict(
    max_requests_per_window=100,
    min_delay_seconds=0.0,
    max_delay_seconds=0.0,
    caching_enabled=False,
)


@pytest.fixture
def make_governor(clock: FakeClock) -> Callable[..., RequestGovernor]:
    """Return a factory: ``make_governor(**policy_overrides, **governor_kwargs)``.

    Policy field names go into ``GovernanceConfig``; anything else is passed
    to ``RequestGovernor``.  Use as ``async with make_governor(...) as gov``.
    """

    def _factory(**kwargs: Any) -> RequestGovernor:
        policy = dict(FAST_POLICY)
        for name in list(kwargs):
            if name in GovernanceConfig.model_fields:
                policy[name] = kwargs.pop(name)
        kwargs.setdefault("rng", random.Random(1234))
        kwargs.setdefault("sleep", clock.sleep)
        return RequestGovernor(GovernanceConfig(**policy), clock=clock, **kwargs)

    return _factory


# ── Database fixture ──────────────────────────────────────────────────────────


@pytest.fixture
def settings_db() -> Generator[sqlite3.Connection, None, None]:
    """Yield a fresh in-memory SQLite connection with the settings schema."""
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    apply_schema(conn)
    yield conn
    conn.close()
