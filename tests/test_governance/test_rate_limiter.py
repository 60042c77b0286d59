"""
Tests for governance/rate_limiter.py — RateLimiter.admit().

Covers:
  - Admits exactly max_requests_per_window calls per window
  - Refusals do not consume budget
  - Window resets only once more than 60s have passed since it opened
  - Zero budget refuses everything, including right after a reset
  - Budget lowered mid-window applies to the current count
"""

from market_governor.governance.models import GovernanceConfig
from market_governor.governance.rate_limiter import RateLimiter


def _cfg(budget: int) -> GovernanceConfig:
    return GovernanceConfig(max_requests_per_window=budget)


class TestRateLimiter:
    def test_admits_up_to_budget_then_refuses(self, clock):
        limiter = RateLimiter(clock=clock)
        cfg = _cfg(3)

        assert [limiter.admit(cfg) for _ in range(4)] == [True, True, True, False]
        assert limiter.count == 3

    def test_refusal_does_not_consume(self, clock):
        limiter = RateLimiter(clock=clock)
        cfg = _cfg(1)
        limiter.admit(cfg)
        for _ in range(5):
            assert limiter.admit(cfg) is False
        assert limiter.count == 1

    def test_window_resets_after_sixty_seconds(self, clock):
        limiter = RateLimiter(clock=clock)
        cfg = _cfg(2)
        limiter.admit(cfg)
        limiter.admit(cfg)
        assert limiter.admit(cfg) is False

        clock.advance(60.5)
        assert limiter.admit(cfg) is True
        assert limiter.count == 1

    def test_window_not_reset_at_exactly_sixty_seconds(self, clock):
        limiter = RateLimiter(clock=clock)
        cfg = _cfg(1)
        limiter.admit(cfg)

        clock.advance(60.0)
        assert limiter.admit(cfg) is False

    def test_window_measured_from_start_not_last_call(self, clock):
        limiter = RateLimiter(clock=clock)
        cfg = _cfg(3)
        limiter.admit(cfg)            # window opens at t0
        clock.advance(50.0)
        limiter.admit(cfg)
        clock.advance(15.0)           # t0 + 65: window expired
        assert limiter.admit(cfg) is True
        assert limiter.count == 1

    def test_zero_budget_refuses_everything(self, clock):
        limiter = RateLimiter(clock=clock)
        cfg = _cfg(0)
        assert limiter.admit(cfg) is False
        clock.advance(120.0)
        assert limiter.admit(cfg) is False
        assert limiter.count == 0

    def test_lowered_budget_applies_mid_window(self, clock):
        limiter = RateLimiter(clock=clock)
        for _ in range(5):
            limiter.admit(_cfg(10))
        assert limiter.admit(_cfg(5)) is False
        assert limiter.admit(_cfg(10)) is True

    def test_snapshot_is_a_copy(self, clock):
        limiter = RateLimiter(clock=clock)
        limiter.admit(_cfg(5))
        snap = limiter.snapshot()
        snap.count = 99
        assert limiter.count == 1
        assert snap.window_start == clock.now
