"""
Fixed-window admission counter.

One ``RateWindow`` is tracked for the whole governor.  Each ``admit()``:

  1. Reopens the window (count = 0, window_start = now) when more than one
     window duration has passed since it opened.
  2. Refuses when count >= max_requests_per_window.
  3. Otherwise increments count and admits.

Fixed window, not sliding
-------------------------
Up to ``2 x max_requests_per_window`` calls can be admitted across a window
boundary (a full budget at the end of one window, another at the start of
the next).  This is an accepted approximation; a sliding log would change
observable admission behaviour.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from market_governor.governance.models import GovernanceConfig, RateWindow
from market_governor.utils.time_utils import Clock, monotonic

logger = logging.getLogger(__name__)


class RateLimiter:
    """Tracks the per-minute request budget.

    Args:
        clock: Monotonic time source (seconds).
    """

    def __init__(self, clock: Clock = monotonic) -> None:
        self._clock  = clock
        self._window = RateWindow()

    def admit(self, config: GovernanceConfig) -> bool:
        """Consume one unit of budget if available.

        Args:
            config: Policy in force for this dispatch.

        Returns:
            True if the call is admitted, False if the budget is spent.
        """
        now = self._clock()
        start = self._window.window_start
        if start is None or now - start > config.window_seconds:
            self._window = RateWindow(count=0, window_start=now)

        if self._window.count >= config.max_requests_per_window:
            logger.warning(
                "Admission refused: %d/%d requests used in current window.",
                self._window.count, config.max_requests_per_window,
            )
            return False

        self._window.count += 1
        return True

    @property
    def count(self) -> int:
        return self._window.count

    def snapshot(self) -> RateWindow:
        """Return a copy of the current window (safe to hand to callers)."""
        return replace(self._window)
