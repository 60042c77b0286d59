"""
Periodic self-monitor for the request governor.

Runs on a fixed interval, independent of dispatch activity.  Each tick:

  1. Reads ``RequestGovernor.stats()``.
  2. Logs a warning (local only, no alert) when window utilization exceeds
     ``warn_utilization`` (default 0.8).
  3. Clears the response cache when it holds more than ``cache_ceiling``
     entries.  The cache has no capacity bound of its own.
  4. Counts blocked responses since the previous tick; when that reaches
     ``safe_mode_block_threshold`` it calls the escalation hook (normally
     ``BootstrapPolicy.escalate_to_safe_mode``).

A failing tick is logged and the loop carries on, the same way a failed
scheduled run never stops the daemon.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from market_governor.utils.time_utils import Sleep, async_sleep, utc_now_iso

if TYPE_CHECKING:
    from market_governor.config import MonitorConfig
    from market_governor.governance.governor import RequestGovernor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MonitorTickResult:
    """What one monitor pass observed and did.

    Attributes:
        checked_at:    ISO-8601 UTC timestamp.
        utilization:   request_count / max_requests_per_window.
        near_limit:    True if the utilization warning fired.
        cache_cleared: Entries evicted by the ceiling check (0 = none).
        new_blocked:   Blocked responses since the previous tick.
        escalated:     True if the escalation hook switched profiles.
    """

    checked_at:    str
    utilization:   float
    near_limit:    bool
    cache_cleared: int
    new_blocked:   int
    escalated:     bool


class SelfMonitor:
    """Reads governor statistics and applies the automatic safeguards.

    Args:
        governor: The governor being watched.
        settings: ``[monitor]`` section of ``AppConfig``.
        escalate: Called when a block wave is detected; returns True if it
                  changed the policy.
        sleep:    Async sleep used between ticks.
    """

    def __init__(
        self,
        governor: "RequestGovernor",
        settings: "MonitorConfig",
        escalate: Callable[[], bool],
        sleep: Sleep = async_sleep,
    ) -> None:
        self.governor  = governor
        self.settings  = settings
        self._escalate = escalate
        self._sleep    = sleep
        self._last_blocked = governor.stats().blocked_responses
        self.ticks     = 0

    def tick(self) -> MonitorTickResult:
        stats = self.governor.stats()
        self.ticks += 1

        near_limit = (
            not stats.config.is_halted
            and stats.utilization > self.settings.warn_utilization
        )
        if near_limit:
            logger.warning(
                "Approaching request budget: %d/%d requests in current window (%.0f%%).",
                stats.request_count,
                stats.config.max_requests_per_window,
                stats.utilization * 100,
            )

        cache_cleared = 0
        if stats.cache_size > self.settings.cache_ceiling:
            logger.info(
                "Response cache over ceiling (%d > %d); clearing.",
                stats.cache_size, self.settings.cache_ceiling,
            )
            cache_cleared = self.governor.clear_cache()

        new_blocked = stats.blocked_responses - self._last_blocked
        self._last_blocked = stats.blocked_responses

        escalated = False
        threshold = self.settings.safe_mode_block_threshold
        if threshold > 0 and new_blocked >= threshold:
            logger.warning(
                "%d blocked responses since last check (threshold %d).",
                new_blocked, threshold,
            )
            escalated = self._escalate()

        return MonitorTickResult(
            checked_at=utc_now_iso(),
            utilization=round(stats.utilization, 4),
            near_limit=near_limit,
            cache_cleared=cache_cleared,
            new_blocked=new_blocked,
            escalated=escalated,
        )

    async def run(self) -> None:
        """Tick every ``interval_seconds`` until cancelled."""
        logger.info("Self-monitor started (every %.0fs).", self.settings.interval_seconds)
        while True:
            await self._sleep(self.settings.interval_seconds)
            try:
                self.tick()
            except Exception as exc:
                logger.error("Self-monitor tick failed: %s", exc, exc_info=True)
