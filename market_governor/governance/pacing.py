"""
Randomized inter-request pacing.

Each dispatch draws a target gap uniformly from
[min_delay_seconds, max_delay_seconds] and, if less time than that has passed
since the previous dispatch was released, suspends the caller for the
difference.  "Now" is recorded as the new release time after the wait,
whether or not a wait was needed.

The result is a humanised cadence rather than a strict minimum interval:
spacing averages (min + max) / 2 under sustained load, and is never shorter
than min_delay_seconds between two released dispatches.

The suspension is an ``await`` on the injected sleep; a cancelled wait never
records a release, so a cancelled call does not count as "a call happened"
for pacing purposes.
"""

from __future__ import annotations

import logging
import random
from typing import Optional

from market_governor.governance.models import GovernanceConfig
from market_governor.utils.time_utils import Clock, Sleep, async_sleep, monotonic

logger = logging.getLogger(__name__)


class PacingScheduler:
    """Suspends callers so that dispatches follow a randomized cadence."""

    def __init__(
        self,
        clock: Clock = monotonic,
        sleep: Sleep = async_sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self._rng   = rng or random.Random()
        self._last_dispatch_at: Optional[float] = None

    @property
    def last_dispatch_at(self) -> Optional[float]:
        return self._last_dispatch_at

    def compute_target(self, config: GovernanceConfig) -> float:
        """Draw a target gap in [min_delay_seconds, max_delay_seconds]."""
        span = config.max_delay_seconds - config.min_delay_seconds
        return config.min_delay_seconds + self._rng.random() * span

    async def wait_turn(self, config: GovernanceConfig) -> float:
        """Suspend until the randomized gap since the last dispatch has elapsed.

        Args:
            config: Policy in force for this dispatch.

        Returns:
            Seconds actually waited (0.0 when no wait was needed).
        """
        target = self.compute_target(config)
        waited = 0.0

        if self._last_dispatch_at is not None:
            elapsed = self._clock() - self._last_dispatch_at
            if elapsed < target:
                waited = target - elapsed
                logger.debug(
                    "Pacing: waiting %.2fs (target %.2fs, elapsed %.2fs).",
                    waited, target, elapsed,
                )
                await self._sleep(waited)

        self._last_dispatch_at = self._clock()
        return waited
