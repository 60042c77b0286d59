"""
Identity rotation: proxy pool cursor and client-fingerprint table.

The proxy pool is an ordered, append-only list.  There is no removal API and
no health-based eviction: a misbehaving proxy stays in rotation until the
process exits, and callers must tolerate a bad endpoint on any given call.

Fingerprints are User-Agent strings picked independently and uniformly per
call.
"""

from __future__ import annotations

import logging
import random
from typing import ClassVar, Optional, Sequence

from market_governor.governance.models import ProxyEndpoint

logger = logging.getLogger(__name__)


class IdentityRotator:
    """Round-robin proxy cursor plus random fingerprint selection.

    Args:
        fingerprints: Override for the built-in User-Agent table.  An empty
                      or ``None`` value keeps the defaults.
        rng:          Random source (seeded in tests).
    """

    DEFAULT_FINGERPRINTS: ClassVar[tuple[str, ...]] = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1",
        "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1",
        "Mozilla/5.0 (Android 14; Mobile; rv:120.0) Gecko/120.0 Firefox/120.0",
    )

    def __init__(
        self,
        fingerprints: Optional[Sequence[str]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._fingerprints: tuple[str, ...] = (
            tuple(fingerprints) if fingerprints else self.DEFAULT_FINGERPRINTS
        )
        self._rng     = rng or random.Random()
        self._proxies: list[ProxyEndpoint] = []
        self._cursor  = 0

    # ── Pool ──────────────────────────────────────────────────────────────────

    def add_proxy(self, endpoint: ProxyEndpoint) -> None:
        """Append a proxy to the end of the rotation."""
        self._proxies.append(endpoint)
        logger.info("Proxy added to pool: %s (pool size %d).", endpoint.label, len(self._proxies))

    @property
    def proxies(self) -> tuple[ProxyEndpoint, ...]:
        return tuple(self._proxies)

    @property
    def cursor(self) -> int:
        """Pool index the next ``next_proxy()`` call will return."""
        return self._cursor

    def next_proxy(self, enabled: bool = True) -> Optional[ProxyEndpoint]:
        """Return the proxy under the cursor and advance it, wrapping at the end.

        Returns ``None`` (without moving the cursor) when rotation is
        disabled or the pool is empty.
        """
        if not enabled or not self._proxies:
            return None
        proxy = self._proxies[self._cursor]
        self._cursor = (self._cursor + 1) % len(self._proxies)
        return proxy

    # ── Fingerprints ──────────────────────────────────────────────────────────

    @property
    def fingerprints(self) -> tuple[str, ...]:
        return self._fingerprints

    def random_fingerprint(self) -> str:
        return self._rng.choice(self._fingerprints)
