"""
TTL-keyed store of prior successful responses.

Keys are SHA-256 digests of the request URL plus its canonicalised options,
so the same logical request always maps to the same entry regardless of dict
ordering.  Only structurally parseable (JSON) bodies are cached; anything
else is skipped without error.

Eviction is lazy: an expired entry is dropped when it is read.  There is no
background sweep and no capacity bound here.  Bulk eviction when the store
grows too large is the self-monitor's job.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Mapping, Optional

from market_governor.governance.models import CacheEntry
from market_governor.utils.time_utils import Clock, monotonic

logger = logging.getLogger(__name__)


def make_cache_key(url: str, options: Optional[Mapping[str, Any]] = None) -> str:
    """Return a deterministic digest for ``(url, options)``.

    Args:
        url:     Request URL.
        options: Request options (method, params, headers, body, ...).

    Returns:
        64-character hex SHA-256 digest.
    """
    canonical = json.dumps(
        {"url": url, "options": dict(options or {})},
        sort_keys=True,
        default=str,
        ensure_ascii=False,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def parse_payload(body: str) -> tuple[bool, Any]:
    """Try to parse a response body as JSON.

    Returns:
        ``(True, parsed)`` on success, ``(False, None)`` otherwise.
    """
    try:
        return True, json.loads(body)
    except (TypeError, ValueError):
        return False, None


class ResponseCache:
    """In-memory response cache with lazy TTL eviction.

    Args:
        clock: Monotonic time source (seconds).
    """

    def __init__(self, clock: Clock = monotonic) -> None:
        self._clock   = clock
        self._entries: dict[str, CacheEntry] = {}
        self.hits     = 0
        self.misses   = 0
        self.expired  = 0

    def get(self, key: str, ttl_seconds: float) -> Optional[CacheEntry]:
        """Return the live entry for ``key``, evicting it if it has expired."""
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        if self._clock() - entry.inserted_at > ttl_seconds:
            del self._entries[key]
            self.expired += 1
            self.misses  += 1
            return None

        self.hits += 1
        return entry

    def put(self, key: str, payload: Any) -> None:
        self._entries[key] = CacheEntry(payload=payload, inserted_at=self._clock())

    def clear(self) -> int:
        """Drop every entry.  Returns the number of entries removed."""
        removed = len(self._entries)
        self._entries.clear()
        logger.info("Response cache cleared (%d entries).", removed)
        return removed

    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
