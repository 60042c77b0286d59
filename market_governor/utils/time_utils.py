"""
Clock helpers shared by the governance components.

Key concepts:
  - Monotonic clock: every interval the governor measures (rate window,
    pacing gap, cache age) uses ``time.monotonic`` so wall-clock jumps cannot
    reopen a window or expire the cache early.
  - Injectable time: components accept a ``clock`` callable and, where they
    suspend, an async ``sleep`` callable.  Tests pass a fake clock instead.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

monotonic: Clock = time.monotonic
async_sleep: Sleep = asyncio.sleep


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string (seconds precision)."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def format_duration(seconds: float) -> str:
    """Render a duration compactly: ``"850ms"``, ``"7.5s"``, ``"30m"``, ``"2h"``.

    Args:
        seconds: Non-negative duration.

    Returns:
        Human-readable string for CLI tables and log lines.
    """
    if seconds < 1.0:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60.0:
        return f"{seconds:.1f}s".replace(".0s", "s")
    if seconds < 3600.0:
        return f"{seconds / 60:.0f}m"
    return f"{seconds / 3600:.0f}h"
