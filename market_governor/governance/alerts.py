"""
Best-effort out-of-band alerting.

``AlertDispatcher.notify()`` returns immediately: delivery runs as a detached
asyncio task that POSTs the message to a Telegram-style bot API.  Delivery
failures are logged and swallowed, so alerting can never fail the governed
call that triggered it.  Nothing is retried or persisted.

Bounds
------
  - At most ``max_pending`` deliveries are in flight; further alerts are
    dropped with a warning until some complete.
  - ``cooldown_seconds`` (per alert kind, 0 = off) suppresses bursts, e.g.
    one alert per block wave rather than one per blocked response.
  - The last ``history_size`` messages are kept in memory for status output.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Optional

import httpx

from market_governor.governance.models import AlertChannel, AlertMessage
from market_governor.utils.time_utils import Clock, monotonic

logger = logging.getLogger(__name__)

ALERT_PREFIX = "[market-governor]"


class AlertDispatcher:
    """Fire-and-forget notifier.

    Args:
        client:           Shared ``httpx.AsyncClient``.  When ``None`` the
                          dispatcher opens (and later closes) its own.
        cooldown_seconds: Minimum gap between two alerts of the same kind.
        max_pending:      Maximum concurrently running deliveries.
        history_size:     Number of recent messages retained.
        timeout_seconds:  Per-delivery HTTP timeout.
        clock:            Monotonic time source.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        cooldown_seconds: float = 0.0,
        max_pending: int = 32,
        history_size: int = 200,
        timeout_seconds: float = 10.0,
        clock: Clock = monotonic,
    ) -> None:
        self._client           = client
        self._owns_client      = client is None
        self._cooldown_seconds = cooldown_seconds
        self._max_pending      = max_pending
        self._timeout_seconds  = timeout_seconds
        self._clock            = clock
        self._pending: set[asyncio.Task] = set()
        self._last_by_kind: dict[str, float] = {}
        self.history: deque[AlertMessage] = deque(maxlen=history_size)

        self.sent       = 0
        self.failed     = 0
        self.dropped    = 0
        self.suppressed = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    def notify(
        self,
        message: str,
        channel: Optional[AlertChannel],
        kind: str = "blocking",
    ) -> Optional[asyncio.Task]:
        """Schedule delivery of ``message`` and return without waiting.

        Returns:
            The delivery task, or ``None`` if nothing was scheduled (no
            channel, cooldown, in-flight bound reached, or no running loop).
        """
        if channel is None:
            logger.debug("Alert not sent (no channel configured): %s", message)
            return None

        now = self._clock()
        last = self._last_by_kind.get(kind)
        if self._cooldown_seconds > 0 and last is not None and now - last < self._cooldown_seconds:
            self.suppressed += 1
            logger.info("Alert suppressed by %s cooldown: %s", kind, message)
            return None

        if len(self._pending) >= self._max_pending:
            self.dropped += 1
            logger.warning(
                "Alert dropped (%d deliveries already in flight): %s",
                len(self._pending), message,
            )
            return None

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.dropped += 1
            logger.warning("Alert dropped (no running event loop): %s", message)
            return None

        alert = AlertMessage(text=f"{ALERT_PREFIX} {message}", kind=kind)
        self.history.append(alert)
        self._last_by_kind[kind] = now

        task = loop.create_task(self._deliver(alert, channel))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, alert: AlertMessage, channel: AlertChannel) -> None:
        try:
            client = self._get_client()
            resp = await client.post(
                channel.send_url,
                json={
                    "chat_id": channel.chat_id,
                    "text": alert.text,
                    "disable_web_page_preview": True,
                },
                timeout=self._timeout_seconds,
            )
            resp.raise_for_status()
            self.sent += 1
            logger.info("Alert delivered (%s).", alert.kind)
        except httpx.HTTPError as exc:
            self.failed += 1
            logger.error("Alert delivery failed: %s", exc)
        except Exception as exc:
            self.failed += 1
            logger.error("Alert delivery failed unexpectedly: %s", exc, exc_info=True)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def drain(self) -> None:
        """Wait for every in-flight delivery to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
