"""
RequestGovernor: the single data-plane entry point for marketplace calls.

Pipeline executed by ``dispatch()``
-----------------------------------
  1. Admission      — RateLimiter.admit(); refused → RateLimitExceeded,
                      no I/O, no delay, no alert.
  2. Cache lookup   — a live hit returns immediately (identity, pacing and
                      network are skipped).  Step 1 has already consumed a
                      unit of budget.
  3. Pacing         — PacingScheduler.wait_turn().
  4. Headers        — caller headers + default headers + governance headers
                      (rotated User-Agent, fixed locale/accept headers).
  5. Identity       — IdentityRotator.next_proxy(); recorded and logged only.
                      Routing traffic through the proxy is not implemented.
  6. Network call   — shared httpx.AsyncClient.
  7. Classification — BlockingClassifier; a blocked verdict is recorded as a
                      BlockEvent and alerted, but the response is returned
                      unchanged.
  8. Cache update   — 2xx + caching enabled + JSON body.
  9. Return         — DispatchOutcome.  Transport errors and malformed URLs
                      are alerted and re-raised as NetworkFailure.

Concurrency
-----------
Steps 1–3 run under one ``asyncio.Lock`` so two in-flight dispatches cannot
both pass admission on a stale count or pace against a stale timestamp.  The
network call (step 6) runs outside the lock.  The policy is read inside the
lock, so a dispatch queued behind one that is pacing sees any ``configure()``
or emergency stop issued while it waited.  A dispatch cancelled while pacing
keeps its admission (it was counted before it could be cancelled) but is not
recorded as a release for pacing purposes.

No retries
----------
Nothing here retries.  Retrying inside the governor would compound
rate-limit pressure; retry policy belongs to the caller.
"""

from __future__ import annotations

import asyncio
import json as jsonlib
import logging
import random
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

import httpx
from pydantic import ValidationError

from market_governor.governance.alerts import AlertDispatcher
from market_governor.governance.cache import ResponseCache, make_cache_key, parse_payload
from market_governor.governance.classifier import BlockingClassifier, BlockingRules
from market_governor.governance.errors import (
    ConfigurationInvalid,
    NetworkFailure,
    RateLimitExceeded,
)
from market_governor.governance.identity import IdentityRotator
from market_governor.governance.models import BlockEvent, GovernanceConfig, Identity, ProxyEndpoint
from market_governor.governance.pacing import PacingScheduler
from market_governor.governance.rate_limiter import RateLimiter
from market_governor.utils.time_utils import Clock, Sleep, async_sleep, monotonic

logger = logging.getLogger(__name__)

GOVERNANCE_HEADERS: dict[str, str] = {
    "Accept-Language": "ru-RU,ru;q=0.9,en;q=0.8",
    "Accept": "application/json, text/plain, */*",
    "Cache-Control": "no-cache",
}

# Blocked-response events kept for stats and status reports.
BLOCK_HISTORY_SIZE = 100


# ── Result types ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DispatchOutcome:
    """What a caller gets back from ``dispatch()``.

    Attributes:
        status_code:     HTTP status (200 for cache hits).
        text:            Response body as text.
        headers:         Response headers (empty for cache hits).
        from_cache:      True if served from the response cache.
        proxy:           Proxy selected for this call, if any.
        identity:        Proxy index + User-Agent presented (None for cache hits).
        elapsed_seconds: Wall time of the network call (0.0 for cache hits).
    """

    status_code:     int
    text:            str
    headers:         dict[str, str] = field(default_factory=dict)
    from_cache:      bool = False
    proxy:           Optional[ProxyEndpoint] = None
    identity:        Optional[Identity] = None
    elapsed_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def fingerprint(self) -> Optional[str]:
        return self.identity.fingerprint if self.identity else None

    def json(self) -> Any:
        return jsonlib.loads(self.text)


@dataclass(frozen=True)
class GovernorStats:
    """Read-only snapshot for operator dashboards and the self-monitor."""

    request_count:       int
    cache_size:          int
    proxy_count:         int
    current_proxy_index: int
    config:              GovernanceConfig
    dispatched:          int = 0
    cache_hits:          int = 0
    rejected:            int = 0
    blocked_responses:   int = 0
    network_failures:    int = 0
    recent_blocks:       tuple[BlockEvent, ...] = ()

    @property
    def utilization(self) -> float:
        """Fraction of the window budget used (1.0 when traffic is halted)."""
        if self.config.max_requests_per_window == 0:
            return 1.0
        return self.request_count / self.config.max_requests_per_window


# ── Governor ──────────────────────────────────────────────────────────────────


class RequestGovernor:
    """Mediates every outbound call to the marketplace API.

    Construct once at process start (see ``bootstrap.build_governor``) and
    pass the instance to whatever needs to call the marketplace.

    Args:
        config:          Initial policy.  Defaults to ``GovernanceConfig()``.
        client:          Shared ``httpx.AsyncClient``; created if omitted.
        rules:           Blocking rule set for the classifier.
        alerts:          Alert dispatcher; created on the same client if omitted.
        fingerprints:    Override for the User-Agent table.
        default_headers: Headers sent on every call (e.g. the API credential).
        block_history_size:
                         Blocked-response events retained for ``stats()``.
        close_client:    Close ``client`` in ``aclose()``.  Defaults to True
                         only when the governor created the client itself.
        clock, sleep:    Injectable time sources.
        rng:             Random source shared by pacing and fingerprinting.
    """

    def __init__(
        self,
        config: Optional[GovernanceConfig] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        rules: Optional[BlockingRules] = None,
        alerts: Optional[AlertDispatcher] = None,
        fingerprints: Optional[Sequence[str]] = None,
        default_headers: Optional[Mapping[str, str]] = None,
        block_history_size: int = BLOCK_HISTORY_SIZE,
        close_client: Optional[bool] = None,
        clock: Clock = monotonic,
        sleep: Sleep = async_sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        rng = rng or random.Random()
        self._config          = config or GovernanceConfig()
        self._client          = client or httpx.AsyncClient()
        self._owns_client     = client is None if close_client is None else close_client
        self._default_headers = dict(default_headers or {})
        self._clock           = clock

        self._limiter    = RateLimiter(clock=clock)
        self._pacer      = PacingScheduler(clock=clock, sleep=sleep, rng=rng)
        self._identity   = IdentityRotator(fingerprints=fingerprints, rng=rng)
        self._cache      = ResponseCache(clock=clock)
        self._classifier = BlockingClassifier(rules)
        self.alerts      = alerts or AlertDispatcher(client=self._client, clock=clock)

        self._lock = asyncio.Lock()

        self._dispatched        = 0
        self._cache_hits        = 0
        self._rejected          = 0
        self._blocked_responses = 0
        self._network_failures  = 0
        self._block_events: deque[BlockEvent] = deque(maxlen=block_history_size)

    # ── Configuration ─────────────────────────────────────────────────────────

    @property
    def config(self) -> GovernanceConfig:
        return self._config

    def configure(
        self,
        partial: Optional[Mapping[str, Any]] = None,
        **changes: Any,
    ) -> GovernanceConfig:
        """Merge ``partial`` / keyword changes into the policy.

        Takes effect on the next dispatch.

        Returns:
            The new ``GovernanceConfig``.

        Raises:
            ConfigurationInvalid: If the merged policy violates an invariant
                or names an unknown field.  The current policy is unchanged.
        """
        merged = self._config.model_dump()
        merged.update(dict(partial or {}))
        merged.update(changes)
        try:
            new_config = GovernanceConfig.model_validate(merged)
        except ValidationError as exc:
            raise ConfigurationInvalid(f"Rejected configuration update: {exc}") from exc

        self._config = new_config
        logger.info(
            "Governance config updated: budget=%d/min delay=%.1f-%.1fs "
            "rotation=%s caching=%s ttl=%.0fs",
            new_config.max_requests_per_window,
            new_config.min_delay_seconds,
            new_config.max_delay_seconds,
            new_config.identity_rotation_enabled,
            new_config.caching_enabled,
            new_config.cache_ttl_seconds,
        )
        return new_config

    def replace_config(self, config: GovernanceConfig) -> None:
        """Swap in an already-validated policy."""
        self._config = config

    # ── Identity ──────────────────────────────────────────────────────────────

    def add_proxy(self, endpoint: ProxyEndpoint) -> None:
        self._identity.add_proxy(endpoint)

    @property
    def proxies(self) -> tuple[ProxyEndpoint, ...]:
        return self._identity.proxies

    # ── Cache ─────────────────────────────────────────────────────────────────

    def clear_cache(self) -> int:
        return self._cache.clear()

    # ── Stats ─────────────────────────────────────────────────────────────────

    def stats(self) -> GovernorStats:
        return GovernorStats(
            request_count=self._limiter.count,
            cache_size=self._cache.size(),
            proxy_count=len(self._identity.proxies),
            current_proxy_index=self._identity.cursor,
            config=self._config,
            dispatched=self._dispatched,
            cache_hits=self._cache_hits,
            rejected=self._rejected,
            blocked_responses=self._blocked_responses,
            network_failures=self._network_failures,
            recent_blocks=tuple(self._block_events),
        )

    # ── Dispatch ──────────────────────────────────────────────────────────────

    async def dispatch(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        content: Optional[str | bytes] = None,
    ) -> DispatchOutcome:
        """Perform one governed call.

        Raises:
            RateLimitExceeded: Admission refused.
            NetworkFailure:    Transport-level failure (chained).
        """
        method = method.upper()
        options = {
            "method": method,
            "headers": dict(headers or {}),
            "params": dict(params or {}),
            "json": json,
            "content": content.decode("utf-8", "replace") if isinstance(content, bytes) else content,
        }
        key = make_cache_key(url, options)

        # Steps 1–3: one critical section.
        async with self._lock:
            config = self._config
            if not self._limiter.admit(config):
                self._rejected += 1
                raise RateLimitExceeded(config.max_requests_per_window, config.window_seconds)

            if config.caching_enabled:
                entry = self._cache.get(key, config.cache_ttl_seconds)
                if entry is not None:
                    self._cache_hits += 1
                    logger.debug("Cache hit: %s %s", method, url)
                    return DispatchOutcome(
                        status_code=200,
                        text=jsonlib.dumps(entry.payload, ensure_ascii=False),
                        from_cache=True,
                    )

            await self._pacer.wait_turn(config)

        fingerprint = (
            self._identity.random_fingerprint()
            if config.fingerprint_rotation_enabled else None
        )
        out_headers = self._build_headers(headers, fingerprint)

        proxy_index = self._identity.cursor
        proxy = self._identity.next_proxy(config.identity_rotation_enabled)
        identity = Identity(
            proxy_index=proxy_index if proxy is not None else None,
            fingerprint=fingerprint,
        )
        if proxy is not None:
            logger.info("Using proxy #%d %s for %s %s", proxy_index, proxy.label, method, url)

        started = self._clock()
        try:
            response = await self._client.request(
                method,
                url,
                headers=out_headers,
                params=params,
                json=json,
                content=content,
            )
        # InvalidURL is not an HTTPError subclass.
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            self._network_failures += 1
            message = f"Request to {url} failed: {exc.__class__.__name__}: {exc}"
            logger.error("%s", message)
            self.alerts.notify(message, config.alert_channel, kind="network_failure")
            raise NetworkFailure(url, str(exc) or exc.__class__.__name__) from exc

        elapsed = self._clock() - started
        self._dispatched += 1
        text = response.text

        verdict = self._classifier.classify(response.status_code, text)
        if verdict.blocked:
            self._blocked_responses += 1
            self._block_events.append(BlockEvent(
                url=url,
                method=method,
                status_code=response.status_code,
                reason=verdict.reason or "",
                proxy=proxy.label if proxy is not None else None,
                fingerprint=fingerprint,
            ))
            message = (
                f"Blocking suspected for {method} {url} ({verdict.reason}). "
                f"Status: {response.status_code}, body: {text[:200]}"
            )
            logger.warning("%s", message)
            self.alerts.notify(message, config.alert_channel, kind="blocking")

        if response.is_success and config.caching_enabled:
            parsed_ok, payload = parse_payload(text)
            if parsed_ok:
                self._cache.put(key, payload)

        return DispatchOutcome(
            status_code=response.status_code,
            text=text,
            headers=dict(response.headers),
            from_cache=False,
            proxy=proxy,
            identity=identity,
            elapsed_seconds=elapsed,
        )

    def _build_headers(
        self,
        caller_headers: Optional[Mapping[str, str]],
        fingerprint: Optional[str],
    ) -> dict[str, str]:
        merged: dict[str, str] = dict(caller_headers or {})
        merged.update(self._default_headers)
        if fingerprint is not None:
            merged["User-Agent"] = fingerprint
        merged.update(GOVERNANCE_HEADERS)
        return merged

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def aclose(self) -> None:
        await self.alerts.aclose()
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "RequestGovernor":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
