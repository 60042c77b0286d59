"""
Process-lifetime supervisor for the request governor.

Typical usage::

    from market_governor.config import load_config
    from market_governor.governance.bootstrap import create_runtime

    policy = create_runtime(load_config())
    await policy.initialize()          # conservative profile, proxies, monitor
    outcome = await policy.governor.dispatch("https://...")
    print(policy.status().recommendations)
    await policy.shutdown()

Startup sequence (``initialize``, idempotent)
---------------------------------------------
  1. Apply the conservative bootstrap profile (tighter than library defaults).
  2. Apply persisted overrides from the settings store, if attached.  If the
     record no longer validates, only its request budget is applied.
  3. Attach the alert channel from config when none is set yet.
  4. Seed the proxy pool from the configured list, probing each endpoint with
     a TCP connect and skipping the unreachable ones.
  5. Start the self-monitor task.

Operator actions
----------------
``emergency_stop()`` sets the budget to 0; ``reset_to_safe_mode()`` applies
the stricter safe-mode profile.  Both are synchronous, idempotent, and take
effect on the next dispatch.  With a settings store attached they are also
persisted, so a stop issued from the CLI holds across restarts.
"""

from __future__ import annotations

import asyncio
import logging
import random
import sqlite3
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

from market_governor.config import AppConfig, GovernanceProfile, SettingsStoreConfig
from market_governor.db.connection import open_settings_db
from market_governor.db.repositories.settings_repo import SettingsRepository
from market_governor.governance.alerts import AlertDispatcher
from market_governor.governance.errors import ConfigurationInvalid
from market_governor.governance.governor import GovernorStats, RequestGovernor
from market_governor.governance.models import ProxyEndpoint
from market_governor.governance.monitor import SelfMonitor
from market_governor.governance.persistence import (
    BUDGET_KEY,
    get_api_credential,
    load_persisted_overrides,
    persist_config,
)
from market_governor.utils.time_utils import Clock, Sleep, async_sleep, monotonic, utc_now_iso

logger = logging.getLogger(__name__)

ProxyProbe = Callable[[ProxyEndpoint, float], Awaitable[bool]]


# ── Proxy probe ───────────────────────────────────────────────────────────────


async def probe_proxy(endpoint: ProxyEndpoint, timeout_seconds: float) -> bool:
    """Return True if a TCP connection to the proxy opens within the timeout."""
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(endpoint.host, endpoint.port),
            timeout=timeout_seconds,
        )
    except (OSError, asyncio.TimeoutError) as exc:
        logger.debug("Proxy probe failed for %s: %s", endpoint.label, exc)
        return False

    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


# ── Status ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class BootstrapStatus:
    """Operator-facing status snapshot.

    Attributes:
        initialized:       True once ``initialize()`` completed.
        stats:             Governor statistics.
        recommendations:   Human-readable suggestions derived from stats.
        safe_mode_active:  True while the safe-mode profile is in force.
        emergency_stopped: True while the budget is 0.
        checked_at:        ISO-8601 UTC timestamp.
    """

    initialized:       bool
    stats:             GovernorStats
    recommendations:   list[str]
    safe_mode_active:  bool
    emergency_stopped: bool
    checked_at:        str


# ── Policy ────────────────────────────────────────────────────────────────────


class BootstrapPolicy:
    """Applies startup policy, runs the self-monitor, exposes operator actions.

    Args:
        governor:   The governor to supervise.
        app_config: Full application config.
        settings:   Settings store to load overrides from and persist operator
                    actions to.  ``None`` keeps everything in memory.
        probe:      Proxy reachability probe.
        sleep:      Async sleep for the monitor loop.
    """

    def __init__(
        self,
        governor: RequestGovernor,
        app_config: AppConfig,
        *,
        settings: Optional[SettingsStoreConfig] = None,
        probe: ProxyProbe = probe_proxy,
        sleep: Sleep = async_sleep,
    ) -> None:
        self.governor   = governor
        self.app_config = app_config
        self._settings  = settings
        self._probe     = probe
        self.monitor    = SelfMonitor(
            governor,
            app_config.monitor,
            escalate=self.escalate_to_safe_mode,
            sleep=sleep,
        )
        self._initialized = False
        self._safe_mode_active = False
        self._monitor_task: Optional[asyncio.Task] = None

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def safe_mode_active(self) -> bool:
        """True while the safe-mode profile switched to earlier is still in force.

        A later ``configure()`` that moves any profiled field clears it.
        """
        return self._safe_mode_active and self._policy_matches(self.app_config.safe_mode)

    @property
    def emergency_stopped(self) -> bool:
        return self.governor.config.is_halted

    # ── Startup ───────────────────────────────────────────────────────────────

    async def initialize(self, start_monitor: bool = True) -> None:
        if self._initialized:
            logger.info("Bootstrap policy already initialized.")
            return

        logger.info("Initializing request governance...")
        self._apply_profile(self.app_config.bootstrap.profile, "conservative bootstrap profile")
        self._apply_persisted_overrides()

        if self.governor.config.alert_channel is None:
            channel = self.app_config.alerts.channel()
            if channel is not None:
                self.governor.configure(alert_channel=channel)
                logger.info("Alert channel configured.")
            else:
                logger.info("No alert channel configured (optional).")

        await self._seed_proxies()

        if start_monitor:
            self.start_monitor()

        self._initialized = True
        logger.info("Request governance initialized; all marketplace calls are governed.")

    def _apply_profile(self, profile: GovernanceProfile, label: str) -> None:
        self.governor.configure(profile.as_changes())
        logger.info("Applied %s.", label)

    def _policy_matches(self, profile: GovernanceProfile) -> bool:
        config = self.governor.config
        return all(getattr(config, k) == v for k, v in profile.as_changes().items())

    def _apply_persisted_overrides(self) -> None:
        if self._settings is None:
            return
        try:
            with open_settings_db(self._settings) as conn:
                overrides = load_persisted_overrides(SettingsRepository(conn))
        except sqlite3.Error as exc:
            logger.warning("Settings store unavailable, using configured defaults: %s", exc)
            return
        if not overrides:
            return
        try:
            self.governor.configure(overrides)
            logger.info("Applied %d persisted governance overrides.", len(overrides))
            return
        except ConfigurationInvalid as exc:
            logger.warning("Persisted governance overrides rejected: %s", exc)

        # The stored budget is honoured on its own so a persisted stop holds.
        if BUDGET_KEY not in overrides:
            return
        budget = overrides[BUDGET_KEY]
        try:
            self.governor.configure({BUDGET_KEY: budget})
            logger.warning("Applied persisted request budget (%s) only.", budget)
        except ConfigurationInvalid:
            self.governor.configure({BUDGET_KEY: 0})
            logger.critical(
                "Persisted request budget %r is unusable; halting traffic until "
                "the policy is fixed.", budget,
            )

    async def _seed_proxies(self) -> None:
        candidates = list(self.app_config.bootstrap.proxies)
        if not candidates:
            logger.info("No seed proxies configured.")
            return

        if self.app_config.bootstrap.probe_proxies:
            timeout = self.app_config.bootstrap.probe_timeout_seconds
            reachable = await asyncio.gather(*(self._probe(p, timeout) for p in candidates))
        else:
            reachable = [True] * len(candidates)

        for endpoint, ok in zip(candidates, reachable):
            if ok:
                self.governor.add_proxy(endpoint)
            else:
                logger.warning("Proxy %s unreachable; skipped.", endpoint.label)

        logger.info(
            "Proxy pool seeded: %d of %d endpoints reachable.",
            sum(1 for ok in reachable if ok), len(candidates),
        )

    # ── Monitor lifecycle ─────────────────────────────────────────────────────

    def start_monitor(self) -> None:
        """Start the periodic self-monitor (requires a running event loop)."""
        if self._monitor_task is not None and not self._monitor_task.done():
            return
        self._monitor_task = asyncio.get_running_loop().create_task(self.monitor.run())

    async def stop_monitor(self) -> None:
        task, self._monitor_task = self._monitor_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def shutdown(self) -> None:
        """Stop the monitor, flush pending alerts and close the governor."""
        await self.stop_monitor()
        await self.governor.aclose()
        logger.info("Request governance shut down.")

    # ── Status ────────────────────────────────────────────────────────────────

    def status(self) -> BootstrapStatus:
        stats = self.governor.stats()
        return BootstrapStatus(
            initialized=self._initialized,
            stats=stats,
            recommendations=self._recommendations(stats),
            safe_mode_active=self.safe_mode_active,
            emergency_stopped=stats.config.is_halted,
            checked_at=utc_now_iso(),
        )

    def _recommendations(self, stats: GovernorStats) -> list[str]:
        recs: list[str] = []
        config = stats.config
        threshold = self.app_config.monitor.recommend_utilization

        if config.is_halted:
            recs.append(
                "Emergency stop is active: every request is refused until the "
                "budget is raised (configure or reset to safe mode)."
            )
        elif stats.utilization > threshold:
            recs.append(
                f"Request volume is above {threshold:.0%} of the per-minute budget; "
                "reduce activity."
            )
        if stats.proxy_count == 0:
            recs.append("No proxies configured; add proxies for better protection.")
        if not config.identity_rotation_enabled:
            recs.append("Identity rotation is disabled; enable it to spread traffic across proxies.")
        if not config.caching_enabled:
            recs.append("Caching is disabled; enable it to reduce load on the marketplace API.")
        if config.alert_channel is None:
            recs.append("No alert channel configured; blocking is only visible in local logs.")
        return recs

    # ── Operator actions ──────────────────────────────────────────────────────

    def emergency_stop(self) -> None:
        """Halt all outbound traffic (budget = 0)."""
        self.governor.configure(max_requests_per_window=0)
        logger.critical("EMERGENCY STOP: all marketplace requests are blocked.")
        self._persist()

    def reset_to_safe_mode(self) -> None:
        """Replace the policy with the stricter safe-mode profile."""
        self._apply_profile(self.app_config.safe_mode, "safe-mode profile")
        self._safe_mode_active = True
        logger.warning("Switched to safe mode.")
        self._persist()

    def escalate_to_safe_mode(self) -> bool:
        """Monitor hook: switch to safe mode once per block wave.

        Returns:
            True if the policy was changed, False if already in safe mode or
            halted by an emergency stop.
        """
        if self.safe_mode_active or self.emergency_stopped:
            return False
        self.reset_to_safe_mode()
        self.governor.alerts.notify(
            "Repeated blocking detected; switched to safe mode automatically.",
            self.governor.config.alert_channel,
            kind="safe_mode",
        )
        return True

    def _persist(self) -> None:
        if self._settings is None:
            return
        try:
            with open_settings_db(self._settings) as conn:
                persist_config(SettingsRepository(conn), self.governor.config)
        except sqlite3.Error as exc:
            logger.error("Could not persist governance config: %s", exc)


# ── Factory ───────────────────────────────────────────────────────────────────


def build_governor(
    app_config: AppConfig,
    *,
    api_key: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
    clock: Clock = monotonic,
    sleep: Sleep = async_sleep,
    rng: Optional[random.Random] = None,
) -> RequestGovernor:
    """Construct a governor from ``AppConfig`` (library-default policy).

    A client created here is closed by ``governor.aclose()``; a caller-supplied
    one is left open.
    """
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=app_config.http.timeout_seconds)
    alerts = AlertDispatcher(
        client=client,
        cooldown_seconds=app_config.alerts.cooldown_seconds,
        max_pending=app_config.alerts.max_pending,
        history_size=app_config.alerts.history_size,
        timeout_seconds=app_config.alerts.timeout_seconds,
        clock=clock,
    )
    return RequestGovernor(
        app_config.governance,
        client=client,
        rules=app_config.blocking,
        alerts=alerts,
        fingerprints=app_config.http.fingerprints,
        default_headers=app_config.marketplace.default_headers(api_key),
        block_history_size=app_config.monitor.block_history_size,
        close_client=owns_client,
        clock=clock,
        sleep=sleep,
        rng=rng,
    )


def create_runtime(
    app_config: AppConfig,
    *,
    use_settings_store: bool = True,
    client: Optional[httpx.AsyncClient] = None,
    probe: ProxyProbe = probe_proxy,
    clock: Clock = monotonic,
    sleep: Sleep = async_sleep,
    rng: Optional[random.Random] = None,
) -> BootstrapPolicy:
    """Build the governor and its bootstrap policy in one step.

    The stored API credential (if any) takes precedence over the one in
    config.  Call ``await policy.initialize()`` afterwards.
    """
    settings = app_config.settings if use_settings_store else None
    api_key: Optional[str] = None
    if settings is not None:
        try:
            with open_settings_db(settings) as conn:
                api_key = get_api_credential(SettingsRepository(conn))
        except sqlite3.Error as exc:
            logger.warning("Could not read stored API credential: %s", exc)

    governor = build_governor(
        app_config, api_key=api_key, client=client, clock=clock, sleep=sleep, rng=rng,
    )
    return BootstrapPolicy(governor, app_config, settings=settings, probe=probe, sleep=sleep)
