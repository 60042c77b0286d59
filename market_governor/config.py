"""
Application configuration management.

Load order (each layer overrides the previous):
  1. ``config/default.toml``      — committed static defaults
  2. ``config/local.toml``        — optional local overrides (gitignored)
  3. ``.env``                     — local secrets and env overrides (gitignored)
  4. Environment variables        — ``MARKET_GOVERNOR_*`` prefix

Entry point: ``load_config(config_path=None) -> AppConfig``

The governor, the bootstrap policy and every CLI command receive an
``AppConfig`` instance, never raw dicts or scattered env var lookups.

Runtime governance values (budget, delays, cache TTL, alert channel) can
additionally be overridden from the settings store; see
``governance/persistence.py``.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from market_governor.governance.classifier import BlockingRules
from market_governor.governance.models import AlertChannel, GovernanceConfig, ProxyEndpoint

# ── Sub-config models ─────────────────────────────────────────────────────────


class GovernanceProfile(BaseModel):
    """A partial GovernanceConfig applied on top of the current policy.

    Unset (None) fields leave the current value untouched.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_requests_per_window:      Optional[int]   = None
    min_delay_seconds:            Optional[float] = None
    max_delay_seconds:            Optional[float] = None
    identity_rotation_enabled:    Optional[bool]  = None
    fingerprint_rotation_enabled: Optional[bool]  = None
    caching_enabled:              Optional[bool]  = None
    cache_ttl_seconds:            Optional[float] = None

    def as_changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


# Free public proxies seeded at startup; unreachable ones are skipped.
DEFAULT_SEED_PROXIES: list[ProxyEndpoint] = [
    ProxyEndpoint(host="8.210.83.33", port=80),
    ProxyEndpoint(host="47.74.152.29", port=8888),
    ProxyEndpoint(host="103.127.1.130", port=80),
    ProxyEndpoint(host="185.162.231.106", port=80),
    ProxyEndpoint(host="103.216.103.26", port=80),
]


class BootstrapConfig(BaseModel):
    """Process-start policy: conservative profile and proxy seeding."""

    model_config = ConfigDict(frozen=True)

    profile: GovernanceProfile = GovernanceProfile(
        max_requests_per_window=80,
        min_delay_seconds=7.0,
        max_delay_seconds=20.0,
        identity_rotation_enabled=True,
        fingerprint_rotation_enabled=True,
        caching_enabled=True,
        cache_ttl_seconds=1800.0,
    )
    proxies: list[ProxyEndpoint] = DEFAULT_SEED_PROXIES
    probe_proxies: bool = True
    probe_timeout_seconds: float = 3.0

    @field_validator("probe_timeout_seconds")
    @classmethod
    def positive_timeout(cls, v: float) -> float:
        if v <= 0.0:
            raise ValueError(f"probe_timeout_seconds must be > 0, got {v}.")
        return v


class MonitorConfig(BaseModel):
    """Self-monitor tick settings."""

    model_config = ConfigDict(frozen=True)

    interval_seconds:          float = 30.0
    cache_ceiling:             int   = 1000
    warn_utilization:          float = 0.8
    recommend_utilization:     float = 0.9
    safe_mode_block_threshold: int   = 3     # blocked responses per tick; 0 = never escalate
    block_history_size:        int   = 100   # blocked-response events kept for status

    @field_validator("interval_seconds")
    @classmethod
    def positive_interval(cls, v: float) -> float:
        if v <= 0.0:
            raise ValueError(f"interval_seconds must be > 0, got {v}.")
        return v

    @field_validator("warn_utilization", "recommend_utilization")
    @classmethod
    def valid_ratio(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError(f"Utilization thresholds must be in (0.0, 1.0], got {v}.")
        return v

    @field_validator("cache_ceiling", "safe_mode_block_threshold")
    @classmethod
    def non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"Value must be >= 0, got {v}.")
        return v

    @field_validator("block_history_size")
    @classmethod
    def positive_history(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"block_history_size must be > 0, got {v}.")
        return v


class AlertsConfig(BaseModel):
    """Alert delivery bounds and optional bot credentials."""

    model_config = ConfigDict(frozen=True)

    telegram_bot_token: Optional[str] = None
    telegram_chat_id:   Optional[str] = None
    cooldown_seconds:   float = 0.0
    max_pending:        int   = 32
    history_size:       int   = 200
    timeout_seconds:    float = 10.0

    @field_validator("max_pending", "history_size")
    @classmethod
    def positive_int(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"Value must be > 0, got {v}.")
        return v

    def channel(self) -> Optional[AlertChannel]:
        """Build the alert channel when both credentials are present."""
        if self.telegram_bot_token and self.telegram_chat_id:
            return AlertChannel(
                bot_token=self.telegram_bot_token,
                chat_id=self.telegram_chat_id,
            )
        return None


class HttpConfig(BaseModel):
    """Outbound HTTP client settings."""

    model_config = ConfigDict(frozen=True)

    timeout_seconds: float = 30.0
    fingerprints:    list[str] = []    # empty → built-in User-Agent table


class MarketplaceConfig(BaseModel):
    """Static marketplace credential."""

    model_config = ConfigDict(frozen=True)

    api_key:        Optional[str] = None
    api_key_header: str = "Authorization"

    def default_headers(self, api_key: Optional[str] = None) -> dict[str, str]:
        key = api_key or self.api_key
        return {self.api_key_header: key} if key else {}


class SettingsStoreConfig(BaseModel):
    """SQLite key-value store for values that survive restarts."""

    model_config = ConfigDict(frozen=True)

    db_path: str = "data/settings.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000


class LoggingConfig(BaseModel):
    """Logging output settings."""

    model_config = ConfigDict(frozen=True)

    level: str = "INFO"
    log_file: str = "data/logs/market_governor.log"
    json_format: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"Log level must be one of {sorted(valid)}, got '{v}'.")
        return v.upper()


class AppConfig(BaseModel):
    """Complete application configuration; the single source of truth.

    ``governance`` holds the library defaults the governor is constructed
    with; ``bootstrap.profile`` is applied on top at process start and
    ``safe_mode`` is the stricter profile operators (or the self-monitor)
    can switch to.
    """

    model_config = ConfigDict(frozen=True)

    governance:  GovernanceConfig    = GovernanceConfig()
    bootstrap:   BootstrapConfig     = BootstrapConfig()
    safe_mode:   GovernanceProfile   = GovernanceProfile(
        max_requests_per_window=30,
        min_delay_seconds=15.0,
        max_delay_seconds=30.0,
        identity_rotation_enabled=True,
        fingerprint_rotation_enabled=True,
        caching_enabled=True,
    )
    monitor:     MonitorConfig       = MonitorConfig()
    alerts:      AlertsConfig        = AlertsConfig()
    blocking:    BlockingRules       = BlockingRules()
    http:        HttpConfig          = HttpConfig()
    marketplace: MarketplaceConfig   = MarketplaceConfig()
    settings:    SettingsStoreConfig = SettingsStoreConfig()
    logging:     LoggingConfig       = LoggingConfig()
    debug: bool = False

    @model_validator(mode="after")
    def profiles_apply_cleanly(self) -> "AppConfig":
        # Both profiles must produce a valid policy on top of the defaults.
        base = self.governance.model_dump()
        for name, profile in (("bootstrap.profile", self.bootstrap.profile),
                              ("safe_mode", self.safe_mode)):
            try:
                GovernanceConfig.model_validate({**base, **profile.as_changes()})
            except ValueError as exc:
                raise ValueError(f"[{name}] does not yield a valid policy: {exc}") from exc
        return self

    def startup_policy(self) -> GovernanceConfig:
        """The policy in force after the bootstrap profile, before stored overrides."""
        return GovernanceConfig.model_validate(
            {**self.governance.model_dump(), **self.bootstrap.profile.as_changes()}
        )


# ── Loader ────────────────────────────────────────────────────────────────────

_PROJECT_ROOT = Path(__file__).parent.parent


def _find_project_root() -> Path:
    """Walk up from this file to find the project root (contains pyproject.toml)."""
    candidate = Path(__file__).parent
    for _ in range(5):
        if (candidate / "pyproject.toml").exists():
            return candidate
        candidate = candidate.parent
    return _PROJECT_ROOT


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Load and merge application configuration.

    Args:
        config_path: Explicit path to a TOML config file. Defaults to
            ``<project_root>/config/default.toml``.

    Returns:
        Fully validated ``AppConfig`` instance.

    Raises:
        FileNotFoundError: If the specified ``config_path`` does not exist.
        pydantic.ValidationError: If merged config values fail validation.
    """
    root = _find_project_root()

    # 1. Load .env file (silently skip if missing)
    dotenv_path = root / ".env"
    load_dotenv(dotenv_path=dotenv_path, override=False)

    # 2. Load TOML config
    if config_path is None:
        config_path = root / "config" / "default.toml"

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Config file not found: {config_path}\n"
            "Create config/default.toml or pass --config."
        )

    with open(config_path, "rb") as f:
        raw: dict[str, Any] = tomllib.load(f)

    # Also merge local.toml if present (gitignored local overrides)
    local_config_path = config_path.parent / "local.toml"
    if local_config_path.exists():
        with open(local_config_path, "rb") as f:
            local_raw: dict[str, Any] = tomllib.load(f)
        raw = _deep_merge(raw, local_raw)

    # 3. Apply MARKET_GOVERNOR_* environment variable overrides
    raw = _apply_env_overrides(raw)

    # 4. Build and validate AppConfig
    return _build_app_config(raw)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into ``base``."""
    result = dict(base)
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    """Apply MARKET_GOVERNOR_* env vars to the raw config dict.

    Supported overrides:
      MARKET_GOVERNOR_SETTINGS_DB          → raw["settings"]["db_path"]
      MARKET_GOVERNOR_LOG_LEVEL            → raw["logging"]["level"]
      MARKET_GOVERNOR_DEBUG                → raw["debug"]
      MARKET_GOVERNOR_API_KEY              → raw["marketplace"]["api_key"]
      MARKET_GOVERNOR_TELEGRAM_BOT_TOKEN   → raw["alerts"]["telegram_bot_token"]
      MARKET_GOVERNOR_TELEGRAM_CHAT_ID     → raw["alerts"]["telegram_chat_id"]
    """
    if db_path := os.environ.get("MARKET_GOVERNOR_SETTINGS_DB"):
        raw.setdefault("settings", {})["db_path"] = db_path

    if log_level := os.environ.get("MARKET_GOVERNOR_LOG_LEVEL"):
        raw.setdefault("logging", {})["level"] = log_level

    if debug := os.environ.get("MARKET_GOVERNOR_DEBUG"):
        raw["debug"] = debug.lower() in ("1", "true", "yes")

    if api_key := os.environ.get("MARKET_GOVERNOR_API_KEY"):
        raw.setdefault("marketplace", {})["api_key"] = api_key

    if bot_token := os.environ.get("MARKET_GOVERNOR_TELEGRAM_BOT_TOKEN"):
        raw.setdefault("alerts", {})["telegram_bot_token"] = bot_token

    if chat_id := os.environ.get("MARKET_GOVERNOR_TELEGRAM_CHAT_ID"):
        raw.setdefault("alerts", {})["telegram_chat_id"] = chat_id

    return raw


def _build_app_config(raw: dict[str, Any]) -> AppConfig:
    """Map raw TOML dict to ``AppConfig`` model structure."""
    # Flatten top-level keys that may be nested under [project]
    project = raw.pop("project", {})

    defaults = AppConfig()

    return AppConfig(
        governance=GovernanceConfig(**raw.get("governance", {})),
        bootstrap=BootstrapConfig(**raw.get("bootstrap", {})),
        safe_mode=(
            GovernanceProfile(**raw["safe_mode"]) if "safe_mode" in raw else defaults.safe_mode
        ),
        monitor=MonitorConfig(**raw.get("monitor", {})),
        alerts=AlertsConfig(**raw.get("alerts", {})),
        blocking=BlockingRules(**raw.get("blocking", {})),
        http=HttpConfig(**raw.get("http", {})),
        marketplace=MarketplaceConfig(**raw.get("marketplace", {})),
        settings=SettingsStoreConfig(**raw.get("settings", {})),
        logging=LoggingConfig(**raw.get("logging", {})),
        debug=raw.get("debug", project.get("debug", False)),
    )
