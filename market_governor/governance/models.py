"""
Pydantic v2 models and runtime records for outbound request governance.

Model hierarchy
---------------
  GovernanceConfig         — the tunable policy (immutable; replaced wholesale)
    └── AlertChannel       — out-of-band notification credentials
  ProxyEndpoint            — one entry of the append-only proxy pool

Runtime records (plain dataclasses, never persisted)
----------------------------------------------------
  RateWindow    — fixed-window admission counter
  CacheEntry    — one cached response payload
  Identity      — proxy index + fingerprint chosen for a dispatch
  AlertMessage  — one best-effort notification
  BlockEvent    — one response flagged as blocking

Validation
----------
All delays are in seconds and must be non-negative, with
min_delay_seconds <= max_delay_seconds.  max_requests_per_window may be 0,
which halts all traffic (the emergency-stop profile).  Unknown fields are
rejected so that a typo in a partial update fails loudly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

# The admission window is fixed at one minute.
RATE_WINDOW_SECONDS: float = 60.0

VALID_PROXY_PROTOCOLS = frozenset({"http", "https", "socks5"})


# ── Alert channel ─────────────────────────────────────────────────────────────


class AlertChannel(BaseModel):
    """Credentials for a Telegram-style bot channel.

    Attributes:
        bot_token: Bot API token.
        chat_id:   Target chat identifier.
        api_base:  Bot API base URL.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    bot_token: str
    chat_id:   str
    api_base:  str = "https://api.telegram.org"

    @field_validator("bot_token", "chat_id")
    @classmethod
    def non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Alert channel credentials must not be empty.")
        return v.strip()

    @property
    def send_url(self) -> str:
        return f"{self.api_base.rstrip('/')}/bot{self.bot_token}/sendMessage"


# ── Governance policy ─────────────────────────────────────────────────────────


class GovernanceConfig(BaseModel):
    """Tunable request-governance policy.

    Attributes:
        max_requests_per_window:      Admission budget per one-minute window.
                                      0 halts all traffic.
        min_delay_seconds:            Lower bound of the randomized pacing delay.
        max_delay_seconds:            Upper bound of the randomized pacing delay.
        identity_rotation_enabled:    Round-robin through the proxy pool.
        fingerprint_rotation_enabled: Send a randomly chosen User-Agent.
        caching_enabled:              Serve repeated requests from the cache.
        cache_ttl_seconds:            Age after which a cached entry is a miss.
        alert_channel:                Where blocking/failure alerts go (None = off).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_requests_per_window:      int   = 100
    min_delay_seconds:            float = 5.0
    max_delay_seconds:            float = 15.0
    identity_rotation_enabled:    bool  = True
    fingerprint_rotation_enabled: bool  = True
    caching_enabled:              bool  = True
    cache_ttl_seconds:            float = 3600.0
    alert_channel:                Optional[AlertChannel] = None

    @field_validator("max_requests_per_window")
    @classmethod
    def non_negative_budget(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"max_requests_per_window must be >= 0, got {v}.")
        return v

    @field_validator("min_delay_seconds", "max_delay_seconds")
    @classmethod
    def non_negative_delay(cls, v: float) -> float:
        if v < 0.0:
            raise ValueError(f"Delay seconds must be >= 0.0, got {v}.")
        return v

    @field_validator("cache_ttl_seconds")
    @classmethod
    def positive_ttl(cls, v: float) -> float:
        if v <= 0.0:
            raise ValueError(f"cache_ttl_seconds must be > 0, got {v}.")
        return v

    @model_validator(mode="after")
    def delays_ordered(self) -> "GovernanceConfig":
        if self.min_delay_seconds > self.max_delay_seconds:
            raise ValueError(
                f"min_delay_seconds ({self.min_delay_seconds}) must be <= "
                f"max_delay_seconds ({self.max_delay_seconds})."
            )
        return self

    @property
    def window_seconds(self) -> float:
        return RATE_WINDOW_SECONDS

    @property
    def is_halted(self) -> bool:
        return self.max_requests_per_window == 0


# ── Proxy endpoint ────────────────────────────────────────────────────────────


class ProxyEndpoint(BaseModel):
    """One outbound proxy.  Immutable once added to the pool."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    host:     str
    port:     int
    username: Optional[str] = None
    password: Optional[str] = None
    protocol: str = "http"

    @field_validator("host")
    @classmethod
    def non_empty_host(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Proxy host must not be empty.")
        return v.strip()

    @field_validator("port")
    @classmethod
    def valid_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError(f"Proxy port must be in 1..65535, got {v}.")
        return v

    @field_validator("protocol")
    @classmethod
    def valid_protocol(cls, v: str) -> str:
        v = v.lower()
        if v not in VALID_PROXY_PROTOCOLS:
            raise ValueError(
                f"Proxy protocol must be one of {sorted(VALID_PROXY_PROTOCOLS)}, got '{v}'."
            )
        return v

    @property
    def url(self) -> str:
        auth = ""
        if self.username:
            auth = self.username
            if self.password:
                auth += f":{self.password}"
            auth += "@"
        return f"{self.protocol}://{auth}{self.host}:{self.port}"

    @property
    def label(self) -> str:
        """Credential-free ``host:port`` form, safe for logs."""
        return f"{self.host}:{self.port}"


# ── Runtime records ───────────────────────────────────────────────────────────


@dataclass
class RateWindow:
    """Fixed-window admission counter.

    Attributes:
        count:        Admitted dispatch attempts in the current window.
        window_start: Monotonic timestamp the window opened at (None = never).
    """

    count:        int = 0
    window_start: Optional[float] = None


@dataclass(frozen=True)
class CacheEntry:
    """A cached, already-parsed response payload."""

    payload:     Any
    inserted_at: float


@dataclass(frozen=True)
class Identity:
    """Identity presented for one dispatch.

    proxy_index is the pool position of the chosen proxy (None when rotation
    is disabled or the pool is empty).
    """

    proxy_index: Optional[int]
    fingerprint: Optional[str]


@dataclass(frozen=True)
class BlockEvent:
    """One response the classifier flagged as blocking.

    Kept in memory only, whether or not an alert channel is configured.
    """

    url:         str
    method:      str
    status_code: int
    reason:      str
    proxy:       Optional[str]
    fingerprint: Optional[str]
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class AlertMessage:
    """One fire-and-forget notification."""

    text:       str
    kind:       str = "blocking"
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
