"""
Values that survive process restarts.

Only two things are persisted, both in the ``settings`` key-value table:

  governance_config  — the policy fields (budget, delays, switches, TTL,
                       alert channel) as last set by an operator.
  api_credential     — the static marketplace credential.

Rate window, response cache and proxy cursor always start fresh.

Validation baseline
-------------------
Stored overrides are applied at startup on top of the bootstrap policy
(``AppConfig.startup_policy()``), so partial updates are validated against
that same policy rather than the library defaults.  A record that no longer
validates (the TOML profile changed underneath it) is still returned by
``load_persisted_overrides``; ``BootstrapPolicy`` then keeps the stored
budget even when it has to reject the rest of the record, so a persisted
emergency stop is never lost.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from market_governor.db.repositories.settings_repo import SettingsRepository
from market_governor.governance.models import GovernanceConfig

logger = logging.getLogger(__name__)

GOVERNANCE_CONFIG_KEY = "governance_config"
API_CREDENTIAL_KEY    = "api_credential"
BUDGET_KEY            = "max_requests_per_window"


def load_persisted_overrides(repo: SettingsRepository) -> dict[str, Any]:
    """Return the stored policy fields, or ``{}`` if none are stored.

    Unknown keys are dropped so that a record written by an older version
    still loads.  Values are not validated here; see the module docstring.
    """
    raw = repo.get(GOVERNANCE_CONFIG_KEY)
    if not raw:
        return {}
    if not isinstance(raw, dict):
        logger.warning("Ignoring persisted governance config: expected an object, got %r.", raw)
        return {}

    known = set(GovernanceConfig.model_fields)
    return {k: v for k, v in raw.items() if k in known}


def persist_config(repo: SettingsRepository, config: GovernanceConfig) -> None:
    repo.set(GOVERNANCE_CONFIG_KEY, config.model_dump(mode="json"))
    logger.info("Governance config persisted to settings store.")


def update_persisted_config(
    repo: SettingsRepository,
    changes: dict[str, Any],
    base: Optional[GovernanceConfig] = None,
) -> dict[str, Any]:
    """Merge ``changes`` into the stored overrides and validate the result.

    Args:
        repo:    Settings repository.
        changes: Policy fields to set.
        base:    Policy the overrides will be applied on top of.  Defaults
                 to ``GovernanceConfig()``; the CLI passes
                 ``AppConfig.startup_policy()``.

    Returns:
        The merged overrides as stored.

    Raises:
        pydantic.ValidationError: If the merged policy is invalid (nothing
            is written in that case).
    """
    base = base or GovernanceConfig()
    merged = {**load_persisted_overrides(repo), **changes}
    GovernanceConfig.model_validate({**base.model_dump(), **merged})
    repo.set(GOVERNANCE_CONFIG_KEY, merged)
    return merged


def persist_emergency_stop(repo: SettingsRepository) -> dict[str, Any]:
    """Store a zero budget, keeping the other stored fields untouched.

    Never validates the rest of the record: a stop must always be
    recordable, and bootstrap honours the budget on its own.
    """
    merged = {**load_persisted_overrides(repo), BUDGET_KEY: 0}
    repo.set(GOVERNANCE_CONFIG_KEY, merged)
    logger.critical("Emergency stop persisted to settings store.")
    return merged


def get_api_credential(repo: SettingsRepository) -> Optional[str]:
    value = repo.get(API_CREDENTIAL_KEY)
    return str(value) if value else None


def set_api_credential(repo: SettingsRepository, credential: str) -> None:
    if not credential.strip():
        raise ValueError("API credential must not be empty.")
    repo.set(API_CREDENTIAL_KEY, credential.strip())
    logger.info("Marketplace API credential stored.")
