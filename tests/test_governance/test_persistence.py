"""
Tests for governance/persistence.py — policy overrides and API credential.

Covers:
  - Empty store yields no overrides
  - persist_config → load_persisted_overrides round trip
  - Non-object records are ignored; records that no longer validate are
    still returned (bootstrap decides what to keep)
  - Unknown keys from older records are dropped
  - update_persisted_config merges and validates against a base policy
  - persist_emergency_stop always records a zero budget
  - API credential set/get; empty credential rejected
"""

import pytest
from pydantic import ValidationError

from market_governor.db.repositories.settings_repo import SettingsRepository
from market_governor.governance.models import GovernanceConfig
from market_governor.governance.persistence import (
    API_CREDENTIAL_KEY,
    GOVERNANCE_CONFIG_KEY,
    get_api_credential,
    load_persisted_overrides,
    persist_config,
    persist_emergency_stop,
    set_api_credential,
    update_persisted_config,
)

# Same shape as the shipped bootstrap profile.
STARTUP = GovernanceConfig(
    max_requests_per_window=80,
    min_delay_seconds=7.0,
    max_delay_seconds=20.0,
    cache_ttl_seconds=1800.0,
)


@pytest.fixture
def repo(settings_db) -> SettingsRepository:
    return SettingsRepository(settings_db)


class TestOverrides:
    def test_empty_store(self, repo):
        assert load_persisted_overrides(repo) == {}

    def test_round_trip(self, repo):
        cfg = GovernanceConfig(
            max_requests_per_window=0,
            alert_channel={"bot_token": "t", "chat_id": "1"},
        )
        persist_config(repo, cfg)
        overrides = load_persisted_overrides(repo)

        assert overrides["max_requests_per_window"] == 0
        restored = GovernanceConfig.model_validate({**GovernanceConfig().model_dump(), **overrides})
        assert restored == cfg

    def test_stale_record_still_returned(self, repo):
        stored = {"min_delay_seconds": 30.0, "max_delay_seconds": 1.0, "max_requests_per_window": 0}
        repo.set(GOVERNANCE_CONFIG_KEY, stored)
        assert load_persisted_overrides(repo) == stored

    def test_non_object_record_ignored(self, repo):
        repo.set(GOVERNANCE_CONFIG_KEY, [1, 2, 3])
        assert load_persisted_overrides(repo) == {}

    def test_unknown_keys_dropped(self, repo):
        repo.set(GOVERNANCE_CONFIG_KEY, {"max_requests_per_window": 20, "legacy_flag": True})
        assert load_persisted_overrides(repo) == {"max_requests_per_window": 20}


class TestUpdate:
    def test_update_merges(self, repo):
        update_persisted_config(repo, {"max_requests_per_window": 50})
        merged = update_persisted_config(repo, {"caching_enabled": False})

        assert merged == {"max_requests_per_window": 50, "caching_enabled": False}
        assert load_persisted_overrides(repo) == merged

    def test_invalid_update_writes_nothing(self, repo):
        update_persisted_config(repo, {"max_requests_per_window": 50})
        with pytest.raises(ValidationError):
            update_persisted_config(repo, {"max_requests_per_window": -3})
        assert load_persisted_overrides(repo) == {"max_requests_per_window": 50}

    def test_clearing_alert_channel(self, repo):
        update_persisted_config(repo, {"alert_channel": {"bot_token": "t", "chat_id": "1"}})
        merged = update_persisted_config(repo, {"alert_channel": None})
        assert merged["alert_channel"] is None

    def test_min_delay_valid_against_startup_policy(self, repo):
        # 18s is above the library default max (15s) but below the startup max (20s).
        merged = update_persisted_config(repo, {"min_delay_seconds": 18.0}, base=STARTUP)
        assert merged == {"min_delay_seconds": 18.0}

    def test_max_delay_below_startup_min_rejected(self, repo):
        # 6s passes against the library default min (5s) but not the startup min (7s).
        with pytest.raises(ValidationError):
            update_persisted_config(repo, {"max_delay_seconds": 6.0}, base=STARTUP)
        assert load_persisted_overrides(repo) == {}


class TestEmergencyStop:
    def test_keeps_other_fields(self, repo):
        update_persisted_config(repo, {"caching_enabled": False})
        merged = persist_emergency_stop(repo)
        assert merged == {"caching_enabled": False, "max_requests_per_window": 0}
        assert load_persisted_overrides(repo) == merged

    def test_recorded_over_stale_record(self, repo):
        repo.set(GOVERNANCE_CONFIG_KEY, {"min_delay_seconds": 30.0, "max_delay_seconds": 1.0})
        persist_emergency_stop(repo)
        assert load_persisted_overrides(repo)["max_requests_per_window"] == 0


class TestApiCredential:
    def test_unset(self, repo):
        assert get_api_credential(repo) is None

    def test_set_and_get_strips(self, repo):
        set_api_credential(repo, "  key-123 \n")
        assert get_api_credential(repo) == "key-123"
        assert repo.get(API_CREDENTIAL_KEY) == "key-123"

    def test_empty_rejected(self, repo):
        with pytest.raises(ValueError):
            set_api_credential(repo, "   ")
