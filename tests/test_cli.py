"""
Tests for cli.py using typer's CliRunner.

Each test writes its own TOML config pointing the settings store into
``tmp_path`` and disabling the log file.

Covers:
  - init-settings / validate-config
  - configure: partial update persisted and validated against the startup
    policy; invalid merge exits 1
  - show-settings lists stored entries with secrets masked
  - emergency-stop / safe-mode / reset-policy visible through show-status
  - set-credential / set-alert-channel argument handling
  - fetch: governed request with respx; refused request exits 1
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import httpx
import pytest
import respx
from typer.testing import CliRunner

from market_governor.cli import app
from market_governor.config import SettingsStoreConfig
from market_governor.db.connection import open_settings_db
from market_governor.db.repositories.settings_repo import SettingsRepository
from market_governor.governance.persistence import (
    GOVERNANCE_CONFIG_KEY,
    get_api_credential,
    load_persisted_overrides,
)

runner = CliRunner()

API = "https://api.marketplace.test/v1/stock"


@pytest.fixture(autouse=True)
def _restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    db_path = (tmp_path / "settings.db").as_posix()
    path = tmp_path / "config.toml"
    path.write_text(
        f"""
[bootstrap]
probe_proxies = false
proxies = []

[settings]
db_path = "{db_path}"

[logging]
level = "ERROR"
log_file = ""
""",
        encoding="utf-8",
    )
    return path


def _invoke(*args: str, config_file: Path):
    return runner.invoke(app, [*args, "--config", str(config_file)])


def _stored_overrides(tmp_path: Path) -> dict:
    cfg = SettingsStoreConfig(db_path=str(tmp_path / "settings.db"))
    with open_settings_db(cfg) as conn:
        return load_persisted_overrides(SettingsRepository(conn))


# ── Setup commands ────────────────────────────────────────────────────────────


class TestSetupCommands:
    def test_init_settings(self, config_file, tmp_path):
        result = _invoke("init-settings", config_file=config_file)
        assert result.exit_code == 0, result.output
        assert "[OK] Settings store ready." in result.output
        assert (tmp_path / "settings.db").exists()

    def test_validate_config(self, config_file):
        result = _invoke("validate-config", config_file=config_file)
        assert result.exit_code == 0, result.output
        assert "Configuration validated successfully." in result.output
        assert "Safe-mode profile" in result.output

    def test_validate_config_missing_file(self, tmp_path):
        result = runner.invoke(app, ["validate-config", "--config", str(tmp_path / "nope.toml")])
        assert result.exit_code == 1


# ── Policy commands ───────────────────────────────────────────────────────────


class TestPolicyCommands:
    def test_configure_persists_only_given_fields(self, config_file, tmp_path):
        result = _invoke("configure", "--max-requests", "50", "--no-caching", config_file=config_file)
        assert result.exit_code == 0, result.output
        assert _stored_overrides(tmp_path) == {
            "max_requests_per_window": 50,
            "caching_enabled": False,
        }

    def test_configure_without_options(self, config_file):
        result = _invoke("configure", config_file=config_file)
        assert result.exit_code == 1

    def test_configure_invalid_merge(self, config_file, tmp_path):
        result = _invoke("configure", "--min-delay", "50", config_file=config_file)
        assert result.exit_code == 1
        assert _stored_overrides(tmp_path) == {}

    def test_configure_min_delay_within_startup_bounds(self, config_file, tmp_path):
        # 18s exceeds the library default max delay but not the bootstrap profile's 20s.
        result = _invoke("configure", "--min-delay", "18", config_file=config_file)
        assert result.exit_code == 0, result.output
        assert _stored_overrides(tmp_path) == {"min_delay_seconds": 18.0}

    def test_configure_max_delay_below_startup_min(self, config_file, tmp_path):
        result = _invoke("configure", "--max-delay", "6", config_file=config_file)
        assert result.exit_code == 1
        assert _stored_overrides(tmp_path) == {}

    def test_emergency_stop_over_stale_record(self, config_file, tmp_path):
        cfg = SettingsStoreConfig(db_path=str(tmp_path / "settings.db"))
        with open_settings_db(cfg) as conn:
            SettingsRepository(conn).set(GOVERNANCE_CONFIG_KEY, {"max_delay_seconds": 6.0})

        assert _invoke("emergency-stop", config_file=config_file).exit_code == 0

        result = _invoke("show-status", "--json", config_file=config_file)
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["emergency_stopped"] is True

    def test_emergency_stop_shows_in_status(self, config_file):
        assert _invoke("emergency-stop", config_file=config_file).exit_code == 0

        result = _invoke("show-status", "--json", config_file=config_file)
        assert result.exit_code == 0, result.output
        status = json.loads(result.stdout)
        assert status["emergency_stopped"] is True
        assert status["policy"]["max_requests_per_window"] == 0

    def test_safe_mode_then_reset(self, config_file, tmp_path):
        _invoke("emergency-stop", config_file=config_file)
        result = _invoke("safe-mode", config_file=config_file)
        assert result.exit_code == 0, result.output
        assert _stored_overrides(tmp_path)["max_requests_per_window"] == 30

        result = _invoke("reset-policy", config_file=config_file)
        assert result.exit_code == 0
        assert _stored_overrides(tmp_path) == {}

    def test_show_status_table(self, config_file):
        result = _invoke("show-status", config_file=config_file)
        assert result.exit_code == 0, result.output
        assert "[ACTIVE]" in result.output
        assert "No proxies configured" in result.output

    def test_show_status_writes_report(self, config_file, tmp_path):
        out = tmp_path / "reports" / "status.json"
        result = _invoke("show-status", "--output", str(out), config_file=config_file)
        assert result.exit_code == 0, result.output
        assert json.loads(out.read_text(encoding="utf-8"))["initialized"] is True


# ── Credential commands ───────────────────────────────────────────────────────


class TestCredentialCommands:
    def test_set_credential(self, config_file, tmp_path):
        result = _invoke("set-credential", "key-abc", config_file=config_file)
        assert result.exit_code == 0, result.output
        cfg = SettingsStoreConfig(db_path=str(tmp_path / "settings.db"))
        with open_settings_db(cfg) as conn:
            assert get_api_credential(SettingsRepository(conn)) == "key-abc"

    def test_set_blank_credential(self, config_file):
        assert _invoke("set-credential", "  ", config_file=config_file).exit_code == 1

    def test_set_alert_channel(self, config_file, tmp_path):
        result = _invoke(
            "set-alert-channel", "--bot-token", "tok", "--chat-id", "5", config_file=config_file,
        )
        assert result.exit_code == 0, result.output
        assert _stored_overrides(tmp_path)["alert_channel"]["chat_id"] == "5"

    def test_set_alert_channel_needs_both(self, config_file):
        result = _invoke("set-alert-channel", "--chat-id", "5", config_file=config_file)
        assert result.exit_code == 1


# ── show-settings ─────────────────────────────────────────────────────────────


class TestShowSettings:
    def test_empty_store(self, config_file):
        result = _invoke("show-settings", config_file=config_file)
        assert result.exit_code == 0, result.output
        assert "(empty)" in result.output

    def test_lists_entries_and_masks_secrets(self, config_file):
        _invoke("set-credential", "key-abc", config_file=config_file)
        _invoke("set-alert-channel", "--bot-token", "tok-secret", "--chat-id", "5",
                config_file=config_file)
        _invoke("configure", "--max-requests", "50", config_file=config_file)

        result = _invoke("show-settings", config_file=config_file)
        assert result.exit_code == 0, result.output
        assert "api_credential" in result.output
        assert "governance_config" in result.output
        assert "(updated " in result.output
        assert "max_requests_per_window" in result.output
        assert "key-abc" not in result.output
        assert "tok-secret" not in result.output
        assert "***" in result.output


# ── fetch ─────────────────────────────────────────────────────────────────────


class TestFetch:
    def test_fetch_success(self, config_file):
        with respx.mock() as mock:
            mock.get(API).mock(return_value=httpx.Response(200, json={"stock": 12}))
            result = _invoke("fetch", API, "--no-probe", config_file=config_file)

        assert result.exit_code == 0, result.output
        assert "200 (network)" in result.output
        assert '"stock"' in result.output

    def test_fetch_refused_after_emergency_stop(self, config_file):
        _invoke("emergency-stop", config_file=config_file)
        result = _invoke("fetch", API, "--no-probe", config_file=config_file)
        assert result.exit_code == 1

    def test_fetch_non_2xx_exit_code(self, config_file):
        with respx.mock() as mock:
            mock.get(API).mock(return_value=httpx.Response(404, json={"error": "missing"}))
            result = _invoke("fetch", API, "--no-probe", config_file=config_file)
        assert result.exit_code == 3
