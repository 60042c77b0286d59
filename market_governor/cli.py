"""
Market Governor CLI entry point.

All commands follow this pattern:
  1. Load ``AppConfig`` via ``load_config()``.
  2. Configure logging.
  3. Validate inputs.
  4. Execute the action (settings store write, governed fetch, status).
  5. Report the result to stdout.

Policy commands (``configure``, ``emergency-stop``, ``safe-mode``,
``set-alert-channel``) write to the settings store; a running process picks
them up the next time it starts, and ``fetch`` / ``show-status`` apply them
immediately.

Install and run::

    pip install -e .
    market-governor --help
    market-governor init-settings
    market-governor validate-config
    market-governor show-status
    market-governor show-settings
    market-governor configure --max-requests 60 --min-delay 10 --max-delay 25
    market-governor emergency-stop
    market-governor fetch https://api.example.com/v1/products
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Optional

import typer

app = typer.Typer(
    name="market-governor",
    help="Outbound request governance for marketplace API integrations.",
    add_completion=False,
)


# ── Helpers ───────────────────────────────────────────────────────────────────

def _load_config_or_exit(config_path: Optional[str] = None):
    """Load AppConfig, printing a friendly error and exiting on failure."""
    from market_governor.config import load_config

    try:
        cfg_path = Path(config_path) if config_path else None
        return load_config(cfg_path)
    except FileNotFoundError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    except Exception as exc:
        typer.echo(f"[ERROR] Config validation failed: {exc}", err=True)
        raise typer.Exit(code=1)


def _configure_logging(config) -> None:
    from market_governor.utils.logging import configure_logging
    configure_logging(config.logging)


def _update_policy_or_exit(config, changes: dict[str, Any]) -> dict[str, Any]:
    """Merge ``changes`` into the persisted policy; exit 1 if invalid.

    Validated against the startup policy the stored overrides will be
    applied on top of.
    """
    from pydantic import ValidationError

    from market_governor.db.connection import open_settings_db
    from market_governor.db.repositories.settings_repo import SettingsRepository
    from market_governor.governance.persistence import update_persisted_config

    try:
        with open_settings_db(config.settings) as conn:
            return update_persisted_config(
                SettingsRepository(conn), changes, base=config.startup_policy(),
            )
    except ValidationError as exc:
        typer.echo(f"[ERROR] Rejected policy update: {exc}", err=True)
        raise typer.Exit(code=1)


def _without_probe(config):
    return config.model_copy(
        update={"bootstrap": config.bootstrap.model_copy(update={"probe_proxies": False})}
    )


# ── Commands ──────────────────────────────────────────────────────────────────

@app.command("init-settings")
def init_settings(
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file.",
    ),
) -> None:
    """Create the settings database and apply its schema.

    Safe to run multiple times; all DDL uses IF NOT EXISTS.
    """
    from market_governor.db.connection import open_settings_db
    from market_governor.db.schema import ALL_TABLE_NAMES

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    typer.echo(f"Initializing settings store at: {config.settings.db_path}")
    with open_settings_db(config.settings):
        pass
    typer.echo(f"  Tables: {len(ALL_TABLE_NAMES)} created/verified.")
    typer.echo("[OK] Settings store ready.")


@app.command("validate-config")
def validate_config(
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file (default: config/default.toml).",
    ),
    show_full: bool = typer.Option(
        False,
        "--full",
        help="Print full config including all fields (secrets masked).",
    ),
) -> None:
    """Validate the configuration file and print the policy profiles.

    Exits with code 1 if the config fails validation.
    """
    from market_governor.governance.models import GovernanceConfig
    from market_governor.governance.reporter import format_policy_block

    config = _load_config_or_exit(config_path)

    bootstrap_policy = config.startup_policy()
    safe_policy = GovernanceConfig.model_validate(
        {**config.governance.model_dump(), **config.safe_mode.as_changes()}
    )

    typer.echo("Configuration validated successfully.")
    typer.echo("")
    typer.echo(format_policy_block(config.governance, title="Library defaults"))
    typer.echo("")
    typer.echo(format_policy_block(bootstrap_policy, title="Bootstrap profile"))
    typer.echo("")
    typer.echo(format_policy_block(safe_policy, title="Safe-mode profile"))
    typer.echo("")
    typer.echo(f"  Seed proxies:     {len(config.bootstrap.proxies)}")
    typer.echo(f"  Alert channel:    {'configured' if config.alerts.channel() else 'none'}")
    typer.echo(f"  Settings store:   {config.settings.db_path}")
    typer.echo(f"  Log level:        {config.logging.level}")
    typer.echo(f"  Debug mode:       {config.debug}")

    if show_full:
        dumped = config.model_dump(mode="json")
        for section, key in (("alerts", "telegram_bot_token"), ("marketplace", "api_key")):
            if dumped[section].get(key):
                dumped[section][key] = "***"
        typer.echo("")
        typer.echo("Full config (JSON):")
        typer.echo(json.dumps(dumped, indent=2, default=str))

    typer.echo("")


@app.command("show-status")
def show_status(
    probe: bool = typer.Option(
        False,
        "--probe/--no-probe",
        help="TCP-probe seed proxies instead of assuming they are reachable.",
    ),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print the status as JSON instead of a table.",
    ),
    output: Optional[str] = typer.Option(
        None,
        "--output",
        help="Also write the JSON status report to this path.",
    ),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file.",
    ),
) -> None:
    """Bootstrap a governor from config + settings store and report its state."""
    from market_governor.governance.bootstrap import create_runtime
    from market_governor.governance.reporter import (
        format_status_report,
        status_to_dict,
        write_status_report,
    )

    config = _load_config_or_exit(config_path)
    _configure_logging(config)
    if not probe:
        config = _without_probe(config)

    async def _run():
        policy = create_runtime(config)
        try:
            await policy.initialize(start_monitor=False)
            return policy.status()
        finally:
            await policy.shutdown()

    status = asyncio.run(_run())

    if as_json:
        typer.echo(json.dumps(status_to_dict(status), indent=2))
    else:
        typer.echo(format_status_report(status))

    if output:
        out = write_status_report(status, output)
        typer.echo(f"[OK] Status report written to {out}")


@app.command("show-settings")
def show_settings(
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file.",
    ),
) -> None:
    """List what the settings store holds and when each entry last changed.

    The API credential and the alert bot token are masked.
    """
    from market_governor.db.connection import open_settings_db
    from market_governor.db.repositories.settings_repo import SettingsRepository
    from market_governor.governance.persistence import API_CREDENTIAL_KEY

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    with open_settings_db(config.settings) as conn:
        repo = SettingsRepository(conn)
        entries = [(key, value, repo.updated_at(key)) for key, value in repo.all().items()]

    typer.echo(f"Settings store: {config.settings.db_path}")
    if not entries:
        typer.echo("  (empty)")
        return

    for key, value, updated_at in entries:
        typer.echo(f"\n  {key}  (updated {updated_at})")
        if key == API_CREDENTIAL_KEY:
            typer.echo("    ***")
            continue
        if isinstance(value, dict):
            channel = value.get("alert_channel")
            if isinstance(channel, dict) and channel.get("bot_token"):
                value = {**value, "alert_channel": {**channel, "bot_token": "***"}}
            for field_name in sorted(value):
                typer.echo(f"    {field_name:<30} = {value[field_name]}")
        else:
            typer.echo(f"    {value}")


@app.command("configure")
def configure(
    max_requests: Optional[int] = typer.Option(
        None, "--max-requests", help="Requests admitted per 60-second window (0 = stop).",
    ),
    min_delay: Optional[float] = typer.Option(
        None, "--min-delay", help="Lower bound of the randomized gap, seconds.",
    ),
    max_delay: Optional[float] = typer.Option(
        None, "--max-delay", help="Upper bound of the randomized gap, seconds.",
    ),
    rotation: Optional[bool] = typer.Option(
        None, "--rotation/--no-rotation", help="Round-robin proxy selection.",
    ),
    fingerprints: Optional[bool] = typer.Option(
        None, "--fingerprints/--no-fingerprints", help="Random User-Agent per request.",
    ),
    caching: Optional[bool] = typer.Option(
        None, "--caching/--no-caching", help="Serve repeated calls from the response cache.",
    ),
    cache_ttl: Optional[float] = typer.Option(
        None, "--cache-ttl", help="Cache entry lifetime, seconds.",
    ),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file.",
    ),
) -> None:
    """Persist a partial policy update to the settings store.

    Only the options given are changed.  The merged policy is validated
    before anything is written.
    """
    changes = {
        key: value
        for key, value in (
            ("max_requests_per_window", max_requests),
            ("min_delay_seconds", min_delay),
            ("max_delay_seconds", max_delay),
            ("identity_rotation_enabled", rotation),
            ("fingerprint_rotation_enabled", fingerprints),
            ("caching_enabled", caching),
            ("cache_ttl_seconds", cache_ttl),
        )
        if value is not None
    }
    if not changes:
        typer.echo("[ERROR] Nothing to change; pass at least one option.", err=True)
        raise typer.Exit(code=1)

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    merged = _update_policy_or_exit(config, changes)
    typer.echo(f"[OK] Policy updated ({len(changes)} field(s)).")
    for key in sorted(changes):
        typer.echo(f"  {key:<30} = {merged[key]}")


@app.command("reset-policy")
def reset_policy(
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file.",
    ),
) -> None:
    """Delete persisted policy overrides (also lifts an emergency stop)."""
    from market_governor.db.connection import open_settings_db
    from market_governor.db.repositories.settings_repo import SettingsRepository
    from market_governor.governance.persistence import GOVERNANCE_CONFIG_KEY

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    with open_settings_db(config.settings) as conn:
        removed = SettingsRepository(conn).delete(GOVERNANCE_CONFIG_KEY)

    if removed:
        typer.echo("[OK] Persisted policy cleared; configured profiles apply on next start.")
    else:
        typer.echo("No persisted policy to clear.")


@app.command("emergency-stop")
def emergency_stop(
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file.",
    ),
) -> None:
    """Refuse every outbound request (budget = 0) until the policy is changed.

    Always succeeds, even when the other stored fields no longer validate.
    """
    from market_governor.db.connection import open_settings_db
    from market_governor.db.repositories.settings_repo import SettingsRepository
    from market_governor.governance.persistence import persist_emergency_stop

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    with open_settings_db(config.settings) as conn:
        persist_emergency_stop(SettingsRepository(conn))
    typer.echo("[STOPPED] Emergency stop persisted: all marketplace requests are refused.")
    typer.echo("  Lift it with `configure --max-requests N`, `safe-mode` or `reset-policy`.")


@app.command("safe-mode")
def safe_mode(
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file.",
    ),
) -> None:
    """Persist the stricter safe-mode profile."""
    from market_governor.governance.reporter import format_policy_block
    from market_governor.governance.models import GovernanceConfig

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    merged = _update_policy_or_exit(config, config.safe_mode.as_changes())
    policy = GovernanceConfig.model_validate({**config.startup_policy().model_dump(), **merged})
    typer.echo("[OK] Safe mode persisted.")
    typer.echo(format_policy_block(policy, title="Stored policy"))


@app.command("set-credential")
def set_credential(
    api_key: str = typer.Argument(..., help="Static marketplace API credential."),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file.",
    ),
) -> None:
    """Store the marketplace API credential in the settings store."""
    from market_governor.db.connection import open_settings_db
    from market_governor.db.repositories.settings_repo import SettingsRepository
    from market_governor.governance.persistence import set_api_credential

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    try:
        with open_settings_db(config.settings) as conn:
            set_api_credential(SettingsRepository(conn), api_key)
    except ValueError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo("[OK] API credential stored.")


@app.command("set-alert-channel")
def set_alert_channel(
    bot_token: Optional[str] = typer.Option(None, "--bot-token", help="Bot API token."),
    chat_id: Optional[str] = typer.Option(None, "--chat-id", help="Destination chat id."),
    clear: bool = typer.Option(False, "--clear", help="Remove the stored alert channel."),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file.",
    ),
) -> None:
    """Store (or clear) the alert channel used for blocking notifications."""
    if clear:
        changes: dict[str, Any] = {"alert_channel": None}
    elif bot_token and chat_id:
        changes = {"alert_channel": {"bot_token": bot_token, "chat_id": chat_id}}
    else:
        typer.echo("[ERROR] Pass both --bot-token and --chat-id, or --clear.", err=True)
        raise typer.Exit(code=1)

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    _update_policy_or_exit(config, changes)
    typer.echo("[OK] Alert channel cleared." if clear else f"[OK] Alerts will go to chat {chat_id}.")


@app.command("fetch")
def fetch(
    url: str = typer.Argument(..., help="Marketplace URL to request."),
    method: str = typer.Option("GET", "--method", "-X", help="HTTP method."),
    probe: bool = typer.Option(
        True,
        "--probe/--no-probe",
        help="TCP-probe seed proxies before the request.",
    ),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file.",
    ),
) -> None:
    """Perform one governed request and print the outcome.

    Exit codes: 0 success, 1 refused by the rate limit, 2 network failure,
    3 non-2xx response.
    """
    from market_governor.governance.bootstrap import create_runtime
    from market_governor.governance.errors import NetworkFailure, RateLimitExceeded
    from market_governor.governance.reporter import format_outcome

    config = _load_config_or_exit(config_path)
    _configure_logging(config)
    if not probe:
        config = _without_probe(config)

    async def _run():
        policy = create_runtime(config)
        try:
            await policy.initialize(start_monitor=False)
            return await policy.governor.dispatch(url, method=method)
        finally:
            await policy.shutdown()

    try:
        outcome = asyncio.run(_run())
    except RateLimitExceeded as exc:
        typer.echo(f"[REFUSED] {exc}", err=True)
        raise typer.Exit(code=1)
    except NetworkFailure as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=2)

    typer.echo(format_outcome(outcome))
    if not outcome.ok:
        raise typer.Exit(code=3)


if __name__ == "__main__":
    app()
