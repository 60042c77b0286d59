"""
ASCII terminal formatters and JSON export for governance CLI commands.

Functions here produce human-readable output for:
  - show-status      (format_status_report)
  - validate-config  (format_policy_block)
  - fetch            (format_outcome)

No external dependencies: pure stdlib + project models.
"""

from __future__ import annotations

import json
from collections import Counter
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

from market_governor.governance.models import BlockEvent, GovernanceConfig
from market_governor.utils.time_utils import format_duration

if TYPE_CHECKING:
    from market_governor.governance.bootstrap import BootstrapStatus
    from market_governor.governance.governor import DispatchOutcome, GovernorStats


# ── Helpers ───────────────────────────────────────────────────────────────────


def _bool_icon(v: bool) -> str:
    return "Yes" if v else "No"


def _mode_badge(status: "BootstrapStatus") -> str:
    if status.emergency_stopped:
        return "[STOPPED]  "
    if status.safe_mode_active:
        return "[SAFE MODE]"
    if not status.initialized:
        return "[NOT INIT] "
    return "[ACTIVE]   "


def _utilization_bar(fraction: float, width: int = 20) -> str:
    filled = min(width, int(round(fraction * width)))
    return "[" + "#" * filled + "." * (width - filled) + "]"


# ── Policy block ──────────────────────────────────────────────────────────────


def format_policy_block(config: GovernanceConfig, title: str = "Policy") -> str:
    """Format one ``GovernanceConfig`` as an indented block."""
    budget = (
        "0 (emergency stop)"
        if config.is_halted
        else f"{config.max_requests_per_window} per {format_duration(config.window_seconds)}"
    )
    lines = [
        f"  {title}",
        f"    Budget          : {budget}",
        f"    Delay           : {config.min_delay_seconds:.1f}s - {config.max_delay_seconds:.1f}s",
        f"    Proxy rotation  : {_bool_icon(config.identity_rotation_enabled)}",
        f"    UA rotation     : {_bool_icon(config.fingerprint_rotation_enabled)}",
        f"    Caching         : {_bool_icon(config.caching_enabled)}",
        f"    Cache TTL       : {format_duration(config.cache_ttl_seconds)}",
        f"    Alert channel   : {'chat ' + config.alert_channel.chat_id if config.alert_channel else 'none'}",
    ]
    return "\n".join(lines)


# ── Stats ─────────────────────────────────────────────────────────────────────


def format_stats(stats: "GovernorStats") -> str:
    """Format counters and window usage for ``show-status``."""
    lines = [
        f"  Window usage    : {_utilization_bar(stats.utilization)} "
        f"{stats.request_count}/{stats.config.max_requests_per_window} "
        f"({stats.utilization:.0%})",
        f"  Cache entries   : {stats.cache_size}",
        f"  Proxies         : {stats.proxy_count} (next #{stats.current_proxy_index})",
        "",
        f"  Dispatched      : {stats.dispatched}",
        f"  Cache hits      : {stats.cache_hits}",
        f"  Rejected        : {stats.rejected}",
        f"  Blocked replies : {stats.blocked_responses}",
        f"  Network errors  : {stats.network_failures}",
    ]
    return "\n".join(lines)


def format_recent_blocks(events: Sequence[BlockEvent], limit: int = 5) -> str:
    """Summarise blocked responses: counts per status, then the latest events."""
    by_status = Counter(e.status_code for e in events)
    summary = ", ".join(f"{code} x{count}" for code, count in sorted(by_status.items()))
    lines = [f"  Recent blocks   : {len(events)} ({summary})"]
    for event in list(events)[-limit:]:
        lines.append(
            f"    {event.occurred_at:%H:%M:%S} {event.method} {event.url} "
            f"-> {event.status_code} via {event.proxy or 'direct'} ({event.reason})"
        )
    return "\n".join(lines)


def format_status_report(status: "BootstrapStatus") -> str:
    """Format the full operator status view.

    Sections: mode badge, policy, statistics, recent blocks, recommendations.
    """
    lines = [
        f"  Status: {_mode_badge(status)}   checked {status.checked_at}",
        "",
        format_policy_block(status.stats.config, title="Active policy"),
        "",
        format_stats(status.stats),
        "",
    ]
    if status.stats.recent_blocks:
        lines.append(format_recent_blocks(status.stats.recent_blocks))
        lines.append("")
    if status.recommendations:
        lines.append("  Recommendations:")
        for rec in status.recommendations:
            lines.append(f"    - {rec}")
    else:
        lines.append("  No recommendations; governance looks healthy.")
    lines.append("")
    return "\n".join(lines)


# ── Dispatch outcome ──────────────────────────────────────────────────────────


def format_outcome(outcome: "DispatchOutcome", body_chars: int = 500) -> str:
    """Summarise a ``DispatchOutcome`` for the ``fetch`` command."""
    source = "cache" if outcome.from_cache else "network"
    proxy = outcome.proxy.label if outcome.proxy else "direct"
    body = outcome.text if len(outcome.text) <= body_chars else outcome.text[:body_chars] + "..."
    lines = [
        f"  Status     : {outcome.status_code} ({source})",
        f"  Proxy      : {proxy}",
        f"  User-Agent : {outcome.fingerprint or '-'}",
        f"  Elapsed    : {outcome.elapsed_seconds:.2f}s",
        "",
        body,
        "",
    ]
    return "\n".join(lines)


# ── JSON export ───────────────────────────────────────────────────────────────


def status_to_dict(status: "BootstrapStatus") -> dict:
    """Serialise a status snapshot; the alert bot token is never included."""
    stats = status.stats
    return {
        "checked_at":        status.checked_at,
        "initialized":       status.initialized,
        "safe_mode_active":  status.safe_mode_active,
        "emergency_stopped": status.emergency_stopped,
        "policy":            stats.config.model_dump(mode="json", exclude={"alert_channel"}),
        "alert_channel":     stats.config.alert_channel is not None,
        "stats": {
            "request_count":       stats.request_count,
            "utilization":         round(stats.utilization, 4),
            "cache_size":          stats.cache_size,
            "proxy_count":         stats.proxy_count,
            "current_proxy_index": stats.current_proxy_index,
            "dispatched":          stats.dispatched,
            "cache_hits":          stats.cache_hits,
            "rejected":            stats.rejected,
            "blocked_responses":   stats.blocked_responses,
            "network_failures":    stats.network_failures,
        },
        "recent_blocks": [
            {
                "occurred_at": e.occurred_at.isoformat(timespec="seconds"),
                "method":      e.method,
                "url":         e.url,
                "status_code": e.status_code,
                "reason":      e.reason,
                "proxy":       e.proxy,
                "fingerprint": e.fingerprint,
            }
            for e in stats.recent_blocks
        ],
        "recommendations": list(status.recommendations),
    }


def write_status_report(status: "BootstrapStatus", output_path: str) -> Path:
    """Write ``status_to_dict(status)`` as indented JSON.

    Returns:
        Path to the written file.
    """
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with open(out, "w", encoding="utf-8") as f:
        json.dump(status_to_dict(status), f, indent=2, default=str)
    return out
