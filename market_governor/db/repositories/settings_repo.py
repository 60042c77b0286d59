"""
Repository for the ``settings`` key-value table.

Values are stored JSON-encoded so that numbers, booleans, nested dicts and
``None`` round-trip without per-key type handling.  The connection is opened
and managed by the caller (typically via ``open_settings_db()``).
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Optional

logger = logging.getLogger(__name__)


class SettingsRepository:
    """Read/write access to the ``settings`` table.

    Attributes:
        conn: The active ``sqlite3.Connection``.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def get(self, key: str, default: Any = None) -> Any:
        """Return the decoded value for ``key``, or ``default`` if unset."""
        row = self.conn.execute(
            "SELECT value_json FROM settings WHERE key = ?;", (key,)
        ).fetchone()
        if row is None:
            return default
        return json.loads(row["value_json"])

    def set(self, key: str, value: Any) -> None:
        """Insert or replace ``key``."""
        logger.debug("Settings: set %s", key)
        self.conn.execute(
            """
            INSERT INTO settings (key, value_json, updated_at)
            VALUES (?, ?, strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
            ON CONFLICT(key) DO UPDATE SET
                value_json = excluded.value_json,
                updated_at = excluded.updated_at;
            """,
            (key, json.dumps(value, sort_keys=True, ensure_ascii=False)),
        )

    def delete(self, key: str) -> bool:
        """Remove ``key``.  Returns True if a row was deleted."""
        cur = self.conn.execute("DELETE FROM settings WHERE key = ?;", (key,))
        return cur.rowcount > 0

    def all(self) -> dict[str, Any]:
        rows = self.conn.execute("SELECT key, value_json FROM settings ORDER BY key;").fetchall()
        return {row["key"]: json.loads(row["value_json"]) for row in rows}

    def updated_at(self, key: str) -> Optional[str]:
        row = self.conn.execute(
            "SELECT updated_at FROM settings WHERE key = ?;", (key,)
        ).fetchone()
        return row["updated_at"] if row else None
