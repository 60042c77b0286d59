"""
SQLite schema DDL for the settings store.

One key-value table holds everything that must survive a restart: the
governance policy overrides and the static marketplace credential.  Runtime
state (rate window, cache, proxy cursor) is never written here.

All statements use ``IF NOT EXISTS`` so ``apply_schema()`` is idempotent.
"""

from __future__ import annotations

import logging
import sqlite3

logger = logging.getLogger(__name__)

_DDL_SETTINGS = """
CREATE TABLE IF NOT EXISTS settings (
    key         TEXT    PRIMARY KEY,
    value_json  TEXT    NOT NULL,
    updated_at  TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);
"""

ALL_TABLE_NAMES: tuple[str, ...] = ("settings",)


def apply_schema(conn: sqlite3.Connection) -> None:
    """Create the settings table if it does not exist."""
    conn.execute(_DDL_SETTINGS)
    logger.debug("Settings schema applied (%d tables).", len(ALL_TABLE_NAMES))
