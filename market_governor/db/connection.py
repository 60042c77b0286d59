"""
SQLite connection management for the settings store.

``open_settings_db()`` is a context manager that:
  - Creates the database file (and parent directories) on first use.
  - Sets a busy timeout so a CLI command and a long-running governor process
    can share the file.
  - Optionally enables WAL journal mode.
  - Applies the schema idempotently, so callers never see a missing table.
  - Uses ``sqlite3.Row`` factory so rows behave like dicts.
  - Commits on clean exit, rolls back on exception.

Usage::

    from market_governor.db.connection import open_settings_db

    with open_settings_db(config.settings) as conn:
        SettingsRepository(conn).set("api_credential", "...")
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Generator

from market_governor.db.schema import apply_schema

if TYPE_CHECKING:
    from market_governor.config import SettingsStoreConfig

logger = logging.getLogger(__name__)


@contextmanager
def open_settings_db(
    settings: "SettingsStoreConfig",
) -> Generator[sqlite3.Connection, None, None]:
    """Yield a configured connection to the settings database.

    Args:
        settings: ``[settings]`` section of ``AppConfig``.  ``db_path`` may be
            ``":memory:"`` in tests.

    Yields:
        An open ``sqlite3.Connection`` with the schema applied.

    Raises:
        sqlite3.OperationalError: If the database cannot be opened or stays
            locked past the busy timeout.
    """
    db_path = settings.db_path
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path, timeout=settings.busy_timeout_ms / 1000)
    conn.row_factory = sqlite3.Row

    try:
        conn.execute(f"PRAGMA busy_timeout = {int(settings.busy_timeout_ms)};")
        if settings.wal_mode and db_path != ":memory:":
            conn.execute("PRAGMA journal_mode = WAL;")

        apply_schema(conn)
        yield conn
        conn.commit()

    except Exception:
        conn.rollback()
        logger.error("Settings database transaction rolled back (%s).", db_path)
        raise

    finally:
        conn.close()
