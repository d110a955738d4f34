"""Database initialisation for sshfleet.

Creates (or migrates) the SQLite device registry.  The database path is
taken from the ``SSHFLEET_DATA_DIR`` environment variable (default:
``./data``).

Usage::

    from sshfleet.db import get_db, init_db
    init_db()                  # idempotent, safe to call multiple times
    conn = get_db()            # returns a per-thread connection
"""

from __future__ import annotations

import os
import sqlite3
import threading
from pathlib import Path

_DB_PATH: Path | None = None
_LOCAL = threading.local()


def _db_path() -> Path:
    global _DB_PATH
    if _DB_PATH is None:
        data_dir = Path(os.environ.get("SSHFLEET_DATA_DIR", "./data"))
        data_dir.mkdir(parents=True, exist_ok=True)
        _DB_PATH = data_dir / "sshfleet.db"
    return _DB_PATH


def set_db_path(path: str | Path) -> None:
    """Override the database path (useful for tests)."""
    global _DB_PATH, _LOCAL
    _DB_PATH = Path(path)
    _LOCAL = threading.local()


def get_db() -> sqlite3.Connection:
    """Return a per-thread SQLite connection (WAL mode)."""
    conn = getattr(_LOCAL, "conn", None)
    if conn is None:
        path = _db_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        _LOCAL.conn = conn
    return conn


def init_db(path: str | Path | None = None) -> None:
    """Create all tables (idempotent — safe to run multiple times)."""
    if path:
        set_db_path(path)
    conn = get_db()
    _create_schema(conn)
    conn.commit()


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS devices (
    id                   TEXT PRIMARY KEY,
    name                 TEXT NOT NULL,
    host                 TEXT NOT NULL,
    port                 INTEGER NOT NULL DEFAULT 22,
    username             TEXT NOT NULL,
    password             TEXT,
    use_password_auth    INTEGER NOT NULL DEFAULT 0,
    ssh_key_path         TEXT,
    accept_new_host_key  INTEGER NOT NULL DEFAULT 0,
    status               TEXT NOT NULL DEFAULT 'unknown'
                         CHECK(status IN ('unknown', 'reachable', 'unreachable')),
    created_at           TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at           TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_devices_name ON devices(name COLLATE NOCASE);
"""


def _create_schema(conn: sqlite3.Connection) -> None:
    """Execute all CREATE TABLE / INDEX statements in one transaction."""
    conn.executescript(_SCHEMA_SQL)
    _migrate(conn)


def _migrate(conn: sqlite3.Connection) -> None:
    """Add columns introduced after the first schema version."""
    cols = {r[1] for r in conn.execute("PRAGMA table_info(devices)").fetchall()}
    if "accept_new_host_key" not in cols:
        conn.execute(
            "ALTER TABLE devices ADD COLUMN accept_new_host_key INTEGER NOT NULL DEFAULT 0"
        )
