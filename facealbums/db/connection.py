"""Database connection management: SQLite with WAL mode."""
from __future__ import annotations

import os
import sqlite3
from pathlib import Path

_DEFAULT_DB_PATH = Path.home() / ".cache" / "facealbums" / "facealbums.db"

_connection: sqlite3.Connection | None = None


def get_db_path() -> Path:
    """Return the database file path from env or default."""
    raw = os.getenv("FACEALBUMS_DB_PATH", "")
    if raw:
        return Path(raw).expanduser()
    return _DEFAULT_DB_PATH


def connect(path: Path) -> sqlite3.Connection:
    """Open a new connection to *path* and bring its schema up to date.

    isolation_level=None disables Python's implicit transaction management
    so callers can use explicit BEGIN IMMEDIATE / COMMIT.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=30, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=5000")

    from facealbums.db.schema import ensure_schema
    ensure_schema(conn)
    return conn


def get_db(path: Path | None = None) -> sqlite3.Connection:
    """Return a singleton SQLite connection (creates DB + schema on first call)."""
    global _connection
    if _connection is not None:
        return _connection
    _connection = connect(path or get_db_path())
    return _connection


def close_db() -> None:
    """Close the singleton connection if open."""
    global _connection
    if _connection is not None:
        _connection.close()
        _connection = None
