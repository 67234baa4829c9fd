"""Database layer for facealbums: SQLite-backed metadata store, leases and job runs."""
from __future__ import annotations

from facealbums.db.connection import close_db, connect, get_db, get_db_path
from facealbums.db.lease import JobLease
from facealbums.db.repository import Repository

__all__ = ["JobLease", "Repository", "close_db", "connect", "get_db", "get_db_path"]
