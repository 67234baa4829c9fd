"""Single-flight lease per (user, folder, namespace).

A processing job must hold the lease before it touches any page, so two
concurrent triggers for the same folder cannot both index the same image.
Leases expire after a TTL so a crashed job does not block the folder forever.
"""
from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from facealbums.errors import JobAlreadyRunningError

log = logging.getLogger(__name__)


def _iso(ts: datetime) -> str:
    return ts.isoformat(timespec="seconds")


class JobLease:
    """Acquire/release a row in ``job_leases``.

    Usable as a context manager::

        with JobLease(conn, user_id, folder_id, namespace):
            ...
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        folder_id: str,
        namespace: str,
        ttl_minutes: int = 60,
    ) -> None:
        self.conn = conn
        self.key = (user_id, folder_id, namespace)
        self.ttl = timedelta(minutes=ttl_minutes)
        self.token: str | None = None

    def acquire(self) -> str:
        """Take the lease or raise :class:`JobAlreadyRunningError`.

        An expired lease held by someone else is reclaimed.
        """
        now = datetime.now(timezone.utc)
        token = uuid.uuid4().hex

        # BEGIN IMMEDIATE takes the write lock up front so the read-then-write
        # below cannot interleave with another acquirer.
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            row = self.conn.execute(
                """SELECT token, expires_at FROM job_leases
                   WHERE user_id = ? AND folder_id = ? AND namespace = ?""",
                list(self.key),
            ).fetchone()
            if row and row["expires_at"] > _iso(now):
                self.conn.rollback()
                raise JobAlreadyRunningError(
                    "A processing job is already running for this folder",
                    {
                        "user_id": self.key[0],
                        "folder_id": self.key[1],
                        "namespace": self.key[2],
                        "expires_at": row["expires_at"],
                    },
                )
            if row:
                log.warning(
                    "Reclaiming expired lease for %s (expired %s)", self.key, row["expires_at"]
                )
            self.conn.execute(
                """INSERT INTO job_leases
                       (user_id, folder_id, namespace, token, acquired_at, expires_at)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(user_id, folder_id, namespace) DO UPDATE SET
                       token = excluded.token,
                       acquired_at = excluded.acquired_at,
                       expires_at = excluded.expires_at""",
                [*self.key, token, _iso(now), _iso(now + self.ttl)],
            )
            self.conn.commit()
        except JobAlreadyRunningError:
            raise
        except Exception:
            self.conn.rollback()
            raise
        self.token = token
        log.debug("Acquired lease %s for %s", token, self.key)
        return token

    def release(self) -> None:
        """Drop the lease if we still hold it.  Safe to call twice."""
        if self.token is None:
            return
        self.conn.execute(
            """DELETE FROM job_leases
               WHERE user_id = ? AND folder_id = ? AND namespace = ? AND token = ?""",
            [*self.key, self.token],
        )
        self.conn.commit()
        log.debug("Released lease %s for %s", self.token, self.key)
        self.token = None

    def __enter__(self) -> "JobLease":
        self.acquire()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.release()
