"""Repository: data access for images, faces, albums, thumbnails and job runs.

Status changes go through :meth:`Repository.advance_status`, which encodes the
forward-only state machine in the ``WHERE`` clause of the UPDATE itself: a row
whose current status is not a legal predecessor of the target is never
touched.  Multi-row writes (faces + status, a page of albums) run inside one
``BEGIN IMMEDIATE`` transaction.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable

from facealbums.errors import StatusRegressionError
from facealbums.models import (
    ApiType,
    Cursor,
    GateVerdict,
    ImageRecord,
    ImageStatus,
    IndexedFace,
    PageFilter,
    sources_for,
)

log = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _new_id() -> str:
    return str(uuid.uuid4())


# JSON-encoded columns decoded on read.
_JSON_COLUMNS = {
    "matched_face_ids",
    "faces_indexing_failed_reasons",
    "bounding_box",
    "attributes",
    "image_ids",
}


def _decode(row: sqlite3.Row) -> dict[str, Any]:
    out = dict(row)
    for key in _JSON_COLUMNS & out.keys():
        if out[key] is not None:
            out[key] = json.loads(out[key])
    return out


class Repository:
    """Data access layer for the facealbums database."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    # ── images ─────────────────────────────────────────────────────────────

    def register_upload(
        self,
        user_id: str,
        folder_id: str | None,
        file_name: str,
        storage_key: str,
        image_id: str | None = None,
    ) -> str:
        """Insert an image in ``UPLOADED_TO_S3``.  Returns image_id.

        Re-registering the same storage key for the same user returns the
        existing row untouched.
        """
        row = self.conn.execute(
            "SELECT image_id FROM images WHERE user_id = ? AND storage_key = ?",
            [user_id, storage_key],
        ).fetchone()
        if row:
            return row["image_id"]
        image_id = image_id or _new_id()
        self.conn.execute(
            """INSERT INTO images (image_id, user_id, folder_id, file_name,
                                   storage_key, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            [image_id, user_id, folder_id, file_name, storage_key,
             ImageStatus.UPLOADED_TO_S3.value, _now()],
        )
        self.conn.commit()
        return image_id

    def get_image(self, image_id: str) -> dict[str, Any] | None:
        row = self.conn.execute(
            "SELECT * FROM images WHERE image_id = ?", [image_id]
        ).fetchone()
        return _decode(row) if row else None

    def fetch_page(
        self, page_filter: PageFilter, cursor: Cursor
    ) -> tuple[list[ImageRecord], Cursor | None]:
        """Return the next page of eligible images and the cursor after it.

        Pages are keyed on ``image_id`` rather than an offset: images leave the
        filter as they are processed, so an offset would skip rows.  The
        returned cursor is ``None`` when the page is empty.
        """
        statuses = [s.value for s in page_filter.statuses]
        placeholders = ",".join("?" * len(statuses))
        sql = f"""SELECT image_id, user_id, folder_id, storage_key, status
                  FROM images
                  WHERE user_id = ? AND folder_id = ? AND status IN ({placeholders})"""
        params: list[Any] = [page_filter.user_id, page_filter.folder_id, *statuses]
        if cursor.after_id is not None:
            sql += " AND image_id > ?"
            params.append(cursor.after_id)
        sql += " ORDER BY image_id LIMIT ?"
        params.append(cursor.page_size)

        rows = self.conn.execute(sql, params).fetchall()
        records = [ImageRecord.from_row(r) for r in rows]
        if not records:
            return [], None
        return records, cursor.advance(records[-1].image_id)

    def advance_status(
        self,
        image_id: str,
        target: ImageStatus,
        **fields: Any,
    ) -> None:
        """Move *image_id* forward to *target*, writing *fields* alongside.

        Raises :class:`StatusRegressionError` when the current status is not a
        legal predecessor of *target* (including the image already being
        there).  Must be called inside an open transaction or in autocommit.
        """
        sources = [s.value for s in sources_for(target)]
        if not sources:
            raise StatusRegressionError(
                f"{target.value} is not reachable from any status",
                {"image_id": image_id},
            )
        sets = ["status = ?", "updated_at = ?"] + [f"{k} = ?" for k in fields]
        vals: list[Any] = [target.value, _now(), *fields.values(), image_id, *sources]
        cur = self.conn.execute(
            f"""UPDATE images SET {', '.join(sets)}
                WHERE image_id = ? AND status IN ({','.join('?' * len(sources))})""",
            vals,
        )
        if cur.rowcount == 0:
            row = self.conn.execute(
                "SELECT status FROM images WHERE image_id = ?", [image_id]
            ).fetchone()
            current = row["status"] if row else None
            raise StatusRegressionError(
                f"Image {image_id} cannot move from {current} to {target.value}",
                {"image_id": image_id, "current": current, "target": target.value},
            )

    def record_detection(self, image_id: str, verdict: GateVerdict) -> ImageStatus:
        """Persist a quality-gate verdict and advance the image accordingly."""
        target = (
            ImageStatus.FACES_DETECTED if verdict.passed else ImageStatus.NO_FACES_DETECTED
        )
        self.advance_status(
            image_id,
            target,
            faces_detected=int(verdict.is_face_content_present),
            faces_detected_count=verdict.face_count,
            is_quality_ok=int(verdict.is_quality_sufficient),
            last_error=None,
        )
        self.conn.commit()
        return target

    def record_match(self, image_id: str, matched_face_ids: list[str]) -> None:
        self.advance_status(
            image_id,
            ImageStatus.FACES_MATCHED,
            matched_face_ids=json.dumps(matched_face_ids),
            faces_matched_count=len(matched_face_ids),
            last_error=None,
        )
        self.conn.commit()

    def record_index(
        self,
        image_id: str,
        namespace: str,
        faces: list[IndexedFace],
        unindexed_reasons: list[str],
    ) -> None:
        """Insert the new Face rows and mark the image ``FACES_INDEXED`` atomically."""
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            self._insert_faces(namespace, image_id, faces)
            self.advance_status(
                image_id,
                ImageStatus.FACES_INDEXED,
                faces_indexed_count=len(faces),
                faces_indexing_failed_count=len(unindexed_reasons),
                faces_indexing_failed_reasons=json.dumps(unindexed_reasons),
                skipped_faces_indexing=int(not faces),
                last_error=None,
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    def record_error(self, image_id: str, message: str) -> None:
        """Store the last failure on the image without touching its status."""
        self.conn.execute(
            "UPDATE images SET last_error = ?, updated_at = ? WHERE image_id = ?",
            [message, _now(), image_id],
        )
        self.conn.commit()

    def count_by_status(
        self, user_id: str | None = None, folder_id: str | None = None
    ) -> dict[str, int]:
        where, params = [], []
        if user_id:
            where.append("user_id = ?")
            params.append(user_id)
        if folder_id:
            where.append("folder_id = ?")
            params.append(folder_id)
        clause = f"WHERE {' AND '.join(where)}" if where else ""
        rows = self.conn.execute(
            f"SELECT status, COUNT(*) AS cnt FROM images {clause} GROUP BY status",
            params,
        ).fetchall()
        return {r["status"]: r["cnt"] for r in rows}

    # ── api_responses ──────────────────────────────────────────────────────

    def record_api_response(
        self,
        user_id: str,
        image_id: str | None,
        api_type: ApiType,
        response: dict[str, Any],
    ) -> int:
        cur = self.conn.execute(
            """INSERT INTO api_responses (user_id, image_id, type, response, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            [user_id, image_id, api_type.value, json.dumps(response, default=str), _now()],
        )
        self.conn.commit()
        return cur.lastrowid  # type: ignore[return-value]

    def get_api_responses(
        self, image_id: str, api_type: ApiType | None = None
    ) -> list[dict[str, Any]]:
        sql = "SELECT * FROM api_responses WHERE image_id = ?"
        params: list[Any] = [image_id]
        if api_type is not None:
            sql += " AND type = ?"
            params.append(api_type.value)
        rows = self.conn.execute(sql + " ORDER BY id", params).fetchall()
        out = []
        for r in rows:
            d = dict(r)
            d["response"] = json.loads(d["response"])
            out.append(d)
        return out

    # ── collections ────────────────────────────────────────────────────────

    def create_collection(self, namespace: str, user_id: str | None = None) -> bool:
        """Record a clustering namespace.  Returns False if it already existed."""
        cur = self.conn.execute(
            "INSERT OR IGNORE INTO collections (namespace, user_id, created_at) VALUES (?, ?, ?)",
            [namespace, user_id, _now()],
        )
        self.conn.commit()
        return cur.rowcount > 0

    def list_collections(self) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT * FROM collections ORDER BY created_at"
        ).fetchall()
        return [dict(r) for r in rows]

    # ── faces ──────────────────────────────────────────────────────────────

    def _insert_faces(
        self, namespace: str, image_id: str, faces: Iterable[IndexedFace]
    ) -> None:
        self.conn.executemany(
            """INSERT OR IGNORE INTO faces
                   (face_id, namespace, image_id, confidence, bounding_box,
                    attributes, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            [
                (
                    f.face_id,
                    namespace,
                    image_id,
                    f.confidence,
                    json.dumps(f.bounding_box) if f.bounding_box else None,
                    json.dumps(f.attributes, default=str),
                    _now(),
                )
                for f in faces
            ],
        )

    def faces_for_namespace(self, namespace: str) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT * FROM faces WHERE namespace = ? ORDER BY created_at, rowid",
            [namespace],
        ).fetchall()
        return [_decode(r) for r in rows]

    def count_faces(self, namespace: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS cnt FROM faces WHERE namespace = ?", [namespace]
        ).fetchone()
        return row["cnt"]

    def faces_without_thumbnail(self, user_id: str, namespace: str) -> list[dict[str, Any]]:
        """Faces in *namespace* owned by *user_id* that have no thumbnail yet.

        Each dict carries the owning image's ``storage_key``.
        """
        rows = self.conn.execute(
            """SELECT f.face_id, f.namespace, f.image_id, f.bounding_box,
                      i.storage_key
               FROM faces f
               JOIN images i ON i.image_id = f.image_id
               LEFT JOIN thumbnails t
                      ON t.face_id = f.face_id AND t.namespace = f.namespace
               WHERE f.namespace = ? AND i.user_id = ? AND t.thumbnail_id IS NULL
               ORDER BY f.created_at, f.rowid""",
            [namespace, user_id],
        ).fetchall()
        return [_decode(r) for r in rows]

    # ── albums ─────────────────────────────────────────────────────────────

    def insert_albums(
        self, user_id: str, namespace: str, face_map: dict[str, list[str]]
    ) -> list[str]:
        """Bulk-insert one Album row per face identifier.  Returns album IDs.

        Rows are never updated; a later page that touches the same identity
        adds another row (see :meth:`fold_albums`).
        """
        if not face_map:
            return []
        album_ids = [_new_id() for _ in face_map]
        now = _now()
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            self.conn.executemany(
                """INSERT INTO albums (album_id, user_id, namespace, face_id,
                                       image_ids, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                [
                    (album_id, user_id, namespace, face_id, json.dumps(image_ids), now)
                    for album_id, (face_id, image_ids) in zip(album_ids, face_map.items())
                ],
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return album_ids

    def list_albums(self, user_id: str, namespace: str) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            """SELECT * FROM albums WHERE user_id = ? AND namespace = ?
               ORDER BY created_at, rowid""",
            [user_id, namespace],
        ).fetchall()
        return [_decode(r) for r in rows]

    def fold_albums(self, user_id: str, namespace: str) -> dict[str, list[str]]:
        """Fold per-page Album rows by face identifier.

        Returns ``{face_id: [image_id, ...]}`` with image IDs unique and in
        first-seen order, identities in order of their first row.
        """
        folded: dict[str, list[str]] = {}
        seen: dict[str, set[str]] = {}
        for album in self.list_albums(user_id, namespace):
            images = folded.setdefault(album["face_id"], [])
            known = seen.setdefault(album["face_id"], set())
            for image_id in album["image_ids"]:
                if image_id not in known:
                    known.add(image_id)
                    images.append(image_id)
        return folded

    # ── thumbnails ─────────────────────────────────────────────────────────

    def upsert_thumbnail(self, face_id: str, namespace: str, storage_key: str) -> str:
        self.conn.execute(
            """INSERT INTO thumbnails (thumbnail_id, face_id, namespace, storage_key, created_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(face_id, namespace)
               DO UPDATE SET storage_key = excluded.storage_key""",
            [_new_id(), face_id, namespace, storage_key, _now()],
        )
        self.conn.commit()
        row = self.conn.execute(
            "SELECT thumbnail_id FROM thumbnails WHERE face_id = ? AND namespace = ?",
            [face_id, namespace],
        ).fetchone()
        return row["thumbnail_id"]

    def get_thumbnail(self, face_id: str, namespace: str) -> dict[str, Any] | None:
        row = self.conn.execute(
            "SELECT * FROM thumbnails WHERE face_id = ? AND namespace = ?",
            [face_id, namespace],
        ).fetchone()
        return dict(row) if row else None

    # ── job runs ───────────────────────────────────────────────────────────

    def start_run(self, user_id: str, folder_id: str, namespace: str) -> str:
        job_id = _new_id()
        self.conn.execute(
            """INSERT INTO job_runs (job_id, user_id, folder_id, namespace, status, started_at)
               VALUES (?, ?, ?, ?, 'running', ?)""",
            [job_id, user_id, folder_id, namespace, _now()],
        )
        self.conn.commit()
        return job_id

    def update_run(self, job_id: str, **counters: int) -> None:
        if not counters:
            return
        sets = ", ".join(f"{k} = ?" for k in counters)
        self.conn.execute(
            f"UPDATE job_runs SET {sets} WHERE job_id = ?",
            [*counters.values(), job_id],
        )
        self.conn.commit()

    def finish_run(self, job_id: str, status: str, error: str | None = None) -> None:
        self.conn.execute(
            "UPDATE job_runs SET status = ?, error = ?, completed_at = ? WHERE job_id = ?",
            [status, error, _now(), job_id],
        )
        self.conn.commit()

    def get_run(self, job_id: str) -> dict[str, Any] | None:
        row = self.conn.execute(
            "SELECT * FROM job_runs WHERE job_id = ?", [job_id]
        ).fetchone()
        return dict(row) if row else None

    def recent_runs(self, limit: int = 10) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT * FROM job_runs ORDER BY started_at DESC, rowid DESC LIMIT ?",
            [limit],
        ).fetchall()
        return [dict(r) for r in rows]
