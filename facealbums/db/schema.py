"""Database schema: CREATE TABLE statements and migration runner.

The migration system uses a simple version counter stored in a ``schema_version``
table.  Each migration is a function ``_migrate_vN(conn)`` that runs the DDL for
version *N*.  ``ensure_schema`` applies all pending migrations in order.
"""
from __future__ import annotations

import sqlite3

# ── Current schema version ────────────────────────────────────────────────────
SCHEMA_VERSION = 2


def ensure_schema(conn: sqlite3.Connection) -> None:
    """Create or upgrade the database schema to the latest version."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER NOT NULL
        )
    """)
    row = conn.execute("SELECT version FROM schema_version").fetchone()
    current = row["version"] if row else 0

    migrations = {
        1: _migrate_v1,
        2: _migrate_v2,
    }

    for v in range(current + 1, SCHEMA_VERSION + 1):
        fn = migrations.get(v)
        if fn is None:
            raise RuntimeError(f"Missing migration function for schema version {v}")
        fn(conn)
        if v == 1 and current == 0:
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", [v])
        else:
            conn.execute("UPDATE schema_version SET version = ?", [v])
        conn.commit()


# ── Migration v1: Initial schema ─────────────────────────────────────────────

def _migrate_v1(conn: sqlite3.Connection) -> None:
    """Initial schema: images, oracle audit log, faces, albums, thumbnails."""
    conn.executescript("""
        -- ── images ───────────────────────────────────────────────────────
        CREATE TABLE IF NOT EXISTS images (
            image_id                        TEXT    PRIMARY KEY,
            user_id                         TEXT    NOT NULL,
            folder_id                       TEXT,
            file_name                       TEXT,
            storage_key                     TEXT    NOT NULL,
            status                          TEXT    NOT NULL,
            faces_detected                  INTEGER DEFAULT 0,  -- boolean
            faces_detected_count            INTEGER DEFAULT 0,
            is_quality_ok                   INTEGER,            -- boolean, NULL = not evaluated
            matched_face_ids                TEXT    DEFAULT '[]',  -- JSON array
            faces_matched_count             INTEGER DEFAULT 0,
            faces_indexed_count             INTEGER DEFAULT 0,
            faces_indexing_failed_count     INTEGER DEFAULT 0,
            faces_indexing_failed_reasons   TEXT    DEFAULT '[]',  -- JSON array
            skipped_faces_indexing          INTEGER DEFAULT 0,  -- boolean
            last_error                      TEXT,
            created_at                      TEXT    NOT NULL DEFAULT (datetime('now')),
            updated_at                      TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_images_page
            ON images(user_id, folder_id, status, image_id);

        -- ── api_responses (raw oracle responses, audit/replay) ────────────
        CREATE TABLE IF NOT EXISTS api_responses (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id     TEXT    NOT NULL,
            image_id    TEXT    REFERENCES images(image_id) ON DELETE CASCADE,
            type        TEXT    NOT NULL,  -- DETECT_LABELS|SEARCH_FACES_BY_IMAGE|INDEX_FACES
            response    TEXT    NOT NULL,  -- JSON
            created_at  TEXT    NOT NULL DEFAULT (datetime('now'))
        );
        CREATE INDEX IF NOT EXISTS idx_api_responses_image
            ON api_responses(image_id, type);

        -- ── collections (clustering namespaces) ──────────────────────────
        CREATE TABLE IF NOT EXISTS collections (
            namespace   TEXT    PRIMARY KEY,
            user_id     TEXT,
            created_at  TEXT    NOT NULL DEFAULT (datetime('now'))
        );

        -- ── faces ─────────────────────────────────────────────────────────
        CREATE TABLE IF NOT EXISTS faces (
            face_id         TEXT    NOT NULL,
            namespace       TEXT    NOT NULL,
            image_id        TEXT    NOT NULL REFERENCES images(image_id) ON DELETE CASCADE,
            confidence      REAL,
            bounding_box    TEXT,   -- JSON {Width, Height, Left, Top} as image ratios
            attributes      TEXT,   -- JSON, opaque detection detail
            created_at      TEXT    NOT NULL DEFAULT (datetime('now')),
            PRIMARY KEY (face_id, namespace)
        );
        CREATE INDEX IF NOT EXISTS idx_faces_image ON faces(image_id);

        -- ── albums (one row per page per identity, folded on read) ───────
        CREATE TABLE IF NOT EXISTS albums (
            album_id    TEXT    PRIMARY KEY,
            user_id     TEXT    NOT NULL,
            namespace   TEXT    NOT NULL,
            face_id     TEXT    NOT NULL,
            image_ids   TEXT    NOT NULL DEFAULT '[]',  -- JSON array
            created_at  TEXT    NOT NULL DEFAULT (datetime('now'))
        );
        CREATE INDEX IF NOT EXISTS idx_albums_user_ns
            ON albums(user_id, namespace, face_id);

        -- ── thumbnails ────────────────────────────────────────────────────
        CREATE TABLE IF NOT EXISTS thumbnails (
            thumbnail_id    TEXT    PRIMARY KEY,
            face_id         TEXT    NOT NULL,
            namespace       TEXT    NOT NULL,
            storage_key     TEXT    NOT NULL,
            created_at      TEXT    NOT NULL DEFAULT (datetime('now')),
            UNIQUE(face_id, namespace),
            FOREIGN KEY (face_id, namespace)
                REFERENCES faces(face_id, namespace) ON DELETE CASCADE
        );
    """)


# ── Migration v2: Job single-flight leases and run bookkeeping ───────────────

def _migrate_v2(conn: sqlite3.Connection) -> None:
    """Add ``job_leases`` (one holder per user/folder/namespace) and ``job_runs``."""
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS job_leases (
            user_id      TEXT    NOT NULL,
            folder_id    TEXT    NOT NULL,
            namespace    TEXT    NOT NULL,
            token        TEXT    NOT NULL,
            acquired_at  TEXT    NOT NULL,
            expires_at   TEXT    NOT NULL,
            PRIMARY KEY (user_id, folder_id, namespace)
        );

        CREATE TABLE IF NOT EXISTS job_runs (
            job_id              TEXT    PRIMARY KEY,
            user_id             TEXT    NOT NULL,
            folder_id           TEXT    NOT NULL,
            namespace           TEXT    NOT NULL,
            status              TEXT    NOT NULL DEFAULT 'running',
            pages               INTEGER DEFAULT 0,
            images_seen         INTEGER DEFAULT 0,
            faces_created       INTEGER DEFAULT 0,
            albums_created      INTEGER DEFAULT 0,
            thumbnails_created  INTEGER DEFAULT 0,
            error               TEXT,
            started_at          TEXT    NOT NULL,
            completed_at        TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_job_runs_started ON job_runs(started_at DESC);
    """)
