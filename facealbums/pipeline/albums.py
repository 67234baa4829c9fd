"""Album materializer: persists one page's face map as Album rows."""
from __future__ import annotations

import logging

from facealbums.db.repository import Repository

log = logging.getLogger(__name__)


class AlbumMaterializer:
    """Writes one Album row per identity seen in a page.

    Rows are append-only: an identity that shows up again on a later page (or
    a later run) gets another row.  ``fold`` merges them for readers.
    """

    def __init__(self, repo: Repository) -> None:
        self.repo = repo

    def materialize(
        self, user_id: str, namespace: str, face_map: dict[str, list[str]]
    ) -> list[str]:
        face_map = {face_id: ids for face_id, ids in face_map.items() if ids}
        if not face_map:
            return []
        album_ids = self.repo.insert_albums(user_id, namespace, face_map)
        log.info(
            "Created %d album row(s) covering %d image(s)",
            len(album_ids), sum(len(ids) for ids in face_map.values()),
        )
        return album_ids

    def fold(self, user_id: str, namespace: str) -> dict[str, list[str]]:
        return self.repo.fold_albums(user_id, namespace)
