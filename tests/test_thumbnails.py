"""Tests for thumbnail rendering and the thumbnail deriver."""
from __future__ import annotations

import io

from facealbums.models import GateVerdict, IndexedFace

BOX = {"Width": 0.4, "Height": 0.5, "Left": 0.3, "Top": 0.2}


def _indexed_face(repo, upload, content, face_id, image_id):
    upload(content, image_id=image_id)
    repo.record_detection(image_id, GateVerdict(True, 1, True))
    repo.record_index(image_id, "ns", [IndexedFace(face_id, 99.0, dict(BOX))], [])


class TestMakeThumbnail:
    def test_square_jpeg_from_bounding_box(self, jpeg_bytes):
        from PIL import Image

        from facealbums.imaging import make_thumbnail
        thumb = Image.open(io.BytesIO(make_thumbnail(jpeg_bytes, BOX, size=100)))
        assert thumb.format == "JPEG"
        assert thumb.size == (100, 100)

    def test_centre_crop_without_box(self, jpeg_bytes):
        from PIL import Image

        from facealbums.imaging import make_thumbnail
        thumb = Image.open(io.BytesIO(make_thumbnail(jpeg_bytes, None, size=64)))
        assert thumb.size == (64, 64)

    def test_box_at_the_edge(self, jpeg_bytes):
        from PIL import Image

        from facealbums.imaging import make_thumbnail
        edge = {"Width": 0.3, "Height": 0.9, "Left": 0.8, "Top": 0.5}
        thumb = Image.open(io.BytesIO(make_thumbnail(jpeg_bytes, edge)))
        assert thumb.size == (100, 100)

    def test_garbage_raises_value_error(self):
        import pytest

        from facealbums.imaging import make_thumbnail
        with pytest.raises(ValueError):
            make_thumbnail(b"not an image")


class TestThumbnailDeriver:
    def test_one_thumbnail_per_face(self, repo, blobs, upload, jpeg_bytes):
        from facealbums.pipeline.thumbnails import ThumbnailDeriver
        _indexed_face(repo, upload, jpeg_bytes, "face-1", "img-1")
        _indexed_face(repo, upload, jpeg_bytes, "face-2", "img-2")

        report = ThumbnailDeriver(repo, blobs, workers=2).derive("u1", "ns")

        assert report.created == 2
        assert report.failed == 0
        for face_id in ("face-1", "face-2"):
            thumb = repo.get_thumbnail(face_id, "ns")
            assert thumb["storage_key"].startswith("u1/thumbnails/")
            assert thumb["storage_key"].endswith(".jpeg")
            assert blobs.exists(thumb["storage_key"])

    def test_missing_source_does_not_block_others(self, repo, blobs, upload, jpeg_bytes):
        from facealbums.pipeline.thumbnails import ThumbnailDeriver
        _indexed_face(repo, upload, jpeg_bytes, "face-a", "img-a")
        _indexed_face(repo, upload, jpeg_bytes, "face-b", "img-b")
        (blobs.root / repo.get_image("img-a")["storage_key"]).unlink()

        report = ThumbnailDeriver(repo, blobs).derive("u1", "ns")

        assert report.created == 1
        assert report.failed == 1
        assert repo.get_thumbnail("face-a", "ns") is None
        assert repo.get_thumbnail("face-b", "ns") is not None

    def test_second_pass_is_a_no_op(self, repo, blobs, upload, jpeg_bytes):
        from facealbums.pipeline.thumbnails import ThumbnailDeriver
        _indexed_face(repo, upload, jpeg_bytes, "face-1", "img-1")
        deriver = ThumbnailDeriver(repo, blobs)
        first = deriver.derive("u1", "ns")
        key = repo.get_thumbnail("face-1", "ns")["storage_key"]

        second = deriver.derive("u1", "ns")

        assert first.created == 1
        assert second.created == second.failed == 0
        assert repo.get_thumbnail("face-1", "ns")["storage_key"] == key

    def test_scoped_to_user(self, repo, blobs, upload, jpeg_bytes):
        from facealbums.pipeline.thumbnails import ThumbnailDeriver
        _indexed_face(repo, upload, jpeg_bytes, "face-1", "img-1")
        assert ThumbnailDeriver(repo, blobs).derive("someone-else", "ns").created == 0
