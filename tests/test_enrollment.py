"""Tests for single-face registration, verification and authentication."""
from __future__ import annotations

import base64

import pytest

PAD = b"#" + b"x" * 120


def _photo(people: str) -> bytes:
    return people.encode() + PAD


class TestDecodePayload:
    def test_raw_bytes_pass_through(self):
        from facealbums.pipeline.enrollment import decode_payload
        assert decode_payload(_photo("alice")) == _photo("alice")

    def test_data_uri_is_stripped(self):
        from facealbums.pipeline.enrollment import decode_payload
        encoded = "data:image/jpeg;base64," + base64.b64encode(_photo("alice")).decode()
        assert decode_payload(encoded) == _photo("alice")

    def test_plain_base64(self):
        from facealbums.pipeline.enrollment import decode_payload
        assert decode_payload(base64.b64encode(_photo("bob")).decode()) == _photo("bob")

    @pytest.mark.parametrize("payload", [b"", "", b"x" * 99])
    def test_too_small_rejected(self, payload):
        from facealbums.errors import InvalidParametersError
        from facealbums.pipeline.enrollment import decode_payload
        with pytest.raises(InvalidParametersError):
            decode_payload(payload)

    def test_exactly_minimum_accepted(self):
        from facealbums.pipeline.enrollment import MIN_PAYLOAD_BYTES, decode_payload
        assert len(decode_payload(b"x" * MIN_PAYLOAD_BYTES)) == MIN_PAYLOAD_BYTES


class TestRegisterFace:
    def test_new_then_existing(self, oracle):
        from facealbums.pipeline.enrollment import register_face
        first = register_face(oracle, _photo("alice"), "auth")
        assert first["is_new_face"] is True
        assert first["similarity"] is None

        again = register_face(oracle, _photo("alice"), "auth")
        assert again["is_new_face"] is False
        assert again["face_id"] == first["face_id"]
        assert again["similarity"] == 99.0

    def test_no_face(self, oracle):
        from facealbums.errors import NoFaceFoundError
        from facealbums.pipeline.enrollment import register_face
        with pytest.raises(NoFaceFoundError):
            register_face(oracle, _photo("-"), "auth")

    def test_multiple_faces(self, oracle):
        from facealbums.errors import MultipleFacesFoundError
        from facealbums.pipeline.enrollment import register_face
        with pytest.raises(MultipleFacesFoundError):
            register_face(oracle, _photo("alice,bob"), "auth")

    def test_indexes_at_most_one_face(self, oracle):
        from unittest.mock import patch

        from facealbums.pipeline.enrollment import register_face
        with patch.object(oracle, "index", wraps=oracle.index) as index:
            register_face(oracle, _photo("carol"), "auth")
        assert index.call_args.kwargs["max_faces"] == 1


class TestVerifyAndAuthenticate:
    def test_verify_unknown_returns_none(self, oracle):
        from facealbums.pipeline.enrollment import verify_face
        assert verify_face(oracle, _photo("dave"), "auth") is None

    def test_verify_known(self, oracle):
        from facealbums.pipeline.enrollment import register_face, verify_face
        face_id = register_face(oracle, _photo("erin"), "auth")["face_id"]
        assert verify_face(oracle, _photo("erin"), "auth") == {"face_id": face_id, "similarity": 99.0}

    def test_authenticate(self, oracle, blobs):
        from facealbums.pipeline.enrollment import authenticate_face
        blobs.put("u1/reference.jpg", _photo("frank"))

        ok = authenticate_face(oracle, blobs, "u1/reference.jpg", _photo("frank"))
        assert ok == {"is_authenticated": True, "similarity": 97.0}

        nope = authenticate_face(oracle, blobs, "u1/reference.jpg", _photo("gina"))
        assert nope == {"is_authenticated": False, "similarity": None}

    def test_authenticate_requires_reference(self, oracle, blobs):
        from facealbums.errors import InvalidParametersError
        from facealbums.pipeline.enrollment import authenticate_face
        with pytest.raises(InvalidParametersError):
            authenticate_face(oracle, blobs, "", _photo("frank"))

    def test_authenticate_threshold(self, oracle, blobs):
        from facealbums.pipeline.enrollment import authenticate_face
        blobs.put("u1/reference.jpg", _photo("hank"))
        result = authenticate_face(oracle, blobs, "u1/reference.jpg", _photo("hank"), threshold=98.0)
        assert result["is_authenticated"] is False
