"""Tests for the quality gate."""
from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from conftest import GOOD_QUALITY, labels_response


def _q(**overrides):
    q = dict(GOOD_QUALITY)
    q.update(overrides)
    return q


# ── Quality bands ─────────────────────────────────────────────────────────────

class TestQualityBands:
    @pytest.mark.parametrize("brightness,ok", [(39, False), (40, True), (80, True), (81, False)])
    def test_overall_brightness_edges(self, brightness, ok):
        from facealbums.pipeline.gate import OVERALL_BANDS, is_quality_in_range
        assert is_quality_in_range(_q(Brightness=brightness), OVERALL_BANDS) is ok

    @pytest.mark.parametrize("contrast,ok", [(29, False), (30, True), (70, True), (71, False)])
    def test_overall_contrast_edges(self, contrast, ok):
        from facealbums.pipeline.gate import OVERALL_BANDS, is_quality_in_range
        assert is_quality_in_range(_q(Contrast=contrast), OVERALL_BANDS) is ok

    def test_sharpness_has_floor_only(self):
        from facealbums.pipeline.gate import OVERALL_BANDS, is_quality_in_range
        assert not is_quality_in_range(_q(Sharpness=49), OVERALL_BANDS)
        assert is_quality_in_range(_q(Sharpness=50), OVERALL_BANDS)
        assert is_quality_in_range(_q(Sharpness=100), OVERALL_BANDS)

    def test_foreground_bands_are_stricter(self):
        from facealbums.pipeline.gate import FOREGROUND_BANDS, OVERALL_BANDS, is_quality_in_range
        q = _q(Brightness=44)
        assert is_quality_in_range(q, OVERALL_BANDS)
        assert not is_quality_in_range(q, FOREGROUND_BANDS)
        assert not is_quality_in_range(_q(Sharpness=59), FOREGROUND_BANDS)
        assert not is_quality_in_range(_q(Contrast=66), FOREGROUND_BANDS)

    def test_missing_scores_fail(self):
        from facealbums.pipeline.gate import OVERALL_BANDS, is_quality_in_range
        assert not is_quality_in_range(None, OVERALL_BANDS)
        assert not is_quality_in_range({"Brightness": 60}, OVERALL_BANDS)


class TestVerdict:
    def test_good_response_passes(self):
        from facealbums.pipeline.gate import verdict_from_response
        verdict = verdict_from_response(labels_response(face_labels=2))
        assert verdict.is_face_content_present
        assert verdict.face_count == 2
        assert verdict.is_quality_sufficient
        assert verdict.passed

    def test_brightness_39_fails_quality(self):
        from facealbums.pipeline.gate import verdict_from_response
        verdict = verdict_from_response(labels_response(quality=_q(Brightness=39)))
        assert verdict.is_face_content_present
        assert not verdict.is_quality_sufficient
        assert not verdict.passed

    def test_both_sub_scores_must_pass(self):
        from facealbums.pipeline.gate import is_quality_sufficient
        assert not is_quality_sufficient(labels_response(foreground=_q(Brightness=76)))
        assert not is_quality_sufficient({"Labels": []})

    def test_only_allow_listed_labels_count(self):
        from facealbums.pipeline.gate import count_face_labels
        response = {
            "Labels": [
                {"Name": "Smile", "Categories": [{"Name": "Expressions and Emotions"}]},
                {"Name": "Adult", "Categories": [{"Name": "Person Description"}]},
                {"Name": "Car", "Categories": [{"Name": "Vehicles and Automotive"}]},
                {"Name": "Odd", "Categories": []},
            ]
        }
        assert count_face_labels(response) == 2

    def test_no_face_labels(self):
        from facealbums.pipeline.gate import verdict_from_response
        verdict = verdict_from_response(labels_response(face_labels=0))
        assert not verdict.is_face_content_present
        assert verdict.face_count == 0
        assert not verdict.passed


# ── QualityGate ───────────────────────────────────────────────────────────────

class TestQualityGate:
    def test_assess_sends_fixed_categories(self):
        from facealbums.pipeline.gate import EXCLUDE_CATEGORIES, INCLUDE_CATEGORIES, QualityGate
        oracle = MagicMock()
        oracle.detect_labels.return_value = labels_response()
        gate = QualityGate(oracle, MagicMock(), min_confidence=85.0)
        verdict, raw = gate.assess(b"img")
        assert verdict.passed
        kwargs = oracle.detect_labels.call_args.kwargs
        assert kwargs["min_confidence"] == 85.0
        assert kwargs["include_categories"] == INCLUDE_CATEGORIES
        assert kwargs["exclude_categories"] == EXCLUDE_CATEGORIES
        assert "Person Description" not in EXCLUDE_CATEGORIES

    def test_evaluate_persists_verdict_and_response(self, repo, oracle, upload):
        from facealbums.models import ApiType, ImageRecord
        from facealbums.pipeline.gate import QualityGate
        image_id = upload(b"alice")
        record = ImageRecord.from_row(repo.conn.execute(
            "SELECT * FROM images WHERE image_id = ?", [image_id]).fetchone())

        verdict = QualityGate(oracle, repo).evaluate(record, b"alice")
        assert verdict.passed
        image = repo.get_image(image_id)
        assert image["status"] == "FACES_DETECTED"
        assert image["faces_detected_count"] == 1
        assert len(repo.get_api_responses(image_id, ApiType.DETECT_LABELS)) == 1

    def test_failing_gate_is_not_an_error(self, repo, oracle, upload):
        from facealbums.models import ImageRecord
        from facealbums.pipeline.gate import QualityGate
        image_id = upload(b"-")
        record = ImageRecord.from_row(repo.conn.execute(
            "SELECT * FROM images WHERE image_id = ?", [image_id]).fetchone())
        verdict = QualityGate(oracle, repo).evaluate(record, b"-")
        assert not verdict.passed
        assert repo.get_image(image_id)["status"] == "NO_FACES_DETECTED"
