"""Local face oracle: InsightFace buffalo_l embeddings + a JSON face-print store.

Produces the same response shapes as the Rekognition backend so the pipeline
cannot tell them apart.  Similarities are reported as percentages: cosine
similarity is mapped piecewise-linearly so that 0.40 (the usual ArcFace
same-person cut-off) reads as 80% and 1.0 as 100%.

Requires: insightface, onnxruntime  (pip install 'facealbums[local-ai]')
"""
from __future__ import annotations

import json
import logging
import os
import re
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Sequence

import numpy as np

from facealbums import imaging
from facealbums.errors import OracleError
from facealbums.oracle.base import FaceOracle

log = logging.getLogger(__name__)

CACHE_DIR = os.getenv("FACEALBUMS_MODEL_CACHE", str(Path.home() / ".cache" / "facealbums"))
_INSIGHTFACE_HOME = str(Path(CACHE_DIR) / "insightface")

# Cosine similarity that maps to 80%.
_COSINE_ANCHOR = 0.40
_ANCHOR_PCT = 80.0

# "MEDIUM" quality filter for indexing.
_MIN_DET_SCORE = 0.5
_MIN_FACE_PX = 40

_PERSON_CATEGORY = "Person Description"


@dataclass
class DetectedFace:
    bbox: tuple[float, float, float, float]  # x1, y1, x2, y2 in pixels
    score: float
    embedding: np.ndarray | None
    age: int | None = None
    gender: str | None = None

    @property
    def area(self) -> float:
        x1, y1, x2, y2 = self.bbox
        return max(0.0, x2 - x1) * max(0.0, y2 - y1)

    @property
    def min_side(self) -> float:
        x1, y1, x2, y2 = self.bbox
        return min(x2 - x1, y2 - y1)


Detector = Callable[[np.ndarray], "list[DetectedFace]"]


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    denom = np.linalg.norm(a) * np.linalg.norm(b)
    if denom == 0:
        return 0.0
    return float(np.dot(a, b) / denom)


def to_percent(cosine: float) -> float:
    """Map a cosine similarity onto the 0–100 similarity scale."""
    if cosine <= 0:
        return 0.0
    if cosine < _COSINE_ANCHOR:
        pct = cosine / _COSINE_ANCHOR * _ANCHOR_PCT
    else:
        pct = _ANCHOR_PCT + (cosine - _COSINE_ANCHOR) / (1 - _COSINE_ANCHOR) * (100 - _ANCHOR_PCT)
    return round(min(100.0, pct), 4)


def ratio_box(face: DetectedFace, width: int, height: int) -> dict[str, float]:
    x1, y1, x2, y2 = face.bbox
    x1, y1 = max(0.0, x1), max(0.0, y1)
    x2, y2 = min(float(width), x2), min(float(height), y2)
    return {
        "Width": round((x2 - x1) / width, 6),
        "Height": round((y2 - y1) / height, 6),
        "Left": round(x1 / width, 6),
        "Top": round(y1 / height, 6),
    }


def _parse_gender(raw: Any) -> str | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        s = raw.strip().lower()
        if s in ("m", "male", "1"):
            return "Male"
        if s in ("f", "female", "0"):
            return "Female"
        return raw.capitalize()
    return "Male" if int(raw) == 1 else "Female"


# ── Face-print store ──────────────────────────────────────────────────────────

class FacePrintStore:
    """Persistent embedding store, one JSON file per namespace.

    Storage format::

        {
            "created_at": "2026-01-01T00:00:00+00:00",
            "faces": {
                "<face_id>": {"embedding": [...512 floats...],
                              "external_image_id": "...",
                              "indexed_at": "..."}
            }
        }
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self._lock = threading.Lock()
        self._cache: dict[str, dict[str, Any]] = {}

    def _path(self, namespace: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.\-]", "_", namespace)
        return self.root / f"{safe}.json"

    def _load(self, namespace: str) -> dict[str, Any] | None:
        if namespace in self._cache:
            return self._cache[namespace]
        path = self._path(namespace)
        if not path.exists():
            return None
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        self._cache[namespace] = data
        return data

    def _save(self, namespace: str, data: dict[str, Any]) -> None:
        path = self._path(namespace)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.part")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f)
        tmp.replace(path)
        self._cache[namespace] = data

    def create(self, namespace: str) -> bool:
        with self._lock:
            if self._load(namespace) is not None:
                return False
            self._save(namespace, {
                "created_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
                "faces": {},
            })
            return True

    def _require(self, namespace: str) -> dict[str, Any]:
        data = self._load(namespace)
        if data is None:
            raise OracleError(
                f"Collection {namespace!r} does not exist",
                error_name="ResourceNotFoundException",
                details={"namespace": namespace},
            )
        return data

    def add(self, namespace: str, embedding: np.ndarray, external_image_id: str | None) -> str:
        face_id = str(uuid.uuid4())
        with self._lock:
            data = self._require(namespace)
            data["faces"][face_id] = {
                "embedding": embedding.astype(np.float32).flatten().tolist(),
                "external_image_id": external_image_id,
                "indexed_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            }
            self._save(namespace, data)
        return face_id

    def search(self, namespace: str, embedding: np.ndarray) -> list[tuple[str, float]]:
        """Every stored face as ``(face_id, cosine)``, best first.

        Equal scores keep insertion order.
        """
        query = embedding.astype(np.float32).flatten()
        with self._lock:
            data = self._require(namespace)
            entries = list(data["faces"].items())
        scored = [
            (face_id, cosine_similarity(query, np.array(entry["embedding"], dtype=np.float32)))
            for face_id, entry in entries
        ]
        return sorted(scored, key=lambda item: item[1], reverse=True)

    def count(self, namespace: str) -> int:
        with self._lock:
            data = self._load(namespace)
        return len(data["faces"]) if data else 0


# ── InsightFace detector ──────────────────────────────────────────────────────

class InsightFaceDetector:
    """Callable wrapper around a lazily loaded InsightFace ``FaceAnalysis`` app."""

    _app = None
    _load_lock = threading.Lock()

    def __call__(self, rgb: np.ndarray) -> list[DetectedFace]:
        self._load_model()
        # InsightFace expects BGR
        bgr = rgb[:, :, ::-1].copy()
        faces = InsightFaceDetector._app.get(bgr)
        out: list[DetectedFace] = []
        for face in faces:
            age = getattr(face, "age", None)
            gender = getattr(face, "gender", None)
            if gender is None:
                gender = getattr(face, "sex", None)
            out.append(DetectedFace(
                bbox=tuple(float(v) for v in face.bbox[:4]),  # type: ignore[arg-type]
                score=float(getattr(face, "det_score", 1.0)),
                embedding=getattr(face, "embedding", None),
                age=int(age) if age is not None else None,
                gender=_parse_gender(gender),
            ))
        return out

    @classmethod
    def _load_model(cls) -> None:
        with cls._load_lock:
            if cls._app is not None:
                return
            try:
                from insightface.app import FaceAnalysis
            except ImportError:
                raise ImportError(
                    "insightface is required for the local oracle:\n"
                    "  pip install 'facealbums[local-ai]'"
                )

            log.info("Loading InsightFace buffalo_l model (first run downloads ~300MB)")
            os.environ.setdefault("INSIGHTFACE_HOME", _INSIGHTFACE_HOME)
            Path(_INSIGHTFACE_HOME).mkdir(parents=True, exist_ok=True)

            providers = _get_providers()
            app = FaceAnalysis(name="buffalo_l", root=_INSIGHTFACE_HOME, providers=providers)
            uses_gpu = any(
                "CUDA" in (p[0] if isinstance(p, tuple) else p) for p in providers
            )
            # ctx_id=0 → GPU 0; ctx_id=-1 → CPU
            app.prepare(ctx_id=0 if uses_gpu else -1, det_size=(640, 640))
            cls._app = app


def _get_providers() -> list:
    """ONNX Runtime execution providers, preferring CUDA."""
    try:
        import onnxruntime as ort
    except ImportError:
        return ["CPUExecutionProvider"]
    if "CUDAExecutionProvider" in ort.get_available_providers():
        return [
            ("CUDAExecutionProvider", {"arena_extend_strategy": "kSameAsRequested"}),
            "CPUExecutionProvider",
        ]
    return ["CPUExecutionProvider"]


# ── Oracle ────────────────────────────────────────────────────────────────────

class LocalOracle(FaceOracle):
    name = "local"

    def __init__(self, store: FacePrintStore, detector: Detector | None = None) -> None:
        self.store = store
        self.detector: Detector = detector or InsightFaceDetector()

    def _detect(self, image: bytes) -> tuple[np.ndarray, list[DetectedFace]]:
        try:
            rgb = imaging.to_array(imaging.decode(image), max_dim=None)
        except ValueError as exc:
            raise OracleError(str(exc), error_name="InvalidImageFormatException") from exc
        return rgb, self.detector(rgb)

    @staticmethod
    def _largest(faces: list[DetectedFace]) -> DetectedFace | None:
        usable = [f for f in faces if f.embedding is not None]
        return max(usable, key=lambda f: f.area) if usable else None

    # ── Labels + quality ──────────────────────────────────────────────────

    def detect_labels(
        self,
        image: bytes,
        min_confidence: float,
        include_categories: Sequence[str],
        exclude_categories: Sequence[str],
        max_labels: int = 50,
    ) -> dict[str, Any]:
        rgb, faces = self._detect(image)
        h, w = rgb.shape[:2]
        labels: list[dict[str, Any]] = []

        def _add(name: str, confidence: float, members: list[DetectedFace]) -> None:
            if confidence < min_confidence:
                return
            labels.append({
                "Name": name,
                "Confidence": round(confidence, 4),
                "Categories": [{"Name": _PERSON_CATEGORY}],
                "Instances": [
                    {"BoundingBox": ratio_box(f, w, h), "Confidence": round(f.score * 100, 4)}
                    for f in members
                ],
                "Parents": [],
            })

        if faces:
            best = max(f.score for f in faces) * 100
            _add("Face", best, faces)
            _add("Head", best, faces)
            for name, members in (
                ("Adult", [f for f in faces if f.age is not None and f.age >= 18]),
                ("Child", [f for f in faces if f.age is not None and f.age < 18]),
                ("Man", [f for f in faces if f.gender == "Male"]),
                ("Woman", [f for f in faces if f.gender == "Female"]),
            ):
                if members:
                    _add(name, max(f.score for f in members) * 100, members)

        if include_categories and _PERSON_CATEGORY not in include_categories:
            labels = []
        if _PERSON_CATEGORY in exclude_categories:
            labels = []

        overall = imaging.quality_scores(imaging.to_array(imaging.decode(image)))
        subject = self._largest(faces) or (max(faces, key=lambda f: f.area) if faces else None)
        if subject is not None:
            foreground = imaging.quality_scores(imaging.crop_ratio_box(rgb, ratio_box(subject, w, h)))
        else:
            foreground = overall

        return {
            "Labels": labels[:max_labels],
            "ImageProperties": {
                "Quality": overall,
                "Foreground": {"Quality": foreground},
            },
            "LabelModelVersion": "insightface-buffalo_l",
        }

    # ── Search / index / compare ──────────────────────────────────────────

    def search_faces_by_image(
        self, image: bytes, namespace: str, threshold: float
    ) -> dict[str, Any]:
        rgb, faces = self._detect(image)
        searched = self._largest(faces)
        if searched is None:
            log.debug("No searchable face in image for %s", namespace)
            return {"FaceMatches": []}
        h, w = rgb.shape[:2]
        matches = []
        for face_id, cosine in self.store.search(namespace, searched.embedding):
            similarity = to_percent(cosine)
            if similarity < threshold:
                break
            matches.append({
                "Similarity": similarity,
                "Face": {"FaceId": face_id, "Confidence": round(searched.score * 100, 4)},
            })
        return {
            "SearchedFaceBoundingBox": ratio_box(searched, w, h),
            "SearchedFaceConfidence": round(searched.score * 100, 4),
            "FaceMatches": matches,
        }

    def index_faces(
        self,
        image: bytes,
        namespace: str,
        max_faces: int | None = None,
        external_image_id: str | None = None,
    ) -> dict[str, Any]:
        rgb, faces = self._detect(image)
        h, w = rgb.shape[:2]
        records: list[dict[str, Any]] = []
        unindexed: list[dict[str, Any]] = []

        def _detail(face: DetectedFace) -> dict[str, Any]:
            detail: dict[str, Any] = {
                "BoundingBox": ratio_box(face, w, h),
                "Confidence": round(face.score * 100, 4),
            }
            if face.age is not None:
                detail["AgeRange"] = {"Low": max(0, face.age - 3), "High": face.age + 3}
            if face.gender is not None:
                detail["Gender"] = {"Value": face.gender}
            return detail

        eligible: list[DetectedFace] = []
        for face in faces:
            reasons = []
            if face.score < _MIN_DET_SCORE:
                reasons.append("LOW_CONFIDENCE")
            if face.min_side < _MIN_FACE_PX:
                reasons.append("SMALL_BOUNDING_BOX")
            if face.embedding is None:
                reasons.append("LOW_QUALITY")
            if reasons:
                unindexed.append({"Reasons": reasons, "FaceDetail": _detail(face)})
            else:
                eligible.append(face)

        eligible.sort(key=lambda f: f.area, reverse=True)
        if max_faces is not None:
            for face in eligible[max_faces:]:
                unindexed.append({"Reasons": ["EXCEEDS_MAX_FACES"], "FaceDetail": _detail(face)})
            eligible = eligible[:max_faces]

        for face in eligible:
            face_id = self.store.add(namespace, face.embedding, external_image_id)
            detail = _detail(face)
            records.append({
                "Face": {
                    "FaceId": face_id,
                    "BoundingBox": detail["BoundingBox"],
                    "ExternalImageId": external_image_id,
                    "Confidence": detail["Confidence"],
                },
                "FaceDetail": detail,
            })

        return {
            "FaceRecords": records,
            "UnindexedFaces": unindexed,
            "FaceModelVersion": "insightface-buffalo_l",
        }

    def compare_faces(self, source: bytes, target: bytes, threshold: float) -> dict[str, Any]:
        _, source_faces = self._detect(source)
        source_face = self._largest(source_faces)
        if source_face is None:
            raise OracleError(
                "There are no faces in the source image", error_name="InvalidParameterException"
            )
        rgb, target_faces = self._detect(target)
        h, w = rgb.shape[:2]
        matched, unmatched = [], []
        for face in target_faces:
            if face.embedding is None:
                continue
            similarity = to_percent(cosine_similarity(source_face.embedding, face.embedding))
            entry = {"BoundingBox": ratio_box(face, w, h), "Confidence": round(face.score * 100, 4)}
            if similarity >= threshold:
                matched.append({"Similarity": similarity, "Face": entry})
            else:
                unmatched.append(entry)
        matched.sort(key=lambda m: m["Similarity"], reverse=True)
        return {
            "SourceImageFace": {"Confidence": round(source_face.score * 100, 4)},
            "FaceMatches": matched,
            "UnmatchedFaces": unmatched,
        }

    def create_collection(self, namespace: str) -> bool:
        created = self.store.create(namespace)
        log.info("%s collection %s", "Created" if created else "Reusing", namespace)
        return created
