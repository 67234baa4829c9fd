"""Image decoding, quality scoring and thumbnail rendering (Pillow + numpy)."""
from __future__ import annotations

import io
from typing import Any

import numpy as np

# Laplacian-variance value mapped to a sharpness of 100.
_SHARPNESS_REF = 2000.0
_ANALYSIS_MAX_DIM = 1200


def decode(data: bytes) -> Any:
    """Decode *data* into an RGB ``PIL.Image``.  Raises ``ValueError`` on garbage."""
    try:
        from PIL import Image, UnidentifiedImageError
    except ImportError:
        raise ImportError("Pillow is required: pip install Pillow")

    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError(f"Cannot decode image: {exc}") from exc
    if img.mode != "RGB":
        img = img.convert("RGB")
    return img


def to_array(img: Any, max_dim: int | None = _ANALYSIS_MAX_DIM) -> np.ndarray:
    """RGB uint8 array of *img*, downsampled so the long side is <= *max_dim*."""
    from PIL import Image

    w, h = img.size
    if max_dim and max(w, h) > max_dim:
        scale = max_dim / max(w, h)
        img = img.resize((max(1, int(w * scale)), max(1, int(h * scale))), Image.LANCZOS)
    return np.array(img, dtype=np.uint8)


def _to_gray(rgb: np.ndarray) -> np.ndarray:
    # ITU-R BT.601 luminance
    return (0.299 * rgb[:, :, 0] + 0.587 * rgb[:, :, 1] + 0.114 * rgb[:, :, 2]).astype(np.float32)


def quality_scores(rgb: np.ndarray) -> dict[str, float]:
    """Brightness, contrast and sharpness of *rgb*, each on a 0–100 scale.

    Brightness is mean luminance, contrast is luminance standard deviation
    (128 maps to 100) and sharpness is log-normalised Laplacian variance.
    """
    from scipy.ndimage import laplace

    gray = _to_gray(rgb)
    if gray.size == 0:
        return {"Brightness": 0.0, "Contrast": 0.0, "Sharpness": 0.0}

    brightness = float(np.mean(gray)) / 255.0 * 100.0
    contrast = min(100.0, float(np.std(gray)) / 128.0 * 100.0)
    lap_var = float(np.var(laplace(gray)))
    sharpness = min(100.0, float(np.log1p(lap_var) / np.log1p(_SHARPNESS_REF) * 100.0))
    return {
        "Brightness": round(brightness, 2),
        "Contrast": round(contrast, 2),
        "Sharpness": round(sharpness, 2),
    }


def crop_ratio_box(rgb: np.ndarray, box: dict[str, float]) -> np.ndarray:
    """Crop *rgb* to a ``{Left, Top, Width, Height}`` box given as image ratios."""
    h, w = rgb.shape[:2]
    x0 = max(0, int(box.get("Left", 0.0) * w))
    y0 = max(0, int(box.get("Top", 0.0) * h))
    x1 = min(w, int((box.get("Left", 0.0) + box.get("Width", 1.0)) * w))
    y1 = min(h, int((box.get("Top", 0.0) + box.get("Height", 1.0)) * h))
    if x1 <= x0 or y1 <= y0:
        return rgb
    return rgb[y0:y1, x0:x1]


def make_thumbnail(
    data: bytes,
    bounding_box: dict[str, float] | None = None,
    size: int = 100,
) -> bytes:
    """Render a *size*×*size* JPEG thumbnail of *data*.

    With a face bounding box the crop is the box grown to a square around its
    centre; otherwise a centred square of the whole image.
    """
    from PIL import Image

    img = decode(data)
    w, h = img.size
    if bounding_box:
        cx = (bounding_box.get("Left", 0.0) + bounding_box.get("Width", 1.0) / 2) * w
        cy = (bounding_box.get("Top", 0.0) + bounding_box.get("Height", 1.0) / 2) * h
        side = max(bounding_box.get("Width", 1.0) * w, bounding_box.get("Height", 1.0) * h)
    else:
        cx, cy = w / 2, h / 2
        side = min(w, h)
    side = max(1.0, min(side, float(min(w, h))))
    left = int(min(max(cx - side / 2, 0), w - side))
    top = int(min(max(cy - side / 2, 0), h - side))
    box = (left, top, left + int(side), top + int(side))

    thumb = img.crop(box).resize((size, size), Image.LANCZOS)
    buf = io.BytesIO()
    thumb.save(buf, format="JPEG", quality=85)
    return buf.getvalue()
