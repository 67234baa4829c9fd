"""facealbums: incremental face clustering of uploaded photos into per-identity albums."""
from __future__ import annotations

__version__ = "0.1.0"
