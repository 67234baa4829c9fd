"""Batch face-clustering pipeline: gate → cluster → albums → thumbnails."""
from __future__ import annotations

from facealbums.pipeline.controller import COMPLETED_MESSAGE, BatchController, JobReport, build_controller

__all__ = ["COMPLETED_MESSAGE", "BatchController", "JobReport", "build_controller"]
