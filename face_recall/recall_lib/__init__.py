"""Shared helpers for the face recall toolchain."""

from . import config, log, models, vectors, face_matcher, box_reconciler, encounter_clusterer, integrity  # noqa: F401

__all__ = [
    "config",
    "log",
    "models",
    "vectors",
    "face_matcher",
    "box_reconciler",
    "encounter_clusterer",
    "integrity",
]
