"""Vector helpers shared by the matcher, propagator and embedder."""
from __future__ import annotations

import math
from enum import Enum
from typing import Optional, Sequence, Union

import numpy as np

VectorLike = Union[np.ndarray, Sequence[float]]


class MatchConfidence(str, Enum):
    HIGH = "high"
    AMBIGUOUS = "ambiguous"
    NONE = "none"


def as_vector(value: Optional[VectorLike]) -> np.ndarray:
    if value is None:
        return np.zeros(0, dtype=np.float64)
    return np.asarray(value, dtype=np.float64).ravel()


def cosine_similarity(a: Optional[VectorLike], b: Optional[VectorLike]) -> float:
    """Cosine of the angle between two vectors.

    Returns 0.0 when the vectors differ in length, are empty, or either has a
    zero norm. Never raises for numeric input.
    """
    left = as_vector(a)
    right = as_vector(b)
    if left.size == 0 or left.shape != right.shape:
        return 0.0
    dot = float(np.dot(left, right))
    norm_sq = float(np.dot(left, left)) * float(np.dot(right, right))
    if not norm_sq or not math.isfinite(norm_sq):
        return 0.0
    return dot / math.sqrt(norm_sq)


def l2_normalize(vector: VectorLike) -> np.ndarray:
    values = np.asarray(vector, dtype=np.float32).ravel()
    norm = float(np.linalg.norm(values))
    if not norm or math.isclose(norm, 0.0):
        return values
    return values / norm


def confidence_level(similarity: float, *, high_threshold: float = 0.85, ambiguous_threshold: float = 0.75) -> MatchConfidence:
    if similarity >= high_threshold:
        return MatchConfidence.HIGH
    if similarity >= ambiguous_threshold:
        return MatchConfidence.AMBIGUOUS
    return MatchConfidence.NONE
