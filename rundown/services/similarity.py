"""Vector similarity helpers shared by the feature mapper."""
from __future__ import annotations

from typing import Sequence

import numpy as np

from rundown.errors import DataError

Vector = Sequence[float]


def cosine_similarity(a: Vector, b: Vector) -> float:
    """Cosine of the angle between ``a`` and ``b`` in [-1, 1].

    Empty vectors, mismatched dimensions and zero-norm vectors are treated as
    unrelated and score ``0.0`` instead of raising.
    """
    if a is None or b is None:
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.ndim != 1 or vb.ndim != 1 or va.size == 0 or va.shape != vb.shape:
        return 0.0
    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    value = float(np.dot(va, vb) / (norm_a * norm_b))
    if not np.isfinite(value):
        return 0.0
    return max(-1.0, min(1.0, value))


def average(vectors: Sequence[Vector]) -> list[float]:
    """Element-wise mean of a non-empty sequence of same-length vectors."""
    if not vectors:
        raise DataError("Cannot average an empty set of vectors")
    lengths = {len(v) for v in vectors}
    if len(lengths) != 1:
        raise DataError(f"Cannot average vectors of differing dimensions: {sorted(lengths)}")
    stacked = np.asarray(vectors, dtype=np.float64)
    return stacked.mean(axis=0).tolist()
