"""
MAMS Vector Utilities
Cosine similarity and the float32 blob format vectors are stored in.
"""

from typing import Optional, Sequence, Union

import numpy as np

VectorLike = Union[np.ndarray, Sequence[float]]


def as_vector(values: Optional[VectorLike]) -> np.ndarray:
    """Coerce a sequence of numbers into a 1-d float32 array."""
    if values is None:
        return np.zeros(0, dtype=np.float32)
    return np.asarray(values, dtype=np.float32).reshape(-1)


def cosine_similarity(a: Optional[VectorLike], b: Optional[VectorLike]) -> float:
    """
    dot(a, b) / (|a| * |b|).

    Returns 0.0 for empty vectors, zero-norm vectors and vectors of
    different lengths. Never raises on shape problems.
    """
    va = np.asarray(a if a is not None else [], dtype=np.float64).reshape(-1)
    vb = np.asarray(b if b is not None else [], dtype=np.float64).reshape(-1)
    if va.size == 0 or va.shape != vb.shape:
        return 0.0
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0 or not np.isfinite(norm):
        return 0.0
    return float(np.dot(va, vb) / norm)


def normalize(vec: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(vec)
    return (vec / norm).astype(np.float32) if norm > 0 else vec.astype(np.float32)


def to_blob(vec: np.ndarray) -> bytes:
    return as_vector(vec).tobytes()


def from_blob(blob: Optional[bytes]) -> np.ndarray:
    if not blob:
        return np.zeros(0, dtype=np.float32)
    return np.frombuffer(blob, dtype=np.float32).copy()
