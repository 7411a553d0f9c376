"""
Pure vector helpers used by the clustering engine and sparse-region detector.

Every binary operation raises :class:`DimensionMismatch` when the two
vectors differ in length.  Results are plain Python floats / lists so they
can be stored in dataclasses and serialised without numpy types leaking out.
"""
from __future__ import annotations

import math
from typing import Callable, Sequence

import numpy as np

from gapscan.models.domain import Vector


class DimensionMismatch(ValueError):
    """Two vectors of different length were combined."""

    def __init__(self, len_a: int, len_b: int) -> None:
        super().__init__(f"Vector length mismatch: {len_a} vs {len_b}")
        self.len_a = len_a
        self.len_b = len_b


def _pair(a: Sequence[float], b: Sequence[float]):
    if len(a) != len(b):
        raise DimensionMismatch(len(a), len(b))
    return np.asarray(a, dtype=float), np.asarray(b, dtype=float)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0 when either vector has zero norm."""
    va, vb = _pair(a, b)
    denom = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    sim = float(np.dot(va, vb)) / denom
    return max(-1.0, min(1.0, sim))


def cosine_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """1 - cosine similarity (0 = identical direction, 2 = opposite)."""
    return 1.0 - cosine_similarity(a, b)


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    va, vb = _pair(a, b)
    return float(np.linalg.norm(va - vb))


def calculate_centroid(vectors: Sequence[Sequence[float]]) -> Vector:
    """Element-wise mean of equal-length vectors."""
    if len(vectors) == 0:
        raise ValueError("Cannot calculate centroid of empty vector set")
    dim = len(vectors[0])
    for v in vectors:
        if len(v) != dim:
            raise DimensionMismatch(dim, len(v))
    return np.asarray(vectors, dtype=float).mean(axis=0).tolist()


def normalize_vector(vector: Sequence[float]) -> Vector:
    """Unit-length copy of *vector*; the zero vector is returned unchanged."""
    v = np.asarray(vector, dtype=float)
    norm = float(np.linalg.norm(v))
    if norm == 0.0:
        return list(vector)
    return (v / norm).tolist()


def add_vectors(a: Sequence[float], b: Sequence[float]) -> Vector:
    va, vb = _pair(a, b)
    return (va + vb).tolist()


def subtract_vectors(a: Sequence[float], b: Sequence[float]) -> Vector:
    va, vb = _pair(a, b)
    return (va - vb).tolist()


def scale_vector(vector: Sequence[float], scalar: float) -> Vector:
    return (np.asarray(vector, dtype=float) * scalar).tolist()


def calculate_variance(
    vectors: Sequence[Sequence[float]],
    centroid: Sequence[float],
    distance_fn: Callable[[Sequence[float], Sequence[float]], float] = euclidean_distance,
) -> float:
    """
    Population variance of the distances from each vector to *centroid*.

    Note this is the spread of the distances, not the mean squared distance
    used as a cluster's intra-cluster variance.
    """
    if len(vectors) == 0:
        return 0.0
    distances = [distance_fn(v, centroid) for v in vectors]
    mean = math.fsum(distances) / len(distances)
    return math.fsum((d - mean) ** 2 for d in distances) / len(distances)
