"""Vector helpers shared by clustering and retrieval.

Vectors arrive as plain float sequences from the store or the embedding provider and are
handled as float64 numpy arrays; they are persisted as float32 bytes.
"""

from __future__ import annotations

from typing import Iterable, Sequence

import numpy as np
from sklearn.metrics.pairwise import cosine_distances

Vector = Sequence[float]


def as_array(vector: Vector | np.ndarray) -> np.ndarray:
    return np.asarray(vector, dtype=np.float64).reshape(-1)


def dot(a: Vector | np.ndarray, b: Vector | np.ndarray) -> float:
    """Dot product over the shared prefix when lengths differ."""

    left = as_array(a)
    right = as_array(b)
    size = min(left.size, right.size)
    return float(np.dot(left[:size], right[:size]))


def norm(a: Vector | np.ndarray) -> float:
    return float(np.linalg.norm(as_array(a)))


def cosine_distance(a: Vector | np.ndarray, b: Vector | np.ndarray) -> float:
    """Return ``1 - cos(theta)``; a zero vector is at distance 1 from everything."""

    norm_a = norm(a)
    norm_b = norm(b)
    if norm_a == 0.0 or norm_b == 0.0:
        return 1.0
    similarity = dot(a, b) / (norm_a * norm_b)
    return float(np.clip(1.0 - similarity, 0.0, 2.0))


def euclidean_distance(a: Vector | np.ndarray, b: Vector | np.ndarray) -> float:
    return float(np.linalg.norm(as_array(a) - as_array(b)))


def cosine_distance_matrix(rows: np.ndarray, others: np.ndarray) -> np.ndarray:
    """Pairwise ``1 - cos`` between two 2-D arrays, clipped to [0, 2]; zero rows sit at 1."""

    return np.clip(cosine_distances(rows, others), 0.0, 2.0)


def stack(vectors: Iterable[Vector | np.ndarray]) -> np.ndarray:
    rows = [as_array(vector) for vector in vectors]
    if not rows:
        return np.zeros((0, 0), dtype=np.float64)
    return np.vstack(rows)


def vector_to_bytes(vector: Vector | np.ndarray) -> bytes:
    return as_array(vector).astype(np.float32).tobytes()


def vector_from_bytes(payload: bytes | None) -> np.ndarray:
    if not payload:
        return np.zeros(0, dtype=np.float64)
    return np.frombuffer(payload, dtype=np.float32).astype(np.float64)
