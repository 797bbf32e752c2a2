"""Deterministic k-means over cosine distance.

Functions:
    pick_initial_centroids(vectors, k): Equal-stride sampling of starting centroids.
    kmeans_cosine(vectors, k, max_iters): Partition vectors into at most k non-empty clusters.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

from survey_prep.utils.vector import cosine_distance_matrix, stack

DEFAULT_MAX_ITERS = 20


@dataclass(slots=True)
class KMeansCluster:
    centroid: np.ndarray
    indices: list[int] = field(default_factory=list)


def pick_initial_centroids(vectors: np.ndarray, k: int) -> list[np.ndarray]:
    n = vectors.shape[0]
    if n == 0:
        return []
    step = max(1, n // k)
    return [vectors[min(n - 1, index * step)].copy() for index in range(k)]


def kmeans_cosine(
    vectors: Sequence[Sequence[float]] | np.ndarray,
    k: int,
    max_iters: int = DEFAULT_MAX_ITERS,
) -> list[KMeansCluster]:
    """Cluster ``vectors`` by cosine distance.

    The result is a pure function of the input order: centroids start from equal-stride
    samples, ties go to the lowest cluster index, and an emptied cluster is re-seeded from
    input ``cluster_index % n``. Only non-empty clusters are returned, so ``k > n``
    silently yields at most ``n`` clusters.
    """

    data = stack(vectors) if not isinstance(vectors, np.ndarray) else vectors.astype(np.float64)
    n = data.shape[0]
    if n == 0:
        return []
    effective_k = max(1, min(int(k), n))

    centroids = np.vstack(pick_initial_centroids(data, effective_k))
    assignments = np.zeros(n, dtype=np.intp)

    for _ in range(max(1, max_iters)):
        # argmin keeps the lowest index on ties
        labels = np.argmin(cosine_distance_matrix(data, centroids), axis=1)
        changed = int(np.count_nonzero(labels != assignments))
        assignments = labels

        centroids = np.vstack(
            [
                data[assignments == cluster].mean(axis=0)
                if np.any(assignments == cluster)
                else data[cluster % n].copy()
                for cluster in range(effective_k)
            ]
        )

        if changed == 0:
            break

    clusters = [
        KMeansCluster(centroid=centroids[cluster], indices=np.flatnonzero(assignments == cluster).tolist())
        for cluster in range(effective_k)
    ]
    return [cluster for cluster in clusters if cluster.indices]
