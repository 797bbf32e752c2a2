"""Typical-example construction per (case, question, score bucket).

Classes:
    Representative: The member chosen to stand for one cluster.
    RebuildResult: Summary returned after rebuilding a bucket.
    TypicalExampleBuilder: Loads bucket embeddings, clusters them, and replaces stored examples.

Functions:
    cluster_count(n, max_clusters): Number of clusters to request for ``n`` points.
    pick_representatives(vectors, clusters): Members of each cluster ranked by distance to its centroid.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Optional, Sequence

import numpy as np

from survey_prep.core.config import Settings, get_settings
from survey_prep.models import Response, ResponseEmbedding, TypicalExample
from survey_prep.services.kmeans import DEFAULT_MAX_ITERS, KMeansCluster, kmeans_cosine
from survey_prep.services.store import SurveyStore
from survey_prep.utils.scoring import question_score, question_text, to_score_bucket, validate_question
from survey_prep.utils.vector import cosine_distance_matrix, vector_from_bytes, vector_to_bytes

_LOGGER = logging.getLogger(__name__)

MAX_CLUSTERS_CAP = 6
_CANDIDATE_CHUNK = 20


@dataclass(slots=True)
class Representative:
    index: int
    distance: float
    cluster_size: int
    centroid: np.ndarray
    # remaining members, closest first
    fallbacks: list[tuple[int, float]] = field(default_factory=list)


@dataclass(slots=True)
class RebuildResult:
    clusters: int
    points: int

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def cluster_count(n: int, max_clusters: int) -> int:
    # half-up, unlike round()
    target = math.floor(math.sqrt(n / 10) + 0.5)
    return min(max_clusters, max(1, target))


def pick_representatives(vectors: np.ndarray, clusters: Sequence[KMeansCluster]) -> list[Representative]:
    representatives: list[Representative] = []
    for cluster in clusters:
        members = np.asarray(cluster.indices, dtype=np.intp)
        distances = cosine_distance_matrix(vectors[members], cluster.centroid.reshape(1, -1))[:, 0]
        # stable sort keeps the earliest member first on ties
        order = np.argsort(distances, kind="stable")
        ranked = [(int(members[position]), float(distances[position])) for position in order]
        best_index, best_distance = ranked[0]
        representatives.append(
            Representative(
                index=best_index,
                distance=best_distance,
                cluster_size=len(cluster.indices),
                centroid=cluster.centroid,
                fallbacks=ranked[1:],
            )
        )
    return representatives


def _cluster_bucket(payloads: Sequence[bytes], max_clusters: int) -> list[Representative]:
    vectors = np.vstack([vector_from_bytes(payload) for payload in payloads])
    clusters = kmeans_cosine(vectors, cluster_count(len(payloads), max_clusters), DEFAULT_MAX_ITERS)
    return pick_representatives(vectors, clusters)


class TypicalExampleBuilder:
    def __init__(
        self,
        store: SurveyStore,
        *,
        settings: Optional[Settings] = None,
        embedding_dim: Optional[int] = None,
    ) -> None:
        settings = settings or get_settings()
        self._store = store
        self._settings = settings
        self._dim = embedding_dim or settings.embedding_dim

    async def rebuild(
        self,
        case_id: str,
        question: str,
        score_bucket: float,
        *,
        max_clusters: Optional[int] = None,
    ) -> RebuildResult:
        validate_question(question)
        if to_score_bucket(score_bucket) != score_bucket:
            raise ValueError("score_bucket must be a multiple of 0.5 between 0 and 5")
        requested = self._settings.typical_max_clusters if max_clusters is None else max_clusters
        max_clusters = max(1, min(requested, MAX_CLUSTERS_CAP))

        rows = await self._store.fetch_embeddings_for_bucket(
            case_id, question, score_bucket, self._settings.typical_fetch_limit
        )
        rows = [row for row in rows if row.dim == self._dim]
        if not rows:
            await self._store.replace_typical_examples(case_id, question, score_bucket, [])
            return RebuildResult(clusters=0, points=0)

        # clustering is CPU bound; keep it off the event loop
        representatives = await asyncio.to_thread(
            _cluster_bucket, [row.vector for row in rows], max_clusters
        )

        examples: list[TypicalExample] = []
        for rep in representatives:
            chosen = await self._first_with_text(case_id, question, rows, rep)
            if chosen is None:
                _LOGGER.warning(
                    "No member of a %d-point cluster in %s/%s/%s has answer text; skipping it",
                    rep.cluster_size,
                    case_id,
                    question,
                    score_bucket,
                )
                continue
            index, distance, response, text = chosen
            row = rows[index]
            examples.append(
                TypicalExample(
                    case_id=case_id,
                    question=question,
                    score_bucket=score_bucket,
                    cluster_id=len(examples),
                    cluster_size=rep.cluster_size,
                    centroid=vector_to_bytes(rep.centroid),
                    rep_response_id=row.response_id,
                    rep_text=text,
                    rep_score=question_score(response, question),
                    rep_distance=distance,
                    embedding_model=row.embedding_model,
                    dim=row.dim,
                )
            )

        await self._store.replace_typical_examples(case_id, question, score_bucket, examples)
        _LOGGER.info(
            "Rebuilt typical examples for %s/%s/%s: %d clusters from %d points",
            case_id,
            question,
            score_bucket,
            len(examples),
            len(rows),
        )
        return RebuildResult(clusters=len(examples), points=len(rows))

    async def _first_with_text(
        self,
        case_id: str,
        question: str,
        rows: Sequence[ResponseEmbedding],
        rep: Representative,
    ) -> Optional[tuple[int, float, Response, str]]:
        """Closest cluster member whose response still has text for ``question``."""

        candidates = [(rep.index, rep.distance), *rep.fallbacks]
        for start in range(0, len(candidates), _CANDIDATE_CHUNK):
            chunk = candidates[start : start + _CANDIDATE_CHUNK]
            responses = await self._store.fetch_responses(
                case_id, [rows[index].response_id for index, _ in chunk]
            )
            by_id = {response.response_id: response for response in responses}
            for index, distance in chunk:
                response = by_id.get(rows[index].response_id)
                text = question_text(response, question) if response is not None else None
                if text is not None:
                    return index, distance, response, text
        return None
