"""Nearest-neighbour retrieval over score space and embedding space.

Classes:
    Neighbor: Candidate position plus its distance to the query.
    ScoredResponse, ScoredCase, ScoredQuestion, ScoredAnswer: Ranked store records.
    SimilarityRetriever: Store-backed top-K lookups.

Functions:
    rank_by_euclidean(target, candidates, k): Top-K by Euclidean distance.
    rank_by_cosine(query, candidates, k): Top-K by cosine distance.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
from sklearn.metrics.pairwise import euclidean_distances

from survey_prep.models import MAIN_SCORE_FIELDS, Case, Question, Response, ResponseEmbedding
from survey_prep.services.store import SurveyStore
from survey_prep.utils.scoring import validate_question
from survey_prep.utils.vector import Vector, as_array, cosine_distance_matrix, vector_from_bytes


@dataclass(slots=True)
class Neighbor:
    index: int
    distance: float


@dataclass(slots=True)
class ScoredResponse:
    response: Response
    distance: float


@dataclass(slots=True)
class ScoredCase:
    case: Case
    distance: float

    @property
    def similarity(self) -> float:
        return 1.0 - self.distance


@dataclass(slots=True)
class ScoredQuestion:
    question: Question
    distance: float

    @property
    def similarity(self) -> float:
        return 1.0 - self.distance


@dataclass(slots=True)
class ScoredAnswer:
    embedding: ResponseEmbedding
    distance: float

    @property
    def similarity(self) -> float:
        return 1.0 - self.distance


def _top_k(distances: np.ndarray, k: int) -> list[Neighbor]:
    if k <= 0 or distances.size == 0:
        return []
    order = np.argsort(distances, kind="stable")[:k]
    return [Neighbor(index=int(position), distance=float(distances[position])) for position in order]


def rank_by_euclidean(target: Vector, candidates: Sequence[Vector], k: int) -> list[Neighbor]:
    if not candidates:
        return []
    query = as_array(target).reshape(1, -1)
    matrix = np.vstack([as_array(candidate) for candidate in candidates])
    if matrix.shape[1] != query.shape[1]:
        raise ValueError("target and candidates must share a dimension")
    return _top_k(euclidean_distances(query, matrix)[0], k)


def rank_by_cosine(query: Vector, candidates: Sequence[Vector], k: int) -> list[Neighbor]:
    """Rank candidates by ``1 - cos``; zero vectors sit at distance 1."""

    if not candidates:
        return []
    probe = as_array(query).reshape(1, -1)
    matrix = np.vstack([as_array(candidate) for candidate in candidates])
    if matrix.shape[1] != probe.shape[1]:
        raise ValueError("query and candidates must share a dimension")
    distances = cosine_distance_matrix(probe, matrix)[0]
    return _top_k(distances, k)


class SimilarityRetriever:
    def __init__(self, store: SurveyStore) -> None:
        self._store = store

    async def nearest_responses_by_scores(
        self,
        case_id: str,
        target: Vector,
        k: int = 5,
    ) -> list[ScoredResponse]:
        if len(target) != len(MAIN_SCORE_FIELDS):
            raise ValueError(f"target must contain {len(MAIN_SCORE_FIELDS)} main scores")
        responses = await self._store.list_scored_responses(case_id)
        vectors = [response.main_scores() for response in responses]
        ranked = rank_by_euclidean(target, vectors, k)
        return [ScoredResponse(response=responses[item.index], distance=item.distance) for item in ranked]

    async def nearest_cases(self, query: Vector, k: int = 5) -> list[ScoredCase]:
        query_dim = len(query)
        cases = [
            case
            for case in await self._store.list_case_embeddings()
            if case.situation_dim == query_dim
        ]
        vectors = [vector_from_bytes(case.situation_vector) for case in cases]
        ranked = rank_by_cosine(query, vectors, k)
        return [ScoredCase(case=cases[item.index], distance=item.distance) for item in ranked]

    async def nearest_answers(
        self,
        case_id: str,
        question: str,
        query: Vector,
        k: int = 10,
    ) -> list[ScoredAnswer]:
        validate_question(question)
        query_dim = len(query)
        rows = [
            row
            for row in await self._store.list_response_embeddings(case_id, question)
            if row.dim == query_dim
        ]
        vectors = [vector_from_bytes(row.vector) for row in rows]
        ranked = rank_by_cosine(query, vectors, k)
        return [ScoredAnswer(embedding=rows[item.index], distance=item.distance) for item in ranked]

    async def nearest_questions(
        self,
        query: Vector,
        k: int = 5,
        question: Optional[str] = None,
    ) -> list[ScoredQuestion]:
        """Embedded question texts across cases, optionally limited to one question key."""

        if question is not None:
            validate_question(question)
        query_dim = len(query)
        records = [
            record
            for record in await self._store.list_question_embeddings(question)
            if record.question_dim == query_dim
        ]
        vectors = [vector_from_bytes(record.question_vector) for record in records]
        ranked = rank_by_cosine(query, vectors, k)
        return [ScoredQuestion(question=records[item.index], distance=item.distance) for item in ranked]
