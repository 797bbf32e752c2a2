"""Precedent retrieval endpoints.

Endpoints:
    retrieve_by_scores(payload): Responses of a case closest to a main-score profile.
    retrieve_cases(payload): Cases whose situation embedding is closest to a text.
    retrieve_answers(payload): Embedded answers of a case/question closest to a text.
    retrieve_questions(payload): Question texts of any case closest to a text.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from survey_prep.api.deps import get_embedding_provider, get_store
from survey_prep.core.errors import EmbeddingProviderError
from survey_prep.models import MAIN_SCORE_FIELDS
from survey_prep.schemas import (
    AnswerNeighbor,
    AnswerRetrievalRequest,
    CaseNeighbor,
    CaseRetrievalRequest,
    QuestionNeighbor,
    QuestionRetrievalRequest,
    ScoreNeighbor,
    ScoreRetrievalRequest,
)
from survey_prep.services.embeddings import EmbeddingProvider
from survey_prep.services.retrieval import SimilarityRetriever
from survey_prep.services.store import SurveyStore

_LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/retrieval", tags=["retrieval"])


async def _embed_query(provider: EmbeddingProvider, text: str) -> list[float]:
    try:
        return await provider.embed(text)
    except EmbeddingProviderError as exc:
        _LOGGER.warning("Query embedding failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Embedding service unavailable",
        ) from exc


@router.post("/scores", response_model=list[ScoreNeighbor])
async def retrieve_by_scores(
    payload: ScoreRetrievalRequest,
    store: SurveyStore = Depends(get_store),
) -> list[ScoreNeighbor]:
    retriever = SimilarityRetriever(store)
    try:
        ranked = await retriever.nearest_responses_by_scores(payload.case_id, payload.scores, payload.k)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return [
        ScoreNeighbor(
            case_id=item.response.case_id,
            response_id=item.response.response_id,
            distance=item.distance,
            scores={name: getattr(item.response, name) for name in MAIN_SCORE_FIELDS},
            submitted_at=item.response.submitted_at,
            comment_overall=item.response.comment_overall,
        )
        for item in ranked
    ]


@router.post("/cases", response_model=list[CaseNeighbor])
async def retrieve_cases(
    payload: CaseRetrievalRequest,
    store: SurveyStore = Depends(get_store),
    provider: EmbeddingProvider = Depends(get_embedding_provider),
) -> list[CaseNeighbor]:
    query = await _embed_query(provider, payload.text)
    ranked = await SimilarityRetriever(store).nearest_cases(query, payload.k)
    return [
        CaseNeighbor(
            case_id=item.case.case_id,
            case_name=item.case.case_name,
            distance=item.distance,
            similarity=item.similarity,
        )
        for item in ranked
    ]


@router.post("/answers", response_model=list[AnswerNeighbor])
async def retrieve_answers(
    payload: AnswerRetrievalRequest,
    store: SurveyStore = Depends(get_store),
    provider: EmbeddingProvider = Depends(get_embedding_provider),
) -> list[AnswerNeighbor]:
    query = await _embed_query(provider, payload.text)
    try:
        ranked = await SimilarityRetriever(store).nearest_answers(
            payload.case_id, payload.question, query, payload.k
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return [
        AnswerNeighbor(
            response_id=item.embedding.response_id,
            question=item.embedding.question,
            score=item.embedding.score,
            score_bucket=item.embedding.score_bucket,
            distance=item.distance,
            similarity=item.similarity,
        )
        for item in ranked
    ]


@router.post("/questions", response_model=list[QuestionNeighbor])
async def retrieve_questions(
    payload: QuestionRetrievalRequest,
    store: SurveyStore = Depends(get_store),
    provider: EmbeddingProvider = Depends(get_embedding_provider),
) -> list[QuestionNeighbor]:
    query = await _embed_query(provider, payload.text)
    ranked = await SimilarityRetriever(store).nearest_questions(query, payload.k, payload.question)
    return [
        QuestionNeighbor(
            case_id=item.question.case_id,
            question=item.question.question,
            question_text=item.question.question_text,
            distance=item.distance,
            similarity=item.similarity,
        )
        for item in ranked
    ]
