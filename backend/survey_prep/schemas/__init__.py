"""Convenience exports for API schemas.

Re-exports the pydantic models used across the backend so consumers can import from one module.
"""

from .admin import (
    CaseDeletedResponse,
    CaseResource,
    CaseSituationRequest,
    PrepareEmbeddingsRequest,
    PrepareEmbeddingsResponse,
    QuestionDeletedResponse,
    QuestionResource,
    QuestionTextRequest,
    QueueCountsResponse,
    RequeueResponse,
    TypicalRebuildRequest,
    TypicalRebuildResponse,
)
from .retrieval import (
    AnswerNeighbor,
    AnswerRetrievalRequest,
    CaseNeighbor,
    CaseRetrievalRequest,
    QuestionNeighbor,
    QuestionRetrievalRequest,
    ScoreNeighbor,
    ScoreRetrievalRequest,
    TypicalExampleResource,
)

__all__ = [
    "AnswerNeighbor",
    "AnswerRetrievalRequest",
    "CaseDeletedResponse",
    "CaseNeighbor",
    "CaseResource",
    "CaseRetrievalRequest",
    "CaseSituationRequest",
    "PrepareEmbeddingsRequest",
    "PrepareEmbeddingsResponse",
    "QuestionDeletedResponse",
    "QuestionNeighbor",
    "QuestionResource",
    "QuestionRetrievalRequest",
    "QuestionTextRequest",
    "QueueCountsResponse",
    "RequeueResponse",
    "ScoreNeighbor",
    "ScoreRetrievalRequest",
    "TypicalExampleResource",
    "TypicalRebuildRequest",
    "TypicalRebuildResponse",
]
