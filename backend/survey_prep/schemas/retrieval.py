"""Pydantic schemas for retrieval and typical-example lookups.

Classes:
    ScoreRetrievalRequest, ScoreNeighbor: Euclidean search in main-score space.
    CaseRetrievalRequest, CaseNeighbor: Cosine search over case situations.
    AnswerRetrievalRequest, AnswerNeighbor: Cosine search over embedded answers.
    QuestionRetrievalRequest, QuestionNeighbor: Cosine search over per-case question texts.
    TypicalExampleResource: One stored representative for a score bucket.
"""

from __future__ import annotations

from datetime import date
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from survey_prep.models import MAIN_SCORE_FIELDS
from survey_prep.utils.scoring import QUESTIONS


class ScoreRetrievalRequest(BaseModel):
    case_id: str = Field(min_length=1)
    scores: list[float] = Field(min_length=len(MAIN_SCORE_FIELDS), max_length=len(MAIN_SCORE_FIELDS))
    k: int = Field(default=5, ge=1, le=100)


class ScoreNeighbor(BaseModel):
    case_id: str
    response_id: str
    distance: float
    scores: dict[str, float]
    submitted_at: Optional[date] = None
    comment_overall: Optional[str] = None


class CaseRetrievalRequest(BaseModel):
    text: str = Field(min_length=1, max_length=20000)
    k: int = Field(default=5, ge=1, le=100)

    @field_validator("text")
    @classmethod
    def trim_text(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("text must not be blank")
        return text


class CaseNeighbor(BaseModel):
    case_id: str
    case_name: Optional[str]
    distance: float
    similarity: float


class AnswerRetrievalRequest(CaseRetrievalRequest):
    case_id: str = Field(min_length=1)
    question: str
    k: int = Field(default=10, ge=1, le=100)

    @field_validator("question")
    @classmethod
    def check_question(cls, value: str) -> str:
        if value not in QUESTIONS:
            raise ValueError(f"question must be one of {', '.join(QUESTIONS)}")
        return value


class AnswerNeighbor(BaseModel):
    response_id: str
    question: str
    score: Optional[float]
    score_bucket: float
    distance: float
    similarity: float


class TypicalExampleResource(BaseModel):
    case_id: str
    question: str
    score_bucket: float
    cluster_id: int
    cluster_size: int
    rep_response_id: str
    rep_text: str
    rep_score: Optional[float]
    rep_distance: float
    embedding_model: str


class QuestionRetrievalRequest(CaseRetrievalRequest):
    question: Optional[str] = None

    @field_validator("question")
    @classmethod
    def check_question(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in QUESTIONS:
            raise ValueError(f"question must be one of {', '.join(QUESTIONS)}")
        return value


class QuestionNeighbor(BaseModel):
    case_id: str
    question: str
    question_text: str
    distance: float
    similarity: float
