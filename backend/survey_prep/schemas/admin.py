"""Pydantic schemas for admin preparation endpoints.

Classes:
    PrepareEmbeddingsRequest, PrepareEmbeddingsResponse: One embedding worker batch.
    TypicalRebuildRequest, TypicalRebuildResponse: Rebuild one score bucket.
    RequeueResponse, QueueCountsResponse: Queue maintenance payloads.
    CaseSituationRequest, CaseResource, CaseDeletedResponse: Case administration payloads.
    QuestionTextRequest, QuestionResource, QuestionDeletedResponse: Per-case question payloads.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from survey_prep.utils.scoring import QUESTIONS


class PrepareEmbeddingsRequest(BaseModel):
    limit: int = Field(default=200, ge=1, le=2000)


class PrepareEmbeddingsResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int


class TypicalRebuildRequest(BaseModel):
    case_id: str = Field(min_length=1)
    question: str
    score_bucket: float = Field(ge=0.0, le=5.0)
    max_clusters: Optional[int] = Field(default=None, ge=1, le=6)

    @field_validator("case_id")
    @classmethod
    def trim_case_id(cls, value: str) -> str:
        return value.strip()

    @field_validator("question")
    @classmethod
    def check_question(cls, value: str) -> str:
        if value not in QUESTIONS:
            raise ValueError(f"question must be one of {', '.join(QUESTIONS)}")
        return value


class TypicalRebuildResponse(BaseModel):
    case_id: str
    question: str
    score_bucket: float
    clusters: int
    points: int


class RequeueResponse(BaseModel):
    stale: int
    failed: int


class QueueCountsResponse(BaseModel):
    pending: int = 0
    processing: int = 0
    done: int = 0
    failed: int = 0


class CaseSituationRequest(BaseModel):
    situation_text: Optional[str] = Field(default=None, max_length=20000)


class CaseResource(BaseModel):
    case_id: str
    case_name: Optional[str]
    situation_text: Optional[str]
    has_embedding: bool
    updated_at: datetime


class CaseDeletedResponse(BaseModel):
    case_id: str
    responses_deleted: int


class QuestionTextRequest(BaseModel):
    question_text: str = Field(min_length=1, max_length=20000)

    @field_validator("question_text")
    @classmethod
    def trim_text(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("question_text must not be blank")
        return text


class QuestionResource(BaseModel):
    case_id: str
    question: str
    question_text: str
    has_embedding: bool
    updated_at: datetime


class QuestionDeletedResponse(BaseModel):
    case_id: str
    question: str
