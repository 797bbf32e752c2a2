"""Response embedding persistence model.

Classes:
    ResponseEmbedding: Vector for one question of one response, tagged with its score bucket and model.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, LargeBinary
from sqlmodel import Field, SQLModel

from survey_prep.utils.clock import utc_now


class ResponseEmbedding(SQLModel, table=True):
    __tablename__ = "response_embeddings"

    case_id: str = Field(primary_key=True)
    response_id: str = Field(primary_key=True)
    question: str = Field(primary_key=True)
    score: Optional[float] = None
    score_bucket: float = Field(index=True)
    vector: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    dim: int
    embedding_model: str
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
