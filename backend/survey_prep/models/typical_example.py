"""Typical example model.

Classes:
    TypicalExample: Representative answer chosen for one cluster of a (case, question, score bucket).
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, LargeBinary, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

from survey_prep.utils.clock import utc_now


class TypicalExample(SQLModel, table=True):
    __tablename__ = "typical_examples"
    __table_args__ = (
        UniqueConstraint(
            "case_id",
            "question",
            "score_bucket",
            "cluster_id",
            name="uq_typical_examples_bucket_cluster",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    case_id: str = Field(index=True)
    question: str
    score_bucket: float
    cluster_id: int
    cluster_size: int
    centroid: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    rep_response_id: str
    rep_text: str = Field(sa_column=Column(Text, nullable=False))
    rep_score: Optional[float] = None
    rep_distance: float
    embedding_model: str
    dim: int
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
