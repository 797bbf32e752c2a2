"""Per-case question definition model.

Classes:
    Question: Prompt text of one question (``q1``/``q2``) of a case, with its embedding.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, LargeBinary, Text
from sqlmodel import Field, SQLModel

from survey_prep.utils.clock import utc_now


class Question(SQLModel, table=True):
    __tablename__ = "questions"

    case_id: str = Field(primary_key=True)
    question: str = Field(primary_key=True)
    question_text: str = Field(sa_column=Column(Text, nullable=False))
    question_vector: Optional[bytes] = Field(default=None, sa_column=Column(LargeBinary))
    question_dim: Optional[int] = None
    embedding_model: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
