"""Case ORM model.

Classes:
    Case: A scenario grouping many survey responses, with optional situation text and its embedding.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, LargeBinary, Text
from sqlmodel import Field, SQLModel

from survey_prep.utils.clock import utc_now


class Case(SQLModel, table=True):
    __tablename__ = "cases"

    case_id: str = Field(primary_key=True)
    case_name: Optional[str] = None
    situation_text: Optional[str] = Field(default=None, sa_column=Column(Text))
    situation_vector: Optional[bytes] = Field(default=None, sa_column=Column(LargeBinary))
    situation_dim: Optional[int] = None
    embedding_model: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
