"""Embedding work-queue model.

Classes:
    QueueStatus: Valid lifecycle states for a queue item.
    QueueSource: Which kind of record the embedded text belongs to.
    EmbeddingQueueItem: A pending request to turn a stored text into a vector.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, Text
from sqlmodel import Field, SQLModel

from survey_prep.utils.clock import utc_now


class QueueStatus(str):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class QueueSource(str):
    RESPONSE = "response"
    CASE = "case"
    QUESTION = "question"


class EmbeddingQueueItem(SQLModel, table=True):
    __tablename__ = "embedding_queue"

    id: Optional[int] = Field(default=None, primary_key=True)
    source: str = Field(default=QueueSource.RESPONSE)
    case_id: str = Field(index=True)
    response_id: Optional[str] = None
    question: Optional[str] = None
    text: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(default=QueueStatus.PENDING, index=True)
    attempts: int = 0
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text))
    claim_token: Optional[str] = Field(default=None, index=True)
    claimed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
