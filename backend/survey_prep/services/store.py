"""Relational store adapter.

Every component talks to the database through :class:`SurveyStore`, which wraps a
caller-owned ``AsyncSession`` and returns typed SQLModel records. Upserts use the
dialect's ``INSERT .. ON CONFLICT DO UPDATE``; a single statement must never carry the
same conflict key twice, which callers guarantee by deduplicating first.

Classes:
    JobOutcome: Result of embedding one queue item.
    CaseVector, QuestionVector: Vectors computed for case situations and question texts.
    SurveyStore: Read/write contract for cases, responses, the embedding queue, and derived tables.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Sequence
from uuid import uuid4

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel.ext.asyncio.session import AsyncSession

from survey_prep.core.errors import StorageError
from survey_prep.models import (
    MAIN_SCORE_FIELDS,
    Case,
    EmbeddingQueueItem,
    Question,
    QueueSource,
    QueueStatus,
    Response,
    ResponseEmbedding,
    TypicalExample,
)
from survey_prep.utils.clock import utc_now
from survey_prep.utils.scoring import validate_question

_LOGGER = logging.getLogger(__name__)

_RESPONSE_KEY = ("case_id", "response_id")
_RESPONSE_IMMUTABLE = {"id", "case_id", "response_id", "created_at"}
_EMBEDDING_KEY = ("case_id", "response_id", "question")


@dataclass(slots=True)
class JobOutcome:
    item_id: int
    ok: bool
    error: Optional[str] = None


@dataclass(slots=True)
class CaseVector:
    case_id: str
    text: str
    vector: bytes
    dim: int
    model: str


@dataclass(slots=True)
class QuestionVector:
    case_id: str
    question: str
    text: str
    vector: bytes
    dim: int
    model: str


class SurveyStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @property
    def session(self) -> AsyncSession:
        return self._session

    @asynccontextmanager
    async def _write(self, description: str):
        try:
            yield
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            _LOGGER.warning("Rolled back after failing to %s: %s", description, exc.__class__.__name__)
            raise StorageError(f"Failed to {description}") from exc

    def _insert(self, model: type):
        dialect = self._session.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(model.__table__)
        if dialect == "sqlite":
            return sqlite_insert(model.__table__)
        raise StorageError(f"Upsert is not supported on dialect {dialect}")

    # cases

    async def upsert_case(self, case_id: str, case_name: Optional[str]) -> None:
        now = utc_now()
        stmt = self._insert(Case).values(
            case_id=case_id,
            case_name=case_name,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["case_id"],
            set_={
                "case_name": func.coalesce(stmt.excluded.case_name, Case.__table__.c.case_name),
                "updated_at": now,
            },
        )
        async with self._write(f"upsert case {case_id}"):
            await self._session.execute(stmt)

    async def get_case(self, case_id: str) -> Optional[Case]:
        return await self._session.get(Case, case_id, populate_existing=True)

    async def set_case_situation(self, case_id: str, situation_text: Optional[str]) -> Case:
        """Store situation text and queue it for embedding; the previous vector is cleared."""

        case = await self.get_case(case_id)
        if case is None:
            raise ValueError(f"Case {case_id} not found")
        text = (situation_text or "").strip() or None
        case.situation_text = text
        case.situation_vector = None
        case.situation_dim = None
        case.embedding_model = None
        case.updated_at = utc_now()
        async with self._write(f"update situation for case {case_id}"):
            self._session.add(case)
            if text:
                self._session.add(
                    EmbeddingQueueItem(source=QueueSource.CASE, case_id=case_id, text=text)
                )
        await self._session.refresh(case)
        return case

    async def list_case_embeddings(self) -> list[Case]:
        result = await self._session.exec(
            select(Case)
            .where(Case.situation_vector.is_not(None))
            .order_by(Case.case_id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def delete_case(self, case_id: str) -> int:
        """Remove a case with its responses and every derived row; returns responses deleted."""

        async with self._write(f"delete case {case_id}"):
            await self._session.execute(delete(TypicalExample).where(TypicalExample.case_id == case_id))
            await self._session.execute(
                delete(ResponseEmbedding).where(ResponseEmbedding.case_id == case_id)
            )
            await self._session.execute(
                delete(EmbeddingQueueItem).where(EmbeddingQueueItem.case_id == case_id)
            )
            result = await self._session.execute(delete(Response).where(Response.case_id == case_id))
            await self._session.execute(delete(Question).where(Question.case_id == case_id))
            await self._session.execute(delete(Case).where(Case.case_id == case_id))
        return int(result.rowcount or 0)

    # questions

    async def get_question(self, case_id: str, question: str) -> Optional[Question]:
        return await self._session.get(Question, (case_id, question), populate_existing=True)

    async def save_question(self, case_id: str, question: str, question_text: str) -> Question:
        """Create or replace a case's question text and queue it for embedding."""

        validate_question(question)
        text = (question_text or "").strip()
        if not text:
            raise ValueError("question_text must not be blank")
        if await self.get_case(case_id) is None:
            raise LookupError(f"Case {case_id} not found")

        record = await self.get_question(case_id, question)
        if record is None:
            record = Question(case_id=case_id, question=question, question_text=text)
        else:
            record.question_text = text
            record.question_vector = None
            record.question_dim = None
            record.embedding_model = None
            record.updated_at = utc_now()
        async with self._write(f"save question {case_id}/{question}"):
            self._session.add(record)
            self._session.add(
                EmbeddingQueueItem(
                    source=QueueSource.QUESTION,
                    case_id=case_id,
                    question=question,
                    text=text,
                )
            )
        await self._session.refresh(record)
        return record

    async def delete_question(self, case_id: str, question: str) -> bool:
        async with self._write(f"delete question {case_id}/{question}"):
            await self._session.execute(
                delete(EmbeddingQueueItem).where(
                    EmbeddingQueueItem.source == QueueSource.QUESTION,
                    EmbeddingQueueItem.case_id == case_id,
                    EmbeddingQueueItem.question == question,
                )
            )
            result = await self._session.execute(
                delete(Question).where(Question.case_id == case_id, Question.question == question)
            )
        return bool(result.rowcount)

    async def list_question_embeddings(self, question: Optional[str] = None) -> list[Question]:
        stmt = select(Question).where(Question.question_vector.is_not(None))
        if question is not None:
            stmt = stmt.where(Question.question == question)
        result = await self._session.exec(
            stmt.order_by(Question.case_id, Question.question).execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    # responses

    async def upsert_responses(self, responses: Sequence[Response]) -> None:
        if not responses:
            return
        now = utc_now()
        rows: list[dict[str, Any]] = []
        for response in responses:
            row = response.model_dump(exclude={"id"})
            row["created_at"] = now
            row["updated_at"] = now
            rows.append(row)

        stmt = self._insert(Response).values(rows)
        columns = [column.name for column in Response.__table__.columns]
        stmt = stmt.on_conflict_do_update(
            index_elements=list(_RESPONSE_KEY),
            set_={
                name: getattr(stmt.excluded, name)
                for name in columns
                if name not in _RESPONSE_IMMUTABLE
            },
        )
        async with self._write(f"upsert {len(rows)} responses"):
            await self._session.execute(stmt)

    async def fetch_responses(self, case_id: str, response_ids: Sequence[str]) -> list[Response]:
        if not response_ids:
            return []
        result = await self._session.exec(
            select(Response).where(
                Response.case_id == case_id,
                Response.response_id.in_(list(response_ids)),
            ).execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def count_responses(self, case_id: Optional[str] = None) -> int:
        stmt = select(func.count()).select_from(Response)
        if case_id is not None:
            stmt = stmt.where(Response.case_id == case_id)
        result = await self._session.exec(stmt)
        return int(result.scalar_one())

    async def list_scored_responses(self, case_id: str) -> list[Response]:
        """Responses of a case with all six main scores, in insertion order."""

        columns = [getattr(Response, name) for name in MAIN_SCORE_FIELDS]
        result = await self._session.exec(
            select(Response)
            .where(Response.case_id == case_id, and_(*(column.is_not(None) for column in columns)))
            .order_by(Response.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    # embedding queue

    async def enqueue_embedding_jobs(self, items: Sequence[EmbeddingQueueItem]) -> int:
        if not items:
            return 0
        async with self._write(f"enqueue {len(items)} embedding jobs"):
            self._session.add_all(list(items))
        return len(items)

    async def claim_pending_jobs(self, limit: int) -> list[EmbeddingQueueItem]:
        """Atomically move up to ``limit`` pending items to processing under a fresh token.

        The claiming UPDATE re-checks ``status`` so two workers racing on the same rows
        cannot both take them; each worker then reads back only its own token.
        """

        if limit <= 0:
            return []
        token = uuid4().hex
        now = utc_now()
        pending_ids = (
            select(EmbeddingQueueItem.id)
            .where(EmbeddingQueueItem.status == QueueStatus.PENDING)
            .order_by(EmbeddingQueueItem.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(EmbeddingQueueItem)
            .where(
                EmbeddingQueueItem.id.in_(pending_ids),
                EmbeddingQueueItem.status == QueueStatus.PENDING,
            )
            .values(
                status=QueueStatus.PROCESSING,
                claim_token=token,
                claimed_at=now,
                attempts=EmbeddingQueueItem.attempts + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._write("claim embedding jobs"):
            await self._session.execute(stmt)

        result = await self._session.exec(
            select(EmbeddingQueueItem)
            .where(EmbeddingQueueItem.claim_token == token)
            .order_by(EmbeddingQueueItem.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def finish_batch(
        self,
        *,
        claim_token: str,
        outcomes: Sequence[JobOutcome],
        embeddings: Sequence[ResponseEmbedding] = (),
        case_vectors: Sequence[CaseVector] = (),
        question_vectors: Sequence[QuestionVector] = (),
    ) -> int:
        """Persist vectors and mark the claimed items done/failed in one transaction.

        Items are only marked while they still carry ``claim_token``; an item whose claim
        went stale and was taken by another worker keeps that worker's state. Case and
        question vectors are only written while the stored text still matches the embedded
        text. Returns the number of items marked.
        """

        now = utc_now()
        marked = 0
        async with self._write(f"finish embedding batch of {len(outcomes)} jobs"):
            if embeddings:
                rows = [embedding.model_dump() for embedding in embeddings]
                stmt = self._insert(ResponseEmbedding).values(rows)
                stmt = stmt.on_conflict_do_update(
                    index_elements=list(_EMBEDDING_KEY),
                    set_={
                        name: getattr(stmt.excluded, name)
                        for name in ("score", "score_bucket", "vector", "dim", "embedding_model", "created_at")
                    },
                )
                await self._session.execute(stmt)

            for case_vector in case_vectors:
                await self._session.execute(
                    update(Case)
                    .where(Case.case_id == case_vector.case_id, Case.situation_text == case_vector.text)
                    .values(
                        situation_vector=case_vector.vector,
                        situation_dim=case_vector.dim,
                        embedding_model=case_vector.model,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )

            for question_vector in question_vectors:
                await self._session.execute(
                    update(Question)
                    .where(
                        Question.case_id == question_vector.case_id,
                        Question.question == question_vector.question,
                        Question.question_text == question_vector.text,
                    )
                    .values(
                        question_vector=question_vector.vector,
                        question_dim=question_vector.dim,
                        embedding_model=question_vector.model,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )

            for outcome in outcomes:
                result = await self._session.execute(
                    update(EmbeddingQueueItem)
                    .where(
                        EmbeddingQueueItem.id == outcome.item_id,
                        EmbeddingQueueItem.claim_token == claim_token,
                        EmbeddingQueueItem.status == QueueStatus.PROCESSING,
                    )
                    .values(
                        status=QueueStatus.DONE if outcome.ok else QueueStatus.FAILED,
                        last_error=None if outcome.ok else (outcome.error or "unknown error"),
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                marked += int(result.rowcount or 0)
        return marked

    async def requeue_stale_jobs(self, claimed_before: datetime) -> int:
        stmt = (
            update(EmbeddingQueueItem)
            .where(
                EmbeddingQueueItem.status == QueueStatus.PROCESSING,
                EmbeddingQueueItem.claimed_at < claimed_before,
            )
            .values(status=QueueStatus.PENDING, claim_token=None, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        async with self._write("requeue stale embedding jobs"):
            result = await self._session.execute(stmt)
        return int(result.rowcount or 0)

    async def requeue_failed_jobs(self, max_attempts: int) -> int:
        stmt = (
            update(EmbeddingQueueItem)
            .where(
                EmbeddingQueueItem.status == QueueStatus.FAILED,
                EmbeddingQueueItem.attempts < max_attempts,
            )
            .values(status=QueueStatus.PENDING, claim_token=None, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        async with self._write("requeue failed embedding jobs"):
            result = await self._session.execute(stmt)
        return int(result.rowcount or 0)

    async def queue_counts(self) -> dict[str, int]:
        result = await self._session.exec(
            select(EmbeddingQueueItem.status, func.count()).group_by(EmbeddingQueueItem.status)
        )
        return {status: int(count) for status, count in result.all()}

    # embeddings and typical examples

    async def fetch_embeddings_for_bucket(
        self,
        case_id: str,
        question: str,
        score_bucket: float,
        limit: int,
    ) -> list[ResponseEmbedding]:
        result = await self._session.exec(
            select(ResponseEmbedding)
            .where(
                ResponseEmbedding.case_id == case_id,
                ResponseEmbedding.question == question,
                ResponseEmbedding.score_bucket == score_bucket,
            )
            .order_by(ResponseEmbedding.response_id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_response_embeddings(self, case_id: str, question: str) -> list[ResponseEmbedding]:
        result = await self._session.exec(
            select(ResponseEmbedding)
            .where(ResponseEmbedding.case_id == case_id, ResponseEmbedding.question == question)
            .order_by(ResponseEmbedding.response_id)
        )
        return list(result.scalars().all())

    async def replace_typical_examples(
        self,
        case_id: str,
        question: str,
        score_bucket: float,
        examples: Sequence[TypicalExample],
    ) -> None:
        """Delete the examples of exactly one bucket and insert the new set atomically."""

        async with self._write(f"replace typical examples for {case_id}/{question}/{score_bucket}"):
            await self._session.execute(
                delete(TypicalExample).where(
                    TypicalExample.case_id == case_id,
                    TypicalExample.question == question,
                    TypicalExample.score_bucket == score_bucket,
                )
            )
            if examples:
                self._session.add_all(list(examples))

    async def list_typical_examples(
        self,
        case_id: str,
        question: str,
        score_bucket: float,
        limit: int = 10,
    ) -> list[TypicalExample]:
        result = await self._session.exec(
            select(TypicalExample)
            .where(
                TypicalExample.case_id == case_id,
                TypicalExample.question == question,
                TypicalExample.score_bucket == score_bucket,
            )
            .order_by(TypicalExample.cluster_size.desc(), TypicalExample.cluster_id)
            .limit(limit)
        )
        return list(result.scalars().all())
