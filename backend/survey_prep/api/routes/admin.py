"""Admin endpoints for uploads, preparation, and case maintenance.

Endpoints:
    upload_csv(file, auto_prepare): Stream ingestion (and optional preparation) progress as SSE.
    prepare_embeddings(payload): Run one embedding worker batch.
    requeue_jobs(): Return stale claims and retryable failures to the queue.
    queue_status(): Count queue items per status.
    rebuild_typical(payload): Rebuild the typical examples of one score bucket.
    set_situation(case_id, payload): Store case situation text and queue its embedding.
    delete_case(case_id): Remove a case and everything derived from it.
    save_question(case_id, question, payload): Store a question text of a case and queue its embedding.
    delete_question(case_id, question): Remove a question text of a case.

Helpers:
    _upload_events(...): Compose decoding, ingestion, and auto-preparation into SSE frames.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from datetime import timedelta
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import async_sessionmaker
from starlette.concurrency import run_in_threadpool

from survey_prep.api.deps import get_embedding_provider, get_store
from survey_prep.core.config import Settings, get_settings
from survey_prep.core.errors import GENERIC_FAILURE_MESSAGE
from survey_prep.models import QueueStatus
from survey_prep.schemas import (
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
from survey_prep.services.csv_stream import iter_records, iter_upload, sniff_encoding
from survey_prep.services.embedding_worker import EmbeddingWorker
from survey_prep.services.embeddings import EmbeddingProvider
from survey_prep.services.ingestion import IngestionPipeline, ProgressEvent
from survey_prep.services.prepare import PrepareService
from survey_prep.services.store import SurveyStore
from survey_prep.services.typical_examples import TypicalExampleBuilder
from survey_prep.utils.clock import utc_now

_LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])

_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


async def _upload_events(
    upload: UploadFile,
    file_name: str,
    sessionmaker: async_sessionmaker,
    provider: EmbeddingProvider,
    settings: Settings,
    auto_prepare: bool,
) -> AsyncIterator[str]:
    try:
        async with sessionmaker() as session:
            store = SurveyStore(session)
            encoding, stream = await sniff_encoding(
                iter_upload(upload, settings.csv_chunk_size),
                tokens=settings.csv_encoding_tokens,
                max_bytes=settings.csv_probe_max_bytes,
                min_bytes=settings.csv_probe_min_bytes,
            )
            _LOGGER.info("Decoding upload %s as %s", file_name, encoding)

            pipeline = IngestionPipeline(store, settings=settings)
            async for event in pipeline.run(iter_records(stream, encoding), file_name=file_name):
                yield event.to_sse()

            if not (auto_prepare and pipeline.summary.completed):
                return
            if not getattr(provider, "is_configured", True):
                yield ProgressEvent(
                    "prepare_done",
                    {"status": "skipped", "reason": "embedding provider is not configured"},
                ).to_sse()
                return
            service = PrepareService(store, provider, settings=settings)
            async for event in service.run(pipeline.summary.touched_buckets):
                yield event.to_sse()
    except Exception:
        # ingestion and preparation report their own failures; this covers opening the
        # session and reading the first chunks of the upload
        _LOGGER.exception("Upload %s failed before ingestion could report it", file_name)
        yield ProgressEvent("error", {"file_name": file_name, "error": GENERIC_FAILURE_MESSAGE}).to_sse()
    finally:
        await upload.close()


@router.post("/upload")
async def upload_csv(
    request: Request,
    file: UploadFile = File(...),
    auto_prepare: bool = Query(default=True),
    provider: EmbeddingProvider = Depends(get_embedding_provider),
) -> StreamingResponse:
    settings = get_settings()
    file_name = file.filename or "upload.csv"
    # the request's own upload is closed once this handler returns
    spool = tempfile.SpooledTemporaryFile(max_size=settings.csv_probe_max_bytes)
    await run_in_threadpool(shutil.copyfileobj, file.file, spool)
    await run_in_threadpool(spool.seek, 0)
    detached = UploadFile(file=spool, filename=file_name)

    return StreamingResponse(
        _upload_events(
            detached,
            file_name,
            request.app.state.sessionmaker,
            provider,
            settings,
            auto_prepare,
        ),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


@router.post("/prepare/embeddings", response_model=PrepareEmbeddingsResponse)
async def prepare_embeddings(
    payload: Optional[PrepareEmbeddingsRequest] = None,
    store: SurveyStore = Depends(get_store),
    provider: EmbeddingProvider = Depends(get_embedding_provider),
) -> PrepareEmbeddingsResponse:
    settings = get_settings()
    worker = EmbeddingWorker(store, provider, settings=settings)
    result = await worker.process_batch(payload.limit if payload else settings.embedding_worker_batch_size)
    return PrepareEmbeddingsResponse(**result.as_dict())


@router.post("/prepare/requeue", response_model=RequeueResponse)
async def requeue_jobs(store: SurveyStore = Depends(get_store)) -> RequeueResponse:
    settings = get_settings()
    cutoff = utc_now() - timedelta(seconds=settings.embedding_stale_claim_s)
    stale = await store.requeue_stale_jobs(cutoff)
    failed = await store.requeue_failed_jobs(settings.embedding_max_attempts)
    if stale or failed:
        _LOGGER.info("Re-queued %d stale and %d failed embedding jobs", stale, failed)
    return RequeueResponse(stale=stale, failed=failed)


@router.get("/queue", response_model=QueueCountsResponse)
async def queue_status(store: SurveyStore = Depends(get_store)) -> QueueCountsResponse:
    counts = await store.queue_counts()
    return QueueCountsResponse(
        pending=counts.get(QueueStatus.PENDING, 0),
        processing=counts.get(QueueStatus.PROCESSING, 0),
        done=counts.get(QueueStatus.DONE, 0),
        failed=counts.get(QueueStatus.FAILED, 0),
    )


@router.post("/prepare/typical", response_model=TypicalRebuildResponse)
async def rebuild_typical(
    payload: TypicalRebuildRequest,
    store: SurveyStore = Depends(get_store),
    provider: EmbeddingProvider = Depends(get_embedding_provider),
) -> TypicalRebuildResponse:
    builder = TypicalExampleBuilder(store, settings=get_settings(), embedding_dim=provider.dim)
    try:
        result = await builder.rebuild(
            payload.case_id,
            payload.question,
            payload.score_bucket,
            max_clusters=payload.max_clusters,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return TypicalRebuildResponse(
        case_id=payload.case_id,
        question=payload.question,
        score_bucket=payload.score_bucket,
        **result.as_dict(),
    )


@router.put("/cases/{case_id}/situation", response_model=CaseResource)
async def set_situation(
    case_id: str,
    payload: CaseSituationRequest,
    store: SurveyStore = Depends(get_store),
) -> CaseResource:
    try:
        case = await store.set_case_situation(case_id, payload.situation_text)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return CaseResource(
        case_id=case.case_id,
        case_name=case.case_name,
        situation_text=case.situation_text,
        has_embedding=case.situation_vector is not None,
        updated_at=case.updated_at,
    )


@router.delete("/cases/{case_id}", response_model=CaseDeletedResponse)
async def delete_case(case_id: str, store: SurveyStore = Depends(get_store)) -> CaseDeletedResponse:
    if await store.get_case(case_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Case {case_id} not found")
    deleted = await store.delete_case(case_id)
    _LOGGER.info("Deleted case %s with %d responses", case_id, deleted)
    return CaseDeletedResponse(case_id=case_id, responses_deleted=deleted)


@router.put("/cases/{case_id}/questions/{question}", response_model=QuestionResource)
async def save_question(
    case_id: str,
    question: str,
    payload: QuestionTextRequest,
    store: SurveyStore = Depends(get_store),
) -> QuestionResource:
    try:
        record = await store.save_question(case_id, question, payload.question_text)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return QuestionResource(
        case_id=record.case_id,
        question=record.question,
        question_text=record.question_text,
        has_embedding=record.question_vector is not None,
        updated_at=record.updated_at,
    )


@router.delete("/cases/{case_id}/questions/{question}", response_model=QuestionDeletedResponse)
async def delete_question(
    case_id: str,
    question: str,
    store: SurveyStore = Depends(get_store),
) -> QuestionDeletedResponse:
    if not await store.delete_question(case_id, question):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Question {question} of case {case_id} not found",
        )
    return QuestionDeletedResponse(case_id=case_id, question=question)
