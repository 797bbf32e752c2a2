"""Embedding queue worker.

Classes:
    BatchResult: Counts reported for one worker call.
    EmbeddingWorker: Claims pending queue items, embeds them, and persists the vectors.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Optional

from survey_prep.core.config import Settings, get_settings
from survey_prep.models import EmbeddingQueueItem, QueueSource, Response, ResponseEmbedding
from survey_prep.services.embeddings import EmbeddingProvider
from survey_prep.services.store import CaseVector, JobOutcome, QuestionVector, SurveyStore
from survey_prep.utils.clock import utc_now
from survey_prep.utils.scoring import question_score, question_text, to_score_bucket
from survey_prep.utils.vector import vector_to_bytes

_LOGGER = logging.getLogger(__name__)

# job, text sent to the provider, vector, error
_Embedded = tuple[EmbeddingQueueItem, Optional[str], Optional[list[float]], Optional[str]]


@dataclass(slots=True)
class BatchResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class EmbeddingWorker:
    def __init__(
        self,
        store: SurveyStore,
        provider: EmbeddingProvider,
        *,
        settings: Optional[Settings] = None,
        concurrency: Optional[int] = None,
    ) -> None:
        settings = settings or get_settings()
        self._store = store
        self._provider = provider
        self._settings = settings
        self._concurrency = max(1, concurrency or settings.embedding_concurrency)

    async def process_batch(self, limit: Optional[int] = None) -> BatchResult:
        """Embed up to ``limit`` pending items.

        Safe to call repeatedly; callers loop until ``processed`` is zero. A failing item is
        marked failed and never blocks the rest of the batch. Response items embed the
        answer text as currently stored, not the text captured when they were queued.
        """

        limit = self._settings.embedding_worker_batch_size if limit is None else limit
        jobs = await self._store.claim_pending_jobs(limit)
        if not jobs:
            return BatchResult()

        sources = await self._load_sources(jobs)
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _embed(job: EmbeddingQueueItem) -> _Embedded:
            if job.source == QueueSource.RESPONSE:
                response = sources.get((job.case_id, job.response_id))
                if response is None:
                    return job, None, None, "source response not found"
                text = question_text(response, job.question)
            else:
                text = job.text
            if not text or not text.strip():
                return job, None, None, "source text not found"
            async with semaphore:
                try:
                    vector = await self._provider.embed(text)
                except Exception as exc:
                    _LOGGER.warning("Embedding failed for queue item %s: %s", job.id, exc)
                    return job, text, None, str(exc) or exc.__class__.__name__
            if len(vector) != self._provider.dim:
                return job, text, None, f"unexpected embedding dimension: {len(vector)}"
            return job, text, vector, None

        computed = await asyncio.gather(*(_embed(job) for job in jobs))

        embeddings: list[ResponseEmbedding] = []
        case_vectors: list[CaseVector] = []
        question_vectors: list[QuestionVector] = []
        outcomes: list[JobOutcome] = []
        for job, text, vector, error in computed:
            if vector is None:
                outcomes.append(JobOutcome(item_id=job.id, ok=False, error=error))
                continue
            payload = vector_to_bytes(vector)
            if job.source == QueueSource.CASE:
                case_vectors.append(
                    CaseVector(
                        case_id=job.case_id,
                        text=text,
                        vector=payload,
                        dim=len(vector),
                        model=self._provider.model,
                    )
                )
            elif job.source == QueueSource.QUESTION:
                question_vectors.append(
                    QuestionVector(
                        case_id=job.case_id,
                        question=job.question,
                        text=text,
                        vector=payload,
                        dim=len(vector),
                        model=self._provider.model,
                    )
                )
            else:
                response = sources[(job.case_id, job.response_id)]
                score = question_score(response, job.question)
                embeddings.append(
                    ResponseEmbedding(
                        case_id=job.case_id,
                        response_id=job.response_id,
                        question=job.question,
                        score=score,
                        score_bucket=to_score_bucket(score if score is not None else 0.0),
                        vector=payload,
                        dim=len(vector),
                        embedding_model=self._provider.model,
                    )
                )
            outcomes.append(JobOutcome(item_id=job.id, ok=True))

        # a key queued twice in one claim keeps its last vector
        unique: dict[tuple[str, str, str], ResponseEmbedding] = {}
        for embedding in embeddings:
            unique[(embedding.case_id, embedding.response_id, embedding.question)] = embedding

        marked = await self._store.finish_batch(
            claim_token=jobs[0].claim_token,
            outcomes=outcomes,
            embeddings=list(unique.values()),
            case_vectors=case_vectors,
            question_vectors=question_vectors,
        )
        if marked < len(outcomes):
            _LOGGER.warning(
                "%d of %d embedding jobs were re-claimed by another worker before they finished",
                len(outcomes) - marked,
                len(outcomes),
            )

        succeeded = sum(1 for outcome in outcomes if outcome.ok)
        result = BatchResult(processed=len(jobs), succeeded=succeeded, failed=len(jobs) - succeeded)
        if result.failed:
            _LOGGER.warning("Embedding batch finished with %d failures out of %d", result.failed, result.processed)
        return result

    async def requeue_stale(self) -> int:
        cutoff = utc_now() - timedelta(seconds=self._settings.embedding_stale_claim_s)
        return await self._store.requeue_stale_jobs(cutoff)

    async def _load_sources(self, jobs: list[EmbeddingQueueItem]) -> dict[tuple[str, str], Response]:
        wanted: dict[str, set[str]] = defaultdict(set)
        for job in jobs:
            if job.source == QueueSource.RESPONSE and job.response_id:
                wanted[job.case_id].add(job.response_id)
        sources: dict[tuple[str, str], Response] = {}
        for case_id, response_ids in wanted.items():
            for response in await self._store.fetch_responses(case_id, sorted(response_ids)):
                sources[(response.case_id, response.response_id)] = response
        return sources
