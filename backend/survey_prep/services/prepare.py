"""Post-upload preparation: drain the embedding queue, then rebuild touched buckets.

Classes:
    PrepareService: Time-boxed embedding and typical-example preparation with progress events.
"""

from __future__ import annotations

import logging
import time
from typing import AsyncIterator, Callable, Iterable, Optional

from survey_prep.core.config import Settings, get_settings
from survey_prep.services.embedding_worker import BatchResult, EmbeddingWorker
from survey_prep.services.embeddings import EmbeddingProvider
from survey_prep.services.ingestion import BucketKey, ProgressEvent
from survey_prep.services.store import SurveyStore
from survey_prep.services.typical_examples import TypicalExampleBuilder

_LOGGER = logging.getLogger(__name__)

_TYPICAL_PROGRESS_EVERY = 10


class PrepareService:
    def __init__(
        self,
        store: SurveyStore,
        provider: EmbeddingProvider,
        *,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = settings or get_settings()
        self._settings = settings
        self._clock = clock
        self._worker = EmbeddingWorker(store, provider, settings=settings)
        self._builder = TypicalExampleBuilder(store, settings=settings, embedding_dim=provider.dim)

    @property
    def worker(self) -> EmbeddingWorker:
        return self._worker

    @property
    def builder(self) -> TypicalExampleBuilder:
        return self._builder

    async def run(
        self,
        touched_buckets: Iterable[BucketKey],
        *,
        max_seconds: Optional[float] = None,
    ) -> AsyncIterator[ProgressEvent]:
        budget = self._settings.auto_prepare_max_s if max_seconds is None else max_seconds
        started = self._clock()

        def remaining() -> bool:
            return self._clock() - started < budget

        totals = BatchResult()
        yield ProgressEvent("prepare_start", {"status": "started"})
        try:
            while remaining():
                result = await self._worker.process_batch(self._settings.embedding_worker_batch_size)
                if result.processed == 0:
                    break
                totals.processed += result.processed
                totals.succeeded += result.succeeded
                totals.failed += result.failed
                yield ProgressEvent("prepare_progress", {"phase": "embeddings", **totals.as_dict()})

            scheduled = sorted(touched_buckets)[: self._settings.typical_max_buckets]
            done = 0
            for case_id, question, score_bucket in scheduled:
                if not remaining():
                    break
                await self._builder.rebuild(case_id, question, score_bucket)
                done += 1
                if done % _TYPICAL_PROGRESS_EVERY == 0:
                    yield ProgressEvent(
                        "prepare_progress",
                        {"phase": "typicals", "done": done, "total": len(scheduled)},
                    )
        except Exception:
            _LOGGER.exception("Automatic preparation failed after %d embeddings", totals.processed)
            yield ProgressEvent("prepare_error", {"error": "Preparation failed; run it again from the admin tools"})
            return

        yield ProgressEvent(
            "prepare_done",
            {
                "status": "done",
                "embeddings": totals.as_dict(),
                "typicals": {"done": done, "scheduled": len(scheduled)},
                "time_ms": round((self._clock() - started) * 1000.0, 3),
            },
        )
