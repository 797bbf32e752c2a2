"""CSV ingestion into cases, responses, and the embedding queue.

The pipeline consumes decoded CSV records, resolves the header row, maps each data record
to a :class:`~survey_prep.models.Response`, and writes responses in fixed-size batches.
Progress is reported as an ordered stream of :class:`ProgressEvent` values that always ends
with exactly one ``completed`` or ``error`` event.

Classes:
    ProgressEvent: One event on the progress channel, renderable as server-sent events.
    ParsedRow: A validated response plus the case name read from the same record.
    IngestionSummary: Counters and touched score buckets collected during a run.
    IngestionPipeline: Drives header resolution, validation, dedup, and batch upserts.

Functions:
    parse_score(value): Parse a 1-4 score rounded to one decimal, or None.
    parse_date(value): Parse the submission date, or None.
    parse_row(header, values, record_no): Map one record onto a Response.
    dedupe_by_key(rows): Collapse rows sharing ``(case_id, response_id)``, last one wins.
    embedding_jobs_for(responses): Queue items for every question with non-blank text.
"""

from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, AsyncIterator, Callable, Optional, Sequence

from survey_prep.core.config import CASE_CODE_HEADER, ORDER_NUMBER_HEADER, Settings, get_settings
from survey_prep.core.errors import (
    GENERIC_FAILURE_MESSAGE,
    EmptyUploadError,
    HeaderValidationError,
    IngestionError,
    IngestionTimeoutError,
    StorageError,
    TooManyInvalidRowsError,
)
from survey_prep.models import ANSWER_FIELDS, EmbeddingQueueItem, QueueSource, Response
from survey_prep.services.csv_stream import split_fields
from survey_prep.services.store import SurveyStore
from survey_prep.utils.scoring import QUESTIONS, question_score, question_text, to_score_bucket

_LOGGER = logging.getLogger(__name__)

CASE_NAME_HEADER = "Ⅱ　MC　題材名"
SUBMITTED_AT_HEADER = "実施日"

SCORE_HEADERS: dict[str, str] = {
    "score_overall": "Ⅱ　MC　演習総合評点",
    "score_problem": "Ⅱ　MC　問題把握評点",
    "score_solution": "Ⅱ　MC　対策立案評点",
    "score_role": "Ⅱ　MC　役割理解評点",
    "score_leadership": "Ⅱ　MC　主導評点",
    "score_collaboration": "Ⅱ　MC　連携評点",
    "score_development": "Ⅱ　MC　育成評点",
}
COMMENT_OVERALL_HEADER = "Ⅱ　MC　総合コメント"
COMMENT_PROBLEM_HEADERS = ("Ⅱ　MC　問題把握コメント", "Ⅱ　MC　問題把握コメント1", "Ⅱ　MC　問題把握コメント2")
COMMENT_SOLUTION_HEADERS = ("Ⅱ　MC　対策立案コメント", "Ⅱ　MC　対策立案コメント1")
ANSWER_HEADERS: dict[str, str] = {
    name: f"【設問ID】　{index}" for index, name in enumerate(ANSWER_FIELDS, start=1)
}

_DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%Y/%m/%d %H:%M", "%Y/%m/%d %H:%M:%S", "%Y-%m-%d %H:%M:%S")

BucketKey = tuple[str, str, float]


@dataclass(slots=True)
class ProgressEvent:
    event: str
    data: dict[str, Any]

    @property
    def is_terminal(self) -> bool:
        return self.event in {"completed", "error"}

    def to_sse(self) -> str:
        return f"event: {self.event}\ndata: {json.dumps(self.data, ensure_ascii=False)}\n\n"


@dataclass(slots=True)
class ParsedRow:
    response: Response
    case_name: Optional[str]

    @property
    def key(self) -> tuple[str, str]:
        return (self.response.case_id, self.response.response_id)


@dataclass(slots=True)
class IngestionSummary:
    processed: int = 0
    duplicates_dropped: int = 0
    batches: int = 0
    cases: set[str] = field(default_factory=set)
    touched_buckets: set[BucketKey] = field(default_factory=set)
    row_errors: list[str] = field(default_factory=list)
    completed: bool = False


def parse_score(value: str | None) -> Optional[float]:
    if not value:
        return None
    try:
        number = float(value)
    except ValueError:
        return None
    if not math.isfinite(number) or number < 1.0 or number > 4.0:
        return None
    return math.floor(number * 10 + 0.5) / 10


def parse_date(value: str | None) -> Optional[date]:
    text = (value or "").strip()
    if not text:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return None


class HeaderIndex:
    """Column lookup by header name; the first occurrence of a duplicated name wins."""

    def __init__(self, names: Sequence[str]) -> None:
        self.names = list(names)
        self._positions: dict[str, int] = {}
        for position, name in enumerate(self.names):
            self._positions.setdefault(name, position)

    def missing(self, required: Sequence[str]) -> list[str]:
        return [name for name in required if name not in self._positions]

    def value(self, values: Sequence[str], name: str) -> str:
        position = self._positions.get(name)
        if position is None or position >= len(values):
            return ""
        return values[position].strip()


def parse_row(header: HeaderIndex, values: Sequence[str], record_no: int) -> ParsedRow:
    def get(name: str) -> str:
        return header.value(values, name)

    response_id = get(ORDER_NUMBER_HEADER)
    case_id = get(CASE_CODE_HEADER)
    if not response_id or not case_id:
        raise ValueError(
            f"Row {record_no}: required field ({ORDER_NUMBER_HEADER} or {CASE_CODE_HEADER}) is empty"
        )

    comment_problem = get(COMMENT_PROBLEM_HEADERS[0]) or "\n".join(
        part for part in (get(COMMENT_PROBLEM_HEADERS[1]), get(COMMENT_PROBLEM_HEADERS[2])) if part
    )
    comment_solution = get(COMMENT_SOLUTION_HEADERS[0]) or get(COMMENT_SOLUTION_HEADERS[1])

    response = Response(
        case_id=case_id,
        response_id=response_id,
        submitted_at=parse_date(get(SUBMITTED_AT_HEADER)),
        comment_overall=get(COMMENT_OVERALL_HEADER) or None,
        comment_problem=comment_problem or None,
        comment_solution=comment_solution or None,
        **{name: parse_score(get(column)) for name, column in SCORE_HEADERS.items()},
        **{name: get(column) or None for name, column in ANSWER_HEADERS.items()},
    )
    return ParsedRow(response=response, case_name=get(CASE_NAME_HEADER) or None)


def dedupe_by_key(rows: Sequence[ParsedRow]) -> tuple[list[ParsedRow], int]:
    latest: dict[tuple[str, str], ParsedRow] = {}
    for row in rows:
        latest[row.key] = row
    deduped = list(latest.values())
    return deduped, len(rows) - len(deduped)


def embedding_jobs_for(responses: Sequence[Response]) -> list[EmbeddingQueueItem]:
    jobs: list[EmbeddingQueueItem] = []
    for response in responses:
        for question in QUESTIONS:
            text = question_text(response, question)
            if text is None:
                continue
            jobs.append(
                EmbeddingQueueItem(
                    source=QueueSource.RESPONSE,
                    case_id=response.case_id,
                    response_id=response.response_id,
                    question=question,
                    text=text,
                )
            )
    return jobs


class IngestionPipeline:
    def __init__(
        self,
        store: SurveyStore,
        *,
        settings: Optional[Settings] = None,
        required_headers: Optional[Sequence[str]] = None,
        batch_size: Optional[int] = None,
        header_skip_limit: Optional[int] = None,
        max_row_errors: Optional[int] = None,
        time_budget_s: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = settings or get_settings()
        self._store = store
        self._required = list(required_headers or settings.csv_required_headers)
        self._batch_size = max(1, batch_size or settings.ingest_batch_size)
        self._header_skip_limit = (
            settings.ingest_header_skip_limit if header_skip_limit is None else header_skip_limit
        )
        self._max_row_errors = max(1, max_row_errors or settings.ingest_max_row_errors)
        self._time_budget_s = settings.ingest_time_budget_s if time_budget_s is None else time_budget_s
        self._clock = clock
        self.summary = IngestionSummary()

    async def run(
        self,
        records: AsyncIterator[str],
        *,
        file_name: str = "upload.csv",
    ) -> AsyncIterator[ProgressEvent]:
        """Ingest ``records`` and yield progress events ending in ``completed`` or ``error``."""

        self.summary = IngestionSummary()
        yield ProgressEvent("start", {"file_name": file_name})
        try:
            async for event in self._ingest(records, file_name):
                yield event
        except IngestionError as exc:
            _LOGGER.error("CSV ingestion stopped for %s: %s", file_name, exc.message)
            yield ProgressEvent(
                "error",
                {"file_name": file_name, "error": exc.message, "errors": exc.errors},
            )
            return
        except StorageError:
            _LOGGER.error(
                "CSV ingestion aborted for %s after %d rows", file_name, self.summary.processed
            )
            yield ProgressEvent("error", {"file_name": file_name, "error": GENERIC_FAILURE_MESSAGE})
            return
        except Exception:
            _LOGGER.exception(
                "CSV ingestion failed for %s after %d rows", file_name, self.summary.processed
            )
            yield ProgressEvent("error", {"file_name": file_name, "error": GENERIC_FAILURE_MESSAGE})
            return

        self.summary.completed = True
        yield ProgressEvent(
            "completed",
            {
                "file_name": file_name,
                "processed": self.summary.processed,
                "status": "completed",
                "duplicates_dropped": self.summary.duplicates_dropped,
                "skipped_rows": len(self.summary.row_errors),
            },
        )

    async def _ingest(self, records: AsyncIterator[str], file_name: str) -> AsyncIterator[ProgressEvent]:
        summary = self.summary
        deadline = self._clock() + self._time_budget_s
        header: HeaderIndex | None = None
        header_attempts = 0
        closest_missing: list[str] = list(self._required)
        record_no = 0
        batch: list[ParsedRow] = []

        async for record in records:
            record_no += 1
            if not record.strip():
                continue

            if header is None:
                candidate = HeaderIndex(split_fields(record))
                missing = candidate.missing(self._required)
                if not missing:
                    header = candidate
                    continue
                if len(missing) < len(closest_missing):
                    closest_missing = missing
                # some exports prepend item-id rows above the real header
                header_attempts += 1
                if header_attempts <= self._header_skip_limit:
                    continue
                raise HeaderValidationError(closest_missing)

            try:
                row = parse_row(header, split_fields(record), record_no)
            except ValueError as exc:
                summary.row_errors.append(str(exc))
                _LOGGER.error("CSV row validation error in %s: %s", file_name, exc)
                if len(summary.row_errors) >= self._max_row_errors:
                    raise TooManyInvalidRowsError(summary.row_errors) from exc
                continue

            if row.response.case_id not in summary.cases:
                try:
                    await self._store.upsert_case(row.response.case_id, row.case_name)
                except StorageError:
                    _LOGGER.exception(
                        "Storage failure for %s upserting case %s at record %d",
                        file_name,
                        row.response.case_id,
                        record_no,
                    )
                    raise
                summary.cases.add(row.response.case_id)

            batch.append(row)
            if len(batch) >= self._batch_size:
                yield await self._flush(batch, file_name)
                batch = []

            if self._clock() > deadline:
                if batch:
                    yield await self._flush(batch, file_name)
                    batch = []
                raise IngestionTimeoutError(summary.processed, self._time_budget_s)

        if header is None:
            if header_attempts:
                raise HeaderValidationError(closest_missing)
            raise EmptyUploadError()

        if batch:
            yield await self._flush(batch, file_name)

    async def _flush(self, batch: list[ParsedRow], file_name: str) -> ProgressEvent:
        summary = self.summary
        offset = summary.processed
        deduped, dropped = dedupe_by_key(batch)
        if dropped:
            _LOGGER.warning(
                "Duplicate response keys in %s batch at row offset %d; kept last occurrences, dropped %d",
                file_name,
                offset,
                dropped,
            )

        responses = [row.response for row in deduped]
        try:
            await self._store.upsert_responses(responses)
            await self._store.enqueue_embedding_jobs(embedding_jobs_for(responses))
        except StorageError:
            _LOGGER.exception("Storage failure for %s at batch offset %d", file_name, offset)
            raise

        for response in responses:
            for question in QUESTIONS:
                score = question_score(response, question)
                if score is not None:
                    summary.touched_buckets.add((response.case_id, question, to_score_bucket(score)))

        summary.processed += len(batch)
        summary.duplicates_dropped += dropped
        summary.batches += 1
        return ProgressEvent(
            "progress",
            {
                "file_name": file_name,
                "processed": summary.processed,
                "status": "processing",
                "duplicates_dropped": summary.duplicates_dropped,
            },
        )
