"""Tests for the CSV ingestion pipeline against an in-memory store."""

from __future__ import annotations

import itertools
from datetime import date

import pytest

from survey_prep.core.errors import GENERIC_FAILURE_MESSAGE, StorageError
from survey_prep.models import QueueStatus, Response
from survey_prep.services.csv_stream import iter_bytes, iter_records
from survey_prep.services.ingestion import (
    IngestionPipeline,
    ParsedRow,
    dedupe_by_key,
    parse_date,
    parse_score,
)
from survey_prep.services.store import SurveyStore
from survey_prep.utils.scoring import to_score_bucket


def _row(index: int, case_id: str = "C01", **overrides) -> dict[str, object]:
    row: dict[str, object] = {
        "response_id": f"R{index:03d}",
        "case_id": case_id,
        "case_name": f"題材 {case_id}",
        "submitted_at": "2024/04/01",
        "score_overall": "3.0",
        "score_problem": "2.5",
        "score_solution": "3.0",
        "score_role": "2.0",
        "score_leadership": "2.5",
        "score_collaboration": "3.5",
        "score_development": "1.5",
        "q1": f"問題把握の回答 {index}",
        "q2": f"対策, その{index}",
        "q3": "追加の回答",
    }
    row.update(overrides)
    return row


def _records(text: str, chunk_size: int = 257):
    return iter_records(iter_bytes(text.encode("utf-8"), chunk_size), "utf-8")


async def _run(pipeline: IngestionPipeline, text: str, file_name: str = "survey.csv"):
    return [event async for event in pipeline.run(_records(text), file_name=file_name)]


class RecordingStore(SurveyStore):
    def __init__(self, session) -> None:
        super().__init__(session)
        self.calls: list[tuple[str, object]] = []

    async def upsert_case(self, case_id, case_name):
        self.calls.append(("case", case_id))
        await super().upsert_case(case_id, case_name)

    async def upsert_responses(self, responses):
        self.calls.append(("responses", sorted({response.case_id for response in responses})))
        await super().upsert_responses(responses)


class FailingStore(SurveyStore):
    async def upsert_responses(self, responses):
        raise StorageError("Failed to upsert 3 responses")


def test_parse_score_and_date():
    assert parse_score("3.45") == 3.5
    assert parse_score("1") == 1.0
    assert parse_score("0.5") is None
    assert parse_score("4.2") is None
    assert parse_score("n/a") is None
    assert parse_score("") is None
    assert parse_date("2024/04/01") == date(2024, 4, 1)
    assert parse_date("2024-04-01 09:30:00") == date(2024, 4, 1)
    assert parse_date("yesterday") is None


def test_dedupe_keeps_last_row_per_key():
    rows = [
        ParsedRow(Response(case_id="C1", response_id="A", answer_q1="old"), None),
        ParsedRow(Response(case_id="C1", response_id="B", answer_q1="only"), None),
        ParsedRow(Response(case_id="C1", response_id="A", answer_q1="new"), None),
    ]

    deduped, dropped = dedupe_by_key(rows)

    assert dropped == 1
    assert {row.response.response_id: row.response.answer_q1 for row in deduped} == {"A": "new", "B": "only"}


@pytest.mark.asyncio
async def test_duplicate_keys_in_one_batch_keep_last_occurrence(store, settings, survey_csv):
    rows = [_row(index) for index in range(1, 13)]
    for index in (2, 5, 8):
        rows.append(_row(index, q1=f"最新の回答 {index}", score_problem="3.5"))
    assert len(rows) == 15

    pipeline = IngestionPipeline(store, settings=settings)
    events = await _run(pipeline, survey_csv(rows))

    assert [event.event for event in events] == ["start", "progress", "completed"]
    assert events[-1].data["processed"] == 15
    assert events[-1].data["duplicates_dropped"] == 3
    assert await store.count_responses("C01") == 12

    stored = {
        response.response_id: response
        for response in await store.fetch_responses("C01", [f"R{index:03d}" for index in range(1, 13)])
    }
    assert len(stored) == 12
    for index in (2, 5, 8):
        assert stored[f"R{index:03d}"].answer_q1 == f"最新の回答 {index}"
        assert stored[f"R{index:03d}"].score_problem == 3.5
    assert stored["R001"].answer_q1 == "問題把握の回答 1"
    assert stored["R001"].submitted_at == date(2024, 4, 1)


@pytest.mark.asyncio
async def test_reingesting_same_file_is_idempotent(store, settings, survey_csv):
    text = survey_csv([_row(index) for index in range(1, 6)])

    first = await _run(IngestionPipeline(store, settings=settings), text)
    snapshot = [
        response.model_dump(exclude={"created_at", "updated_at"})
        for response in await store.list_scored_responses("C01")
    ]
    second = await _run(IngestionPipeline(store, settings=settings), text)
    again = [
        response.model_dump(exclude={"created_at", "updated_at"})
        for response in await store.list_scored_responses("C01")
    ]

    assert first[-1].event == second[-1].event == "completed"
    assert await store.count_responses() == 5
    assert again == snapshot


@pytest.mark.asyncio
async def test_case_is_upserted_before_its_responses(session, settings, survey_csv):
    store = RecordingStore(session)
    rows = [_row(1, case_id="C01"), _row(2, case_id="C02"), _row(3, case_id="C01")]

    events = await _run(IngestionPipeline(store, settings=settings, batch_size=2), survey_csv(rows))

    assert events[-1].event == "completed"
    assert store.calls == [
        ("case", "C01"),
        ("case", "C02"),
        ("responses", ["C01", "C02"]),
        ("responses", ["C01"]),
    ]
    case = await store.get_case("C02")
    assert case is not None and case.case_name == "題材 C02"


@pytest.mark.asyncio
async def test_batches_emit_cumulative_progress(store, settings, survey_csv):
    rows = [_row(index) for index in range(1, 8)]

    events = await _run(IngestionPipeline(store, settings=settings, batch_size=3), survey_csv(rows))

    progress = [event.data["processed"] for event in events if event.event == "progress"]
    assert progress == [3, 6, 7]
    assert events[-1].data == {
        "file_name": "survey.csv",
        "processed": 7,
        "status": "completed",
        "duplicates_dropped": 0,
        "skipped_rows": 0,
    }


@pytest.mark.asyncio
@pytest.mark.parametrize("junk_rows,expected", [(0, "completed"), (4, "completed"), (5, "error")])
async def test_header_may_follow_a_bounded_number_of_leading_rows(store, settings, survey_csv, junk_rows, expected):
    leading = [["項目ID", f"{index}", "メタデータ"] for index in range(junk_rows)]
    text = survey_csv([_row(1)], leading=leading)

    events = await _run(IngestionPipeline(store, settings=settings), text)

    assert events[-1].event == expected
    if expected == "error":
        assert "受注番号" in events[-1].data["error"]
        assert await store.count_responses() == 0
    else:
        assert await store.count_responses() == 1


@pytest.mark.asyncio
async def test_missing_required_column_reports_its_name(store, settings, survey_csv):
    text = survey_csv([_row(1)], columns=["response_id", "case_name", "q1"])

    events = await _run(IngestionPipeline(store, settings=settings), text)

    assert events[-1].event == "error"
    assert events[-1].data["error"] == "Required columns not found: Ⅱ　MC　題材コード"


@pytest.mark.asyncio
async def test_invalid_rows_below_threshold_are_skipped(store, settings, survey_csv):
    rows = [_row(1), _row(2, response_id=""), _row(3, case_id=""), _row(4)]

    events = await _run(IngestionPipeline(store, settings=settings), survey_csv(rows))

    assert events[-1].event == "completed"
    assert events[-1].data["skipped_rows"] == 2
    assert await store.count_responses() == 2


@pytest.mark.asyncio
async def test_too_many_invalid_rows_abort_with_collected_errors(store, settings, survey_csv):
    rows = [_row(index, response_id="") for index in range(1, 16)]

    pipeline = IngestionPipeline(store, settings=settings, max_row_errors=10)
    events = await _run(pipeline, survey_csv(rows))

    assert events[-1].event == "error"
    errors = events[-1].data["errors"]
    assert len(errors) == 10
    assert errors[0].startswith("Row 2: required field")
    assert sum(1 for event in events if event.event in {"completed", "error"}) == 1


@pytest.mark.asyncio
async def test_time_budget_flushes_in_flight_batch_before_failing(store, settings, survey_csv):
    ticks = itertools.count()
    rows = [_row(index) for index in range(1, 21)]

    pipeline = IngestionPipeline(store, settings=settings, time_budget_s=5, clock=lambda: float(next(ticks)))
    events = await _run(pipeline, survey_csv(rows))

    assert [event.event for event in events] == ["start", "progress", "error"]
    assert events[1].data["processed"] == 6
    assert "time budget" in events[-1].data["error"]
    assert await store.count_responses() == 6


@pytest.mark.asyncio
async def test_storage_failure_surfaces_generic_message(session, settings, survey_csv):
    store = FailingStore(session)

    events = await _run(IngestionPipeline(store, settings=settings), survey_csv([_row(1)]))

    assert events[-1].event == "error"
    assert events[-1].data["error"] == GENERIC_FAILURE_MESSAGE
    assert "upsert" not in str(events[-1].data)


@pytest.mark.asyncio
async def test_empty_upload_is_an_error(store, settings):
    events = await _run(IngestionPipeline(store, settings=settings), "\r\n\r\n")

    assert events[-1].event == "error"
    assert events[-1].data["error"] == "The uploaded file contains no data"


@pytest.mark.asyncio
async def test_ingestion_enqueues_question_jobs_and_tracks_buckets(store, settings, survey_csv):
    rows = [_row(1), _row(2, q1="", q2="", q3=""), _row(3, q1="", score_problem="")]

    pipeline = IngestionPipeline(store, settings=settings)
    await _run(pipeline, survey_csv(rows))

    counts = await store.queue_counts()
    # row 1: q1 + q2, row 2: nothing, row 3: q2 only
    assert counts == {QueueStatus.PENDING: 3}
    assert ("C01", "q1", to_score_bucket(2.5)) in pipeline.summary.touched_buckets
    assert ("C01", "q2", to_score_bucket(3.0)) in pipeline.summary.touched_buckets
