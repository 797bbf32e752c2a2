from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import FakeEmbeddingProvider
from survey_prep.models import EmbeddingQueueItem, QueueSource, QueueStatus, Response
from survey_prep.services.embedding_worker import EmbeddingWorker
from survey_prep.services.ingestion import embedding_jobs_for
from survey_prep.services.store import JobOutcome
from survey_prep.utils.clock import utc_now
from survey_prep.utils.vector import vector_from_bytes


async def seed_responses(store, texts: list[str], case_id: str = "C01", score: float = 3.0) -> list[Response]:
    responses = [
        Response(
            case_id=case_id,
            response_id=f"R{index:03d}",
            score_problem=score,
            score_solution=2.0,
            answer_q1=text,
        )
        for index, text in enumerate(texts, start=1)
    ]
    await store.upsert_case(case_id, f"題材 {case_id}")
    await store.upsert_responses(responses)
    await store.enqueue_embedding_jobs(embedding_jobs_for(responses))
    return responses


async def queue_items(session) -> list[EmbeddingQueueItem]:
    result = await session.exec(
        select(EmbeddingQueueItem)
        .order_by(EmbeddingQueueItem.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_worker_drains_queue_in_bounded_batches(store, settings, provider):
    await seed_responses(store, [f"answer {index}" for index in range(7)])
    worker = EmbeddingWorker(store, provider, settings=settings)

    first = await worker.process_batch(5)
    second = await worker.process_batch(5)
    third = await worker.process_batch(5)

    assert first.as_dict() == {"processed": 5, "succeeded": 5, "failed": 0}
    assert second.as_dict() == {"processed": 2, "succeeded": 2, "failed": 0}
    assert third.processed == 0
    assert await store.queue_counts() == {QueueStatus.DONE: 7}

    embeddings = await store.list_response_embeddings("C01", "q1")
    assert len(embeddings) == 7
    assert {row.dim for row in embeddings} == {3}
    assert {row.embedding_model for row in embeddings} == {"fake-embedding"}
    assert {row.score_bucket for row in embeddings} == {3.0}


@pytest.mark.asyncio
async def test_failed_items_do_not_block_the_batch(session, store, settings):
    provider = FakeEmbeddingProvider(fail_on=["broken"])
    await seed_responses(store, ["fine one", "broken text", "fine two"])
    worker = EmbeddingWorker(store, provider, settings=settings)

    result = await worker.process_batch(10)

    assert result.as_dict() == {"processed": 3, "succeeded": 2, "failed": 1}
    items = await queue_items(session)
    failed = [item for item in items if item.status == QueueStatus.FAILED]
    assert len(failed) == 1
    assert failed[0].text == "broken text"
    assert "provider rejected" in failed[0].last_error
    assert failed[0].attempts == 1

    assert (await worker.process_batch(10)).processed == 0
    assert await store.requeue_failed_jobs(max_attempts=3) == 1
    retry = await worker.process_batch(10)
    assert retry.as_dict() == {"processed": 1, "succeeded": 0, "failed": 1}
    assert await store.requeue_failed_jobs(max_attempts=2) == 0


@pytest.mark.asyncio
async def test_wrong_dimension_and_missing_source_are_marked_failed(session, store, settings):
    provider = FakeEmbeddingProvider(vectors={"short vector": [1.0, 0.0]})
    await seed_responses(store, ["short vector", "normal"])
    await store.enqueue_embedding_jobs(
        [EmbeddingQueueItem(case_id="C01", response_id="R999", question="q1", text="orphan")]
    )
    worker = EmbeddingWorker(store, provider, settings=settings)

    result = await worker.process_batch(10)

    assert result.as_dict() == {"processed": 3, "succeeded": 1, "failed": 2}
    errors = {item.text: item.last_error for item in await queue_items(session) if item.status == QueueStatus.FAILED}
    assert errors == {
        "short vector": "unexpected embedding dimension: 2",
        "orphan": "source response not found",
    }
    assert "orphan" not in provider.calls


@pytest.mark.asyncio
async def test_claims_never_overlap(store):
    await seed_responses(store, [f"text {index}" for index in range(7)])

    first = await store.claim_pending_jobs(3)
    second = await store.claim_pending_jobs(10)
    third = await store.claim_pending_jobs(10)

    assert len(first) == 3
    assert len(second) == 4
    assert third == []
    assert not {item.id for item in first} & {item.id for item in second}
    assert {item.status for item in first + second} == {QueueStatus.PROCESSING}
    assert len({item.claim_token for item in first}) == 1


@pytest.mark.asyncio
async def test_stale_claims_can_be_requeued(store, settings, provider):
    await seed_responses(store, ["a", "b"])
    await store.claim_pending_jobs(2)

    assert await store.requeue_stale_jobs(utc_now() - timedelta(hours=1)) == 0
    assert await store.requeue_stale_jobs(utc_now() + timedelta(seconds=1)) == 2

    result = await EmbeddingWorker(store, provider, settings=settings).process_batch(10)
    assert result.succeeded == 2


@pytest.mark.asyncio
async def test_case_situation_is_embedded_onto_the_case(store, settings, provider):
    await store.upsert_case("C01", "題材 C01")

    case = await store.set_case_situation("C01", "  倉庫の出荷遅延が続いている  ")
    assert case.situation_text == "倉庫の出荷遅延が続いている"
    assert case.situation_vector is None

    result = await EmbeddingWorker(store, provider, settings=settings).process_batch(10)

    assert result.succeeded == 1
    cases = await store.list_case_embeddings()
    assert [item.case_id for item in cases] == ["C01"]
    assert cases[0].situation_dim == 3
    assert provider.calls == ["倉庫の出荷遅延が続いている"]

    with pytest.raises(ValueError):
        await store.set_case_situation("missing", "text")


@pytest.mark.asyncio
async def test_delete_case_cascades(store, settings, provider):
    await seed_responses(store, ["x", "y"])
    await seed_responses(store, ["z"], case_id="C02")
    await EmbeddingWorker(store, provider, settings=settings).process_batch(10)

    deleted = await store.delete_case("C01")

    assert deleted == 2
    assert await store.get_case("C01") is None
    assert await store.count_responses("C01") == 0
    assert await store.list_response_embeddings("C01", "q1") == []
    assert len(await store.list_response_embeddings("C02", "q1")) == 1
    assert await store.queue_counts() == {QueueStatus.DONE: 1}


def test_queue_source_defaults_to_response():
    item = EmbeddingQueueItem(case_id="C01", text="t")
    assert item.source == QueueSource.RESPONSE
    assert item.status == QueueStatus.PENDING


def test_new_records_carry_timezone_aware_timestamps():
    response = Response(case_id="C01", response_id="R1")
    item = EmbeddingQueueItem(case_id="C01", text="t")

    assert utc_now().utcoffset() == timedelta(0)
    assert response.created_at.utcoffset() == timedelta(0)
    assert item.updated_at.utcoffset() == timedelta(0)
    assert Response.__table__.c.created_at.type.timezone is True
    assert EmbeddingQueueItem.__table__.c.claimed_at.type.timezone is True


@pytest.mark.asyncio
async def test_late_finish_from_a_stale_claim_leaves_the_new_claim_alone(store):
    await seed_responses(store, ["only answer"])
    [first] = await store.claim_pending_jobs(1)
    first_id, first_token = first.id, first.claim_token

    assert await store.requeue_stale_jobs(utc_now() + timedelta(seconds=1)) == 1
    [second] = await store.claim_pending_jobs(1)
    assert second.id == first_id
    assert second.claim_token != first_token

    marked = await store.finish_batch(
        claim_token=first_token,
        outcomes=[JobOutcome(item_id=first_id, ok=False, error="timed out")],
    )
    assert marked == 0
    assert await store.queue_counts() == {QueueStatus.PROCESSING: 1}

    marked = await store.finish_batch(
        claim_token=second.claim_token,
        outcomes=[JobOutcome(item_id=second.id, ok=True)],
    )
    assert marked == 1
    assert await store.queue_counts() == {QueueStatus.DONE: 1}


@pytest.mark.asyncio
async def test_response_jobs_embed_the_current_answer_text(store, settings, provider):
    await seed_responses(store, ["first draft"])
    await store.upsert_responses(
        [Response(case_id="C01", response_id="R001", score_problem=3.0, answer_q1="edited answer")]
    )

    result = await EmbeddingWorker(store, provider, settings=settings).process_batch(10)

    assert result.succeeded == 1
    assert provider.calls == ["edited answer"]


@pytest.mark.asyncio
async def test_question_text_is_embedded_onto_the_question(session, store, settings, provider):
    await store.upsert_case("C01", "題材 C01")

    saved = await store.save_question("C01", "q1", "  在庫が増えた原因を述べてください  ")
    assert saved.question_text == "在庫が増えた原因を述べてください"
    assert saved.question_vector is None

    result = await EmbeddingWorker(store, provider, settings=settings).process_batch(10)

    assert result.succeeded == 1
    [record] = await store.list_question_embeddings()
    assert (record.case_id, record.question, record.question_dim) == ("C01", "q1", 3)
    assert record.embedding_model == "fake-embedding"
    items = await queue_items(session)
    assert [(item.source, item.question) for item in items] == [(QueueSource.QUESTION, "q1")]


@pytest.mark.asyncio
async def test_superseded_question_text_does_not_overwrite_the_vector(store, settings):
    provider = FakeEmbeddingProvider(vectors={"古い設問": [1.0, 0.0, 0.0], "新しい設問": [0.0, 1.0, 0.0]})
    await store.upsert_case("C01", None)
    await store.save_question("C01", "q2", "古い設問")
    await store.save_question("C01", "q2", "新しい設問")

    result = await EmbeddingWorker(store, provider, settings=settings).process_batch(10)

    assert result.succeeded == 2
    [record] = await store.list_question_embeddings("q2")
    assert record.question_text == "新しい設問"
    assert vector_from_bytes(record.question_vector).tolist() == [0.0, 1.0, 0.0]


@pytest.mark.asyncio
async def test_question_validation_and_removal(session, store):
    await store.upsert_case("C01", None)

    with pytest.raises(ValueError):
        await store.save_question("C01", "q9", "text")
    with pytest.raises(ValueError):
        await store.save_question("C01", "q1", "   ")
    with pytest.raises(LookupError):
        await store.save_question("missing", "q1", "text")

    await store.save_question("C01", "q1", "設問")
    assert await store.delete_question("C01", "q1") is True
    assert await store.delete_question("C01", "q1") is False
    assert await store.get_question("C01", "q1") is None
    assert await queue_items(session) == []

    await store.save_question("C01", "q2", "設問")
    await store.delete_case("C01")
    assert await store.get_question("C01", "q2") is None
