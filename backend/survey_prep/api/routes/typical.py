"""Typical-example lookup endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from survey_prep.api.deps import get_store
from survey_prep.schemas import TypicalExampleResource
from survey_prep.services.store import SurveyStore
from survey_prep.utils.scoring import to_score_bucket, validate_question

router = APIRouter(prefix="/typical-examples", tags=["typical-examples"])


@router.get("", response_model=list[TypicalExampleResource])
async def list_typical_examples(
    case_id: str = Query(..., min_length=1),
    question: str = Query(...),
    score: float = Query(..., ge=0.0, le=5.0),
    limit: int = Query(default=10, ge=1, le=50),
    store: SurveyStore = Depends(get_store),
) -> list[TypicalExampleResource]:
    try:
        validate_question(question)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    examples = await store.list_typical_examples(case_id, question, to_score_bucket(score), limit)
    return [TypicalExampleResource.model_validate(example, from_attributes=True) for example in examples]
