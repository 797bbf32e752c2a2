"""Score bucketing and question text helpers."""

from __future__ import annotations

import math
from typing import Optional

from survey_prep.models import Response

QUESTIONS: tuple[str, ...] = ("q1", "q2")

# q2 spans the follow-up answers 2..8, scored together by the solution score
_QUESTION_ANSWERS: dict[str, tuple[str, ...]] = {
    "q1": ("answer_q1",),
    "q2": tuple(f"answer_q{index}" for index in range(2, 9)),
}
_QUESTION_SCORES: dict[str, str] = {
    "q1": "score_problem",
    "q2": "score_solution",
}


def to_score_bucket(score: float | None) -> float:
    """Clamp to [0, 5] and round half-up to the nearest 0.5."""

    if score is None or not math.isfinite(score):
        return 0.0
    clamped = min(5.0, max(0.0, float(score)))
    return math.floor(clamped * 2 + 0.5) / 2


def validate_question(question: str) -> str:
    if question not in _QUESTION_ANSWERS:
        raise ValueError(f"question must be one of {', '.join(QUESTIONS)}")
    return question


def question_text(response: Response, question: str) -> Optional[str]:
    parts = [getattr(response, name) for name in _QUESTION_ANSWERS[validate_question(question)]]
    joined = "\n".join(part for part in parts if part)
    return joined if joined.strip() else None


def question_score(response: Response, question: str) -> Optional[float]:
    return getattr(response, _QUESTION_SCORES[validate_question(question)])
