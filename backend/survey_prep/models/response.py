"""Survey response ORM model.

Classes:
    Response: One respondent's submission for a case, keyed by ``(case_id, response_id)``.

Attributes:
    MAIN_SCORE_FIELDS: The six main scores that form the score-space vector.
    ANSWER_FIELDS: Free-text answer columns in question order.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from sqlalchemy import Column, DateTime, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

from survey_prep.utils.clock import utc_now

MAIN_SCORE_FIELDS: tuple[str, ...] = (
    "score_problem",
    "score_solution",
    "score_role",
    "score_leadership",
    "score_collaboration",
    "score_development",
)

ANSWER_FIELDS: tuple[str, ...] = tuple(f"answer_q{index}" for index in range(1, 10))


class Response(SQLModel, table=True):
    __tablename__ = "responses"
    __table_args__ = (
        UniqueConstraint("case_id", "response_id", name="uq_responses_case_response"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    case_id: str = Field(index=True)
    response_id: str
    submitted_at: Optional[date] = None
    score_overall: Optional[float] = None
    score_problem: Optional[float] = None
    score_solution: Optional[float] = None
    score_role: Optional[float] = None
    score_leadership: Optional[float] = None
    score_collaboration: Optional[float] = None
    score_development: Optional[float] = None
    comment_overall: Optional[str] = Field(default=None, sa_column=Column(Text))
    comment_problem: Optional[str] = Field(default=None, sa_column=Column(Text))
    comment_solution: Optional[str] = Field(default=None, sa_column=Column(Text))
    answer_q1: Optional[str] = Field(default=None, sa_column=Column(Text))
    answer_q2: Optional[str] = Field(default=None, sa_column=Column(Text))
    answer_q3: Optional[str] = Field(default=None, sa_column=Column(Text))
    answer_q4: Optional[str] = Field(default=None, sa_column=Column(Text))
    answer_q5: Optional[str] = Field(default=None, sa_column=Column(Text))
    answer_q6: Optional[str] = Field(default=None, sa_column=Column(Text))
    answer_q7: Optional[str] = Field(default=None, sa_column=Column(Text))
    answer_q8: Optional[str] = Field(default=None, sa_column=Column(Text))
    answer_q9: Optional[str] = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))

    def main_scores(self) -> Optional[list[float]]:
        values = [getattr(self, name) for name in MAIN_SCORE_FIELDS]
        if any(value is None for value in values):
            return None
        return [float(value) for value in values]
