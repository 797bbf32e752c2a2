"""Convenience exports for ORM models.

Surface frequently used SQLModel classes so calling code can import them from a single module.
"""

from .case import Case
from .response import ANSWER_FIELDS, MAIN_SCORE_FIELDS, Response
from .embedding_queue import EmbeddingQueueItem, QueueSource, QueueStatus
from .question import Question
from .response_embedding import ResponseEmbedding
from .typical_example import TypicalExample

__all__ = [
    "ANSWER_FIELDS",
    "MAIN_SCORE_FIELDS",
    "Case",
    "Response",
    "EmbeddingQueueItem",
    "QueueSource",
    "QueueStatus",
    "Question",
    "ResponseEmbedding",
    "TypicalExample",
]
