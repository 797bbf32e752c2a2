"""Service layer exports.

Expose the store adapter, pipeline, worker, builder, and retriever for easy importing.
"""

from .embedding_worker import EmbeddingWorker
from .embeddings import EmbeddingProvider, OpenAIEmbeddingProvider
from .ingestion import IngestionPipeline, ProgressEvent
from .prepare import PrepareService
from .retrieval import SimilarityRetriever
from .store import SurveyStore
from .typical_examples import TypicalExampleBuilder

__all__ = [
    "EmbeddingProvider",
    "EmbeddingWorker",
    "IngestionPipeline",
    "OpenAIEmbeddingProvider",
    "PrepareService",
    "ProgressEvent",
    "SimilarityRetriever",
    "SurveyStore",
    "TypicalExampleBuilder",
]
