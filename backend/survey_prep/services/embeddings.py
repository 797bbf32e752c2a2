"""Embedding provider contract and the OpenAI-backed implementation.

Classes:
    EmbeddingProvider: Protocol every provider satisfies (``embed`` plus model id and dimension).
    EmbeddingBatch: Collected embedding vectors plus metadata returned from the embeddings API.
    OpenAIEmbeddingProvider: Async OpenAI embeddings with retry semantics.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional, Protocol, runtime_checkable

from openai import AsyncOpenAI
from tenacity import RetryError, retry, stop_after_attempt, wait_exponential

from survey_prep.core.config import Settings, get_settings
from survey_prep.core.errors import EmbeddingProviderError

_EMBED_BATCH_MAX = 256


@runtime_checkable
class EmbeddingProvider(Protocol):
    @property
    def model(self) -> str: ...

    @property
    def dim(self) -> int: ...

    async def embed(self, text: str) -> list[float]: ...


@dataclass(slots=True)
class EmbeddingBatch:
    vectors: list[list[float]]
    model: str
    dim: int
    model_revision: str | None = None
    provider: str = "openai"


class OpenAIEmbeddingProvider:
    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        *,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or get_settings()
        api_key = settings.openai_api_key.get_secret_value() if settings.openai_api_key else None
        if client is not None:
            self._client = client
        elif api_key:
            self._client = AsyncOpenAI(api_key=api_key)
        else:
            self._client = None
        self._settings = settings

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    @property
    def model(self) -> str:
        return self._settings.openai_embedding_model

    @property
    def dim(self) -> int:
        return self._settings.embedding_dim

    async def embed(self, text: str) -> list[float]:
        batch = await self.embed_texts([text])
        if not batch.vectors:
            raise EmbeddingProviderError("Embedding API returned no vector")
        return batch.vectors[0]

    async def embed_texts(
        self,
        texts: Iterable[str],
        *,
        model: Optional[str] = None,
    ) -> EmbeddingBatch:
        docs = list(texts)
        if self._client is None:
            raise EmbeddingProviderError("OpenAI client not configured. Set OPENAI_API_KEY.")

        chosen_model = model or self.model
        if not docs:
            return EmbeddingBatch(vectors=[], model=chosen_model, dim=0)

        vectors: list[list[float]] = []
        dim = 0
        model_revision: str | None = None

        for start in range(0, len(docs), _EMBED_BATCH_MAX):
            chunk = docs[start : start + _EMBED_BATCH_MAX]
            payload: dict[str, Any] = dict(model=chosen_model, input=chunk, dimensions=self.dim)
            try:
                response = await _retry_embeddings(self._client, payload)
            except RetryError as exc:  # pragma: no cover - surfaces original error message
                raise EmbeddingProviderError(str(exc.last_attempt.exception())) from exc

            chunk_vectors = [list(item.embedding) for item in response.data]
            vectors.extend(chunk_vectors)
            if not dim and chunk_vectors:
                dim = len(chunk_vectors[0])
            response_model = getattr(response, "model", None)
            if response_model:
                model_revision = response_model

        return EmbeddingBatch(
            vectors=vectors,
            model=chosen_model,
            dim=dim,
            model_revision=model_revision,
            provider="openai",
        )


@retry(wait=wait_exponential(multiplier=1, min=1, max=20), stop=stop_after_attempt(5))
async def _retry_embeddings(client: AsyncOpenAI, payload: dict[str, Any]):
    return await client.embeddings.create(**payload)
