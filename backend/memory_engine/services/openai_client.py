"""Async OpenAI embeddings client wrapper.

Classes:
    EmbeddingBatch: Collected embedding vectors plus metadata returned from the embeddings API.
    OpenAIEmbeddingClient: Thin provider handle for text embeddings; retries live in the caller's policy.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional

from openai import AsyncOpenAI

from memory_engine.core.config import Settings, get_settings

_EMBED_BATCH_MAX = 256


@dataclass(slots=True)
class EmbeddingBatch:
    vectors: list[list[float]]
    model: str
    dim: int
    model_revision: str | None = None
    provider: str = "openai"


class OpenAIEmbeddingClient:
    def __init__(self, client: Optional[AsyncOpenAI] = None, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        api_key = settings.openai_api_key.get_secret_value() if settings.openai_api_key else None
        if client is not None:
            self._client = client
        elif api_key:
            self._client = AsyncOpenAI(api_key=api_key, max_retries=0)
        else:
            self._client = None
        self._settings = settings

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    @property
    def model(self) -> str:
        return self._settings.openai_embedding_model

    async def embed_texts(
        self,
        texts: Iterable[str],
        *,
        model: Optional[str] = None,
    ) -> EmbeddingBatch:
        docs = list(texts)
        if self._client is None:
            raise RuntimeError("OpenAI client not configured. Set OPENAI_API_KEY.")

        chosen_model = model or self._settings.openai_embedding_model
        if not docs:
            return EmbeddingBatch(vectors=[], model=chosen_model, dim=0)

        vectors: list[list[float]] = []
        dim = 0
        model_revision: str | None = None

        for start in range(0, len(docs), _EMBED_BATCH_MAX):
            chunk = docs[start : start + _EMBED_BATCH_MAX]
            payload: dict[str, Any] = dict(model=chosen_model, input=chunk)
            response = await self._client.embeddings.create(**payload)
            if not response.data:
                raise RuntimeError("No embedding returned from OpenAI API")

            ordered = sorted(response.data, key=lambda item: item.index)
            chunk_vectors = [list(item.embedding) for item in ordered]
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

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
