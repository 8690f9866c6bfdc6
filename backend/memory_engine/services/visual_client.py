"""HTTP client for the remote image-embedding (CLIP-style) provider.

The endpoint receives ``{"model": ..., "inputs": [image urls]}`` and answers
with either ``{"embeddings": [[...], ...]}`` or an OpenAI-shaped
``{"data": [{"index": i, "embedding": [...]}]}`` body.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence

import httpx

from memory_engine.core.config import Settings, get_settings
from memory_engine.services.openai_client import EmbeddingBatch


class VisualEmbeddingClient:
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._url = self._settings.visual_embedding_url
        if client is not None:
            self._client = client
        elif self._url:
            headers = {"Content-Type": "application/json"}
            token = self._settings.visual_embedding_api_token
            if token is not None:
                headers["Authorization"] = f"Bearer {token.get_secret_value()}"
            self._client = httpx.AsyncClient(headers=headers, timeout=None)
        else:
            self._client = None

    @property
    def is_configured(self) -> bool:
        return self._client is not None and bool(self._url)

    @property
    def model(self) -> str:
        return self._settings.visual_embedding_model

    async def embed_images(self, urls: Sequence[str]) -> EmbeddingBatch:
        if not self.is_configured:
            raise RuntimeError("Visual embedding provider not configured. Set VISUAL_EMBEDDING_URL.")
        inputs = list(urls)
        if not inputs:
            return EmbeddingBatch(vectors=[], model=self.model, dim=0, provider="visual")

        response = await self._client.post(self._url, json={"model": self.model, "inputs": inputs})
        response.raise_for_status()
        vectors = _parse_vectors(response.json())
        if len(vectors) != len(inputs):
            raise RuntimeError(
                f"Visual provider returned {len(vectors)} embeddings for {len(inputs)} images"
            )
        return EmbeddingBatch(
            vectors=vectors,
            model=self.model,
            dim=len(vectors[0]) if vectors else 0,
            provider="visual",
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def _parse_vectors(body: Any) -> list[list[float]]:
    if isinstance(body, dict) and isinstance(body.get("embeddings"), list):
        return [[float(value) for value in vector] for vector in body["embeddings"]]
    if isinstance(body, dict) and isinstance(body.get("data"), list):
        items = sorted(body["data"], key=lambda item: item.get("index", 0))
        return [[float(value) for value in item["embedding"]] for item in items]
    raise RuntimeError("Unexpected response shape from visual embedding provider")
