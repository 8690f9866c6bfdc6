"""Embedding generation for entity references and generated artifacts.

Classes:
    EmbeddingService: Turns text and image URLs into fixed-dimension vectors through remote providers,
        consulting the embedding cache first and retrying transient provider failures.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

from memory_engine.core.config import Settings, get_settings
from memory_engine.core.errors import MemoryEngineError, ProviderUnavailable, ValidationError
from memory_engine.services.embedding_cache import EmbeddingCache
from memory_engine.services.openai_client import OpenAIEmbeddingClient
from memory_engine.services.retry import RetryPolicy
from memory_engine.services.visual_client import VisualEmbeddingClient
from memory_engine.utils import vectors as vector_ops
from memory_engine.utils.text import content_fingerprint, is_blank

_LOGGER = logging.getLogger(__name__)


class EmbeddingService:
    def __init__(
        self,
        *,
        text_client: OpenAIEmbeddingClient | None = None,
        visual_client: VisualEmbeddingClient | None = None,
        cache: EmbeddingCache | None = None,
        retry_policy: RetryPolicy | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._text = text_client or OpenAIEmbeddingClient(settings=self._settings)
        self._visual = visual_client or VisualEmbeddingClient(settings=self._settings)
        self._cache = cache or EmbeddingCache(
            max_size=self._settings.cache_max_size,
            default_ttl=self._settings.cache_ttl_seconds,
        )
        self._retry = retry_policy or RetryPolicy.from_settings(self._settings)

    @property
    def cache(self) -> EmbeddingCache:
        return self._cache

    @property
    def visual_dim(self) -> int:
        return self._settings.visual_embedding_dim

    @property
    def semantic_dim(self) -> int:
        return self._settings.text_embedding_dim

    async def generate_text_embedding(self, text: str) -> list[float]:
        if is_blank(text):
            raise ValidationError("Text cannot be empty", hint="Text cannot be empty.")
        (vector,) = await self.generate_text_embeddings_batch([text])
        return vector

    async def generate_text_embeddings_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if any(is_blank(text) for text in texts):
            raise ValidationError("Texts cannot be empty", hint="Text cannot be empty.")
        if not self._text.is_configured:
            raise ProviderUnavailable(
                "Text embedding provider is not configured",
                hint="Text embeddings are not configured.",
            )
        model = self._text.model

        async def _embed(missing: list[str]) -> list[list[float]]:
            batch = await self._retry.call(
                lambda: self._text.embed_texts(missing, model=model),
                context="Text embedding generation",
                timeout=self._settings.provider_timeout_seconds,
            )
            return batch.vectors

        return await self._embed_with_cache(list(texts), kind="text", model=model, embed=_embed)

    async def generate_visual_embedding(self, url: str) -> list[float]:
        (vector,) = await self.generate_visual_embeddings_batch([url])
        return vector

    async def generate_visual_embeddings_batch(self, urls: Sequence[str]) -> list[list[float]]:
        if not urls:
            return []
        if any(is_blank(url) for url in urls):
            raise ValidationError("Image URLs cannot be empty", hint="No reference images found.")
        if not self._visual.is_configured:
            raise ProviderUnavailable(
                "Visual embedding provider is not configured",
                hint="Image embeddings are not configured.",
            )
        model = self._visual.model

        async def _embed(missing: list[str]) -> list[list[float]]:
            batch = await self._retry.call(
                lambda: self._visual.embed_images(missing),
                context="Visual embedding generation",
                timeout=self._settings.provider_timeout_seconds,
            )
            return batch.vectors

        return await self._embed_with_cache(list(urls), kind="image", model=model, embed=_embed)

    async def generate_combined_embedding(
        self,
        urls: Optional[Sequence[str]],
        text: Optional[str],
        visual_weight: float | None = None,
        semantic_weight: float | None = None,
    ) -> list[float]:
        """Weighted visual/semantic vector laid out as ``[visual slot | semantic slot]``.

        A channel whose input is absent is omitted and the other channel gets the
        full weight. If one channel's provider fails while the other succeeds,
        the surviving channel is kept; both failing raises the first error.
        """

        visual_weight = self._settings.visual_weight if visual_weight is None else visual_weight
        semantic_weight = self._settings.semantic_weight if semantic_weight is None else semantic_weight
        has_visual = bool(urls)
        has_semantic = not is_blank(text)
        if not has_visual and not has_semantic:
            raise ValidationError(
                "Combined embedding needs image URLs or text",
                hint="No reference images or description found.",
            )

        async def _visual() -> list[float] | None:
            if not has_visual:
                return None
            return vector_ops.mean_vector(await self.generate_visual_embeddings_batch(list(urls or [])))

        async def _semantic() -> list[float] | None:
            if not has_semantic:
                return None
            return await self.generate_text_embedding(text or "")

        visual_result, semantic_result = await asyncio.gather(_visual(), _semantic(), return_exceptions=True)
        for result in (visual_result, semantic_result):
            if isinstance(result, ValidationError):
                raise result
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result

        failures = [result for result in (visual_result, semantic_result) if isinstance(result, Exception)]
        visual = None if isinstance(visual_result, Exception) else visual_result
        semantic = None if isinstance(semantic_result, Exception) else semantic_result
        if visual is None and semantic is None:
            raise failures[0]
        for failure in failures:
            _LOGGER.warning("Combined embedding dropped a failed channel: %r", failure)

        return vector_ops.combine_channels(
            visual,
            semantic,
            visual_dim=self.visual_dim,
            semantic_dim=self.semantic_dim,
            visual_weight=visual_weight,
            semantic_weight=semantic_weight,
        )

    def calculate_cosine_similarity(self, vector_a: Sequence[float], vector_b: Sequence[float]) -> float:
        return vector_ops.cosine_similarity(vector_a, vector_b)

    def normalize_vector(self, vector: Sequence[float]) -> list[float]:
        return vector_ops.normalize_vector(vector)

    def layout_semantic_query(self, semantic: Sequence[float]) -> list[float]:
        """Place a semantic vector in the semantic slot of the combined layout."""

        return vector_ops.combine_channels(
            None,
            semantic,
            visual_dim=self.visual_dim,
            semantic_dim=self.semantic_dim,
            visual_weight=0.0,
            semantic_weight=1.0,
        )

    async def _embed_with_cache(self, inputs: list[str], *, kind: str, model: str, embed) -> list[list[float]]:
        keys = [content_fingerprint(kind, model, item) for item in inputs]
        results: list[list[float] | None] = [self._cache.get(key) for key in keys]

        missing_positions: dict[str, list[int]] = {}
        for position, (key, cached) in enumerate(zip(keys, results)):
            if cached is None:
                missing_positions.setdefault(key, []).append(position)

        if missing_positions:
            first_positions = [positions[0] for positions in missing_positions.values()]
            fetched = await embed([inputs[position] for position in first_positions])
            if len(fetched) != len(first_positions):
                raise MemoryEngineError(
                    f"Provider returned {len(fetched)} vectors for {len(first_positions)} inputs"
                )
            for (key, positions), vector in zip(missing_positions.items(), fetched):
                self._cache.set(key, vector)
                for position in positions:
                    results[position] = vector

        return [list(vector) for vector in results if vector is not None]
