"""Reference vector lifecycle for entities.

Classes:
    EmbeddingGenerationResult: Ids of the reference vectors written for an entity.
    SimilarEntity: One ranked hit of a similarity search.
    EntityEmbeddingService: Build, search, delete and regenerate entity reference vectors.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select

from memory_engine.core.config import Settings, get_settings
from memory_engine.core.errors import NotFoundError, ValidationError
from memory_engine.models import Entity, EntityImage
from memory_engine.services.embedding_service import EmbeddingService
from memory_engine.services.vector_index import (
    RecordKind,
    VectorIndexClient,
    VectorMetadata,
    VectorRecord,
    reference_vector_id,
)
from memory_engine.utils.text import is_blank

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class EmbeddingGenerationResult:
    entity_id: str
    embedding_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SimilarEntity:
    entity_id: str
    score: float
    kind: str
    world_id: Optional[str] = None
    branch_id: Optional[str] = None
    source_image_url: Optional[str] = None
    source_text: Optional[str] = None


class EntityEmbeddingService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        embedding_service: EmbeddingService,
        index_client: VectorIndexClient,
        *,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._session_factory = session_factory
        self._embeddings = embedding_service
        self._index = index_client

    async def generate_embeddings(self, entity_id: UUID) -> EmbeddingGenerationResult:
        """Write the combined, per-image visual and semantic reference vectors.

        The combined vector is required; once it is stored, failures of the
        auxiliary visual or semantic vectors are logged and skipped.
        """

        entity, images = await self._load_entity(entity_id)
        urls = [image.url for image in images]
        description = entity.description if not is_blank(entity.description) else None
        if not urls and description is None:
            raise ValidationError(
                f"Entity {entity_id} has no images or description",
                hint="No reference images or description found.",
            )

        extra = {"entity_id": str(entity.id), "world_id": str(entity.world_id)}
        key = str(entity.id)
        result = EmbeddingGenerationResult(entity_id=key)

        combined = await self._embeddings.generate_combined_embedding(
            urls or None,
            description,
            self._settings.visual_weight,
            self._settings.semantic_weight,
        )
        combined_id = reference_vector_id(key, "combined")
        await self._index.upsert(
            [
                VectorRecord(
                    id=combined_id,
                    values=combined,
                    metadata=self._metadata(
                        entity,
                        "combined",
                        source_image_url=urls[0] if urls else None,
                        source_text=description,
                    ),
                )
            ]
        )
        result.embedding_ids.append(combined_id)

        if images:
            try:
                visual_vectors = await self._embeddings.generate_visual_embeddings_batch(urls)
                records = [
                    VectorRecord(
                        id=reference_vector_id(key, "visual", str(image.id)),
                        values=vector,
                        metadata=self._metadata(entity, "visual", source_image_url=image.url),
                    )
                    for image, vector in zip(images, visual_vectors)
                ]
                await self._index.upsert(records)
                result.embedding_ids.extend(record.id for record in records)
            except Exception as exc:
                _LOGGER.warning("Per-image visual embeddings skipped: %r", exc, extra=extra)

        if description is not None:
            try:
                semantic = await self._embeddings.generate_text_embedding(description)
                semantic_id = reference_vector_id(key, "semantic")
                await self._index.upsert(
                    [
                        VectorRecord(
                            id=semantic_id,
                            values=semantic,
                            metadata=self._metadata(entity, "semantic", source_text=description),
                        )
                    ]
                )
                result.embedding_ids.append(semantic_id)
            except Exception as exc:
                _LOGGER.warning("Semantic embedding skipped: %r", exc, extra=extra)

        _LOGGER.info("Stored %d reference vectors", len(result.embedding_ids), extra=extra)
        return result

    async def search_similar_entities(
        self,
        world_id: UUID | str,
        query: str,
        top_k: int = 10,
        kind: RecordKind = "combined",
        branch_id: UUID | str | None = None,
    ) -> list[SimilarEntity]:
        """Rank reference vectors of one world against a query.

        ``semantic`` and ``combined`` searches embed ``query`` as text; a
        ``visual`` search treats ``query`` as an image URL.
        """

        if is_blank(query):
            raise ValidationError("Search query cannot be empty", hint="Search query cannot be empty.")
        if kind not in ("visual", "semantic", "combined"):
            raise ValidationError(f"Unsupported embedding kind: {kind}", hint="Unsupported embedding type.")

        if kind == "visual":
            vector = await self._embeddings.generate_visual_embedding(query.strip())
        else:
            vector = await self._embeddings.generate_text_embedding(query)
            if kind == "combined":
                vector = self._embeddings.layout_semantic_query(vector)

        metadata_filter: dict[str, object] = {"world_id": str(world_id), "kind": kind}
        if branch_id is not None:
            metadata_filter["branch_id"] = str(branch_id)

        matches = await self._index.query(vector, top_k=top_k, filter=metadata_filter, include_metadata=True)
        results: list[SimilarEntity] = []
        for match in matches:
            metadata = match.metadata
            if metadata is None:
                continue
            results.append(
                SimilarEntity(
                    entity_id=metadata.entity_id,
                    score=match.score,
                    kind=metadata.kind,
                    world_id=metadata.world_id,
                    branch_id=metadata.branch_id,
                    source_image_url=metadata.source_image_url,
                    source_text=metadata.source_text,
                )
            )
        return results

    async def delete_entity_embeddings(self, entity_id: UUID | str) -> None:
        await self._index.delete_entity_vectors(str(entity_id))
        _LOGGER.info("Deleted reference vectors", extra={"entity_id": str(entity_id)})

    async def regenerate_embeddings(self, entity_id: UUID) -> EmbeddingGenerationResult:
        await self._load_entity(entity_id)
        await self.delete_entity_embeddings(entity_id)
        return await self.generate_embeddings(entity_id)

    async def _load_entity(self, entity_id: UUID) -> tuple[Entity, list[EntityImage]]:
        async with self._session_factory() as session:
            entity = await session.get(Entity, entity_id)
            if entity is None:
                raise NotFoundError(f"Entity {entity_id} not found", hint="Entity not found.")
            stmt = (
                select(EntityImage)
                .where(EntityImage.entity_id == entity_id)
                .order_by(EntityImage.is_primary.desc(), EntityImage.uploaded_at, EntityImage.id)
            )
            images = list((await session.exec(stmt)).all())
        return entity, images

    @staticmethod
    def _metadata(
        entity: Entity,
        kind: RecordKind,
        *,
        source_image_url: str | None = None,
        source_text: str | None = None,
    ) -> VectorMetadata:
        return VectorMetadata(
            entity_id=str(entity.id),
            world_id=str(entity.world_id),
            kind=kind,
            branch_id=str(entity.branch_id) if entity.branch_id else None,
            source_image_url=source_image_url,
            source_text=source_text,
        )
