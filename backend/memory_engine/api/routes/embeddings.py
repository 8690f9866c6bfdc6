"""Entity reference vector endpoints.

Endpoints:
    generate_embeddings(entity_id): Build and store the entity's reference vectors.
    regenerate_embeddings(entity_id): Delete then rebuild the entity's reference vectors.
    delete_embeddings(entity_id): Remove every reference vector of the entity.
    search_entities(world_id, q, top_k, kind, branch_id): Rank a world's entities against a query.
"""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from memory_engine.api.deps import get_engine, unwrap
from memory_engine.schemas.embeddings import EmbeddingGenerationResponse, EmbeddingKind, SimilarEntityResponse
from memory_engine.schemas.envelope import OperationResult
from memory_engine.services.engine import MemoryEngine

router = APIRouter(tags=["embeddings"])


@router.post("/entities/{entity_id}/embeddings", response_model=OperationResult[EmbeddingGenerationResponse])
async def generate_embeddings(entity_id: UUID, engine: MemoryEngine = Depends(get_engine)):
    return unwrap(await engine.generate_embeddings(entity_id))


@router.post(
    "/entities/{entity_id}/embeddings/regenerate",
    response_model=OperationResult[EmbeddingGenerationResponse],
)
async def regenerate_embeddings(entity_id: UUID, engine: MemoryEngine = Depends(get_engine)):
    return unwrap(await engine.regenerate_embeddings(entity_id))


@router.delete("/entities/{entity_id}/embeddings", response_model=OperationResult[None])
async def delete_embeddings(entity_id: UUID, engine: MemoryEngine = Depends(get_engine)):
    return unwrap(await engine.delete_entity_embeddings(entity_id))


@router.get("/worlds/{world_id}/entities/search", response_model=OperationResult[list[SimilarEntityResponse]])
async def search_entities(
    world_id: UUID,
    q: str = Query(min_length=1, max_length=2000),
    top_k: int = Query(default=10, ge=1, le=100),
    kind: EmbeddingKind = Query(default=EmbeddingKind.COMBINED),
    branch_id: Optional[UUID] = Query(default=None),
    engine: MemoryEngine = Depends(get_engine),
):
    return unwrap(
        await engine.search_similar_entities(world_id, q, top_k=top_k, kind=kind.value, branch_id=branch_id)
    )
