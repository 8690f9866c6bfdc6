"""Generation queue and consistency endpoints.

Endpoints:
    process_queue(): Run one queue pass; a concurrent call reports ``already_running``.
    queue_status(world_id): Job counts per status and whether a pass is in flight.
    get_generation(generation_id): Read a generation job.
    reset_generation(generation_id, payload): Re-queue a job when explicitly authorized.
    check_consistency(generation_id, payload): Score an artifact and store the score on its job.
"""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from memory_engine.api.deps import get_engine, unwrap
from memory_engine.schemas.envelope import OperationResult
from memory_engine.schemas.generations import (
    ConsistencyCheckRequest,
    ConsistencyReport,
    GenerationJobResource,
    QueuePassResponse,
    QueueStatusResponse,
    ResetGenerationRequest,
)
from memory_engine.services.engine import MemoryEngine

router = APIRouter(prefix="/generations", tags=["generations"])


@router.post("/process-queue", response_model=OperationResult[QueuePassResponse])
async def process_queue(engine: MemoryEngine = Depends(get_engine)):
    return unwrap(await engine.process_queue())


@router.get("/queue/status", response_model=OperationResult[QueueStatusResponse])
async def queue_status(
    world_id: Optional[UUID] = Query(default=None),
    engine: MemoryEngine = Depends(get_engine),
):
    return unwrap(await engine.queue_status(world_id))


@router.get("/{generation_id}", response_model=OperationResult[GenerationJobResource])
async def get_generation(generation_id: UUID, engine: MemoryEngine = Depends(get_engine)):
    return unwrap(await engine.get_generation(generation_id))


@router.post("/{generation_id}/reset", response_model=OperationResult[GenerationJobResource])
async def reset_generation(
    generation_id: UUID,
    payload: ResetGenerationRequest,
    engine: MemoryEngine = Depends(get_engine),
):
    return unwrap(await engine.reset_generation(generation_id, authorized=payload.authorized))


@router.post("/{generation_id}/consistency", response_model=OperationResult[ConsistencyReport])
async def check_consistency(
    generation_id: UUID,
    payload: ConsistencyCheckRequest,
    engine: MemoryEngine = Depends(get_engine),
):
    return unwrap(await engine.analyze_consistency(generation_id, payload.artifact_url, payload.artifact_kind))
