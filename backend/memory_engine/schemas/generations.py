"""Schemas for generation jobs, queue processing and consistency analysis.

Classes:
    GenerationJobResource: Public view of a generation job row.
    QueuePassResponse, QueueStatusResponse: Queue processing outcome and state.
    ResetGenerationRequest: Explicit authorization for the re-queue repair path.
    ConsistencyCheckRequest: Artifact to analyse for a generation.
    DriftedAttributeResponse, EntityConsistencyResponse, ConsistencyReport: Consistency analysis payloads.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class GenerationJobResource(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    world_id: UUID
    branch_id: Optional[UUID] = None
    entity_ids: list[str] = Field(default_factory=list)
    prompt: str
    tool: str
    status: Literal["queued", "processing", "completed", "failed"]
    result_artifact_ref: Optional[str] = None
    consistency_score: Optional[int] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    claimed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class QueuePassResponse(BaseModel):
    processed: int
    completed: int
    failed: int
    already_running: bool = False


class QueueStatusResponse(BaseModel):
    is_running: bool
    pending_follow_ups: int = 0
    counts: dict[str, int] = Field(default_factory=dict)


class ResetGenerationRequest(BaseModel):
    authorized: bool = False


class ConsistencyCheckRequest(BaseModel):
    artifact_url: str = Field(min_length=1, max_length=4000)
    artifact_kind: Literal["image", "video"] = "image"


class DriftedAttributeResponse(BaseModel):
    attribute: str
    similarity: Optional[float] = None
    entity_ids: list[str] = Field(default_factory=list)
    severity: Literal["low", "medium", "high"] = "medium"
    expected_value: Optional[str] = None


class EntityConsistencyResponse(BaseModel):
    entity_id: str
    name: Optional[str] = None
    has_reference: bool = True
    visual_similarity: Optional[float] = None
    semantic_similarity: Optional[float] = None
    score: Optional[int] = None


class ConsistencyReport(BaseModel):
    score: Optional[int] = Field(default=None, ge=0, le=100)
    has_data: bool
    drifted_attributes: list[DriftedAttributeResponse] = Field(default_factory=list)
    visual_similarity: Optional[float] = None
    semantic_similarity: Optional[float] = None
    severity: Literal["success", "warning", "error", "no_data"]
    recommendations: list[str] = Field(default_factory=list)
    entity_scores: list[EntityConsistencyResponse] = Field(default_factory=list)
    message: str = ""
