"""Schemas for entity reference vector endpoints.

Classes:
    EmbeddingGenerationResponse: Ids of the reference vectors written for an entity.
    EmbeddingKind: Reference vector kinds that can be searched.
    SimilarEntityResponse: Ranked search hit with its index metadata.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class EmbeddingGenerationResponse(BaseModel):
    entity_id: str
    embedding_ids: list[str] = Field(default_factory=list)


class EmbeddingKind(str, Enum):
    VISUAL = "visual"
    SEMANTIC = "semantic"
    COMBINED = "combined"


class SimilarEntityResponse(BaseModel):
    entity_id: str
    score: float
    kind: EmbeddingKind
    world_id: Optional[str] = None
    branch_id: Optional[str] = None
    source_image_url: Optional[str] = None
    source_text: Optional[str] = None
