"""Convenience exports for API schemas.

Re-exports the pydantic models used across the backend so consumers can import from one module.
"""

from .embeddings import EmbeddingGenerationResponse, EmbeddingKind, SimilarEntityResponse
from .envelope import OperationResult
from .generations import (
    ConsistencyCheckRequest,
    ConsistencyReport,
    DriftedAttributeResponse,
    EntityConsistencyResponse,
    GenerationJobResource,
    QueuePassResponse,
    QueueStatusResponse,
    ResetGenerationRequest,
)

__all__ = [
    "OperationResult",
    "EmbeddingGenerationResponse",
    "EmbeddingKind",
    "SimilarEntityResponse",
    "GenerationJobResource",
    "QueuePassResponse",
    "QueueStatusResponse",
    "ResetGenerationRequest",
    "ConsistencyCheckRequest",
    "ConsistencyReport",
    "DriftedAttributeResponse",
    "EntityConsistencyResponse",
]
