"""Service layer exports.

Expose the MemoryEngine container and the services it wires together for easy importing.
"""

from .consistency import ConsistencyService
from .embedding_service import EmbeddingService
from .engine import MemoryEngine
from .entity_embeddings import EntityEmbeddingService
from .queue_processor import QueueProcessor
from .vector_index import VectorIndexClient

__all__ = [
    "ConsistencyService",
    "EmbeddingService",
    "EntityEmbeddingService",
    "MemoryEngine",
    "QueueProcessor",
    "VectorIndexClient",
]
