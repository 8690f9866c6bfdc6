"""Route exports for the API layer.

Re-exports the embedding and generation routers so callers can include all endpoints with a single import.
"""

from .embeddings import router as embeddings_router
from .generations import router as generations_router

__all__ = ["embeddings_router", "generations_router"]
