"""API router composition for the backend.

The module assembles individual route groups into a single `api_router` that can be mounted on the app.
"""

from fastapi import APIRouter

from memory_engine.api.routes.embeddings import router as embeddings_router
from memory_engine.api.routes.generations import router as generations_router

api_router = APIRouter()
api_router.include_router(embeddings_router)
api_router.include_router(generations_router)

__all__ = ["api_router"]
