"""Application bootstrap for the Entity Memory Engine API.

This module wires the FastAPI application, attaches middleware, and exposes small lifecycle utilities.

Functions:
    lifespan(app: FastAPI): Initialise logging, database state and the service container; tear them down on exit.
    health_check(): Lightweight readiness probe used by monitoring and local smoke tests.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from memory_engine.api import api_router
from memory_engine.core.config import get_settings
from memory_engine.core.logging import configure_logging
from memory_engine.db.session import SessionLocal, init_db
from memory_engine.services.engine import MemoryEngine

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    await init_db()
    engine = getattr(app.state, "engine", None)
    if engine is None:
        engine = MemoryEngine.from_settings(SessionLocal, settings)
        app.state.engine = engine
    engine.start()
    try:
        yield
    finally:
        await engine.aclose()


app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.get("/health")
async def health_check():
    return {"status": "ok"}
