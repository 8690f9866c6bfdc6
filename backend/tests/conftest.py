import hashlib
import os
from collections.abc import AsyncGenerator
from typing import Any, Mapping, Sequence

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import numpy as np
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from memory_engine.core.config import Settings
from memory_engine.main import app
from memory_engine.models import GenerationJob
from memory_engine.services.engine import MemoryEngine
from memory_engine.services.openai_client import EmbeddingBatch
from memory_engine.services.retry import RetryPolicy
from memory_engine.services.vector_index import VectorMatch, VectorRecord

DIM = 2


def hashed_vector(content: str, dim: int = DIM) -> list[float]:
    digest = hashlib.sha256(content.encode("utf-8")).digest()
    return [digest[index] / 255.0 + 0.01 for index in range(dim)]


class FakeTextClient:
    def __init__(self, vectors: Mapping[str, list[float]] | None = None) -> None:
        self.vectors = dict(vectors or {})
        self.calls: list[list[str]] = []
        self.errors: list[BaseException] = []

    @property
    def is_configured(self) -> bool:
        return True

    @property
    def model(self) -> str:
        return "fake-text"

    async def embed_texts(self, texts, **_: object) -> EmbeddingBatch:
        docs = list(texts)
        self.calls.append(docs)
        if self.errors:
            raise self.errors.pop(0)
        vectors = [self.vectors.get(text, hashed_vector(text)) for text in docs]
        return EmbeddingBatch(vectors=vectors, model=self.model, dim=DIM)

    async def aclose(self) -> None:
        return None


class FakeVisualClient:
    def __init__(self, vectors: Mapping[str, list[float]] | None = None) -> None:
        self.vectors = dict(vectors or {})
        self.calls: list[list[str]] = []
        self.errors: list[BaseException] = []

    @property
    def is_configured(self) -> bool:
        return True

    @property
    def model(self) -> str:
        return "fake-clip"

    async def embed_images(self, urls: Sequence[str]) -> EmbeddingBatch:
        inputs = list(urls)
        self.calls.append(inputs)
        if self.errors:
            raise self.errors.pop(0)
        vectors = [self.vectors.get(url, hashed_vector(url)) for url in inputs]
        return EmbeddingBatch(vectors=vectors, model=self.model, dim=DIM, provider="visual")

    async def aclose(self) -> None:
        return None


class FakeVectorBackend:
    """In-memory index with cosine scoring and exact-match metadata filters."""

    def __init__(self) -> None:
        self.records: dict[str, VectorRecord] = {}
        self.upsert_batches: list[int] = []
        self.delete_batches: list[int] = []
        self.errors: list[BaseException] = []

    def _maybe_fail(self) -> None:
        if self.errors:
            raise self.errors.pop(0)

    @staticmethod
    def _matches(record: VectorRecord, where: Mapping[str, Any] | None) -> bool:
        if not where:
            return True
        raw = record.metadata.to_index() if record.metadata else {}
        return all(raw.get(key) == value for key, value in where.items())

    async def upsert(self, records: Sequence[VectorRecord]) -> None:
        self._maybe_fail()
        self.upsert_batches.append(len(records))
        for record in records:
            self.records[record.id] = record

    async def query(self, vector, *, top_k, where, include_metadata) -> list[VectorMatch]:
        self._maybe_fail()
        query = np.asarray(vector, dtype=np.float64)
        matches = []
        for record in self.records.values():
            if not self._matches(record, where) or len(record.values) != len(query):
                continue
            values = np.asarray(record.values, dtype=np.float64)
            denom = float(np.linalg.norm(values) * np.linalg.norm(query)) or 1.0
            score = float(np.dot(values, query) / denom)
            matches.append(VectorMatch(id=record.id, score=score, metadata=record.metadata if include_metadata else None))
        matches.sort(key=lambda match: match.score, reverse=True)
        return matches[:top_k]

    async def delete(self, *, ids=None, where=None) -> None:
        self._maybe_fail()
        if ids is not None:
            self.delete_batches.append(len(ids))
            for record_id in ids:
                self.records.pop(record_id, None)
            return
        for record_id in [key for key, record in self.records.items() if self._matches(record, where)]:
            del self.records[record_id]

    async def fetch(self, ids: Sequence[str]) -> list[VectorRecord]:
        self._maybe_fail()
        return [self.records[record_id] for record_id in ids if record_id in self.records]


class FakeGenerationTool:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.failures: dict[str, BaseException] = {}

    async def generate(self, job: GenerationJob) -> str:
        self.calls.append(job.prompt)
        if job.prompt in self.failures:
            raise self.failures[job.prompt]
        return f"https://artifacts.test/{job.id}.png"


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        visual_embedding_dim=DIM,
        text_embedding_dim=DIM,
        cache_sweep_interval_seconds=3600.0,
    )


@pytest.fixture()
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def retry_policy(sleeper: RecordingSleep) -> RetryPolicy:
    return RetryPolicy(sleep=sleeper)


@pytest_asyncio.fixture()
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    # a file database gives every session its own connection, as in production
    engine: AsyncEngine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'memory_engine.db'}",
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    try:
        yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture()
async def session(session_factory: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as async_session:
        yield async_session


@pytest.fixture()
def text_client() -> FakeTextClient:
    return FakeTextClient()


@pytest.fixture()
def visual_client() -> FakeVisualClient:
    return FakeVisualClient()


@pytest.fixture()
def backend() -> FakeVectorBackend:
    return FakeVectorBackend()


@pytest.fixture()
def tool() -> FakeGenerationTool:
    return FakeGenerationTool()


@pytest_asyncio.fixture()
async def engine(
    session_factory, settings, backend, text_client, visual_client, tool, retry_policy
) -> AsyncGenerator[MemoryEngine, None]:
    memory_engine = MemoryEngine.from_settings(
        session_factory,
        settings,
        backend=backend,
        text_client=text_client,
        visual_client=visual_client,
        tool=tool,
        retry_policy=retry_policy,
    )
    try:
        yield memory_engine
    finally:
        await memory_engine.aclose()


@pytest_asyncio.fixture()
async def client(engine: MemoryEngine) -> AsyncGenerator[AsyncClient, None]:
    app.state.engine = engine
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as test_client:
        yield test_client
    del app.state.engine
