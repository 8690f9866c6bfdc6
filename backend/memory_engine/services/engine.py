"""Service container and the exposed operations of the memory engine.

Every public coroutine here returns an ``OperationResult`` envelope: failures
are logged with their detail and reported to the caller only as a classified
message and error code.

Classes:
    MemoryEngine: Wires providers, index, job store, scorer and queue processor; exposes the operations.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar
from uuid import UUID

from sqlalchemy.ext.asyncio import async_sessionmaker

from memory_engine.core.config import Settings, get_settings
from memory_engine.core.errors import MemoryEngineError
from memory_engine.schemas.embeddings import EmbeddingGenerationResponse, SimilarEntityResponse
from memory_engine.schemas.envelope import OperationResult
from memory_engine.schemas.generations import (
    ConsistencyReport,
    GenerationJobResource,
    QueuePassResponse,
    QueueStatusResponse,
)
from memory_engine.services.consistency import ConsistencyService
from memory_engine.services.embedding_cache import CacheSweeper, EmbeddingCache
from memory_engine.services.embedding_service import EmbeddingService
from memory_engine.services.entity_embeddings import EntityEmbeddingService
from memory_engine.services.generation_tool import GenerationTool, ReplicateGenerationTool
from memory_engine.services.job_store import JobStore
from memory_engine.services.openai_client import OpenAIEmbeddingClient
from memory_engine.services.queue_processor import QueueProcessor
from memory_engine.services.retry import RetryPolicy
from memory_engine.services.vector_index import ChromaVectorBackend, VectorIndexBackend, VectorIndexClient
from memory_engine.services.visual_client import VisualEmbeddingClient

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class MemoryEngine:
    def __init__(
        self,
        *,
        embeddings: EmbeddingService,
        index: VectorIndexClient,
        entity_embeddings: EntityEmbeddingService,
        consistency: ConsistencyService,
        jobs: JobStore,
        queue: QueueProcessor,
        settings: Settings | None = None,
        closeables: tuple[Any, ...] = (),
    ) -> None:
        self.settings = settings or get_settings()
        self.embeddings = embeddings
        self.index = index
        self.entity_embeddings = entity_embeddings
        self.consistency = consistency
        self.jobs = jobs
        self.queue = queue
        self.sweeper = CacheSweeper(embeddings.cache, self.settings.cache_sweep_interval_seconds)
        self._closeables = closeables

    @classmethod
    def from_settings(
        cls,
        session_factory: async_sessionmaker,
        settings: Settings | None = None,
        *,
        backend: VectorIndexBackend | None = None,
        text_client: OpenAIEmbeddingClient | None = None,
        visual_client: VisualEmbeddingClient | None = None,
        tool: GenerationTool | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> "MemoryEngine":
        settings = settings or get_settings()
        retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        text_client = text_client or OpenAIEmbeddingClient(settings=settings)
        visual_client = visual_client or VisualEmbeddingClient(settings=settings)
        tool = tool or ReplicateGenerationTool(settings=settings)

        embeddings = EmbeddingService(
            text_client=text_client,
            visual_client=visual_client,
            cache=EmbeddingCache(max_size=settings.cache_max_size, default_ttl=settings.cache_ttl_seconds),
            retry_policy=retry_policy,
            settings=settings,
        )
        index = VectorIndexClient(
            backend or ChromaVectorBackend.from_settings(settings),
            retry_policy=retry_policy,
            settings=settings,
        )
        jobs = JobStore(session_factory)
        consistency = ConsistencyService(
            embeddings,
            index,
            jobs,
            session_factory=session_factory,
            settings=settings,
        )
        return cls(
            embeddings=embeddings,
            index=index,
            entity_embeddings=EntityEmbeddingService(session_factory, embeddings, index, settings=settings),
            consistency=consistency,
            jobs=jobs,
            queue=QueueProcessor(
                jobs,
                tool,
                consistency=consistency,
                retry_policy=retry_policy,
                settings=settings,
            ),
            settings=settings,
            closeables=(text_client, visual_client, tool),
        )

    def start(self) -> None:
        self.sweeper.start()

    async def aclose(self) -> None:
        await self.sweeper.stop()
        await self.queue.aclose(timeout=self.settings.provider_timeout_seconds)
        for resource in self._closeables:
            close = getattr(resource, "aclose", None)
            if close is not None:
                await close()

    async def generate_embeddings(self, entity_id: UUID) -> OperationResult[EmbeddingGenerationResponse]:
        return await self._envelope(
            "generate_embeddings",
            lambda: self.entity_embeddings.generate_embeddings(entity_id),
            lambda result: EmbeddingGenerationResponse(**dataclasses.asdict(result)),
        )

    async def regenerate_embeddings(self, entity_id: UUID) -> OperationResult[EmbeddingGenerationResponse]:
        return await self._envelope(
            "regenerate_embeddings",
            lambda: self.entity_embeddings.regenerate_embeddings(entity_id),
            lambda result: EmbeddingGenerationResponse(**dataclasses.asdict(result)),
        )

    async def delete_entity_embeddings(self, entity_id: UUID) -> OperationResult[None]:
        return await self._envelope(
            "delete_entity_embeddings",
            lambda: self.entity_embeddings.delete_entity_embeddings(entity_id),
        )

    async def search_similar_entities(
        self,
        world_id: UUID,
        query: str,
        *,
        top_k: int = 10,
        kind: str = "combined",
        branch_id: UUID | None = None,
    ) -> OperationResult[list[SimilarEntityResponse]]:
        return await self._envelope(
            "search_similar_entities",
            lambda: self.entity_embeddings.search_similar_entities(
                world_id, query, top_k=top_k, kind=kind, branch_id=branch_id
            ),
            lambda matches: [SimilarEntityResponse(**dataclasses.asdict(match)) for match in matches],
        )

    async def analyze_consistency(
        self,
        generation_id: UUID,
        artifact_url: str,
        artifact_kind: str = "image",
    ) -> OperationResult[ConsistencyReport]:
        async def _analyze():
            result = await self.consistency.analyze_consistency(generation_id, artifact_url, artifact_kind)
            if result.score is not None:
                await self.consistency.update_job_consistency(generation_id, result.score)
            return result

        return await self._envelope(
            "analyze_consistency",
            _analyze,
            lambda result: ConsistencyReport.model_validate(dataclasses.asdict(result)),
        )

    async def process_queue(self) -> OperationResult[QueuePassResponse]:
        return await self._envelope(
            "process_queue",
            self.queue.process_queue,
            lambda result: QueuePassResponse(**dataclasses.asdict(result)),
        )

    def is_running(self) -> OperationResult[bool]:
        return OperationResult[bool].ok(self.queue.is_running())

    async def queue_status(self, world_id: UUID | None = None) -> OperationResult[QueueStatusResponse]:
        return await self._envelope(
            "queue_status",
            lambda: self.jobs.count_by_status(world_id),
            lambda counts: QueueStatusResponse(
                is_running=self.queue.is_running(),
                pending_follow_ups=self.queue.pending_follow_ups,
                counts=counts,
            ),
        )

    async def get_generation(self, job_id: UUID) -> OperationResult[GenerationJobResource]:
        return await self._envelope(
            "get_generation",
            lambda: self.jobs.require_job(job_id),
            GenerationJobResource.model_validate,
        )

    async def reset_generation(self, job_id: UUID, *, authorized: bool) -> OperationResult[GenerationJobResource]:
        return await self._envelope(
            "reset_generation",
            lambda: self.jobs.reset_to_queued(job_id, authorized=authorized),
            GenerationJobResource.model_validate,
        )

    async def _envelope(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        convert: Optional[Callable[[T], Any]] = None,
    ) -> OperationResult:
        try:
            value = await call()
            payload = convert(value) if convert is not None else None
        except MemoryEngineError as exc:
            _LOGGER.warning("%s failed (%s): %s", operation, exc.code, exc)
            return OperationResult.fail(exc)
        except Exception as exc:
            _LOGGER.exception("%s failed unexpectedly", operation)
            return OperationResult.fail(exc)
        return OperationResult.ok(payload)
