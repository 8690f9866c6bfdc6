"""Vector index client over an external similarity-search store.

Classes:
    VectorMetadata: Metadata stored next to every reference vector.
    VectorRecord: Id, values and metadata of a stored reference vector.
    VectorMatch: Ranked query hit.
    VectorIndexBackend: Protocol every index backend implements.
    ChromaVectorBackend: Backend on a chromadb collection (cosine space).
    VectorIndexClient: Batched upsert, filtered top-k query, delete-by-id/-filter and fetch-by-id
        with retries, timeouts and "not found" normalisation.

Functions:
    reference_vector_id(entity_id, kind, discriminator): Deterministic id so regeneration overwrites.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Mapping, Optional, Protocol, Sequence

from memory_engine.core.config import Settings, get_settings
from memory_engine.core.errors import IndexOperationFailed, MemoryEngineError, NotFoundIgnored, ValidationError
from memory_engine.services.retry import RetryPolicy, status_code_of

_LOGGER = logging.getLogger(__name__)

RecordKind = Literal["visual", "semantic", "combined"]

MetadataFilter = Mapping[str, Any]

_FILTER_FIELDS = {"entity_id", "world_id", "branch_id", "kind"}


def reference_vector_id(entity_id: str, kind: RecordKind, discriminator: str | None = None) -> str:
    base = f"entity_{entity_id}_{kind}"
    return f"{base}_{discriminator}" if discriminator else base


@dataclass(slots=True)
class VectorMetadata:
    entity_id: str
    world_id: str
    kind: RecordKind
    branch_id: Optional[str] = None
    source_image_url: Optional[str] = None
    source_text: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_index(self) -> dict[str, Any]:
        # index metadata cannot hold nulls, absent values are stored as ""
        return {
            "entity_id": self.entity_id,
            "world_id": self.world_id,
            "branch_id": self.branch_id or "",
            "kind": self.kind,
            "source_image_url": self.source_image_url or "",
            "source_text": self.source_text or "",
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_index(cls, raw: Mapping[str, Any] | None) -> Optional["VectorMetadata"]:
        if not raw:
            return None
        created_raw = raw.get("created_at")
        try:
            created_at = datetime.fromisoformat(created_raw) if created_raw else datetime.now(timezone.utc)
        except (TypeError, ValueError):
            created_at = datetime.now(timezone.utc)
        return cls(
            entity_id=str(raw.get("entity_id", "")),
            world_id=str(raw.get("world_id", "")),
            kind=raw.get("kind", "combined"),
            branch_id=raw.get("branch_id") or None,
            source_image_url=raw.get("source_image_url") or None,
            source_text=raw.get("source_text") or None,
            created_at=created_at,
        )


@dataclass(slots=True)
class VectorRecord:
    id: str
    values: list[float]
    metadata: Optional[VectorMetadata] = None


@dataclass(slots=True)
class VectorMatch:
    id: str
    score: float
    metadata: Optional[VectorMetadata] = None


class VectorIndexBackend(Protocol):
    """Minimal surface the engine needs from a remote similarity-search store.

    ``where`` is an exact-match conjunction over flat metadata fields, already
    translated to index values (``None`` branch ids become ``""``).
    """

    async def upsert(self, records: Sequence[VectorRecord]) -> None: ...

    async def query(
        self,
        vector: Sequence[float],
        *,
        top_k: int,
        where: Mapping[str, Any] | None,
        include_metadata: bool,
    ) -> list[VectorMatch]: ...

    async def delete(self, *, ids: Sequence[str] | None = None, where: Mapping[str, Any] | None = None) -> None: ...

    async def fetch(self, ids: Sequence[str]) -> list[VectorRecord]: ...


def _chroma_where(where: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if not where:
        return None
    clauses = [{key: value} for key, value in where.items()]
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def _column(result: Mapping[str, Any], name: str) -> list[Any] | None:
    value = result.get(name)
    if value is None:
        return None
    return list(value)


class ChromaVectorBackend:
    """chromadb collection configured for cosine distance.

    The chromadb client is synchronous, so every call runs in a worker thread.
    """

    def __init__(self, client: Any, collection_name: str) -> None:
        self._client = client
        self._collection_name = collection_name
        self._collection = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChromaVectorBackend":
        import chromadb

        client = chromadb.HttpClient(host=settings.chroma_host, port=settings.chroma_port)
        return cls(client, settings.chroma_collection)

    def _get_collection(self):
        if self._collection is None:
            self._collection = self._client.get_or_create_collection(
                name=self._collection_name,
                metadata={"hnsw:space": "cosine"},
            )
        return self._collection

    async def upsert(self, records: Sequence[VectorRecord]) -> None:
        def _run() -> None:
            self._get_collection().upsert(
                ids=[record.id for record in records],
                embeddings=[list(map(float, record.values)) for record in records],
                metadatas=[record.metadata.to_index() if record.metadata else {"kind": "combined"} for record in records],
            )

        await asyncio.to_thread(_run)

    async def query(
        self,
        vector: Sequence[float],
        *,
        top_k: int,
        where: Mapping[str, Any] | None,
        include_metadata: bool,
    ) -> list[VectorMatch]:
        def _run() -> dict[str, Any]:
            include = ["distances", "metadatas"] if include_metadata else ["distances"]
            return self._get_collection().query(
                query_embeddings=[list(map(float, vector))],
                n_results=top_k,
                where=_chroma_where(where),
                include=include,
            )

        result = await asyncio.to_thread(_run)
        ids = (_column(result, "ids") or [[]])[0]
        distances = (_column(result, "distances") or [[]])[0]
        metadatas = (_column(result, "metadatas") or [[None] * len(ids)])[0] if include_metadata else [None] * len(ids)
        matches = [
            VectorMatch(
                id=str(match_id),
                score=1.0 - float(distance),
                metadata=VectorMetadata.from_index(metadata) if include_metadata else None,
            )
            for match_id, distance, metadata in zip(ids, distances, metadatas)
        ]
        matches.sort(key=lambda match: match.score, reverse=True)
        return matches

    async def delete(self, *, ids: Sequence[str] | None = None, where: Mapping[str, Any] | None = None) -> None:
        def _run() -> None:
            if ids is not None:
                self._get_collection().delete(ids=list(ids))
            else:
                self._get_collection().delete(where=_chroma_where(where))

        await asyncio.to_thread(_run)

    async def fetch(self, ids: Sequence[str]) -> list[VectorRecord]:
        def _run() -> dict[str, Any]:
            return self._get_collection().get(ids=list(ids), include=["embeddings", "metadatas"])

        result = await asyncio.to_thread(_run)
        found_ids = _column(result, "ids") or []
        embeddings = _column(result, "embeddings") or [None] * len(found_ids)
        metadatas = _column(result, "metadatas") or [None] * len(found_ids)
        records: list[VectorRecord] = []
        for record_id, values, metadata in zip(found_ids, embeddings, metadatas):
            if values is None:
                continue
            records.append(
                VectorRecord(
                    id=str(record_id),
                    values=[float(value) for value in values],
                    metadata=VectorMetadata.from_index(metadata),
                )
            )
        return records


def _is_not_found(exc: BaseException) -> bool:
    if isinstance(exc, NotFoundIgnored):
        return True
    if status_code_of(exc) == 404:
        return True
    name = type(exc).__name__
    message = str(exc)
    return "NotFound" in name or "404" in message or "not found" in message.lower()


def _index_failed(message: str, cause: BaseException, attempts: int) -> Exception:
    return IndexOperationFailed(message)


class VectorIndexClient:
    def __init__(
        self,
        backend: VectorIndexBackend,
        *,
        retry_policy: RetryPolicy | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._backend = backend
        self._retry = retry_policy or RetryPolicy.from_settings(self._settings)
        self._upsert_batch = min(self._settings.index_upsert_batch_size, 100)
        self._delete_batch = self._settings.index_delete_batch_size

    async def upsert(self, records: Sequence[VectorRecord]) -> None:
        """Write records in batches of at most 100.

        Batches are independent: a failing batch raises ``IndexOperationFailed``
        but earlier batches stay written.
        """

        for start in range(0, len(records), self._upsert_batch):
            batch = list(records[start : start + self._upsert_batch])
            await self._call(lambda batch=batch: self._backend.upsert(batch), "Vector upsert")
        if records:
            _LOGGER.debug("Upserted %d vectors", len(records))

    async def query(
        self,
        vector: Sequence[float],
        *,
        top_k: int = 10,
        filter: MetadataFilter | None = None,
        include_metadata: bool = True,
    ) -> list[VectorMatch]:
        if top_k < 1:
            return []
        where = self._translate_filter(filter)
        matches = await self._call(
            lambda: self._backend.query(vector, top_k=top_k, where=where, include_metadata=include_metadata),
            "Vector query",
        )
        return sorted(matches, key=lambda match: match.score, reverse=True)[:top_k]

    async def delete_by_ids(self, ids: Sequence[str]) -> None:
        for start in range(0, len(ids), self._delete_batch):
            batch = list(ids[start : start + self._delete_batch])
            await self._delete(lambda batch=batch: self._backend.delete(ids=batch), "Vector delete")

    async def delete_by_filter(self, filter: MetadataFilter) -> None:
        where = self._translate_filter(filter)
        if not where:
            raise ValidationError("Refusing to delete with an empty filter")
        await self._delete(lambda: self._backend.delete(where=where), "Vector delete by filter")

    async def delete_entity_vectors(self, entity_id: str) -> None:
        await self.delete_by_filter({"entity_id": entity_id})

    async def delete_world_vectors(self, world_id: str) -> None:
        await self.delete_by_filter({"world_id": world_id})

    async def delete_branch_vectors(self, branch_id: str) -> None:
        await self.delete_by_filter({"branch_id": branch_id})

    async def fetch_by_ids(self, ids: Sequence[str]) -> dict[str, VectorRecord]:
        if not ids:
            return {}
        try:
            records = await self._call(lambda: self._backend.fetch(list(ids)), "Vector fetch")
        except (IndexOperationFailed, NotFoundIgnored) as exc:
            if isinstance(exc, NotFoundIgnored) or (exc.__cause__ is not None and _is_not_found(exc.__cause__)):
                return {}
            raise
        return {record.id: record for record in records}

    def _translate_filter(self, filter: MetadataFilter | None) -> dict[str, Any] | None:
        if not filter:
            return None
        where: dict[str, Any] = {}
        for key, value in filter.items():
            if key not in _FILTER_FIELDS:
                raise ValidationError(f"Unsupported filter field: {key}")
            where[key] = "" if value is None else value
        return where

    async def _delete(self, fn, context: str) -> None:
        try:
            await self._call(fn, context)
        except (IndexOperationFailed, NotFoundIgnored) as exc:
            if isinstance(exc, NotFoundIgnored) or (exc.__cause__ is not None and _is_not_found(exc.__cause__)):
                _LOGGER.debug("%s matched nothing, treating as success", context)
                return
            raise

    async def _call(self, fn, context: str):
        try:
            return await self._retry.call(
                fn,
                context=context,
                timeout=self._settings.index_timeout_seconds,
                exhausted=_index_failed,
            )
        except MemoryEngineError:
            raise
        except Exception as exc:
            _LOGGER.error("%s failed: %r", context, exc)
            raise IndexOperationFailed(f"{context} failed: {exc}") from exc
