"""Consistency scoring of generated artifacts against entity reference vectors.

The artifact is embedded on both channels (image URL and the job prompt),
each referenced entity's ``combined`` reference vector is split back into its
visual and semantic slots, and the per-channel cosine similarities are folded
into a single 0-100 score.

Classes:
    DriftedAttribute: Channel below the acceptance threshold, or a missing reference.
    EntityConsistency: Per-entity similarity breakdown.
    ConsistencyResult: Score, drift, severity and recommendations for one artifact.
    ConsistencyService: Run the analysis for a generation job and write the score back.

Functions:
    round_half_up(value): Round to the nearest integer, halves away from zero.
    severity_for(score, settings): Map a score onto success/warning/error.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Literal, Optional, Sequence
from uuid import UUID

from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select

from memory_engine.core.config import Settings, get_settings
from memory_engine.core.errors import MemoryEngineError, ValidationError
from memory_engine.models import Entity
from memory_engine.services.embedding_service import EmbeddingService
from memory_engine.services.job_store import JobStore
from memory_engine.services.vector_index import VectorIndexClient, reference_vector_id
from memory_engine.utils import vectors as vector_ops
from memory_engine.utils.text import summarise_description

_LOGGER = logging.getLogger(__name__)

ArtifactKind = Literal["image", "video"]
Severity = Literal["success", "warning", "error", "no_data"]

VISUAL = "visual"
SEMANTIC = "semantic"
MISSING_REFERENCE = "missing_reference"


@dataclass(slots=True)
class DriftedAttribute:
    attribute: str
    similarity: Optional[float]
    entity_ids: list[str] = field(default_factory=list)
    severity: Literal["low", "medium", "high"] = "medium"
    expected_value: Optional[str] = None


@dataclass(slots=True)
class EntityConsistency:
    entity_id: str
    name: Optional[str] = None
    has_reference: bool = True
    visual_similarity: Optional[float] = None
    semantic_similarity: Optional[float] = None
    score: Optional[int] = None


@dataclass(slots=True)
class ConsistencyResult:
    score: Optional[int]
    has_data: bool
    drifted_attributes: list[DriftedAttribute]
    visual_similarity: Optional[float]
    semantic_similarity: Optional[float]
    severity: Severity
    recommendations: list[str]
    entity_scores: list[EntityConsistency] = field(default_factory=list)
    message: str = ""


def round_half_up(value: float) -> int:
    if value < 0:
        return -round_half_up(-value)
    return int(math.floor(value + 0.5))


def _clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, value))


def severity_for(score: int, settings: Settings) -> Severity:
    if score >= settings.success_score_threshold:
        return "success"
    if score >= settings.warning_score_threshold:
        return "warning"
    return "error"


def _drift_severity(similarity: Optional[float]) -> Literal["low", "medium", "high"]:
    if similarity is None or similarity < 0.6:
        return "high"
    if similarity < 0.7:
        return "medium"
    return "low"


def _weighted(visual: Optional[float], semantic: Optional[float], settings: Settings) -> Optional[float]:
    """Weighted mean over the channels present; absent channels drop out and weights renormalise."""

    parts: list[tuple[float, float]] = []
    if visual is not None:
        parts.append((settings.visual_weight, visual))
    if semantic is not None:
        parts.append((settings.semantic_weight, semantic))
    total = sum(weight for weight, _ in parts)
    if not parts or total <= 0:
        return None
    return sum(weight * value for weight, value in parts) / total


def _mean(values: Sequence[Optional[float]]) -> Optional[float]:
    present = [value for value in values if value is not None]
    if not present:
        return None
    return sum(present) / len(present)


class ConsistencyService:
    def __init__(
        self,
        embedding_service: EmbeddingService,
        index_client: VectorIndexClient,
        job_store: JobStore,
        *,
        session_factory: async_sessionmaker | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._embeddings = embedding_service
        self._index = index_client
        self._jobs = job_store
        self._session_factory = session_factory

    async def analyze_consistency(
        self,
        generation_id: UUID,
        artifact_url: str,
        artifact_kind: ArtifactKind = "image",
    ) -> ConsistencyResult:
        """Score an artifact against every entity its generation job referenced.

        Entities without a stored reference are reported as ``missing_reference``
        drift and left out of the score. With no usable reference at all the
        result carries ``has_data=False`` and no score.
        """

        if artifact_kind not in ("image", "video"):
            raise ValidationError(f"Unsupported artifact kind: {artifact_kind}", hint="Unsupported content type.")
        if not artifact_url or not artifact_url.strip():
            raise ValidationError("Artifact URL cannot be empty", hint="Artifact URL is required.")

        job = await self._jobs.require_job(generation_id)
        entity_ids = [str(entity_id) for entity_id in (job.entity_ids or [])]
        if not entity_ids:
            _LOGGER.info("Generation has no referenced entities", extra={"job_id": str(generation_id)})
            return self._no_data([], [], "This generation does not reference any entities.")

        # videos are embedded from a representative frame or thumbnail URL
        artifact_visual, artifact_semantic = await self._embed_artifact(artifact_url, job.prompt)

        references = await self._index.fetch_by_ids(
            [reference_vector_id(entity_id, "combined") for entity_id in entity_ids]
        )
        entities = await self._load_entities(entity_ids)

        entity_scores: list[EntityConsistency] = []
        missing: list[str] = []
        for entity_id in entity_ids:
            entity = entities.get(entity_id)
            record = references.get(reference_vector_id(entity_id, "combined"))
            if record is None:
                missing.append(entity_id)
                entity_scores.append(
                    EntityConsistency(entity_id=entity_id, name=entity.name if entity else None, has_reference=False)
                )
                continue
            entity_scores.append(
                self._compare_entity(entity_id, entity, record.values, artifact_visual, artifact_semantic)
            )

        scored = [item for item in entity_scores if item.has_reference and item.score is not None]
        if not scored:
            _LOGGER.info(
                "No usable reference vectors for consistency analysis",
                extra={"job_id": str(generation_id)},
            )
            drift = [self._missing_drift(missing, entities)] if missing else []
            return self._no_data(
                drift,
                entity_scores,
                "No embeddings found for the referenced entities. Generate embeddings first.",
            )

        per_entity = [
            _weighted(item.visual_similarity, item.semantic_similarity, self._settings) for item in scored
        ]
        mean = sum(value for value in per_entity if value is not None) / len(scored)
        score = round_half_up(_clamp_unit(mean) * 100)
        severity = severity_for(score, self._settings)

        drifted = self._collect_drift(scored, entities)
        if missing:
            drifted.append(self._missing_drift(missing, entities))

        result = ConsistencyResult(
            score=score,
            has_data=True,
            drifted_attributes=drifted,
            visual_similarity=_mean([item.visual_similarity for item in scored]),
            semantic_similarity=_mean([item.semantic_similarity for item in scored]),
            severity=severity,
            recommendations=self._recommendations(severity, drifted, missing),
            entity_scores=entity_scores,
            message=self._message(severity),
        )
        _LOGGER.info(
            "Consistency score %d (%s) across %d entities",
            score,
            severity,
            len(scored),
            extra={"job_id": str(generation_id)},
        )
        return result

    async def update_job_consistency(self, job_id: UUID, score: int) -> bool:
        updated = await self._jobs.update_consistency_score(job_id, score)
        if not updated:
            _LOGGER.warning(
                "Consistency score not stored, job is not completed with an artifact",
                extra={"job_id": str(job_id)},
            )
        return updated

    async def _embed_artifact(
        self, artifact_url: str, prompt: str
    ) -> tuple[Optional[list[float]], Optional[list[float]]]:
        visual_result, semantic_result = await asyncio.gather(
            self._embeddings.generate_visual_embedding(artifact_url),
            self._embeddings.generate_text_embedding(prompt),
            return_exceptions=True,
        )
        outcomes: list[Optional[list[float]]] = []
        failures: list[Exception] = []
        for channel, result in ((VISUAL, visual_result), (SEMANTIC, semantic_result)):
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
            if isinstance(result, Exception):
                _LOGGER.warning("Artifact %s embedding failed, channel dropped: %r", channel, result)
                failures.append(result)
                outcomes.append(None)
            else:
                outcomes.append(result)
        if outcomes[0] is None and outcomes[1] is None:
            raise failures[0]
        return outcomes[0], outcomes[1]

    def _compare_entity(
        self,
        entity_id: str,
        entity: Optional[Entity],
        reference: Sequence[float],
        artifact_visual: Optional[list[float]],
        artifact_semantic: Optional[list[float]],
    ) -> EntityConsistency:
        reference_visual, reference_semantic = vector_ops.split_channels(
            reference,
            visual_dim=self._embeddings.visual_dim,
            semantic_dim=self._embeddings.semantic_dim,
        )
        visual = None
        semantic = None
        if reference_visual is not None and artifact_visual is not None:
            visual = _clamp_unit(vector_ops.cosine_similarity(artifact_visual, reference_visual))
        if reference_semantic is not None and artifact_semantic is not None:
            semantic = _clamp_unit(vector_ops.cosine_similarity(artifact_semantic, reference_semantic))
        weighted = _weighted(visual, semantic, self._settings)
        return EntityConsistency(
            entity_id=entity_id,
            name=entity.name if entity else None,
            has_reference=True,
            visual_similarity=visual,
            semantic_similarity=semantic,
            score=None if weighted is None else round_half_up(weighted * 100),
        )

    def _collect_drift(
        self, scored: Sequence[EntityConsistency], entities: dict[str, Entity]
    ) -> list[DriftedAttribute]:
        threshold = self._settings.drift_threshold
        drifted: list[DriftedAttribute] = []
        for channel in (VISUAL, SEMANTIC):
            below = [
                (getattr(item, f"{channel}_similarity"), item.entity_id)
                for item in scored
                if getattr(item, f"{channel}_similarity") is not None
                and getattr(item, f"{channel}_similarity") < threshold
            ]
            if not below:
                continue
            below.sort()
            worst, worst_entity = below[0]
            entity = entities.get(worst_entity)
            drifted.append(
                DriftedAttribute(
                    attribute=channel,
                    similarity=worst,
                    entity_ids=[entity_id for _, entity_id in below],
                    severity=_drift_severity(worst),
                    expected_value=summarise_description(entity.description) if entity else None,
                )
            )
        drifted.sort(key=lambda item: item.similarity if item.similarity is not None else -1.0)
        return drifted

    def _missing_drift(self, missing: Sequence[str], entities: dict[str, Entity]) -> DriftedAttribute:
        names = [entities[entity_id].name for entity_id in missing if entity_id in entities]
        return DriftedAttribute(
            attribute=MISSING_REFERENCE,
            similarity=None,
            entity_ids=list(missing),
            severity="high",
            expected_value=", ".join(names) or None,
        )

    def _no_data(
        self, drifted: list[DriftedAttribute], entity_scores: list[EntityConsistency], message: str
    ) -> ConsistencyResult:
        recommendations = []
        if drifted:
            recommendations.append("Generate embeddings for entities that have no reference yet.")
        else:
            recommendations.append("Reference at least one entity with embeddings to measure consistency.")
        return ConsistencyResult(
            score=None,
            has_data=False,
            drifted_attributes=drifted,
            visual_similarity=None,
            semantic_similarity=None,
            severity="no_data",
            recommendations=recommendations,
            entity_scores=entity_scores,
            message=message,
        )

    def _recommendations(
        self, severity: Severity, drifted: Sequence[DriftedAttribute], missing: Sequence[str]
    ) -> list[str]:
        recommendations: list[str] = []
        if severity == "error":
            recommendations.append("Regenerate with a more specific prompt describing the referenced entities.")
        elif severity == "warning":
            recommendations.append("Review the artifact; minor variations from the references were detected.")
        attributes = {item.attribute for item in drifted}
        if VISUAL in attributes:
            recommendations.append("Describe the visual traits that drifted or add clearer reference images.")
        if SEMANTIC in attributes:
            recommendations.append("Align the prompt more closely with the entity descriptions.")
        if missing:
            recommendations.append("Generate embeddings for entities that have no reference yet.")
        return recommendations

    @staticmethod
    def _message(severity: Severity) -> str:
        if severity == "success":
            return "Excellent consistency. The artifact closely matches its entity references."
        if severity == "warning":
            return "Good consistency with minor variations. Review before accepting."
        return "Low consistency detected. Consider regenerating or adjusting entity references."

    async def _load_entities(self, entity_ids: Sequence[str]) -> dict[str, Entity]:
        if self._session_factory is None:
            return {}
        uuids: list[UUID] = []
        for entity_id in entity_ids:
            try:
                uuids.append(UUID(entity_id))
            except ValueError:
                continue
        if not uuids:
            return {}
        try:
            async with self._session_factory() as session:
                rows = (await session.exec(select(Entity).where(Entity.id.in_(uuids)))).all()
        except MemoryEngineError:
            raise
        except Exception as exc:
            # names and descriptions only enrich drift details
            _LOGGER.warning("Could not load entity details for drift report: %r", exc)
            return {}
        return {str(entity.id): entity for entity in rows}
