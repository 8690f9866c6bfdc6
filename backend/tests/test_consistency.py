"""Tests for the consistency scorer."""

from __future__ import annotations

import math
from uuid import uuid4

import pytest

from memory_engine.models import Entity, GenerationJob, JobStatus
from memory_engine.services.consistency import round_half_up
from memory_engine.services.vector_index import VectorMetadata, VectorRecord, reference_vector_id
from memory_engine.utils.vectors import combine_channels

ARTIFACT_URL = "https://artifacts.test/render.png"
PROMPT = "Aria the knight guarding the northern gate"


def unit_at(similarity: float) -> list[float]:
    """2-d unit vector whose cosine with [1, 0] is ``similarity``."""

    return [similarity, math.sqrt(1.0 - similarity**2)]


async def seed_entity(session, world_id, *, name="Aria", description="A tall knight. Silver armour. Red cape."):
    entity = Entity(world_id=world_id, name=name, description=description)
    session.add(entity)
    await session.commit()
    await session.refresh(entity)
    return entity


async def seed_job(session, world_id, entity_ids, *, status=JobStatus.COMPLETED, artifact=ARTIFACT_URL):
    job = GenerationJob(
        world_id=world_id,
        entity_ids=[str(entity_id) for entity_id in entity_ids],
        prompt=PROMPT,
        status=status,
        result_artifact_ref=artifact,
    )
    session.add(job)
    await session.commit()
    await session.refresh(job)
    return job


async def store_reference(backend, entity, visual, semantic):
    values = combine_channels(visual, semantic, visual_dim=2, semantic_dim=2, visual_weight=0.6, semantic_weight=0.4)
    await backend.upsert(
        [
            VectorRecord(
                id=reference_vector_id(str(entity.id), "combined"),
                values=values,
                metadata=VectorMetadata(entity_id=str(entity.id), world_id=str(entity.world_id), kind="combined"),
            )
        ]
    )


@pytest.fixture(autouse=True)
def artifact_vectors(text_client, visual_client):
    visual_client.vectors[ARTIFACT_URL] = [1.0, 0.0]
    text_client.vectors[PROMPT] = [1.0, 0.0]


def test_round_half_up():
    assert round_half_up(89.5) == 90
    assert round_half_up(90.4) == 90
    assert round_half_up(65.5) == 66
    assert round_half_up(0.0) == 0


@pytest.mark.asyncio
async def test_high_similarity_scores_success(engine, session, backend):
    world_id = uuid4()
    entity = await seed_entity(session, world_id)
    await store_reference(backend, entity, unit_at(0.92), unit_at(0.88))
    job = await seed_job(session, world_id, [entity.id])

    result = await engine.consistency.analyze_consistency(job.id, ARTIFACT_URL)

    assert result.has_data is True
    assert result.score == 90
    assert result.severity == "success"
    assert result.visual_similarity == pytest.approx(0.92)
    assert result.semantic_similarity == pytest.approx(0.88)
    assert result.drifted_attributes == []
    assert result.entity_scores[0].name == "Aria"


@pytest.mark.asyncio
async def test_low_visual_similarity_scores_error_with_visual_drift(engine, session, backend):
    world_id = uuid4()
    entity = await seed_entity(session, world_id)
    await store_reference(backend, entity, unit_at(0.5), unit_at(0.9))
    job = await seed_job(session, world_id, [entity.id])

    result = await engine.consistency.analyze_consistency(job.id, ARTIFACT_URL)

    assert result.score == 66
    assert result.severity == "error"
    assert [drift.attribute for drift in result.drifted_attributes] == ["visual"]
    drift = result.drifted_attributes[0]
    assert drift.similarity == pytest.approx(0.5)
    assert drift.entity_ids == [str(entity.id)]
    assert drift.severity == "high"
    assert drift.expected_value == "A tall knight. Silver armour. Red cape"
    assert any("specific prompt" in line for line in result.recommendations)


@pytest.mark.asyncio
async def test_warning_band_and_worst_first_drift(engine, session, backend):
    world_id = uuid4()
    entity = await seed_entity(session, world_id)
    await store_reference(backend, entity, unit_at(0.9), unit_at(0.6))
    job = await seed_job(session, world_id, [entity.id])

    result = await engine.consistency.analyze_consistency(job.id, ARTIFACT_URL)

    # 0.6 * 0.9 + 0.4 * 0.6 = 0.78
    assert result.score == 78
    assert result.severity == "warning"
    assert [drift.attribute for drift in result.drifted_attributes] == ["semantic"]


@pytest.mark.asyncio
async def test_no_referenced_entities_reports_no_data(engine, session):
    job = await seed_job(session, uuid4(), [])

    result = await engine.consistency.analyze_consistency(job.id, ARTIFACT_URL)

    assert result.has_data is False
    assert result.score is None
    assert result.severity == "no_data"


@pytest.mark.asyncio
async def test_missing_reference_is_reported_and_skipped(engine, session, backend):
    world_id = uuid4()
    scored = await seed_entity(session, world_id, name="Aria")
    unscored = await seed_entity(session, world_id, name="Borin")
    await store_reference(backend, scored, unit_at(0.92), unit_at(0.88))
    job = await seed_job(session, world_id, [scored.id, unscored.id])

    result = await engine.consistency.analyze_consistency(job.id, ARTIFACT_URL)

    assert result.score == 90
    assert result.drifted_attributes[-1].attribute == "missing_reference"
    assert result.drifted_attributes[-1].entity_ids == [str(unscored.id)]
    assert result.drifted_attributes[-1].expected_value == "Borin"
    assert [item.has_reference for item in result.entity_scores] == [True, False]


@pytest.mark.asyncio
async def test_no_reference_vectors_at_all_reports_no_data(engine, session):
    world_id = uuid4()
    entity = await seed_entity(session, world_id)
    job = await seed_job(session, world_id, [entity.id])

    result = await engine.consistency.analyze_consistency(job.id, ARTIFACT_URL)

    assert result.has_data is False
    assert result.severity == "no_data"
    assert result.drifted_attributes[0].attribute == "missing_reference"


@pytest.mark.asyncio
async def test_failed_artifact_channel_is_dropped(engine, session, backend, visual_client):
    world_id = uuid4()
    entity = await seed_entity(session, world_id)
    await store_reference(backend, entity, unit_at(0.3), unit_at(0.95))
    job = await seed_job(session, world_id, [entity.id])
    visual_client.errors.append(RuntimeError("clip endpoint rejected the image"))

    result = await engine.consistency.analyze_consistency(job.id, ARTIFACT_URL)

    assert result.visual_similarity is None
    assert result.semantic_similarity == pytest.approx(0.95)
    assert result.score == 95


@pytest.mark.asyncio
async def test_score_is_written_back_only_for_completed_jobs(engine, session, backend):
    world_id = uuid4()
    entity = await seed_entity(session, world_id)
    await store_reference(backend, entity, unit_at(0.92), unit_at(0.88))
    completed = await seed_job(session, world_id, [entity.id])
    failed = await seed_job(session, world_id, [entity.id], status=JobStatus.FAILED, artifact=None)

    envelope = await engine.analyze_consistency(completed.id, ARTIFACT_URL)
    assert envelope.success is True
    assert envelope.data.score == 90
    assert (await engine.jobs.get_job(completed.id)).consistency_score == 90

    assert await engine.consistency.update_job_consistency(failed.id, 80) is False
    assert (await engine.jobs.get_job(failed.id)).consistency_score is None


@pytest.mark.asyncio
async def test_unknown_generation_returns_error_envelope(engine):
    envelope = await engine.analyze_consistency(uuid4(), ARTIFACT_URL)

    assert envelope.success is False
    assert envelope.error_code == "not_found"
    assert envelope.error == "Generation not found."
