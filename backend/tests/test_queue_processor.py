"""Tests for the generation queue processor and job store."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from memory_engine.core.errors import JobExecutionFailed, ValidationError
from memory_engine.models import GenerationJob, JobStatus
from memory_engine.services.job_store import JobStore
from memory_engine.services.queue_processor import QueueProcessor


async def seed_job(session, prompt="a castle at dawn", *, status=JobStatus.QUEUED, created_at=None, **fields):
    job = GenerationJob(
        world_id=uuid4(),
        prompt=prompt,
        status=status,
        created_at=created_at or datetime.now(timezone.utc),
        **fields,
    )
    session.add(job)
    await session.commit()
    await session.refresh(job)
    return job


class BlockingTool:
    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def generate(self, job) -> str:
        self.started.set()
        await self.release.wait()
        return "https://artifacts.test/blocked.png"


@pytest.mark.asyncio
async def test_pass_completes_jobs_oldest_first(engine, session, tool):
    now = datetime.now(timezone.utc)
    newer = await seed_job(session, "newer", created_at=now)
    older = await seed_job(session, "older", created_at=now - timedelta(minutes=5))

    result = await engine.queue.process_queue()

    assert (result.processed, result.completed, result.failed) == (2, 2, 0)
    assert result.already_running is False
    assert tool.calls == ["older", "newer"]
    stored = await engine.jobs.get_job(older.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.result_artifact_ref == f"https://artifacts.test/{older.id}.png"
    assert stored.completed_at is not None
    assert (await engine.jobs.get_job(newer.id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_tool_failure_is_recorded_not_raised(engine, session, tool):
    job = await seed_job(session, "runway clip")
    tool.failures["runway clip"] = JobExecutionFailed("Runway API integration not yet implemented")

    result = await engine.queue.process_queue()

    assert (result.processed, result.completed, result.failed) == (1, 0, 1)
    stored = await engine.jobs.get_job(job.id)
    assert stored.status == JobStatus.FAILED
    assert "not yet implemented" in stored.error_message
    assert stored.completed_at is not None
    assert stored.result_artifact_ref is None


@pytest.mark.asyncio
async def test_transient_tool_failure_is_retried(engine, session, tool, sleeper):
    job = await seed_job(session, "flaky")
    tool.failures["flaky"] = ConnectionError("reset")

    result = await engine.queue.process_queue()

    # the fake keeps failing, so the retry budget is spent
    assert result.failed == 1
    assert tool.calls == ["flaky"] * 4
    assert sleeper.delays == [1.0, 2.0, 4.0]
    assert (await engine.jobs.get_job(job.id)).status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_pass_is_bounded_by_batch_size(engine, session):
    for index in range(12):
        await seed_job(session, f"job {index}")

    first = await engine.queue.process_queue()
    second = await engine.queue.process_queue()

    assert first.processed == 10
    assert second.processed == 2
    counts = await engine.jobs.count_by_status()
    assert counts[JobStatus.COMPLETED] == 12
    assert counts[JobStatus.QUEUED] == 0


@pytest.mark.asyncio
async def test_concurrent_pass_returns_already_running(session_factory, session, settings, retry_policy):
    await seed_job(session, "slow render")
    blocking = BlockingTool()
    processor = QueueProcessor(JobStore(session_factory), blocking, retry_policy=retry_policy, settings=settings)

    first = asyncio.create_task(processor.process_queue())
    await blocking.started.wait()

    assert processor.is_running() is True
    second = await processor.process_queue()
    assert second.already_running is True
    assert second.processed == 0

    blocking.release.set()
    result = await first
    assert result.completed == 1
    assert processor.is_running() is False


@pytest.mark.asyncio
async def test_empty_queue_pass(engine):
    result = await engine.queue.process_queue()

    assert (result.processed, result.completed, result.failed) == (0, 0, 0)


@pytest.mark.asyncio
async def test_claim_only_moves_queued_jobs(session_factory, session):
    store = JobStore(session_factory)
    job = await seed_job(session)

    claimed = await store.claim_next()
    assert claimed.id == job.id
    assert claimed.status == JobStatus.PROCESSING
    assert claimed.claimed_at is not None
    assert await store.claim_next() is None

    assert await store.mark_completed(job.id, "https://artifacts.test/a.png") is True
    # terminal jobs are not moved again through the normal flow
    assert await store.mark_failed(job.id, "late failure") is False
    assert (await store.get_job(job.id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_expired_processing_lease_fails_job(engine, session, settings):
    stale = await seed_job(
        session,
        "stuck",
        status=JobStatus.PROCESSING,
        claimed_at=datetime.now(timezone.utc) - timedelta(seconds=settings.processing_lease_seconds + 60),
    )
    fresh = await seed_job(session, "running", status=JobStatus.PROCESSING, claimed_at=datetime.now(timezone.utc))

    await engine.queue.process_queue()

    stuck = await engine.jobs.get_job(stale.id)
    assert stuck.status == JobStatus.FAILED
    assert stuck.error_message == "processing lease expired"
    assert (await engine.jobs.get_job(fresh.id)).status == JobStatus.PROCESSING


@pytest.mark.asyncio
async def test_reset_requires_authorization(engine, session):
    job = await seed_job(session, status=JobStatus.FAILED, error_message="boom", completed_at=datetime.now(timezone.utc))

    with pytest.raises(ValidationError):
        await engine.jobs.reset_to_queued(job.id)

    reset = await engine.jobs.reset_to_queued(job.id, authorized=True)
    assert reset.status == JobStatus.QUEUED
    assert reset.error_message is None
    assert reset.completed_at is None

    envelope = await engine.reset_generation(job.id, authorized=False)
    assert envelope.success is False
    assert envelope.error_code == "validation_error"


@pytest.mark.asyncio
async def test_completed_job_cannot_be_reset(engine, session):
    job = await seed_job(
        session,
        status=JobStatus.COMPLETED,
        result_artifact_ref="https://artifacts.test/done.png",
        consistency_score=88,
        completed_at=datetime.now(timezone.utc),
    )

    with pytest.raises(ValidationError):
        await engine.jobs.reset_to_queued(job.id, authorized=True)

    stored = await engine.jobs.get_job(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.result_artifact_ref == "https://artifacts.test/done.png"
    assert stored.consistency_score == 88

    envelope = await engine.reset_generation(job.id, authorized=True)
    assert envelope.success is False
    assert envelope.error_code == "validation_error"


@pytest.mark.asyncio
async def test_stuck_processing_job_can_be_reset(engine, session):
    job = await seed_job(session, status=JobStatus.PROCESSING, claimed_at=datetime.now(timezone.utc))

    reset = await engine.jobs.reset_to_queued(job.id, authorized=True)

    assert reset.status == JobStatus.QUEUED
    assert reset.claimed_at is None


def test_job_timestamps_are_timezone_aware():
    job = GenerationJob(world_id=uuid4(), prompt="a harbour at night")

    assert job.created_at.tzinfo is not None
    assert job.updated_at.tzinfo is not None


@pytest.mark.asyncio
async def test_pass_over_empty_queue_with_lease_sweep_succeeds(engine, session):
    done = await seed_job(
        session,
        status=JobStatus.COMPLETED,
        result_artifact_ref="https://artifacts.test/old.png",
        completed_at=datetime.now(timezone.utc),
    )

    envelope = await engine.process_queue()

    assert envelope.success is True
    assert envelope.data.processed == 0
    assert (await engine.jobs.get_job(done.id)).status == JobStatus.COMPLETED


class HangingTool:
    def __init__(self) -> None:
        self.calls = 0

    async def generate(self, job) -> str:
        self.calls += 1
        await asyncio.sleep(30)
        return "https://artifacts.test/never.png"


@pytest.mark.asyncio
async def test_generation_timeout_fails_job_without_retry(session_factory, session, settings, retry_policy, sleeper):
    job = await seed_job(session, "slow render")
    hanging = HangingTool()
    fast_settings = settings.model_copy(update={"generation_timeout_seconds": 0.05})
    processor = QueueProcessor(JobStore(session_factory), hanging, retry_policy=retry_policy, settings=fast_settings)

    result = await processor.process_queue()

    assert result.failed == 1
    assert hanging.calls == 1
    assert sleeper.delays == []
    stored = await JobStore(session_factory).get_job(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error_message == "Generation timed out after 0.05s"


def test_lease_must_outlast_generation_timeout():
    from pydantic import ValidationError as SettingsValidationError

    from memory_engine.core.config import Settings

    with pytest.raises(SettingsValidationError):
        Settings(_env_file=None, generation_timeout_seconds=600.0, processing_lease_seconds=300.0)


@pytest.mark.asyncio
async def test_completed_job_is_scored_by_follow_up(engine, session, backend, text_client, visual_client):
    from .test_consistency import seed_entity, store_reference, unit_at

    world_id = uuid4()
    entity = await seed_entity(session, world_id)
    await store_reference(backend, entity, unit_at(0.92), unit_at(0.88))
    job = await seed_job(session, "Aria at the gate", entity_ids=[str(entity.id)])
    visual_client.vectors[f"https://artifacts.test/{job.id}.png"] = [1.0, 0.0]
    text_client.vectors["Aria at the gate"] = [1.0, 0.0]

    result = await engine.queue.process_queue()
    await engine.queue.drain()

    assert result.completed == 1
    assert engine.queue.pending_follow_ups == 0
    assert (await engine.jobs.get_job(job.id)).consistency_score == 90


@pytest.mark.asyncio
async def test_process_queue_envelope_and_running_flag(engine, session):
    await seed_job(session)

    envelope = await engine.process_queue()

    assert envelope.success is True
    assert envelope.data.processed == 1
    assert engine.is_running().data is False
