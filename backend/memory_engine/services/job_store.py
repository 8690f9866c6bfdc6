"""Persistence operations on generation jobs.

Every status write is a conditional ``UPDATE`` guarded on the status the caller
expects, so two claimers can never both own the same job and terminal states
cannot be left through the normal flow.

Classes:
    JobStore: Claim, complete, fail, score and repair generation jobs.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select

from memory_engine.core.errors import NotFoundError, ValidationError
from memory_engine.models import GenerationJob, JobStatus, utc_now

_LOGGER = logging.getLogger(__name__)

_MAX_CLAIM_CONTENTION = 5
_ERROR_MESSAGE_MAX = 2000


class JobStore:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def get_job(self, job_id: UUID) -> Optional[GenerationJob]:
        async with self._session_factory() as session:
            return await session.get(GenerationJob, job_id)

    async def require_job(self, job_id: UUID) -> GenerationJob:
        job = await self.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Generation {job_id} not found", hint="Generation not found.")
        return job

    async def claim_next(self) -> Optional[GenerationJob]:
        """Move the oldest queued job to ``processing`` and return it.

        Returns ``None`` when the queue is empty. Losing a race for a job just
        moves on to the next oldest one.
        """

        for _ in range(_MAX_CLAIM_CONTENTION):
            async with self._session_factory() as session:
                stmt = (
                    select(GenerationJob.id)
                    .where(GenerationJob.status == JobStatus.QUEUED)
                    .order_by(GenerationJob.created_at, GenerationJob.id)
                    .limit(1)
                )
                candidate = (await session.exec(stmt)).first()
                if candidate is None:
                    return None

                now = utc_now()
                result = await session.execute(
                    update(GenerationJob)
                    .where(GenerationJob.id == candidate, GenerationJob.status == JobStatus.QUEUED)
                    .values(status=JobStatus.PROCESSING, claimed_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                if result.rowcount == 1:
                    return await session.get(GenerationJob, candidate)
            _LOGGER.debug("Lost claim race for job %s, retrying", candidate)
        return None

    async def mark_completed(self, job_id: UUID, artifact_ref: str) -> bool:
        now = utc_now()
        return await self._transition(
            job_id,
            expected=JobStatus.PROCESSING,
            status=JobStatus.COMPLETED,
            result_artifact_ref=artifact_ref,
            error_message=None,
            completed_at=now,
            updated_at=now,
        )

    async def mark_failed(self, job_id: UUID, message: str) -> bool:
        now = utc_now()
        return await self._transition(
            job_id,
            expected=JobStatus.PROCESSING,
            status=JobStatus.FAILED,
            error_message=message[:_ERROR_MESSAGE_MAX],
            completed_at=now,
            updated_at=now,
        )

    async def update_consistency_score(self, job_id: UUID, score: int) -> bool:
        """Record a score; only a completed job with an artifact can carry one."""

        async with self._session_factory() as session:
            result = await session.execute(
                update(GenerationJob)
                .where(
                    GenerationJob.id == job_id,
                    GenerationJob.status == JobStatus.COMPLETED,
                    GenerationJob.result_artifact_ref.is_not(None),
                )
                .values(consistency_score=max(0, min(100, int(score))), updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def fail_stale_claims(self, lease_seconds: float) -> int:
        """Fail jobs stuck in ``processing`` longer than the lease.

        They are not re-queued automatically since the tool may already have
        produced an artifact; ``reset_to_queued`` is the explicit repair path.
        """

        now = utc_now()
        cutoff = now - timedelta(seconds=lease_seconds)
        async with self._session_factory() as session:
            result = await session.execute(
                update(GenerationJob)
                .where(
                    GenerationJob.status == JobStatus.PROCESSING,
                    GenerationJob.claimed_at.is_not(None),
                    GenerationJob.claimed_at < cutoff,
                )
                .values(
                    status=JobStatus.FAILED,
                    error_message="processing lease expired",
                    completed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            count = result.rowcount or 0
        if count:
            _LOGGER.warning("Failed %d generation jobs whose processing lease expired", count)
        return count

    async def reset_to_queued(self, job_id: UUID, *, authorized: bool = False) -> GenerationJob:
        """Repair path: put a failed or stuck job back in the queue, clearing its outcome."""

        if not authorized:
            raise ValidationError(
                "Resetting a generation job requires explicit authorization",
                hint="Resetting a generation requires authorization.",
            )
        job = await self.require_job(job_id)
        if job.status == JobStatus.QUEUED:
            return job
        if job.status not in (JobStatus.FAILED, JobStatus.PROCESSING):
            raise ValidationError(
                f"Generation job in status {job.status} cannot be reset",
                hint="Only failed or stuck generations can be reset.",
            )

        async with self._session_factory() as session:
            await session.execute(
                update(GenerationJob)
                .where(GenerationJob.id == job_id, GenerationJob.status == job.status)
                .values(
                    status=JobStatus.QUEUED,
                    result_artifact_ref=None,
                    consistency_score=None,
                    error_message=None,
                    claimed_at=None,
                    completed_at=None,
                    updated_at=utc_now(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        _LOGGER.info("Generation job reset to queued", extra={"job_id": str(job_id)})
        return await self.require_job(job_id)

    async def count_by_status(self, world_id: UUID | None = None) -> dict[str, int]:
        async with self._session_factory() as session:
            stmt = select(GenerationJob.status, func.count()).group_by(GenerationJob.status)
            if world_id is not None:
                stmt = stmt.where(GenerationJob.world_id == world_id)
            rows = (await session.exec(stmt)).all()
        counts = {status: 0 for status in (JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED)}
        for status, count in rows:
            counts[status] = int(count)
        return counts

    async def _transition(self, job_id: UUID, *, expected: str, **values) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(GenerationJob)
                .where(GenerationJob.id == job_id, GenerationJob.status == expected)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            changed = result.rowcount == 1
        if not changed:
            _LOGGER.warning(
                "Job was not in %s, skipped transition to %s",
                expected,
                values.get("status"),
                extra={"job_id": str(job_id)},
            )
        return changed
