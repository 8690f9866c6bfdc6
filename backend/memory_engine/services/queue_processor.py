"""Generation queue processing.

Classes:
    QueuePassResult: Counters for a single pass over the queue.
    QueueProcessor: Single-flight worker that claims queued jobs, runs the generation tool and
        schedules consistency scoring for produced artifacts.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, replace
from typing import Optional
from uuid import UUID

import httpx

from memory_engine.core.config import Settings, get_settings
from memory_engine.core.errors import JobExecutionFailed
from memory_engine.models import GenerationJob
from memory_engine.services.consistency import ConsistencyService
from memory_engine.services.generation_tool import GenerationTool
from memory_engine.services.job_store import JobStore
from memory_engine.services.retry import RetryPolicy, is_transient_error

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class QueuePassResult:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    already_running: bool = False


def _job_failed(message: str, cause: BaseException, attempts: int) -> Exception:
    return JobExecutionFailed(message)


def _is_retryable_generation(exc: BaseException) -> bool:
    # a timed out request may have left a live prediction behind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return False
    return is_transient_error(exc)


class QueueProcessor:
    def __init__(
        self,
        job_store: JobStore,
        tool: GenerationTool,
        *,
        consistency: ConsistencyService | None = None,
        retry_policy: RetryPolicy | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._jobs = job_store
        self._tool = tool
        self._consistency = consistency
        retry = retry_policy or RetryPolicy.from_settings(self._settings)
        self._retry = replace(retry, is_retryable=_is_retryable_generation)
        self._lock = threading.Lock()
        self._follow_ups: set[asyncio.Task] = set()

    def is_running(self) -> bool:
        return self._lock.locked()

    @property
    def pending_follow_ups(self) -> int:
        return len(self._follow_ups)

    async def process_queue(self) -> QueuePassResult:
        """Process up to ``queue_batch_size`` queued jobs, oldest first.

        A call made while another pass is in flight returns at once with
        ``already_running=True``. Tool failures are recorded on the job and never
        raised; job store failures are.
        """

        if not self._lock.acquire(blocking=False):
            _LOGGER.info("Queue processing already running, skipping this pass")
            return QueuePassResult(already_running=True)
        try:
            return await self._run_pass()
        finally:
            self._lock.release()

    async def _run_pass(self) -> QueuePassResult:
        result = QueuePassResult()
        await self._jobs.fail_stale_claims(self._settings.processing_lease_seconds)

        while result.processed < self._settings.queue_batch_size:
            job = await self._jobs.claim_next()
            if job is None:
                break
            result.processed += 1
            if await self._execute(job):
                result.completed += 1
            else:
                result.failed += 1

        if result.processed:
            _LOGGER.info(
                "Queue pass finished: %d processed, %d completed, %d failed",
                result.processed,
                result.completed,
                result.failed,
            )
        return result

    async def _execute(self, job: GenerationJob) -> bool:
        extra = {"job_id": str(job.id), "world_id": str(job.world_id)}
        _LOGGER.info("Processing generation job with %s", job.tool, extra=extra)
        timeout = self._settings.generation_timeout_seconds
        try:
            # one budget covers every attempt so a job always finishes inside its lease
            artifact_ref = await asyncio.wait_for(
                self._retry.call(lambda: self._tool.generate(job), context="Generation", exhausted=_job_failed),
                timeout,
            )
        except asyncio.TimeoutError:
            message = f"Generation timed out after {timeout:g}s"
            _LOGGER.warning("Generation job failed: %s", message, extra=extra)
            await self._jobs.mark_failed(job.id, message)
            return False
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            _LOGGER.warning("Generation job failed: %s", message, extra=extra)
            await self._jobs.mark_failed(job.id, message)
            return False

        if not artifact_ref:
            await self._jobs.mark_failed(job.id, "Generation tool returned no artifact")
            return False

        if not await self._jobs.mark_completed(job.id, artifact_ref):
            return False
        _LOGGER.info("Generation job completed", extra=extra)
        self._schedule_consistency(job.id, artifact_ref)
        return True

    def _schedule_consistency(self, job_id: UUID, artifact_ref: str) -> None:
        if self._consistency is None:
            return
        task = asyncio.create_task(self._score_artifact(self._consistency, job_id, artifact_ref))
        self._follow_ups.add(task)
        task.add_done_callback(self._follow_ups.discard)

    async def _score_artifact(
        self, consistency: ConsistencyService, job_id: UUID, artifact_ref: str
    ) -> Optional[int]:
        try:
            result = await consistency.analyze_consistency(job_id, artifact_ref)
            if result.score is None:
                return None
            await consistency.update_job_consistency(job_id, result.score)
            return result.score
        except Exception as exc:
            # the job stays completed; scoring can be re-run on demand
            _LOGGER.warning("Consistency follow-up failed: %r", exc, extra={"job_id": str(job_id)})
            return None

    async def drain(self) -> None:
        """Wait for every scheduled consistency follow-up to finish."""

        while self._follow_ups:
            await asyncio.gather(*list(self._follow_ups), return_exceptions=True)

    async def aclose(self, timeout: float | None = None) -> None:
        if not self._follow_ups:
            return
        pending = list(self._follow_ups)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            _LOGGER.warning("Cancelled %d pending consistency follow-ups", len(still_running))
