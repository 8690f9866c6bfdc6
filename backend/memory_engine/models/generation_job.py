"""Generation job ORM model.

Classes:
    JobStatus: Enumeration of valid job lifecycle states.
    GenerationTool: Known external generation tools.
    GenerationJob: A request for an external tool to produce an artifact from a prompt and entity references.

Functions:
    utc_now(): Timezone-aware current time used for every job timestamp.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class GenerationTool(str):
    STABLE_DIFFUSION = "stable_diffusion"
    RUNWAY = "runway"
    MIDJOURNEY = "midjourney"
    OTHER = "other"


class GenerationJob(SQLModel, table=True):
    __tablename__ = "generation_jobs"
    __table_args__ = (
        Index("ix_generation_jobs_status_created", "status", "created_at"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    world_id: UUID = Field(index=True)
    branch_id: Optional[UUID] = Field(default=None, index=True)
    entity_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    tool: str = Field(default=GenerationTool.STABLE_DIFFUSION)
    status: str = Field(default=JobStatus.QUEUED, index=True)
    result_artifact_ref: Optional[str] = Field(default=None, sa_column=Column(Text))
    consistency_score: Optional[int] = None
    error_message: Optional[str] = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    claimed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
