"""Entity input models owned by the entity-management subsystem.

The engine only reads these rows to build reference vectors.

Classes:
    Entity: User-authored reference subject (character, location, object, style, custom).
    EntityImage: Reference image attached to an entity.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, DateTime, Text
from sqlmodel import Field, SQLModel

from .generation_job import utc_now


class Entity(SQLModel, table=True):
    __tablename__ = "entities"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    world_id: UUID = Field(index=True)
    branch_id: Optional[UUID] = Field(default=None, index=True)
    type: str = Field(default="character")
    name: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))


class EntityImage(SQLModel, table=True):
    __tablename__ = "entity_images"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    entity_id: UUID = Field(foreign_key="entities.id", index=True)
    url: str = Field(sa_column=Column(Text, nullable=False))
    is_primary: bool = Field(default=False)
    uploaded_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
