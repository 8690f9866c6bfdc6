"""Convenience exports for ORM models.

Surface frequently used SQLModel classes so calling code can import them from a single module.
"""

from .entity import Entity, EntityImage
from .generation_job import GenerationJob, GenerationTool, JobStatus, utc_now

__all__ = [
    "Entity",
    "EntityImage",
    "GenerationJob",
    "GenerationTool",
    "JobStatus",
    "utc_now",
]
