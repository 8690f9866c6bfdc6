"""Logging setup for the memory engine.

Modules log through ``logging.getLogger(__name__)``; this module only installs
the handler once and adds job/entity correlation to each line.

Format: TIMESTAMP - LOGGER - LEVEL - MESSAGE [job_id=X entity_id=Y]
"""

from __future__ import annotations

import logging
import sys

_CORRELATION_FIELDS = ("job_id", "entity_id", "world_id", "attempt")
_ROOT_LOGGER = "memory_engine"


class CorrelatedFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        parts = []
        for field in _CORRELATION_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                parts.append(f"{field}={value}")
        if parts:
            return f"{base} [{' '.join(parts)}]"
        return base


def configure_logging(level: str | int = logging.INFO) -> None:
    """Attach a stderr handler to the package logger (idempotent)."""

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger(_ROOT_LOGGER)
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(CorrelatedFormatter())
        logger.addHandler(handler)
    logger.propagate = True
