"""Success/error envelope returned by every exposed operation.

Classes:
    OperationResult: ``success`` plus either ``data`` or a classified ``error`` and ``error_code``.
"""

from __future__ import annotations

from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel

from memory_engine.core.errors import error_code, user_message

T = TypeVar("T")


class OperationResult(BaseModel, Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "OperationResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, exc: BaseException) -> "OperationResult[T]":
        return cls(success=False, error=user_message(exc), error_code=error_code(exc))
