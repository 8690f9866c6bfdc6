"""Request dependencies shared by the route modules.

Functions:
    get_engine(request): Return the MemoryEngine attached to the application state.
    unwrap(result): Return a successful envelope, or raise the HTTPException matching its error code.
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from memory_engine.schemas.envelope import OperationResult
from memory_engine.services.engine import MemoryEngine

_STATUS_BY_CODE = {
    "validation_error": status.HTTP_400_BAD_REQUEST,
    "not_found": status.HTTP_404_NOT_FOUND,
    "provider_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
    "index_operation_failed": status.HTTP_502_BAD_GATEWAY,
    "job_execution_failed": status.HTTP_502_BAD_GATEWAY,
}


def get_engine(request: Request) -> MemoryEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Engine not started")
    return engine


def unwrap(result: OperationResult) -> OperationResult:
    if result.success:
        return result
    status_code = _STATUS_BY_CODE.get(result.error_code or "", status.HTTP_500_INTERNAL_SERVER_ERROR)
    raise HTTPException(status_code=status_code, detail={"error": result.error, "error_code": result.error_code})
