"""Error taxonomy shared by every component of the memory engine.

Each error carries a stable ``code`` and a short ``hint`` that is safe to show
to end users. Raw provider/backend messages stay on the exception chain and in
the logs, never in the hint.

Classes:
    MemoryEngineError: Base class for classified failures.
    ValidationError: Bad input (empty text, vector dimension mismatch); never retried.
    ProviderUnavailable: A remote provider kept failing after the retry budget was spent.
    IndexOperationFailed: The vector index rejected an operation for a reason other than "not found".
    NotFoundIgnored: Internal marker for "nothing matched" results that are normalised to success.
    NotFoundError: A referenced entity or job does not exist.
    JobExecutionFailed: The external generation tool could not produce an artifact.
"""

from __future__ import annotations


class MemoryEngineError(Exception):
    code = "internal_error"
    hint = "Something went wrong, try again later."

    def __init__(self, message: str | None = None, *, hint: str | None = None) -> None:
        super().__init__(message or self.hint)
        if hint is not None:
            self.hint = hint


class ValidationError(MemoryEngineError):
    code = "validation_error"
    hint = "The request was invalid."


class ProviderUnavailable(MemoryEngineError):
    code = "provider_unavailable"
    hint = "The embedding provider is unavailable, try later."

    def __init__(
        self,
        message: str | None = None,
        *,
        hint: str | None = None,
        attempts: int = 0,
        rate_limited: bool = False,
    ) -> None:
        if hint is None and rate_limited:
            hint = "Rate limited, try later."
        super().__init__(message, hint=hint)
        self.attempts = attempts
        self.rate_limited = rate_limited


class IndexOperationFailed(MemoryEngineError):
    code = "index_operation_failed"
    hint = "The vector index could not complete the operation, try later."


class NotFoundIgnored(MemoryEngineError):
    code = "not_found_ignored"
    hint = "Nothing matched."


class NotFoundError(MemoryEngineError):
    code = "not_found"
    hint = "The requested record was not found."


class JobExecutionFailed(MemoryEngineError):
    code = "job_execution_failed"
    hint = "The generation tool failed to produce an artifact."


def user_message(exc: BaseException) -> str:
    """Return the classified, user-safe message for an exception."""

    if isinstance(exc, MemoryEngineError):
        return exc.hint
    return MemoryEngineError.hint


def error_code(exc: BaseException) -> str:
    if isinstance(exc, MemoryEngineError):
        return exc.code
    return MemoryEngineError.code
