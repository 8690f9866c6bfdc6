"""Retry-with-backoff policy applied at every remote call site.

Classes:
    RetryPolicy: Exponential backoff driven by tenacity, bounded per attempt by a timeout.

Functions:
    is_transient_error(exc): Default retryability predicate (HTTP 429, HTTP 5xx, connection reset/timeout/DNS).
    status_code_of(exc): Best-effort extraction of an HTTP-style status code from provider errors.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
import openai
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from memory_engine.core.errors import MemoryEngineError, ProviderUnavailable

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

ExhaustedFactory = Callable[[str, BaseException, int], Exception]


def status_code_of(exc: BaseException) -> Optional[int]:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    for attr in ("status_code", "status", "http_status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    cause = exc.__cause__
    if cause is not None and cause is not exc:
        for attr in ("status_code", "status"):
            value = getattr(cause, attr, None)
            if isinstance(value, int):
                return value
    return None


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, MemoryEngineError):
        return False
    if isinstance(exc, (openai.APIConnectionError, httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, socket.gaierror)):
        return True
    status = status_code_of(exc)
    if status is None:
        return False
    return status == 429 or 500 <= status < 600


def _provider_unavailable(message: str, cause: BaseException, attempts: int) -> Exception:
    return ProviderUnavailable(message, attempts=attempts, rate_limited=status_code_of(cause) == 429)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retry schedule plus retryability predicate.

    Delays follow ``initial_delay * multiplier ** n`` capped at ``max_delay``;
    with the defaults that is 1s, 2s, 4s across four attempts. Each attempt is
    bounded by the caller's timeout and an expired timeout counts as a
    transient transport failure.
    """

    max_attempts: int = 4
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 10.0
    is_retryable: Callable[[BaseException], bool] = is_transient_error
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_settings(cls, settings, **overrides: Any) -> "RetryPolicy":
        params: dict[str, Any] = dict(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay_seconds,
            multiplier=settings.retry_backoff_multiplier,
            max_delay=settings.retry_max_delay_seconds,
        )
        params.update(overrides)
        return cls(**params)

    def backoff_schedule(self) -> list[float]:
        return [
            min(self.initial_delay * self.multiplier**attempt, self.max_delay)
            for attempt in range(max(self.max_attempts - 1, 0))
        ]

    async def call(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        context: str,
        timeout: float | None = None,
        exhausted: ExhaustedFactory = _provider_unavailable,
    ) -> T:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.initial_delay,
                exp_base=self.multiplier,
                max=self.max_delay,
            ),
            retry=retry_if_exception(self.is_retryable),
            sleep=self.sleep,
            before_sleep=lambda state: self._log_retry(context, state),
        )

        try:
            async for attempt in retrying:
                with attempt:
                    if timeout is None:
                        result = await fn()
                    else:
                        result = await asyncio.wait_for(fn(), timeout)
        except RetryError as exc:
            cause = exc.last_attempt.exception()
            if cause is None:  # pragma: no cover - stop only fires on failures
                cause = exc
            attempts = exc.last_attempt.attempt_number
            _LOGGER.error("%s failed after %d attempts: %r", context, attempts, cause)
            raise exhausted(f"{context} failed after {attempts} attempts: {cause}", cause, attempts) from cause
        return result

    def _log_retry(self, context: str, state: RetryCallState) -> None:
        outcome = state.outcome
        error = outcome.exception() if outcome is not None else None
        delay = state.next_action.sleep if state.next_action is not None else 0.0
        _LOGGER.warning(
            "%s failed (attempt %d/%d), retrying in %.2fs: %r",
            context,
            state.attempt_number,
            self.max_attempts,
            delay,
            error,
            extra={"attempt": state.attempt_number},
        )
