"""Retry executor — bounded attempts, capped exponential backoff, exhaustion recovery.

Every fallible external invocation (agent runs, session starts) goes through
:class:`RetryExecutor`.  Callers inspect the returned :class:`RetryResult`
rather than catching exceptions; exhaustion with a recovered value counts as
success.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 30_000

RetryHook = Callable[[int, BaseException], None]
ExhaustedHook = Callable[[BaseException], Any]


@dataclass(frozen=True)
class RetryOptions(Generic[T]):
    """One retry session's operation, attempt bound and backoff parameters.

    ``fn`` receives the 1-based attempt number.  ``on_exhausted`` may be sync
    or async; a non-``None`` return value is used as the session's result.
    """

    fn: Callable[[int], Awaitable[T]]
    max_attempts: int
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS
    on_retry: RetryHook | None = None
    on_exhausted: ExhaustedHook | None = None
    description: str = "operation"

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("Retry delays must be non-negative")


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    """Terminal record of one retry session."""

    success: bool
    attempts: int
    result: T | None = None
    error: BaseException | None = None
    recovery_used: bool = False

    @property
    def error_message(self) -> str | None:
        return str(self.error) if self.error is not None else None


def backoff_delay_ms(attempt: int, base_delay_ms: int, max_delay_ms: int) -> int:
    """Delay after failed attempt ``attempt`` (1-based): ``min(base * 2**(n-1), max)``."""
    return min(base_delay_ms * 2 ** (attempt - 1), max_delay_ms)


class RetryExecutor:
    """Executes an async operation with retry.

    ``sleep`` is injectable so tests can observe delays without waiting.
    """

    def __init__(
        self,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._sleep = sleep

    async def execute(self, options: RetryOptions[T]) -> RetryResult[T]:
        """Run ``options.fn`` until it succeeds or attempts are exhausted."""
        last_error: BaseException | None = None

        for attempt in range(1, options.max_attempts + 1):
            try:
                value = await options.fn(attempt)
                return RetryResult(success=True, attempts=attempt, result=value)
            except Exception as exc:
                last_error = exc

            if attempt < options.max_attempts:
                delay_ms = backoff_delay_ms(attempt, options.base_delay_ms, options.max_delay_ms)
                logger.warning(
                    "%s: attempt %d/%d failed, retrying in %dms: %s",
                    options.description,
                    attempt,
                    options.max_attempts,
                    delay_ms,
                    last_error,
                )
                if options.on_retry is not None:
                    try:
                        options.on_retry(attempt, last_error)
                    except Exception:
                        logger.exception("%s: on_retry hook raised", options.description)
                await self._sleep(delay_ms / 1000)

        if last_error is None:
            raise RuntimeError(f"{options.description}: no attempt was made")

        if options.on_exhausted is not None:
            logger.info(
                "%s: all %d attempts failed, trying recovery",
                options.description,
                options.max_attempts,
            )
            try:
                recovered = options.on_exhausted(last_error)
                if inspect.isawaitable(recovered):
                    recovered = await recovered
            except Exception:
                logger.exception("%s: recovery also failed", options.description)
                recovered = None
            if recovered is not None:
                logger.info("%s: recovery succeeded", options.description)
                return RetryResult(
                    success=True,
                    attempts=options.max_attempts,
                    result=recovered,
                    recovery_used=True,
                )

        logger.error(
            "%s: all %d attempts exhausted: %s",
            options.description,
            options.max_attempts,
            last_error,
        )
        return RetryResult(success=False, attempts=options.max_attempts, error=last_error)
