"""
Bounded exponential-backoff retries for embedding and store calls.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from .errors import ExhaustedRetryError, TransientIOError
from .metrics import RETRIES

logger = logging.getLogger("aigis.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 5
    min_wait: float = 0.5
    max_wait: float = 30.0

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            attempts=settings.retry_attempts,
            min_wait=settings.retry_min_wait,
            max_wait=settings.retry_max_wait,
        )


async def call_with_retry(
    stage: str,
    policy: RetryPolicy,
    fn: Callable[[], Awaitable[T]],
) -> T:
    """
    Await `fn()` until it succeeds, retrying TransientIOError only.

    Raises ExhaustedRetryError once `policy.attempts` calls have failed.
    Any other exception propagates immediately.
    """

    def _before_sleep(state: RetryCallState) -> None:
        RETRIES.labels(stage=stage).inc()
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "%s attempt %d failed (%s), retrying",
            stage,
            state.attempt_number,
            exc,
        )

    retrying = AsyncRetrying(
        wait=wait_random_exponential(multiplier=policy.min_wait, max=policy.max_wait),
        stop=stop_after_attempt(policy.attempts),
        retry=retry_if_exception_type(TransientIOError),
        before_sleep=_before_sleep,
    )

    try:
        async for attempt in retrying:
            with attempt:
                return await fn()
    except RetryError as exc:
        last = exc.last_attempt.exception()
        raise ExhaustedRetryError(stage, policy.attempts, last) from last
    raise AssertionError("unreachable")  # pragma: no cover
