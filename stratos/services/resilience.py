from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from stratos.core.config import get_settings
from stratos.core.errors import ConflictError, OperationTimeoutError


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _default_retryable(exc: Exception) -> bool:
    # Only optimistic-concurrency clashes are retried; outages belong to the caller.
    return isinstance(exc, ConflictError)


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize conflict retry behavior for deterministic policy changes.
    max_attempts: int
    backoff_ms: int


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        max_attempts=settings.usage_retry_max_attempts,
        backoff_ms=settings.usage_retry_backoff_ms,
    )


def default_timeout_s() -> float:
    return get_settings().usage_op_timeout_ms / 1000.0


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    operation: str = "operation",
) -> T:
    # Retry helper with jittered exponential backoff for retryable failures only.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await func()
        except Exception as exc:  # noqa: BLE001 - non-retryable failures are re-raised
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                if retryable(exc):
                    logger.warning("retry_exhausted operation=%s attempts=%s", operation, attempt)
                raise
            logger.debug("retry_attempt operation=%s attempt=%s", operation, attempt)
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            await asyncio.sleep(sleep_s)
            attempt += 1


async def run_with_deadline(
    awaitable: Awaitable[T],
    *,
    timeout_s: float | None,
    operation: str,
) -> T:
    # Bound a whole operation, retries included, by the caller's deadline.
    resolved = default_timeout_s() if timeout_s is None else timeout_s
    try:
        return await asyncio.wait_for(awaitable, timeout=resolved)
    except asyncio.TimeoutError as exc:
        logger.warning("operation_timeout operation=%s timeout_s=%s", operation, resolved)
        raise OperationTimeoutError(
            f"{operation} exceeded its deadline",
            details={"timeout_s": resolved},
        ) from exc
