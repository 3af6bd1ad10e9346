"""
Retry policies with exponential backoff and jitter.

Usage:
    result = await retry(lambda: client.upload(...), STORAGE_UPLOAD_POLICY)

Three named profiles cover the network calls in the staging pipeline:

- DEFAULT_POLICY: generic network/timeout/5xx failures (source image fetch)
- STORAGE_UPLOAD_POLICY: object storage writes; format/size errors are fatal
- AI_GENERATION_POLICY: rate limits and provider unavailability only.
  AI calls are expensive, so it stops after two attempts.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from services.errors import (
    AccessDenied,
    CircuitOpenError,
    ImageFormatError,
    InvalidInput,
    OperationTimeout,
    RateLimited,
    ServiceUnavailable,
    StagingError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _message(error: BaseException) -> str:
    return str(error).lower()


def is_network_error(error: BaseException) -> bool:
    """Network drops, timeouts and 5xx-style unavailability."""
    if isinstance(error, StagingError):
        return isinstance(error, (TransientNetworkError, OperationTimeout, ServiceUnavailable))
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    message = _message(error)
    return "timeout" in message or "network" in message


def is_storage_retryable(error: BaseException) -> bool:
    """Retry uploads on network/timeout errors, never on format or size problems."""
    if isinstance(error, (ImageFormatError, InvalidInput, AccessDenied)):
        return False
    message = _message(error)
    if "too large" in message or "invalid format" in message:
        return False
    if is_network_error(error):
        return True
    return "upload" in message


def is_ai_retryable(error: BaseException) -> bool:
    """Retry rate limits and transient provider unavailability only."""
    if isinstance(error, (RateLimited, ServiceUnavailable, OperationTimeout)):
        return True
    if isinstance(error, (CircuitOpenError, InvalidInput, AccessDenied)):
        return False
    if isinstance(error, StagingError):
        return False
    message = _message(error)
    if "invalid" in message or "unauthorized" in message:
        return False
    return (
        "rate limit" in message
        or "quota" in message
        or "service unavailable" in message
        or "timeout" in message
    )


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try, how long to wait, and which errors are worth retrying."""

    name: str
    max_attempts: int
    base_delay: float  # seconds
    max_delay: float  # seconds
    exponential_backoff: bool = True
    is_retryable: Callable[[BaseException], bool] = field(default=is_network_error)
    jitter: float = 1.0  # seconds, uniform [0, jitter)


DEFAULT_POLICY = RetryPolicy(
    name="default",
    max_attempts=3,
    base_delay=1.0,
    max_delay=10.0,
    is_retryable=is_network_error,
)

STORAGE_UPLOAD_POLICY = RetryPolicy(
    name="storage_upload",
    max_attempts=3,
    base_delay=2.0,
    max_delay=15.0,
    is_retryable=is_storage_retryable,
)

AI_GENERATION_POLICY = RetryPolicy(
    name="ai_generation",
    max_attempts=2,
    base_delay=5.0,
    max_delay=30.0,
    is_retryable=is_ai_retryable,
)


def compute_delay(
    policy: RetryPolicy,
    attempt: int,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Delay in seconds to wait after failed attempt number ``attempt`` (1-based).

    Never exceeds ``policy.max_delay + policy.jitter``.
    """
    if policy.exponential_backoff:
        delay = min(policy.base_delay * (2 ** (attempt - 1)), policy.max_delay)
    else:
        delay = min(policy.base_delay, policy.max_delay)
    if policy.jitter > 0:
        delay += (rng or random).uniform(0, policy.jitter)
    return delay


async def retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    """
    Run ``operation`` until it succeeds or the policy gives up.

    The last error is re-raised unchanged. Non-retryable errors are raised
    after the first attempt with no delay.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            if attempt >= policy.max_attempts or not policy.is_retryable(exc):
                raise
            delay = compute_delay(policy, attempt)
            logger.warning(
                "[Retry] %s attempt %d/%d failed, retrying in %.1fs: %s",
                policy.name, attempt, policy.max_attempts, delay, str(exc)[:200],
            )
            if on_retry is not None:
                on_retry(attempt, exc)
            await sleep(delay)
