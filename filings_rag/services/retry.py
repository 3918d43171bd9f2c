# =============================================================================
# Resilience Wrapper — Exponential Backoff Retry
# =============================================================================
#
# Runs any fallible async operation with exponential backoff. The retrieval
# service wraps its two network-bound steps in it: the embedding call and
# the similarity index query.
#
# DELAY FORMULA (attempt a is 0-based):
#   delay = min(base_delay_ms * backoff_multiplier**a, max_delay_ms)
#   if jitter > 0: delay += uniform(-delay * jitter, +delay * jitter)
#   delay = max(0, delay)
#
# ALGORITHM:
#   attempt → success                 → RetryResult(success=True)
#           → failure, !should_retry  → RetryResult(retries_exhausted=False)
#           → failure, retries left   → sleep(delay), attempt again
#           → failure, none left      → RetryResult(retries_exhausted=True)
#
# Total attempts never exceed 1 + max_retries, whatever should_retry says.
#
# The module knows nothing about embeddings, chunks or tenants.
#
# CANCELLATION: an outer deadline (asyncio.timeout / wait_for) cancels the
# in-flight attempt or sleep. CancelledError is a BaseException and passes
# straight through; it is never turned into a RetryResult.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _always_retry(error: Exception, attempt: int) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """
    Configuration for retry_with_backoff().

    Attributes:
        max_retries: Retries after the first attempt (3 → up to 4 attempts).
        base_delay_ms: Delay before the first retry, in milliseconds.
        backoff_multiplier: Growth factor per attempt.
        max_delay_ms: Cap applied before jitter.
        jitter: Fraction in [0, 1] of the delay used as a ± random band.
        should_retry: (error, attempt) -> bool. False short-circuits.
        on_retry: (error, attempt, delay_ms) called before each sleep.
        on_exhausted: (last_error, total_attempts) called on exhaustion.
        on_success: (result, total_attempts) called on success.
    """

    max_retries: int = 3
    base_delay_ms: float = 1000
    backoff_multiplier: float = 2
    max_delay_ms: float = 30000
    jitter: float = 0.0
    should_retry: Callable[[Exception, int], bool] = _always_retry
    on_retry: Callable[[Exception, int, float], None] | None = None
    on_exhausted: Callable[[Exception, int], None] | None = None
    on_success: Callable[[Any, int], None] | None = None

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be within [0, 1]")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be >= 0")

    def merged(self, **overrides: Any) -> RetryPolicy:
        """Return a copy with the given fields replaced."""
        return replace(self, **overrides)


@dataclass
class RetryResult(Generic[T]):
    """
    Outcome of retry_with_backoff().

    retries_exhausted distinguishes "gave up after max_retries" from
    "stopped early because should_retry said no".
    """

    success: bool
    total_attempts: int
    retries_exhausted: bool = False
    data: T | None = None
    error: Exception | None = None

    def unwrap(self) -> T:
        """Return data on success, otherwise raise the final error."""
        if self.success:
            return self.data  # type: ignore[return-value]
        assert self.error is not None
        raise self.error


def calculate_backoff_delay(
    attempt: int,
    base_delay_ms: float = 1000,
    backoff_multiplier: float = 2,
    max_delay_ms: float = 30000,
    jitter: float = 0.0,
) -> float:
    """
    Delay in milliseconds before retry number `attempt` (0-based).

    >>> [calculate_backoff_delay(a) for a in range(6)]
    [1000, 2000, 4000, 8000, 16000, 30000]
    """
    capped = min(base_delay_ms * backoff_multiplier**attempt, max_delay_ms)

    if jitter > 0:
        band = capped * jitter
        return max(0.0, capped + random.uniform(-band, band))

    return capped


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
) -> RetryResult[T]:
    """
    Execute `operation` with exponential backoff.

    Args:
        operation: Zero-argument coroutine function. Called once per attempt.
        policy: Retry configuration. Defaults to RetryPolicy().

    Returns:
        RetryResult with the data on success, or the last error and whether
        retries were exhausted on failure. Never raises for operation
        errors (Exception subclasses).
    """
    policy = policy or RetryPolicy()
    attempt = 0

    while True:
        try:
            result = await operation()
        except Exception as error:
            total = attempt + 1

            if not policy.should_retry(error, attempt):
                logger.debug(
                    "Non-retryable error on attempt %d: %s", total, error,
                )
                return RetryResult(
                    success=False,
                    total_attempts=total,
                    retries_exhausted=False,
                    error=error,
                )

            if attempt >= policy.max_retries:
                logger.warning(
                    "Retries exhausted after %d attempts: %s", total, error,
                )
                if policy.on_exhausted:
                    policy.on_exhausted(error, total)
                return RetryResult(
                    success=False,
                    total_attempts=total,
                    retries_exhausted=True,
                    error=error,
                )

            delay_ms = calculate_backoff_delay(
                attempt,
                policy.base_delay_ms,
                policy.backoff_multiplier,
                policy.max_delay_ms,
                policy.jitter,
            )
            if policy.on_retry:
                policy.on_retry(error, attempt, delay_ms)

            await asyncio.sleep(delay_ms / 1000)
            attempt += 1
            continue

        total = attempt + 1
        if policy.on_success:
            policy.on_success(result, total)
        return RetryResult(success=True, total_attempts=total, data=result)


# ---------------------------------------------------------------------------
# Presets
# ---------------------------------------------------------------------------
# fast     — cheap, latency-sensitive calls
# standard — most network calls
# slow     — expensive upstream operations
# patient  — must-succeed operations, with jitter to spread retries
# ---------------------------------------------------------------------------
RETRY_PRESETS: dict[str, RetryPolicy] = {
    "fast": RetryPolicy(
        max_retries=3, base_delay_ms=500, backoff_multiplier=1.5, max_delay_ms=5000,
    ),
    "standard": RetryPolicy(
        max_retries=3, base_delay_ms=1000, backoff_multiplier=2, max_delay_ms=10000,
    ),
    "slow": RetryPolicy(
        max_retries=3, base_delay_ms=2000, backoff_multiplier=2, max_delay_ms=30000,
    ),
    "patient": RetryPolicy(
        max_retries=5,
        base_delay_ms=3000,
        backoff_multiplier=1.5,
        max_delay_ms=60000,
        jitter=0.1,
    ),
}
