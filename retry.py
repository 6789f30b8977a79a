"""
Retry helpers for calls to the upstream generation API.

Two backoff curves are in use:
- `ExponentialBackoff` wraps single upstream calls (`retry_with_backoff`).
- `LinearBackoff` spaces the per-prompt attempts of batch generation.
"""
import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_BATCH_STEP_MS = 500
MIN_BATCH_ATTEMPTS = 1
MAX_BATCH_ATTEMPTS = 5

Sleeper = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class ExponentialBackoff:
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS

    def delay_ms(self, attempt_index: int) -> int:
        """Delay after the zero-based attempt `attempt_index` failed."""
        return self.base_delay_ms * (2 ** attempt_index)


@dataclass(frozen=True)
class LinearBackoff:
    step_ms: int = DEFAULT_BATCH_STEP_MS

    def delay_ms(self, attempt_number: int) -> int:
        """Delay after the one-based attempt `attempt_number` failed."""
        return self.step_ms * attempt_number


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
    sleep: Sleeper = asyncio.sleep,
) -> T:
    """
    Run `operation` until it succeeds or `max_attempts` is exhausted.

    Between failed attempts waits `base_delay_ms * 2**attempt` milliseconds.
    The error of the final attempt is re-raised unchanged.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

    policy = ExponentialBackoff(base_delay_ms)
    for attempt in range(max_attempts):
        try:
            return await operation()
        except Exception as e:
            if attempt == max_attempts - 1:
                logger.error(f"Attempt {attempt + 1}/{max_attempts} failed, giving up: {e}")
                raise
            delay = policy.delay_ms(attempt)
            logger.warning(f"Attempt {attempt + 1} failed, retrying in {delay}ms: {e}")
            await sleep(delay / 1000)

    # unreachable: the loop either returns or raises
    raise RuntimeError("retry loop exited without a result")


def clamp_attempts(
    value: Any,
    default: int = DEFAULT_MAX_ATTEMPTS,
    low: int = MIN_BATCH_ATTEMPTS,
    high: int = MAX_BATCH_ATTEMPTS,
) -> int:
    """Clamp a caller-supplied attempt count into [low, high]; non-numbers use the default."""
    if value is None or isinstance(value, bool):
        attempts = default
    else:
        try:
            # fractional counts round up: 2.7 allows a third attempt
            attempts = math.ceil(value) if isinstance(value, float) else int(value)
        except (TypeError, ValueError, OverflowError):
            attempts = default
    return max(low, min(high, attempts))
