"""
Retry with exponential backoff.

One combinator shared by the HTTP fetch path and the database write path.
Each call site supplies its own classifier deciding which errors are worth
another attempt.

Usage:
    policy = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=5.0)

    data = await retry_async(
        lambda: client.get_json(url),
        policy,
        is_retryable=lambda e: isinstance(e, TransientNetworkError),
    )
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")

RetryCallback = Callable[[int, BaseException, float], None]


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters for one call site."""

    # Total attempts, including the first one
    max_attempts: int = 3

    # Delay before the second attempt, in seconds
    base_delay: float = 1.0

    # Upper bound on the exponential part (None = unbounded)
    max_delay: float | None = None

    # Uniform random delay added on top, in seconds
    jitter: float = 0.0

    def delay_for(self, attempt: int) -> float:
        """
        Delay after the given failed attempt (1-based).

        base * 2^(attempt-1), capped, plus jitter in [0, jitter].
        """
        delay = self.base_delay * (2 ** (attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        if self.jitter > 0:
            delay += random.uniform(0, self.jitter)
        return delay


class RetryError(Exception):
    """All attempts failed with retryable errors."""

    def __init__(self, last_error: BaseException, attempts: int):
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")


async def retry_async(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    is_retryable: Callable[[BaseException], bool],
    on_retry: RetryCallback | None = None,
) -> T:
    """
    Call func until it succeeds or attempts run out.

    Args:
        func: Zero-argument coroutine factory, called once per attempt
        policy: Backoff parameters
        is_retryable: Classifier; False re-raises the error unchanged
        on_retry: Called as (attempt, error, delay) before each sleep

    Returns:
        The value returned by the successful attempt

    Raises:
        RetryError: If every attempt failed with a retryable error
        Exception: The first non-retryable error, as raised
    """
    last_error: BaseException | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not is_retryable(e):
                raise
            last_error = e

        if attempt < policy.max_attempts:
            delay = policy.delay_for(attempt)
            if on_retry:
                on_retry(attempt, last_error, delay)
            await asyncio.sleep(delay)

    assert last_error is not None
    raise RetryError(last_error, policy.max_attempts)
