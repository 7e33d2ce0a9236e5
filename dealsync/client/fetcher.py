"""
Rate-Limited Batch Fetcher

Fetches many URLs from a rate-limited API in fixed-size windows:
- All requests of a window run concurrently
- Each request retries on its own with capped exponential backoff
- The next window starts no sooner than the minimum interval after the
  previous one started
- A URL that exhausts its retries is dropped without touching its siblings
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

from rich.console import Console

from dealsync.config import Settings
from dealsync.exceptions import (
    DeadlineExceeded,
    FatalAuthError,
    SyncError,
    TransientNetworkError,
)
from dealsync.retry import RetryError, RetryPolicy, retry_async

logger = logging.getLogger(__name__)
console = Console()


class JsonGetter(Protocol):
    """Anything that can GET a URL and return decoded JSON."""

    async def get_json(self, url: str) -> dict[str, Any]: ...


@dataclass(frozen=True)
class RateLimitPolicy:
    """
    Request budget for one source API.

    Passed explicitly into each fetcher so engines for different sources
    never share or race on limiter state.
    """

    # Requests issued concurrently per window
    batch_size: int = 10

    # Minimum time between the starts of two windows
    min_batch_interval_ms: int = 700

    # Added on top of the interval
    safety_buffer_ms: int = 50

    # Attempts per request, including the first one
    max_retries: int = 3

    # Retry backoff: min(base * 2^(attempt-1), cap)
    backoff_base_ms: int = 1000
    backoff_cap_ms: int = 5000

    # Hard timeout for a single request, independent of its window
    request_timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {self.batch_size}")
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {self.max_retries}")

    @classmethod
    def from_settings(cls, config: Settings) -> "RateLimitPolicy":
        """Build the policy from ingestor settings."""
        return cls(
            batch_size=config.fetch_batch_size,
            min_batch_interval_ms=config.fetch_min_batch_interval_ms,
            safety_buffer_ms=config.fetch_safety_buffer_ms,
            max_retries=config.fetch_max_retries,
            backoff_base_ms=config.fetch_backoff_base_ms,
            backoff_cap_ms=config.fetch_backoff_cap_ms,
            request_timeout=config.request_timeout,
        )

    @property
    def window_interval(self) -> float:
        """Minimum seconds between window starts."""
        return (self.min_batch_interval_ms + self.safety_buffer_ms) / 1000

    def retry_policy(self) -> RetryPolicy:
        """Backoff parameters for a single request."""
        return RetryPolicy(
            max_attempts=self.max_retries,
            base_delay=self.backoff_base_ms / 1000,
            max_delay=self.backoff_cap_ms / 1000,
        )


@dataclass
class FetchResult:
    """A URL fetched successfully."""

    url: str
    data: dict[str, Any]
    attempts: int = 1
    fetch_time: float = 0.0


@dataclass
class FetchFailure:
    """A URL whose data was dropped."""

    url: str
    error: BaseException
    attempts: int = 0


@dataclass
class FetchOutcome:
    """Accumulated results of fetch_all."""

    successes: list[FetchResult] = field(default_factory=list)
    failures: list[FetchFailure] = field(default_factory=list)

    # Monotonic start time of every first attempt
    request_starts: list[float] = field(default_factory=list)

    retries: int = 0
    windows: int = 0

    @property
    def all_failed(self) -> bool:
        """True when there was work and none of it succeeded."""
        return bool(self.failures) and not self.successes


def is_retryable_fetch_error(error: BaseException) -> bool:
    """Only transient network errors are worth another attempt."""
    return isinstance(error, TransientNetworkError)


class RateLimitedFetcher:
    """
    Windowed concurrent fetcher honoring a requests-per-interval budget.

    Example:
        async with SourceApiClient(config) as client:
            fetcher = RateLimitedFetcher(client, RateLimitPolicy.from_settings(config))
            outcome = await fetcher.fetch_all(urls)
    """

    def __init__(self, client: JsonGetter, policy: RateLimitPolicy) -> None:
        self.client = client
        self.policy = policy

    async def fetch_all(
        self,
        urls: Sequence[str],
        deadline: float | None = None,
    ) -> FetchOutcome:
        """
        Fetch every URL, window by window.

        Args:
            urls: URLs in the order they should be issued
            deadline: time.monotonic() value after which no new window starts

        Returns:
            FetchOutcome with successes and failures in issue order

        Raises:
            FatalAuthError: As soon as any request is rejected for auth
        """
        outcome = FetchOutcome()
        size = self.policy.batch_size
        windows = [list(urls[i:i + size]) for i in range(0, len(urls), size)]

        for index, window in enumerate(windows):
            if deadline is not None and time.monotonic() >= deadline:
                skipped = [url for rest in windows[index:] for url in rest]
                console.print(
                    f"[yellow]Deadline reached, skipping {len(skipped)} requests[/yellow]"
                )
                outcome.failures.extend(
                    FetchFailure(url=url, error=DeadlineExceeded("Run deadline exceeded"))
                    for url in skipped
                )
                break

            window_start = time.monotonic()
            outcome.windows += 1
            logger.debug("Fetching window %d/%d (%d requests)", index + 1, len(windows), len(window))

            results = await asyncio.gather(
                *[self._fetch_one(url, outcome) for url in window],
                return_exceptions=True,
            )

            fatal: BaseException | None = None
            for url, result in zip(window, results):
                if isinstance(result, FetchResult):
                    outcome.successes.append(result)
                elif isinstance(result, FetchFailure):
                    outcome.failures.append(result)
                elif isinstance(result, FatalAuthError):
                    fatal = fatal or result
                else:
                    logger.error("Unexpected error fetching %s: %r", url, result)
                    outcome.failures.append(FetchFailure(url=url, error=result))
            if fatal is not None:
                raise fatal

            if index < len(windows) - 1:
                elapsed = time.monotonic() - window_start
                remaining = self.policy.window_interval - elapsed
                if remaining > 0:
                    await asyncio.sleep(remaining)

        return outcome

    async def fetch_one(self, url: str) -> dict[str, Any]:
        """Fetch a single URL with retries, raising its error on failure."""
        outcome = await self.fetch_all([url])
        if outcome.failures:
            raise outcome.failures[0].error
        return outcome.successes[0].data

    async def _fetch_one(self, url: str, outcome: FetchOutcome) -> FetchResult | FetchFailure:
        """Fetch one URL through the retry combinator."""
        attempts = 0
        start = time.monotonic()

        async def attempt() -> dict[str, Any]:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                outcome.request_starts.append(time.monotonic())
            try:
                return await asyncio.wait_for(
                    self.client.get_json(url), timeout=self.policy.request_timeout
                )
            except asyncio.TimeoutError as e:
                raise TransientNetworkError(
                    url, f"Timed out after {self.policy.request_timeout}s"
                ) from e

        def on_retry(attempt_number: int, error: BaseException, delay: float) -> None:
            outcome.retries += 1
            logger.warning(
                "Attempt %d/%d failed for %s: %s. Retrying in %.1fs",
                attempt_number, self.policy.max_retries, url, error, delay,
            )

        try:
            data = await retry_async(
                attempt,
                self.policy.retry_policy(),
                is_retryable=is_retryable_fetch_error,
                on_retry=on_retry,
            )
        except FatalAuthError:
            raise
        except RetryError as e:
            console.print(f"[red]Failed to fetch {url}: {e.last_error}[/red]")
            return FetchFailure(url=url, error=e.last_error, attempts=e.attempts)
        except SyncError as e:
            console.print(f"[red]Failed to fetch {url}: {e}[/red]")
            return FetchFailure(url=url, error=e, attempts=attempts)

        return FetchResult(
            url=url,
            data=data,
            attempts=attempts,
            fetch_time=time.monotonic() - start,
        )
