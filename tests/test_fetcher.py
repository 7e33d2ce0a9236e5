"""
Tests for the rate-limited batch fetcher.
"""

import asyncio
import time
from typing import Any

import pytest

from dealsync.client.fetcher import RateLimitedFetcher, RateLimitPolicy
from dealsync.config import Settings
from dealsync.exceptions import (
    DeadlineExceeded,
    FatalAuthError,
    PermanentRequestError,
    TransientNetworkError,
)


class ScriptedClient:
    """
    JsonGetter whose responses are scripted per URL.

    script[url] is a list consumed one item per call; an exception instance
    is raised, anything else is returned. URLs without a script return {"url": url}.
    """

    def __init__(self, script: dict[str, list[Any]] | None = None, delay: float = 0.0) -> None:
        self.script = script or {}
        self.delay = delay
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def get_json(self, url: str) -> dict[str, Any]:
        self.calls.append(url)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            steps = self.script.get(url)
            if steps:
                step = steps.pop(0)
                if isinstance(step, BaseException):
                    raise step
                return step
            return {"url": url}
        finally:
            self.in_flight -= 1


def fast_policy(**overrides: Any) -> RateLimitPolicy:
    values = dict(
        batch_size=10,
        min_batch_interval_ms=0,
        safety_buffer_ms=0,
        max_retries=3,
        backoff_base_ms=0,
        backoff_cap_ms=0,
    )
    values.update(overrides)
    return RateLimitPolicy(**values)


def urls(count: int) -> list[str]:
    return [f"https://crm.example.com/api/3/deals?offset={i * 100}" for i in range(count)]


class TestRateLimitPolicy:
    """Tests for RateLimitPolicy."""

    def test_defaults(self) -> None:
        policy = RateLimitPolicy()

        assert policy.batch_size == 10
        assert policy.window_interval == pytest.approx(0.75)

    def test_from_settings(self, settings: Settings) -> None:
        policy = RateLimitPolicy.from_settings(settings)

        assert policy.batch_size == settings.fetch_batch_size
        assert policy.max_retries == settings.fetch_max_retries

    def test_retry_policy_caps_backoff(self) -> None:
        retry = RateLimitPolicy().retry_policy()

        assert retry.delay_for(1) == 1.0
        assert retry.delay_for(2) == 2.0
        assert retry.delay_for(4) == 5.0

    def test_invalid_batch_size(self) -> None:
        with pytest.raises(ValueError):
            RateLimitPolicy(batch_size=0)

    def test_invalid_retries(self) -> None:
        with pytest.raises(ValueError):
            RateLimitPolicy(max_retries=0)


class TestFetchAll:
    """Tests for RateLimitedFetcher.fetch_all."""

    @pytest.mark.asyncio
    async def test_fetches_everything_in_order(self) -> None:
        client = ScriptedClient()
        fetcher = RateLimitedFetcher(client, fast_policy(batch_size=3))

        outcome = await fetcher.fetch_all(urls(7))

        assert [r.url for r in outcome.successes] == urls(7)
        assert outcome.failures == []
        assert outcome.windows == 3

    @pytest.mark.asyncio
    async def test_window_concurrency_bounded(self) -> None:
        """Never more than batch_size requests in flight."""
        client = ScriptedClient(delay=0.01)
        fetcher = RateLimitedFetcher(client, fast_policy(batch_size=4))

        await fetcher.fetch_all(urls(10))

        assert client.max_in_flight == 4

    @pytest.mark.asyncio
    async def test_windows_respect_min_interval(self) -> None:
        """Window k+1 starts no sooner than the interval after window k."""
        client = ScriptedClient()
        fetcher = RateLimitedFetcher(
            client, fast_policy(batch_size=2, min_batch_interval_ms=80, safety_buffer_ms=20)
        )

        outcome = await fetcher.fetch_all(urls(6))

        starts = outcome.request_starts
        assert len(starts) == 6
        window_starts = [starts[0], starts[2], starts[4]]
        for earlier, later in zip(window_starts, window_starts[1:]):
            assert later - earlier >= 0.1 - 0.01

    @pytest.mark.asyncio
    async def test_no_sleep_after_last_window(self) -> None:
        client = ScriptedClient()
        fetcher = RateLimitedFetcher(client, fast_policy(batch_size=5, min_batch_interval_ms=2000))

        start = time.monotonic()
        await fetcher.fetch_all(urls(5))

        assert time.monotonic() - start < 1.0

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self) -> None:
        """A URL that fails twice then succeeds is a success with three attempts."""
        target = urls(1)[0]
        client = ScriptedClient({
            target: [
                TransientNetworkError(target, "HTTP 503", 503),
                TransientNetworkError(target, "HTTP 503", 503),
                {"ok": True},
            ],
        })
        fetcher = RateLimitedFetcher(client, fast_policy())

        outcome = await fetcher.fetch_all([target])

        assert outcome.successes[0].data == {"ok": True}
        assert outcome.successes[0].attempts == 3
        assert outcome.retries == 2

    @pytest.mark.asyncio
    async def test_exhausted_url_dropped_without_affecting_siblings(self) -> None:
        """Page 3 of 4 keeps failing, the other pages survive."""
        pages = urls(4)
        failing = pages[2]
        client = ScriptedClient({
            failing: [TransientNetworkError(failing, "HTTP 500", 500)] * 3,
        })
        fetcher = RateLimitedFetcher(client, fast_policy())

        outcome = await fetcher.fetch_all(pages)

        assert [r.url for r in outcome.successes] == [pages[0], pages[1], pages[3]]
        assert len(outcome.failures) == 1
        assert outcome.failures[0].url == failing
        assert outcome.failures[0].attempts == 3
        assert client.calls.count(failing) == 3
        assert not outcome.all_failed

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self) -> None:
        target = urls(1)[0]
        client = ScriptedClient({target: [PermanentRequestError(target, 404, "missing")]})
        fetcher = RateLimitedFetcher(client, fast_policy())

        outcome = await fetcher.fetch_all([target])

        assert client.calls == [target]
        assert isinstance(outcome.failures[0].error, PermanentRequestError)
        assert outcome.all_failed

    @pytest.mark.asyncio
    async def test_auth_error_aborts(self) -> None:
        """A 401 stops the run; later windows are never issued."""
        pages = urls(6)
        client = ScriptedClient({pages[1]: [FatalAuthError(pages[1], 401)]})
        fetcher = RateLimitedFetcher(client, fast_policy(batch_size=2))

        with pytest.raises(FatalAuthError):
            await fetcher.fetch_all(pages)

        assert pages[2] not in client.calls
        assert client.calls.count(pages[1]) == 1

    @pytest.mark.asyncio
    async def test_request_timeout_is_retried(self) -> None:
        """A hung request is cut off by the per-request timeout."""
        client = ScriptedClient(delay=0.5)
        fetcher = RateLimitedFetcher(client, fast_policy(max_retries=2, request_timeout=0.05))

        outcome = await fetcher.fetch_all(urls(1))

        assert len(client.calls) == 2
        assert isinstance(outcome.failures[0].error, TransientNetworkError)

    @pytest.mark.asyncio
    async def test_deadline_skips_remaining_windows(self) -> None:
        client = ScriptedClient()
        fetcher = RateLimitedFetcher(client, fast_policy(batch_size=2))

        outcome = await fetcher.fetch_all(urls(4), deadline=time.monotonic() - 1)

        assert client.calls == []
        assert len(outcome.failures) == 4
        assert all(isinstance(f.error, DeadlineExceeded) for f in outcome.failures)

    @pytest.mark.asyncio
    async def test_empty(self) -> None:
        outcome = await RateLimitedFetcher(ScriptedClient(), fast_policy()).fetch_all([])

        assert outcome.successes == []
        assert not outcome.all_failed


class TestFetchOne:
    """Tests for RateLimitedFetcher.fetch_one."""

    @pytest.mark.asyncio
    async def test_returns_data(self) -> None:
        target = urls(1)[0]
        fetcher = RateLimitedFetcher(ScriptedClient({target: [{"meta": {"total": 5}}]}), fast_policy())

        assert await fetcher.fetch_one(target) == {"meta": {"total": 5}}

    @pytest.mark.asyncio
    async def test_raises_last_error(self) -> None:
        target = urls(1)[0]
        client = ScriptedClient({target: [TransientNetworkError(target, "HTTP 503", 503)] * 3})
        fetcher = RateLimitedFetcher(client, fast_policy())

        with pytest.raises(TransientNetworkError):
            await fetcher.fetch_one(target)
