"""Client module - Source API access."""

from dealsync.client.api_client import SourceApiClient
from dealsync.client.fetcher import (
    FetchFailure,
    FetchOutcome,
    FetchResult,
    RateLimitedFetcher,
    RateLimitPolicy,
)

__all__ = [
    "FetchFailure",
    "FetchOutcome",
    "FetchResult",
    "RateLimitPolicy",
    "RateLimitedFetcher",
    "SourceApiClient",
]
