"""
Source API HTTP Client

Async client for the CRM's paginated REST API.

Features:
- Async HTTP with connection pooling
- Static token authentication
- Per-request timeout
- Status mapping into the sync error taxonomy
- Prometheus metrics
"""

import time
from typing import Any, Iterable
from urllib.parse import urlencode

import httpx

from dealsync.config import Settings, settings as default_settings
from dealsync.exceptions import (
    FatalAuthError,
    PermanentRequestError,
    TransientNetworkError,
)
from dealsync.metrics import MetricsCollector, metrics as default_metrics

AUTH_STATUS_CODES = frozenset({401, 403})
RETRYABLE_CLIENT_STATUS_CODES = frozenset({408, 429})



class SourceApiClient:
    """
    Async HTTP client for the source CRM API.

    Must be used as an async context manager. Raises FatalAuthError,
    TransientNetworkError or PermanentRequestError; retrying is left to
    the caller.
    """

    def __init__(
        self,
        config: Settings | None = None,
        timeout: float | None = None,
        max_connections: int = 20,
        transport: httpx.AsyncBaseTransport | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.config = config or default_settings
        self.base_url = self.config.source_base_url.rstrip("/")
        self.timeout = timeout or self.config.request_timeout
        self.max_connections = max_connections
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.metrics = metrics or default_metrics

    async def __aenter__(self) -> "SourceApiClient":
        """Async context manager entry."""
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            limits=httpx.Limits(
                max_connections=self.max_connections,
                max_keepalive_connections=self.max_connections,
            ),
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                "User-Agent": "Deals-Ingestor/1.0",
                self.config.source_auth_header: self.config.source_api_token,
            },
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    # ========== URL Builders ==========

    def list_url(self, offset: int, limit: int) -> str:
        """URL of one list page."""
        query = urlencode({"limit": limit, "offset": offset})
        return f"{self.base_url}{self.config.list_path}?{query}"

    def probe_url(self) -> str:
        """Cheapest list request, used to read meta.total."""
        return self.list_url(offset=0, limit=1)

    def attribute_url(self, owner_ids: Iterable[str], limit: int) -> str:
        """URL fetching attached attributes for a batch of owner ids."""
        query = urlencode({
            "limit": limit,
            self.config.attribute_owner_filter: ",".join(owner_ids),
        })
        return f"{self.base_url}{self.config.attribute_path}?{query}"

    # ========== Requests ==========

    async def get_json(self, url: str) -> dict[str, Any]:
        """
        GET a URL and return the decoded JSON body.

        Raises:
            FatalAuthError: On 401/403
            TransientNetworkError: On timeouts, connection errors, 408/429/5xx
            PermanentRequestError: On other non-2xx responses
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        start = time.time()
        try:
            response = await self._client.get(url)
        except httpx.TimeoutException as e:
            self.metrics.record_http_error("timeout")
            raise TransientNetworkError(url, f"Timeout: {e}") from e
        except httpx.RequestError as e:
            self.metrics.record_http_error("request_error")
            raise TransientNetworkError(url, f"Request error: {e}") from e

        self.metrics.record_http_request(status=response.status_code, duration=time.time() - start)

        status = response.status_code
        if status in AUTH_STATUS_CODES:
            self.metrics.record_http_error(f"http_{status}")
            raise FatalAuthError(url, status)
        if status >= 500 or status in RETRYABLE_CLIENT_STATUS_CODES:
            self.metrics.record_http_error(f"http_{status}")
            raise TransientNetworkError(url, f"HTTP {status}", status_code=status)
        if status >= 400:
            self.metrics.record_http_error(f"http_{status}")
            raise PermanentRequestError(url, status, response.text)

        try:
            data = response.json()
        except ValueError as e:
            raise PermanentRequestError(url, status, f"Invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise PermanentRequestError(url, status, "Expected a JSON object")
        return data

