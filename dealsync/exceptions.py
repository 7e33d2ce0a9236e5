"""
Sync error taxonomy.

Stage-local errors (one URL, one batch) are recovered where they happen and
aggregated into counts. ConfigError and FatalAuthError abort the run.
"""


class SyncError(Exception):
    """Base class for all sync engine errors."""


class ConfigError(SyncError):
    """Required configuration is missing. Raised before any I/O."""

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(f"Missing required configuration: {', '.join(missing)}")


class FatalAuthError(SyncError):
    """Source API rejected our credentials (401/403)."""

    def __init__(self, url: str, status_code: int):
        self.url = url
        self.status_code = status_code
        super().__init__(f"Authentication rejected (HTTP {status_code}) for {url}")


class TransientNetworkError(SyncError):
    """Timeout, 5xx, 429 or connection failure. Safe to retry."""

    def __init__(self, url: str, reason: str, status_code: int | None = None):
        self.url = url
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"{reason} for {url}")


class PermanentRequestError(SyncError):
    """Non-auth 4xx response. Retrying will not help."""

    def __init__(self, url: str, status_code: int, body: str = ""):
        self.url = url
        self.status_code = status_code
        self.body = body
        super().__init__(f"HTTP {status_code} for {url}: {body[:200]}")


class SchemaValidationError(SyncError):
    """Source payload does not match the expected shape."""


class FingerprintLookupError(SyncError):
    """Fingerprint store could not be read."""


class TransientWriteError(SyncError):
    """Serialization failure, deadlock or lock-wait timeout."""


class NonTransientWriteError(SyncError):
    """Constraint violation or malformed payload. Not retried."""


class DeadlineExceeded(SyncError):
    """The run-level deadline expired before this work was started."""
