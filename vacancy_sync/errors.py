"""Exception hierarchy for the sync engine.

Fatal errors (configuration, fetch failures) abort a run; `RecordError` and its
subclasses are recovered per item inside the reconciliation loop.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base class for every error raised by the engine."""

    error_code = "SYNC_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ConfigurationError(SyncError):
    """A provider or task is missing required configuration."""

    error_code = "CONFIGURATION_ERROR"


class FetchError(SyncError):
    """Base class for failures talking to an upstream API."""

    error_code = "FETCH_ERROR"
    transient = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.status_code = status_code


class ApiConnectionError(FetchError):
    """Network failure, DNS failure or timeout."""

    error_code = "CONNECTION_ERROR"
    transient = True


class HttpStatusError(FetchError):
    """Non-2xx response that is not covered by a more specific class."""

    error_code = "HTTP_ERROR"


class AuthError(HttpStatusError):
    """401/403 from upstream. Never retried."""

    error_code = "AUTH_ERROR"


class RateLimitError(HttpStatusError):
    """429 from upstream, optionally carrying a Retry-After hint in seconds."""

    error_code = "RATE_LIMITED"
    transient = True

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = 429,
        retry_after: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, status_code=status_code, details=details)
        self.retry_after = retry_after


class ServerError(HttpStatusError):
    """5xx from upstream."""

    error_code = "SERVER_ERROR"
    transient = True

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, status_code=status_code, details=details)
        self.retry_after = retry_after


class MalformedResponseError(FetchError):
    """Body is not JSON, or the expected data path is missing or not a list."""

    error_code = "MALFORMED_RESPONSE"


class RecordError(SyncError):
    """One fetched item could not be mapped or persisted."""

    error_code = "RECORD_ERROR"


class TransformError(RecordError):
    """User transform code was rejected or failed for one record."""

    error_code = "TRANSFORM_ERROR"


class CancellationError(SyncError):
    """A run was cancelled cooperatively."""

    error_code = "CANCELLED"
