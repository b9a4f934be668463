"""Generic paginated HTTP client used by every provider.

Keeps *all* HTTP details in one place: default headers, timeouts, request
spacing, retry/backoff on transient failures, an optional short-lived cache and
multi-page aggregation. Providers only describe *what* to fetch.

Failures surface in two ways:
- `get()` / `post()` return an `ApiResponse` with `success=False` and a
  readable `error` (never raise for HTTP problems).
- `fetch_page()` / `fetch_all_pages()` raise the matching `FetchError`
  subclass, so a failed page aborts the whole aggregation.
"""

from __future__ import annotations

import json
import math
import time
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from .errors import (
    ApiConnectionError,
    AuthError,
    CancellationError,
    FetchError,
    HttpStatusError,
    MalformedResponseError,
    RateLimitError,
    ServerError,
)
from .logging import get_logger
from .utils import ensure_utc, mask_secrets, resolve_path, utc_now

log = get_logger("api")

FALLBACK_ITEM_KEYS = ("results", "data", "items", "records")
ERROR_MESSAGE_KEYS = ("message", "error", "error_message", "detail", "title")

ProgressCallback = Callable[[int, Optional[int], int], None]


@dataclass
class ApiResponse:
    success: bool
    data: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    cached: bool = False
    exception: Optional[FetchError] = field(default=None, repr=False)

    def raise_for_error(self) -> Any:
        """Return `data`, or raise the failure that produced this response."""
        if self.success:
            return self.data
        if self.exception is not None:
            raise self.exception
        raise FetchError(self.error or "Request failed", status_code=self.status_code)


@dataclass
class PageResult:
    items: List[Any]
    total: Optional[int] = None
    total_pages: Optional[int] = None
    response_keys: List[str] = field(default_factory=list)


@dataclass
class FetchResult:
    items: List[Any]
    total: int
    pages_fetched: int
    total_pages: Optional[int] = None
    truncated: bool = False


@dataclass
class ClientStats:
    requests: int = 0
    cache_hits: int = 0
    retries: int = 0
    errors: int = 0


class _wait_retry_after(wait_base):
    """Prefer the server's Retry-After hint, else fall back to exponential backoff."""

    def __init__(self, fallback: wait_base, max_wait_s: float) -> None:
        self._fallback = fallback
        self._max_wait_s = max_wait_s

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        hint = getattr(exc, "retry_after", None)
        if hint is not None:
            return max(0.0, min(float(hint), self._max_wait_s))
        return self._fallback(retry_state)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given either as seconds or as an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    return max(0.0, (ensure_utc(when) - utc_now()).total_seconds())


def extract_error_message(response: httpx.Response) -> str:
    """Pull a human-readable message out of an error body, if it has one."""
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        for key in ERROR_MESSAGE_KEYS:
            val = body.get(key)
            if isinstance(val, str) and val.strip():
                return val.strip()
            if isinstance(val, dict) and isinstance(val.get("message"), str):
                return val["message"]
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            parts = []
            for err in errors[:3]:
                if isinstance(err, dict):
                    parts.append(str(err.get("message") or err.get("detail") or err))
                else:
                    parts.append(str(err))
            return "; ".join(parts)
        if isinstance(errors, dict) and errors:
            return "; ".join(f"{k}: {v}" for k, v in list(errors.items())[:3])

    reason = response.reason_phrase or "Error"
    return f"HTTP {response.status_code}: {reason}"


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class ApiClient:
    """HTTP client bound to one base URL and a fixed set of default headers."""

    def __init__(
        self,
        base_url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout_s: float = 60.0,
        retry_max: int = 3,
        retry_delay_ms: int = 1000,
        retry_max_delay_ms: int = 30000,
        delay_ms: int = 200,
        requests_per_minute: Optional[int] = None,
        max_pages: int = 500,
        cache_ttl_s: int = 0,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.headers: Dict[str, str] = {"Accept": "application/json", **(headers or {})}
        self._timeout = httpx.Timeout(timeout_s)
        self._retry_max = retry_max
        self._retry_delay_s = retry_delay_ms / 1000.0
        self._retry_max_delay_s = retry_max_delay_ms / 1000.0
        self._max_pages = max_pages
        self._cache_ttl_s = cache_ttl_s
        self._transport = transport
        self._sleep = sleep
        self._clock = clock

        # Effective spacing honours both the fixed delay and the per-minute budget.
        spacing_ms = float(delay_ms)
        if requests_per_minute:
            spacing_ms = max(spacing_ms, 60000.0 / requests_per_minute)
        self.delay_s = spacing_ms / 1000.0

        self._client: Optional[httpx.Client] = None
        self._last_request_at: Optional[float] = None
        self._cache: Dict[Tuple[str, str, str, str], Tuple[float, Any]] = {}
        self.stats = ClientStats()

    @classmethod
    def from_settings(cls, base_url: str, settings, *, headers=None, rate_limits=None, **kwargs) -> "ApiClient":
        """Build a client from `Settings`, applying a provider's `rate_limits()` if given."""
        options: Dict[str, Any] = dict(
            headers=headers,
            timeout_s=settings.http_timeout_s,
            retry_max=settings.retry_max,
            retry_delay_ms=settings.retry_delay_ms,
            retry_max_delay_ms=settings.retry_max_delay_ms,
            delay_ms=settings.rate_limit_delay_ms,
            max_pages=settings.max_pages,
            cache_ttl_s=settings.cache_ttl_s if settings.cache_enabled else 0,
        )
        if rate_limits is not None:
            options["delay_ms"] = max(settings.rate_limit_delay_ms, rate_limits.delay_ms)
            options["requests_per_minute"] = rate_limits.requests_per_minute
        options.update(kwargs)
        return cls(base_url, **options)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=self._timeout,
                headers=self.headers,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "ApiClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def clear_cache(self) -> int:
        """Drop every cached response; returns how many entries were removed."""
        count = len(self._cache)
        self._cache.clear()
        return count

    # ------------------------------------------------------------------
    # Single requests
    # ------------------------------------------------------------------

    def get(self, endpoint: str = "", params: Optional[Dict[str, Any]] = None, *, use_cache: bool = True) -> ApiResponse:
        return self._send("GET", endpoint, params=params, use_cache=use_cache)

    def post(
        self,
        endpoint: str = "",
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> ApiResponse:
        return self._send("POST", endpoint, params=params, body=body, use_cache=False)

    def _send(
        self,
        method: str,
        endpoint: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        use_cache: bool = True,
    ) -> ApiResponse:
        url = self._url(endpoint)
        params = dict(params or {})
        cache_key = self._cache_key(method, url, params, body)

        if use_cache and self._cache_ttl_s > 0:
            hit = self._cache.get(cache_key)
            if hit is not None and hit[0] > self._clock():
                self.stats.cache_hits += 1
                log.debug(f"Cache hit: {method} {self._describe(url, params)}")
                return ApiResponse(success=True, data=hit[1], status_code=200, cached=True)

        try:
            data = self._request_with_retry(method, url, params, body)
        except FetchError as exc:
            self.stats.errors += 1
            log.error(f"{method} {self._describe(url, params)} failed: {exc.message}")
            return ApiResponse(success=False, error=exc.message, status_code=exc.status_code, exception=exc)

        if use_cache and self._cache_ttl_s > 0:
            self._cache[cache_key] = (self._clock() + self._cache_ttl_s, data)
        return ApiResponse(success=True, data=data, status_code=200)

    def _request_with_retry(self, method: str, url: str, params: Dict[str, Any], body: Optional[Dict[str, Any]]) -> Any:
        retrying = Retrying(
            stop=stop_after_attempt(self._retry_max + 1),
            wait=_wait_retry_after(
                wait_exponential(multiplier=self._retry_delay_s, max=self._retry_max_delay_s),
                self._retry_max_delay_s,
            ),
            retry=retry_if_exception_type((ApiConnectionError, RateLimitError, ServerError)),
            sleep=self._sleep,
            before_sleep=self._before_retry,
            reraise=True,
        )
        return retrying(self._request_once, method, url, params, body)

    def _before_retry(self, retry_state: RetryCallState) -> None:
        self.stats.retries += 1
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        wait_s = retry_state.next_action.sleep if retry_state.next_action else 0
        log.warning(
            f"Retrying ({retry_state.attempt_number}/{self._retry_max}) in {wait_s:.2f}s after: "
            f"{getattr(exc, 'message', exc)}"
        )

    def _request_once(self, method: str, url: str, params: Dict[str, Any], body: Optional[Dict[str, Any]]) -> Any:
        self._throttle()
        self.stats.requests += 1
        log.debug(f"{method} {self._describe(url, params)}")

        try:
            resp = self.http.request(method, url, params=params or None, json=body)
        except httpx.TimeoutException as exc:
            raise ApiConnectionError(f"Request timed out: {self._describe(url, params)}") from exc
        except httpx.TransportError as exc:
            raise ApiConnectionError(f"Connection failed: {exc}") from exc

        status = resp.status_code
        if 200 <= status < 300:
            try:
                return resp.json()
            except ValueError as exc:
                raise MalformedResponseError("Response body is not valid JSON", status_code=status) from exc

        message = extract_error_message(resp)
        retry_after = parse_retry_after(resp.headers.get("Retry-After"))
        if status in (401, 403):
            raise AuthError(message, status_code=status)
        if status == 429:
            raise RateLimitError(message, status_code=status, retry_after=retry_after)
        if status >= 500:
            raise ServerError(message, status_code=status, retry_after=retry_after)
        raise HttpStatusError(message, status_code=status)

    def _throttle(self) -> None:
        now = self._clock()
        if self._last_request_at is not None and self.delay_s > 0:
            remaining = self.delay_s - (now - self._last_request_at)
            if remaining > 0:
                self._sleep(remaining)
                now = self._clock()
        self._last_request_at = now

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    def fetch_page(
        self,
        endpoint: str = "",
        params: Optional[Dict[str, Any]] = None,
        *,
        items_key: Optional[str] = None,
        total_key: Optional[str] = "total",
        total_pages_key: Optional[str] = "totalPages",
        page_size: Optional[int] = None,
        method: str = "GET",
        use_cache: bool = True,
    ) -> PageResult:
        """Fetch one page and pull out its items and totals. Raises on any failure."""
        if method.upper() == "POST":
            response = self.post(endpoint, body=params)
        else:
            response = self.get(endpoint, params, use_cache=use_cache)
        data = response.raise_for_error()

        items = self.extract_items(data, items_key)
        total = _to_int(resolve_path(data, total_key)) if total_key and isinstance(data, dict) else None
        total_pages = _to_int(resolve_path(data, total_pages_key)) if total_pages_key and isinstance(data, dict) else None
        if total_pages is None and total is not None and page_size:
            total_pages = math.ceil(total / page_size)

        return PageResult(
            items=items,
            total=total,
            total_pages=total_pages,
            response_keys=list(data.keys()) if isinstance(data, dict) else [],
        )

    @staticmethod
    def extract_items(data: Any, items_key: Optional[str]) -> List[Any]:
        """Locate the items array, trying common keys when `items_key` is absent."""
        if isinstance(data, list):
            return data
        if not isinstance(data, dict):
            raise MalformedResponseError("Response body is not a JSON object or array")

        if items_key:
            found = resolve_path(data, items_key)
            if isinstance(found, list):
                return found
            if found is not None:
                raise MalformedResponseError(f"Expected a list at '{items_key}', got {type(found).__name__}")

        for key in FALLBACK_ITEM_KEYS:
            if isinstance(data.get(key), list):
                return data[key]

        where = f"'{items_key}'" if items_key else "any known key"
        raise MalformedResponseError(f"No items array found at {where}; response keys: {sorted(data.keys())}")

    def fetch_all_pages(
        self,
        endpoint: str = "",
        base_params: Optional[Dict[str, Any]] = None,
        page_param: str = "page",
        items_key: Optional[str] = None,
        total_pages_key: Optional[str] = "totalPages",
        max_pages: Optional[int] = None,
        *,
        total_key: Optional[str] = "total",
        page_size: Optional[int] = None,
        page_size_param: Optional[str] = None,
        method: str = "GET",
        should_stop: Optional[Callable[[], bool]] = None,
        on_page: Optional[ProgressCallback] = None,
    ) -> FetchResult:
        """Walk pages from 1 until the source is exhausted or `max_pages` is hit.

        Stops when the page number reaches the reported total pages, when a page
        comes back empty, or when `max_pages` requests have been made. A failed
        page raises and nothing fetched so far is returned.
        """
        cap = max_pages or self._max_pages
        items: List[Any] = []
        total: Optional[int] = None
        total_pages: Optional[int] = None
        pages_fetched = 0
        truncated = False
        page = 1

        while True:
            if should_stop is not None and should_stop():
                raise CancellationError(f"Cancelled after {pages_fetched} page(s)")

            params = dict(base_params or {})
            params[page_param] = page
            if page_size_param and page_size:
                params[page_size_param] = page_size

            result = self.fetch_page(
                endpoint,
                params,
                items_key=items_key,
                total_key=total_key,
                total_pages_key=total_pages_key,
                page_size=page_size,
                method=method,
                use_cache=False,
            )
            pages_fetched += 1
            items.extend(result.items)
            if result.total is not None:
                total = result.total
            if result.total_pages is not None:
                total_pages = result.total_pages

            if on_page is not None:
                on_page(pages_fetched, total_pages, len(items))

            if not result.items:
                break
            if total_pages is not None and page >= total_pages:
                break
            if pages_fetched >= cap:
                truncated = True
                log.warning(f"Stopped at max_pages={cap} with more pages reported ({total_pages or 'unknown'})")
                break
            page += 1

        log.info(f"Fetched {len(items)} items across {pages_fetched} page(s) from {self._url(endpoint)}")
        return FetchResult(
            items=items,
            total=total if total is not None else len(items),
            pages_fetched=pages_fetched,
            total_pages=total_pages,
            truncated=truncated,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        if not endpoint:
            return self.base_url
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    @staticmethod
    def _cache_key(method: str, url: str, params: Dict[str, Any], body: Optional[Dict[str, Any]]) -> Tuple[str, str, str, str]:
        return (
            method,
            url,
            json.dumps(params, sort_keys=True, default=str),
            json.dumps(body, sort_keys=True, default=str) if body is not None else "",
        )

    @staticmethod
    def _describe(url: str, params: Dict[str, Any]) -> str:
        return mask_secrets(str(httpx.URL(url, params=params or None)))
