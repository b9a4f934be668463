"""
Tests for ApiClient: pagination termination, retry policy, spacing and cache.
"""
import json

import httpx
import pytest

from conftest import PagedSource
from vacancy_sync.client import ApiClient, extract_error_message, parse_retry_after
from vacancy_sync.errors import (
    AuthError,
    CancellationError,
    HttpStatusError,
    MalformedResponseError,
    RateLimitError,
    ServerError,
)


def _items(n):
    return [{"vacancyReference": f"R{i}", "title": f"Job {i}"} for i in range(1, n + 1)]


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------


def test_fetch_all_pages_two_two_one(make_client):
    source = PagedSource(_items(5), page_size=2)
    client = make_client(source)

    result = client.fetch_all_pages("/v", {"q": "x"}, "page", "data", "totalPages", max_pages=10)

    assert len(source.requests) == 3
    assert result.pages_fetched == 3
    assert len(result.items) == 5
    assert result.total == 5
    assert result.truncated is False
    assert [r.url.params["page"] for r in source.requests] == ["1", "2", "3"]
    assert all(r.url.params["q"] == "x" for r in source.requests)


def test_max_pages_is_a_hard_cap(make_client):
    # Source lies about total pages and never runs dry.
    def handler(request):
        return httpx.Response(200, json={"data": [{"id": 1}], "totalPages": 10_000})

    calls = []
    client = make_client(lambda r: calls.append(r) or handler(r))

    result = client.fetch_all_pages("/v", None, "page", "data", "totalPages", max_pages=4)

    assert len(calls) == 4
    assert result.pages_fetched == 4
    assert result.truncated is True


def test_stops_on_empty_page_when_total_unknown(make_client):
    source = PagedSource(_items(3), page_size=2)

    def handler(request):
        response = source(request)
        body = response.json()
        body.pop("totalPages")
        body.pop("total")
        return httpx.Response(200, json=body)

    client = make_client(handler)
    result = client.fetch_all_pages("/v", None, "page", "data", "totalPages", max_pages=50)

    # Pages 1 and 2 have items, page 3 is empty.
    assert len(source.requests) == 3
    assert len(result.items) == 3
    assert result.truncated is False


def test_total_pages_derived_from_total_and_page_size(make_client):
    source = PagedSource(_items(5), page_size=2)

    def handler(request):
        body = source(request).json()
        body.pop("totalPages")
        return httpx.Response(200, json=body)

    client = make_client(handler)
    result = client.fetch_all_pages(
        "/v", None, "page", "data", "totalPages", max_pages=50, page_size=2, page_size_param="size"
    )

    assert len(source.requests) == 3
    assert result.total_pages == 3
    assert source.requests[0].url.params["size"] == "2"


def test_failed_page_aborts_aggregation(make_client):
    source = PagedSource(_items(6), page_size=2)

    def handler(request):
        if request.url.params["page"] == "2":
            return httpx.Response(404, json={"message": "Page gone"})
        return source(request)

    client = make_client(handler)
    with pytest.raises(HttpStatusError) as excinfo:
        client.fetch_all_pages("/v", None, "page", "data", "totalPages", max_pages=10)
    assert excinfo.value.status_code == 404
    assert "Page gone" in excinfo.value.message


def test_missing_items_key_is_malformed(make_client):
    client = make_client(lambda r: httpx.Response(200, json={"unexpected": 1}))
    with pytest.raises(MalformedResponseError):
        client.fetch_all_pages("/v", None, "page", "vacancies", "totalPages", max_pages=2)


def test_fallback_item_keys_and_bare_list():
    assert ApiClient.extract_items({"results": [1, 2]}, "vacancies") == [1, 2]
    assert ApiClient.extract_items([3], "vacancies") == [3]
    assert ApiClient.extract_items({"a": {"b": [4]}}, "a.b") == [4]


def test_cancellation_checked_between_pages(make_client):
    source = PagedSource(_items(6), page_size=2)
    client = make_client(source)
    stop_after = {"n": 0}

    def should_stop():
        stop_after["n"] += 1
        return stop_after["n"] > 2

    with pytest.raises(CancellationError):
        client.fetch_all_pages("/v", None, "page", "data", "totalPages", max_pages=10, should_stop=should_stop)
    assert len(source.requests) == 2


def test_post_sends_page_params_in_body(make_client):
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"data": [], "totalPages": 1})

    client = make_client(handler)
    client.fetch_all_pages("/search", {"q": "x"}, "page", "data", "totalPages", max_pages=3, method="POST")
    assert seen == [{"q": "x", "page": 1}]


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


def test_retries_server_errors_then_succeeds(make_client, clock):
    responses = [httpx.Response(503), httpx.Response(502), httpx.Response(200, json={"ok": True})]
    client = make_client(lambda r: responses.pop(0), retry_max=3, retry_delay_ms=100)

    response = client.get("/x")

    assert response.success is True
    assert response.data == {"ok": True}
    assert client.stats.requests == 3
    assert client.stats.retries == 2
    # Exponential backoff from the initial delay.
    assert clock.sleeps == [0.1, 0.2]


def test_rate_limit_prefers_retry_after(make_client, clock):
    responses = [httpx.Response(429, headers={"Retry-After": "7"}), httpx.Response(200, json=[])]
    client = make_client(lambda r: responses.pop(0), retry_max=2, retry_delay_ms=100)

    assert client.get("/x").success is True
    assert clock.sleeps == [7.0]


def test_unavailable_honours_retry_after(make_client, clock):
    responses = [httpx.Response(503, headers={"Retry-After": "4"}), httpx.Response(200, json={})]
    client = make_client(lambda r: responses.pop(0), retry_max=2, retry_delay_ms=100)

    response = client.get("/x")

    assert response.success is True
    assert client.stats.retries == 1
    assert clock.sleeps == [4.0]


def test_server_error_carries_retry_after(make_client):
    client = make_client(lambda r: httpx.Response(503, headers={"Retry-After": "9"}), retry_max=0)
    response = client.get("/x")
    assert isinstance(response.exception, ServerError)
    assert response.exception.retry_after == 9.0


def test_gives_up_after_retry_max(make_client):
    calls = []
    client = make_client(lambda r: calls.append(r) or httpx.Response(500), retry_max=2)

    response = client.get("/x")

    assert response.success is False
    assert response.status_code == 500
    assert len(calls) == 3
    with pytest.raises(ServerError):
        response.raise_for_error()


def test_auth_errors_are_not_retried(make_client):
    calls = []
    client = make_client(lambda r: calls.append(r) or httpx.Response(401, json={"error": "bad key"}), retry_max=3)

    response = client.get("/x")

    assert len(calls) == 1
    assert response.success is False
    assert response.error == "bad key"
    assert isinstance(response.exception, AuthError)


def test_invalid_json_is_not_retried(make_client):
    calls = []
    client = make_client(lambda r: calls.append(r) or httpx.Response(200, text="<html>oops</html>"), retry_max=3)

    response = client.get("/x")

    assert len(calls) == 1
    assert isinstance(response.exception, MalformedResponseError)


def test_connection_errors_are_retried(make_client):
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            raise httpx.ConnectError("boom", request=request)
        return httpx.Response(200, json={"ok": 1})

    client = make_client(handler, retry_max=3)
    assert client.get("/x").success is True
    assert len(calls) == 3


def test_rate_limit_error_carries_retry_after(make_client):
    client = make_client(lambda r: httpx.Response(429, headers={"Retry-After": "3"}), retry_max=0)
    response = client.get("/x")
    assert isinstance(response.exception, RateLimitError)
    assert response.exception.retry_after == 3.0


# ---------------------------------------------------------------------------
# Spacing, cache, helpers
# ---------------------------------------------------------------------------


def test_consecutive_pages_are_spaced_by_delay(make_client, clock):
    source = PagedSource(_items(5), page_size=2)
    sent = []

    def handler(request):
        sent.append(clock())
        return source(request)

    client = make_client(handler, delay_ms=250)
    client.fetch_all_pages("/v", None, "page", "data", "totalPages", max_pages=10)

    assert len(sent) == 3
    assert all(b - a >= 0.25 - 1e-9 for a, b in zip(sent, sent[1:]))
    assert clock.sleeps == [0.25, 0.25]


def test_requests_per_minute_widens_spacing(make_client):
    client = make_client(lambda r: httpx.Response(200, json={}), delay_ms=100, requests_per_minute=60)
    assert client.delay_s == pytest.approx(1.0)


def test_cache_short_circuits_identical_gets(make_client):
    calls = []
    client = make_client(lambda r: calls.append(r) or httpx.Response(200, json={"n": len(calls)}), cache_ttl_s=60)

    first = client.get("/x", {"a": 1, "b": 2})
    second = client.get("/x", {"b": 2, "a": 1})
    other = client.get("/x", {"a": 2})

    assert len(calls) == 2
    assert second.cached is True
    assert second.data == first.data
    assert other.cached is False
    assert client.stats.cache_hits == 1

    assert client.clear_cache() == 2
    client.get("/x", {"a": 1, "b": 2})
    assert len(calls) == 3


def test_default_headers_are_sent(make_client):
    seen = {}

    def handler(request):
        seen["headers"] = request.headers
        return httpx.Response(200, json={})

    client = make_client(handler, headers={"X-Version": "2", "Ocp-Apim-Subscription-Key": "k"})
    client.get("/x")
    assert seen["headers"]["X-Version"] == "2"
    assert seen["headers"]["Ocp-Apim-Subscription-Key"] == "k"


def test_extract_error_message_variants():
    assert extract_error_message(httpx.Response(400, json={"detail": "Nope"})) == "Nope"
    assert extract_error_message(httpx.Response(400, json={"errors": ["a", "b", "c", "d"]})) == "a; b; c"
    assert extract_error_message(httpx.Response(418, text="teapot")).startswith("HTTP 418")


def test_parse_retry_after():
    assert parse_retry_after("5") == 5.0
    assert parse_retry_after(None) is None
    assert parse_retry_after("soon") is None
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0
