"""Tests for the httpx catalog client's paging and error classification."""

import httpx
import pytest

from catalog_sync.services.catalog_client import (
    CatalogClientError,
    HttpCatalogClient,
    ProviderError,
    RateLimitedError,
)

BASE_URL = "https://catalog.test/v1"


def _client(handler) -> HttpCatalogClient:
    return HttpCatalogClient(
        base_url=BASE_URL,
        api_key="secret",
        timeout_s=5.0,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_fetch_page_parses_envelope_and_telemetry():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "products": [{"id": 1, "sku": "A"}, {"id": 2, "sku": "B"}],
                "next_cursor": "abc",
                "has_more": True,
            },
            headers={"X-RateLimit-Remaining": "42", "X-RateLimit-Reset": "7"},
        )

    client = _client(handler)
    page = await client.fetch_page(None, page_size=2)
    await client.close()

    assert [r["sku"] for r in page.records] == ["A", "B"]
    assert page.next_cursor == "abc"
    assert page.has_more is True
    assert page.rate_limit_remaining == 42
    assert page.rate_limit_reset_ms == 7000

    request = seen[0]
    assert request.url.path == "/v1/products"
    assert request.url.params["page_size"] == "2"
    assert "cursor" not in request.url.params
    assert request.headers["Authorization"] == "Bearer secret"


@pytest.mark.asyncio
async def test_fetch_page_sends_cursor_and_accepts_legacy_envelope():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"items": [{"sku": "C"}], "nextPage": 3, "hasMore": True})

    client = _client(handler)
    page = await client.fetch_page("2")
    await client.close()

    assert seen[0].url.params["cursor"] == "2"
    assert page.records == [{"sku": "C"}]
    assert page.next_cursor == "3"
    assert page.has_more is True
    # No telemetry headers: assume plenty of quota.
    assert page.rate_limit_remaining >= 1000
    assert page.rate_limit_reset_ms == 0


@pytest.mark.asyncio
async def test_last_page_has_no_cursor():
    client = _client(lambda request: httpx.Response(200, json={"products": [], "has_more": False}))
    page = await client.fetch_page("z")

    assert page.records == []
    assert page.next_cursor is None
    assert page.has_more is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("headers", "expected_ms"),
    [
        ({"Retry-After": "3"}, 3000),
        ({"X-RateLimit-Reset": "1.5"}, 1500),
        ({}, None),
    ],
)
async def test_429_is_rate_limited(headers, expected_ms):
    client = _client(lambda request: httpx.Response(429, headers=headers, text="slow down"))

    with pytest.raises(RateLimitedError) as exc_info:
        await client.fetch_page(None)
    assert exc_info.value.retry_after_ms == expected_ms
    assert isinstance(exc_info.value, CatalogClientError)


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [400, 401, 403, 500, 503])
async def test_other_errors_are_provider_errors(status):
    client = _client(lambda request: httpx.Response(status, text="nope"))

    with pytest.raises(ProviderError) as exc_info:
        await client.fetch_page(None)
    assert exc_info.value.status_code == status
    assert exc_info.value.body == "nope"
    assert not isinstance(exc_info.value, RateLimitedError)


@pytest.mark.asyncio
async def test_non_json_body_is_provider_error():
    client = _client(lambda request: httpx.Response(200, text="<html>maintenance</html>"))

    with pytest.raises(ProviderError):
        await client.fetch_page(None)


@pytest.mark.asyncio
async def test_transport_failure_is_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderError) as exc_info:
        await _client(handler).fetch_page(None)
    assert exc_info.value.status_code is None


@pytest.mark.asyncio
async def test_timeout_is_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(ProviderError, match="timed out"):
        await _client(handler).fetch_page(None)


@pytest.mark.asyncio
async def test_fetch_product():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/products/KNOWN":
            return httpx.Response(200, json={"product": {"id": 9, "sku": "KNOWN"}})
        return httpx.Response(404, json={"error": "not found"})

    client = _client(handler)
    assert await client.fetch_product("KNOWN") == {"id": 9, "sku": "KNOWN"}
    assert await client.fetch_product("MISSING") is None
    await client.close()
