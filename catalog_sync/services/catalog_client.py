"""Remote catalog client: the only wire-level dependency of the sync pipeline.

Contract:
- fetch_page(cursor) returns one page of raw records, the continuation cursor
  and rate-limit telemetry. cursor=None means "start from the beginning".
- Failures are classified into exactly two kinds:
  - RateLimitedError: provider backpressure (HTTP 429), retryable by the caller,
    carries a retry_after_ms hint.
  - ProviderError: anything else (4xx, 5xx, timeouts, transport errors, bad
    payloads). Never retried here; fatal for the current run.

The client holds no state between calls beyond its HTTP connection pool, so tests
replace it with a fake that queues canned pages or errors in call order.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from catalog_sync.settings import get_settings

logger = logging.getLogger("catalog_sync")

RawRecord = dict[str, Any]

# Telemetry defaults when the provider omits rate-limit headers
DEFAULT_RATE_LIMIT_REMAINING = 1_000
DEFAULT_RATE_LIMIT_RESET_MS = 0


class CatalogClientError(RuntimeError):
    """Base class for catalog provider failures."""


class RateLimitedError(CatalogClientError):
    """Provider signalled backpressure; retry the same cursor later."""

    def __init__(self, retry_after_ms: int | None = None, message: str | None = None):
        self.retry_after_ms = retry_after_ms
        super().__init__(message or f"Rate limited by catalog provider (retry after {retry_after_ms}ms)")


class ProviderError(CatalogClientError):
    """Non-retryable provider failure (bad request, auth, server error, timeout)."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


@dataclass
class CatalogPage:
    """One page of the provider's product listing."""

    records: list[RawRecord]
    next_cursor: str | None = None
    has_more: bool = False
    rate_limit_remaining: int = DEFAULT_RATE_LIMIT_REMAINING
    rate_limit_reset_ms: int = DEFAULT_RATE_LIMIT_RESET_MS


class RemoteCatalogClient(ABC):
    """Page-oriented access to the upstream catalog."""

    @abstractmethod
    async def fetch_page(self, cursor: str | None, page_size: int | None = None) -> CatalogPage:
        """Fetch the page that starts at `cursor` (None = beginning of catalog)."""
        raise NotImplementedError

    @abstractmethod
    async def fetch_product(self, sku: str) -> RawRecord | None:
        """Fetch a single raw record by SKU, or None if the provider has no such SKU."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release transport resources (no-op by default)."""
        return None


class _PageEnvelope(BaseModel):
    """Listing response envelope; older API versions use camelCase keys."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    products: list[dict[str, Any]] = Field(
        default_factory=list,
        validation_alias=AliasChoices("products", "items", "data"),
    )
    next_cursor: str | None = Field(
        default=None,
        validation_alias=AliasChoices("next_cursor", "nextCursor"),
    )
    next_page: int | None = Field(
        default=None,
        validation_alias=AliasChoices("next_page", "nextPage"),
    )
    has_more: bool = Field(
        default=False,
        validation_alias=AliasChoices("has_more", "hasMore"),
    )

    def resolved_cursor(self) -> str | None:
        # Page-numbered pagination is carried through the same opaque cursor.
        if self.next_cursor:
            return self.next_cursor
        if self.next_page is not None:
            return str(self.next_page)
        return None


class HttpCatalogClient(RemoteCatalogClient):
    """httpx-backed client for the provider's REST API."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.catalog_api_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.catalog_api_key
        self.timeout_s = timeout_s or settings.catalog_request_timeout_s
        self.page_size = settings.catalog_page_size
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            headers = {"Accept": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout_s,
                headers=headers,
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def fetch_page(self, cursor: str | None, page_size: int | None = None) -> CatalogPage:
        params: dict[str, Any] = {"page_size": page_size or self.page_size}
        if cursor is not None:
            params["cursor"] = cursor

        response = await self._request("GET", f"{self.base_url}/products", params=params)
        payload = self._json(response)
        try:
            envelope = _PageEnvelope.model_validate(payload)
        except ValidationError as e:
            raise ProviderError(f"Malformed product page: {e.error_count()} validation errors", response.status_code) from e

        remaining, reset_ms = self._rate_limit_telemetry(response)
        next_cursor = envelope.resolved_cursor()
        return CatalogPage(
            records=envelope.products,
            next_cursor=next_cursor,
            has_more=envelope.has_more,
            rate_limit_remaining=remaining,
            rate_limit_reset_ms=reset_ms,
        )

    async def fetch_product(self, sku: str) -> RawRecord | None:
        response = await self._request(
            "GET",
            f"{self.base_url}/products/{sku}",
            allow_not_found=True,
        )
        if response.status_code == 404:
            return None
        payload = self._json(response)
        product = payload.get("product", payload)
        if not isinstance(product, dict):
            raise ProviderError(f"Malformed product payload for sku={sku}", response.status_code)
        return product

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, url, params=params)
        except httpx.TimeoutException as e:
            raise ProviderError(f"Catalog request timed out after {self.timeout_s}s: {url}") from e
        except httpx.TransportError as e:
            raise ProviderError(f"Catalog transport error: {e}") from e

        if response.status_code == 429:
            retry_after_ms = self._retry_after_ms(response)
            logger.warning(f"Catalog provider returned 429 for {url} (retry_after_ms={retry_after_ms})")
            raise RateLimitedError(retry_after_ms)

        if allow_not_found and response.status_code == 404:
            return response

        if response.status_code >= 400:
            body = response.text[:500]
            logger.error(f"Catalog provider error: {response.status_code} - {body[:200]}")
            raise ProviderError(
                f"Catalog provider returned HTTP {response.status_code}",
                status_code=response.status_code,
                body=body,
            )
        return response

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError("Catalog provider returned non-JSON body", response.status_code) from e
        if not isinstance(data, dict):
            raise ProviderError("Unexpected response shape from catalog provider", response.status_code)
        return data

    def _retry_after_ms(self, response: httpx.Response) -> int | None:
        """Retry-After is in seconds; fall back to the reset header."""
        retry_after = _parse_number(response.headers.get("Retry-After"))
        if retry_after is not None:
            return int(retry_after * 1000)
        reset = _parse_number(response.headers.get("X-RateLimit-Reset"))
        if reset is not None:
            return int(reset * 1000)
        return None

    def _rate_limit_telemetry(self, response: httpx.Response) -> tuple[int, int]:
        remaining = _parse_number(response.headers.get("X-RateLimit-Remaining"))
        reset = _parse_number(response.headers.get("X-RateLimit-Reset"))
        return (
            int(remaining) if remaining is not None else DEFAULT_RATE_LIMIT_REMAINING,
            int(reset * 1000) if reset is not None else DEFAULT_RATE_LIMIT_RESET_MS,
        )


def _parse_number(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        number = float(value.strip())
    except ValueError:
        return None
    return number if number >= 0 else None


# Singleton client instance
_client: HttpCatalogClient | None = None


def get_catalog_client() -> HttpCatalogClient:
    """Get catalog client singleton."""
    global _client
    if _client is None:
        _client = HttpCatalogClient()
    return _client
