"""Test doubles and builders shared by the sync tests."""

from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog_sync.models import CanonicalProduct, SyncRun, SyncRunType, SyncStatus
from catalog_sync.services.catalog_client import CatalogPage, RawRecord, RemoteCatalogClient
from catalog_sync.stores.postgres import session_scope


class FakeCatalogClient(RemoteCatalogClient):
    """Replays queued pages (or raises queued errors) in call order."""

    def __init__(
        self,
        responses: list[CatalogPage | BaseException] | None = None,
        products: dict[str, RawRecord] | None = None,
    ):
        self.responses = list(responses or [])
        self.products = dict(products or {})
        self.cursors: list[str | None] = []
        self.requested_skus: list[str] = []
        # Called with the 1-based call number before each fetch_page response.
        self.before_fetch: Callable[[int], Awaitable[None]] | None = None

    async def fetch_page(self, cursor: str | None, page_size: int | None = None) -> CatalogPage:
        self.cursors.append(cursor)
        if self.before_fetch is not None:
            await self.before_fetch(len(self.cursors))
        if not self.responses:
            raise AssertionError(f"unexpected fetch_page(cursor={cursor!r})")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def fetch_product(self, sku: str) -> RawRecord | None:
        self.requested_skus.append(sku)
        if self.responses and isinstance(self.responses[0], BaseException):
            raise self.responses.pop(0)
        return self.products.get(sku)


def make_record(i: int, **overrides: Any) -> RawRecord:
    """Raw record in the provider's current wire shape."""
    record: RawRecord = {
        "id": f"sk-{i}",
        "sku": f"SKU-{i:04d}",
        "brand": "Bosch",
        "name": f"Dishwasher {i}",
        "category": "Dishwashers",
        "pricing": {"msrp": 999.0 + i, "currency": "CAD"},
        "specifications": {"weight": "45kg", "decibels": 42},
        "images": [f"https://img.example.com/{i}.jpg"],
        "discontinued": False,
    }
    record.update(overrides)
    return record


def make_page(
    start: int,
    count: int,
    next_cursor: str | None,
    has_more: bool,
    **telemetry: int,
) -> CatalogPage:
    return CatalogPage(
        records=[make_record(i) for i in range(start, start + count)],
        next_cursor=next_cursor,
        has_more=has_more,
        **telemetry,
    )


def utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; they are stored as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


async def add_run(
    session_factory: async_sessionmaker[AsyncSession],
    status: SyncStatus,
    *,
    run_type: SyncRunType = SyncRunType.INCREMENTAL,
    api_cursor: str | None = None,
    started_at: datetime | None = None,
    heartbeat_at: datetime | None = None,
    completed_at: datetime | None = None,
) -> int:
    now = datetime.now(timezone.utc)
    if completed_at is None and status is not SyncStatus.RUNNING:
        completed_at = now
    async with session_scope(session_factory) as session:
        run = SyncRun(
            run_type=run_type,
            triggered_by="test",
            status=status,
            api_cursor=api_cursor,
            started_at=started_at or now,
            heartbeat_at=heartbeat_at or started_at or now,
            completed_at=completed_at,
        )
        session.add(run)
        await session.flush()
        return run.id


async def add_product(
    session_factory: async_sessionmaker[AsyncSession],
    sku: str,
    *,
    last_synced_at: datetime,
) -> None:
    async with session_scope(session_factory) as session:
        session.add(
            CanonicalProduct(
                external_id=f"ext-{sku}",
                sku=sku,
                brand="Miele",
                model_name=f"Legacy {sku}",
                currency="CAD",
                specs={},
                images=[],
                is_discontinued=False,
                is_stale=False,
                last_synced_at=last_synced_at,
            )
        )
