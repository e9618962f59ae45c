"""Product upsert store: one provider page -> catalog_products, atomically.

Per page:
1. Map every raw record at the ingestion boundary (mapping failures are
   counted, logged with their sku and cause, and never abort the page)
2. Load the existing rows for the page's SKUs in one query
3. Insert new SKUs, overwrite existing ones, apply discontinuation transitions
4. Commit everything (products + per-SKU audit rows) in one transaction

Idempotence: replaying a page leaves content identical except for the freshness
timestamps (`updated_at`, `last_synced_at`), which are bumped on every
reconciliation, even when no value changed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog_sync.models import CanonicalProduct, SyncSkuLog
from catalog_sync.services.product_mapping import MappedProduct, RecordMappingError, map_raw_record
from catalog_sync.settings import get_settings
from catalog_sync.stores.postgres import get_session_factory, session_scope

logger = logging.getLogger("catalog_sync")

OUTCOME_CREATED = "created"
OUTCOME_UPDATED = "updated"
OUTCOME_FAILED = "failed"


class PageCommitError(RuntimeError):
    """The page transaction failed and was rolled back; nothing from it was written."""


@dataclass
class PageReconcileResult:
    """Counts for one reconciled page."""

    created: int = 0
    updated: int = 0
    failed: int = 0
    last_sku: str | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.created + self.updated + self.failed


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProductUpsertStore:
    """Idempotent reconciliation of provider pages into canonical products."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        sku_log_enabled: bool | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.sku_log_enabled = (
            get_settings().sync_sku_log_enabled if sku_log_enabled is None else sku_log_enabled
        )
        self._clock = clock

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def reconcile_page(
        self,
        raw_records: Sequence[dict[str, Any]],
        sync_run_id: int | None = None,
    ) -> PageReconcileResult:
        """Reconcile one page as a single all-or-nothing transaction.

        Args:
            raw_records: Raw provider records, in page order.
            sync_run_id: Owning run; per-SKU audit rows are written when set.

        Returns:
            created/updated/failed counts for the page.

        Raises:
            PageCommitError: if the transaction could not be committed.
        """
        result = PageReconcileResult()
        mapped: list[MappedProduct] = []
        failures: list[RecordMappingError] = []

        for raw in raw_records:
            try:
                mapped.append(map_raw_record(raw))
            except RecordMappingError as e:
                logger.warning(f"Skipping catalog record sku={e.sku}: {e.reason}")
                failures.append(e)

        try:
            async with session_scope(self.session_factory) as session:
                now = self._clock()
                existing = await self._load_existing(session, [p.sku for p in mapped])

                for product in mapped:
                    row = existing.get(product.sku)
                    if row is None:
                        row = self._insert(session, product, now)
                        existing[product.sku] = row
                        outcome = OUTCOME_CREATED
                        result.created += 1
                    else:
                        self._overwrite(row, product, now)
                        outcome = OUTCOME_UPDATED
                        result.updated += 1
                    result.last_sku = product.sku
                    self._log_outcome(session, sync_run_id, product.sku, product.external_id, outcome)

                for failure in failures:
                    result.failed += 1
                    result.errors.append(str(failure))
                    self._log_outcome(
                        session,
                        sync_run_id,
                        failure.sku,
                        failure.external_id,
                        OUTCOME_FAILED,
                        error=failure.reason,
                    )
        except SQLAlchemyError as e:
            logger.error(f"Page transaction failed ({len(raw_records)} records rolled back): {e}")
            raise PageCommitError(f"Page commit failed: {e}") from e

        return result

    async def mark_stale_products(self, threshold_hours: int | None = None) -> int:
        """Flag products not seen by a sync within the threshold.

        Returns:
            Number of products newly marked stale.
        """
        hours = threshold_hours or get_settings().sync_stale_threshold_hours
        cutoff = self._clock() - timedelta(hours=hours)
        async with session_scope(self.session_factory) as session:
            res = await session.execute(
                update(CanonicalProduct)
                .where(
                    CanonicalProduct.last_synced_at < cutoff,
                    CanonicalProduct.is_stale.is_(False),
                )
                .values(is_stale=True)
            )
            count = res.rowcount or 0
        if count:
            logger.info(f"Marked {count} catalog products as stale (not synced for {hours}h)")
        return count

    async def _load_existing(self, session: AsyncSession, skus: list[str]) -> dict[str, CanonicalProduct]:
        if not skus:
            return {}
        res = await session.execute(
            select(CanonicalProduct).where(CanonicalProduct.sku.in_(set(skus)))
        )
        return {row.sku: row for row in res.scalars()}

    def _insert(self, session: AsyncSession, product: MappedProduct, now: datetime) -> CanonicalProduct:
        row = CanonicalProduct(
            sku=product.sku,
            is_discontinued=product.is_discontinued,
            discontinued_at=now if product.is_discontinued else None,
            is_stale=False,
            last_synced_at=now,
            created_at=now,
            updated_at=now,
            **product.column_values(),
        )
        session.add(row)
        return row

    def _overwrite(self, row: CanonicalProduct, product: MappedProduct, now: datetime) -> None:
        for column, value in product.column_values().items():
            setattr(row, column, value)
        apply_discontinuation(row, product.is_discontinued, now)
        row.is_stale = False
        # Freshness is tracked even when every value is unchanged.
        row.last_synced_at = now
        row.updated_at = now

    def _log_outcome(
        self,
        session: AsyncSession,
        sync_run_id: int | None,
        sku: str,
        external_id: str | None,
        outcome: str,
        error: str | None = None,
    ) -> None:
        if sync_run_id is None or not self.sku_log_enabled:
            return
        session.add(
            SyncSkuLog(
                sync_run_id=sync_run_id,
                external_id=external_id[:100] if external_id else None,
                sku=sku[:100],
                outcome=outcome,
                error_message=error,
            )
        )


def apply_discontinuation(row: CanonicalProduct, incoming: bool, now: datetime) -> None:
    """Apply the discontinued flag, touching discontinued_at only on a transition.

    false -> true sets discontinued_at = now, true -> false clears it, and
    false -> false / true -> true leave it untouched.
    """
    if incoming and not row.is_discontinued:
        row.discontinued_at = now
    elif not incoming and row.is_discontinued:
        row.discontinued_at = None
    row.is_discontinued = incoming
