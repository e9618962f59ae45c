"""Canonical product model.

One row per upstream SKU, reconciled from the catalog provider's records.
Rows are never deleted: discontinuation is a flag so quote snapshots and
foreign keys from quote lines stay valid.

Invariant: discontinued_at is non-null iff is_discontinued is true.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from catalog_sync.stores.postgres import Base

# JSONB on PostgreSQL, plain JSON elsewhere (tests run on SQLite)
JsonType = JSON().with_variant(JSONB(), "postgresql")


class CanonicalProduct(Base):
    """Locally authoritative catalog item."""

    __tablename__ = "catalog_products"

    id: Mapped[int] = mapped_column(primary_key=True)

    # Identity
    external_id: Mapped[str] = mapped_column(String(100), index=True)  # opaque upstream key
    sku: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    upc: Mapped[str | None] = mapped_column(String(32))
    api_schema_version: Mapped[str | None] = mapped_column(String(20))

    # Descriptive
    brand: Mapped[str] = mapped_column(String(100))
    model_number: Mapped[str | None] = mapped_column(String(100))
    model_name: Mapped[str] = mapped_column(String(300))
    category_slug: Mapped[str | None] = mapped_column(String(100), index=True)
    product_link: Mapped[str | None] = mapped_column(Text)

    # Pricing
    msrp: Mapped[float | None] = mapped_column()
    currency: Mapped[str] = mapped_column(String(3), default="CAD")

    # Physical specs (metric)
    weight_kg: Mapped[float | None] = mapped_column()
    width_cm: Mapped[float | None] = mapped_column()
    height_cm: Mapped[float | None] = mapped_column()
    depth_cm: Mapped[float | None] = mapped_column()

    # Free-form structures
    specs: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    images: Mapped[list[dict[str, Any]]] = mapped_column(JsonType, default=list)
    warranty: Mapped[dict[str, Any] | None] = mapped_column(JsonType)

    # Variant linkage
    variant_group_id: Mapped[str | None] = mapped_column(String(100), index=True)
    variant_type: Mapped[str | None] = mapped_column(String(50))  # e.g. "color"
    variant_value: Mapped[str | None] = mapped_column(String(100))  # e.g. "stainless"

    buyback_value: Mapped[float | None] = mapped_column()

    # Lifecycle
    is_discontinued: Mapped[bool] = mapped_column(Boolean, default=False)
    discontinued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_stale: Mapped[bool] = mapped_column(Boolean, default=False)

    # Bookkeeping (bumped on every reconciliation, even when nothing changed)
    last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<CanonicalProduct {self.sku}>"
