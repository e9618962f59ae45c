"""Quote snapshots: frozen copies of a product's pricing/spec fields.

A snapshot is taken when a product is added to a quote and stored with the
quote line by the quote system. It must never change afterwards, whatever the
catalog does to the product later (price change, discontinuation).

Immutability is enforced at runtime:
- QuoteSnapshot is a frozen, slotted dataclass (assigning a field raises
  FrozenInstanceError and there is no instance __dict__ to write through)
- nested structures are deep-copied at build time into read-only forms
  (mappings -> MappingProxyType, lists -> tuples)

Building is pure: no I/O, and the source product is never modified.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping

# Bump when the snapshot field set or meaning changes.
SNAPSHOT_SCHEMA_VERSION = "v1"


class SnapshotBuildError(ValueError):
    """The product lacks the fields required to snapshot it."""


@dataclass(frozen=True, slots=True)
class QuoteSnapshot:
    """Point-in-time product data attached to a quote line.

    Snapshots compare by value but are not hashable: the nested specs and
    images are read-only mappings, which cannot be hashed.
    """

    __hash__ = None  # type: ignore[assignment]

    # Identity
    external_id: str
    sku: str
    upc: str | None
    brand: str
    model_number: str | None
    model_name: str
    category_slug: str | None

    # Pricing
    msrp_at_quote: float | None
    currency: str

    # Physical specs
    weight_kg: float | None
    width_cm: float | None
    height_cm: float | None
    depth_cm: float | None

    # Variant linkage
    variant_group_id: str | None
    variant_type: str | None
    variant_value: str | None

    # Specs, images, warranty, buyback (read-only copies)
    specs: Mapping[str, Any]
    images: tuple[Mapping[str, Any], ...]
    warranty: Mapping[str, Any] | None
    buyback_value: float | None

    # Provenance
    is_discontinued: bool
    catalog_synced_at: str | None
    snapshot_taken_at: str
    snapshot_schema_version: str = SNAPSHOT_SCHEMA_VERSION

    def to_dict(self) -> dict[str, Any]:
        """Plain JSON-ready copy for persistence with the quote line."""
        return {f.name: _thaw(getattr(self, f.name)) for f in dataclasses.fields(self)}


def build_quote_snapshot(product: Any, *, now: datetime | None = None) -> QuoteSnapshot:
    """Freeze the quote-relevant fields of a canonical product.

    Args:
        product: A CanonicalProduct (or any object exposing the same attributes).
        now: Override for the snapshot timestamp (defaults to current UTC time).

    Returns:
        An immutable QuoteSnapshot. Two calls with the same product differ only
        in snapshot_taken_at.

    Raises:
        SnapshotBuildError: if the product has no sku, external_id or brand.
    """
    for required in ("external_id", "sku", "brand"):
        if not getattr(product, required, None):
            raise SnapshotBuildError(f"Cannot snapshot product without {required}")

    taken_at = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)

    return QuoteSnapshot(
        external_id=str(product.external_id),
        sku=str(product.sku),
        upc=getattr(product, "upc", None),
        brand=str(product.brand),
        model_number=getattr(product, "model_number", None),
        model_name=getattr(product, "model_name", None) or str(product.sku),
        category_slug=getattr(product, "category_slug", None),
        msrp_at_quote=_to_float(getattr(product, "msrp", None)),
        currency=getattr(product, "currency", None) or "CAD",
        weight_kg=_to_float(getattr(product, "weight_kg", None)),
        width_cm=_to_float(getattr(product, "width_cm", None)),
        height_cm=_to_float(getattr(product, "height_cm", None)),
        depth_cm=_to_float(getattr(product, "depth_cm", None)),
        variant_group_id=getattr(product, "variant_group_id", None),
        variant_type=getattr(product, "variant_type", None),
        variant_value=getattr(product, "variant_value", None),
        specs=_freeze(getattr(product, "specs", None) or {}),
        images=tuple(_freeze(img) for img in (getattr(product, "images", None) or [])),
        warranty=_freeze(getattr(product, "warranty", None)),
        buyback_value=_to_float(getattr(product, "buyback_value", None)),
        is_discontinued=bool(getattr(product, "is_discontinued", False)),
        catalog_synced_at=_isoformat(getattr(product, "last_synced_at", None)),
        snapshot_taken_at=_isoformat(taken_at),
    )


def _freeze(value: Any) -> Any:
    """Deep copy into read-only containers."""
    if isinstance(value, Mapping):
        return MappingProxyType({str(k): _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    if isinstance(value, frozenset):
        return sorted(_thaw(v) for v in value)
    return value


def _to_float(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)


def _isoformat(value: datetime | str | None) -> str | None:
    """Round-trippable ISO-8601 (datetime.fromisoformat(s).isoformat(...) == s)."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if value.tzinfo is None:
        # SQLite hands back naive datetimes; they are stored as UTC.
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds")
