"""Raw provider record -> canonical product fields.

This is the ingestion boundary: the provider (and its older API versions) spell
the same concept several ways (`id` / `product_id`, `name` / `model_name`,
`pricing.msrp` / `msrp`, ...). Every alternate spelling is resolved here, once,
into a single canonical name. Nothing past this module reads raw keys.

A record that fails validation raises RecordMappingError; the store counts it
as failed and moves on to the next record.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from pydantic import (
    AliasChoices,
    AliasPath,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

DEFAULT_CURRENCY = "CAD"

_QUANTITY_RE = re.compile(r"^\s*(\d+(?:[.,]\d+)?)\s*([a-z\"']*)\s*$", re.IGNORECASE)

# unit -> multiplier into the canonical unit (kg for weight, cm for length)
_WEIGHT_UNITS = {"": 1.0, "kg": 1.0, "kgs": 1.0, "g": 0.001, "lb": 0.45359237, "lbs": 0.45359237}
_LENGTH_UNITS = {"": 1.0, "cm": 1.0, "mm": 0.1, "m": 100.0, "in": 2.54, '"': 2.54, "inch": 2.54, "inches": 2.54}


class RecordMappingError(ValueError):
    """A single raw record could not be mapped to a canonical product."""

    def __init__(self, sku: str, reason: str, external_id: str | None = None):
        self.sku = sku
        self.reason = reason
        self.external_id = external_id
        super().__init__(f"sku={sku}: {reason}")


@dataclass
class MappedProduct:
    """Canonical field set written to catalog_products."""

    external_id: str
    sku: str
    brand: str
    model_name: str
    is_discontinued: bool
    upc: str | None = None
    model_number: str | None = None
    category_slug: str | None = None
    product_link: str | None = None
    msrp: float | None = None
    currency: str = DEFAULT_CURRENCY
    weight_kg: float | None = None
    width_cm: float | None = None
    height_cm: float | None = None
    depth_cm: float | None = None
    specs: dict[str, Any] = field(default_factory=dict)
    images: list[dict[str, Any]] = field(default_factory=list)
    warranty: dict[str, Any] | None = None
    variant_group_id: str | None = None
    variant_type: str | None = None
    variant_value: str | None = None
    buyback_value: float | None = None
    api_schema_version: str | None = None

    def column_values(self) -> dict[str, Any]:
        """Values for every mapped column except the discontinuation flag."""
        return {
            "external_id": self.external_id,
            "upc": self.upc,
            "api_schema_version": self.api_schema_version,
            "brand": self.brand,
            "model_number": self.model_number,
            "model_name": self.model_name,
            "category_slug": self.category_slug,
            "product_link": self.product_link,
            "msrp": self.msrp,
            "currency": self.currency,
            "weight_kg": self.weight_kg,
            "width_cm": self.width_cm,
            "height_cm": self.height_cm,
            "depth_cm": self.depth_cm,
            "specs": self.specs,
            "images": self.images,
            "warranty": self.warranty,
            "variant_group_id": self.variant_group_id,
            "variant_type": self.variant_type,
            "variant_value": self.variant_value,
            "buyback_value": self.buyback_value,
        }


class RawCatalogRecord(BaseModel):
    """Validation model for one provider record, aliases included.

    String bounds mirror the catalog_products columns, so an over-long value
    fails this record instead of the page transaction.
    """

    model_config = ConfigDict(coerce_numbers_to_str=True, str_strip_whitespace=True)

    external_id: str = Field(
        validation_alias=AliasChoices("id", "product_id", "skulytics_id", "external_id"),
        min_length=1,
        max_length=100,
    )
    sku: str = Field(min_length=1, max_length=100)
    upc: str | None = Field(default=None, validation_alias=AliasChoices("upc", "gtin"), max_length=32)
    brand: str = Field(
        validation_alias=AliasChoices("brand", "manufacturer"),
        min_length=1,
        max_length=100,
    )
    model_number: str | None = Field(
        default=None,
        validation_alias=AliasChoices("model_number", "modelNumber", "mpn"),
        max_length=100,
    )
    model_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("name", "model_name", "title"),
        max_length=300,
    )
    category: str | None = Field(
        default=None,
        validation_alias=AliasChoices("category_slug", "category"),
    )
    product_link: str | None = Field(default=None, validation_alias=AliasChoices("product_link", "url"))

    msrp: float | None = Field(
        default=None,
        validation_alias=AliasChoices(AliasPath("pricing", "msrp"), "msrp"),
        ge=0,
    )
    currency: str | None = Field(
        default=None,
        validation_alias=AliasChoices(AliasPath("pricing", "currency"), "currency"),
    )

    weight_kg: float | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "weight_kg",
            AliasPath("dimensions", "weight"),
            AliasPath("specifications", "weight"),
            AliasPath("specs", "weight"),
        ),
    )
    width_cm: float | None = Field(
        default=None,
        validation_alias=AliasChoices("width_cm", AliasPath("dimensions", "width")),
    )
    height_cm: float | None = Field(
        default=None,
        validation_alias=AliasChoices("height_cm", AliasPath("dimensions", "height")),
    )
    depth_cm: float | None = Field(
        default=None,
        validation_alias=AliasChoices("depth_cm", AliasPath("dimensions", "depth")),
    )

    specs: dict[str, Any] | None = Field(default=None, validation_alias=AliasChoices("specifications", "specs"))
    images: list[Any] | None = None
    primary_image: str | None = None
    warranty: dict[str, Any] | None = None

    variant_group_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("variant_group_id", AliasPath("variant", "group_id")),
        max_length=100,
    )
    variant_type: str | None = Field(
        default=None,
        validation_alias=AliasChoices("variant_type", AliasPath("variant", "type")),
        max_length=50,
    )
    variant_value: str | None = Field(
        default=None,
        validation_alias=AliasChoices("variant_value", AliasPath("variant", "value")),
        max_length=100,
    )
    buyback_value: float | None = Field(
        default=None,
        validation_alias=AliasChoices("buyback_value", AliasPath("buyback", "value")),
        ge=0,
    )

    discontinued: bool = Field(
        default=False,
        validation_alias=AliasChoices("discontinued", "is_discontinued"),
    )
    api_schema_version: str | None = Field(
        default=None,
        validation_alias=AliasChoices("api_schema_version", "schema_version"),
        max_length=20,
    )

    @field_validator("brand", mode="before")
    @classmethod
    def _unwrap_brand(cls, v: object) -> object:
        # {"name": "Bosch", "slug": "bosch"}
        if isinstance(v, dict):
            return v.get("name")
        return v

    @field_validator("category", mode="before")
    @classmethod
    def _unwrap_category(cls, v: object) -> object:
        if isinstance(v, dict):
            return v.get("slug") or v.get("name")
        return v

    @field_validator("weight_kg", mode="before")
    @classmethod
    def _parse_weight(cls, v: object) -> float | None:
        return _parse_quantity(v, _WEIGHT_UNITS)

    @field_validator("width_cm", "height_cm", "depth_cm", mode="before")
    @classmethod
    def _parse_length(cls, v: object) -> float | None:
        return _parse_quantity(v, _LENGTH_UNITS)

    @field_validator("currency", mode="before")
    @classmethod
    def _normalize_currency(cls, v: object) -> str | None:
        if v is None or v == "":
            return None
        code = str(v).strip().upper()
        if len(code) != 3 or not code.isalpha():
            raise ValueError(f"invalid currency code {v!r}")
        return code


def map_raw_record(raw: dict[str, Any]) -> MappedProduct:
    """Validate one raw provider record and return its canonical field set.

    Raises:
        RecordMappingError: if the record is missing identity fields or any
            field fails validation.
    """
    if not isinstance(raw, dict):
        raise RecordMappingError("unknown", f"record is {type(raw).__name__}, expected object")

    sku_hint = str(raw.get("sku") or "unknown")
    try:
        record = RawCatalogRecord.model_validate(raw)
    except ValidationError as e:
        raise RecordMappingError(sku_hint, _summarize_validation_error(e), _external_id_hint(raw)) from e

    model_name = record.model_name or record.model_number
    if not model_name:
        raise RecordMappingError(record.sku, "missing product name", record.external_id)

    return MappedProduct(
        external_id=record.external_id,
        sku=record.sku,
        upc=record.upc or None,
        brand=record.brand,
        model_number=record.model_number or None,
        model_name=model_name,
        category_slug=_slugify(record.category) if record.category else None,
        product_link=record.product_link or None,
        msrp=record.msrp,
        currency=record.currency or DEFAULT_CURRENCY,
        weight_kg=record.weight_kg,
        width_cm=record.width_cm,
        height_cm=record.height_cm,
        depth_cm=record.depth_cm,
        specs=dict(record.specs or {}),
        images=_normalize_images(record.images, record.primary_image),
        warranty=dict(record.warranty) if record.warranty else None,
        variant_group_id=record.variant_group_id or None,
        variant_type=record.variant_type or None,
        variant_value=record.variant_value or None,
        buyback_value=record.buyback_value,
        is_discontinued=record.discontinued,
        api_schema_version=record.api_schema_version,
    )


def _parse_quantity(value: object, units: dict[str, float]) -> float | None:
    """Parse "12kg", "24 in", 60 or "60,5" into the canonical unit."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("expected a measurement, got a boolean")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"negative measurement {value}")
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"expected a measurement, got {type(value).__name__}")

    m = _QUANTITY_RE.match(value)
    if not m:
        raise ValueError(f"unparseable measurement {value!r}")
    amount = float(m.group(1).replace(",", "."))
    unit = m.group(2).lower()
    if unit not in units:
        raise ValueError(f"unknown unit {unit!r} in {value!r}")
    return round(amount * units[unit], 3)


def _normalize_images(images: list[Any] | None, primary_image: str | None) -> list[dict[str, Any]]:
    """Images as [{url, type, sort_order}], primary first, duplicates dropped."""
    out: list[dict[str, Any]] = []
    seen: set[str] = set()

    if primary_image:
        out.append({"url": primary_image, "type": "primary", "sort_order": 0})
        seen.add(primary_image)

    for item in images or []:
        if isinstance(item, str):
            entry = {"url": item, "type": "product"}
        elif isinstance(item, dict) and item.get("url"):
            entry = {"url": str(item["url"]), "type": str(item.get("type") or "product")}
        else:
            continue
        if entry["url"] in seen:
            continue
        seen.add(entry["url"])
        out.append(entry)

    for i, entry in enumerate(out):
        entry["sort_order"] = i
    return out


def _slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug[:100]


def _external_id_hint(raw: dict[str, Any]) -> str | None:
    for key in ("id", "product_id", "skulytics_id", "external_id"):
        if raw.get(key) is not None:
            return str(raw[key])[:100]
    return None


def _summarize_validation_error(e: ValidationError) -> str:
    parts = []
    for err in e.errors()[:5]:
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc or 'record'}: {err.get('msg')}")
    return "; ".join(parts)
