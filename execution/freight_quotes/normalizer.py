"""
Schema Normalizer for Freight Quotes

Maps raw records of either storage schema onto the canonical Quote.

Line items are reconstructed by an ordered chain of strategies; the first one
that yields at least one item wins:

    CURRENT schema:  structured field -> extraction bundle -> synthetic
    LEGACY schema:                       extraction bundle -> synthetic

Each strategy is a pure function of the raw properties and the quote header.
A strategy that finds undecodable data raises MalformedRecord; the chain logs
it and moves on, so one bad field never loses the whole record.
"""

import os
import json
import math
import logging
from typing import Callable, Optional
from dataclasses import dataclass, field

from .errors import MalformedRecord
from .models import (
    DEFAULT_CURRENCY,
    CurrentSchemaRecord,
    LegacySchemaRecord,
    LineItem,
    Money,
    Quote,
    RawQuoteRecord,
    ShipmentAttributes,
)

logger = logging.getLogger(__name__)


# (description label, category, share of total)
DEFAULT_SYNTHETIC_BREAKDOWN = (
    ("Ocean Freight", "Freight", 0.40),
    ("Port Charges", "Port Charges", 0.15),
    ("Documentation", "Documentation", 0.05),
    ("Customs Clearance", "Customs", 0.10),
    ("Inland Transport", "Transport", 0.15),
    ("Insurance", "Insurance", 0.05),
    ("Other", "Other", 0.10),
)

# Raw field names, in lookup order
STRUCTURED_LINE_ITEM_FIELDS = ("line_items", "line_items_array")
EXTRACTION_BUNDLE_FIELDS = ("full_extraction", "extraction_data")
EXTRACTION_ENVELOPES = ("extracted_data", "extraction_results")


@dataclass
class NormalizerConfig:
    """Defaults applied while normalizing."""
    default_currency: str = DEFAULT_CURRENCY
    default_category: str = "Other"
    default_unit: str = "unit"
    generate_synthetic_line_items: bool = True
    synthetic_breakdown: tuple = field(default_factory=lambda: DEFAULT_SYNTHETIC_BREAKDOWN)

    @classmethod
    def from_env(cls) -> "NormalizerConfig":
        return cls(
            default_currency=os.getenv("DEFAULT_CURRENCY", DEFAULT_CURRENCY),
            generate_synthetic_line_items=os.getenv("SYNTHETIC_LINE_ITEMS", "true").lower() != "false",
        )


@dataclass(frozen=True)
class QuoteHeader:
    """Quote-level values the line-item strategies depend on."""
    currency: str
    total_amount: float
    origin_port: str
    destination_port: str


LineItemStrategy = Callable[[dict, QuoteHeader, NormalizerConfig], Optional[list]]


# =============================================================================
# Value coercion
# =============================================================================

def _decode_json(value, field_name: str):
    """Decode a JSON string field; mappings and lists pass through."""
    if value is None or value == "":
        return None
    if isinstance(value, (dict, list)):
        return value
    if not isinstance(value, str):
        raise MalformedRecord(f"{field_name} has unexpected type {type(value).__name__}", field=field_name)
    try:
        return json.loads(value)
    except ValueError as e:
        raise MalformedRecord(f"{field_name} is not valid JSON: {e}", field=field_name) from e


def _to_float(value, default: Optional[float] = 0.0) -> Optional[float]:
    if value is None or value == "" or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def _to_int(value) -> Optional[int]:
    number = _to_float(value, default=None)
    return int(number) if number is not None else None


def _to_quantity(value) -> int:
    quantity = _to_int(value)
    return quantity if quantity is not None and quantity >= 1 else 1


def _to_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "y", "1")
    return bool(value)


def _to_text(value) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


def _first(*values):
    """First value that is neither None nor an empty string."""
    for value in values:
        if value is not None and value != "":
            return value
    return None


def _money_from(raw, fallback_currency: str) -> Optional[Money]:
    """Parse ``{amount|totalPrice, currency}`` or a bare number."""
    if raw is None:
        return None
    if isinstance(raw, dict):
        # A zero totalPrice defers to amount
        total_price = _to_float(raw.get("totalPrice"), default=None)
        amount = total_price or _to_float(raw.get("amount"), default=None)
        if amount is None:
            amount = total_price
        if amount is None:
            return None
        return Money(amount, raw.get("currency") or fallback_currency)
    amount = _to_float(raw, default=None)
    return Money(amount, fallback_currency) if amount is not None else None


# =============================================================================
# Extraction bundle access
# =============================================================================

def _load_bundle(properties: dict) -> Optional[dict]:
    """Decode the first extraction bundle field present on the record."""
    for name in EXTRACTION_BUNDLE_FIELDS:
        if name not in properties:
            continue
        bundle = _decode_json(properties.get(name), name)
        if bundle is None:
            continue
        if not isinstance(bundle, dict):
            raise MalformedRecord(f"{name} is not a JSON object", field=name)
        return bundle
    return None


def _bundle_envelope(bundle: dict) -> dict:
    for name in EXTRACTION_ENVELOPES:
        envelope = bundle.get(name)
        if isinstance(envelope, dict):
            return envelope
    return bundle


def _safe_bundle(properties: dict, document_id: str) -> dict:
    """Bundle for header fallbacks; malformed bundles yield an empty mapping."""
    try:
        return _load_bundle(properties) or {}
    except MalformedRecord as e:
        logger.warning(f"Malformed extraction bundle on {document_id}: {e}")
        return {}


# =============================================================================
# Line item strategies
# =============================================================================

def _build_line_item(raw: dict, header: QuoteHeader, config: NormalizerConfig) -> LineItem:
    # Structured field items carry a flat amount; bundle items nest sellPrice
    currency = raw.get("currency") or header.currency
    sell = _money_from(_first(raw.get("sellPrice"), raw.get("sell_price")), currency)
    if sell is None:
        sell = Money(_to_float(_first(raw.get("amount"), raw.get("sell_amount"), raw.get("total"))), currency)

    cost = _money_from(_first(raw.get("costPrice"), raw.get("cost_price"), raw.get("cost")), sell.currency)

    return LineItem(
        description=str(raw.get("description") or ""),
        category=str(raw.get("category") or config.default_category),
        sell_amount=sell,
        quantity=_to_quantity(raw.get("quantity")),
        unit=str(raw.get("unit") or config.default_unit),
        cost_amount=cost,
        line_number=_to_int(_first(raw.get("lineNumber"), raw.get("line_number"))),
        supplier=_to_text(raw.get("supplier")),
    )


def _build_line_items(entries, field_name: str, header: QuoteHeader, config: NormalizerConfig) -> Optional[list]:
    if entries is None:
        return None
    if not isinstance(entries, list):
        raise MalformedRecord(f"{field_name} is not a list", field=field_name)

    items = []
    for entry in entries:
        if not isinstance(entry, dict):
            logger.debug(f"Skipping non-object line item in {field_name}: {entry!r}")
            continue
        items.append(_build_line_item(entry, header, config))
    return items or None


def line_items_from_structured_field(
    properties: dict,
    header: QuoteHeader,
    config: NormalizerConfig,
) -> Optional[list]:
    """
    Line items from ``line_items`` or ``line_items_array`` (list or JSON string).

    A malformed or empty field falls through to the next one. If no field
    yields items and at least one was malformed, the last error is raised.
    """
    error = None
    for name in STRUCTURED_LINE_ITEM_FIELDS:
        try:
            items = _build_line_items(_decode_json(properties.get(name), name), name, header, config)
        except MalformedRecord as e:
            logger.debug(f"Skipping {name}: {e}")
            error = e
            continue
        if items:
            return items
    if error is not None:
        raise error
    return None


def line_items_from_extraction_bundle(
    properties: dict,
    header: QuoteHeader,
    config: NormalizerConfig,
) -> Optional[list]:
    """Line items from the ``lineItems`` array inside the extraction bundle."""
    bundle = _load_bundle(properties)
    if bundle is None:
        return None
    entries = _bundle_envelope(bundle).get("lineItems")
    if entries is None:
        entries = bundle.get("lineItems")
    return _build_line_items(entries, "lineItems", header, config)


def synthetic_line_items(
    properties: dict,
    header: QuoteHeader,
    config: NormalizerConfig,
) -> Optional[list]:
    """
    Split the quote total over a fixed category breakdown.

    Amounts are rounded to cents; the last item absorbs the rounding remainder
    so the items always sum to the total.
    """
    if not config.generate_synthetic_line_items or header.total_amount <= 0:
        return None

    origin = header.origin_port or "Unknown"
    destination = header.destination_port or "Unknown"
    breakdown = list(config.synthetic_breakdown)

    items = []
    allocated = 0.0
    for index, (label, category, share) in enumerate(breakdown):
        if index == len(breakdown) - 1:
            amount = round(header.total_amount - allocated, 2)
        else:
            amount = round(header.total_amount * share, 2)
            allocated = round(allocated + amount, 2)
        items.append(LineItem(
            description=f"{label} ({origin} → {destination})",
            category=category,
            sell_amount=Money(amount, header.currency),
            quantity=1,
            unit=config.default_unit,
            synthetic=True,
        ))
    return items


CURRENT_SCHEMA_STRATEGIES = (
    line_items_from_structured_field,
    line_items_from_extraction_bundle,
    synthetic_line_items,
)

LEGACY_SCHEMA_STRATEGIES = (
    line_items_from_extraction_bundle,
    synthetic_line_items,
)


# =============================================================================
# Normalizer
# =============================================================================

class QuoteNormalizer:
    """
    Converts tagged raw records into canonical Quotes.

    Stateless and safe to share between threads.

    Usage:
        normalizer = QuoteNormalizer()
        quote = normalizer.normalize(record)
    """

    def __init__(self, config: Optional[NormalizerConfig] = None):
        self.config = config or NormalizerConfig()

    def strategies_for(self, record: RawQuoteRecord) -> tuple:
        if isinstance(record, CurrentSchemaRecord):
            return CURRENT_SCHEMA_STRATEGIES
        if isinstance(record, LegacySchemaRecord):
            return LEGACY_SCHEMA_STRATEGIES
        raise TypeError(f"Untagged record {type(record).__name__}; expected a schema variant")

    def normalize(self, record: RawQuoteRecord) -> Quote:
        """Normalize one tagged record. Never fails on malformed field data."""
        strategies = self.strategies_for(record)
        properties = record.properties or {}
        document_id = record.document_id

        bundle = _safe_bundle(properties, document_id)
        extracted = _bundle_envelope(bundle) if bundle else {}
        metrics = bundle.get("financialMetrics")
        metrics = metrics if isinstance(metrics, dict) else {}
        total_sell = metrics.get("totalSellPrice") if isinstance(metrics.get("totalSellPrice"), dict) else {}
        customer = extracted.get("customer") if isinstance(extracted.get("customer"), dict) else {}
        shipment = extracted.get("shipment") if isinstance(extracted.get("shipment"), dict) else {}

        currency = str(_first(
            properties.get("currency"),
            total_sell.get("currency"),
            self.config.default_currency,
        ))
        total = _to_float(_first(properties.get("total_value"), total_sell.get("amount")))
        origin = str(_first(properties.get("origin_port"), shipment.get("originPort")) or "")
        destination = str(_first(properties.get("destination_port"), shipment.get("destinationPort")) or "")

        header = QuoteHeader(
            currency=currency,
            total_amount=total,
            origin_port=origin,
            destination_port=destination,
        )

        line_items = self._reconstruct_line_items(strategies, properties, header, document_id)

        return Quote(
            id=str(_first(properties.get("document_id"), record.object_id) or ""),
            document_id=str(properties.get("document_id") or ""),
            file_name=str(_first(properties.get("file_name"), extracted.get("fileName")) or ""),
            quote_reference=str(_first(properties.get("quote_reference"), extracted.get("quoteReference")) or ""),
            customer_name=str(_first(properties.get("customer_name"), customer.get("name")) or ""),
            origin_port=origin,
            destination_port=destination,
            total_amount=Money(total, currency),
            margin_percentage=_to_float(_first(
                properties.get("margin_percentage"),
                metrics.get("marginPercentage"),
            )),
            shipment_attributes=self._shipment_attributes(properties, shipment),
            extraction_confidence=_to_text(properties.get("extraction_confidence")),
            line_items=tuple(line_items),
            relevance=record.distance,
        )

    def normalize_all(self, records: list) -> list[Quote]:
        return [self.normalize(record) for record in records]

    def _reconstruct_line_items(
        self,
        strategies: tuple,
        properties: dict,
        header: QuoteHeader,
        document_id: str,
    ) -> list:
        for strategy in strategies:
            try:
                items = strategy(properties, header, self.config)
            except MalformedRecord as e:
                logger.warning(f"Malformed record data on {document_id} ({strategy.__name__}): {e}")
                continue
            if items:
                logger.debug(f"{document_id}: {len(items)} line items from {strategy.__name__}")
                return items

        logger.debug(f"{document_id}: no line items recoverable")
        return []

    def _shipment_attributes(self, properties: dict, shipment: dict) -> ShipmentAttributes:
        return ShipmentAttributes(
            weight_kg=_to_float(_first(
                properties.get("total_weight_kg"),
                properties.get("weight_kg"),
                shipment.get("totalWeightKg"),
            ), default=None),
            volume_cbm=_to_float(_first(
                properties.get("total_volume_cbm"),
                properties.get("volume_cbm"),
                shipment.get("totalVolumeCbm"),
            ), default=None),
            container_count=_to_int(_first(
                properties.get("container_count"),
                shipment.get("containerCount"),
            )),
            transit_time_days=_to_text(_first(
                properties.get("transit_time_days"),
                shipment.get("transitTimeDays"),
                shipment.get("transitTime"),
            )),
            temperature_range=_to_text(_first(
                properties.get("temperature_range"),
                shipment.get("temperatureRange"),
            )),
            hazardous=_to_bool(properties.get("hazardous")),
            refrigerated_2_8=_to_bool(properties.get("refrigerated_2_8")),
            refrigerated_minus20_minus10=_to_bool(properties.get("refrigerated_minus20_minus10")),
            refrigerated_other=_to_bool(properties.get("refrigerated_other")),
            oversized=_to_bool(properties.get("oversized")),
            time_sensitive=_to_bool(properties.get("time_sensitive")),
            high_value=_to_bool(properties.get("high_value")),
        )
