"""
Canonical quote types and tagged raw records.

Raw records come out of the document store as untyped mappings. Before
normalization each one is tagged with the schema version of the collection it
was read from; after normalization callers only ever see Quote / LineItem.
"""

from enum import Enum
from typing import Optional
from dataclasses import dataclass, field


DEFAULT_CURRENCY = "USD"


class SchemaVersion(str, Enum):
    """Storage schema a raw record was written under."""
    CURRENT = "current"   # vectorized collection, structured line_items field
    LEGACY = "legacy"     # extraction-bundle only collection


@dataclass(frozen=True)
class RawQuoteRecord:
    """A raw store record plus its vector distance (semantic queries only)."""
    object_id: str
    properties: dict
    distance: Optional[float] = None

    @property
    def document_id(self) -> str:
        return str(self.properties.get("document_id") or self.object_id or "")


@dataclass(frozen=True)
class CurrentSchemaRecord(RawQuoteRecord):
    """Record read from the current (vectorized) collection."""


@dataclass(frozen=True)
class LegacySchemaRecord(RawQuoteRecord):
    """Record read from the legacy collection."""


def tag_record(
    properties: dict,
    schema_version: SchemaVersion,
    object_id: str = "",
    distance: Optional[float] = None,
) -> RawQuoteRecord:
    """Wrap raw properties in the record variant for ``schema_version``."""
    if schema_version is SchemaVersion.CURRENT:
        return CurrentSchemaRecord(object_id=object_id, properties=properties, distance=distance)
    if schema_version is SchemaVersion.LEGACY:
        return LegacySchemaRecord(object_id=object_id, properties=properties, distance=distance)
    raise ValueError(f"Unknown schema version: {schema_version!r}")


@dataclass(frozen=True)
class Money:
    amount: float
    currency: str = DEFAULT_CURRENCY

    def to_dict(self) -> dict:
        return {"amount": self.amount, "currency": self.currency}


@dataclass(frozen=True)
class ShipmentAttributes:
    """Physical and handling attributes of a shipment. Unknown values are None."""
    weight_kg: Optional[float] = None
    volume_cbm: Optional[float] = None
    container_count: Optional[int] = None
    transit_time_days: Optional[str] = None  # may be a range, e.g. "14-16"
    temperature_range: Optional[str] = None
    hazardous: bool = False
    refrigerated_2_8: bool = False
    refrigerated_minus20_minus10: bool = False
    refrigerated_other: bool = False
    oversized: bool = False
    time_sensitive: bool = False
    high_value: bool = False

    def to_dict(self) -> dict:
        return {
            "weightKg": self.weight_kg,
            "volumeCbm": self.volume_cbm,
            "containerCount": self.container_count,
            "transitTimeDays": self.transit_time_days,
            "temperatureRange": self.temperature_range,
            "hazardous": self.hazardous,
            "refrigerated2to8": self.refrigerated_2_8,
            "refrigeratedMinus20toMinus10": self.refrigerated_minus20_minus10,
            "refrigeratedOther": self.refrigerated_other,
            "oversized": self.oversized,
            "timeSensitive": self.time_sensitive,
            "highValue": self.high_value,
        }


@dataclass(frozen=True)
class LineItem:
    """A single charge on a quote."""
    description: str
    category: str
    sell_amount: Money
    quantity: int = 1
    unit: str = "unit"
    # Richer fields only present when the extraction bundle carried them
    cost_amount: Optional[Money] = None
    line_number: Optional[int] = None
    supplier: Optional[str] = None
    synthetic: bool = False

    def to_dict(self) -> dict:
        data = {
            "description": self.description,
            "category": self.category,
            "sellAmount": self.sell_amount.to_dict(),
            "quantity": self.quantity,
            "unit": self.unit,
            "synthetic": self.synthetic,
        }
        if self.cost_amount is not None:
            data["costAmount"] = self.cost_amount.to_dict()
        if self.line_number is not None:
            data["lineNumber"] = self.line_number
        if self.supplier is not None:
            data["supplier"] = self.supplier
        return data


@dataclass(frozen=True)
class Quote:
    """
    Canonical freight quote.

    ``line_item_count`` always equals ``len(line_items)``; the count stored
    alongside the raw record is never reported.
    """
    id: str
    document_id: str
    file_name: str
    quote_reference: str
    customer_name: str
    origin_port: str
    destination_port: str
    total_amount: Money
    margin_percentage: float = 0.0
    shipment_attributes: ShipmentAttributes = field(default_factory=ShipmentAttributes)
    extraction_confidence: Optional[str] = None
    line_items: tuple = ()
    relevance: Optional[float] = None

    @property
    def line_item_count(self) -> int:
        return len(self.line_items)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "documentId": self.document_id,
            "fileName": self.file_name,
            "quoteReference": self.quote_reference,
            "customerName": self.customer_name,
            "originPort": self.origin_port,
            "destinationPort": self.destination_port,
            "totalAmount": self.total_amount.to_dict(),
            "marginPercentage": self.margin_percentage,
            "shipmentAttributes": self.shipment_attributes.to_dict(),
            "extractionConfidence": self.extraction_confidence,
            "lineItems": [item.to_dict() for item in self.line_items],
            "lineItemCount": self.line_item_count,
        }
        if self.relevance is not None:
            data["relevance"] = self.relevance
        return data


@dataclass(frozen=True)
class QuoteDocument:
    """Source PDF of a quote, base64 encoded as stored."""
    document_id: str
    quote_reference: str
    file_name: str
    pdf_base64: str

    def to_dict(self) -> dict:
        return {
            "documentId": self.document_id,
            "quoteReference": self.quote_reference,
            "fileName": self.file_name,
            "pdfBase64": self.pdf_base64,
        }
