"""
Pydantic models for the Freight Quote FastAPI backend.

Field names are snake_case in Python and camelCase on the wire.
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SearchRequest(CamelModel):
    """Request body for quote search. An empty query lists all quotes."""
    query_text: str = Field(default="", max_length=2000)
    limit: int = Field(default=50, ge=1)


class MoneyModel(CamelModel):
    amount: float
    currency: str


class ShipmentAttributesModel(CamelModel):
    weight_kg: Optional[float] = None
    volume_cbm: Optional[float] = None
    container_count: Optional[int] = None
    transit_time_days: Optional[str] = None
    temperature_range: Optional[str] = None
    hazardous: bool = False
    refrigerated_2_8: bool = Field(default=False, alias="refrigerated2to8")
    refrigerated_minus20_minus10: bool = Field(default=False, alias="refrigeratedMinus20toMinus10")
    refrigerated_other: bool = False
    oversized: bool = False
    time_sensitive: bool = False
    high_value: bool = False


class LineItemModel(CamelModel):
    """A single charge on a quote."""
    description: str
    category: str
    sell_amount: MoneyModel
    quantity: int = Field(default=1, ge=1)
    unit: str = "unit"
    cost_amount: Optional[MoneyModel] = None
    line_number: Optional[int] = None
    supplier: Optional[str] = None
    synthetic: bool = False


class QuoteModel(CamelModel):
    """Canonical freight quote."""
    id: str
    document_id: str
    file_name: str
    quote_reference: str
    customer_name: str
    origin_port: str
    destination_port: str
    total_amount: MoneyModel
    margin_percentage: float = 0.0
    shipment_attributes: ShipmentAttributesModel
    extraction_confidence: Optional[str] = None
    line_items: list[LineItemModel] = []
    line_item_count: int
    relevance: Optional[float] = None


class SearchResponse(CamelModel):
    """Response body for quote search."""
    results: list[QuoteModel]
    count: int
    relevance_applied: bool
    search_mode: str
    collection: str
    latency_ms: float


class QuoteDocumentResponse(CamelModel):
    """Stored source PDF of a quote."""
    document_id: str
    quote_reference: str
    file_name: str
    pdf_base64: str


class FilterOptionsResponse(CamelModel):
    """Distinct values per filter field."""
    data: dict[str, list[str]]


class AggregationRequest(CamelModel):
    """Request body for aggregations."""
    group_by: str = Field(default="customer", pattern=r"^(customer|route|originPort|destinationPort|currency)$")
    metric: str = Field(default="sum", pattern=r"^(sum|avg|count|min|max)$")
    limit: int = Field(default=20, ge=1, le=500)


class AggregationBucketModel(CamelModel):
    key: str
    value: float
    count: int


class AggregationResponse(CamelModel):
    """Response body for aggregations."""
    group_by: str
    metric: str
    buckets: list[AggregationBucketModel]


class CollectionInfo(CamelModel):
    """Existence and size of a quote collection."""
    name: str
    schema_version: str
    exists: bool
    count: int


class HealthResponse(CamelModel):
    """Response body for health check."""
    status: str
    version: str
    database: str


class ErrorResponse(CamelModel):
    """Body returned for typed pipeline failures."""
    error: str
    detail: str
