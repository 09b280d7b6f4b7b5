"""
Shared fixtures and test utilities for Freight Quote Retrieval tests.

Provides mock services, sample raw records of both storage schemas, and
reusable fixtures so that all tests can run without API keys, databases, or
external network access.
"""

import os
import sys
import copy
import json
import hashlib
from pathlib import Path

import pytest
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

CURRENT_COLLECTION = "FreightQuotes_Vectorized"
LEGACY_COLLECTION = "FreightQuotes_Opus"

# ---------------------------------------------------------------------------
# Sample raw records
# ---------------------------------------------------------------------------

# Current schema: structured line_items field. The stored line_item_count is
# stale on purpose; callers must never see it.
CURRENT_RECORD = {
    "document_id": "doc-001",
    "quote_reference": "Q-2024-001",
    "customer_name": "Acme Logistics",
    "origin_port": "Shanghai",
    "destination_port": "Rotterdam",
    "total_value": 12500.0,
    "currency": "USD",
    "file_name": "acme_q1.pdf",
    "margin_percentage": 18.5,
    "extraction_confidence": "high",
    "line_item_count": 5,
    "line_items": json.dumps([
        {
            "description": "Ocean Freight",
            "category": "Freight",
            "amount": 10000,
            "currency": "USD",
            "quantity": 1,
            "unit": "container",
        },
        {
            "description": "Terminal Handling",
            "category": "Port Charges",
            "amount": 1250,
            "quantity": 2,
        },
    ]),
    "total_weight_kg": 18000,
    "total_volume_cbm": 58.5,
    "container_count": 2,
    "transit_time_days": "28-32",
    "temperature_range": "2-8°C",
    "refrigerated_2_8": True,
    "pdf_base64": "JVBERi0xLjQK",
}

# Legacy schema: line items only inside the full_extraction bundle
LEGACY_RECORD = {
    "document_id": "doc-101",
    "quote_reference": "OPUS-7",
    "customer_name": "Nordic Traders",
    "origin_port": "Ningbo, China",
    "destination_port": "Hamburg",
    "total_value": 8000,
    "currency": "EUR",
    "file_name": "nordic.pdf",
    "line_item_count": 0,
    "model_used": "claude-opus",
    "full_extraction": json.dumps({
        "extracted_data": {
            "lineItems": [
                {
                    "lineNumber": 1,
                    "description": "Sea freight",
                    "category": "freight",
                    "quantity": 1,
                    "unit": "shipment",
                    "supplier": "Maersk",
                    "sellPrice": {"totalPrice": 6000, "currency": "EUR"},
                    "costPrice": {"amount": 5000, "currency": "EUR"},
                },
                {
                    "lineNumber": 2,
                    "description": "THC origin",
                    "category": "origin",
                    "sellPrice": {"amount": 2000},
                },
            ],
        },
        "financialMetrics": {"marginPercentage": 12.5},
    }),
}

# No structured breakdown anywhere: synthetic line items
SPARSE_RECORD = {
    "document_id": "doc-201",
    "quote_reference": "BO-55",
    "customer_name": "Blue Ocean Imports",
    "origin_port": "Shenzhen",
    "destination_port": "Los Angeles",
    "total_value": 10000,
    "currency": "USD",
}


@pytest.fixture
def sample_current_record():
    return copy.deepcopy(CURRENT_RECORD)


@pytest.fixture
def sample_legacy_record():
    return copy.deepcopy(LEGACY_RECORD)


@pytest.fixture
def sample_sparse_record():
    return copy.deepcopy(SPARSE_RECORD)


# ---------------------------------------------------------------------------
# Mock embedding service
# ---------------------------------------------------------------------------

class MockEmbeddingService:
    """Deterministic mock embedding service -- never calls external APIs."""

    def __init__(self, dimensions=8, fail=False):
        self._dimensions = dimensions
        self.fail = fail
        self.call_count = 0

    def embed(self, text):
        from execution.freight_quotes.errors import EmbeddingUnavailable
        self.call_count += 1
        if self.fail:
            raise EmbeddingUnavailable("mock provider down", provider="Mock")
        return self._deterministic_embedding(text)

    def _deterministic_embedding(self, text):
        h = hashlib.sha256(text.encode()).hexdigest()
        seed = int(h[:8], 16)
        return [((seed + i) % 1000) / 1000.0 for i in range(self._dimensions)]

    @property
    def dimensions(self):
        return self._dimensions


@pytest.fixture
def mock_embedding_service():
    return MockEmbeddingService()


@pytest.fixture
def failing_embedding_service():
    return MockEmbeddingService(fail=True)


# ---------------------------------------------------------------------------
# Mock document store (no database needed)
# ---------------------------------------------------------------------------

class MockDocumentStore:
    """In-memory mock of DocumentStore for testing without PostgreSQL.

    Objects with a distance set in ``distances`` are treated as having an
    embedding; fetch_by_vector returns only those, closest first.
    """

    def __init__(self):
        self.collections = {}  # name -> list[(object_id, properties)]
        self.distances = {}    # object_id -> distance for vector queries
        self.unavailable = False
        self.calls = []

    def add_collection(self, name, records=()):
        self.collections[name] = []
        for record in records:
            self.add_record(name, record)

    def add_record(self, name, properties, object_id=None, distance=None):
        object_id = object_id or f"uuid-{properties.get('document_id', len(self.collections[name]))}"
        self.collections[name].append((object_id, properties))
        if distance is not None:
            self.distances[object_id] = distance
        return object_id

    def _require(self, name):
        from execution.freight_quotes.errors import CollectionNotFound, StoreUnavailable
        if self.unavailable:
            raise StoreUnavailable("mock store down")
        if name not in self.collections:
            raise CollectionNotFound(name)
        return self.collections[name]

    def _object(self, object_id, properties, distance=None):
        from execution.freight_quotes.document_store import StoredObject
        return StoredObject(object_id=object_id, properties=copy.deepcopy(properties), distance=distance)

    @staticmethod
    def _lookup(properties, path):
        value = properties
        for segment in path.split("."):
            if not isinstance(value, dict):
                return None
            value = value.get(segment)
        return value

    def probe_collection(self, collection):
        self.calls.append(("probe_collection", collection))
        self._require(collection)

    def collection_exists(self, collection):
        self.calls.append(("collection_exists", collection))
        if self.unavailable:
            self._require(collection)
        return collection in self.collections

    def fetch_objects(self, collection, limit, cancel_event=None):
        self.calls.append(("fetch_objects", collection, limit))
        records = self._require(collection)
        return [self._object(oid, props) for oid, props in records[:limit]]

    def fetch_by_filter(self, collection, field_path, match_kind, value, limit, cancel_event=None):
        from execution.freight_quotes.document_store import MatchKind
        self.calls.append(("fetch_by_filter", collection, field_path, MatchKind(match_kind), value, limit))
        records = self._require(collection)
        paths = [field_path] if isinstance(field_path, str) else list(field_path)

        def matches(props):
            for path in paths:
                stored = self._lookup(props, path)
                if stored is None:
                    continue
                if MatchKind(match_kind) is MatchKind.EQUAL and str(stored) == str(value):
                    return True
                if MatchKind(match_kind) is MatchKind.CONTAINS and str(value).lower() in str(stored).lower():
                    return True
            return False

        return [self._object(oid, props) for oid, props in records if matches(props)][:limit]

    def fetch_by_vector(self, collection, vector, limit, cancel_event=None):
        self.calls.append(("fetch_by_vector", collection, limit))
        records = self._require(collection)
        scored = [
            self._object(oid, props, self.distances[oid])
            for oid, props in records if oid in self.distances
        ]
        scored.sort(key=lambda obj: obj.distance)
        return scored[:limit]

    def distinct_values(self, collection, field_path, limit=500):
        self.calls.append(("distinct_values", collection, field_path))
        records = self._require(collection)
        values = {self._lookup(props, field_path) for _, props in records}
        return sorted(str(v) for v in values if v not in (None, ""))[:limit]

    def count_objects(self, collection):
        return len(self._require(collection))

    def ping(self):
        return not self.unavailable

    def close(self):
        pass

    def called(self, name):
        return [call for call in self.calls if call[0] == name]


@pytest.fixture
def empty_document_store():
    """Store with no collections at all."""
    return MockDocumentStore()


@pytest.fixture
def mock_document_store(sample_current_record, sample_sparse_record, sample_legacy_record):
    """Store with both collections; current records carry embeddings."""
    store = MockDocumentStore()
    store.add_collection(CURRENT_COLLECTION)
    store.add_record(CURRENT_COLLECTION, sample_current_record, distance=0.21)
    store.add_record(CURRENT_COLLECTION, sample_sparse_record, distance=0.45)
    store.add_collection(LEGACY_COLLECTION, [sample_legacy_record])
    return store


@pytest.fixture
def legacy_only_store(sample_legacy_record, sample_sparse_record):
    """Store that was never migrated: only the legacy collection exists."""
    store = MockDocumentStore()
    store.add_collection(LEGACY_COLLECTION, [sample_legacy_record, sample_sparse_record])
    return store


# ---------------------------------------------------------------------------
# Live integration helpers
# ---------------------------------------------------------------------------

def _credentials_available() -> bool:
    """Check if all required credentials are present."""
    return all(os.getenv(k) for k in ("POSTGRES_URL", "OPENAI_API_KEY"))


skip_no_creds = pytest.mark.skipif(
    not _credentials_available(),
    reason="Missing POSTGRES_URL or OPENAI_API_KEY in .env",
)
