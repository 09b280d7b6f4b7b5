"""
Typed failures for the quote retrieval pipeline.

Recoverable errors (EmbeddingUnavailable, MalformedRecord) are handled inside
the pipeline; the rest propagate to the caller unchanged.
"""

from typing import Optional


class QuoteRetrievalError(Exception):
    """Base class for every failure the pipeline reports."""


class EmbeddingUnavailable(QuoteRetrievalError):
    """Raised when the embedding provider cannot produce a vector."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class StoreUnavailable(QuoteRetrievalError):
    """Raised on connectivity, configuration or timeout errors against the store."""


class CollectionNotFound(QuoteRetrievalError):
    """Raised when a collection does not exist in the store."""

    def __init__(self, collection: str, message: Optional[str] = None):
        super().__init__(message or f"Collection not found: {collection}")
        self.collection = collection


class MalformedRecord(QuoteRetrievalError):
    """Raised when a stored field cannot be decoded into the expected shape."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class SearchUnavailable(QuoteRetrievalError):
    """Raised when neither semantic nor keyword search can serve a query."""


class RequestCancelled(QuoteRetrievalError):
    """Raised when the caller abandons a request before it completes."""

    def __init__(self, stage: str):
        super().__init__(f"Request cancelled at {stage}")
        self.stage = stage
