"""
Freight Quote Retrieval - search and normalization for extracted freight quotes

This module provides:
- Semantic search over vectorized quote collections, with keyword fallback
- Relevance filtering and ranking of vector matches
- Reconciliation of current and legacy storage schemas into one Quote shape
- Synthetic line-item breakdowns when no structured items were extracted
"""

from .document_store import DocumentStore
from .embeddings import get_embedding_service
from .normalizer import QuoteNormalizer
from .retriever import QuoteRetriever, get_retriever

__all__ = [
    "DocumentStore",
    "get_embedding_service",
    "QuoteNormalizer",
    "QuoteRetriever",
    "get_retriever",
]

__version__ = "0.1.0"
