"""
Quote Retriever for Freight Quote Search

Entry point of the retrieval pipeline. Routes each request between:

    full listing   empty query or a bypass phrase ("all quotes", "recent", ...)
    semantic       current collection, embedding available; relevance filtered
    keyword        legacy collection, or embedding unavailable; substring match

and normalizes whatever the store returns into canonical Quotes. At most one
embedding call and one store query are made per search; nothing is retried.
"""

import os
import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from enum import Enum
from typing import Optional
from dataclasses import dataclass, field

from .analytics import AggregationBucket, aggregate_quotes
from .collection_selector import CollectionConfig, CollectionSelection, CollectionSelector
from .document_store import DocumentStore, DocumentStoreConfig, MatchKind
from .errors import (
    CollectionNotFound,
    EmbeddingUnavailable,
    RequestCancelled,
    SearchUnavailable,
)
from .models import Quote, QuoteDocument
from .normalizer import NormalizerConfig, QuoteNormalizer
from .query_patterns import (
    BYPASS_CONTAINS,
    BYPASS_EXACT,
    KEYWORD_FIELDS,
    SYNONYMS,
    is_bypass_query,
    keyword_target,
)
from .relevance import RelevanceConfig, filter_and_rank

logger = logging.getLogger(__name__)

# How often a blocked call re-checks its cancel event
CANCEL_POLL_SECONDS = 0.05


# Public filter names -> raw property paths
FILTER_FIELDS = {
    "customer": "customer_name",
    "originPort": "origin_port",
    "destinationPort": "destination_port",
    "fileName": "file_name",
}


class SearchMode(str, Enum):
    FULL = "full"
    SEMANTIC = "semantic"
    KEYWORD = "keyword"


@dataclass
class RetrievalConfig:
    """Configuration for retrieval."""
    default_limit: int = 50
    keyword_fallback: bool = True
    keyword_fields: tuple = KEYWORD_FIELDS
    bypass_exact: tuple = BYPASS_EXACT
    bypass_contains: tuple = BYPASS_CONTAINS
    synonyms: tuple = SYNONYMS
    aggregation_sample_size: int = 1000
    relevance: RelevanceConfig = field(default_factory=RelevanceConfig)

    @classmethod
    def from_env(cls) -> "RetrievalConfig":
        return cls(
            default_limit=int(os.getenv("SEARCH_DEFAULT_LIMIT", "50")),
            keyword_fallback=os.getenv("KEYWORD_FALLBACK", "true").lower() != "false",
            relevance=RelevanceConfig.from_env(),
        )


@dataclass
class SearchResponse:
    """Result of one search request."""
    results: list[Quote]
    relevance_applied: bool
    search_mode: SearchMode
    collection: str
    latency_ms: float = 0.0
    embedding_fallback: bool = False  # keyword path taken because embedding failed

    @property
    def count(self) -> int:
        return len(self.results)

    def to_dict(self) -> dict:
        return {
            "results": [quote.to_dict() for quote in self.results],
            "count": self.count,
            "relevanceApplied": self.relevance_applied,
            "searchMode": self.search_mode.value,
            "collection": self.collection,
            "latencyMs": self.latency_ms,
        }


class QuoteRetriever:
    """
    Routes searches and normalizes results.

    Holds no per-request state; one instance serves concurrent requests.

    Usage:
        retriever = QuoteRetriever(store, embedding_service)
        response = retriever.search("Shanghai", limit=20)
    """

    def __init__(
        self,
        store: DocumentStore,
        embedding_service=None,
        config: Optional[RetrievalConfig] = None,
        collection_config: Optional[CollectionConfig] = None,
        normalizer: Optional[QuoteNormalizer] = None,
    ):
        """
        Initialize retriever.

        Args:
            store: Document store client
            embedding_service: Anything with ``embed(text) -> list[float]``.
                None disables semantic search.
            config: Retrieval configuration
            collection_config: Current/legacy collection names
            normalizer: Quote normalizer. Defaults to QuoteNormalizer().
        """
        self.store = store
        self.embeddings = embedding_service
        self.config = config or RetrievalConfig()
        self.selector = CollectionSelector(store, collection_config)
        self.normalizer = normalizer or QuoteNormalizer()
        self._embed_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="embed")

    # =========================================================================
    # Search
    # =========================================================================

    def search(
        self,
        query_text: str = "",
        limit: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> SearchResponse:
        """
        Search quotes.

        Args:
            query_text: Free text; empty or a bypass phrase lists everything
            limit: Maximum results (> 0). Semantic results are further capped.
            cancel_event: Set by the caller to abandon the request. A store
                query in flight is cancelled on the server; an embedding call
                in flight is abandoned and its result discarded.

        Returns:
            SearchResponse

        Raises:
            StoreUnavailable, CollectionNotFound: store failures, no partial results
            SearchUnavailable: keyword fallback needed but not possible
            RequestCancelled: ``cancel_event`` was set
        """
        limit = self.config.default_limit if limit is None else limit
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")

        start_time = time.time()
        query_text = (query_text or "").strip()

        self._check_cancelled(cancel_event, "collection selection")
        selection = self.selector.select()

        if is_bypass_query(query_text, self.config.bypass_exact, self.config.bypass_contains):
            logger.info(f"Full listing from {selection.collection} (query={query_text!r}, limit={limit})")
            self._check_cancelled(cancel_event, "store fetch")
            objects = self.store.fetch_objects(selection.collection, limit, cancel_event=cancel_event)
            return self._respond(objects, selection, SearchMode.FULL, False, start_time, cancel_event)

        if selection.supports_vectors:
            vector = self._embed(query_text, cancel_event)
            if vector is not None:
                self._check_cancelled(cancel_event, "vector search")
                objects = self.store.fetch_by_vector(selection.collection, vector, limit, cancel_event=cancel_event)
                ranked = filter_and_rank(objects, self.config.relevance, limit)
                logger.info(
                    f"Semantic search on {selection.collection}: "
                    f"{len(ranked)}/{len(objects)} results passed relevance filter"
                )
                return self._respond(ranked, selection, SearchMode.SEMANTIC, True, start_time, cancel_event)
            response = self._keyword_search(query_text, limit, selection, start_time, cancel_event)
            response.embedding_fallback = True
            return response

        logger.info(f"Legacy collection {selection.collection} has no vectors, using keyword search")
        return self._keyword_search(query_text, limit, selection, start_time, cancel_event)

    def _embed(self, query_text: str, cancel_event: Optional[threading.Event]) -> Optional[list[float]]:
        """Embed the query once. None means fall back to keyword search."""
        if self.embeddings is None:
            logger.warning("No embedding service configured, using keyword search")
            return None

        self._check_cancelled(cancel_event, "embedding")
        try:
            if cancel_event is None:
                return self.embeddings.embed(query_text)
            return self._wait_or_cancel(
                self._embed_executor.submit(self.embeddings.embed, query_text),
                cancel_event,
                "embedding",
            )
        except EmbeddingUnavailable as e:
            logger.warning(f"Embedding unavailable, falling back to keyword search: {e}")
            return None

    def _keyword_search(
        self,
        query_text: str,
        limit: int,
        selection: CollectionSelection,
        start_time: float,
        cancel_event: Optional[threading.Event],
    ) -> SearchResponse:
        if not self.config.keyword_fallback or not self.config.keyword_fields:
            raise SearchUnavailable(
                "Semantic search unavailable and keyword search is disabled"
            )

        target = keyword_target(query_text, self.config.synonyms)
        logger.info(f"Keyword search on {selection.collection} for {target!r}")

        self._check_cancelled(cancel_event, "keyword search")
        objects = self.store.fetch_by_filter(
            selection.collection,
            list(self.config.keyword_fields),
            MatchKind.CONTAINS,
            target,
            limit,
            cancel_event=cancel_event,
        )
        return self._respond(objects, selection, SearchMode.KEYWORD, False, start_time, cancel_event)

    def _respond(
        self,
        objects: list,
        selection: CollectionSelection,
        mode: SearchMode,
        relevance_applied: bool,
        start_time: float,
        cancel_event: Optional[threading.Event],
    ) -> SearchResponse:
        self._check_cancelled(cancel_event, "normalization")
        quotes = self.normalizer.normalize_all([selection.tag(obj) for obj in objects])
        latency_ms = (time.time() - start_time) * 1000

        logger.info(f"{mode.value} search returned {len(quotes)} quotes in {latency_ms:.0f}ms")
        return SearchResponse(
            results=quotes,
            relevance_applied=relevance_applied,
            search_mode=mode,
            collection=selection.collection,
            latency_ms=latency_ms,
        )

    @staticmethod
    def _wait_or_cancel(future, cancel_event: threading.Event, stage: str):
        """Block on ``future`` until it finishes or ``cancel_event`` is set."""
        while True:
            try:
                return future.result(timeout=CANCEL_POLL_SECONDS)
            except FutureTimeout:
                if cancel_event.is_set() and not future.done():
                    future.cancel()
                    logger.info(f"Request cancelled during {stage}, abandoning call")
                    raise RequestCancelled(stage)

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event], stage: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"Request cancelled at {stage}")
            raise RequestCancelled(stage)

    # =========================================================================
    # Single document lookups
    # =========================================================================

    def _find_document(self, document_id: str, required_field: Optional[str] = None):
        """First record with ``document_id``, trying current then legacy."""
        for selection in self.selector.candidates():
            try:
                objects = self.store.fetch_by_filter(
                    selection.collection, "document_id", MatchKind.EQUAL, document_id, 1
                )
            except CollectionNotFound:
                logger.debug(f"Collection {selection.collection} missing, trying next")
                continue

            if objects and (required_field is None or objects[0].properties.get(required_field)):
                return selection, objects[0]

        return None, None

    def get_quote(self, document_id: str) -> Optional[Quote]:
        """Fetch and normalize one quote by document ID."""
        selection, obj = self._find_document(document_id)
        if obj is None:
            logger.info(f"Quote {document_id} not found")
            return None
        return self.normalizer.normalize(selection.tag(obj))

    def get_quote_document(self, document_id: str) -> Optional[QuoteDocument]:
        """Fetch the stored PDF for a quote."""
        selection, obj = self._find_document(document_id, required_field="pdf_base64")
        if obj is None:
            logger.info(f"No PDF stored for {document_id}")
            return None

        props = obj.properties
        return QuoteDocument(
            document_id=document_id,
            quote_reference=str(props.get("quote_reference") or ""),
            file_name=str(props.get("file_name") or f"{document_id}.pdf"),
            pdf_base64=props["pdf_base64"],
        )

    # =========================================================================
    # Filters, aggregations and collection stats
    # =========================================================================

    def filter_options(self, fields: Optional[list[str]] = None, limit: int = 500) -> dict:
        """Distinct values per filter field from the selected collection."""
        fields = fields or list(FILTER_FIELDS)
        unknown = [name for name in fields if name not in FILTER_FIELDS]
        if unknown:
            raise ValueError(f"Unsupported filter fields: {unknown}. Expected any of {list(FILTER_FIELDS)}")

        selection = self.selector.select()
        return {
            name: self.store.distinct_values(selection.collection, FILTER_FIELDS[name], limit)
            for name in fields
        }

    def aggregate(
        self,
        group_by: str = "customer",
        metric: str = "sum",
        limit: int = 20,
    ) -> list[AggregationBucket]:
        """Aggregate total amounts over the selected collection."""
        selection = self.selector.select()
        objects = self.store.fetch_objects(selection.collection, self.config.aggregation_sample_size)
        quotes = self.normalizer.normalize_all([selection.tag(obj) for obj in objects])
        buckets = aggregate_quotes(quotes, group_by=group_by, metric=metric, limit=limit)
        logger.info(f"Aggregated {len(quotes)} quotes by {group_by} ({metric}) into {len(buckets)} buckets")
        return buckets

    def describe_collections(self) -> list[dict]:
        """Existence and size of the current and legacy collections."""
        stats = []
        for selection in self.selector.candidates():
            exists = self.store.collection_exists(selection.collection)
            stats.append({
                "name": selection.collection,
                "schemaVersion": selection.schema_version.value,
                "exists": exists,
                "count": self.store.count_objects(selection.collection) if exists else 0,
            })
        return stats


def get_retriever(
    store: Optional[DocumentStore] = None,
    embedding_service=None,
    config: Optional[RetrievalConfig] = None,
) -> QuoteRetriever:
    """
    Get configured retriever instance.

    Missing collaborators are built from environment configuration.
    """
    if store is None:
        store = DocumentStore(DocumentStoreConfig.from_env())
    if embedding_service is None:
        from .embeddings import get_embedding_service
        embedding_service = get_embedding_service()

    return QuoteRetriever(
        store,
        embedding_service,
        config=config or RetrievalConfig.from_env(),
        collection_config=CollectionConfig.from_env(),
        normalizer=QuoteNormalizer(NormalizerConfig.from_env()),
    )


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    retriever = get_retriever()
    query = " ".join(sys.argv[1:]) if len(sys.argv) > 1 else "Shanghai"

    print(f"\nSearching for: {query}")
    print("-" * 50)

    response = retriever.search(query, limit=10)
    print(f"Mode: {response.search_mode.value}, relevance applied: {response.relevance_applied}")

    for i, quote in enumerate(response.results, 1):
        relevance = f" (distance: {quote.relevance:.4f})" if quote.relevance is not None else ""
        print(f"\n{i}. {quote.quote_reference} - {quote.customer_name}{relevance}")
        print(f"   {quote.origin_port} → {quote.destination_port}")
        print(f"   {quote.total_amount.amount:,.2f} {quote.total_amount.currency}, {quote.line_item_count} line items")
