"""
FastAPI Backend for Freight Quote Retrieval

Provides REST API endpoints for quote search, single-quote lookup, source PDFs,
filter options and aggregations. Authentication is handled upstream.

Run with: uvicorn execution.freight_quotes.api:app --host 0.0.0.0 --port 8000
"""

import os
import asyncio
import logging
import threading
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.concurrency import run_in_threadpool
from dotenv import load_dotenv

from . import __version__
from .api_models import (
    SearchRequest, SearchResponse, QuoteModel,
    QuoteDocumentResponse, FilterOptionsResponse,
    AggregationRequest, AggregationResponse, AggregationBucketModel,
    CollectionInfo, HealthResponse, ErrorResponse,
)
from .errors import (
    CollectionNotFound,
    QuoteRetrievalError,
    RequestCancelled,
    SearchUnavailable,
    StoreUnavailable,
)
from .metrics import get_metrics_collector

# Load environment variables
load_dotenv()
logger = logging.getLogger(__name__)

# How often an in-progress search checks whether its client is still connected
DISCONNECT_POLL_SECONDS = 0.1

app = FastAPI(
    title="Freight Quote Retrieval API",
    description="Semantic and keyword search over extracted freight quotes",
    version=__version__,
)

# Configure CORS: use CORS_ORIGINS env var (comma-separated) or default to localhost
_cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Service Container
# =============================================================================

class ServiceContainer:
    """Singleton that caches the store, embedding service and retriever."""

    def __init__(self):
        self._store = None
        self._embeddings = None
        self._retriever = None

    def get_store(self):
        if self._store is None:
            from .document_store import DocumentStore, DocumentStoreConfig
            self._store = DocumentStore(DocumentStoreConfig.from_env())
        return self._store

    def get_embeddings(self):
        if self._embeddings is None:
            from .embeddings import get_embedding_service
            self._embeddings = get_embedding_service()
        return self._embeddings

    def get_retriever(self):
        if self._retriever is None:
            from .retriever import get_retriever
            self._retriever = get_retriever(self.get_store(), self.get_embeddings())
        return self._retriever


_container = ServiceContainer()


# =============================================================================
# Error handling
# =============================================================================

_ERROR_STATUS = {
    StoreUnavailable: 503,
    SearchUnavailable: 503,
    CollectionNotFound: 500,
    RequestCancelled: 499,
}


@app.exception_handler(QuoteRetrievalError)
async def quote_retrieval_error_handler(request: Request, exc: QuoteRetrievalError):
    status_code = _ERROR_STATUS.get(type(exc), 500)
    logger.error(f"{request.method} {request.url.path} failed: {type(exc).__name__}: {exc}")
    body = ErrorResponse(error=type(exc).__name__, detail=str(exc))
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True))


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/api/v1/health", response_model=HealthResponse)
def health_check():
    """Health check endpoint."""
    db_status = "unknown"
    try:
        db_status = "connected" if _container.get_store().ping() else "disconnected"
    except Exception as e:
        logger.warning(f"Health check: database disconnected: {e}")
        db_status = "disconnected"

    return HealthResponse(status="ok", version=__version__, database=db_status)


async def _cancel_on_disconnect(request: Request, cancel_event: threading.Event) -> None:
    """Set ``cancel_event`` once the client goes away."""
    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info(f"Client disconnected from {request.url.path}, cancelling search")
            cancel_event.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


@app.post("/api/v1/search", response_model=SearchResponse, response_model_exclude_none=True)
async def search_quotes(body: SearchRequest, request: Request):
    """Search quotes. Empty queries and phrases like "all quotes" list everything."""
    retriever = _container.get_retriever()
    collector = get_metrics_collector()

    # Runs in a worker thread; a client disconnect aborts it through the event
    cancel_event = threading.Event()
    watcher = asyncio.create_task(_cancel_on_disconnect(request, cancel_event))
    try:
        with collector.track_search(body.query_text) as tracker:
            response = await run_in_threadpool(
                retriever.search, body.query_text, limit=body.limit, cancel_event=cancel_event,
            )
            tracker.set_results(
                response.count,
                response.search_mode.value,
                relevance_applied=response.relevance_applied,
                embedding_fallback=response.embedding_fallback,
            )
    finally:
        watcher.cancel()

    return SearchResponse(
        results=[QuoteModel.model_validate(q.to_dict()) for q in response.results],
        count=response.count,
        relevance_applied=response.relevance_applied,
        search_mode=response.search_mode.value,
        collection=response.collection,
        latency_ms=round(response.latency_ms, 2),
    )


@app.get(
    "/api/v1/quotes/{document_id}",
    response_model=QuoteModel,
    response_model_exclude_none=True,
)
def get_quote(document_id: str):
    """Get a single quote by document ID."""
    quote = _container.get_retriever().get_quote(document_id)
    if quote is None:
        raise HTTPException(status_code=404, detail="Quote not found")
    return QuoteModel.model_validate(quote.to_dict())


@app.get("/api/v1/quotes/{document_id}/pdf", response_model=QuoteDocumentResponse)
def get_quote_pdf(document_id: str):
    """Get the stored source PDF of a quote (base64)."""
    document = _container.get_retriever().get_quote_document(document_id)
    if document is None:
        raise HTTPException(status_code=404, detail="PDF not found")
    return QuoteDocumentResponse.model_validate(document.to_dict())


@app.get("/api/v1/filters", response_model=FilterOptionsResponse)
def get_filter_options(
    fields: Optional[str] = Query(default=None, description="Comma-separated filter names"),
):
    """Distinct values for the dashboard filter panel."""
    names = [f.strip() for f in fields.split(",") if f.strip()] if fields else None
    try:
        data = _container.get_retriever().filter_options(names)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return FilterOptionsResponse(data=data)


@app.post("/api/v1/aggregations", response_model=AggregationResponse)
def aggregate_quotes(request: AggregationRequest):
    """Group quotes and reduce their totals."""
    try:
        buckets = _container.get_retriever().aggregate(
            group_by=request.group_by,
            metric=request.metric,
            limit=request.limit,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return AggregationResponse(
        group_by=request.group_by,
        metric=request.metric,
        buckets=[AggregationBucketModel(**b.to_dict()) for b in buckets],
    )


@app.get("/api/v1/collections", response_model=list[CollectionInfo])
def list_collections():
    """Existence and size of the current and legacy collections."""
    stats = _container.get_retriever().describe_collections()
    return [CollectionInfo.model_validate(s) for s in stats]


@app.get("/api/v1/metrics")
def get_metrics():
    """In-process search metrics."""
    collector = get_metrics_collector()
    return {
        "uptime_seconds": int(collector.get_uptime().total_seconds()),
        **collector.get_metrics_dict(),
    }
