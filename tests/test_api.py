"""Tests for the FastAPI backend endpoints."""

import threading
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient


# ---------------------------------------------------------------------------
# Wire the ServiceContainer to in-memory mocks so no real DB or API is needed
# ---------------------------------------------------------------------------

@pytest.fixture
def client(monkeypatch, mock_document_store, mock_embedding_service):
    """TestClient backed by a real QuoteRetriever over the mock store."""
    from execution.freight_quotes import api
    from execution.freight_quotes.retriever import QuoteRetriever

    retriever = QuoteRetriever(mock_document_store, mock_embedding_service)
    monkeypatch.setattr(api._container, "_store", mock_document_store)
    monkeypatch.setattr(api._container, "_embeddings", mock_embedding_service)
    monkeypatch.setattr(api._container, "_retriever", retriever)

    return TestClient(api.app)


@pytest.fixture
def failing_client(monkeypatch):
    """TestClient whose retriever is a MagicMock, for error mapping tests."""
    from execution.freight_quotes import api

    retriever = MagicMock()
    monkeypatch.setattr(api._container, "_retriever", retriever)
    return TestClient(api.app), retriever


class TestHealthEndpoint:

    def test_health_check(self, client):
        from execution.freight_quotes import __version__
        response = client.get("/api/v1/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["version"] == __version__
        assert data["database"] == "connected"

    def test_database_down(self, client, mock_document_store):
        mock_document_store.unavailable = True
        response = client.get("/api/v1/health")
        assert response.status_code == 200
        assert response.json()["database"] == "disconnected"


class TestSearchEndpoint:

    def test_empty_query_lists_everything(self, client):
        response = client.post("/api/v1/search", json={"queryText": "", "limit": 100})
        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 2
        assert data["relevanceApplied"] is False
        assert data["searchMode"] == "full"
        assert data["collection"] == "FreightQuotes_Vectorized"

    def test_semantic_search_shape(self, client):
        response = client.post("/api/v1/search", json={"queryText": "reefer to Rotterdam"})
        assert response.status_code == 200
        data = response.json()
        assert data["relevanceApplied"] is True

        quote = data["results"][0]
        assert quote["documentId"] == "doc-001"
        assert quote["relevance"] == 0.21
        assert quote["lineItemCount"] == len(quote["lineItems"]) == 2
        assert quote["totalAmount"] == {"amount": 12500.0, "currency": "USD"}
        assert quote["shipmentAttributes"]["refrigerated2to8"] is True
        assert quote["lineItems"][0]["sellAmount"]["amount"] == 10000.0

    def test_keyword_results_have_no_relevance(self, client, mock_embedding_service):
        mock_embedding_service.fail = True
        response = client.post("/api/v1/search", json={"queryText": "Shanghai"})
        assert response.status_code == 200
        data = response.json()
        assert data["searchMode"] == "keyword"
        assert data["relevanceApplied"] is False
        assert "relevance" not in data["results"][0]

    def test_synthetic_line_items_flagged(self, client):
        response = client.post("/api/v1/search", json={"queryText": ""})
        sparse = [q for q in response.json()["results"] if q["documentId"] == "doc-201"][0]
        assert sparse["lineItemCount"] == 7
        assert all(item["synthetic"] for item in sparse["lineItems"])

    @pytest.mark.parametrize("body", [{"limit": 0}, {"queryText": "x" * 2001}])
    def test_invalid_request(self, client, body):
        assert client.post("/api/v1/search", json=body).status_code == 422

    def test_large_limit_accepted(self, failing_client):
        from execution.freight_quotes.errors import SearchUnavailable
        test_client, retriever = failing_client
        retriever.search.side_effect = SearchUnavailable("keyword search is disabled")

        response = test_client.post("/api/v1/search", json={"queryText": "Shanghai", "limit": 5000})

        assert response.status_code == 503
        assert retriever.search.call_args.kwargs["limit"] == 5000

    def test_cancelled_search_is_499(self, failing_client):
        from execution.freight_quotes.errors import RequestCancelled
        test_client, retriever = failing_client
        retriever.search.side_effect = RequestCancelled("fetch_by_vector")

        response = test_client.post("/api/v1/search", json={"queryText": "Shanghai"})

        assert response.status_code == 499
        assert response.json() == {"error": "RequestCancelled", "detail": "Request cancelled at fetch_by_vector"}
        cancel_event = retriever.search.call_args.kwargs["cancel_event"]
        assert isinstance(cancel_event, threading.Event)
        assert not cancel_event.is_set()

    def test_client_disconnect_cancels_search(self, monkeypatch, failing_client):
        from fastapi import Request
        from execution.freight_quotes.errors import RequestCancelled
        test_client, retriever = failing_client

        async def disconnected(self):
            return True

        monkeypatch.setattr(Request, "is_disconnected", disconnected)
        seen = {}

        def slow_search(query_text, limit, cancel_event):
            seen["cancelled"] = cancel_event.wait(5)
            raise RequestCancelled("fetch_by_vector")

        retriever.search.side_effect = slow_search

        response = test_client.post("/api/v1/search", json={"queryText": "Shanghai"})

        assert seen["cancelled"] is True
        assert response.status_code == 499

    def test_store_unavailable_is_503(self, client, mock_document_store):
        mock_document_store.unavailable = True
        response = client.post("/api/v1/search", json={"queryText": "Shanghai"})
        assert response.status_code == 503
        assert response.json()["error"] == "StoreUnavailable"

    def test_search_unavailable_is_503(self, failing_client):
        from execution.freight_quotes.errors import SearchUnavailable
        test_client, retriever = failing_client
        retriever.search.side_effect = SearchUnavailable("keyword search is disabled")
        response = test_client.post("/api/v1/search", json={"queryText": "Shanghai"})
        assert response.status_code == 503
        assert response.json() == {"error": "SearchUnavailable", "detail": "keyword search is disabled"}

    def test_missing_collections_is_500(self, failing_client):
        from execution.freight_quotes.errors import CollectionNotFound
        test_client, retriever = failing_client
        retriever.search.side_effect = CollectionNotFound("FreightQuotes_Opus")
        response = test_client.post("/api/v1/search", json={})
        assert response.status_code == 500
        assert response.json()["error"] == "CollectionNotFound"

    def test_search_recorded_in_metrics(self, client):
        from execution.freight_quotes.metrics import get_metrics_collector
        collector = get_metrics_collector()
        collector.reset()

        client.post("/api/v1/search", json={"queryText": "Rotterdam"})

        assert collector.get_metrics().searches_by_mode["semantic"] == 1


class TestQuoteEndpoints:

    def test_get_quote(self, client):
        response = client.get("/api/v1/quotes/doc-101")
        assert response.status_code == 200
        data = response.json()
        assert data["customerName"] == "Nordic Traders"
        assert data["marginPercentage"] == 12.5
        assert data["lineItems"][0]["supplier"] == "Maersk"

    def test_quote_not_found(self, client):
        assert client.get("/api/v1/quotes/missing").status_code == 404

    def test_get_pdf(self, client):
        response = client.get("/api/v1/quotes/doc-001/pdf")
        assert response.status_code == 200
        assert response.json() == {
            "documentId": "doc-001",
            "quoteReference": "Q-2024-001",
            "fileName": "acme_q1.pdf",
            "pdfBase64": "JVBERi0xLjQK",
        }

    def test_pdf_not_found(self, client):
        assert client.get("/api/v1/quotes/doc-101/pdf").status_code == 404


class TestFilterAndAggregationEndpoints:

    def test_filters(self, client):
        response = client.get("/api/v1/filters", params={"fields": "customer,originPort"})
        assert response.status_code == 200
        assert response.json()["data"] == {
            "customer": ["Acme Logistics", "Blue Ocean Imports"],
            "originPort": ["Shanghai", "Shenzhen"],
        }

    def test_unknown_filter_is_400(self, client):
        assert client.get("/api/v1/filters", params={"fields": "weight"}).status_code == 400

    def test_aggregations(self, client):
        response = client.post("/api/v1/aggregations", json={"groupBy": "route", "metric": "sum"})
        assert response.status_code == 200
        data = response.json()
        assert data["groupBy"] == "route"
        assert data["buckets"][0] == {"key": "Shanghai → Rotterdam", "value": 12500.0, "count": 1}

    def test_invalid_group_by_is_422(self, client):
        response = client.post("/api/v1/aggregations", json={"groupBy": "weather"})
        assert response.status_code == 422

    def test_collections(self, client):
        response = client.get("/api/v1/collections")
        assert response.status_code == 200
        assert [c["schemaVersion"] for c in response.json()] == ["current", "legacy"]

    def test_metrics(self, client):
        response = client.get("/api/v1/metrics")
        assert response.status_code == 200
        data = response.json()
        assert "uptime_seconds" in data
        assert "searches" in data
