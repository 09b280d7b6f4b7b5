"""
Metrics Collection for Freight Quote Search

Tracks search volume, routing decisions, latency and failures in process.
Nothing is persisted; counters reset with the process.
"""

import time
import logging
import threading
from dataclasses import dataclass, field
from collections import defaultdict
from typing import Optional
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)


@dataclass
class SearchMetrics:
    """Metrics for a single search."""
    search_id: str
    query_text: str
    start_time: float
    end_time: float = 0
    latency_ms: float = 0
    results_count: int = 0
    search_mode: Optional[str] = None
    relevance_applied: bool = False
    embedding_fallback: bool = False
    error: Optional[str] = None


@dataclass
class SystemMetrics:
    """Aggregated system metrics."""
    total_searches: int = 0
    successful_searches: int = 0
    failed_searches: int = 0

    # Latency tracking (in ms)
    total_latency_ms: float = 0
    min_latency_ms: float = float('inf')
    max_latency_ms: float = 0
    latencies: list = field(default_factory=list)

    # Routing
    searches_by_mode: dict = field(default_factory=lambda: defaultdict(int))
    embedding_fallbacks: int = 0
    empty_results: int = 0

    # Error tracking
    errors_by_type: dict = field(default_factory=lambda: defaultdict(int))

    @property
    def avg_latency_ms(self) -> float:
        """Calculate average search latency."""
        if self.total_searches == 0:
            return 0
        return self.total_latency_ms / self.total_searches

    def _percentile(self, fraction: float) -> float:
        if not self.latencies:
            return 0
        sorted_latencies = sorted(self.latencies)
        index = int(len(sorted_latencies) * fraction)
        return sorted_latencies[min(index, len(sorted_latencies) - 1)]

    @property
    def p95_latency_ms(self) -> float:
        return self._percentile(0.95)

    @property
    def p99_latency_ms(self) -> float:
        return self._percentile(0.99)

    @property
    def error_rate(self) -> float:
        """Calculate error rate."""
        if self.total_searches == 0:
            return 0
        return self.failed_searches / self.total_searches

    @property
    def fallback_rate(self) -> float:
        """Share of searches that lost semantic search to an embedding failure."""
        if self.total_searches == 0:
            return 0
        return self.embedding_fallbacks / self.total_searches

    def to_dict(self) -> dict:
        """Convert to dictionary for display."""
        return {
            "searches": {
                "total": self.total_searches,
                "successful": self.successful_searches,
                "failed": self.failed_searches,
                "empty": self.empty_results,
                "error_rate": f"{self.error_rate:.2%}",
            },
            "latency_ms": {
                "avg": round(self.avg_latency_ms, 2),
                "min": round(self.min_latency_ms, 2) if self.min_latency_ms != float('inf') else 0,
                "max": round(self.max_latency_ms, 2),
                "p95": round(self.p95_latency_ms, 2),
                "p99": round(self.p99_latency_ms, 2),
            },
            "routing": {
                "by_mode": dict(self.searches_by_mode),
                "embedding_fallbacks": self.embedding_fallbacks,
                "fallback_rate": f"{self.fallback_rate:.2%}",
            },
            "errors": dict(self.errors_by_type),
        }


class MetricsCollector:
    """
    Collects and aggregates search metrics.

    Usage:
        collector = MetricsCollector()

        with collector.track_search(query_text) as tracker:
            response = retriever.search(query_text)
            tracker.set_results(response.count, response.search_mode.value)

        metrics = collector.get_metrics()
    """

    _instance = None

    def __new__(cls):
        """Singleton pattern for global metrics collection."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self.metrics = SystemMetrics()
        self._history: list[SearchMetrics] = []
        self._max_history = 1000  # Keep last 1000 searches
        self._start_time = datetime.now()
        self._lock = threading.Lock()
        self._initialized = True

    def reset(self):
        """Reset all metrics (for testing)."""
        with self._lock:
            self.metrics = SystemMetrics()
            self._history = []
            self._start_time = datetime.now()

    class SearchTracker:
        """Context manager for tracking search metrics."""

        def __init__(self, collector: 'MetricsCollector', query_text: str):
            self.collector = collector
            self.search = SearchMetrics(
                search_id=f"s_{int(time.time() * 1000)}",
                query_text=query_text[:200],  # Truncate for storage
                start_time=time.time(),
            )

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc_val, exc_tb):
            self.search.end_time = time.time()
            self.search.latency_ms = (self.search.end_time - self.search.start_time) * 1000

            if exc_type:
                self.search.error = str(exc_val)
                self.collector._record_error(exc_type.__name__)

            self.collector._record_search(self.search)
            return False  # Don't suppress exceptions

        def set_results(
            self,
            count: int,
            search_mode: str,
            relevance_applied: bool = False,
            embedding_fallback: bool = False,
        ):
            """Set search result metadata."""
            self.search.results_count = count
            self.search.search_mode = search_mode
            self.search.relevance_applied = relevance_applied
            self.search.embedding_fallback = embedding_fallback

    def track_search(self, query_text: str) -> SearchTracker:
        """
        Create a search tracker context manager.

        Usage:
            with collector.track_search(query) as tracker:
                response = do_search()
                tracker.set_results(response.count, response.search_mode.value)
        """
        return self.SearchTracker(self, query_text or "")

    def _record_search(self, search: SearchMetrics):
        """Record completed search metrics."""
        with self._lock:
            self.metrics.total_searches += 1

            if search.error:
                self.metrics.failed_searches += 1
            else:
                self.metrics.successful_searches += 1
                if search.results_count == 0:
                    self.metrics.empty_results += 1

            self.metrics.total_latency_ms += search.latency_ms
            self.metrics.min_latency_ms = min(self.metrics.min_latency_ms, search.latency_ms)
            self.metrics.max_latency_ms = max(self.metrics.max_latency_ms, search.latency_ms)
            self.metrics.latencies.append(search.latency_ms)

            # Keep latencies list bounded
            if len(self.metrics.latencies) > self._max_history:
                self.metrics.latencies = self.metrics.latencies[-self._max_history:]

            if search.search_mode:
                self.metrics.searches_by_mode[search.search_mode] += 1
            if search.embedding_fallback:
                self.metrics.embedding_fallbacks += 1

            self._history.append(search)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history:]

    def _record_error(self, error_type: str):
        """Record an error by type."""
        with self._lock:
            self.metrics.errors_by_type[error_type] += 1

    def get_metrics(self) -> SystemMetrics:
        """Get current metrics."""
        return self.metrics

    def get_metrics_dict(self) -> dict:
        """Get metrics as a dictionary."""
        with self._lock:
            return self.metrics.to_dict()

    def get_recent_searches(self, limit: int = 10) -> list[SearchMetrics]:
        """Get most recent searches."""
        return self._history[-limit:]

    def get_uptime(self) -> timedelta:
        """Get system uptime."""
        return datetime.now() - self._start_time


# Global metrics collector instance
_collector = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
