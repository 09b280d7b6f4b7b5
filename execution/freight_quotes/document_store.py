"""
Document Store with PostgreSQL + pgvector

Read-only client over the quote collections. Each collection is a table:

    id          UUID PRIMARY KEY
    properties  JSONB         -- the raw extracted quote record
    embedding   VECTOR(n)     -- nullable; legacy collections have no column at all

The client returns raw property mappings and never interprets field
semantics. Failures are classified: a missing table raises CollectionNotFound,
everything else the driver reports (connection loss, statement timeout,
missing configuration) raises StoreUnavailable. A statement cancelled through
a caller's cancel event raises RequestCancelled. Nothing is retried.
"""

import os
import re
import json
import logging
import threading
from enum import Enum
from typing import Optional, Sequence, Union
from dataclasses import dataclass
from contextlib import contextmanager

import psycopg2
import psycopg2.errors
import psycopg2.extras
import psycopg2.pool

from .errors import CollectionNotFound, RequestCancelled, StoreUnavailable

logger = logging.getLogger(__name__)

# How often a running statement re-checks its cancel event
CANCEL_POLL_SECONDS = 0.05

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

FieldPath = Union[str, Sequence[str]]


class MatchKind(str, Enum):
    """How a filter value is compared against a stored field."""
    EQUAL = "equal"
    CONTAINS = "contains"  # case-insensitive substring


@dataclass
class DocumentStoreConfig:
    """Configuration for the document store."""
    connection_string: Optional[str] = None
    schema: str = "public"
    connect_timeout_seconds: int = 10
    statement_timeout_ms: int = 15000
    # Connection pooling settings
    pool_min_connections: int = 1
    pool_max_connections: int = 10
    use_pooling: bool = True  # Set to False for simple single-connection mode

    @classmethod
    def from_env(cls) -> "DocumentStoreConfig":
        return cls(
            connection_string=os.getenv("POSTGRES_URL") or os.getenv("DATABASE_URL"),
            schema=os.getenv("STORE_SCHEMA", "public"),
            connect_timeout_seconds=int(os.getenv("STORE_CONNECT_TIMEOUT", "10")),
            statement_timeout_ms=int(os.getenv("STORE_STATEMENT_TIMEOUT_MS", "15000")),
        )


@dataclass
class StoredObject:
    """A raw record as stored, with its vector distance for semantic queries."""
    object_id: str
    properties: dict
    distance: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "object_id": self.object_id,
            "properties": self.properties,
            "distance": self.distance,
        }


class DocumentStore:
    """
    PostgreSQL document store with pgvector.

    Features:
    - Exact and case-insensitive substring filters on JSONB properties
    - Cosine-distance nearest-neighbour search
    - Collection existence probes
    - Thread-safe connection pooling
    """

    def __init__(self, config: Optional[DocumentStoreConfig] = None):
        """
        Initialize document store.

        Args:
            config: Optional configuration. Uses env vars if not provided.
        """
        self.config = config or DocumentStoreConfig()
        self._conn = None
        self._pool = None
        self._lock = threading.Lock()
        self._connection_string = (
            self.config.connection_string or
            os.getenv("POSTGRES_URL") or
            os.getenv("DATABASE_URL")
        )

    def connect(self) -> None:
        """Establish database connection (with optional pooling)."""
        if not self._connection_string:
            raise StoreUnavailable(
                "No document store configured. Set POSTGRES_URL or DATABASE_URL."
            )

        connect_kwargs = {
            "dsn": self._connection_string,
            "connect_timeout": self.config.connect_timeout_seconds,
            "options": f"-c statement_timeout={self.config.statement_timeout_ms}",
            "cursor_factory": psycopg2.extras.RealDictCursor,
        }

        try:
            if self.config.use_pooling:
                self._pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self.config.pool_min_connections,
                    maxconn=self.config.pool_max_connections,
                    **connect_kwargs,
                )
                logger.info(
                    f"Connection pool initialized (min={self.config.pool_min_connections}, "
                    f"max={self.config.pool_max_connections})"
                )
            else:
                self._conn = psycopg2.connect(**connect_kwargs)
                logger.info("Connected to PostgreSQL (single connection)")
        except psycopg2.Error as e:
            logger.error(f"Database connection failed: {e}")
            raise StoreUnavailable(f"Database connection failed: {e}") from e

    def _is_connected(self) -> bool:
        return self._conn is not None or self._pool is not None

    def _get_connection(self):
        """Get a read-only connection, connecting lazily on first use."""
        with self._lock:
            if not self._is_connected():
                self.connect()

        if self._pool:
            conn = self._pool.getconn()
        else:
            conn = self._conn
        conn.autocommit = True
        return conn

    def _release_connection(self, conn) -> None:
        """Release a connection back to the pool (if pooling is enabled)."""
        if self._pool and conn is not None:
            self._pool.putconn(conn, close=bool(conn.closed))

    @contextmanager
    def get_connection(self):
        """
        Context manager for getting a database connection.

        Usage:
            with store.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
        """
        conn = self._get_connection()
        try:
            yield conn
        finally:
            self._release_connection(conn)

    @contextmanager
    def _cancel_on(self, conn, cancel_event: Optional[threading.Event], label: str):
        """Cancel the statement running on ``conn`` if ``cancel_event`` fires."""
        if cancel_event is None:
            yield
            return

        finished = threading.Event()
        # Held while cancelling so the connection is never cancelled after release
        lock = threading.Lock()

        def _watch():
            while not finished.is_set():
                if not cancel_event.wait(CANCEL_POLL_SECONDS):
                    continue
                with lock:
                    if finished.is_set():
                        return
                    logger.info(f"Cancelling {label} on client request")
                    try:
                        conn.cancel()
                    except psycopg2.Error as e:
                        logger.warning(f"Could not cancel {label}: {e}")
                return

        watcher = threading.Thread(target=_watch, name=f"cancel-{label}", daemon=True)
        watcher.start()
        try:
            yield
        finally:
            with lock:
                finished.set()

    def _execute(
        self,
        operation,
        label: str,
        collection: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        """Run ``operation(conn)`` once and classify any driver error.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.
            collection: Collection the operation targets, for CollectionNotFound.
            cancel_event: When set, the running statement is cancelled on the
                server and RequestCancelled is raised.

        Returns:
            Whatever ``operation`` returns.
        """
        if cancel_event is not None and cancel_event.is_set():
            raise RequestCancelled(label)
        try:
            with self.get_connection() as conn:
                with self._cancel_on(conn, cancel_event, label):
                    return operation(conn)
        except psycopg2.errors.UndefinedTable as e:
            raise CollectionNotFound(collection or "", f"{label}: collection {collection} does not exist") from e
        except psycopg2.errors.QueryCanceled as e:
            if cancel_event is not None and cancel_event.is_set():
                raise RequestCancelled(label) from e
            logger.error(f"{label} failed: {e}")
            raise StoreUnavailable(f"{label} failed: {e}") from e
        except psycopg2.Error as e:
            logger.error(f"{label} failed: {e}")
            raise StoreUnavailable(f"{label} failed: {e}") from e

    def close(self) -> None:
        """Close database connection(s)."""
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")
        if self._conn:
            self._conn.close()
            self._conn = None

    # =========================================================================
    # SQL helpers
    # =========================================================================

    def _table(self, collection: str) -> str:
        for name in (self.config.schema, collection):
            if not _IDENTIFIER.match(name or ""):
                raise ValueError(f"Invalid collection identifier: {name!r}")
        return f'"{self.config.schema}"."{collection}"'

    @staticmethod
    def _path_segments(field_path: str) -> list[str]:
        segments = field_path.split(".")
        for segment in segments:
            if not _IDENTIFIER.match(segment):
                raise ValueError(f"Invalid field path: {field_path!r}")
        return segments

    @staticmethod
    def _like_pattern(value: str) -> str:
        """Wrap ``value`` for a substring ILIKE, escaping LIKE wildcards."""
        escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        return f"%{escaped}%"

    def _build_filter(
        self,
        field_path: FieldPath,
        match_kind: MatchKind,
        value: str,
    ) -> tuple[str, list]:
        """Build an OR-combined WHERE clause over one or more property paths."""
        paths = [field_path] if isinstance(field_path, str) else list(field_path)
        if not paths:
            raise ValueError("At least one field path is required")

        match_kind = MatchKind(match_kind)
        conditions = []
        params = []
        for path in paths:
            if match_kind is MatchKind.CONTAINS:
                conditions.append("(properties #>> %s) ILIKE %s")
                params.extend([self._path_segments(path), self._like_pattern(str(value))])
            else:
                conditions.append("(properties #>> %s) = %s")
                params.extend([self._path_segments(path), str(value)])

        return " OR ".join(conditions), params

    @staticmethod
    def _to_stored_object(row) -> StoredObject:
        row_dict = dict(row)
        properties = row_dict.get("properties") or {}
        if isinstance(properties, str):
            properties = json.loads(properties)
        distance = row_dict.get("distance")
        return StoredObject(
            object_id=str(row_dict["id"]),
            properties=dict(properties),
            distance=float(distance) if distance is not None else None,
        )

    @staticmethod
    def _check_limit(limit: int) -> None:
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")

    # =========================================================================
    # Queries
    # =========================================================================

    def collection_exists(self, collection: str) -> bool:
        """Return True if ``collection`` exists in the configured schema."""
        sql = """
        SELECT 1 FROM information_schema.tables
        WHERE table_schema = %s AND table_name = %s
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (self.config.schema, collection))
                return cur.fetchone() is not None

        return self._execute(_op, "collection_exists", collection)

    def probe_collection(self, collection: str) -> None:
        """Lightweight existence probe. Raises CollectionNotFound when absent."""
        if not self.collection_exists(collection):
            raise CollectionNotFound(collection)

    def fetch_objects(
        self,
        collection: str,
        limit: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> list[StoredObject]:
        """Fetch up to ``limit`` records with no filter."""
        self._check_limit(limit)
        sql = f"SELECT id, properties FROM {self._table(collection)} LIMIT %s"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (limit,))
                return [self._to_stored_object(row) for row in cur.fetchall()]

        results = self._execute(_op, "fetch_objects", collection, cancel_event)
        logger.debug(f"fetch_objects({collection}) returned {len(results)} records")
        return results

    def fetch_by_filter(
        self,
        collection: str,
        field_path: FieldPath,
        match_kind: MatchKind,
        value: str,
        limit: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> list[StoredObject]:
        """
        Exact-match or substring filter over record properties.

        Args:
            collection: Collection (table) name
            field_path: Dotted property path, or a sequence of paths combined with OR
            match_kind: MatchKind.EQUAL or MatchKind.CONTAINS (case-insensitive)
            value: Value to compare against
            limit: Maximum records to return
            cancel_event: Cancels the running statement when set

        Returns:
            List of StoredObject (no distance)
        """
        self._check_limit(limit)
        where_clause, params = self._build_filter(field_path, match_kind, value)
        sql = f"""
        SELECT id, properties
        FROM {self._table(collection)}
        WHERE {where_clause}
        LIMIT %s
        """
        final_params = params + [limit]

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, final_params)
                return [self._to_stored_object(row) for row in cur.fetchall()]

        results = self._execute(_op, "fetch_by_filter", collection, cancel_event)
        logger.debug(f"fetch_by_filter({collection}) returned {len(results)} records")
        return results

    def fetch_by_vector(
        self,
        collection: str,
        vector: list[float],
        limit: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> list[StoredObject]:
        """
        Nearest-neighbour search by cosine distance, closest first.

        Records without an embedding are never returned.
        """
        self._check_limit(limit)
        if not vector:
            raise ValueError("vector must not be empty")

        sql = f"""
        SELECT id, properties, embedding <=> %s::vector AS distance
        FROM {self._table(collection)}
        WHERE embedding IS NOT NULL
        ORDER BY distance
        LIMIT %s
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (list(vector), limit))
                return [self._to_stored_object(row) for row in cur.fetchall()]

        results = self._execute(_op, "fetch_by_vector", collection, cancel_event)
        logger.debug(f"fetch_by_vector({collection}) returned {len(results)} records")
        return results

    def distinct_values(self, collection: str, field_path: str, limit: int = 500) -> list[str]:
        """Distinct non-empty values of one property, sorted."""
        self._check_limit(limit)
        segments = self._path_segments(field_path)
        sql = f"""
        SELECT DISTINCT properties #>> %s AS value
        FROM {self._table(collection)}
        WHERE COALESCE(properties #>> %s, '') <> ''
        ORDER BY value
        LIMIT %s
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (segments, segments, limit))
                return [row["value"] for row in cur.fetchall()]

        return self._execute(_op, "distinct_values", collection)

    def count_objects(self, collection: str) -> int:
        sql = f"SELECT COUNT(*) AS count FROM {self._table(collection)}"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql)
                row = cur.fetchone()
                return int(row["count"]) if row else 0

        return self._execute(_op, "count_objects", collection)

    def ping(self) -> bool:
        """Return True if the store answers a trivial query."""
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                return True

        try:
            return self._execute(_op, "ping")
        except StoreUnavailable:
            return False
