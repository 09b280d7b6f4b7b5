"""
Collection selection between the current and legacy quote collections.

The current collection carries embeddings and a structured line_items field.
Older deployments only have the legacy collection. Selection is re-evaluated
on every request so a migration takes effect without a restart.
"""

import os
import logging
from typing import Optional
from dataclasses import dataclass

from .document_store import StoredObject
from .errors import CollectionNotFound, StoreUnavailable
from .models import RawQuoteRecord, SchemaVersion, tag_record

logger = logging.getLogger(__name__)


@dataclass
class CollectionConfig:
    """Names of the quote collections."""
    current_collection: str = "FreightQuotes_Vectorized"
    legacy_collection: str = "FreightQuotes_Opus"

    @classmethod
    def from_env(cls) -> "CollectionConfig":
        return cls(
            current_collection=os.getenv("QUOTES_CURRENT_COLLECTION", "FreightQuotes_Vectorized"),
            legacy_collection=os.getenv("QUOTES_LEGACY_COLLECTION", "FreightQuotes_Opus"),
        )


@dataclass(frozen=True)
class CollectionSelection:
    """A collection together with the schema its records were written under."""
    collection: str
    schema_version: SchemaVersion

    @property
    def supports_vectors(self) -> bool:
        return self.schema_version is SchemaVersion.CURRENT

    def tag(self, obj: StoredObject) -> RawQuoteRecord:
        """Tag a raw store object with this selection's schema version."""
        return tag_record(
            obj.properties,
            self.schema_version,
            object_id=obj.object_id,
            distance=obj.distance,
        )


class CollectionSelector:
    """
    Picks the collection to query for a request.

    Usage:
        selector = CollectionSelector(store)
        selection = selector.select()
    """

    def __init__(self, store, config: Optional[CollectionConfig] = None):
        self.store = store
        self.config = config or CollectionConfig()

    @property
    def current(self) -> CollectionSelection:
        return CollectionSelection(self.config.current_collection, SchemaVersion.CURRENT)

    @property
    def legacy(self) -> CollectionSelection:
        return CollectionSelection(self.config.legacy_collection, SchemaVersion.LEGACY)

    def select(self) -> CollectionSelection:
        """Probe the current collection; fall back to legacy on any probe failure."""
        try:
            self.store.probe_collection(self.config.current_collection)
        except (CollectionNotFound, StoreUnavailable) as e:
            logger.warning(
                f"Current collection {self.config.current_collection} unavailable "
                f"({type(e).__name__}: {e}), using legacy {self.config.legacy_collection}"
            )
            return self.legacy

        logger.debug(f"Using current collection {self.config.current_collection}")
        return self.current

    def candidates(self) -> list[CollectionSelection]:
        """Collections to try, in order, when looking up a single document."""
        return [self.current, self.legacy]
