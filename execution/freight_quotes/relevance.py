"""
Relevance filtering and ranking of vector search results.

Distances are cosine distances: lower is more relevant. Only semantic results
pass through here; exact-match and keyword results are never filtered.
"""

import os
import logging
from typing import Optional
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class RelevanceConfig:
    """Thresholds for semantic results."""
    max_distance: float = 0.7  # records at or beyond this distance are dropped
    max_results: int = 10

    @classmethod
    def from_env(cls) -> "RelevanceConfig":
        return cls(
            max_distance=float(os.getenv("RELEVANCE_MAX_DISTANCE", "0.7")),
            max_results=int(os.getenv("SEMANTIC_RESULT_CAP", "10")),
        )


def filter_and_rank(
    objects: list,
    config: Optional[RelevanceConfig] = None,
    limit: Optional[int] = None,
) -> list:
    """
    Drop weak matches, order best-first and truncate.

    Args:
        objects: Records exposing a ``distance`` attribute
        config: Threshold and cap. Defaults to RelevanceConfig().
        limit: Caller's requested limit; the cap still applies when it is larger.

    Returns:
        New list, distances strictly below ``max_distance``, non-decreasing.
        Ties keep their input order.
    """
    config = config or RelevanceConfig()
    cap = config.max_results if limit is None else min(limit, config.max_results)

    kept = [
        obj for obj in objects
        if obj.distance is not None and obj.distance < config.max_distance
    ]
    # sorted() is stable
    ranked = sorted(kept, key=lambda obj: obj.distance)[:cap]

    dropped = len(objects) - len(kept)
    if dropped:
        logger.debug(f"Relevance filter dropped {dropped}/{len(objects)} results")

    return ranked
