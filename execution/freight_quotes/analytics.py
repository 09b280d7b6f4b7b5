"""
Aggregations over normalized quotes.

Pure functions: callers fetch and normalize, this module only groups and
reduces. Amounts are summed as stored; no currency conversion is applied.
"""

from collections import defaultdict
from dataclasses import dataclass

from .models import Quote


def _route(quote: Quote) -> str:
    origin = quote.origin_port or "Unknown"
    destination = quote.destination_port or "Unknown"
    return f"{origin} → {destination}"


GROUP_KEYS = {
    "customer": lambda q: q.customer_name or "Unknown",
    "route": _route,
    "originPort": lambda q: q.origin_port or "Unknown",
    "destinationPort": lambda q: q.destination_port or "Unknown",
    "currency": lambda q: q.total_amount.currency,
}

METRICS = {
    "sum": sum,
    "avg": lambda values: sum(values) / len(values),
    "count": len,
    "min": min,
    "max": max,
}


@dataclass(frozen=True)
class AggregationBucket:
    key: str
    value: float
    count: int

    def to_dict(self) -> dict:
        return {"key": self.key, "value": self.value, "count": self.count}


def aggregate_quotes(
    quotes: list[Quote],
    group_by: str = "customer",
    metric: str = "sum",
    limit: int = 20,
) -> list[AggregationBucket]:
    """
    Group quotes and reduce their total amounts.

    Args:
        quotes: Normalized quotes
        group_by: One of GROUP_KEYS
        metric: One of METRICS, applied to totalAmount.amount
        limit: Maximum buckets returned

    Returns:
        Buckets sorted by value descending, then key
    """
    if group_by not in GROUP_KEYS:
        raise ValueError(f"Unsupported group_by: {group_by}. Expected one of {sorted(GROUP_KEYS)}")
    if metric not in METRICS:
        raise ValueError(f"Unsupported metric: {metric}. Expected one of {sorted(METRICS)}")

    key_fn = GROUP_KEYS[group_by]
    reduce_fn = METRICS[metric]

    groups = defaultdict(list)
    for quote in quotes:
        groups[key_fn(quote)].append(quote.total_amount.amount)

    buckets = [
        AggregationBucket(key=key, value=round(float(reduce_fn(values)), 2), count=len(values))
        for key, values in groups.items()
    ]
    buckets.sort(key=lambda b: (-b.value, b.key))
    return buckets[:limit]
