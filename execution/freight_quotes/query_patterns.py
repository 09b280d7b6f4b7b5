"""
Query Pattern Definitions for Freight Quote Search

Bypass phrases, synonyms and keyword fields used to route free-text queries.
Modules import from here instead of defining patterns inline.
"""

import re

# =============================================================================
# Bypass Phrases
# =============================================================================

# Queries that mean "show everything": no filter, no relevance scoring
BYPASS_EXACT = (
    "all",
    "recent",
    "most recent",
    "show all",
)

BYPASS_CONTAINS = (
    "all quotes",
    "all freight",
    "line item",
)

# =============================================================================
# Synonyms
# =============================================================================

# (trigger substrings, match target) -- first matching entry wins
SYNONYMS = (
    (("chinese", "china"), "China"),
)

# =============================================================================
# Keyword Search
# =============================================================================

KEYWORD_FIELDS = (
    "customer_name",
    "quote_reference",
    "origin_port",
    "destination_port",
)

_WHITESPACE = re.compile(r"\s+")


def normalize_query(text: str) -> str:
    """Lowercase and collapse whitespace."""
    return _WHITESPACE.sub(" ", (text or "").strip()).lower()


def is_bypass_query(
    text: str,
    exact: tuple = BYPASS_EXACT,
    contains: tuple = BYPASS_CONTAINS,
) -> bool:
    """True for empty queries and phrases that request the full listing."""
    query = normalize_query(text)
    if not query:
        return True
    return query in exact or any(phrase in query for phrase in contains)


def keyword_target(text: str, synonyms: tuple = SYNONYMS) -> str:
    """Value to substring-match against the keyword fields."""
    query = normalize_query(text)
    for triggers, target in synonyms:
        if any(trigger in query for trigger in triggers):
            return target
    return (text or "").strip()
