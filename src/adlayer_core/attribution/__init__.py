"""Attribution: marketing identifiers to ad-platform entity IDs."""
from .normalize import best_fuzzy_match, compound_key, normalize_name, score_match
from .resolver import (
    AttributionResolver,
    LookupMaps,
    ResolvedIds,
    ResolveRequest,
    UniqueMap,
)
from .utm import extract_order_utm, parse_utm_from_url, utm_to_resolve_request

__all__ = [
    "AttributionResolver",
    "LookupMaps",
    "ResolvedIds",
    "ResolveRequest",
    "UniqueMap",
    "best_fuzzy_match",
    "compound_key",
    "extract_order_utm",
    "normalize_name",
    "parse_utm_from_url",
    "score_match",
    "utm_to_resolve_request",
]
