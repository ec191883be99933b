"""Order UTM extraction with waterfall source selection.

Sources, first with a utm_campaign wins:
- Tier 1: customerJourneySummary.{lastVisit,firstVisit}.utmParameters
- Tier 2: UTM query params on the last visit's landingPage URL
- Tier 3: UTM query params on the last visit's referrerUrl
- Tier 0: nothing found
"""
import logging
from typing import Optional
from urllib.parse import parse_qs, urlparse

from .resolver import ResolveRequest


logger = logging.getLogger(__name__)

UTM_FIELDS = ("campaign", "source", "medium", "term", "content")


def _empty_utm() -> dict:
    return {name: None for name in UTM_FIELDS}


def parse_utm_from_url(url: Optional[str]) -> dict:
    """Parse utm_* query parameters from a URL.

    Args:
        url: Full URL (landingPage or referrerUrl)

    Returns:
        dict keyed by UTM field name (nullable values)
    """
    if not url:
        return _empty_utm()
    try:
        params = parse_qs(urlparse(url).query)
    except ValueError as exc:
        logger.warning("Failed to parse URL %s: %s", url[:100], exc)
        return _empty_utm()
    return {name: params.get(f"utm_{name}", [None])[0] for name in UTM_FIELDS}


def extract_order_utm(order_node: dict) -> dict:
    """Pick the UTM set for an order.

    Returns:
        {"tier": 0-3, "source": str | None, "utm": dict}
    """
    journey = order_node.get("customerJourneySummary") or {}

    for visit_name in ("lastVisit", "firstVisit"):
        visit = journey.get(visit_name) or {}
        params = visit.get("utmParameters") or {}
        if params.get("campaign"):
            utm = {name: params.get(name) for name in UTM_FIELDS}
            return {"tier": 1, "source": f"{visit_name}.utmParameters", "utm": utm}

    last_visit = journey.get("lastVisit") or {}
    for tier, url_field in ((2, "landingPage"), (3, "referrerUrl")):
        utm = parse_utm_from_url(last_visit.get(url_field))
        if utm.get("campaign"):
            return {"tier": tier, "source": url_field, "utm": utm}

    return {"tier": 0, "source": None, "utm": _empty_utm()}


def utm_to_resolve_request(utm: dict) -> ResolveRequest:
    """Map UTM values to resolver input.

    utm_campaign names the campaign, utm_medium the ad set and utm_content
    (or utm_term when content is absent) the ad.
    """
    return ResolveRequest(
        campaign_name=utm.get("campaign") or None,
        ad_set_name=utm.get("medium") or None,
        ad_name=utm.get("content") or utm.get("term") or None,
    )
