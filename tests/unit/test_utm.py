"""Unit tests for order UTM extraction."""
from src.adlayer_core.attribution.utm import (
    extract_order_utm,
    parse_utm_from_url,
    utm_to_resolve_request,
)


def test_parse_utm_from_url_with_params():
    """Test URL parsing with UTM parameters."""
    url = (
        "https://example.com/page?utm_source=facebook&"
        "utm_medium=Retarget&utm_campaign=Spring%20Sale"
    )

    result = parse_utm_from_url(url)

    assert result["source"] == "facebook"
    assert result["medium"] == "Retarget"
    assert result["campaign"] == "Spring Sale"
    assert result["term"] is None
    assert result["content"] is None


def test_parse_utm_from_url_no_params():
    """Test URL parsing without UTM parameters."""
    assert all(value is None for value in parse_utm_from_url("https://example.com/").values())
    assert all(value is None for value in parse_utm_from_url(None).values())


def test_extract_tier1_lastvisit_then_firstvisit():
    """Test Tier 1 extraction prefers lastVisit, falls back to firstVisit."""
    order = {
        "customerJourneySummary": {
            "lastVisit": {"utmParameters": {"source": "facebook"}},
            "firstVisit": {"utmParameters": {"campaign": "C1", "medium": "Retarget"}},
        }
    }

    result = extract_order_utm(order)

    assert result["tier"] == 1
    assert result["source"] == "firstVisit.utmParameters"
    assert result["utm"]["campaign"] == "C1"


def test_extract_tier2_landing_page():
    order = {
        "customerJourneySummary": {
            "lastVisit": {
                "landingPage": "https://shop.example/?utm_campaign=C2&utm_content=Video+A",
                "referrerUrl": "https://facebook.com/?utm_campaign=ignored",
            }
        }
    }

    result = extract_order_utm(order)

    assert result["tier"] == 2
    assert result["utm"]["campaign"] == "C2"
    assert result["utm"]["content"] == "Video A"


def test_extract_tier3_referrer_and_tier0():
    order = {
        "customerJourneySummary": {
            "lastVisit": {"referrerUrl": "https://l.facebook.com/?utm_campaign=C3"}
        }
    }

    assert extract_order_utm(order)["tier"] == 3
    assert extract_order_utm({})["tier"] == 0


def test_utm_to_resolve_request_maps_fields():
    request = utm_to_resolve_request({"campaign": "C1", "medium": "Retarget", "term": "Video A"})

    assert request.campaign_name == "C1"
    assert request.ad_set_name == "Retarget"
    assert request.ad_name == "Video A"

    with_content = utm_to_resolve_request({"campaign": "C1", "content": "Carousel", "term": "x"})
    assert with_content.ad_name == "Carousel"
