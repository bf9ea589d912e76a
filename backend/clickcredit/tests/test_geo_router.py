"""
Geo Link Router Tests
=====================

WHAT: Region -> country -> default resolution, query passthrough,
      validation and the stored router form.
"""

import pytest

from clickcredit.services.attribution.errors import InvalidEventError
from clickcredit.services.attribution.geo_router import (
    GeoAffiliateRouter,
    GeoRoute,
    StandardRouter,
    amazon_router,
    resolve_route,
    router_from_dict,
    validate_router,
)


def _router(**kwargs):
    return GeoAffiliateRouter(
        default_url="https://shop.example.com/p/1",
        routes=(
            GeoRoute(country="US", url="https://us.example.com/p/1"),
            GeoRoute(country="US", region="CA", url="https://ca.example.com/p/1"),
            GeoRoute(country="DE", url="https://de.example.com/p/1"),
        ),
        **kwargs,
    )


def test_region_beats_country_beats_default():
    router = _router()

    region = resolve_route(router, "us", "ca")
    country = resolve_route(router, "US", "TX")
    default = resolve_route(router, "FR")
    unknown = resolve_route(router, None)

    assert (region.url, region.match_type, region.matched_region) == ("https://ca.example.com/p/1", "region", "CA")
    assert (country.url, country.match_type) == ("https://us.example.com/p/1", "country")
    assert default.match_type == "default"
    assert unknown.url == "https://shop.example.com/p/1"


def test_standard_router_ignores_location():
    result = resolve_route(StandardRouter(url="https://example.com"), "DE", "BY")

    assert result.url == "https://example.com"
    assert result.match_type == "standard"


def test_query_params_are_preserved_when_enabled():
    router = _router(preserve_query_params=True)

    result = resolve_route(router, "DE", query_params={"utm_source": "yt", "ref": "x"})

    assert result.url == "https://de.example.com/p/1?utm_source=yt&ref=x"
    assert resolve_route(_router(), "DE", query_params={"utm_source": "yt"}).url == "https://de.example.com/p/1"


def test_validation_reports_every_problem():
    router = GeoAffiliateRouter(
        default_url="not a url",
        routes=(GeoRoute(country="", url="ftp://example.com"),),
    )

    assert validate_router(router) == [
        "default_url is not a valid URL",
        "Route 0: country is required",
        "Route 0: url is not a valid URL",
    ]
    assert validate_router(StandardRouter(url="")) == ["url is required"]
    assert validate_router(_router()) == []


def test_amazon_router_uses_store_per_country():
    router = amazon_router("B00TEST", {"de": "creator-21", "US": "creator-20"})

    assert resolve_route(router, "DE").url == "https://amazon.de/dp/B00TEST?tag=creator-21"
    assert resolve_route(router, "JP").url == "https://amazon.com/dp/B00TEST?tag=creator-20"


def test_router_from_dict_round_trip_of_stored_forms():
    geo = router_from_dict({
        "kind": "geo_affiliate",
        "default_url": "https://shop.example.com",
        "routes": [{"country": "GB", "url": "https://uk.example.com"}],
        "preserve_query_params": True,
    })
    amazon = router_from_dict({"kind": "amazon", "asin": "B1", "tags": {"GB": "t-21"}})

    assert geo.routes[0].country == "GB"
    assert geo.preserve_query_params is True
    assert resolve_route(amazon, "GB").url == "https://amazon.co.uk/dp/B1?tag=t-21"
    assert router_from_dict({"url": "https://example.com"}) == StandardRouter(url="https://example.com")


def test_router_from_dict_rejects_unknown_kind():
    with pytest.raises(InvalidEventError):
        router_from_dict({"kind": "round_robin"})
    with pytest.raises(InvalidEventError):
        router_from_dict({"kind": "amazon", "asin": "B1"})
