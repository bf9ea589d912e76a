"""
Link destination routing by visitor geography.

WHAT:
    Router configuration for a trackable link, as tagged variants:
    - StandardRouter: one destination for everyone
    - GeoAffiliateRouter: per-country / per-region affiliate destinations

WHY:
    Affiliate programs are regional (amazon.de vs amazon.com). Resolution
    order is region, then country, then the default URL.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .errors import InvalidEventError

AMAZON_DOMAINS: Dict[str, str] = {
    "US": "amazon.com",
    "GB": "amazon.co.uk",
    "UK": "amazon.co.uk",
    "DE": "amazon.de",
    "FR": "amazon.fr",
    "IT": "amazon.it",
    "ES": "amazon.es",
    "CA": "amazon.ca",
    "AU": "amazon.com.au",
    "JP": "amazon.co.jp",
    "IN": "amazon.in",
    "BR": "amazon.com.br",
    "MX": "amazon.com.mx",
}


@dataclass(frozen=True)
class GeoRoute:
    country: str
    url: str
    region: Optional[str] = None
    label: Optional[str] = None


@dataclass(frozen=True)
class StandardRouter:
    url: str
    kind: str = field(default="standard", init=False)


@dataclass(frozen=True)
class GeoAffiliateRouter:
    default_url: str
    routes: Tuple[GeoRoute, ...] = ()
    preserve_query_params: bool = False
    kind: str = field(default="geo_affiliate", init=False)


LinkRouter = Union[StandardRouter, GeoAffiliateRouter]


@dataclass(frozen=True)
class RouteResult:
    url: str
    match_type: str
    matched_country: Optional[str] = None
    matched_region: Optional[str] = None


def resolve_route(
    router: LinkRouter,
    country: Optional[str],
    region: Optional[str] = None,
    query_params: Optional[Mapping[str, str]] = None,
) -> RouteResult:
    """Pick the destination URL for a visitor."""
    if isinstance(router, StandardRouter):
        return RouteResult(url=router.url, match_type="standard")

    if not country:
        return RouteResult(url=_with_params(router, router.default_url, query_params), match_type="default")

    country = country.upper()
    region = region.upper() if region else None

    if region:
        for route in router.routes:
            if route.country.upper() == country and route.region and route.region.upper() == region:
                return RouteResult(
                    url=_with_params(router, route.url, query_params),
                    match_type="region",
                    matched_country=country,
                    matched_region=region,
                )

    for route in router.routes:
        if route.country.upper() == country and not route.region:
            return RouteResult(
                url=_with_params(router, route.url, query_params),
                match_type="country",
                matched_country=country,
            )

    return RouteResult(url=_with_params(router, router.default_url, query_params), match_type="default")


def _with_params(router: GeoAffiliateRouter, url: str, params: Optional[Mapping[str, str]]) -> str:
    if not router.preserve_query_params or not params:
        return url
    parts = urlsplit(url)
    query = dict(parse_qsl(parts.query))
    for key, value in params.items():
        query.setdefault(key, value)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def amazon_router(asin: str, tags: Mapping[str, str], default_tag: Optional[str] = None) -> GeoAffiliateRouter:
    """Geo router for one Amazon product with a store-specific associate tag per country."""
    routes = []
    for country, tag in tags.items():
        code = country.upper()
        domain = AMAZON_DOMAINS.get(code, "amazon.com")
        routes.append(GeoRoute(country=code, url=f"https://{domain}/dp/{asin}?tag={tag}", label=f"Amazon {code}"))

    upper_tags = {k.upper(): v for k, v in tags.items()}
    us_tag = upper_tags.get("US") or default_tag or next(iter(tags.values()), "")
    return GeoAffiliateRouter(default_url=f"https://amazon.com/dp/{asin}?tag={us_tag}", routes=tuple(routes))


def _valid_url(url: str) -> bool:
    parts = urlsplit(url)
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def validate_router(router: LinkRouter) -> List[str]:
    """Return a list of problems; empty means valid."""
    if isinstance(router, StandardRouter):
        if not router.url:
            return ["url is required"]
        return [] if _valid_url(router.url) else ["url is not a valid URL"]

    errors = []
    if not router.default_url:
        errors.append("default_url is required")
    elif not _valid_url(router.default_url):
        errors.append("default_url is not a valid URL")

    for index, route in enumerate(router.routes):
        if not route.country:
            errors.append(f"Route {index}: country is required")
        if not route.url:
            errors.append(f"Route {index}: url is required")
        elif not _valid_url(route.url):
            errors.append(f"Route {index}: url is not a valid URL")
    return errors


def router_from_dict(data: Mapping[str, Any]) -> LinkRouter:
    """Build a router from its stored form ({"kind": "standard" | "geo_affiliate" | "amazon", ...})."""
    kind = data.get("kind", "standard")
    if kind == "standard":
        return StandardRouter(url=data.get("url", ""))
    if kind == "amazon":
        if not data.get("asin") or not data.get("tags"):
            raise InvalidEventError("amazon router needs asin and tags", field="asin")
        return amazon_router(data["asin"], data["tags"], default_tag=data.get("default_tag"))
    if kind == "geo_affiliate":
        routes = tuple(
            GeoRoute(
                country=r.get("country", ""),
                url=r.get("url", ""),
                region=r.get("region"),
                label=r.get("label"),
            )
            for r in data.get("routes") or ()
        )
        return GeoAffiliateRouter(
            default_url=data.get("default_url", ""),
            routes=routes,
            preserve_query_params=bool(data.get("preserve_query_params", False)),
        )
    raise InvalidEventError(f"unknown router kind {kind!r}", field="kind")
