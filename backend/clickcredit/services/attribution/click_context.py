"""Helpers that derive click signals and context from raw request data."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import parse_qs

TRACKER_COOKIE = "rckr_id"

_TABLET = re.compile(r"(tablet|ipad|playbook|silk)|(android(?!.*mobi))", re.IGNORECASE)
_MOBILE = re.compile(
    r"mobile|ip(hone|od)|android|blackberry|iemobile|kindle|silk-accelerated|(hpw|web)os|opera m(obi|ini)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class UtmTags:
    source: Optional[str] = None
    medium: Optional[str] = None
    campaign: Optional[str] = None
    term: Optional[str] = None
    content: Optional[str] = None


def build_fingerprint(ip: Optional[str], user_agent: Optional[str], country: Optional[str]) -> str:
    """Coarse browser fingerprint: sha256 of ip, truncated user agent and country."""
    data = f"{ip or ''}|{(user_agent or '')[:50]}|{(country or 'XX').upper()}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:32]


def device_type(user_agent: Optional[str]) -> str:
    ua = user_agent or ""
    if _TABLET.search(ua):
        return "tablet"
    if _MOBILE.search(ua):
        return "mobile"
    return "desktop"


def parse_utm(query_string: Optional[str]) -> UtmTags:
    params = parse_qs(query_string or "", keep_blank_values=False)

    def first(name: str) -> Optional[str]:
        values = params.get(name)
        return values[0] if values else None

    return UtmTags(
        source=first("utm_source"),
        medium=first("utm_medium"),
        campaign=first("utm_campaign"),
        term=first("utm_term"),
        content=first("utm_content"),
    )


def tracker_from_cookies(cookies: Mapping[str, str]) -> Optional[str]:
    return cookies.get(TRACKER_COOKIE) or None
