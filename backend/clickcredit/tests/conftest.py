"""Pytest configuration for attribution core tests

WHAT: Shared fakes for the core's collaborators and a service factory
WHY: Core tests run without a database, Redis or environment configuration
REFERENCES:
    - clickcredit/services/attribution/interfaces.py: Interfaces the fakes implement
    - clickcredit/services/attribution/service.py: build_attribution_service
"""

import os
import sys
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SENTRY_DSN", "")

from clickcredit.deps import Settings
from clickcredit.services.attribution import (
    Attribution,
    ClickEvent,
    ContentPost,
    EventStore,
    Platform,
    SaleEvent,
    ScoringWeights,
    SharedCache,
    WeightsStore,
    build_attribution_service,
)
from clickcredit.services.attribution.types import ensure_utc, utcnow


# ============================================================================
# Fakes
# ============================================================================

class _FakeEventStore(EventStore):
    """Dict-backed EventStore. Set `unavailable = True` to simulate an outage."""

    def __init__(self):
        self.clicks: Dict[str, ClickEvent] = {}
        self.sales: Dict[str, SaleEvent] = {}
        self.posts: Dict[str, ContentPost] = {}
        self.attributions: Dict[str, Attribution] = {}
        self.claims: Dict[str, str] = {}
        self.unavailable = False

    def _check(self):
        if self.unavailable:
            raise ConnectionError("event store down")

    async def save_click(self, click):
        self._check()
        self.clicks[click.click_id] = click
        return click.click_id

    async def save_sale(self, sale):
        self._check()
        self.sales[sale.sale_id] = sale
        return sale.sale_id

    async def save_content_post(self, post):
        self._check()
        self.posts[post.post_id] = post
        return post.post_id

    async def save_attribution(self, attribution):
        self._check()
        self.attributions[attribution.attribution_id] = attribution
        return attribution.attribution_id

    async def update_attribution(self, attribution):
        self._check()
        self.attributions[attribution.attribution_id] = attribution

    async def get_attribution(self, attribution_id):
        self._check()
        return self.attributions.get(attribution_id)

    async def get_click(self, click_id):
        self._check()
        return self.clicks.get(click_id)

    async def find_clicks_by_user(self, user_id, since, until=None, include_attributed=False):
        self._check()
        found = [
            c for c in self.clicks.values()
            if c.user_id == user_id
            and ensure_utc(c.clicked_at) >= since
            and (until is None or ensure_utc(c.clicked_at) <= until)
            and (include_attributed or c.click_id not in self.claims)
        ]
        return sorted(found, key=lambda c: c.clicked_at, reverse=True)

    async def find_recent_posts(self, user_id, since, until=None):
        self._check()
        found = [
            p for p in self.posts.values()
            if p.user_id == user_id
            and ensure_utc(p.posted_at) >= since
            and (until is None or ensure_utc(p.posted_at) <= until)
        ]
        return sorted(found, key=lambda p: p.posted_at, reverse=True)

    async def find_attributions(self, user_id, status=None):
        self._check()
        return [
            a for a in self.attributions.values()
            if a.user_id == user_id and (status is None or a.status == status)
        ]

    async def mark_click_attributed(self, click_id, sale_id):
        self._check()
        holder = self.claims.get(click_id)
        if holder not in (None, sale_id):
            return False
        self.claims[click_id] = sale_id
        return True

    async def release_click(self, click_id):
        self._check()
        self.claims.pop(click_id, None)


class _FakeSharedCache(SharedCache):
    """Dict-backed shared tier with TTLs. `unavailable = True` makes every call fail."""

    def __init__(self):
        self.data: Dict[str, bytes] = {}
        self.expires: Dict[str, float] = {}
        self.set_calls: List[tuple] = []
        self.unavailable = False

    def _check(self):
        if self.unavailable:
            raise ConnectionError("redis down")

    async def get(self, key):
        self._check()
        if key in self.expires and self.expires[key] < time.monotonic():
            self.data.pop(key, None)
        return self.data.get(key)

    async def set_with_ttl(self, key, value, ttl_seconds):
        self._check()
        self.set_calls.append((key, ttl_seconds))
        self.data[key] = value
        self.expires[key] = time.monotonic() + ttl_seconds

    async def delete(self, key):
        self._check()
        self.data.pop(key, None)
        self.expires.pop(key, None)


class _FakeWeightsStore(WeightsStore):
    def __init__(self, initial: Optional[ScoringWeights] = None):
        self.saved: List[ScoringWeights] = [initial] if initial else []
        self.fail_saves = False

    async def load(self):
        return self.saved[-1] if self.saved else None

    async def save(self, weights):
        if self.fail_saves:
            raise ConnectionError("weights table locked")
        self.saved.append(weights)


# ============================================================================
# Builders
# ============================================================================

def make_click(
    click_id: str = "click-1",
    user_id: str = "creator-1",
    minutes_ago: float = 5.0,
    now: Optional[datetime] = None,
    **overrides,
) -> ClickEvent:
    now = now or utcnow()
    fields = dict(
        click_id=click_id,
        link_id="link-1",
        user_id=user_id,
        clicked_at=now - timedelta(minutes=minutes_ago),
        platform=Platform.youtube,
    )
    fields.update(overrides)
    return ClickEvent(**fields)


def make_sale(
    sale_id: str = "sale-1",
    user_id: str = "creator-1",
    now: Optional[datetime] = None,
    **overrides,
) -> SaleEvent:
    fields = dict(
        sale_id=sale_id,
        user_id=user_id,
        amount=2999,
        sold_at=now or utcnow(),
    )
    fields.update(overrides)
    return SaleEvent(**fields)


def settings_for_tests(**overrides) -> Settings:
    values = dict(REDIS_URL="", SENTRY_DSN=None, DATABASE_URL="sqlite:///:memory:")
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def event_store():
    return _FakeEventStore()


@pytest.fixture
def shared_cache():
    return _FakeSharedCache()


@pytest.fixture
def weights_store():
    return _FakeWeightsStore()


@pytest.fixture
def make_service(event_store, weights_store):
    """Factory: make_service(shared=None, **settings_overrides) -> AttributionService."""

    def _make(shared=None, **overrides):
        return build_attribution_service(
            settings_for_tests(**overrides),
            event_store=event_store,
            shared_cache=shared,
            weights_store=weights_store,
        )

    return _make

