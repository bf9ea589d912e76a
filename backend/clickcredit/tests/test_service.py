"""
Attribution Service Tests
=========================

WHAT: Input validation, manual overrides, the review queue and periodic
      maintenance on the service facade.
WHY: These are the operations the HTTP layer and the worker call directly.
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from clickcredit.services.attribution import (
    AttributionNotFoundError,
    AttributionStatus,
    AudienceSlice,
    ContentPost,
    DependencyError,
    InvalidEventError,
    InvalidTransitionError,
    MatchTier,
    Platform,
    ScoringWeights,
)
from clickcredit.services.attribution.types import utcnow

from conftest import make_click, make_sale


def _attribute(service, sale_id="sale-1", **signals):
    async def run():
        result = await service.correlate_sale(make_sale(sale_id=sale_id, **signals))
        await service.runner.drain()
        return result.attribution

    return asyncio.run(run())


def _ingest(service, *clicks):
    async def run():
        for click in clicks:
            await service.ingest_click(click)
        await service.runner.drain()

    asyncio.run(run())


# =============================================================================
# Validation
# =============================================================================

@pytest.mark.parametrize("field", ["click_id", "link_id", "user_id"])
def test_click_missing_identity_is_rejected(make_service, field):
    service = make_service()

    with pytest.raises(InvalidEventError) as exc:
        asyncio.run(service.ingest_click(make_click(**{field: ""})))

    assert exc.value.field == field


def test_naive_click_timestamp_is_treated_as_utc(make_service, event_store):
    service = make_service()
    naive = datetime.utcnow().replace(microsecond=0) - timedelta(minutes=1)

    _ingest(service, make_click(clicked_at=naive, platform="twitch"))

    stored = event_store.clicks["click-1"]
    assert stored.clicked_at.tzinfo is not None
    assert stored.platform == Platform.twitch


@pytest.mark.parametrize("amount", [-1, 12.5, True])
def test_sale_amount_must_be_non_negative_integer(make_service, amount):
    service = make_service()

    with pytest.raises(InvalidEventError):
        asyncio.run(service.correlate_sale(make_sale(amount=amount)))


def test_sale_currency_is_normalized(make_service, event_store):
    service = make_service()

    asyncio.run(service.correlate_sale(make_sale(currency="eur")))

    assert event_store.sales["sale-1"].currency == "EUR"


def test_post_audience_percentage_is_bounded(make_service):
    service = make_service()
    post = ContentPost(
        post_id="post-1",
        user_id="creator-1",
        platform=Platform.tiktok,
        posted_at=utcnow(),
        audience=(AudienceSlice(country="US", percentage=140.0),),
    )

    with pytest.raises(InvalidEventError):
        asyncio.run(service.record_content_post(post))


def test_click_is_cached_even_when_store_is_down(make_service, event_store):
    service = make_service()
    event_store.unavailable = True

    _ingest(service, make_click(ip_address="1.2.3.4"))

    assert [c.click_id for c in service.cache.unattributed("creator-1")] == ["click-1"]
    assert service.learner.stats()["events"] == 1


def test_post_storage_failure_surfaces_as_dependency_error(make_service, event_store):
    service = make_service()
    event_store.unavailable = True
    post = ContentPost(post_id="post-1", user_id="creator-1", platform=Platform.youtube, posted_at=utcnow())

    with pytest.raises(DependencyError):
        asyncio.run(service.record_content_post(post))


# =============================================================================
# Manual overrides
# =============================================================================

def test_adjust_revenue_share_adds_audit_note(make_service):
    service = make_service()
    _ingest(service, make_click(ip_address="1.2.3.4"))
    attribution = _attribute(service, ip_address="1.2.3.4")

    adjusted = asyncio.run(service.adjust_attribution(attribution.attribution_id, revenue_share=0.5, note="split"))

    assert adjusted.revenue_share == 0.5
    assert [n.text for n in adjusted.notes] == ["Revenue share changed from 1.00 to 0.50", "split"]


def test_adjust_rejects_out_of_range_share(make_service):
    service = make_service()
    _ingest(service, make_click(ip_address="1.2.3.4"))
    attribution = _attribute(service, ip_address="1.2.3.4")

    with pytest.raises(InvalidTransitionError):
        asyncio.run(service.adjust_attribution(attribution.attribution_id, revenue_share=1.5))


def test_unknown_attribution_is_not_found(make_service):
    service = make_service()

    with pytest.raises(AttributionNotFoundError):
        asyncio.run(service.submit_feedback("missing", confirmed=True))


def test_reassign_moves_claim_to_chosen_click(make_service, event_store):
    service = make_service()
    _ingest(
        service,
        make_click(click_id="auto", ip_address="1.2.3.4"),
        make_click(click_id="manual", minutes_ago=30),
    )
    attribution = _attribute(service, ip_address="1.2.3.4")

    reassigned = asyncio.run(service.reassign_attribution(attribution.attribution_id, "manual"))

    assert reassigned.click_id == "manual"
    assert reassigned.matched_by.tier == MatchTier.manual
    assert reassigned.notes[-1].text == "Reassigned from auto to manual"
    assert event_store.claims == {"manual": "sale-1"}
    assert [c.click_id for c in service.cache.unattributed("creator-1")] == ["auto"]


def test_reassign_refuses_click_held_by_another_sale(make_service):
    service = make_service()
    _ingest(
        service,
        make_click(click_id="first", ip_address="1.1.1.1"),
        make_click(click_id="second", ip_address="2.2.2.2"),
    )
    first = _attribute(service, sale_id="sale-1", ip_address="1.1.1.1")
    _attribute(service, sale_id="sale-2", ip_address="2.2.2.2")

    with pytest.raises(InvalidTransitionError):
        asyncio.run(service.reassign_attribution(first.attribution_id, "second"))


def test_reassign_refused_by_cache_releases_store_claim(make_service, event_store):
    service = make_service()
    held = make_click(click_id="held", minutes_ago=30)
    _ingest(service, make_click(click_id="auto", ip_address="1.2.3.4"), held)
    attribution = _attribute(service, ip_address="1.2.3.4")
    # Claimed in the cache by a sale from another process, not yet in the store
    asyncio.run(service.cache.mark_attributed(held, "sale-9"))

    with pytest.raises(InvalidTransitionError):
        asyncio.run(service.reassign_attribution(attribution.attribution_id, "held"))

    assert event_store.claims == {"auto": "sale-1"}


def test_reassign_refuses_foreign_click(make_service):
    service = make_service()
    _ingest(
        service,
        make_click(click_id="mine", ip_address="1.2.3.4"),
        make_click(click_id="theirs", user_id="creator-2"),
    )
    attribution = _attribute(service, ip_address="1.2.3.4")

    with pytest.raises(InvalidEventError):
        asyncio.run(service.reassign_attribution(attribution.attribution_id, "theirs"))


# =============================================================================
# Review queue + model status
# =============================================================================

def test_review_queue_lists_only_uncertain(make_service):
    service = make_service()
    _ingest(
        service,
        make_click(click_id="weak", ip_address="1.1.1.1"),
        make_click(click_id="strong", ip_address="2.2.2.2", tracker_id="abc"),
    )
    weak = _attribute(service, sale_id="sale-1", ip_address="1.1.1.1")
    strong = _attribute(service, sale_id="sale-2", ip_address="2.2.2.2", tracker_id="abc")

    queue = asyncio.run(service.list_review_queue("creator-1"))

    assert strong.status == AttributionStatus.matched
    assert [a.attribution_id for a in queue] == [weak.attribution_id]


def test_model_status_snapshot(make_service):
    service = make_service()

    status = service.get_model_status()

    assert status.version == "v1.0.0"
    assert sum(status.weights.values()) == pytest.approx(1.0)
    assert status.lambdas["TWITCH"] == pytest.approx(2.0)
    assert status.samples_until_retrain == 10
    assert status.cache_stats.shared_configured is False


# =============================================================================
# Maintenance
# =============================================================================

def test_retrain_without_new_samples_is_a_noop(make_service, weights_store):
    service = make_service()

    result = asyncio.run(service.retrain())

    assert result.retrained is False
    assert result.reason == "no new samples"
    assert weights_store.saved == []


def test_start_resumes_persisted_weights(make_service, weights_store):
    weights_store.saved.append(ScoringWeights.default().evolve(version="v1.0.3"))
    service = make_service()

    asyncio.run(service.start())

    assert service.get_model_status().version == "v1.0.3"


def test_prune_reports_both_stores(make_service):
    service = make_service(INSIGHT_RETENTION_DAYS=1, ATTRIBUTION_WINDOW_HOURS=1)
    service.cache._hot.put(make_click(click_id="stale", minutes_ago=180))

    assert service.prune() == {"insight_events": 0, "hot_clicks": 1}
