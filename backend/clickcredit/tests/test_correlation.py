"""
Sale Correlation Tests
======================

WHAT: End-to-end click -> sale attribution through AttributionService.
WHY: Covers the lookup order (hot, shared, store, content posts), the
     attribution state machine, claims, and degraded operation.

REFERENCES:
    - clickcredit/services/attribution/correlation_engine.py
    - clickcredit/services/attribution/service.py
"""

import asyncio
from datetime import timedelta

import pytest

from clickcredit.services.attribution import (
    AttributionStatus,
    AudienceSlice,
    ContentPost,
    CorrelationOutcome,
    InvalidTransitionError,
    Platform,
)
from clickcredit.services.attribution.types import utcnow

from conftest import _FakeSharedCache, make_click, make_sale


def test_ip_and_tracker_click_is_matched_from_hot_tier(make_service):
    service = make_service()
    now = utcnow()

    async def run():
        await service.ingest_click(make_click(ip_address="1.2.3.4", tracker_id="abc123", now=now))
        await service.runner.drain()
        result = await service.correlate_sale(make_sale(ip_address="1.2.3.4", tracker_id="abc123", now=now))
        await service.runner.drain()
        return result

    result = asyncio.run(run())

    assert result.outcome == CorrelationOutcome.attributed
    attribution = result.attribution
    assert attribution.status == AttributionStatus.matched
    assert attribution.click_id == "click-1"
    assert attribution.link_id == "link-1"
    assert attribution.confidence == pytest.approx(0.949, abs=0.001)
    assert attribution.time_delta_minutes == pytest.approx(5.0)
    assert result.sources == ["hot"]
    # Tracker match is deterministic, so it becomes a training sample
    assert service.trainer.sample_count == 1
    assert service.engine.store.attributions[attribution.attribution_id] is attribution


def test_sale_without_clicks_is_unattributed(make_service):
    service = make_service()

    result = asyncio.run(service.correlate_sale(make_sale(ip_address="9.9.9.9")))

    assert result.outcome == CorrelationOutcome.no_match
    assert result.attribution is None
    assert result.candidates_scored == 0
    assert service.get_model_status().is_learning is False


def test_uncertain_match_confirmed_then_trainer_retrains_after_ten_samples(make_service):
    service = make_service()
    now = utcnow()

    async def run():
        click = make_click(ip_address="1.2.3.4", now=now)
        await service.ingest_click(click)
        await service.runner.drain()
        sale = make_sale(ip_address="1.2.3.4", now=now)
        result = await service.correlate_sale(sale)
        uncertain_status = result.attribution.status
        confirmed = await service.submit_feedback(result.attribution.attribution_id, confirmed=True)
        for i in range(9):
            await service.trainer.record_ground_truth(
                click, make_sale(sale_id=f"gt-{i}", now=now), 5.0, 0.0, Platform.youtube,
            )
        return result, uncertain_status, confirmed

    result, uncertain_status, confirmed = asyncio.run(run())

    assert result.attribution.confidence == pytest.approx(0.599, abs=0.001)
    assert uncertain_status == AttributionStatus.uncertain
    assert confirmed.status == AttributionStatus.confirmed
    status = service.get_model_status()
    assert status.version == "v1.0.1"
    assert status.samples_until_retrain == 10
    assert status.last_trained_at is not None


def test_confirmed_attribution_cannot_change_again(make_service):
    service = make_service()

    async def run():
        await service.ingest_click(make_click(ip_address="1.2.3.4"))
        await service.runner.drain()
        result = await service.correlate_sale(make_sale(ip_address="1.2.3.4"))
        await service.submit_feedback(result.attribution.attribution_id, confirmed=True)
        await service.submit_feedback(result.attribution.attribution_id, confirmed=False)

    with pytest.raises(InvalidTransitionError):
        asyncio.run(run())


def test_click_from_another_process_is_found_in_shared_tier(make_service):
    shared = _FakeSharedCache()
    ingesting = make_service(shared=shared)
    correlating = make_service(shared=shared)

    async def run():
        await ingesting.ingest_click(make_click(ip_address="1.2.3.4", tracker_id="abc"))
        await ingesting.runner.drain()
        return await correlating.correlate_sale(make_sale(ip_address="1.2.3.4", tracker_id="abc"))

    result = asyncio.run(run())

    assert result.outcome == CorrelationOutcome.attributed
    assert result.sources == ["shared"]


def test_shared_tier_outage_falls_back_to_store(make_service, event_store):
    shared = _FakeSharedCache()
    shared.unavailable = True
    service = make_service(shared=shared)
    click = make_click(ip_address="1.2.3.4", tracker_id="abc")
    event_store.clicks[click.click_id] = click

    result = asyncio.run(service.correlate_sale(make_sale(ip_address="1.2.3.4", tracker_id="abc")))

    assert result.outcome == CorrelationOutcome.attributed
    assert result.attribution.click_id == click.click_id
    assert "store" in result.sources
    assert result.degraded == []
    assert service.cache.stats().shared_available is False


def test_store_outage_yields_error_outcome_without_raising(make_service, event_store):
    service = make_service()
    event_store.unavailable = True

    result = asyncio.run(service.correlate_sale(make_sale(ip_address="1.2.3.4")))

    assert result.outcome == CorrelationOutcome.error
    assert result.attribution is None
    assert result.degraded == ["event_store"]
    assert result.error


def test_failed_persist_releases_the_claimed_click(make_service, event_store):
    service = make_service()

    async def run():
        await service.ingest_click(make_click(ip_address="1.2.3.4"))
        await service.runner.drain()
        event_store.unavailable = True
        failed = await service.correlate_sale(make_sale(ip_address="1.2.3.4"))
        event_store.unavailable = False
        retried = await service.correlate_sale(make_sale(ip_address="1.2.3.4"))
        return failed, retried

    failed, retried = asyncio.run(run())

    assert failed.outcome == CorrelationOutcome.error
    assert retried.outcome == CorrelationOutcome.attributed
    assert retried.attribution.click_id == "click-1"


def test_failed_attribution_write_releases_the_store_claim(make_service, event_store, monkeypatch):
    service = make_service()
    save_attribution = event_store.save_attribution

    async def broken_save(attribution):
        raise ConnectionError("write rejected")

    async def run():
        await service.ingest_click(make_click(ip_address="1.2.3.4"))
        await service.runner.drain()
        monkeypatch.setattr(event_store, "save_attribution", broken_save)
        failed = await service.correlate_sale(make_sale(sale_id="sale-1", ip_address="1.2.3.4"))
        claims_after_failure = dict(event_store.claims)
        monkeypatch.setattr(event_store, "save_attribution", save_attribution)
        retried = await service.correlate_sale(make_sale(sale_id="sale-2", ip_address="1.2.3.4"))
        return failed, claims_after_failure, retried

    failed, claims_after_failure, retried = asyncio.run(run())

    assert failed.outcome == CorrelationOutcome.error
    assert claims_after_failure == {}
    assert retried.outcome == CorrelationOutcome.attributed
    assert retried.attribution.click_id == "click-1"
    assert event_store.claims == {"click-1": "sale-2"}


def test_content_post_fallback_when_no_click_matches(make_service):
    service = make_service()
    now = utcnow()
    post = ContentPost(
        post_id="post-1",
        user_id="creator-1",
        platform=Platform.instagram,
        posted_at=now - timedelta(minutes=1),
        audience=(AudienceSlice(country="US", city="Austin", percentage=40.0),),
    )

    async def run():
        await service.record_content_post(post)
        return await service.correlate_sale(make_sale(country="US", city="Austin", now=now))

    result = asyncio.run(run())

    assert result.outcome == CorrelationOutcome.attributed
    attribution = result.attribution
    assert attribution.post_id == "post-1"
    assert attribution.click_id is None
    assert attribution.matched_by.probabilistic is True
    assert attribution.status == AttributionStatus.matched
    assert "content" in result.sources


def test_weak_content_match_stays_unattributed(make_service):
    service = make_service()
    now = utcnow()
    post = ContentPost(
        post_id="post-1",
        user_id="creator-1",
        platform=Platform.instagram,
        posted_at=now - timedelta(hours=2),
        audience=(AudienceSlice(country="US", percentage=40.0),),
    )

    async def run():
        await service.record_content_post(post)
        return await service.correlate_sale(make_sale(country="US", now=now))

    result = asyncio.run(run())

    # Country only: 0.9 x (0.15 x 0.5 + 0.10 x e^-0.6) / 0.25 ~ 0.47, below floor
    assert result.outcome == CorrelationOutcome.no_match


def test_claimed_click_is_not_attributed_to_a_second_sale(make_service):
    service = make_service()

    async def run():
        await service.ingest_click(make_click(ip_address="1.2.3.4", tracker_id="abc"))
        await service.runner.drain()
        first = await service.correlate_sale(make_sale(sale_id="sale-1", ip_address="1.2.3.4", tracker_id="abc"))
        second = await service.correlate_sale(make_sale(sale_id="sale-2", ip_address="1.2.3.4", tracker_id="abc"))
        return first, second

    first, second = asyncio.run(run())

    assert first.attribution.click_id == "click-1"
    assert second.outcome == CorrelationOutcome.no_match


def test_second_sale_takes_next_best_click(make_service):
    service = make_service()
    now = utcnow()

    async def run():
        await service.ingest_click(make_click(click_id="far", ip_address="1.2.3.4", minutes_ago=90, now=now))
        await service.ingest_click(make_click(click_id="near", ip_address="1.2.3.4", minutes_ago=5, now=now))
        await service.runner.drain()
        first = await service.correlate_sale(make_sale(sale_id="sale-1", ip_address="1.2.3.4", now=now))
        second = await service.correlate_sale(make_sale(sale_id="sale-2", ip_address="1.2.3.4", now=now))
        return first, second

    first, second = asyncio.run(run())

    assert first.attribution.click_id == "near"
    assert second.attribution.click_id == "far"


def test_rejected_attribution_releases_click(make_service, event_store):
    service = make_service()

    async def run():
        await service.ingest_click(make_click(ip_address="1.2.3.4"))
        await service.runner.drain()
        first = await service.correlate_sale(make_sale(sale_id="sale-1", ip_address="1.2.3.4"))
        rejected = await service.submit_feedback(first.attribution.attribution_id, confirmed=False)
        second = await service.correlate_sale(make_sale(sale_id="sale-2", ip_address="1.2.3.4"))
        return rejected, second

    rejected, second = asyncio.run(run())

    assert rejected.status == AttributionStatus.rejected
    assert second.attribution.click_id == "click-1"
    assert event_store.claims["click-1"] == "sale-2"


def test_low_confidence_candidate_is_dropped(make_service):
    service = make_service()
    now = utcnow()

    async def run():
        await service.ingest_click(make_click(country="US", minutes_ago=60 * 23, now=now))
        await service.runner.drain()
        return await service.correlate_sale(make_sale(country="US", now=now))

    result = asyncio.run(run())

    assert result.outcome == CorrelationOutcome.no_match
    assert result.candidates_scored == 1


def test_classify_thresholds(make_service):
    engine = make_service().engine

    assert engine.classify(0.80) == AttributionStatus.matched
    assert engine.classify(0.75) == AttributionStatus.matched
    assert engine.classify(0.60) == AttributionStatus.uncertain
    assert engine.classify(0.49) is None
    assert engine.classify(0.78, probabilistic=True) == AttributionStatus.uncertain
