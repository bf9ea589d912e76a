"""
Insight Learner Tests
=====================

WHAT: Incremental pattern totals, rankings, recommendations, cohort
      reports and retention.
WHY: Reports are built from running totals, so retention has to subtract
     exactly what it adds or rankings drift over time.
"""

from datetime import datetime, timedelta, timezone

import pytest

from clickcredit.services.attribution import (
    AggregateQuery,
    CreatorNiche,
    InsightLearner,
    LearnerConfig,
    Platform,
)
from clickcredit.services.attribution.insight_types import InsightDimension, PatternKey

from conftest import make_click

# Monday
BASE = datetime(2024, 6, 3, tzinfo=timezone.utc)
NOW = BASE + timedelta(days=2)


def _learner(**config):
    return InsightLearner(config=LearnerConfig(**config), clock=lambda: NOW)


def _record(learner, prefix, clicked_at, total, converted, **overrides):
    for i in range(total):
        click = make_click(
            click_id=f"{prefix}-{i}",
            minutes_ago=0,
            now=clicked_at + timedelta(seconds=i),
            **overrides,
        )
        event_id = learner.record_click(click)
        if i < converted:
            assert learner.record_conversion(event_id, revenue=1000)


def test_best_hour_ranks_by_conversion_rate():
    learner = _learner()
    _record(learner, "afternoon", BASE.replace(hour=14), total=100, converted=30)
    _record(learner, "night", BASE.replace(hour=2), total=100, converted=5)

    report = learner.generate_creator_report()

    assert [h.segment for h in report.best_hours] == ["14", "2"]
    assert report.best_hours[0].label == "Afternoon"
    assert report.best_hours[0].conversion_rate == pytest.approx(0.30)
    assert report.best_hours[0].confidence == pytest.approx(1.0)
    assert report.sample_size == 200
    assert report.recommendations[0].title.startswith("Post around 14:00 UTC")


def test_platform_recommendation_needs_a_clear_lift():
    learner = _learner()
    _record(learner, "yt", BASE, total=50, converted=10, platform=Platform.youtube)
    _record(learner, "tw", BASE, total=50, converted=2, platform=Platform.twitter)

    report = learner.generate_creator_report()

    assert [p.platform for p in report.platforms] == ["YOUTUBE", "TWITTER"]
    assert report.platforms[0].rank == 1
    assert "YOUTUBE converts best" in report.platform_recommendation
    assert any(r.category == "platform" and r.title == "Favor YOUTUBE" for r in report.recommendations)
    assert len(report.recommendations) <= 3


def test_conversion_counts_once_per_click():
    learner = _learner()
    event_id = learner.record_click(make_click(now=BASE, minutes_ago=0))

    assert learner.record_conversion(event_id, revenue=2999) is True
    assert learner.record_conversion(event_id, revenue=2999) is False
    assert learner.record_conversion("unknown") is False

    pattern = learner.get_pattern(PatternKey(InsightDimension.platform, "YOUTUBE"))
    assert pattern.total_conversions == 1
    assert pattern.total_revenue == 2999


def test_niche_cohort_and_benchmark():
    learner = _learner()
    _record(learner, "travel", BASE, total=20, converted=4, niche=CreatorNiche.travel, creator_country="US")
    _record(learner, "gaming", BASE, total=60, converted=3, niche=CreatorNiche.gaming, creator_country="US")

    report = learner.generate_creator_report(niche="travel")

    assert report.niche == "TRAVEL"
    assert report.sample_size == 20
    benchmark = report.niche_benchmark
    assert benchmark.clicks == 20
    assert benchmark.average_clicks == pytest.approx(40.0)
    assert benchmark.conversion_vs_avg == pytest.approx(0.20 / (7 / 80))


def test_aggregate_report_for_cohort():
    learner = _learner()
    _record(
        learner, "travel-us-yt", BASE.replace(hour=18), total=12, converted=3,
        niche=CreatorNiche.travel, creator_country="US", platform=Platform.youtube, content_type="video",
    )
    _record(
        learner, "travel-us-ig", BASE, total=8, converted=0,
        niche=CreatorNiche.travel, creator_country="US", platform=Platform.instagram,
    )
    _record(learner, "gaming", BASE, total=5, converted=5, niche=CreatorNiche.gaming)

    report = learner.generate_aggregate_report(AggregateQuery(niche="travel", country="us", platform="youtube"))

    assert report.title == "TRAVEL creators in US on YOUTUBE"
    assert report.sample_size == 12
    assert report.findings.best_platform == "YOUTUBE"
    assert report.findings.top_content_type == "VIDEO"
    assert report.findings.avg_conversion_rate == pytest.approx(0.25)
    assert report.findings.best_hour.segment == "18"
    june = next(point for point in report.seasonality if point.month == "june")
    assert june.clicks == 12
    clicks_trend = next(t for t in report.trends if t.metric == "clicks")
    assert clicks_trend.direction == "up"


def test_aggregate_report_without_filters():
    learner = _learner()
    _record(learner, "a", BASE, total=3, converted=1)

    report = learner.generate_aggregate_report()

    assert report.title == "All creators"
    assert report.sample_size == 3


def test_prune_retracts_expired_events():
    clock = {"now": NOW}
    learner = InsightLearner(config=LearnerConfig(retention_days=7), clock=lambda: clock["now"])
    _record(learner, "old", BASE, total=4, converted=2)
    _record(learner, "new", BASE + timedelta(days=1), total=2, converted=0)

    clock["now"] = BASE + timedelta(days=7, hours=12)
    removed = learner.prune()

    assert removed == 4
    pattern = learner.get_pattern(PatternKey(InsightDimension.platform, "YOUTUBE"))
    assert pattern.total_clicks == 2
    assert pattern.total_conversions == 0
    assert pattern.total_revenue == 0
    assert learner.stats()["events"] == 2


def test_prune_expires_clicks_recorded_out_of_order():
    clock = {"now": NOW}
    learner = InsightLearner(config=LearnerConfig(retention_days=90), clock=lambda: clock["now"])
    learner.record_click(make_click(click_id="recent", now=NOW - timedelta(days=1), minutes_ago=0))
    learner.record_click(make_click(click_id="old", now=NOW - timedelta(days=89), minutes_ago=0))

    clock["now"] = NOW + timedelta(days=2)
    removed = learner.prune()

    assert removed == 1
    assert learner.stats()["events"] == 1
    assert learner.get_pattern(PatternKey(InsightDimension.platform, "YOUTUBE")).total_clicks == 1


def test_count_cap_evicts_oldest_first():
    learner = _learner(max_events=5)
    _record(learner, "c", BASE, total=8, converted=0)

    assert learner.stats()["events"] == 5
    assert learner.get_pattern(PatternKey(InsightDimension.platform, "YOUTUBE")).total_clicks == 5


def test_clicks_older_than_retention_are_not_recorded():
    learner = _learner(retention_days=1)

    assert learner.record_click(make_click(now=BASE - timedelta(days=3), minutes_ago=0)) is None
    assert learner.stats()["events"] == 0


def test_unreadable_click_is_skipped_and_counted():
    learner = _learner()

    assert learner.record_click(make_click(click_id="")) is None
    assert learner.stats()["rejected"] == 1
    assert learner.stats()["patterns"] == 0
