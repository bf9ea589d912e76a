"""
Pattern / Insight Learner.

WHAT:
    Maintains running click/conversion/revenue totals along independent
    dimensions (hour, weekday, month, platform, niche, visitor country,
    device, content type) and turns them into ranked reports with
    rule-based recommendations.

WHY:
    Creators want to know when and where their links convert. Totals are
    updated incrementally so reports never rescan history; the raw events
    are kept in a bounded window only for cohort reports, trends and
    retention.

DESIGN:
    - Raw events: dict by event id plus a min-heap on click time, evicted
      oldest-first by age (default 90 days) and by count (default 100k), so
      clicks recorded out of order still expire on time
    - Pattern map: one stripe lock per key hash, so concurrent clicks on
      different segments do not contend
    - Evicted events are subtracted from their patterns; a pattern reaching
      zero clicks is removed
    - A bad event is logged and skipped before any total is touched

REFERENCES:
    - clickcredit/services/attribution/insight_types.py
    - clickcredit/workers/arq_worker.py (periodic prune job)
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .insight_types import (
    DAYS_OF_WEEK,
    MONTHS,
    AggregateQuery,
    AggregateReport,
    CountryInsight,
    CreatorReport,
    InsightDimension,
    InsightEvent,
    InsightPattern,
    KeyFindings,
    NicheBenchmark,
    PatternKey,
    PlatformInsight,
    Recommendation,
    SeasonalityPoint,
    SegmentRanking,
    TrendComparison,
    hour_label,
    sample_confidence,
)
from .types import ClickEvent, ensure_utc, utcnow

logger = logging.getLogger(__name__)

# Dimensions that are also tracked per niche / creator country cohort
FILTERED_DIMENSIONS = (
    InsightDimension.time_of_day,
    InsightDimension.day_of_week,
    InsightDimension.month,
    InsightDimension.platform,
    InsightDimension.geo,
    InsightDimension.content_type,
)


@dataclass
class LearnerConfig:
    """Retention and report parameters."""

    retention_days: int = 90
    max_events: int = 100_000
    lock_stripes: int = 64
    best_hours: int = 5
    top_countries: int = 10
    platform_min_clicks: int = 10
    platform_lift: float = 1.5
    trend_days: int = 7
    trend_threshold_pct: float = 5.0
    max_recommendations: int = 3


def _norm(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = str(getattr(value, "value", value)).strip().upper()
    return text or None


class InsightLearner:
    """
    Incremental insight aggregation.

    Usage:
        learner = InsightLearner()
        event_id = learner.record_click(click)
        learner.record_conversion(event_id, revenue=2999)
        report = learner.generate_creator_report(niche="TRAVEL")
    """

    def __init__(
        self,
        config: Optional[LearnerConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or LearnerConfig()
        self._clock = clock
        self._events: Dict[str, InsightEvent] = {}
        self._by_time: List[Tuple[datetime, int, str]] = []
        self._seq = itertools.count()
        self._events_lock = threading.Lock()
        self._patterns: Dict[PatternKey, InsightPattern] = {}
        self._stripes = [threading.Lock() for _ in range(self.config.lock_stripes)]
        self._rejected = 0

    # =========================================================================
    # RECORDING
    # =========================================================================

    def record_click(self, click: ClickEvent) -> Optional[str]:
        """Add a click to the totals. Returns the event id, or None if skipped."""
        try:
            event = self._event_from_click(click)
            keys = self._keys_for(event)
        except Exception as e:
            self._rejected += 1
            logger.warning("[INSIGHTS] Skipping unreadable click %s: %s", getattr(click, "click_id", None), e)
            return None

        if event.clicked_at < self._cutoff():
            logger.debug("[INSIGHTS] Click %s older than retention, not recorded", event.event_id)
            return None

        with self._events_lock:
            if event.event_id in self._events:
                return event.event_id
            self._events[event.event_id] = event
            heapq.heappush(self._by_time, (event.clicked_at, next(self._seq), event.event_id))
            evicted = self._evict_locked()

        self._apply(keys, clicks=1)
        self._retract(evicted)
        return event.event_id

    def record_conversion(self, event_id: str, revenue: int = 0) -> bool:
        """Mark a recorded click as converted. Each click converts at most once."""
        with self._events_lock:
            event = self._events.get(event_id)
            if event is None or event.converted:
                return False
            event.converted = True
            event.revenue = int(revenue)

        try:
            keys = self._keys_for(event)
        except Exception as e:
            self._rejected += 1
            logger.warning("[INSIGHTS] Conversion for %s not aggregated: %s", event_id, e)
            return False
        self._apply(keys, conversions=1, revenue=event.revenue)
        return True

    def prune(self) -> int:
        """Apply age and count retention. Returns number of events evicted."""
        with self._events_lock:
            evicted = self._evict_locked()
        self._retract(evicted)
        if evicted:
            logger.info("[INSIGHTS] Pruned %d events, %d remain", len(evicted), len(self._events))
        return len(evicted)

    def stats(self) -> Dict[str, int]:
        return {
            "events": len(self._events),
            "patterns": len(self._patterns),
            "rejected": self._rejected,
        }

    def get_pattern(self, key: PatternKey) -> Optional[InsightPattern]:
        return self._patterns.get(key)

    # =========================================================================
    # REPORTS
    # =========================================================================

    def generate_creator_report(self, niche: Optional[str] = None, country: Optional[str] = None) -> CreatorReport:
        niche, country = _norm(niche), _norm(country)

        hours = self._segments(InsightDimension.time_of_day, niche, country)
        days = self._segments(InsightDimension.day_of_week, niche, country)
        platforms = self._segments(InsightDimension.platform, niche, country)
        countries = self._segments(InsightDimension.geo, niche, country)

        best_hours = self._rank_hours(hours)[: self.config.best_hours]
        best_days = self._rank_days(days)
        platform_ranking = self._rank_platforms(platforms)
        sample_size = sum(p.total_clicks for p in hours)

        report = CreatorReport(
            generated_at=self._clock(),
            niche=niche,
            country=country,
            sample_size=sample_size,
            confidence=sample_confidence(sample_size),
            best_hours=best_hours,
            best_days=best_days,
            platforms=platform_ranking,
            platform_recommendation=self._platform_sentence(platform_ranking),
            niche_benchmark=self._niche_benchmark(niche, country) if niche else None,
            top_countries=self._rank_countries(countries),
            recommendations=[],
        )
        report.recommendations = self._recommend(report)
        return report

    def generate_aggregate_report(self, query: Optional[AggregateQuery] = None) -> AggregateReport:
        query = query or AggregateQuery()
        niche, country, platform = _norm(query.niche), _norm(query.country), _norm(query.platform)
        since, until = ensure_utc(query.since), ensure_utc(query.until)

        with self._events_lock:
            snapshot = list(self._events.values())
        cohort = [
            e for e in snapshot
            if (niche is None or e.niche == niche)
            and (country is None or e.creator_country == country)
            and (platform is None or e.platform == platform)
            and (since is None or e.clicked_at >= since)
            and (until is None or e.clicked_at <= until)
        ]

        hours = _aggregate(cohort, InsightDimension.time_of_day, lambda e: str(e.clicked_at.hour))
        days = _aggregate(cohort, InsightDimension.day_of_week, lambda e: DAYS_OF_WEEK[e.clicked_at.weekday()])
        platforms = _aggregate(cohort, InsightDimension.platform, lambda e: e.platform)
        content = _aggregate(cohort, InsightDimension.content_type, lambda e: e.content_type)
        countries = _aggregate(cohort, InsightDimension.geo, lambda e: e.visitor_country)

        clicks = len(cohort)
        conversions = sum(1 for e in cohort if e.converted)
        revenue = sum(e.revenue for e in cohort)
        ranked_hours = self._rank_hours(hours)
        ranked_days = self._rank_days(days)
        ranked_platforms = self._rank_platforms(platforms)
        top_content = max(content, key=lambda p: (p.total_clicks, p.key.segment), default=None)

        findings = KeyFindings(
            best_hour=ranked_hours[0] if ranked_hours else None,
            best_day=ranked_days[0] if ranked_days else None,
            best_platform=ranked_platforms[0].platform if ranked_platforms else None,
            top_content_type=top_content.key.segment if top_content else None,
            avg_conversion_rate=conversions / clicks if clicks else 0.0,
            avg_revenue_per_click=revenue / clicks if clicks else 0.0,
        )

        return AggregateReport(
            title=_cohort_title(niche, country, platform),
            query=query,
            generated_at=self._clock(),
            sample_size=clicks,
            confidence=sample_confidence(clicks),
            findings=findings,
            best_hours=ranked_hours[: self.config.best_hours],
            platforms=ranked_platforms,
            top_countries=self._rank_countries(countries),
            seasonality=_seasonality(cohort),
            trends=self._trends(cohort),
        )

    # =========================================================================
    # AGGREGATION INTERNALS
    # =========================================================================

    def _event_from_click(self, click: ClickEvent) -> InsightEvent:
        clicked_at = ensure_utc(click.clicked_at)
        if not click.click_id or clicked_at is None:
            raise ValueError("click id and timestamp are required")
        return InsightEvent(
            event_id=click.click_id,
            user_id=click.user_id,
            platform=_norm(click.platform) or "OTHER",
            clicked_at=clicked_at,
            niche=_norm(click.niche),
            creator_country=_norm(click.creator_country),
            visitor_country=_norm(click.country),
            device_type=_norm(click.device_type),
            content_type=_norm(click.content_type),
        )

    def _keys_for(self, event: InsightEvent) -> List[PatternKey]:
        segments: List[Tuple[InsightDimension, Optional[str]]] = [
            (InsightDimension.time_of_day, str(event.clicked_at.hour)),
            (InsightDimension.day_of_week, DAYS_OF_WEEK[event.clicked_at.weekday()]),
            (InsightDimension.month, MONTHS[event.clicked_at.month - 1]),
            (InsightDimension.platform, event.platform),
            (InsightDimension.niche, event.niche),
            (InsightDimension.geo, event.visitor_country),
            (InsightDimension.device, event.device_type),
            (InsightDimension.content_type, event.content_type),
        ]

        cohorts: List[Tuple[Optional[str], Optional[str]]] = [(None, None)]
        if event.niche:
            cohorts.append((event.niche, None))
        if event.creator_country:
            cohorts.append((None, event.creator_country))
        if event.niche and event.creator_country:
            cohorts.append((event.niche, event.creator_country))

        keys = []
        for dimension, segment in segments:
            if segment is None:
                continue
            keys.append(PatternKey(dimension, segment))
            if dimension in FILTERED_DIMENSIONS:
                for niche, country in cohorts[1:]:
                    keys.append(PatternKey(dimension, segment, niche=niche, country=country))
            elif dimension == InsightDimension.niche and event.creator_country:
                keys.append(PatternKey(dimension, segment, country=event.creator_country))
        return keys

    def _apply(self, keys: Iterable[PatternKey], clicks: int = 0, conversions: int = 0, revenue: int = 0) -> None:
        now = self._clock()
        for key in keys:
            with self._stripes[hash(key) % len(self._stripes)]:
                pattern = self._patterns.get(key)
                if pattern is None:
                    pattern = InsightPattern(key=key)
                    self._patterns[key] = pattern
                pattern.total_clicks += clicks
                pattern.total_conversions += conversions
                pattern.total_revenue += revenue
                pattern.last_updated = now
                if pattern.total_clicks <= 0:
                    del self._patterns[key]

    def _retract(self, events: List[InsightEvent]) -> None:
        for event in events:
            self._apply(
                self._keys_for(event),
                clicks=-1,
                conversions=-1 if event.converted else 0,
                revenue=-event.revenue,
            )

    def _evict_locked(self) -> List[InsightEvent]:
        cutoff = self._cutoff()
        evicted = []
        while self._by_time:
            clicked_at, _, event_id = self._by_time[0]
            if len(self._events) > self.config.max_events or clicked_at < cutoff:
                heapq.heappop(self._by_time)
                evicted.append(self._events.pop(event_id))
            else:
                break
        return evicted

    def _cutoff(self) -> datetime:
        return self._clock() - timedelta(days=self.config.retention_days)

    def _segments(
        self,
        dimension: InsightDimension,
        niche: Optional[str],
        country: Optional[str],
    ) -> List[InsightPattern]:
        return [
            pattern for key, pattern in list(self._patterns.items())
            if key.dimension == dimension
            and key.niche == niche
            and key.country == country
            and key.platform is None
        ]

    # =========================================================================
    # RANKING + RULES
    # =========================================================================

    @staticmethod
    def _ranking(patterns: Iterable[InsightPattern], label: Callable[[str], str]) -> List[SegmentRanking]:
        ordered = sorted(
            (p for p in patterns if p.total_clicks > 0),
            key=lambda p: (p.conversion_rate, p.total_clicks),
            reverse=True,
        )
        return [
            SegmentRanking(
                segment=p.key.segment,
                label=label(p.key.segment),
                clicks=p.total_clicks,
                conversions=p.total_conversions,
                conversion_rate=p.conversion_rate,
                avg_revenue_per_click=p.avg_revenue_per_click,
                confidence=p.confidence,
            )
            for p in ordered
        ]

    def _rank_hours(self, patterns: Iterable[InsightPattern]) -> List[SegmentRanking]:
        return self._ranking(patterns, lambda segment: hour_label(int(segment)))

    def _rank_days(self, patterns: Iterable[InsightPattern]) -> List[SegmentRanking]:
        return self._ranking(patterns, lambda segment: segment.capitalize())

    @staticmethod
    def _rank_platforms(patterns: Iterable[InsightPattern]) -> List[PlatformInsight]:
        ordered = sorted(
            (p for p in patterns if p.total_clicks > 0),
            key=lambda p: (p.conversion_rate, p.total_clicks),
            reverse=True,
        )
        return [
            PlatformInsight(
                platform=p.key.segment,
                rank=index + 1,
                clicks=p.total_clicks,
                conversions=p.total_conversions,
                conversion_rate=p.conversion_rate,
                avg_revenue_per_click=p.avg_revenue_per_click,
            )
            for index, p in enumerate(ordered)
        ]

    def _rank_countries(self, patterns: Iterable[InsightPattern]) -> List[CountryInsight]:
        ordered = sorted(patterns, key=lambda p: (p.total_clicks, p.total_conversions), reverse=True)
        return [
            CountryInsight(
                country=p.key.segment,
                clicks=p.total_clicks,
                conversions=p.total_conversions,
                conversion_rate=p.conversion_rate,
                revenue=p.total_revenue,
            )
            for p in ordered[: self.config.top_countries]
        ]

    def _niche_benchmark(self, niche: str, country: Optional[str]) -> Optional[NicheBenchmark]:
        niches = self._segments(InsightDimension.niche, None, country)
        own = next((p for p in niches if p.key.segment == niche), None)
        if own is None or not niches:
            return None

        total_clicks = sum(p.total_clicks for p in niches)
        total_conversions = sum(p.total_conversions for p in niches)
        average_clicks = total_clicks / len(niches)
        average_rate = total_conversions / total_clicks if total_clicks else 0.0
        return NicheBenchmark(
            niche=niche,
            clicks=own.total_clicks,
            conversion_rate=own.conversion_rate,
            average_clicks=average_clicks,
            average_conversion_rate=average_rate,
            clicks_vs_avg=own.total_clicks / average_clicks if average_clicks else 0.0,
            conversion_vs_avg=own.conversion_rate / average_rate if average_rate else 0.0,
        )

    @staticmethod
    def _platform_sentence(platforms: List[PlatformInsight]) -> Optional[str]:
        if not platforms:
            return None
        top = platforms[0]
        if len(platforms) == 1:
            return f"{top.platform} is your only converting platform so far ({top.conversion_rate:.1%} conversion)."
        worst = platforms[-1]
        return (
            f"{top.platform} converts best at {top.conversion_rate:.1%}; "
            f"{worst.platform} trails at {worst.conversion_rate:.1%}."
        )

    def _recommend(self, report: CreatorReport) -> List[Recommendation]:
        recommendations = []

        if report.best_hours and report.best_hours[0].conversion_rate > 0:
            best = report.best_hours[0]
            recommendations.append(Recommendation(
                category="timing",
                priority="high",
                title=f"Post around {int(best.segment):02d}:00 UTC ({best.label})",
                detail=f"Clicks at this hour convert at {best.conversion_rate:.1%}.",
            ))

        if len(report.platforms) >= 2:
            top, worst = report.platforms[0], report.platforms[-1]
            if top.clicks > self.config.platform_min_clicks and top.conversion_rate > worst.conversion_rate * self.config.platform_lift:
                recommendations.append(Recommendation(
                    category="platform",
                    priority="high",
                    title=f"Favor {top.platform}",
                    detail=(
                        f"{top.platform} converts at {top.conversion_rate:.1%} versus "
                        f"{worst.conversion_rate:.1%} on {worst.platform}."
                    ),
                ))

        if report.best_days and report.best_days[0].conversion_rate > 0:
            best_day = report.best_days[0]
            recommendations.append(Recommendation(
                category="timing",
                priority="medium",
                title=f"Schedule key posts on {best_day.label}",
                detail=f"{best_day.label} clicks convert at {best_day.conversion_rate:.1%}.",
            ))

        return recommendations[: self.config.max_recommendations]

    def _trends(self, cohort: List[InsightEvent]) -> List[TrendComparison]:
        now = self._clock()
        span = timedelta(days=self.config.trend_days)
        current = [e for e in cohort if now - span <= e.clicked_at <= now]
        previous = [e for e in cohort if now - 2 * span <= e.clicked_at < now - span]

        metrics = (
            ("clicks", len(current), len(previous)),
            ("conversions", sum(e.converted for e in current), sum(e.converted for e in previous)),
            ("revenue", sum(e.revenue for e in current), sum(e.revenue for e in previous)),
        )
        trends = []
        for name, now_value, before_value in metrics:
            if before_value:
                change = (now_value - before_value) / before_value * 100.0
            else:
                change = 100.0 if now_value else 0.0
            if change > self.config.trend_threshold_pct:
                direction = "up"
            elif change < -self.config.trend_threshold_pct:
                direction = "down"
            else:
                direction = "stable"
            trends.append(TrendComparison(
                metric=name,
                current=float(now_value),
                previous=float(before_value),
                change_pct=round(change, 2),
                direction=direction,
            ))
        return trends


def _aggregate(
    events: Iterable[InsightEvent],
    dimension: InsightDimension,
    segment_of: Callable[[InsightEvent], Optional[str]],
) -> List[InsightPattern]:
    patterns: Dict[str, InsightPattern] = {}
    for event in events:
        segment = segment_of(event)
        if segment is None:
            continue
        pattern = patterns.get(segment)
        if pattern is None:
            pattern = patterns[segment] = InsightPattern(key=PatternKey(dimension, segment))
        pattern.total_clicks += 1
        if event.converted:
            pattern.total_conversions += 1
            pattern.total_revenue += event.revenue
    return list(patterns.values())


def _seasonality(events: List[InsightEvent]) -> List[SeasonalityPoint]:
    counts = [0] * 12
    for event in events:
        counts[event.clicked_at.month - 1] += 1
    expected = len(events) / 12
    return [
        SeasonalityPoint(
            month=MONTHS[index],
            clicks=count,
            index=round(count / expected, 3) if expected else 0.0,
        )
        for index, count in enumerate(counts)
    ]


def _cohort_title(niche: Optional[str], country: Optional[str], platform: Optional[str]) -> str:
    title = f"{niche} creators" if niche else "All creators"
    if country:
        title += f" in {country}"
    if platform:
        title += f" on {platform}"
    return title
