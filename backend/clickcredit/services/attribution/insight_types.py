"""
Insight types: pattern keys, running aggregates and report records.

WHAT:
    Data carried by the insight learner. Patterns are running totals keyed
    by (dimension, segment, optional niche/platform/country filter); reports
    are plain dataclasses the HTTP layer serializes as-is.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .types import utcnow


class InsightDimension(str, enum.Enum):
    time_of_day = "time_of_day"
    day_of_week = "day_of_week"
    month = "month"
    platform = "platform"
    niche = "niche"
    geo = "geo"
    device = "device"
    content_type = "content_type"


# Indexed by datetime.weekday() / datetime.month - 1
DAYS_OF_WEEK = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
MONTHS = (
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
)

# Sample size at which a pattern is fully trusted
CONFIDENCE_SAMPLE_SIZE = 100


def hour_label(hour: int) -> str:
    if hour < 6:
        return "Night"
    if hour < 12:
        return "Morning"
    if hour < 18:
        return "Afternoon"
    return "Evening"


def sample_confidence(sample_size: int) -> float:
    return min(1.0, sample_size / CONFIDENCE_SAMPLE_SIZE)


@dataclass(frozen=True)
class PatternKey:
    dimension: InsightDimension
    segment: str
    niche: Optional[str] = None
    platform: Optional[str] = None
    country: Optional[str] = None

    def __str__(self) -> str:
        return "|".join((
            self.dimension.value,
            self.segment,
            f"n:{self.niche or '*'}",
            f"p:{self.platform or '*'}",
            f"c:{self.country or '*'}",
        ))


@dataclass
class InsightPattern:
    """Running totals for one segment."""

    key: PatternKey
    total_clicks: int = 0
    total_conversions: int = 0
    total_revenue: int = 0
    last_updated: datetime = field(default_factory=utcnow)

    @property
    def sample_size(self) -> int:
        return self.total_clicks

    @property
    def conversion_rate(self) -> float:
        if self.total_clicks <= 0:
            return 0.0
        return self.total_conversions / self.total_clicks

    @property
    def avg_revenue_per_click(self) -> float:
        if self.total_clicks <= 0:
            return 0.0
        return self.total_revenue / self.total_clicks

    @property
    def confidence(self) -> float:
        return sample_confidence(self.sample_size)


@dataclass
class InsightEvent:
    """One click as the learner remembers it. `converted` flips at most once."""

    event_id: str
    user_id: str
    platform: str
    clicked_at: datetime
    niche: Optional[str] = None
    creator_country: Optional[str] = None
    visitor_country: Optional[str] = None
    device_type: Optional[str] = None
    content_type: Optional[str] = None
    converted: bool = False
    revenue: int = 0


# =============================================================================
# REPORTS
# =============================================================================

@dataclass
class SegmentRanking:
    segment: str
    label: str
    clicks: int
    conversions: int
    conversion_rate: float
    avg_revenue_per_click: float
    confidence: float


@dataclass
class PlatformInsight:
    platform: str
    rank: int
    clicks: int
    conversions: int
    conversion_rate: float
    avg_revenue_per_click: float


@dataclass
class NicheBenchmark:
    niche: str
    clicks: int
    conversion_rate: float
    average_clicks: float
    average_conversion_rate: float
    clicks_vs_avg: float
    conversion_vs_avg: float


@dataclass
class CountryInsight:
    country: str
    clicks: int
    conversions: int
    conversion_rate: float
    revenue: int


@dataclass
class Recommendation:
    category: str
    priority: str
    title: str
    detail: str


@dataclass
class CreatorReport:
    generated_at: datetime
    niche: Optional[str]
    country: Optional[str]
    sample_size: int
    confidence: float
    best_hours: List[SegmentRanking]
    best_days: List[SegmentRanking]
    platforms: List[PlatformInsight]
    platform_recommendation: Optional[str]
    niche_benchmark: Optional[NicheBenchmark]
    top_countries: List[CountryInsight]
    recommendations: List[Recommendation]


@dataclass
class AggregateQuery:
    """Cohort filter for aggregate reports. All fields optional."""

    niche: Optional[str] = None
    country: Optional[str] = None
    platform: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None


@dataclass
class KeyFindings:
    best_hour: Optional[SegmentRanking]
    best_day: Optional[SegmentRanking]
    best_platform: Optional[str]
    top_content_type: Optional[str]
    avg_conversion_rate: float
    avg_revenue_per_click: float


@dataclass
class SeasonalityPoint:
    month: str
    clicks: int
    index: float


@dataclass
class TrendComparison:
    metric: str
    current: float
    previous: float
    change_pct: float
    direction: str


@dataclass
class AggregateReport:
    title: str
    query: AggregateQuery
    generated_at: datetime
    sample_size: int
    confidence: float
    findings: KeyFindings
    best_hours: List[SegmentRanking]
    platforms: List[PlatformInsight]
    top_countries: List[CountryInsight]
    seasonality: List[SeasonalityPoint]
    trends: List[TrendComparison]
