"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .services.attribution.click_context import (
    build_fingerprint,
    device_type,
    parse_utm,
    tracker_from_cookies,
)
from .services.attribution.correlation_engine import CorrelationResult
from .services.attribution.insight_types import AggregateQuery
from .services.attribution.service import ModelStatus
from .services.attribution.types import (
    Attribution,
    AttributionStatus,
    AudienceSlice,
    ClickEvent,
    ContentPost,
    CreatorNiche,
    Platform,
    SaleEvent,
    new_id,
)


# =============================================================================
# INBOUND EVENTS
# =============================================================================

class ClickIn(BaseModel):
    """Payload for a link click.

    WHAT: Click identity, matching signals and visitor context
    WHY: The fingerprint, device type and UTM tags are derived here from the
         raw request data when the caller did not compute them
    """

    click_id: Optional[str] = Field(None, description="Defaults to a new id")
    link_id: str = Field(..., description="Shared link that was clicked")
    user_id: str = Field(..., description="Creator who owns the link")
    clicked_at: datetime
    platform: str = Field("OTHER", description="Referring platform, e.g. YOUTUBE")

    ip_address: Optional[str] = None
    tracker_id: Optional[str] = Field(None, description="First-party tracker cookie value")
    fingerprint: Optional[str] = None
    user_agent: Optional[str] = Field(None, description="Used to derive fingerprint and device type")
    query_string: Optional[str] = Field(None, description="Landing URL query, parsed for utm_* tags")
    cookies: Dict[str, str] = Field(default_factory=dict, description="Request cookies; rckr_id is read as tracker")

    referrer: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    device_type: Optional[str] = None

    niche: Optional[CreatorNiche] = None
    creator_country: Optional[str] = None
    content_type: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "link_id": "lnk_summer",
                "user_id": "creator_42",
                "clicked_at": "2025-06-01T14:03:00Z",
                "platform": "YOUTUBE",
                "ip_address": "203.0.113.7",
                "tracker_id": "rk_9f2c",
                "country": "US",
                "city": "Austin",
            }
        }
    }

    def to_event(self) -> ClickEvent:
        utm = parse_utm(self.query_string)
        fingerprint = self.fingerprint
        if not fingerprint and self.user_agent:
            fingerprint = build_fingerprint(self.ip_address, self.user_agent, self.country)
        return ClickEvent(
            click_id=self.click_id or new_id(),
            link_id=self.link_id,
            user_id=self.user_id,
            clicked_at=self.clicked_at,
            platform=Platform.parse(self.platform),
            ip_address=self.ip_address,
            tracker_id=self.tracker_id or tracker_from_cookies(self.cookies),
            fingerprint=fingerprint,
            referrer=self.referrer,
            utm_source=self.utm_source or utm.source,
            utm_medium=self.utm_medium or utm.medium,
            utm_campaign=self.utm_campaign or utm.campaign,
            country=self.country,
            region=self.region,
            city=self.city,
            device_type=self.device_type or (device_type(self.user_agent) if self.user_agent else None),
            niche=self.niche,
            creator_country=self.creator_country,
            content_type=self.content_type,
        )


class SaleIn(BaseModel):
    """Payload for a settled payment (amount in minor units)."""

    sale_id: str
    user_id: str = Field(..., description="Creator who receives the revenue")
    amount: int = Field(..., ge=0, description="Minor currency units, e.g. cents")
    sold_at: datetime
    currency: str = "USD"

    ip_address: Optional[str] = None
    tracker_id: Optional[str] = None
    fingerprint: Optional[str] = None
    customer_email: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    product_name: Optional[str] = None
    campaign: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_event(self) -> SaleEvent:
        return SaleEvent(**self.model_dump())


class AudienceSliceIn(BaseModel):
    country: str
    city: Optional[str] = None
    percentage: float = Field(0.0, ge=0.0, le=100.0)


class ContentPostIn(BaseModel):
    """A creator's social post with its audience geography."""

    post_id: str
    user_id: str
    platform: str
    posted_at: datetime
    content_type: Optional[str] = None
    audience: List[AudienceSliceIn] = Field(default_factory=list)

    def to_event(self) -> ContentPost:
        return ContentPost(
            post_id=self.post_id,
            user_id=self.user_id,
            platform=Platform.parse(self.platform),
            posted_at=self.posted_at,
            content_type=self.content_type,
            audience=tuple(AudienceSlice(**a.model_dump()) for a in self.audience),
        )


# =============================================================================
# REVIEW
# =============================================================================

class FeedbackIn(BaseModel):
    confirmed: bool = Field(..., description="True confirms the match, False rejects it")


class AttributionPatch(BaseModel):
    """Manual override: any combination of share, note and reassignment."""

    revenue_share: Optional[float] = Field(None, description="Fraction of the sale credited, 0..1")
    note: Optional[str] = None
    click_id: Optional[str] = Field(None, description="Reassign to this click")


# =============================================================================
# RESPONSES
# =============================================================================

class NoteOut(BaseModel):
    text: str
    created_at: datetime


class AttributionOut(BaseModel):
    attribution_id: str
    sale_id: str
    user_id: str
    click_id: Optional[str] = None
    link_id: Optional[str] = None
    post_id: Optional[str] = None
    confidence: float
    status: AttributionStatus
    time_delta_minutes: float
    revenue_share: float
    matched_by: Dict[str, Any]
    notes: List[NoteOut] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, attribution: Attribution) -> "AttributionOut":
        return cls(
            attribution_id=attribution.attribution_id,
            sale_id=attribution.sale_id,
            user_id=attribution.user_id,
            click_id=attribution.click_id,
            link_id=attribution.link_id,
            post_id=attribution.post_id,
            confidence=attribution.confidence,
            status=attribution.status,
            time_delta_minutes=attribution.time_delta_minutes,
            revenue_share=attribution.revenue_share,
            matched_by=attribution.matched_by.to_dict(),
            notes=[NoteOut(text=n.text, created_at=n.created_at) for n in attribution.notes],
            created_at=attribution.created_at,
            updated_at=attribution.updated_at,
        )


class CorrelationOut(BaseModel):
    """Outcome of correlating one sale.

    outcome is "attributed", "no_match" or "error"; attribution is null
    unless a match was recorded.
    """

    sale_id: str
    outcome: str
    attribution: Optional[AttributionOut] = None
    candidates_scored: int = 0
    sources: List[str] = Field(default_factory=list)
    degraded: List[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: CorrelationResult) -> "CorrelationOut":
        return cls(
            sale_id=result.sale_id,
            outcome=result.outcome.value,
            attribution=AttributionOut.from_domain(result.attribution) if result.attribution else None,
            candidates_scored=result.candidates_scored,
            sources=list(result.sources),
            degraded=list(result.degraded),
        )


class IngestOut(BaseModel):
    id: str
    status: str = "accepted"


class ModelStatusOut(BaseModel):
    version: str
    weights: Dict[str, float]
    lambdas: Dict[str, float]
    accuracy: float
    sample_count: int
    training_count: int
    samples_until_retrain: int
    is_learning: bool
    last_trained_at: Optional[datetime] = None
    cache_stats: Dict[str, Any]
    insight_stats: Dict[str, int]

    @classmethod
    def from_domain(cls, status: ModelStatus) -> "ModelStatusOut":
        return cls(
            version=status.version,
            weights=status.weights,
            lambdas=status.lambdas,
            accuracy=status.accuracy,
            sample_count=status.sample_count,
            training_count=status.training_count,
            samples_until_retrain=status.samples_until_retrain,
            is_learning=status.is_learning,
            last_trained_at=status.last_trained_at,
            cache_stats=status.cache_stats.to_dict(),
            insight_stats=status.insight_stats,
        )


class AggregateQueryIn(BaseModel):
    niche: Optional[str] = None
    country: Optional[str] = None
    platform: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None

    def to_query(self) -> AggregateQuery:
        return AggregateQuery(**self.model_dump())


# =============================================================================
# LINK ROUTING
# =============================================================================

class RouteResolveIn(BaseModel):
    """Resolve a link router for a visitor location."""

    router: Dict[str, Any] = Field(..., description='{"kind": "standard" | "geo_affiliate" | "amazon", ...}')
    country: Optional[str] = None
    region: Optional[str] = None
    query_params: Dict[str, str] = Field(default_factory=dict)


class RouteResolveOut(BaseModel):
    url: str
    match_type: str
    matched_country: Optional[str] = None
    matched_region: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])
    service_ready: bool = False
    shared_cache: Optional[bool] = Field(None, description="None when no shared tier is configured")
