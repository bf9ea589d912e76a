"""SQLAlchemy ORM models.

Durable rows behind SqlEventStore / SqlWeightsStore. Identifiers are the
string ids carried by the domain events, so rows map one-to-one onto
ClickEvent, SaleEvent, ContentPost and Attribution.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum, Float, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import declarative_base

from .services.attribution.types import AttributionStatus, Platform


# Single Base used by the entire application
Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClickRecord(Base):
    """One link click.

    WHAT: Stores matching signals and context of a click
    WHY: Slow-path candidate source when the click cache misses
    """
    __tablename__ = "clicks"

    id = Column(String, primary_key=True)
    link_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    clicked_at = Column(DateTime(timezone=True), nullable=False, index=True)
    platform = Column(Enum(Platform, name="platform"), nullable=False, default=Platform.other)

    # Matching signals
    ip_address = Column(String, nullable=True, index=True)
    tracker_id = Column(String, nullable=True, index=True)
    fingerprint = Column(String, nullable=True)

    # Context
    referrer = Column(String, nullable=True)
    utm_source = Column(String, nullable=True)
    utm_medium = Column(String, nullable=True)
    utm_campaign = Column(String, nullable=True)
    country = Column(String, nullable=True)
    region = Column(String, nullable=True)
    city = Column(String, nullable=True)
    device_type = Column(String, nullable=True)
    niche = Column(String, nullable=True)
    creator_country = Column(String, nullable=True)
    content_type = Column(String, nullable=True)

    # Set once a sale claims this click; cleared when that attribution is rejected
    attributed_sale_id = Column(String, nullable=True, index=True)
    attributed_at = Column(DateTime(timezone=True), nullable=True)

    def __str__(self):
        return f"Click {self.id} on {self.link_id} ({self.platform})"


class SaleRecord(Base):
    """A settled payment."""
    __tablename__ = "sales"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="USD")
    sold_at = Column(DateTime(timezone=True), nullable=False, index=True)

    ip_address = Column(String, nullable=True)
    tracker_id = Column(String, nullable=True)
    fingerprint = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    country = Column(String, nullable=True)
    region = Column(String, nullable=True)
    city = Column(String, nullable=True)
    product_name = Column(String, nullable=True)
    campaign = Column(String, nullable=True)
    # "metadata" is reserved on declarative classes
    extra = Column("metadata", JSON, nullable=True)


class ContentPostRecord(Base):
    """A creator's social post used for probabilistic matching."""
    __tablename__ = "content_posts"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    platform = Column(Enum(Platform, name="platform"), nullable=False)
    posted_at = Column(DateTime(timezone=True), nullable=False, index=True)
    content_type = Column(String, nullable=True)
    # [{"country": "US", "city": "Austin", "percentage": 12.5}, ...]
    audience = Column(JSON, nullable=True)


class AttributionRecord(Base):
    """Sale-to-click (or sale-to-post) attribution.

    WHAT: Result of correlation plus review state
    WHY: Review queue, dashboards and feedback all read from here
    """
    __tablename__ = "attributions"
    __table_args__ = (
        # Single best-match attribution per sale
        UniqueConstraint("sale_id", name="uq_attribution_sale"),
    )

    id = Column(String, primary_key=True)
    sale_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False, index=True)
    click_id = Column(String, nullable=True, index=True)
    link_id = Column(String, nullable=True)
    post_id = Column(String, nullable=True)

    confidence = Column(Float, nullable=False)
    status = Column(Enum(AttributionStatus, name="attribution_status"), nullable=False, index=True)
    time_delta_minutes = Column(Float, nullable=False, default=0.0)
    revenue_share = Column(Float, nullable=False, default=1.0)
    matched_by = Column(JSON, nullable=False)
    notes = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)

    def __str__(self):
        return f"Attribution {self.sale_id} → {self.click_id or self.post_id} ({self.status}, {self.confidence:.2f})"


class ScoringWeightsRecord(Base):
    """Append-only history of learned scoring weights; latest row wins."""
    __tablename__ = "scoring_weights"

    id = Column(Integer, primary_key=True, autoincrement=True)
    version = Column(String, nullable=False)
    signals = Column(JSON, nullable=False)
    lambdas = Column(JSON, nullable=False)
    accuracy = Column(Float, nullable=False, default=0.0)
    training_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
