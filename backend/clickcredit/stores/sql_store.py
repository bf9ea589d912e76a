"""SQLAlchemy-backed EventStore and WeightsStore.

WHAT:
    Durable implementations of the attribution core's storage interfaces.

WHY:
    The ORM session is synchronous; every call runs in a worker thread with
    its own session, so the event loop never blocks on the database and the
    core's timeouts stay effective.

REFERENCES:
    - clickcredit/models.py
    - clickcredit/services/attribution/interfaces.py
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..database import session_scope
from ..models import (
    AttributionRecord,
    ClickRecord,
    ContentPostRecord,
    SaleRecord,
    ScoringWeightsRecord,
)
from ..services.attribution.interfaces import EventStore, WeightsStore
from ..services.attribution.types import (
    Attribution,
    AttributionNote,
    AttributionStatus,
    AudienceSlice,
    ClickEvent,
    ContentPost,
    CreatorNiche,
    MatchedSignals,
    SaleEvent,
    ScoringWeights,
    ensure_utc,
    parse_datetime,
    utcnow,
)

logger = logging.getLogger(__name__)


# =============================================================================
# ROW <-> DOMAIN MAPPING
# =============================================================================

def click_to_row(click: ClickEvent, row: Optional[ClickRecord] = None) -> ClickRecord:
    row = row or ClickRecord(id=click.click_id)
    row.link_id = click.link_id
    row.user_id = click.user_id
    row.clicked_at = ensure_utc(click.clicked_at)
    row.platform = click.platform
    row.ip_address = click.ip_address
    row.tracker_id = click.tracker_id
    row.fingerprint = click.fingerprint
    row.referrer = click.referrer
    row.utm_source = click.utm_source
    row.utm_medium = click.utm_medium
    row.utm_campaign = click.utm_campaign
    row.country = click.country
    row.region = click.region
    row.city = click.city
    row.device_type = click.device_type
    row.niche = click.niche.value if click.niche else None
    row.creator_country = click.creator_country
    row.content_type = click.content_type
    return row


def row_to_click(row: ClickRecord) -> ClickEvent:
    return ClickEvent(
        click_id=row.id,
        link_id=row.link_id,
        user_id=row.user_id,
        clicked_at=ensure_utc(row.clicked_at),
        platform=row.platform,
        ip_address=row.ip_address,
        tracker_id=row.tracker_id,
        fingerprint=row.fingerprint,
        referrer=row.referrer,
        utm_source=row.utm_source,
        utm_medium=row.utm_medium,
        utm_campaign=row.utm_campaign,
        country=row.country,
        region=row.region,
        city=row.city,
        device_type=row.device_type,
        niche=CreatorNiche(row.niche) if row.niche else None,
        creator_country=row.creator_country,
        content_type=row.content_type,
    )


def row_to_post(row: ContentPostRecord) -> ContentPost:
    audience = tuple(
        AudienceSlice(
            country=item.get("country", ""),
            city=item.get("city"),
            percentage=float(item.get("percentage") or 0.0),
        )
        for item in (row.audience or [])
    )
    return ContentPost(
        post_id=row.id,
        user_id=row.user_id,
        platform=row.platform,
        posted_at=ensure_utc(row.posted_at),
        content_type=row.content_type,
        audience=audience,
    )


def attribution_to_row(attribution: Attribution, row: Optional[AttributionRecord] = None) -> AttributionRecord:
    row = row or AttributionRecord(id=attribution.attribution_id)
    row.sale_id = attribution.sale_id
    row.user_id = attribution.user_id
    row.click_id = attribution.click_id
    row.link_id = attribution.link_id
    row.post_id = attribution.post_id
    row.confidence = attribution.confidence
    row.status = attribution.status
    row.time_delta_minutes = attribution.time_delta_minutes
    row.revenue_share = attribution.revenue_share
    row.matched_by = attribution.matched_by.to_dict()
    row.notes = [{"text": n.text, "created_at": n.created_at.isoformat()} for n in attribution.notes]
    row.created_at = attribution.created_at
    row.updated_at = attribution.updated_at
    return row


def row_to_attribution(row: AttributionRecord) -> Attribution:
    return Attribution(
        attribution_id=row.id,
        sale_id=row.sale_id,
        user_id=row.user_id,
        confidence=row.confidence,
        status=row.status,
        matched_by=MatchedSignals.from_dict(row.matched_by or {}),
        click_id=row.click_id,
        link_id=row.link_id,
        post_id=row.post_id,
        time_delta_minutes=row.time_delta_minutes or 0.0,
        revenue_share=row.revenue_share if row.revenue_share is not None else 1.0,
        notes=[
            AttributionNote(text=n.get("text", ""), created_at=parse_datetime(n.get("created_at")) or utcnow())
            for n in (row.notes or [])
        ],
        created_at=ensure_utc(row.created_at) or utcnow(),
        updated_at=ensure_utc(row.updated_at) or utcnow(),
    )


# =============================================================================
# EVENT STORE
# =============================================================================

class SqlEventStore(EventStore):
    """EventStore on a SQLAlchemy session factory.

    Usage:
        engine = create_db_engine(settings.DATABASE_URL)
        store = SqlEventStore(create_session_factory(engine))
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    async def _run(self, fn):
        def work():
            with session_scope(self._session_factory) as db:
                return fn(db)
        return await asyncio.to_thread(work)

    async def save_click(self, click: ClickEvent) -> str:
        def op(db: Session):
            db.merge(click_to_row(click, db.get(ClickRecord, click.click_id)))
            return click.click_id
        return await self._run(op)

    async def save_sale(self, sale: SaleEvent) -> str:
        def op(db: Session):
            row = db.get(SaleRecord, sale.sale_id) or SaleRecord(id=sale.sale_id)
            row.user_id = sale.user_id
            row.amount = sale.amount
            row.currency = sale.currency
            row.sold_at = ensure_utc(sale.sold_at)
            row.ip_address = sale.ip_address
            row.tracker_id = sale.effective_tracker_id
            row.fingerprint = sale.effective_fingerprint
            row.customer_email = sale.customer_email
            row.country = sale.country
            row.region = sale.region
            row.city = sale.city
            row.product_name = sale.product_name
            row.campaign = sale.campaign
            row.extra = dict(sale.metadata) or None
            db.merge(row)
            return sale.sale_id
        return await self._run(op)

    async def save_content_post(self, post: ContentPost) -> str:
        def op(db: Session):
            db.merge(ContentPostRecord(
                id=post.post_id,
                user_id=post.user_id,
                platform=post.platform,
                posted_at=ensure_utc(post.posted_at),
                content_type=post.content_type,
                audience=[
                    {"country": s.country, "city": s.city, "percentage": s.percentage}
                    for s in post.audience
                ],
            ))
            return post.post_id
        return await self._run(op)

    async def save_attribution(self, attribution: Attribution) -> str:
        def op(db: Session):
            db.add(attribution_to_row(attribution))
            return attribution.attribution_id
        return await self._run(op)

    async def update_attribution(self, attribution: Attribution) -> None:
        def op(db: Session):
            row = db.get(AttributionRecord, attribution.attribution_id)
            if row is None:
                raise LookupError(f"attribution {attribution.attribution_id} does not exist")
            attribution_to_row(attribution, row)
        await self._run(op)

    async def get_attribution(self, attribution_id: str) -> Optional[Attribution]:
        def op(db: Session):
            row = db.get(AttributionRecord, attribution_id)
            return row_to_attribution(row) if row else None
        return await self._run(op)

    async def get_click(self, click_id: str) -> Optional[ClickEvent]:
        def op(db: Session):
            row = db.get(ClickRecord, click_id)
            return row_to_click(row) if row else None
        return await self._run(op)

    async def find_clicks_by_user(
        self,
        user_id: str,
        since: datetime,
        until: Optional[datetime] = None,
        include_attributed: bool = False,
    ) -> List[ClickEvent]:
        def op(db: Session):
            query = db.query(ClickRecord).filter(
                ClickRecord.user_id == user_id,
                ClickRecord.clicked_at >= ensure_utc(since),
            )
            if until is not None:
                query = query.filter(ClickRecord.clicked_at <= ensure_utc(until))
            if not include_attributed:
                query = query.filter(ClickRecord.attributed_sale_id.is_(None))
            return [row_to_click(r) for r in query.order_by(ClickRecord.clicked_at.desc()).all()]
        return await self._run(op)

    async def find_recent_posts(
        self,
        user_id: str,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> List[ContentPost]:
        def op(db: Session):
            query = db.query(ContentPostRecord).filter(
                ContentPostRecord.user_id == user_id,
                ContentPostRecord.posted_at >= ensure_utc(since),
            )
            if until is not None:
                query = query.filter(ContentPostRecord.posted_at <= ensure_utc(until))
            return [row_to_post(r) for r in query.order_by(ContentPostRecord.posted_at.desc()).all()]
        return await self._run(op)

    async def find_attributions(
        self,
        user_id: str,
        status: Optional[AttributionStatus] = None,
    ) -> List[Attribution]:
        def op(db: Session):
            query = db.query(AttributionRecord).filter(AttributionRecord.user_id == user_id)
            if status is not None:
                query = query.filter(AttributionRecord.status == status)
            return [row_to_attribution(r) for r in query.order_by(AttributionRecord.created_at.desc()).all()]
        return await self._run(op)

    async def mark_click_attributed(self, click_id: str, sale_id: str) -> bool:
        """Atomic claim: only succeeds while the click is unclaimed (or held by this sale)."""
        def op(db: Session):
            result = db.execute(
                update(ClickRecord)
                .where(ClickRecord.id == click_id)
                .where((ClickRecord.attributed_sale_id.is_(None)) | (ClickRecord.attributed_sale_id == sale_id))
                .values(attributed_sale_id=sale_id, attributed_at=utcnow())
            )
            if result.rowcount:
                return True
            # Unknown click (cache-only): nothing to claim durably
            return db.get(ClickRecord, click_id) is None
        claimed = await self._run(op)
        if not claimed:
            logger.info("[STORE] Click %s already claimed, sale %s lost the race", click_id, sale_id)
        return claimed

    async def release_click(self, click_id: str) -> None:
        def op(db: Session):
            db.execute(
                update(ClickRecord)
                .where(ClickRecord.id == click_id)
                .values(attributed_sale_id=None, attributed_at=None)
            )
        await self._run(op)


# =============================================================================
# WEIGHTS STORE
# =============================================================================

class SqlWeightsStore(WeightsStore):
    """Appends each saved snapshot; load returns the newest."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    async def load(self) -> Optional[ScoringWeights]:
        def work():
            with session_scope(self._session_factory) as db:
                row = (
                    db.query(ScoringWeightsRecord)
                    .order_by(ScoringWeightsRecord.id.desc())
                    .first()
                )
                if row is None:
                    return None
                return ScoringWeights.from_dict({
                    "version": row.version,
                    "signals": row.signals,
                    "lambdas": row.lambdas,
                    "accuracy": row.accuracy,
                    "training_count": row.training_count,
                    "updated_at": row.created_at,
                })
        return await asyncio.to_thread(work)

    async def save(self, weights: ScoringWeights) -> None:
        data = weights.to_dict()

        def work():
            with session_scope(self._session_factory) as db:
                db.add(ScoringWeightsRecord(
                    version=data["version"],
                    signals=data["signals"],
                    lambdas=data["lambdas"],
                    accuracy=data["accuracy"],
                    training_count=data["training_count"],
                    created_at=weights.updated_at,
                ))
        await asyncio.to_thread(work)
        logger.info("[STORE] Saved scoring weights %s", weights.version)
