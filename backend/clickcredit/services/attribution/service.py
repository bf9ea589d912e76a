"""
Attribution Service (public facade of the attribution core).

WHAT:
    The operations callers use:
    - ingest_click / correlate_sale / record_content_post (event intake)
    - submit_feedback / adjust_attribution / reassign_attribution (review)
    - get_model_status / get_creator_report / get_aggregate_report (read)
    - retrain / prune (periodic maintenance)

WHY:
    One explicitly constructed object owns the cache, trainer, learner and
    engine. Nothing is a module-level singleton, so tests and workers can
    run independent instances side by side.

FLOW:
    click → validate → EventStore.save_click → background: cache.put + learner
    sale  → validate → EventStore.save_sale  → engine.correlate
          → background: learner conversion + trainer ground truth
    post  → validate → EventStore.save_content_post (fallback for click-less sales)
    feedback → state transition → EventStore.update → trainer.provide_feedback

REFERENCES:
    - clickcredit/routers/attribution.py (HTTP adapter)
    - clickcredit/workers/arq_worker.py (queue adapter + cron jobs)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from clickcredit.telemetry import capture_exception

from .background import BackgroundTaskRunner
from .click_cache import CacheStats, ClickCacheConfig, TieredClickCache
from .correlation_engine import CorrelationConfig, CorrelationEngine, CorrelationResult
from .errors import (
    AttributionNotFoundError,
    DependencyError,
    InvalidEventError,
    InvalidTransitionError,
)
from .insight_learner import InsightLearner, LearnerConfig
from .insight_types import AggregateQuery, AggregateReport, CreatorReport
from .interfaces import EventStore, SharedCache, WeightsStore
from .scorer import ConfidenceScorer, ScorerConfig
from .types import (
    Attribution,
    AttributionStatus,
    ClickEvent,
    ContentPost,
    MatchTier,
    Platform,
    SaleEvent,
    ensure_utc,
)
from .weight_trainer import AdaptiveWeightTrainer, RetrainResult, TrainerConfig

logger = logging.getLogger(__name__)


@dataclass
class ModelStatus:
    """Snapshot of the learned model and cache health."""

    version: str
    weights: Dict[str, float]
    lambdas: Dict[str, float]
    accuracy: float
    sample_count: int
    training_count: int
    samples_until_retrain: int
    is_learning: bool
    last_trained_at: Optional[datetime]
    cache_stats: CacheStats
    insight_stats: Dict[str, int]


# =============================================================================
# VALIDATION
# =============================================================================

def validate_click(click: ClickEvent) -> ClickEvent:
    """Reject clicks missing identity or timestamp; normalize the rest."""
    for name in ("click_id", "link_id", "user_id"):
        if not getattr(click, name, None):
            raise InvalidEventError(f"{name} is required", field=name)
    if not isinstance(click.clicked_at, datetime):
        raise InvalidEventError("clicked_at must be a timestamp", field="clicked_at")
    return replace(
        click,
        clicked_at=ensure_utc(click.clicked_at),
        platform=Platform.parse(click.platform),
    )


def validate_sale(sale: SaleEvent) -> SaleEvent:
    for name in ("sale_id", "user_id"):
        if not getattr(sale, name, None):
            raise InvalidEventError(f"{name} is required", field=name)
    if not isinstance(sale.sold_at, datetime):
        raise InvalidEventError("sold_at must be a timestamp", field="sold_at")
    if not isinstance(sale.amount, int) or isinstance(sale.amount, bool) or sale.amount < 0:
        raise InvalidEventError("amount must be a non-negative integer in minor units", field="amount")
    if not sale.currency:
        raise InvalidEventError("currency is required", field="currency")
    return replace(sale, sold_at=ensure_utc(sale.sold_at), currency=sale.currency.upper())


def validate_post(post: ContentPost) -> ContentPost:
    for name in ("post_id", "user_id"):
        if not getattr(post, name, None):
            raise InvalidEventError(f"{name} is required", field=name)
    if not isinstance(post.posted_at, datetime):
        raise InvalidEventError("posted_at must be a timestamp", field="posted_at")
    for audience_slice in post.audience:
        if not 0.0 <= audience_slice.percentage <= 100.0:
            raise InvalidEventError("audience percentage must be between 0 and 100", field="audience")
    return replace(post, posted_at=ensure_utc(post.posted_at), platform=Platform.parse(post.platform))


# =============================================================================
# SERVICE
# =============================================================================

class AttributionService:
    """
    Usage:
        service = build_attribution_service(settings, event_store=SqlEventStore(...))
        await service.start()
        click_id = await service.ingest_click(click)
        result = await service.correlate_sale(sale)
        await service.submit_feedback(result.attribution.attribution_id, confirmed=True)
    """

    def __init__(
        self,
        store: EventStore,
        cache: TieredClickCache,
        trainer: AdaptiveWeightTrainer,
        learner: InsightLearner,
        engine: CorrelationEngine,
        runner: Optional[BackgroundTaskRunner] = None,
        timeout_seconds: float = 0.5,
    ):
        self.store = store
        self.cache = cache
        self.trainer = trainer
        self.learner = learner
        self.engine = engine
        self.runner = runner or BackgroundTaskRunner()
        self.timeout_seconds = timeout_seconds

    async def start(self) -> None:
        await self.trainer.load()

    async def shutdown(self) -> None:
        await self.runner.drain()

    # -------------------------------------------------------------------------
    # Intake
    # -------------------------------------------------------------------------

    async def ingest_click(self, click: ClickEvent) -> str:
        """Record a click. Only validation errors reach the caller."""
        click = validate_click(click)
        try:
            await self._call(self.store.save_click(click), "save_click")
        except DependencyError as e:
            logger.warning("[SERVICE] Click %s not persisted, cache and insights still fed: %s", click.click_id, e)

        self.runner.spawn(self.cache.put(click), name="cache_put")
        self.runner.spawn(self._feed_click(click), name="insight_click")
        return click.click_id

    async def correlate_sale(self, sale: SaleEvent) -> CorrelationResult:
        """Find the click behind a sale; `result.attribution` is None when unattributed."""
        sale = validate_sale(sale)
        try:
            await self._call(self.store.save_sale(sale), "save_sale")
        except DependencyError as e:
            logger.warning("[SERVICE] Sale %s not persisted: %s", sale.sale_id, e)

        result = await self.engine.correlate(sale)
        attribution = result.attribution
        if attribution is not None:
            logger.info(
                "[SERVICE] Sale %s → %s (%s, confidence=%.3f)",
                sale.sale_id, attribution.click_id or attribution.post_id,
                attribution.status.value, attribution.confidence,
            )
            if result.click is not None:
                self.runner.spawn(
                    self._feed_conversion(result.click, sale, attribution),
                    name="insight_conversion",
                )
                if attribution.matched_by.tracker_match:
                    self.runner.spawn(
                        self.trainer.record_ground_truth(
                            result.click,
                            sale,
                            attribution.time_delta_minutes,
                            attribution.matched_by.geo_score,
                            attribution.matched_by.platform,
                            signals=attribution.matched_by,
                        ),
                        name="ground_truth",
                    )
        return result

    async def record_content_post(self, post: ContentPost) -> str:
        """Store a social post so unmatched sales can fall back to it."""
        post = validate_post(post)
        await self._call(self.store.save_content_post(post), "save_content_post")
        return post.post_id

    # -------------------------------------------------------------------------
    # Review
    # -------------------------------------------------------------------------

    async def submit_feedback(self, attribution_id: str, confirmed: bool) -> Attribution:
        """Confirm or reject an attribution and feed the verdict to the trainer."""
        attribution = await self._get_attribution(attribution_id)
        predicted = attribution.confidence

        self.engine.apply_feedback(attribution, confirmed)
        await self._call(self.store.update_attribution(attribution), "update_attribution")

        if not confirmed and attribution.click_id:
            await self._release_click(attribution.click_id)

        try:
            await self.trainer.provide_feedback(
                attribution.sale_id, predicted, confirmed, attribution.matched_by,
            )
        except Exception as e:
            logger.warning("[SERVICE] Training on feedback for %s failed: %s", attribution_id, e)
            capture_exception(e, extra={"operation": "provide_feedback", "attribution_id": attribution_id})
        return attribution

    async def adjust_attribution(
        self,
        attribution_id: str,
        revenue_share: Optional[float] = None,
        note: Optional[str] = None,
    ) -> Attribution:
        """Manual override of revenue share and/or a free-form note."""
        attribution = await self._get_attribution(attribution_id)
        if revenue_share is not None:
            if not 0.0 <= revenue_share <= 1.0:
                raise InvalidTransitionError("revenue_share must be between 0 and 1")
            previous = attribution.revenue_share
            attribution.revenue_share = float(revenue_share)
            attribution.add_note(f"Revenue share changed from {previous:.2f} to {revenue_share:.2f}")
        if note:
            attribution.add_note(note)
        await self._call(self.store.update_attribution(attribution), "update_attribution")
        return attribution

    async def reassign_attribution(self, attribution_id: str, click_id: str, note: Optional[str] = None) -> Attribution:
        """Point an attribution at a different click chosen by the creator."""
        attribution = await self._get_attribution(attribution_id)
        if attribution.status == AttributionStatus.rejected:
            raise InvalidTransitionError("Rejected attributions cannot be reassigned")
        if attribution.click_id == click_id:
            return attribution

        click = await self._call(self.store.get_click(click_id), "get_click")
        if click is None or click.user_id != attribution.user_id:
            raise InvalidEventError(f"click {click_id} not found for this creator", field="click_id")

        claimed = await self._call(self.store.mark_click_attributed(click_id, attribution.sale_id), "mark_click_attributed")
        if not claimed:
            raise InvalidTransitionError(f"Click {click_id} is already attributed to another sale")
        if not await self.cache.mark_attributed(click, attribution.sale_id):
            await self._call(self.store.release_click(click_id), "release_click")
            raise InvalidTransitionError(f"Click {click_id} is already attributed to another sale")

        previous = attribution.click_id or attribution.post_id
        if attribution.click_id:
            await self._release_click(attribution.click_id)

        attribution.click_id = click.click_id
        attribution.link_id = click.link_id
        attribution.post_id = None
        attribution.matched_by = replace(attribution.matched_by, tier=MatchTier.manual, probabilistic=False)
        attribution.add_note(note or f"Reassigned from {previous} to {click_id}")
        await self._call(self.store.update_attribution(attribution), "update_attribution")
        return attribution

    async def list_review_queue(self, user_id: str) -> List[Attribution]:
        """UNCERTAIN attributions awaiting a verdict, newest first."""
        pending = await self._call(
            self.store.find_attributions(user_id, status=AttributionStatus.uncertain),
            "find_attributions",
        )
        return sorted(pending, key=lambda a: a.created_at, reverse=True)

    # -------------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------------

    def get_model_status(self) -> ModelStatus:
        weights = self.trainer.weights
        return ModelStatus(
            version=weights.version,
            weights=dict(weights.signals),
            lambdas={platform.value: value for platform, value in weights.lambdas.items()},
            accuracy=weights.accuracy,
            sample_count=self.trainer.sample_count,
            training_count=weights.training_count,
            samples_until_retrain=self.trainer.samples_until_retrain,
            is_learning=self.trainer.is_learning,
            last_trained_at=self.trainer.last_trained_at,
            cache_stats=self.cache.stats(),
            insight_stats=self.learner.stats(),
        )

    def get_creator_report(self, niche: Optional[str] = None, country: Optional[str] = None) -> CreatorReport:
        return self.learner.generate_creator_report(niche=niche, country=country)

    def get_aggregate_report(self, query: Optional[AggregateQuery] = None) -> AggregateReport:
        return self.learner.generate_aggregate_report(query)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def retrain(self, force: bool = False) -> RetrainResult:
        """Periodic retrain; a no-op unless samples arrived since the last one."""
        if not force and self.trainer.samples_since_retrain == 0:
            return RetrainResult(
                False,
                "no new samples",
                self.trainer.weights.version,
                sample_count=self.trainer.sample_count,
            )
        return await self.trainer.retrain()

    def prune(self) -> Dict[str, int]:
        return {
            "insight_events": self.learner.prune(),
            "hot_clicks": self.cache.prune(),
        }

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _feed_click(self, click: ClickEvent) -> None:
        self.learner.record_click(click)

    async def _feed_conversion(self, click: ClickEvent, sale: SaleEvent, attribution: Attribution) -> None:
        revenue = int(round(sale.amount * attribution.revenue_share))
        if not self.learner.record_conversion(click.click_id, revenue=revenue):
            logger.debug("[SERVICE] Click %s unknown to insights, conversion not aggregated", click.click_id)

    async def _get_attribution(self, attribution_id: str) -> Attribution:
        attribution = await self._call(self.store.get_attribution(attribution_id), "get_attribution")
        if attribution is None:
            raise AttributionNotFoundError(attribution_id)
        return attribution

    async def _release_click(self, click_id: str) -> None:
        await self._call(self.store.release_click(click_id), "release_click")
        click = await self._call(self.store.get_click(click_id), "get_click")
        if click is not None:
            await self.cache.release(click)

    async def _call(self, awaitable, operation: str) -> Any:
        """Await a store call with the timeout; failures become DependencyError."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except Exception as e:
            capture_exception(e, extra={"operation": operation})
            raise DependencyError(f"{operation} failed: {e!r}", dependency="event_store") from e


# =============================================================================
# FACTORY
# =============================================================================

def build_attribution_service(
    settings,
    event_store: EventStore,
    shared_cache: Optional[SharedCache] = None,
    weights_store: Optional[WeightsStore] = None,
) -> AttributionService:
    """Wire every component from application Settings."""
    window = timedelta(hours=settings.ATTRIBUTION_WINDOW_HOURS)
    timeout = settings.DEPENDENCY_TIMEOUT_SECONDS

    scorer_config = ScorerConfig(
        multi_signal_bonus=settings.MULTI_SIGNAL_BONUS,
        content_ceiling=settings.CONTENT_SCORE_CEILING,
    )
    trainer = AdaptiveWeightTrainer(
        weights_store=weights_store,
        config=TrainerConfig(
            learning_rate=settings.LEARNING_RATE,
            retrain_every=settings.RETRAIN_EVERY,
            min_samples=settings.MIN_TRAINING_SAMPLES,
            max_samples=settings.MAX_TRAINING_SAMPLES,
            lambda_smoothing=settings.LAMBDA_SMOOTHING,
        ),
        scorer_config=scorer_config,
    )
    cache = TieredClickCache(
        shared=shared_cache,
        config=ClickCacheConfig(
            window=window,
            hot_capacity=settings.HOT_TIER_CAPACITY,
            key_prefix=settings.CLICK_CACHE_PREFIX,
            timeout_seconds=timeout,
        ),
    )
    scorer = ConfidenceScorer(lambda: trainer.weights, config=scorer_config)
    engine = CorrelationEngine(
        event_store,
        cache,
        scorer,
        config=CorrelationConfig(
            window=window,
            auto_accept_threshold=settings.AUTO_ACCEPT_THRESHOLD,
            confidence_floor=settings.CONFIDENCE_FLOOR,
            content_accept_threshold=settings.CONTENT_ACCEPT_THRESHOLD,
            timeout_seconds=timeout,
        ),
    )
    learner = InsightLearner(
        config=LearnerConfig(
            retention_days=settings.INSIGHT_RETENTION_DAYS,
            max_events=settings.INSIGHT_MAX_EVENTS,
        ),
    )
    return AttributionService(
        store=event_store,
        cache=cache,
        trainer=trainer,
        learner=learner,
        engine=engine,
        runner=BackgroundTaskRunner(settings.BACKGROUND_CONCURRENCY),
        timeout_seconds=timeout,
    )
