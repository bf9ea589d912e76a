"""
Correlation Engine for sale -> click attribution.

WHAT:
    Finds the click (or, failing that, the content post) most likely to have
    caused a sale, scores it, and records an Attribution.

WHY:
    Lookup order follows latency: hot tier, shared tier, durable store,
    content posts. Every external call is bounded by a timeout and any
    failure degrades to the next source, so a sale is never rejected
    because attribution could not be computed.

STATE TRANSITIONS:
    PENDING → confidence >= auto-accept (0.75)          → MATCHED
    PENDING → floor (0.50) <= confidence < auto-accept   → UNCERTAIN
    PENDING → confidence < floor                         → (no attribution)
    MATCHED | UNCERTAIN → user confirms                  → CONFIRMED
    MATCHED | UNCERTAIN → user rejects                   → REJECTED
    Content-post matches use a stricter auto-accept (0.80).

PROCEDURE:
    1. Cache by IP, then tracker, then fingerprint (first hit wins)
    2. No hit, or hit below floor: durable store clicks within the window
    3. Score all candidates, rank by (confidence, recency)
    4. Nothing clears the floor: probabilistic match against recent posts
    5. Claim the click (cache + store) and persist the Attribution

REFERENCES:
    - clickcredit/services/attribution/click_cache.py
    - clickcredit/services/attribution/scorer.py
    - clickcredit/services/attribution/service.py (public facade)
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional

from clickcredit.telemetry import capture_exception

from .click_cache import TieredClickCache
from .errors import InvalidTransitionError
from .interfaces import EventStore
from .scorer import ConfidenceScorer, ScoreResult
from .types import (
    Attribution,
    AttributionStatus,
    ClickEvent,
    ContentPost,
    MatchTier,
    SaleEvent,
    ensure_utc,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)

EVENT_STORE = "event_store"

ALLOWED_TRANSITIONS: Dict[AttributionStatus, FrozenSet[AttributionStatus]] = {
    AttributionStatus.pending: frozenset({AttributionStatus.matched, AttributionStatus.uncertain}),
    AttributionStatus.matched: frozenset({AttributionStatus.confirmed, AttributionStatus.rejected}),
    AttributionStatus.uncertain: frozenset({AttributionStatus.confirmed, AttributionStatus.rejected}),
    AttributionStatus.confirmed: frozenset(),
    AttributionStatus.rejected: frozenset(),
}


@dataclass
class CorrelationConfig:
    """Thresholds and limits for correlation."""

    window: timedelta = timedelta(hours=24)
    auto_accept_threshold: float = 0.75
    confidence_floor: float = 0.50
    content_accept_threshold: float = 0.80
    timeout_seconds: float = 0.5
    max_store_candidates: int = 200


class CorrelationOutcome(str, enum.Enum):
    attributed = "attributed"
    no_match = "no_match"
    error = "error"


@dataclass
class CorrelationResult:
    """
    Result of correlating one sale.

    `no_match` is the normal "nothing cleared the floor" outcome; `error`
    means a lookup or persistence step failed and the answer is unknown.
    """

    outcome: CorrelationOutcome
    sale_id: str
    attribution: Optional[Attribution] = None
    click: Optional[ClickEvent] = None
    candidates_scored: int = 0
    sources: List[str] = field(default_factory=list)
    degraded: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def attributed(self) -> bool:
        return self.attribution is not None


@dataclass
class _Candidate:
    score: ScoreResult
    click: Optional[ClickEvent] = None
    post: Optional[ContentPost] = None

    @property
    def confidence(self) -> float:
        return self.score.confidence

    @property
    def occurred_at(self):
        if self.click is not None:
            return ensure_utc(self.click.clicked_at)
        return ensure_utc(self.post.posted_at)


class _Failed:
    pass


_FAILED = _Failed()


class CorrelationEngine:
    """
    Attribution state machine and sale correlation.

    Usage:
        engine = CorrelationEngine(store, cache, scorer)
        result = await engine.correlate(sale)
        if result.outcome == CorrelationOutcome.attributed:
            ...
    """

    def __init__(
        self,
        store: EventStore,
        cache: TieredClickCache,
        scorer: ConfidenceScorer,
        config: Optional[CorrelationConfig] = None,
    ):
        self.store = store
        self.cache = cache
        self.scorer = scorer
        self.config = config or CorrelationConfig()

    # =========================================================================
    # STATE MACHINE
    # =========================================================================

    def classify(self, confidence: float, probabilistic: bool = False) -> Optional[AttributionStatus]:
        """Status for a fresh score, or None when below the floor."""
        threshold = self.config.content_accept_threshold if probabilistic else self.config.auto_accept_threshold
        if confidence >= threshold:
            return AttributionStatus.matched
        if confidence >= self.config.confidence_floor:
            return AttributionStatus.uncertain
        return None

    def transition(self, attribution: Attribution, new_status: AttributionStatus, reason: str) -> None:
        current = attribution.status
        if new_status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Cannot move attribution {attribution.attribution_id} from {current.value} to {new_status.value}"
            )
        attribution.status = new_status
        attribution.updated_at = utcnow()
        logger.info(
            "[CORRELATE] %s: %s → %s (%s)",
            attribution.attribution_id, current.value, new_status.value, reason,
        )

    def apply_feedback(self, attribution: Attribution, confirmed: bool) -> AttributionStatus:
        target = AttributionStatus.confirmed if confirmed else AttributionStatus.rejected
        self.transition(attribution, target, "user feedback")
        return target

    # =========================================================================
    # CORRELATION
    # =========================================================================

    async def correlate(self, sale: SaleEvent) -> CorrelationResult:
        """Correlate one sale. Never raises; failures become outcome=error."""
        result = CorrelationResult(outcome=CorrelationOutcome.no_match, sale_id=sale.sale_id)
        try:
            await self._correlate(sale, result)
        except Exception as e:
            logger.exception("[CORRELATE] Correlation failed for sale %s", sale.sale_id)
            capture_exception(e, extra={"operation": "correlate_sale", "sale_id": sale.sale_id})
            result.outcome = CorrelationOutcome.error
            result.attribution = None
            result.click = None
            result.error = str(e)
        return result

    async def _correlate(self, sale: SaleEvent, result: CorrelationResult) -> None:
        floor = self.config.confidence_floor

        ranked = await self._click_candidates(sale, result)
        for candidate in ranked:
            if candidate.confidence < floor:
                break
            if await self._claim(candidate.click, sale, result):
                await self._record(sale, candidate, result)
                return
            logger.debug("[CORRELATE] Click %s already claimed, trying next", candidate.click.click_id)

        post_candidate = await self._best_post_candidate(sale, result)
        if post_candidate is not None and post_candidate.confidence >= floor:
            await self._record(sale, post_candidate, result)
            return

        if EVENT_STORE in result.degraded:
            result.outcome = CorrelationOutcome.error
            result.error = "event store unavailable during lookup"
        logger.info(
            "[CORRELATE] Sale %s unattributed (%s, %d candidates scored)",
            sale.sale_id, result.outcome.value, result.candidates_scored,
        )

    async def _click_candidates(self, sale: SaleEvent, result: CorrelationResult) -> List[_Candidate]:
        scored: Dict[str, _Candidate] = {}

        lookups = (
            (self.cache.find_by_ip, sale.ip_address),
            (self.cache.find_by_tracker, sale.effective_tracker_id),
            (self.cache.find_by_fingerprint, sale.effective_fingerprint),
        )
        for finder, value in lookups:
            hit = await finder(sale.user_id, value, sale.sold_at)
            if hit is not None:
                result.sources.append(hit.tier.value)
                self._add_click(scored, hit.click, sale, hit.tier, result)
                break

        ranked = self._rank(scored.values())
        if ranked and ranked[0].confidence >= self.config.confidence_floor:
            return ranked

        sold_at = ensure_utc(sale.sold_at)
        clicks = await self._guard(
            lambda: self.store.find_clicks_by_user(sale.user_id, sold_at - self.config.window, until=sold_at),
            EVENT_STORE,
            result,
        )
        result.sources.append(MatchTier.store.value)
        if clicks is not _FAILED:
            for click in list(clicks)[: self.config.max_store_candidates]:
                if click.click_id not in scored:
                    self._add_click(scored, click, sale, MatchTier.store, result)

        return self._rank(scored.values())

    def _add_click(
        self,
        scored: Dict[str, _Candidate],
        click: ClickEvent,
        sale: SaleEvent,
        tier: MatchTier,
        result: CorrelationResult,
    ) -> None:
        score = self.scorer.score(click, sale, tier=tier)
        if score is None:
            return
        result.candidates_scored += 1
        scored[click.click_id] = _Candidate(score=score, click=click)

    async def _best_post_candidate(self, sale: SaleEvent, result: CorrelationResult) -> Optional[_Candidate]:
        sold_at = ensure_utc(sale.sold_at)
        posts = await self._guard(
            lambda: self.store.find_recent_posts(sale.user_id, sold_at - self.config.window, until=sold_at),
            EVENT_STORE,
            result,
        )
        if posts is _FAILED or not posts:
            return None
        result.sources.append(MatchTier.content.value)

        candidates = []
        for post in posts:
            score = self.scorer.score_post(post, sale)
            if score is not None:
                result.candidates_scored += 1
                candidates.append(_Candidate(score=score, post=post))
        ranked = self._rank(candidates)
        return ranked[0] if ranked else None

    @staticmethod
    def _rank(candidates) -> List[_Candidate]:
        return sorted(candidates, key=lambda c: (c.confidence, c.occurred_at), reverse=True)

    # =========================================================================
    # CLAIM + PERSIST
    # =========================================================================

    async def _claim(self, click: ClickEvent, sale: SaleEvent, result: CorrelationResult) -> bool:
        if not await self.cache.mark_attributed(click, sale.sale_id):
            return False
        claimed = await self._guard(
            lambda: self.store.mark_click_attributed(click.click_id, sale.sale_id),
            EVENT_STORE,
            result,
        )
        if claimed is False:
            await self.cache.release(click)
            return False
        return True

    async def _record(self, sale: SaleEvent, candidate: _Candidate, result: CorrelationResult) -> None:
        signals = candidate.score.signals
        attribution = Attribution(
            attribution_id=new_id(),
            sale_id=sale.sale_id,
            user_id=sale.user_id,
            confidence=candidate.confidence,
            status=AttributionStatus.pending,
            matched_by=signals,
            click_id=candidate.click.click_id if candidate.click else None,
            link_id=candidate.click.link_id if candidate.click else None,
            post_id=candidate.post.post_id if candidate.post else None,
            time_delta_minutes=signals.time_delta_minutes,
        )
        status = self.classify(candidate.confidence, probabilistic=signals.probabilistic)
        self.transition(attribution, status, f"confidence {candidate.confidence:.3f} via {signals.tier.value}")

        saved = await self._guard(lambda: self.store.save_attribution(attribution), EVENT_STORE, result)
        if saved is _FAILED:
            if candidate.click is not None:
                # The store claim may have landed even though the write did not
                await self._guard(
                    lambda: self.store.release_click(candidate.click.click_id),
                    EVENT_STORE,
                    result,
                )
                await self.cache.release(candidate.click)
            result.outcome = CorrelationOutcome.error
            result.error = "attribution could not be persisted"
            return

        result.outcome = CorrelationOutcome.attributed
        result.attribution = attribution
        result.click = candidate.click

    async def _guard(
        self,
        make_call: Callable[[], Awaitable[Any]],
        dependency: str,
        result: CorrelationResult,
    ) -> Any:
        """Await a dependency call with the configured timeout; _FAILED on error."""
        try:
            return await asyncio.wait_for(make_call(), timeout=self.config.timeout_seconds)
        except Exception as e:
            if dependency not in result.degraded:
                result.degraded.append(dependency)
            logger.warning("[CORRELATE] %s failed for sale %s: %r", dependency, result.sale_id, e)
            capture_exception(e, extra={"operation": "correlate_sale", "dependency": dependency})
            return _FAILED
