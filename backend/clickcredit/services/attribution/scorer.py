"""
Confidence Scorer.

WHAT:
    Scores one candidate (click or content post) against one sale and records
    which signals fired.

WHY:
    A weighted linear combination is transparent: every point of confidence
    traces back to a named signal in the MatchedSignals audit record, and the
    trainer can adjust each weight independently.

SCORING (default weights):
    ip match            +0.50
    tracker match       +0.35
    fingerprint match   +0.25
    geo (tiered)        +0.15 x geo_score   (country 0.5, +region 0.3 or +city 0.5)
    time decay          +0.10 x exp(-lambda_platform x hours)
    3+ of ip/tracker/fingerprint/geo   +0.10 bonus
    clamped to [0, 1]

    Stored weights are normalized to sum to 1.0; they are multiplied back by
    SIGNAL_SCALE (sum of the baselines) so defaults reproduce the table above.

REFERENCES:
    - clickcredit/services/attribution/types.py (ScoringWeights, MatchedSignals)
    - clickcredit/services/attribution/weight_trainer.py (uses predict())
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import Callable, Iterable, Optional

from .types import (
    SIGNAL_SCALE,
    AudienceSlice,
    ClickEvent,
    ContentPost,
    MatchedSignals,
    MatchTier,
    SaleEvent,
    ScoringWeights,
    ensure_utc,
)

logger = logging.getLogger(__name__)

# Audience share at which a post's geo evidence earns full credit
FULL_AUDIENCE_SHARE = 20.0


@dataclass
class ScorerConfig:
    """Tunable constants for the confidence scorer."""

    multi_signal_bonus: float = 0.10
    multi_signal_min: int = 3
    content_ceiling: float = 0.90


@dataclass(frozen=True)
class ScoreResult:
    confidence: float
    signals: MatchedSignals


# =============================================================================
# PURE HELPERS
# =============================================================================

def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    if math.isnan(value):
        return low
    return max(low, min(high, value))


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.strip().lower() == b.strip().lower()


def calculate_geo_score(
    country_a: Optional[str],
    region_a: Optional[str],
    city_a: Optional[str],
    country_b: Optional[str],
    region_b: Optional[str],
    city_b: Optional[str],
) -> float:
    """Tiered geo similarity: nothing without a country match."""
    if not _same(country_a, country_b):
        return 0.0
    score = 0.5
    if _same(city_a, city_b):
        score += 0.5
    elif _same(region_a, region_b):
        score += 0.3
    return min(score, 1.0)


def audience_geo_score(audience: Iterable[AudienceSlice], sale: SaleEvent) -> float:
    """Best geo score of the sale's location against a post's audience slices."""
    best = 0.0
    for audience_slice in audience:
        tiered = calculate_geo_score(
            audience_slice.country, None, audience_slice.city,
            sale.country, sale.region, sale.city,
        )
        share = min(1.0, max(0.0, audience_slice.percentage) / FULL_AUDIENCE_SHARE)
        best = max(best, tiered * share)
    return best


def time_decay(delta_hours: float, decay_lambda: float) -> float:
    return math.exp(-decay_lambda * max(0.0, delta_hours))


def linear_score(
    weights: ScoringWeights,
    ip: float,
    tracker: float,
    fingerprint: float,
    geo: float,
    decay: float,
) -> float:
    """Weighted sum before bonus and clamping."""
    return SIGNAL_SCALE * (
        weights.weight("ip") * ip
        + weights.weight("tracker") * tracker
        + weights.weight("fingerprint") * fingerprint
        + weights.weight("geo") * geo
        + weights.weight("time") * decay
    )


# =============================================================================
# SCORER
# =============================================================================

class ConfidenceScorer:
    """
    Scores candidates with whatever weights snapshot is current.

    Usage:
        scorer = ConfidenceScorer(lambda: trainer.weights)
        result = scorer.score(click, sale)
        if result and result.confidence >= 0.75:
            ...
    """

    def __init__(
        self,
        weights_provider: Callable[[], ScoringWeights],
        config: Optional[ScorerConfig] = None,
    ):
        self._weights_provider = weights_provider
        self.config = config or ScorerConfig()

    @property
    def weights(self) -> ScoringWeights:
        return self._weights_provider()

    def score(self, click: ClickEvent, sale: SaleEvent, tier: MatchTier = MatchTier.store) -> Optional[ScoreResult]:
        """Score a click against a sale. None when the click is after the sale."""
        clicked_at = ensure_utc(click.clicked_at)
        sold_at = ensure_utc(sale.sold_at)
        if clicked_at is None or sold_at is None or clicked_at > sold_at:
            return None

        weights = self.weights
        delta_minutes = (sold_at - clicked_at).total_seconds() / 60.0
        decay = time_decay(delta_minutes / 60.0, weights.lambda_for(click.platform))

        ip_match = _exact(click.ip_address, sale.ip_address)
        tracker_match = _exact(click.tracker_id, sale.effective_tracker_id)
        fingerprint_match = _exact(click.fingerprint, sale.effective_fingerprint)
        geo = calculate_geo_score(
            click.country, click.region, click.city,
            sale.country, sale.region, sale.city,
        )

        signals = MatchedSignals(
            ip_match=ip_match,
            tracker_match=tracker_match,
            fingerprint_match=fingerprint_match,
            geo_score=geo,
            time_decay=decay,
            time_delta_minutes=delta_minutes,
            platform=click.platform,
            tier=tier,
        )
        bonus = self._bonus(signals)
        confidence = clamp(
            linear_score(weights, float(ip_match), float(tracker_match), float(fingerprint_match), geo, decay)
            + bonus
        )
        signals = _with_bonus(signals, bonus)

        logger.debug(
            "[SCORER] click=%s sale=%s confidence=%.3f fired=%s",
            click.click_id, sale.sale_id, confidence, signals.fired(),
        )
        return ScoreResult(confidence=confidence, signals=signals)

    def score_post(self, post: ContentPost, sale: SaleEvent) -> Optional[ScoreResult]:
        """
        Probabilistic score of a content post against a sale.

        Only geo and time can fire, so their weights are renormalized between
        themselves and the result is capped by the content ceiling.
        """
        posted_at = ensure_utc(post.posted_at)
        sold_at = ensure_utc(sale.sold_at)
        if posted_at is None or sold_at is None or posted_at > sold_at:
            return None

        weights = self.weights
        delta_minutes = (sold_at - posted_at).total_seconds() / 60.0
        decay = time_decay(delta_minutes / 60.0, weights.lambda_for(post.platform))
        geo = audience_geo_score(post.audience, sale)

        w_geo, w_time = weights.weight("geo"), weights.weight("time")
        total = (w_geo + w_time) or 1.0
        combined = (w_geo * geo + w_time * decay) / total
        confidence = clamp(combined * self.config.content_ceiling)

        signals = MatchedSignals(
            geo_score=geo,
            time_decay=decay,
            time_delta_minutes=delta_minutes,
            platform=post.platform,
            tier=MatchTier.content,
            probabilistic=True,
        )
        return ScoreResult(confidence=confidence, signals=signals)

    def predict(self, signals: MatchedSignals, weights: Optional[ScoringWeights] = None) -> float:
        """Re-score a recorded feature set, recomputing decay with current lambdas."""
        weights = weights or self.weights
        decay = time_decay(signals.time_delta_minutes / 60.0, weights.lambda_for(signals.platform))
        return clamp(
            linear_score(
                weights,
                float(signals.ip_match),
                float(signals.tracker_match),
                float(signals.fingerprint_match),
                signals.geo_score,
                decay,
            )
            + self._bonus(signals)
        )

    def _bonus(self, signals: MatchedSignals) -> float:
        if signals.signal_count >= self.config.multi_signal_min:
            return self.config.multi_signal_bonus
        return 0.0


def _exact(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and a == b


def _with_bonus(signals: MatchedSignals, bonus: float) -> MatchedSignals:
    if not bonus:
        return signals
    return replace(signals, multi_signal_bonus=bonus)
