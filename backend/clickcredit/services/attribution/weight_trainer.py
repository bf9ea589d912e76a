"""
Adaptive Weight Trainer.

WHAT:
    Keeps ScoringWeights aligned with observed ground truth:
    - Online nudges from user feedback (confirm/reject)
    - Periodic batch retrain over the recent sample window
    - Per-platform time-decay (lambda) re-estimation

WHY:
    Default weights are educated guesses. Deterministic click->sale links
    and user verdicts show which signals actually predict purchases for this
    creator base, and how fast interest fades on each platform.

LEARNING RULES:
    Online:   w_i += lr * (actual - predicted) * x_i   for each active signal,
              then clamp to a floor and renormalize to sum 1.0
    Retrain:  every K samples once the minimum is reached; batch gradient
              descent on squared error, best iteration kept; version bumped
    Lambda:   new = clamp(1 / (variance_hours + 1), 0.05, 3.0)
              lambda = 0.9 * old + 0.1 * new   (needs >= 5 conversions)

CONCURRENCY:
    Weights are an immutable snapshot swapped by attribute assignment, so
    readers never block. Only one retrain runs at a time (`is_learning`).

REFERENCES:
    - clickcredit/services/attribution/scorer.py (prediction formula)
    - clickcredit/workers/arq_worker.py (periodic retrain job)
"""

from __future__ import annotations

import enum
import logging
import statistics
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Dict, List, Mapping, Optional, Tuple

from clickcredit.telemetry import capture_exception, capture_message

from .interfaces import WeightsStore
from .scorer import ScorerConfig, clamp, time_decay
from .types import (
    SIGNAL_NAMES,
    SIGNAL_SCALE,
    ClickEvent,
    MatchedSignals,
    MatchTier,
    Platform,
    SaleEvent,
    ScoringWeights,
    normalize_weights,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class TrainerConfig:
    """Learning parameters for the adaptive trainer."""

    learning_rate: float = 0.01
    retrain_every: int = 10
    min_samples: int = 10
    max_samples: int = 5000
    retrain_iterations: int = 100
    weight_floor: float = 0.01
    lambda_smoothing: float = 0.9
    min_platform_samples: int = 5
    lambda_min: float = 0.05
    lambda_max: float = 3.0


class SampleSource(str, enum.Enum):
    ground_truth = "ground_truth"
    feedback = "feedback"


@dataclass(frozen=True)
class TrainingSample:
    sale_id: str
    signals: MatchedSignals
    outcome: float
    source: SampleSource
    click_id: Optional[str] = None
    recorded_at: datetime = field(default_factory=utcnow)


@dataclass
class RetrainResult:
    """Outcome of one retrain attempt."""

    retrained: bool
    reason: str
    version: str
    sample_count: int = 0
    loss: Optional[float] = None
    accuracy: Optional[float] = None


class AdaptiveWeightTrainer:
    """
    Owns the live ScoringWeights snapshot and every update to it.

    Usage:
        trainer = AdaptiveWeightTrainer(weights_store=SqlWeightsStore(...))
        await trainer.load()
        scorer = ConfidenceScorer(lambda: trainer.weights)
        await trainer.provide_feedback(sale_id, 0.6, True, attribution.matched_by)
    """

    def __init__(
        self,
        weights_store: Optional[WeightsStore] = None,
        config: Optional[TrainerConfig] = None,
        initial: Optional[ScoringWeights] = None,
        scorer_config: Optional[ScorerConfig] = None,
    ):
        self.config = config or TrainerConfig()
        self.scorer_config = scorer_config or ScorerConfig()
        self._store = weights_store
        self._weights = initial or ScoringWeights.default()
        self._samples: Deque[TrainingSample] = deque(maxlen=self.config.max_samples)
        self._since_retrain = 0
        self._total_samples = 0
        self._retraining = False
        self._last_trained_at: Optional[datetime] = None
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------------

    @property
    def weights(self) -> ScoringWeights:
        return self._weights

    @property
    def is_learning(self) -> bool:
        return self._retraining

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    @property
    def last_trained_at(self) -> Optional[datetime]:
        return self._last_trained_at

    @property
    def samples_until_retrain(self) -> int:
        by_cadence = self.config.retrain_every - self._since_retrain
        by_minimum = self.config.min_samples - len(self._samples)
        return max(0, by_cadence, by_minimum)

    @property
    def samples_since_retrain(self) -> int:
        return self._since_retrain

    async def load(self) -> ScoringWeights:
        """Resume the latest persisted snapshot; defaults when none or unreadable."""
        if self._store is None:
            return self._weights
        try:
            loaded = await self._store.load()
        except Exception as e:
            logger.warning("[TRAINER] Could not load persisted weights, using %s: %s", self._weights.version, e)
            capture_exception(e, extra={"operation": "weights_load"})
            return self._weights
        if loaded is not None:
            self._weights = loaded
            logger.info("[TRAINER] Loaded weights %s", loaded.version)
        return self._weights

    # -------------------------------------------------------------------------
    # Training inputs
    # -------------------------------------------------------------------------

    async def record_ground_truth(
        self,
        click: ClickEvent,
        sale: SaleEvent,
        time_delta_minutes: float,
        geo_score: float,
        platform: Platform,
        signals: Optional[MatchedSignals] = None,
    ) -> Optional[RetrainResult]:
        """Log a deterministic click->sale link as a full-confidence positive."""
        if signals is None:
            signals = MatchedSignals(
                ip_match=bool(click.ip_address) and click.ip_address == sale.ip_address,
                tracker_match=bool(click.tracker_id) and click.tracker_id == sale.effective_tracker_id,
                fingerprint_match=bool(click.fingerprint) and click.fingerprint == sale.effective_fingerprint,
                geo_score=geo_score,
                time_delta_minutes=time_delta_minutes,
                platform=platform,
                tier=MatchTier.store,
            )
        sample = TrainingSample(
            sale_id=sale.sale_id,
            click_id=click.click_id,
            signals=signals,
            outcome=1.0,
            source=SampleSource.ground_truth,
        )
        return await self._add_sample(sample)

    async def provide_feedback(
        self,
        sale_id: str,
        predicted_score: float,
        actual_outcome: bool,
        features: MatchedSignals,
    ) -> Optional[RetrainResult]:
        """Online gradient step from one user verdict, then queue it as a sample."""
        actual = 1.0 if actual_outcome else 0.0
        error = actual - clamp(predicted_score)

        with self._lock:
            current = self._weights
            x = self._feature_vector(features, current.lambdas)
            adjusted = {
                name: current.signals[name] + self.config.learning_rate * error * x[name] * SIGNAL_SCALE
                for name in SIGNAL_NAMES
            }
            self._weights = current.evolve(
                signals=normalize_weights(adjusted, floor=self.config.weight_floor),
                training_count=current.training_count + 1,
            )

        logger.info(
            "[TRAINER] Feedback sale=%s predicted=%.3f actual=%.0f error=%+.3f",
            sale_id, predicted_score, actual, error,
        )
        sample = TrainingSample(
            sale_id=sale_id,
            signals=features,
            outcome=actual,
            source=SampleSource.feedback,
        )
        return await self._add_sample(sample)

    async def _add_sample(self, sample: TrainingSample) -> Optional[RetrainResult]:
        with self._lock:
            self._samples.append(sample)
            self._since_retrain += 1
            self._total_samples += 1
            due = (
                self._since_retrain >= self.config.retrain_every
                and len(self._samples) >= self.config.min_samples
            )
        if due:
            return await self.retrain()
        return None

    # -------------------------------------------------------------------------
    # Retrain
    # -------------------------------------------------------------------------

    async def retrain(self) -> RetrainResult:
        """Batch retrain over stored samples. Safe to call concurrently."""
        if self._retraining:
            return RetrainResult(False, "retrain already running", self._weights.version)

        with self._lock:
            samples = list(self._samples)
        if len(samples) < self.config.min_samples:
            return RetrainResult(
                False,
                f"need {self.config.min_samples} samples, have {len(samples)}",
                self._weights.version,
                sample_count=len(samples),
            )

        self._retraining = True
        try:
            base = self._weights
            lambdas = self._update_lambdas(samples, base.lambdas)
            signals, loss = self._fit(samples, base.signals, lambdas)
            updated = base.evolve(
                version=base.next_version(),
                signals=signals,
                lambdas=lambdas,
                accuracy=max(0.0, 1.0 - loss),
                training_count=base.training_count + len(samples),
            )
            self._weights = updated
            with self._lock:
                self._since_retrain = 0
            self._last_trained_at = utcnow()

            logger.info(
                "[TRAINER] Retrained %s -> %s on %d samples (loss=%.4f)",
                base.version, updated.version, len(samples), loss,
            )
            if base.accuracy and updated.accuracy < base.accuracy:
                capture_message(
                    "Retrain lowered model accuracy",
                    level="warning",
                    extra={"from": base.version, "to": updated.version, "accuracy": updated.accuracy},
                )
            await self._persist(updated)
            return RetrainResult(
                True,
                "retrained",
                updated.version,
                sample_count=len(samples),
                loss=loss,
                accuracy=updated.accuracy,
            )
        finally:
            self._retraining = False

    async def _persist(self, weights: ScoringWeights) -> None:
        if self._store is None:
            return
        try:
            await self._store.save(weights)
        except Exception as e:
            # Live snapshot stays in memory; next retrain persists again
            logger.warning("[TRAINER] Failed to persist weights %s: %s", weights.version, e)
            capture_exception(e, extra={"operation": "weights_save", "version": weights.version})

    def _fit(
        self,
        samples: List[TrainingSample],
        start: Mapping[str, float],
        lambdas: Mapping[Platform, float],
    ) -> Tuple[Dict[str, float], float]:
        features = [(self._feature_vector(s.signals, lambdas), self._bonus(s.signals), s.outcome) for s in samples]
        weights = dict(start)
        best_weights, best_loss = dict(weights), self._loss(weights, features)
        n = len(features)

        for _ in range(self.config.retrain_iterations):
            gradient = {name: 0.0 for name in SIGNAL_NAMES}
            for x, bonus, outcome in features:
                error = self._predict(weights, x, bonus) - outcome
                for name in SIGNAL_NAMES:
                    gradient[name] += 2.0 * error * SIGNAL_SCALE * x[name]
            weights = normalize_weights(
                {name: weights[name] - self.config.learning_rate * gradient[name] / n for name in SIGNAL_NAMES},
                floor=self.config.weight_floor,
            )
            loss = self._loss(weights, features)
            if loss < best_loss:
                best_weights, best_loss = dict(weights), loss

        return best_weights, best_loss

    def _update_lambdas(
        self,
        samples: List[TrainingSample],
        current: Mapping[Platform, float],
    ) -> Dict[Platform, float]:
        by_platform: Dict[Platform, List[float]] = {}
        for sample in samples:
            if sample.outcome >= 1.0:
                by_platform.setdefault(sample.signals.platform, []).append(
                    sample.signals.time_delta_minutes / 60.0
                )

        lambdas = dict(current)
        smoothing = self.config.lambda_smoothing
        for platform, hours in by_platform.items():
            if len(hours) < self.config.min_platform_samples:
                continue
            variance = statistics.pvariance(hours)
            estimate = clamp(1.0 / (variance + 1.0), self.config.lambda_min, self.config.lambda_max)
            old = lambdas.get(platform, estimate)
            lambdas[platform] = smoothing * old + (1.0 - smoothing) * estimate
            logger.debug("[TRAINER] lambda %s: %.3f -> %.3f", platform.value, old, lambdas[platform])
        return lambdas

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _feature_vector(signals: MatchedSignals, lambdas: Mapping[Platform, float]) -> Dict[str, float]:
        decay_lambda = lambdas.get(signals.platform, lambdas.get(Platform.other, 0.3))
        return {
            "ip": float(signals.ip_match),
            "tracker": float(signals.tracker_match),
            "fingerprint": float(signals.fingerprint_match),
            "geo": signals.geo_score,
            "time": time_decay(signals.time_delta_minutes / 60.0, decay_lambda),
        }

    def _bonus(self, signals: MatchedSignals) -> float:
        if signals.signal_count >= self.scorer_config.multi_signal_min:
            return self.scorer_config.multi_signal_bonus
        return 0.0

    @staticmethod
    def _predict(weights: Mapping[str, float], x: Mapping[str, float], bonus: float) -> float:
        return clamp(SIGNAL_SCALE * sum(weights[name] * x[name] for name in SIGNAL_NAMES) + bonus)

    def _loss(self, weights: Mapping[str, float], features) -> float:
        if not features:
            return 0.0
        total = sum((self._predict(weights, x, bonus) - outcome) ** 2 for x, bonus, outcome in features)
        return total / len(features)
