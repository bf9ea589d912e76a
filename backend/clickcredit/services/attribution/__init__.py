"""
Attribution Core Package.

WHAT:
    Attributes creator revenue (sales) to the link clicks or content posts
    that caused them, learns better scoring weights from confirmed
    outcomes, and mines click history for timing/platform/geo insights.

MODULES:
    - types: Events, Attribution, MatchedSignals, ScoringWeights
    - click_cache: Hot in-process tier + shared (Redis) tier
    - scorer: Multi-signal confidence scoring
    - correlation_engine: Lookup hierarchy and attribution state machine
    - weight_trainer: Online + batch weight learning, platform decay
    - insight_learner: Segment aggregates and creator/cohort reports
    - geo_router: Geo-aware link destination routing
    - click_context: Fingerprint, device and UTM helpers
    - background: Bounded fire-and-forget task runner
    - service: Public facade and factory
"""

from .click_cache import CacheHit, CacheStats, ClickCacheConfig, TieredClickCache
from .correlation_engine import (
    CorrelationConfig,
    CorrelationEngine,
    CorrelationOutcome,
    CorrelationResult,
)
from .errors import (
    AttributionError,
    AttributionNotFoundError,
    DependencyError,
    InvalidEventError,
    InvalidTransitionError,
)
from .insight_learner import InsightLearner, LearnerConfig
from .insight_types import AggregateQuery, AggregateReport, CreatorReport
from .interfaces import EventStore, SharedCache, WeightsStore
from .scorer import ConfidenceScorer, ScorerConfig
from .service import AttributionService, ModelStatus, build_attribution_service
from .types import (
    Attribution,
    AttributionStatus,
    AudienceSlice,
    ClickEvent,
    ContentPost,
    CreatorNiche,
    MatchedSignals,
    MatchTier,
    Platform,
    SaleEvent,
    ScoringWeights,
)
from .weight_trainer import AdaptiveWeightTrainer, RetrainResult, TrainerConfig

__all__ = [
    "AdaptiveWeightTrainer",
    "AggregateQuery",
    "AggregateReport",
    "Attribution",
    "AttributionError",
    "AttributionNotFoundError",
    "AttributionService",
    "AttributionStatus",
    "AudienceSlice",
    "CacheHit",
    "CacheStats",
    "ClickCacheConfig",
    "ClickEvent",
    "ConfidenceScorer",
    "ContentPost",
    "CorrelationConfig",
    "CorrelationEngine",
    "CorrelationOutcome",
    "CorrelationResult",
    "CreatorNiche",
    "CreatorReport",
    "DependencyError",
    "EventStore",
    "InsightLearner",
    "InvalidEventError",
    "InvalidTransitionError",
    "LearnerConfig",
    "MatchedSignals",
    "MatchTier",
    "ModelStatus",
    "Platform",
    "RetrainResult",
    "SaleEvent",
    "ScorerConfig",
    "ScoringWeights",
    "SharedCache",
    "TieredClickCache",
    "TrainerConfig",
    "WeightsStore",
    "build_attribution_service",
]
