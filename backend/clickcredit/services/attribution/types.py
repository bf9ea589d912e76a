"""
Attribution Domain Types.

WHAT:
    Immutable event records (clicks, sales, content posts), the mutable
    Attribution record, the structured matched-signal audit record and the
    versioned ScoringWeights snapshot.

WHY:
    Every component in the attribution core speaks these types. Events are
    frozen dataclasses because they never change after ingestion; weights are
    frozen so the trainer can publish a new snapshot atomically while scorers
    keep reading the old one.

REFERENCES:
    - clickcredit/services/attribution/scorer.py (consumes weights)
    - clickcredit/services/attribution/correlation_engine.py (creates Attribution)
    - clickcredit/models.py (ORM rows these map onto)
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional


# =============================================================================
# ENUMS
# =============================================================================

class Platform(str, enum.Enum):
    twitter = "TWITTER"
    youtube = "YOUTUBE"
    instagram = "INSTAGRAM"
    tiktok = "TIKTOK"
    twitch = "TWITCH"
    newsletter = "NEWSLETTER"
    discord = "DISCORD"
    other = "OTHER"

    @classmethod
    def parse(cls, value: Any) -> "Platform":
        """Lenient lookup by value or name; unknown platforms map to OTHER."""
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.other
        text = str(value).strip()
        for member in cls:
            if text.upper() == member.value or text.lower() == member.name:
                return member
        return cls.other


class CreatorNiche(str, enum.Enum):
    travel = "TRAVEL"
    gaming = "GAMING"
    tech = "TECH"
    beauty = "BEAUTY"
    fitness = "FITNESS"
    food = "FOOD"
    finance = "FINANCE"
    education = "EDUCATION"
    lifestyle = "LIFESTYLE"
    other = "OTHER"


class AttributionStatus(str, enum.Enum):
    pending = "PENDING"
    matched = "MATCHED"
    uncertain = "UNCERTAIN"
    confirmed = "CONFIRMED"
    rejected = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self in (AttributionStatus.confirmed, AttributionStatus.rejected)


class MatchTier(str, enum.Enum):
    """Where the winning candidate came from."""
    hot = "hot"
    shared = "shared"
    store = "store"
    content = "content"
    manual = "manual"


# =============================================================================
# HELPERS
# =============================================================================

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC so comparisons never mix naive/aware."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value)))


def new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# EVENTS
# =============================================================================

@dataclass(frozen=True)
class ClickEvent:
    """
    One visitor click on a creator's trackable link.

    WHAT: Identity, matching signals, context and timestamp of a click
    WHY: Candidate evidence for every later sale of the same creator
    """

    click_id: str
    link_id: str
    user_id: str
    clicked_at: datetime
    platform: Platform = Platform.other

    # Matching signals
    ip_address: Optional[str] = None
    tracker_id: Optional[str] = None
    fingerprint: Optional[str] = None

    # Context
    referrer: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    device_type: Optional[str] = None

    # Creator context used by the insight learner
    niche: Optional[CreatorNiche] = None
    creator_country: Optional[str] = None
    content_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the shared cache tier."""
        return {
            "click_id": self.click_id,
            "link_id": self.link_id,
            "user_id": self.user_id,
            "clicked_at": self.clicked_at.isoformat(),
            "platform": self.platform.value,
            "ip_address": self.ip_address,
            "tracker_id": self.tracker_id,
            "fingerprint": self.fingerprint,
            "referrer": self.referrer,
            "utm_source": self.utm_source,
            "utm_medium": self.utm_medium,
            "utm_campaign": self.utm_campaign,
            "country": self.country,
            "region": self.region,
            "city": self.city,
            "device_type": self.device_type,
            "niche": self.niche.value if self.niche else None,
            "creator_country": self.creator_country,
            "content_type": self.content_type,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ClickEvent":
        niche = data.get("niche")
        return cls(
            click_id=data["click_id"],
            link_id=data["link_id"],
            user_id=data["user_id"],
            clicked_at=parse_datetime(data["clicked_at"]),
            platform=Platform.parse(data.get("platform")),
            ip_address=data.get("ip_address"),
            tracker_id=data.get("tracker_id"),
            fingerprint=data.get("fingerprint"),
            referrer=data.get("referrer"),
            utm_source=data.get("utm_source"),
            utm_medium=data.get("utm_medium"),
            utm_campaign=data.get("utm_campaign"),
            country=data.get("country"),
            region=data.get("region"),
            city=data.get("city"),
            device_type=data.get("device_type"),
            niche=CreatorNiche(niche) if niche else None,
            creator_country=data.get("creator_country"),
            content_type=data.get("content_type"),
        )


TRACKER_METADATA_KEYS = ("tracker_id", "rckr_id", "trackerId")
FINGERPRINT_METADATA_KEYS = ("fingerprint", "fp")


@dataclass(frozen=True)
class SaleEvent:
    """A settled payment for one of the creator's products."""

    sale_id: str
    user_id: str
    amount: int
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
    metadata: Mapping[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def effective_tracker_id(self) -> Optional[str]:
        """Explicit tracker, else one passed through checkout metadata."""
        if self.tracker_id:
            return self.tracker_id
        for key in TRACKER_METADATA_KEYS:
            value = self.metadata.get(key)
            if value:
                return str(value)
        return None

    @property
    def effective_fingerprint(self) -> Optional[str]:
        if self.fingerprint:
            return self.fingerprint
        for key in FINGERPRINT_METADATA_KEYS:
            value = self.metadata.get(key)
            if value:
                return str(value)
        return None


@dataclass(frozen=True)
class AudienceSlice:
    """Share of a post's audience located in one place."""

    country: str
    city: Optional[str] = None
    percentage: float = 0.0


@dataclass(frozen=True)
class ContentPost:
    """A creator's social post, used for probabilistic fallback matching."""

    post_id: str
    user_id: str
    platform: Platform
    posted_at: datetime
    content_type: Optional[str] = None
    audience: tuple = ()


# =============================================================================
# SCORING AUDIT + ATTRIBUTION
# =============================================================================

@dataclass(frozen=True)
class MatchedSignals:
    """
    Structured audit of which signals fired for one scored candidate.

    WHAT: Named booleans/floats instead of an open metadata map
    WHY: Stored on the Attribution and replayed as training features
    """

    ip_match: bool = False
    tracker_match: bool = False
    fingerprint_match: bool = False
    geo_score: float = 0.0
    time_decay: float = 0.0
    time_delta_minutes: float = 0.0
    multi_signal_bonus: float = 0.0
    platform: Platform = Platform.other
    tier: MatchTier = MatchTier.store
    probabilistic: bool = False

    @property
    def geo_match(self) -> bool:
        return self.geo_score > 0.0

    @property
    def signal_count(self) -> int:
        return sum((self.ip_match, self.tracker_match, self.fingerprint_match, self.geo_match))

    def fired(self) -> List[str]:
        names = []
        if self.ip_match:
            names.append("ip")
        if self.tracker_match:
            names.append("tracker")
        if self.fingerprint_match:
            names.append("fingerprint")
        if self.geo_match:
            names.append("geo")
        if self.time_decay > 0:
            names.append("time")
        return names

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip_match": self.ip_match,
            "tracker_match": self.tracker_match,
            "fingerprint_match": self.fingerprint_match,
            "geo_score": self.geo_score,
            "time_decay": self.time_decay,
            "time_delta_minutes": self.time_delta_minutes,
            "multi_signal_bonus": self.multi_signal_bonus,
            "platform": self.platform.value,
            "tier": self.tier.value,
            "probabilistic": self.probabilistic,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MatchedSignals":
        return cls(
            ip_match=bool(data.get("ip_match")),
            tracker_match=bool(data.get("tracker_match")),
            fingerprint_match=bool(data.get("fingerprint_match")),
            geo_score=float(data.get("geo_score") or 0.0),
            time_decay=float(data.get("time_decay") or 0.0),
            time_delta_minutes=float(data.get("time_delta_minutes") or 0.0),
            multi_signal_bonus=float(data.get("multi_signal_bonus") or 0.0),
            platform=Platform.parse(data.get("platform")),
            tier=MatchTier(data.get("tier") or MatchTier.store.value),
            probabilistic=bool(data.get("probabilistic")),
        )


@dataclass
class AttributionNote:
    text: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Attribution:
    """
    Link between one sale and at most one click (or a content post).

    Mutated only by feedback (status) and manual override (revenue share,
    reassignment, notes).
    """

    attribution_id: str
    sale_id: str
    user_id: str
    confidence: float
    status: AttributionStatus
    matched_by: MatchedSignals
    click_id: Optional[str] = None
    link_id: Optional[str] = None
    post_id: Optional[str] = None
    time_delta_minutes: float = 0.0
    revenue_share: float = 1.0
    notes: List[AttributionNote] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def add_note(self, text: str) -> None:
        self.notes.append(AttributionNote(text=text))
        self.updated_at = utcnow()


# =============================================================================
# SCORING WEIGHTS
# =============================================================================

SIGNAL_NAMES = ("time", "geo", "tracker", "fingerprint", "ip")

# Un-normalized baselines; the scorer multiplies normalized weights back by
# their sum so a default snapshot reproduces these contributions exactly.
BASELINE_SIGNAL_WEIGHTS: Dict[str, float] = {
    "time": 0.10,
    "geo": 0.15,
    "tracker": 0.35,
    "fingerprint": 0.25,
    "ip": 0.50,
}
SIGNAL_SCALE = sum(BASELINE_SIGNAL_WEIGHTS.values())

DEFAULT_PLATFORM_LAMBDAS: Dict[Platform, float] = {
    Platform.twitter: 0.5,
    Platform.youtube: 0.1,
    Platform.instagram: 0.3,
    Platform.tiktok: 0.4,
    Platform.twitch: 2.0,
    Platform.newsletter: 0.2,
    Platform.discord: 0.6,
    Platform.other: 0.3,
}


def normalize_weights(weights: Mapping[str, float], floor: float = 0.0) -> Dict[str, float]:
    """Clamp each weight to `floor` and rescale so the five sum to 1.0."""
    clamped = {name: max(floor, float(weights.get(name, 0.0))) for name in SIGNAL_NAMES}
    total = sum(clamped.values())
    if total <= 0:
        return {name: 1.0 / len(SIGNAL_NAMES) for name in SIGNAL_NAMES}
    return {name: value / total for name, value in clamped.items()}


@dataclass(frozen=True)
class ScoringWeights:
    """
    Immutable, versioned snapshot of the learned scoring model.

    WHAT: Five normalized signal weights plus per-platform decay constants
    WHY: Published atomically by the trainer; readers never see a half update
    """

    version: str
    signals: Mapping[str, float]
    lambdas: Mapping[Platform, float]
    accuracy: float = 0.0
    training_count: int = 0
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        object.__setattr__(self, "signals", MappingProxyType(normalize_weights(self.signals)))
        object.__setattr__(self, "lambdas", MappingProxyType(dict(self.lambdas)))

    @classmethod
    def default(cls) -> "ScoringWeights":
        return cls(
            version="v1.0.0",
            signals=normalize_weights(BASELINE_SIGNAL_WEIGHTS),
            lambdas=DEFAULT_PLATFORM_LAMBDAS,
        )

    def weight(self, name: str) -> float:
        return self.signals[name]

    def lambda_for(self, platform: Platform) -> float:
        return self.lambdas.get(platform, DEFAULT_PLATFORM_LAMBDAS[Platform.other])

    def evolve(self, **changes: Any) -> "ScoringWeights":
        changes.setdefault("updated_at", utcnow())
        return replace(self, **changes)

    def next_version(self) -> str:
        """Patch bump: v1.0.7 -> v1.0.8."""
        head, _, patch = self.version.rpartition(".")
        try:
            return f"{head}.{int(patch) + 1}"
        except ValueError:
            return f"{self.version}.1"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "signals": dict(self.signals),
            "lambdas": {platform.value: value for platform, value in self.lambdas.items()},
            "accuracy": self.accuracy,
            "training_count": self.training_count,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ScoringWeights":
        lambdas = dict(DEFAULT_PLATFORM_LAMBDAS)
        for key, value in (data.get("lambdas") or {}).items():
            lambdas[Platform.parse(key)] = float(value)
        return cls(
            version=data.get("version") or "v1.0.0",
            signals=data.get("signals") or BASELINE_SIGNAL_WEIGHTS,
            lambdas=lambdas,
            accuracy=float(data.get("accuracy") or 0.0),
            training_count=int(data.get("training_count") or 0),
            updated_at=parse_datetime(data.get("updated_at")) or utcnow(),
        )
