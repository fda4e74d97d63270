"""Typed records exchanged between analysis stages.

Inputs (``NewsItem``, ``MarketQuote``, ``GeoEvent``) are immutable and
discarded after a cycle.  Everything else is derived per cycle except
``Baseline`` and the per-country score pair, which outlive a cycle.
All timestamps are timezone-aware UTC.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def coerce_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class SourceType(str, Enum):
    WIRE = "wire"
    GOV = "gov"
    INTEL = "intel"
    MAINSTREAM = "mainstream"
    MARKET = "market"
    TECH = "tech"


class GeoEventKind(str, Enum):
    PROTEST = "protest"
    MILITARY_FLIGHT = "military_flight"
    MILITARY_VESSEL = "military_vessel"
    EARTHQUAKE = "earthquake"
    OUTAGE = "outage"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
}


class Trend(str, Enum):
    RISING = "rising"
    STABLE = "stable"
    FALLING = "falling"


class DeviationLevel(str, Enum):
    SPIKE = "spike"
    ELEVATED = "elevated"
    NORMAL = "normal"
    QUIET = "quiet"
    INSUFFICIENT_DATA = "insufficient_data"


class ScoreLevel(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    ELEVATED = "elevated"
    NORMAL = "normal"
    LOW = "low"


class CorrelationStatus(str, Enum):
    EXPLAINED = "explained"
    SILENT_DIVERGENCE = "silent_divergence"
    BELOW_THRESHOLD = "below_threshold"


class MatchKind(str, Enum):
    ALIAS = "alias"
    KEYWORD = "keyword"
    RELATED = "related"


class SignalKind(str, Enum):
    PREDICTION_LEADS_NEWS = "prediction_leads_news"
    SILENT_DIVERGENCE = "silent_divergence"
    EXPLAINED_MARKET_MOVE = "explained_market_move"
    FLOW_PRICE_DIVERGENCE = "flow_price_divergence"
    VELOCITY_SPIKE = "velocity_spike"
    SOURCE_CONVERGENCE = "source_convergence"
    TRIANGULATION = "triangulation"
    FLOW_DROP = "flow_drop"
    BASELINE_ANOMALY = "baseline_anomaly"
    GEO_CONVERGENCE = "geo_convergence"
    CII_SPIKE = "cii_spike"
    MILITARY_SURGE = "military_surge"


# ---------------------------------------------------------------------------
# Per-cycle inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NewsItem:
    """A single headline.  ``source_id`` is the collaborator-assigned item id."""

    source_id: str
    title: str
    published_at: datetime
    source_tier: int = 4  # 1 = most authoritative
    source_type: SourceType = SourceType.MAINSTREAM
    source_name: str = ""
    link: Optional[str] = None
    is_alert: bool = False
    category: str = "general"

    @property
    def item_id(self) -> str:
        return self.source_id

    @property
    def publisher(self) -> str:
        return self.source_name or self.source_id


@dataclass(frozen=True)
class MarketQuote:
    symbol: str
    price: float
    change_percent: float
    timestamp: datetime
    name: Optional[str] = None


@dataclass(frozen=True)
class GeoEvent:
    kind: GeoEventKind
    lat: float
    lon: float
    occurred_at: datetime
    country_code: Optional[str] = None
    fatalities: int = 0
    severity: Optional[str] = None  # "low" | "medium" | "high"
    event_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Derived results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NewsCluster:
    id: str
    member_ids: frozenset[str]
    primary_item_id: str
    tokens: frozenset[str]
    first_seen_at: datetime
    last_updated_at: datetime
    velocity_per_hour: float
    trend: Trend
    primary_title: str
    primary_source: str
    primary_link: Optional[str]
    member_titles: tuple[str, ...]
    source_types: frozenset[SourceType]
    source_count: int  # distinct publishers
    is_alert: bool = False

    @property
    def member_count(self) -> int:
        return len(self.member_ids)


@dataclass(frozen=True)
class CorrelationResult:
    symbol: str
    move_percent: float
    status: CorrelationStatus
    confidence: float = 0.0
    entity_id: Optional[str] = None
    cluster_id: Optional[str] = None
    headline: Optional[str] = None
    matched_term: Optional[str] = None
    match_kind: Optional[MatchKind] = None


@dataclass(frozen=True)
class RollingStats:
    mean: float = 0.0
    stddev: float = 0.0
    sample_count: int = 0


@dataclass(frozen=True)
class Observation:
    observed_at: datetime
    value: float


@dataclass(frozen=True)
class Baseline:
    metric_key: str
    window_short: RollingStats = field(default_factory=RollingStats)
    window_long: RollingStats = field(default_factory=RollingStats)
    observations: tuple[Observation, ...] = ()
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class DeviationResult:
    metric_key: str
    current: float
    level: DeviationLevel
    z_score: Optional[float]  # None when the baseline is too short
    mean: float = 0.0
    stddev: float = 0.0
    sample_count: int = 0

    @property
    def insufficient(self) -> bool:
        return self.level == DeviationLevel.INSUFFICIENT_DATA


@dataclass(frozen=True)
class GeoCell:
    cell_key: str
    lat: float  # south-west corner
    lon: float
    events_by_kind: dict[GeoEventKind, int]
    window_start: datetime
    window_end: datetime

    @property
    def distinct_kinds(self) -> int:
        return len(self.events_by_kind)

    @property
    def total_events(self) -> int:
        return sum(self.events_by_kind.values())


@dataclass(frozen=True)
class ConvergenceAlert:
    cell_key: str
    lat: float  # cell centre
    lon: float
    kinds: tuple[GeoEventKind, ...]
    distinct_kinds: int
    total_events: int
    score: int
    level: Severity
    window_start: datetime
    window_end: datetime
    country_code: Optional[str] = None


@dataclass(frozen=True)
class RegionalConvergence:
    region_id: str
    name: str
    countries: tuple[str, ...]
    kinds: tuple[GeoEventKind, ...]
    total_events: int
    description: str = ""


@dataclass(frozen=True)
class CountryScore:
    country_code: str
    name: str
    unrest: float
    security: float
    information: float
    composite: int
    level: ScoreLevel
    trend: Trend
    computed_at: datetime
    computed_score: int = 0
    floor: Optional[int] = None
    previous: Optional[int] = None
    change: int = 0
    news_volume: int = 0
    damping: float = 1.0


@dataclass(frozen=True)
class Detection:
    """A pre-signal finding.  ``subject`` holds the defining fields only."""

    kind: SignalKind
    subject: dict[str, Any]
    title: str = ""
    confidence: Optional[float] = None
    severity: Optional[Severity] = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Signal:
    id: str
    kind: SignalKind
    subject_key: str
    confidence: float
    severity: Severity
    first_fired_at: datetime
    title: str = ""
    details: dict[str, Any] = field(default_factory=dict)
