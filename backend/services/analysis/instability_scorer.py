"""Country Instability Index (CII).

Composite 0-100 score per country blending three sub-scores:

    composite = round(unrest * 0.4 + security * 0.3 + information * 0.3)

Unrest and information are damped for countries whose news volume runs
above their calibrated threshold, so heavily covered countries do not
dominate on volume alone.  A configured per-country floor is applied to
the finished score.  Trend compares against the last committed composite.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Sequence

from config import settings
from .country_catalog import CountryCatalog, CountryProfile, country_catalog
from .keyword_match import matches_any, tokenize_for_match
from .records import (
    ConvergenceAlert,
    CountryScore,
    GeoEvent,
    GeoEventKind,
    NewsCluster,
    ScoreLevel,
    Trend,
    coerce_utc,
    utc_now,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Weights
# ---------------------------------------------------------------------------

UNREST_WEIGHT = 0.4
SECURITY_WEIGHT = 0.3
INFORMATION_WEIGHT = 0.3

TREND_DELTA = 5


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class CountryInputs:
    """Raw per-country counts for one cycle."""

    protest_count: int = 0
    fatalities: int = 0
    high_severity_count: int = 0
    military_flights: int = 0
    naval_vessels: int = 0
    news_count: int = 0
    news_volume: int = 0
    velocities: list[float] = field(default_factory=list)
    any_alert: bool = False

    @property
    def avg_velocity(self) -> float:
        if not self.velocities:
            return 0.0
        return sum(self.velocities) / len(self.velocities)

    @property
    def has_data(self) -> bool:
        return bool(
            self.protest_count
            or self.military_flights
            or self.naval_vessels
            or self.news_count
            or self.any_alert
        )


@dataclass(frozen=True)
class ScorePair:
    """Last two committed composites for a country."""

    previous: Optional[int] = None
    current: Optional[int] = None


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def score_level(score: int) -> ScoreLevel:
    if score >= 81:
        return ScoreLevel.CRITICAL
    if score >= 66:
        return ScoreLevel.HIGH
    if score >= 51:
        return ScoreLevel.ELEVATED
    if score >= 31:
        return ScoreLevel.NORMAL
    return ScoreLevel.LOW


def compute_trend(current: int, previous: Optional[int]) -> Trend:
    """Rising/falling on a move of at least 5 points; stable with no prior."""
    if previous is None:
        return Trend.STABLE
    delta = current - previous
    if delta >= TREND_DELTA:
        return Trend.RISING
    if delta <= -TREND_DELTA:
        return Trend.FALLING
    return Trend.STABLE


def damping_factor(news_volume: float, threshold: float) -> float:
    if threshold <= 0 or news_volume <= threshold:
        return 1.0
    return 1.0 / (1.0 + math.log10(news_volume / threshold))


# ---------------------------------------------------------------------------
# Scorer
# ---------------------------------------------------------------------------


class InstabilityScorer:
    """Computes CII scores and owns the per-country ``ScorePair`` state.

    ``compute`` is pure with respect to scorer state; ``commit`` advances
    the pairs once the whole cycle has succeeded.
    """

    def __init__(
        self,
        catalog: Optional[CountryCatalog] = None,
        *,
        news_volume_threshold: Optional[float] = None,
        floors: Optional[Mapping[str, int]] = None,
    ) -> None:
        self._catalog = catalog or country_catalog
        self._default_threshold = float(
            news_volume_threshold or settings.ANALYSIS_NEWS_VOLUME_THRESHOLD
        )
        self._floor_overrides = dict(floors) if floors is not None else None
        self._pairs: dict[str, ScorePair] = {}
        self._restored = False

    # -- Component scorers ---------------------------------------------------

    @staticmethod
    def _unrest_raw(inputs: CountryInputs) -> float:
        return (
            min(50.0, inputs.protest_count * 8.0)
            + min(30.0, inputs.fatalities * 5.0)
            + min(20.0, inputs.high_severity_count * 10.0)
        )

    @staticmethod
    def _security_raw(inputs: CountryInputs) -> float:
        return min(50.0, inputs.military_flights * 3.0) + min(30.0, inputs.naval_vessels * 5.0)

    @staticmethod
    def _information_raw(inputs: CountryInputs) -> float:
        return (
            min(40.0, inputs.news_count * 5.0)
            + min(40.0, inputs.avg_velocity * 10.0)
            + (20.0 if inputs.any_alert else 0.0)
        )

    # -- State ---------------------------------------------------------------

    @property
    def restored(self) -> bool:
        return self._restored

    def pair(self, country_code: str) -> ScorePair:
        return self._pairs.get(country_code, ScorePair())

    def restore(self, priors: Mapping[str, tuple[Optional[int], Optional[int]]]) -> int:
        """Seed pairs from persisted scores.  Returns how many were restored."""
        restored = 0
        for code, (previous, current) in priors.items():
            if current is None:
                continue
            self._pairs[code.upper()] = ScorePair(previous=previous, current=int(current))
            restored += 1
        self._restored = restored > 0
        if restored:
            logger.info("Restored prior instability scores for %d countries", restored)
        return restored

    def commit(self, scores: Iterable[CountryScore]) -> None:
        for score in scores:
            prior = self._pairs.get(score.country_code, ScorePair())
            self._pairs[score.country_code] = ScorePair(previous=prior.current, current=score.composite)

    def export_state(self) -> dict[str, Any]:
        return {
            "pairs": [
                {"country_code": code, "previous": pair.previous, "current": pair.current}
                for code, pair in sorted(self._pairs.items())
            ]
        }

    def import_state(self, payload: dict[str, Any]) -> None:
        if not isinstance(payload, dict):
            return
        priors: dict[str, tuple[Optional[int], Optional[int]]] = {}
        for row in payload.get("pairs") or []:
            if not isinstance(row, dict):
                continue
            code = str(row.get("country_code") or "").strip().upper()
            if not code:
                continue
            previous = row.get("previous")
            current = row.get("current")
            priors[code] = (
                int(previous) if previous is not None else None,
                int(current) if current is not None else None,
            )
        self.restore(priors)

    # -- Inputs --------------------------------------------------------------

    def collect_inputs(
        self,
        clusters: Sequence[NewsCluster],
        geo_events: Sequence[GeoEvent],
        convergence_alerts: Sequence[ConvergenceAlert] = (),
        profiles: Optional[Mapping[str, CountryProfile]] = None,
    ) -> dict[str, CountryInputs]:
        profiles = profiles if profiles is not None else self._catalog.profiles()
        inputs: dict[str, CountryInputs] = defaultdict(CountryInputs)

        for event in geo_events:
            code = (event.country_code or "").strip().upper()
            if not code:
                continue
            row = inputs[code]
            kind = GeoEventKind(event.kind)
            if kind == GeoEventKind.PROTEST:
                row.protest_count += 1
                row.fatalities += max(0, int(event.fatalities or 0))
                if (event.severity or "").lower() == "high":
                    row.high_severity_count += 1
            elif kind == GeoEventKind.MILITARY_FLIGHT:
                row.military_flights += 1
            elif kind == GeoEventKind.MILITARY_VESSEL:
                row.naval_vessels += 1

        keyworded = [(code, p.keywords) for code, p in sorted(profiles.items()) if p.keywords]
        for cluster in clusters:
            tokens = tokenize_for_match(cluster.primary_title)
            for code, keywords in keyworded:
                if not matches_any(tokens, keywords):
                    continue
                row = inputs[code]
                row.news_count += 1
                row.news_volume += cluster.member_count
                row.velocities.append(cluster.velocity_per_hour)
                row.any_alert = row.any_alert or cluster.is_alert

        for alert in convergence_alerts:
            if alert.country_code:
                inputs[alert.country_code.upper()].any_alert = True

        return dict(inputs)

    # -- Scoring -------------------------------------------------------------

    def floor_for(self, code: str, profiles: Mapping[str, CountryProfile]) -> Optional[int]:
        if self._floor_overrides is not None:
            return self._floor_overrides.get(code)
        profile = profiles.get(code)
        return profile.floor if profile else None

    def score_country(
        self,
        code: str,
        inputs: CountryInputs,
        *,
        name: Optional[str] = None,
        floor: Optional[int] = None,
        threshold: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> CountryScore:
        damping = damping_factor(inputs.news_volume, threshold or self._default_threshold)
        unrest = min(100.0, self._unrest_raw(inputs) * damping)
        security = min(100.0, self._security_raw(inputs))
        information = min(100.0, self._information_raw(inputs) * damping)

        computed = _round_half_up(
            unrest * UNREST_WEIGHT + security * SECURITY_WEIGHT + information * INFORMATION_WEIGHT
        )
        composite = max(computed, floor) if floor is not None else computed
        previous = self.pair(code).current

        return CountryScore(
            country_code=code,
            name=name or code,
            unrest=round(unrest, 1),
            security=round(security, 1),
            information=round(information, 1),
            composite=composite,
            level=score_level(composite),
            trend=compute_trend(composite, previous),
            computed_at=coerce_utc(now) or utc_now(),
            computed_score=computed,
            floor=floor,
            previous=previous,
            change=composite - previous if previous is not None else 0,
            news_volume=inputs.news_volume,
            damping=round(damping, 4),
        )

    def compute(
        self,
        *,
        clusters: Sequence[NewsCluster] = (),
        geo_events: Sequence[GeoEvent] = (),
        convergence_alerts: Sequence[ConvergenceAlert] = (),
        now: Optional[datetime] = None,
    ) -> list[CountryScore]:
        """Score every monitored country plus any country with data this cycle."""
        profiles = self._catalog.profiles()
        inputs = self.collect_inputs(clusters, geo_events, convergence_alerts, profiles)
        codes = set(profiles) | {code for code, row in inputs.items() if row.has_data}

        scores: list[CountryScore] = []
        for code in codes:
            profile = profiles.get(code)
            scores.append(
                self.score_country(
                    code,
                    inputs.get(code) or CountryInputs(),
                    name=profile.name if profile else None,
                    floor=self.floor_for(code, profiles),
                    threshold=profile.news_volume_threshold if profile else None,
                    now=now,
                )
            )

        scores.sort(key=lambda s: (-s.composite, s.country_code))
        if scores:
            logger.info(
                "Instability scores computed for %d countries (max=%d)",
                len(scores),
                scores[0].composite,
            )
        return scores
