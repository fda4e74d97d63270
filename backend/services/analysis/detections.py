"""Turn stage outputs into ``Detection`` records for the signal generator.

Each builder reads one stage's typed results and emits detections whose
``subject`` carries only the defining fields (cluster id, symbol, cell
key...).  Magnitudes travel in ``details``.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Iterable, Optional, Sequence

from config import settings
from .keyword_match import matches_any, tokenize_for_match
from .records import (
    ConvergenceAlert,
    CorrelationResult,
    CorrelationStatus,
    CountryScore,
    Detection,
    DeviationLevel,
    DeviationResult,
    NewsCluster,
    ScoreLevel,
    Severity,
    SignalKind,
    SourceType,
)

logger = logging.getLogger(__name__)

PIPELINE_KEYWORDS = (
    "pipeline",
    "gas flow",
    "gas transit",
    "nord stream",
    "druzhba",
    "lng terminal",
    "oil terminal",
)
FLOW_DROP_KEYWORDS = (
    "flow drop",
    "reduced flow",
    "halt",
    "halted",
    "shut",
    "shutdown",
    "suspend",
    "suspended",
    "disruption",
    "sabotage",
    "explosion",
    "leak",
)

_TRIANGULATION_TYPES = frozenset({SourceType.WIRE, SourceType.GOV, SourceType.INTEL})


def severity_from_confidence(confidence: float) -> Severity:
    if confidence >= 0.85:
        return Severity.HIGH
    if confidence >= 0.6:
        return Severity.MEDIUM
    return Severity.LOW


def _cluster_details(cluster: NewsCluster) -> dict:
    return {
        "headline": cluster.primary_title,
        "source": cluster.primary_source,
        "link": cluster.primary_link,
        "member_count": cluster.member_count,
        "source_count": cluster.source_count,
        "velocity_per_hour": cluster.velocity_per_hour,
        "trend": cluster.trend.value,
        "source_types": sorted(t.value for t in cluster.source_types),
    }


# ---------------------------------------------------------------------------
# Clusters
# ---------------------------------------------------------------------------


def cluster_detections(
    clusters: Sequence[NewsCluster],
    *,
    velocity_threshold: Optional[float] = None,
    convergence_min_types: Optional[int] = None,
    convergence_window_minutes: Optional[int] = None,
) -> list[Detection]:
    """Velocity spikes, triangulation, source convergence and flow drops."""
    velocity_threshold = float(velocity_threshold or settings.ANALYSIS_VELOCITY_SPIKE_PER_HOUR)
    min_types = int(convergence_min_types or settings.ANALYSIS_SOURCE_CONVERGENCE_MIN_TYPES)
    window = timedelta(
        minutes=convergence_window_minutes or settings.ANALYSIS_SOURCE_CONVERGENCE_WINDOW_MINUTES
    )

    out: list[Detection] = []
    for cluster in clusters:
        subject = {"cluster_id": cluster.id}
        details = _cluster_details(cluster)

        if cluster.member_count >= 3 and cluster.velocity_per_hour >= velocity_threshold:
            confidence = min(0.85, 0.4 + cluster.velocity_per_hour / 20.0)
            out.append(
                Detection(
                    kind=SignalKind.VELOCITY_SPIKE,
                    subject=subject,
                    title="News velocity spike",
                    confidence=confidence,
                    severity=severity_from_confidence(confidence),
                    details=details,
                )
            )

        if _TRIANGULATION_TYPES <= cluster.source_types:
            out.append(
                Detection(
                    kind=SignalKind.TRIANGULATION,
                    subject=subject,
                    title="Wire, government and intel sources agree",
                    confidence=0.9,
                    severity=Severity.HIGH,
                    details=details,
                )
            )
        elif (
            len(cluster.source_types) >= min_types
            and cluster.last_updated_at - cluster.first_seen_at <= window
        ):
            confidence = min(0.95, 0.6 + len(cluster.source_types) * 0.1)
            out.append(
                Detection(
                    kind=SignalKind.SOURCE_CONVERGENCE,
                    subject=subject,
                    title="Independent source types converging",
                    confidence=confidence,
                    severity=severity_from_confidence(confidence),
                    details=details,
                )
            )

        tokens = [tokenize_for_match(t) for t in cluster.member_titles or (cluster.primary_title,)]
        if any(matches_any(t, PIPELINE_KEYWORDS) for t in tokens) and any(
            matches_any(t, FLOW_DROP_KEYWORDS) for t in tokens
        ):
            confidence = min(0.9, 0.4 + cluster.member_count / 10.0)
            out.append(
                Detection(
                    kind=SignalKind.FLOW_DROP,
                    subject=subject,
                    title="Pipeline flow drop",
                    confidence=confidence,
                    severity=severity_from_confidence(confidence),
                    details=details,
                )
            )
    return out


# ---------------------------------------------------------------------------
# Market correlation
# ---------------------------------------------------------------------------


def correlation_detections(results: Iterable[CorrelationResult]) -> list[Detection]:
    out: list[Detection] = []
    for result in results:
        details = {
            "symbol": result.symbol,
            "move_percent": result.move_percent,
            "entity_id": result.entity_id,
        }
        if result.status == CorrelationStatus.EXPLAINED:
            details.update(
                {
                    "cluster_id": result.cluster_id,
                    "headline": result.headline,
                    "matched_term": result.matched_term,
                    "match_kind": result.match_kind.value if result.match_kind else None,
                }
            )
            out.append(
                Detection(
                    kind=SignalKind.EXPLAINED_MARKET_MOVE,
                    subject={"symbol": result.symbol},
                    title=f"{result.symbol} move explained by news",
                    confidence=result.confidence,
                    severity=Severity.LOW,
                    details=details,
                )
            )
        elif result.status == CorrelationStatus.SILENT_DIVERGENCE:
            out.append(
                Detection(
                    kind=SignalKind.SILENT_DIVERGENCE,
                    subject={"symbol": result.symbol},
                    title=f"{result.symbol} moving without news",
                    confidence=result.confidence,
                    severity=Severity.MEDIUM if abs(result.move_percent) < 5 else Severity.HIGH,
                    details=details,
                )
            )
    return out


# ---------------------------------------------------------------------------
# Baselines
# ---------------------------------------------------------------------------


def deviation_detections(deviations: Iterable[DeviationResult]) -> list[Detection]:
    out: list[Detection] = []
    for deviation in deviations:
        if deviation.level not in (DeviationLevel.SPIKE, DeviationLevel.ELEVATED):
            continue
        z_score = deviation.z_score or 0.0
        out.append(
            Detection(
                kind=SignalKind.BASELINE_ANOMALY,
                subject={"metric_key": deviation.metric_key},
                title=f"{deviation.metric_key} {deviation.level.value} vs baseline",
                confidence=min(0.95, 0.5 + z_score / 10.0),
                severity=Severity.HIGH if deviation.level == DeviationLevel.SPIKE else Severity.MEDIUM,
                details={
                    "level": deviation.level.value,
                    "z_score": deviation.z_score,
                    "current": deviation.current,
                    "mean": deviation.mean,
                    "stddev": deviation.stddev,
                    "sample_count": deviation.sample_count,
                },
            )
        )
    return out


# ---------------------------------------------------------------------------
# Geography
# ---------------------------------------------------------------------------


def convergence_detections(alerts: Iterable[ConvergenceAlert]) -> list[Detection]:
    return [
        Detection(
            kind=SignalKind.GEO_CONVERGENCE,
            subject={"cell_key": alert.cell_key},
            title=f"{alert.distinct_kinds} event types converging near {alert.lat:.1f}, {alert.lon:.1f}",
            confidence=alert.score / 100.0,
            severity=alert.level,
            details={
                "kinds": [k.value for k in alert.kinds],
                "total_events": alert.total_events,
                "score": alert.score,
                "country_code": alert.country_code,
                "lat": alert.lat,
                "lon": alert.lon,
            },
        )
        for alert in alerts
    ]


# ---------------------------------------------------------------------------
# Country scores
# ---------------------------------------------------------------------------


def cii_priority(score: CountryScore) -> Severity:
    change = abs(score.change)
    if score.level == ScoreLevel.CRITICAL:
        return Severity.CRITICAL
    if score.level == ScoreLevel.HIGH or change >= 30:
        return Severity.HIGH
    if score.level == ScoreLevel.ELEVATED or change >= 15:
        return Severity.MEDIUM
    return Severity.LOW


def cii_detections(
    scores: Iterable[CountryScore],
    *,
    min_delta: Optional[int] = None,
) -> list[Detection]:
    """CII spikes for countries whose composite moved by ``min_delta`` or more."""
    threshold = int(min_delta or settings.ANALYSIS_CII_SPIKE_DELTA)
    out: list[Detection] = []
    for score in scores:
        if score.previous is None or abs(score.change) < threshold:
            continue
        direction = "up" if score.change > 0 else "down"
        out.append(
            Detection(
                kind=SignalKind.CII_SPIKE,
                subject={"country_code": score.country_code},
                title=f"{score.name} instability {direction} {abs(score.change)} points",
                confidence=min(0.95, 0.6 + abs(score.change) / 100.0),
                severity=cii_priority(score),
                details={
                    "previous": score.previous,
                    "current": score.composite,
                    "change": score.change,
                    "level": score.level.value,
                    "trend": score.trend.value,
                },
            )
        )
    return out
