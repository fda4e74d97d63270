"""Signal generation with per-kind time-windowed deduplication.

Every detection is reduced to a ``(kind, subject_key)`` pair.  The subject
key is built only from the kind's defining fields, so a repeat of the same
situation with a different magnitude collapses onto the same entry.  A pair
that fired within its kind's TTL is suppressed.

Generation is two-phase: ``plan`` decides what would fire without recording
anything (it only drops entries that have already expired), and ``commit``
records the fired entries.  A cycle abandoned between the two records no
new entries.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Optional

from config import settings
from .detections import severity_from_confidence
from .records import Detection, Signal, SignalKind, coerce_utc, utc_now

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Per-kind tables
# ---------------------------------------------------------------------------

SUBJECT_FIELDS: dict[SignalKind, tuple[str, ...]] = {
    SignalKind.PREDICTION_LEADS_NEWS: ("market_id",),
    SignalKind.SILENT_DIVERGENCE: ("symbol",),
    SignalKind.EXPLAINED_MARKET_MOVE: ("symbol",),
    SignalKind.FLOW_PRICE_DIVERGENCE: ("symbol",),
    SignalKind.VELOCITY_SPIKE: ("cluster_id",),
    SignalKind.SOURCE_CONVERGENCE: ("cluster_id",),
    SignalKind.TRIANGULATION: ("cluster_id",),
    SignalKind.FLOW_DROP: ("cluster_id",),
    SignalKind.BASELINE_ANOMALY: ("metric_key",),
    SignalKind.GEO_CONVERGENCE: ("cell_key",),
    SignalKind.CII_SPIKE: ("country_code",),
    SignalKind.MILITARY_SURGE: ("theater",),
}

DEFAULT_CONFIDENCE: dict[SignalKind, float] = {
    SignalKind.PREDICTION_LEADS_NEWS: 0.7,
    SignalKind.SILENT_DIVERGENCE: 0.6,
    SignalKind.EXPLAINED_MARKET_MOVE: 0.7,
    SignalKind.FLOW_PRICE_DIVERGENCE: 0.6,
    SignalKind.VELOCITY_SPIKE: 0.6,
    SignalKind.SOURCE_CONVERGENCE: 0.7,
    SignalKind.TRIANGULATION: 0.9,
    SignalKind.FLOW_DROP: 0.6,
    SignalKind.BASELINE_ANOMALY: 0.6,
    SignalKind.GEO_CONVERGENCE: 0.75,
    SignalKind.CII_SPIKE: 0.7,
    SignalKind.MILITARY_SURGE: 0.75,
}

_MARKET_KINDS = frozenset(
    {
        SignalKind.SILENT_DIVERGENCE,
        SignalKind.FLOW_PRICE_DIVERGENCE,
        SignalKind.EXPLAINED_MARKET_MOVE,
    }
)


def default_ttls() -> dict[SignalKind, timedelta]:
    market = timedelta(minutes=settings.ANALYSIS_TTL_MARKET_MINUTES)
    prediction = timedelta(minutes=settings.ANALYSIS_TTL_PREDICTION_MINUTES)
    default = timedelta(minutes=settings.ANALYSIS_TTL_DEFAULT_MINUTES)
    ttls: dict[SignalKind, timedelta] = {}
    for kind in SignalKind:
        if kind in _MARKET_KINDS:
            ttls[kind] = market
        elif kind == SignalKind.PREDICTION_LEADS_NEWS:
            ttls[kind] = prediction
        else:
            ttls[kind] = default
    return ttls


def subject_key(detection: Detection) -> str:
    """Deterministic identity of a detection, excluding magnitudes."""
    fields = SUBJECT_FIELDS[detection.kind]
    parts = [str(detection.subject.get(name, "") or "").strip().lower() for name in fields]
    if not any(parts):
        # No defining field: fall back to every subject field, sorted.
        parts = [
            f"{k}={str(v).strip().lower()}" for k, v in sorted(detection.subject.items())
        ]
        logger.debug("Detection %s lacks defining fields %s", detection.kind.value, fields)
    return ":".join(parts)


def _signal_id(kind: SignalKind, key: str, fired_at: datetime) -> str:
    packed = "|".join([kind.value, key, fired_at.isoformat()])
    return "sig_" + hashlib.sha256(packed.encode("utf-8")).hexdigest()[:20]


def _clamp_confidence(value: Optional[float], kind: SignalKind) -> float:
    if value is None:
        return DEFAULT_CONFIDENCE[kind]
    return round(max(0.0, min(1.0, float(value))), 3)


def sort_signals(signals: Iterable[Signal]) -> list[Signal]:
    return sorted(
        signals,
        key=lambda s: (
            -s.severity.rank,
            -s.confidence,
            -s.first_fired_at.timestamp(),
            s.kind.value,
            s.subject_key,
        ),
    )


# ---------------------------------------------------------------------------
# Dedup table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DedupEntry:
    kind: SignalKind
    subject_key: str
    expires_at: datetime

    @property
    def key(self) -> tuple[SignalKind, str]:
        return (self.kind, self.subject_key)


class DedupTable:
    """In-memory ``(kind, subject_key) -> expires_at`` map, swept on lookup."""

    def __init__(self) -> None:
        self._entries: dict[tuple[SignalKind, str], DedupEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def is_active(self, kind: SignalKind, key: str, now: datetime) -> bool:
        entry = self._entries.get((kind, key))
        if entry is None:
            return False
        if entry.expires_at <= now:
            del self._entries[entry.key]
            return False
        return True

    def insert(self, entry: DedupEntry) -> None:
        self._entries[entry.key] = entry

    def sweep(self, now: datetime) -> int:
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def export_state(self) -> list[dict[str, Any]]:
        return [
            {"kind": e.kind.value, "subject_key": e.subject_key, "expires_at": e.expires_at.isoformat()}
            for e in sorted(self._entries.values(), key=lambda e: (e.kind.value, e.subject_key))
        ]

    def import_state(self, rows: Iterable[dict[str, Any]]) -> None:
        for row in rows or []:
            try:
                kind = SignalKind(str(row.get("kind")))
                expires_at = coerce_utc(datetime.fromisoformat(str(row.get("expires_at"))))
            except (TypeError, ValueError):
                continue
            self.insert(DedupEntry(kind=kind, subject_key=str(row.get("subject_key") or ""), expires_at=expires_at))


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


@dataclass
class SignalBatch:
    """Result of ``plan``: the signals to emit and the entries to record."""

    signals: list[Signal] = field(default_factory=list)
    entries: list[DedupEntry] = field(default_factory=list)
    suppressed: int = 0
    gated: int = 0
    planned_at: Optional[datetime] = None


class SignalGenerator:
    """Merges detections into deduplicated, ordered signals.

    ``cii_spike`` detections are withheld during the learning window that
    follows process start, unless prior scores were restored from storage.
    """

    def __init__(
        self,
        *,
        ttls: Optional[Mapping[SignalKind, timedelta]] = None,
        learning_minutes: Optional[float] = None,
        started_at: Optional[datetime] = None,
        dedup: Optional[DedupTable] = None,
    ) -> None:
        self._ttls = default_ttls()
        if ttls:
            self._ttls.update(ttls)
        minutes = settings.ANALYSIS_LEARNING_MINUTES if learning_minutes is None else learning_minutes
        self._learning = timedelta(minutes=float(minutes))
        self._started_at = coerce_utc(started_at) or utc_now()
        self._learning_bypassed = False
        self._dedup = dedup if dedup is not None else DedupTable()

    @property
    def dedup(self) -> DedupTable:
        return self._dedup

    def ttl_for(self, kind: SignalKind) -> timedelta:
        return self._ttls[kind]

    def bypass_learning(self) -> None:
        self._learning_bypassed = True

    def in_learning_mode(self, now: Optional[datetime] = None) -> bool:
        if self._learning_bypassed:
            return False
        now = coerce_utc(now) or utc_now()
        return now - self._started_at < self._learning

    def learning_status(self, now: Optional[datetime] = None) -> dict[str, Any]:
        now = coerce_utc(now) or utc_now()
        elapsed = now - self._started_at
        remaining = max(timedelta(0), self._learning - elapsed)
        progress = 100.0 if self._learning.total_seconds() <= 0 else min(
            100.0, elapsed.total_seconds() / self._learning.total_seconds() * 100.0
        )
        active = self.in_learning_mode(now)
        return {
            "active": active,
            "remaining_seconds": int(remaining.total_seconds()) if active else 0,
            "progress_percent": round(progress if active else 100.0, 1),
        }

    def plan(self, detections: Iterable[Detection], now: Optional[datetime] = None) -> SignalBatch:
        now = coerce_utc(now) or utc_now()
        batch = SignalBatch(planned_at=now)
        learning = self.in_learning_mode(now)

        keyed = [(d, subject_key(d)) for d in detections]
        # Within a batch the highest-confidence detection per pair wins.
        keyed.sort(
            key=lambda pair: (
                pair[0].kind.value,
                pair[1],
                -_clamp_confidence(pair[0].confidence, pair[0].kind),
                pair[0].title,
            )
        )

        seen: set[tuple[SignalKind, str]] = set()
        for detection, key in keyed:
            kind = detection.kind
            if learning and kind == SignalKind.CII_SPIKE:
                batch.gated += 1
                continue
            if (kind, key) in seen or self._dedup.is_active(kind, key, now):
                batch.suppressed += 1
                logger.debug("Suppressed %s signal for %s", kind.value, key)
                continue
            seen.add((kind, key))

            confidence = _clamp_confidence(detection.confidence, kind)
            batch.signals.append(
                Signal(
                    id=_signal_id(kind, key, now),
                    kind=kind,
                    subject_key=key,
                    confidence=confidence,
                    severity=detection.severity or severity_from_confidence(confidence),
                    first_fired_at=now,
                    title=detection.title,
                    details=dict(detection.details),
                )
            )
            batch.entries.append(
                DedupEntry(kind=kind, subject_key=key, expires_at=now + self._ttls[kind])
            )

        batch.signals = sort_signals(batch.signals)
        return batch

    def commit(self, batch: SignalBatch) -> None:
        for entry in batch.entries:
            self._dedup.insert(entry)
        logger.info(
            "Signal generator emitted %d signals (%d suppressed, %d gated by learning mode)",
            len(batch.signals),
            batch.suppressed,
            batch.gated,
        )

    def generate(self, detections: Iterable[Detection], now: Optional[datetime] = None) -> list[Signal]:
        batch = self.plan(detections, now)
        self.commit(batch)
        return batch.signals

    def export_state(self) -> dict[str, Any]:
        return {"dedup": self._dedup.export_state()}

    def import_state(self, payload: dict[str, Any]) -> None:
        if not isinstance(payload, dict):
            return
        self._dedup.import_state(payload.get("dedup") or [])

