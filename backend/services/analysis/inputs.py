"""Input providers that turn collaborator payloads into ``CycleInput``.

Collaborators are versioned by field presence: unknown fields are
ignored, missing optional fields take their defaults, and a row that
lacks a required field is dropped rather than failing the batch.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from config import settings
from .pipeline import CycleInput
from .records import (
    Detection,
    GeoEvent,
    GeoEventKind,
    MarketQuote,
    NewsItem,
    Severity,
    SignalKind,
    SourceType,
    coerce_utc,
    utc_now,
)

logger = logging.getLogger(__name__)


def _parse_dt(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return coerce_utc(value)
    if isinstance(value, (int, float)):
        # Epoch milliseconds from browser-side collaborators.
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    text = str(value or "").strip()
    if not text:
        return None
    try:
        return coerce_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        return None


def _rows(payload: dict[str, Any], key: str) -> Iterable[dict[str, Any]]:
    rows = payload.get(key) or []
    if not isinstance(rows, list):
        return []
    return [row for row in rows if isinstance(row, dict)]


def parse_news_item(row: dict[str, Any]) -> Optional[NewsItem]:
    source_id = str(row.get("source_id") or row.get("id") or "").strip()
    title = str(row.get("title") or "").strip()
    published_at = _parse_dt(row.get("published_at") or row.get("pub_date"))
    if not source_id or not title or published_at is None:
        return None
    try:
        tier = int(row.get("source_tier") or row.get("tier") or 4)
    except (TypeError, ValueError):
        tier = 4
    try:
        source_type = SourceType(str(row.get("source_type") or "mainstream").lower())
    except ValueError:
        source_type = SourceType.MAINSTREAM
    return NewsItem(
        source_id=source_id,
        title=title,
        published_at=published_at,
        source_tier=min(4, max(1, tier)),
        source_type=source_type,
        source_name=str(row.get("source_name") or row.get("source") or "").strip(),
        link=row.get("link") or None,
        is_alert=bool(row.get("is_alert", False)),
        category=str(row.get("category") or "general").strip().lower(),
    )


def parse_market_quote(row: dict[str, Any]) -> Optional[MarketQuote]:
    symbol = str(row.get("symbol") or "").strip()
    if not symbol:
        return None
    try:
        price = float(row.get("price") or 0.0)
        change = float(row.get("change_percent") if row.get("change_percent") is not None else row.get("change"))
    except (TypeError, ValueError):
        return None
    return MarketQuote(
        symbol=symbol,
        price=price,
        change_percent=change,
        timestamp=_parse_dt(row.get("timestamp")) or utc_now(),
        name=row.get("name") or None,
    )


def parse_geo_event(row: dict[str, Any]) -> Optional[GeoEvent]:
    try:
        kind = GeoEventKind(str(row.get("kind") or "").strip().lower())
        lat = float(row.get("lat"))
        lon = float(row.get("lon"))
    except (TypeError, ValueError):
        return None
    occurred_at = _parse_dt(row.get("occurred_at"))
    if occurred_at is None:
        return None
    code = str(row.get("country_code") or "").strip().upper() or None
    try:
        fatalities = max(0, int(row.get("fatalities") or 0))
    except (TypeError, ValueError):
        fatalities = 0
    return GeoEvent(
        kind=kind,
        lat=lat,
        lon=lon,
        occurred_at=occurred_at,
        country_code=code,
        fatalities=fatalities,
        severity=(str(row.get("severity")).lower() if row.get("severity") else None),
        event_id=row.get("event_id") or None,
    )


def parse_detection(row: dict[str, Any]) -> Optional[Detection]:
    try:
        kind = SignalKind(str(row.get("kind") or "").strip().lower())
    except ValueError:
        return None
    subject = row.get("subject")
    if not isinstance(subject, dict) or not subject:
        return None
    severity = None
    if row.get("severity"):
        try:
            severity = Severity(str(row["severity"]).lower())
        except ValueError:
            severity = None
    confidence = row.get("confidence")
    try:
        confidence = float(confidence) if confidence is not None else None
    except (TypeError, ValueError):
        confidence = None
    details = row.get("details") if isinstance(row.get("details"), dict) else {}
    return Detection(
        kind=kind,
        subject=dict(subject),
        title=str(row.get("title") or ""),
        confidence=confidence,
        severity=severity,
        details=details,
    )


def parse_cycle_input(payload: dict[str, Any]) -> CycleInput:
    def _collect(key, parser):
        parsed = [parser(row) for row in _rows(payload, key)]
        kept = [p for p in parsed if p is not None]
        if len(kept) < len(parsed):
            logger.debug("Dropped %d malformed %s rows", len(parsed) - len(kept), key)
        return tuple(kept)

    return CycleInput(
        news=_collect("news", parse_news_item),
        quotes=_collect("quotes", parse_market_quote),
        geo_events=_collect("geo_events", parse_geo_event),
        upstream=_collect("detections", parse_detection),
        collected_at=_parse_dt(payload.get("collected_at")),
    )


class FileSnapshotProvider:
    """Reads the latest collaborator snapshot from a JSON file drop."""

    def __init__(self, path: Optional[str | Path] = None) -> None:
        raw = path or settings.ANALYSIS_INPUT_SNAPSHOT_PATH
        self._path = Path(raw).expanduser() if raw else None
        self._last_mtime_ns: Optional[int] = None

    async def fetch(self) -> Optional[CycleInput]:
        if self._path is None or not self._path.exists():
            return None
        mtime_ns = self._path.stat().st_mtime_ns
        if mtime_ns == self._last_mtime_ns:
            return None
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable input snapshot %s: %s", self._path, exc)
            return None
        self._last_mtime_ns = mtime_ns
        if not isinstance(payload, dict):
            logger.warning("Input snapshot %s is not an object", self._path)
            return None
        return parse_cycle_input(payload)
