"""Geographic convergence of heterogeneous events.

Events are binned into fixed lat/lon grid cells.  A cell that holds at
least three distinct event kinds inside the trailing window raises a
``ConvergenceAlert``.

Known limitation: events either side of a cell edge are never merged, so
activity straddling a boundary is under-counted.
"""

from __future__ import annotations

import logging
import math
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

from config import settings
from .country_catalog import Region
from .records import (
    ConvergenceAlert,
    GeoCell,
    GeoEvent,
    GeoEventKind,
    RegionalConvergence,
    Severity,
    coerce_utc,
    utc_now,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_POINTS_PER_KIND = 25
_POINTS_PER_EVENT = 2
_MAX_EVENT_POINTS = 25

_KIND_LABELS = {
    GeoEventKind.PROTEST: "civil unrest",
    GeoEventKind.MILITARY_FLIGHT: "military air activity",
    GeoEventKind.MILITARY_VESSEL: "naval presence",
    GeoEventKind.EARTHQUAKE: "seismic activity",
    GeoEventKind.OUTAGE: "internet disruptions",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _grid_origin(lat: float, lon: float, resolution: float) -> tuple[float, float]:
    return (
        math.floor(lat / resolution) * resolution,
        math.floor(lon / resolution) * resolution,
    )


def grid_key(lat: float, lon: float, resolution: float = 1.0) -> str:
    """Quantize lat/lon to a grid cell key such as ``"25.0_121.0"``."""
    glat, glon = _grid_origin(lat, lon, resolution)
    return f"{glat:.1f}_{glon:.1f}"


def _grid_center(key: str, resolution: float) -> tuple[float, float]:
    parts = key.split("_")
    return float(parts[0]) + resolution / 2, float(parts[1]) + resolution / 2


def convergence_score(distinct_kinds: int, total_events: int) -> int:
    return min(
        100,
        distinct_kinds * _POINTS_PER_KIND
        + min(_MAX_EVENT_POINTS, total_events * _POINTS_PER_EVENT),
    )


def convergence_level(score: int) -> Severity:
    if score >= 80:
        return Severity.CRITICAL
    if score >= 60:
        return Severity.HIGH
    return Severity.MEDIUM


def _valid_coordinates(event: GeoEvent) -> bool:
    try:
        lat = float(event.lat)
        lon = float(event.lon)
    except (TypeError, ValueError):
        return False
    return math.isfinite(lat) and math.isfinite(lon) and -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


def _dominant_country(codes: Iterable[Optional[str]]) -> Optional[str]:
    counts = Counter(c.strip().upper() for c in codes if c and c.strip())
    if not counts:
        return None
    return min(counts.items(), key=lambda item: (-item[1], item[0]))[0]


def _window_events(
    events: Iterable[GeoEvent],
    window_start: datetime,
) -> list[GeoEvent]:
    kept: list[GeoEvent] = []
    for event in events:
        if not _valid_coordinates(event):
            logger.debug("Skipping geo event with invalid coordinates: %s", event.event_id)
            continue
        occurred = coerce_utc(event.occurred_at)
        if occurred is None or occurred < window_start:
            continue
        kept.append(event)
    return kept


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


def build_cells(
    events: Iterable[GeoEvent],
    cell_size_deg: float = 1.0,
    window_hours: float = 24,
    now: Optional[datetime] = None,
) -> list[GeoCell]:
    """Bin in-window events into grid cells."""
    window_end = coerce_utc(now) or utc_now()
    window_start = window_end - timedelta(hours=window_hours)

    kinds_by_cell: dict[str, Counter] = defaultdict(Counter)
    for event in _window_events(events, window_start):
        kinds_by_cell[grid_key(event.lat, event.lon, cell_size_deg)][GeoEventKind(event.kind)] += 1

    cells: list[GeoCell] = []
    for key in sorted(kinds_by_cell):
        glat, glon = (float(p) for p in key.split("_"))
        cells.append(
            GeoCell(
                cell_key=key,
                lat=glat,
                lon=glon,
                events_by_kind=dict(kinds_by_cell[key]),
                window_start=window_start,
                window_end=window_end,
            )
        )
    return cells


def detect_convergence(
    events: Sequence[GeoEvent],
    cell_size_deg: Optional[float] = None,
    window_hours: Optional[float] = None,
    now: Optional[datetime] = None,
    *,
    min_kinds: Optional[int] = None,
) -> list[ConvergenceAlert]:
    """Flag grid cells where enough distinct event kinds co-occur.

    Args:
        events: Geo events for this cycle.
        cell_size_deg: Grid resolution in degrees (default 1).
        window_hours: Trailing window ending at ``now`` (default 24).
        now: Window anchor; current UTC time when omitted.
        min_kinds: Distinct kinds needed for an alert (default 3).

    Returns:
        Alerts sorted by score descending, then cell key.
    """
    cell_size = float(cell_size_deg or settings.ANALYSIS_GRID_CELL_DEGREES)
    hours = float(window_hours or settings.ANALYSIS_CONVERGENCE_WINDOW_HOURS)
    required = int(min_kinds or settings.ANALYSIS_CONVERGENCE_MIN_KINDS)
    window_end = coerce_utc(now) or utc_now()

    in_window = _window_events(events, window_end - timedelta(hours=hours))
    countries_by_cell: dict[str, list[Optional[str]]] = defaultdict(list)
    for event in in_window:
        countries_by_cell[grid_key(event.lat, event.lon, cell_size)].append(event.country_code)

    alerts: list[ConvergenceAlert] = []
    for cell in build_cells(in_window, cell_size, hours, window_end):
        if cell.distinct_kinds < required:
            continue
        score = convergence_score(cell.distinct_kinds, cell.total_events)
        center_lat, center_lon = _grid_center(cell.cell_key, cell_size)
        alerts.append(
            ConvergenceAlert(
                cell_key=cell.cell_key,
                lat=center_lat,
                lon=center_lon,
                kinds=tuple(sorted(cell.events_by_kind, key=lambda k: k.value)),
                distinct_kinds=cell.distinct_kinds,
                total_events=cell.total_events,
                score=score,
                level=convergence_level(score),
                window_start=cell.window_start,
                window_end=cell.window_end,
                country_code=_dominant_country(countries_by_cell[cell.cell_key]),
            )
        )

    alerts.sort(key=lambda a: (-a.score, a.cell_key))
    if alerts:
        logger.info(
            "Convergence grid found %d cells (top score=%d)",
            len(alerts),
            alerts[0].score,
        )
    return alerts


def detect_regional_convergence(
    events: Sequence[GeoEvent],
    regions: Sequence[Region],
    window_hours: Optional[float] = None,
    now: Optional[datetime] = None,
) -> list[RegionalConvergence]:
    """Summarize regions where two or more countries show two or more kinds."""
    hours = float(window_hours or settings.ANALYSIS_CONVERGENCE_WINDOW_HOURS)
    window_end = coerce_utc(now) or utc_now()
    in_window = _window_events(events, window_end - timedelta(hours=hours))

    out: list[RegionalConvergence] = []
    for region in regions:
        members = [
            e for e in in_window
            if e.country_code and e.country_code.strip().upper() in region.countries
        ]
        countries = sorted({e.country_code.strip().upper() for e in members})
        kinds = sorted({GeoEventKind(e.kind) for e in members}, key=lambda k: k.value)
        if len(countries) < 2 or len(kinds) < 2:
            continue
        labels = ", ".join(_KIND_LABELS[k] for k in kinds)
        out.append(
            RegionalConvergence(
                region_id=region.id,
                name=region.name,
                countries=tuple(countries),
                kinds=tuple(kinds),
                total_events=len(members),
                description=f"{region.name}: {labels} detected across {', '.join(countries)}",
            )
        )

    out.sort(key=lambda r: (-len(r.kinds), -r.total_events, r.region_id))
    return out
