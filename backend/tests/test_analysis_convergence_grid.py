import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.analysis.convergence_grid import (
    build_cells,
    convergence_level,
    convergence_score,
    detect_convergence,
    detect_regional_convergence,
    grid_key,
)
from services.analysis.country_catalog import Region
from services.analysis.records import GeoEvent, GeoEventKind, Severity

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _event(kind: GeoEventKind, lat: float, lon: float, hours_ago: float = 1.0, country: str = "TW") -> GeoEvent:
    return GeoEvent(
        kind=kind,
        lat=lat,
        lon=lon,
        occurred_at=NOW - timedelta(hours=hours_ago),
        country_code=country,
    )


def _taiwan_strait():
    return [
        _event(GeoEventKind.MILITARY_FLIGHT, 25.1, 121.2),
        _event(GeoEventKind.MILITARY_FLIGHT, 25.4, 121.5),
        _event(GeoEventKind.MILITARY_FLIGHT, 25.8, 121.9),
        _event(GeoEventKind.MILITARY_VESSEL, 25.2, 121.1),
        _event(GeoEventKind.MILITARY_VESSEL, 25.6, 121.7),
        _event(GeoEventKind.PROTEST, 25.03, 121.56),
    ]


def test_grid_key_floors_coordinates():
    assert grid_key(25.3, 121.7) == "25.0_121.0"
    assert grid_key(-0.5, -0.5) == "-1.0_-1.0"
    assert grid_key(25.3, 121.7, 0.5) == "25.0_121.5"


def test_score_formula_and_levels():
    assert convergence_score(3, 6) == 87
    assert convergence_score(5, 40) == 100
    assert convergence_level(87) == Severity.CRITICAL
    assert convergence_level(65) == Severity.HIGH
    assert convergence_level(56) == Severity.MEDIUM


def test_three_kinds_in_one_cell_raise_alert():
    alerts = detect_convergence(_taiwan_strait(), cell_size_deg=1.0, window_hours=24, now=NOW)
    assert len(alerts) == 1
    alert = alerts[0]
    assert alert.cell_key == "25.0_121.0"
    assert alert.distinct_kinds == 3
    assert alert.total_events == 6
    assert alert.score == 87
    assert alert.level == Severity.CRITICAL
    assert alert.country_code == "TW"
    assert (alert.lat, alert.lon) == (25.5, 121.5)


def test_two_kinds_do_not_raise_alert():
    events = [e for e in _taiwan_strait() if e.kind != GeoEventKind.PROTEST]
    assert detect_convergence(events, now=NOW) == []


def test_events_outside_window_are_ignored():
    events = [e for e in _taiwan_strait() if e.kind != GeoEventKind.PROTEST]
    events.append(_event(GeoEventKind.PROTEST, 25.03, 121.56, hours_ago=30))
    assert detect_convergence(events, window_hours=24, now=NOW) == []


def test_adjacent_cells_are_not_merged():
    events = [
        _event(GeoEventKind.MILITARY_FLIGHT, 24.99, 121.5),
        _event(GeoEventKind.MILITARY_VESSEL, 25.01, 121.5),
        _event(GeoEventKind.PROTEST, 25.01, 121.5),
    ]
    assert detect_convergence(events, now=NOW) == []
    cells = build_cells(events, 1.0, 24, NOW)
    assert [c.cell_key for c in cells] == ["24.0_121.0", "25.0_121.0"]


def test_invalid_coordinates_are_skipped():
    events = _taiwan_strait() + [_event(GeoEventKind.OUTAGE, 95.0, 121.5)]
    alerts = detect_convergence(events, now=NOW)
    assert alerts[0].distinct_kinds == 3


def test_alerts_sorted_by_score_then_cell():
    events = _taiwan_strait() + [
        _event(GeoEventKind.MILITARY_FLIGHT, 50.4, 30.5, country="UA"),
        _event(GeoEventKind.PROTEST, 50.4, 30.5, country="UA"),
        _event(GeoEventKind.OUTAGE, 50.4, 30.5, country="UA"),
    ]
    alerts = detect_convergence(events, now=NOW)
    assert [a.cell_key for a in alerts] == ["25.0_121.0", "50.0_30.0"]
    assert alerts[1].score == 81


def test_regional_convergence_needs_two_countries_and_two_kinds():
    regions = [Region(id="europe_east", name="Eastern Europe", countries=frozenset({"UA", "RU", "PL"}))]
    events = [
        _event(GeoEventKind.MILITARY_FLIGHT, 50.4, 30.5, country="UA"),
        _event(GeoEventKind.PROTEST, 55.7, 37.6, country="RU"),
    ]
    found = detect_regional_convergence(events, regions, window_hours=24, now=NOW)
    assert len(found) == 1
    assert found[0].countries == ("RU", "UA")
    assert found[0].kinds == (GeoEventKind.MILITARY_FLIGHT, GeoEventKind.PROTEST)

    single_country = [e for e in events if e.country_code == "UA"]
    assert detect_regional_convergence(single_country, regions, now=NOW) == []
