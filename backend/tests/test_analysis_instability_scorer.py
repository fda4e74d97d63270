import json
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.analysis.clustering import ClusteringEngine
from services.analysis.country_catalog import CountryCatalog
from services.analysis.errors import MalformedConfiguration
from services.analysis.instability_scorer import (
    CountryInputs,
    InstabilityScorer,
    compute_trend,
    damping_factor,
    score_level,
)
from services.analysis.records import GeoEvent, GeoEventKind, NewsItem, ScoreLevel, Trend

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _catalog(tmp_path, countries, regions=()) -> CountryCatalog:
    path = tmp_path / "country_profiles.json"
    path.write_text(json.dumps({"countries": countries, "regions": list(regions)}), encoding="utf-8")
    return CountryCatalog(path=path)


def _max_unrest() -> CountryInputs:
    # unrest 100, security 0, information 0 -> computed 40
    return CountryInputs(protest_count=7, fatalities=6, high_severity_count=2)


def _hot() -> CountryInputs:
    # unrest 100, security 80, information 20 -> computed 70
    return CountryInputs(
        protest_count=7,
        fatalities=6,
        high_severity_count=2,
        military_flights=17,
        naval_vessels=6,
        any_alert=True,
    )


def test_floor_raises_low_score_and_leaves_high_score(tmp_path):
    scorer = InstabilityScorer(_catalog(tmp_path, []), floors={"UA": 55})

    low = scorer.score_country("UA", _max_unrest(), floor=55, now=NOW)
    assert low.computed_score == 40
    assert low.composite == 55

    high = scorer.score_country("UA", _hot(), floor=55, now=NOW)
    assert high.computed_score == 70
    assert high.composite == 70


def test_no_floor_means_final_equals_computed(tmp_path):
    scorer = InstabilityScorer(_catalog(tmp_path, []))
    score = scorer.score_country("PL", _max_unrest(), now=NOW)
    assert score.floor is None
    assert score.composite == score.computed_score == 40


def test_damping_applies_to_unrest_and_information_only(tmp_path):
    scorer = InstabilityScorer(_catalog(tmp_path, []), news_volume_threshold=20)
    inputs = CountryInputs(news_count=8, news_volume=200, velocities=[4.0], military_flights=10)
    score = scorer.score_country("US", inputs, now=NOW)
    assert score.damping == 0.5
    assert score.information == 40.0
    assert score.security == 30.0
    assert score.composite == 21


def test_damping_factor_is_one_below_threshold():
    assert damping_factor(10, 20) == 1.0
    assert damping_factor(20, 20) == 1.0
    assert damping_factor(200, 20) == 0.5


def test_levels_and_trend_bands():
    assert score_level(81) == ScoreLevel.CRITICAL
    assert score_level(66) == ScoreLevel.HIGH
    assert score_level(51) == ScoreLevel.ELEVATED
    assert score_level(31) == ScoreLevel.NORMAL
    assert score_level(30) == ScoreLevel.LOW
    assert compute_trend(40, None) == Trend.STABLE
    assert compute_trend(45, 40) == Trend.RISING
    assert compute_trend(36, 40) == Trend.STABLE
    assert compute_trend(35, 40) == Trend.FALLING


def test_first_computation_is_stable_and_commit_advances_pair(tmp_path):
    scorer = InstabilityScorer(_catalog(tmp_path, []))
    first = scorer.score_country("IR", _max_unrest(), now=NOW)
    assert first.trend == Trend.STABLE
    assert first.previous is None
    assert first.change == 0

    scorer.commit([first])
    second = scorer.score_country("IR", _hot(), now=NOW + timedelta(minutes=5))
    assert second.previous == 40
    assert second.change == 30
    assert second.trend == Trend.RISING

    scorer.commit([second])
    pair = scorer.pair("IR")
    assert (pair.previous, pair.current) == (40, 70)


def test_compute_is_pure_until_commit(tmp_path):
    scorer = InstabilityScorer(_catalog(tmp_path, [{"code": "IR", "name": "Iran"}]))
    scorer.compute(now=NOW)
    assert scorer.pair("IR").current is None


def test_compute_attributes_clusters_and_events(tmp_path):
    catalog = _catalog(
        tmp_path,
        [
            {"code": "UA", "name": "Ukraine", "keywords": ["ukraine", "kyiv"], "floor": 55},
            {"code": "PL", "name": "Poland", "keywords": ["poland"]},
        ],
    )
    scorer = InstabilityScorer(catalog)
    clusters = ClusteringEngine().cluster(
        [NewsItem(source_id="n1", title="Ukrainian drones strike refinery", published_at=NOW)]
    )
    events = [
        GeoEvent(kind=GeoEventKind.PROTEST, lat=52.2, lon=21.0, occurred_at=NOW, country_code="PL"),
        GeoEvent(kind=GeoEventKind.MILITARY_FLIGHT, lat=35.7, lon=51.4, occurred_at=NOW, country_code="IR"),
    ]
    scores = {s.country_code: s for s in scorer.compute(clusters=clusters, geo_events=events, now=NOW)}

    assert set(scores) == {"UA", "PL", "IR"}
    assert scores["UA"].name == "Ukraine"
    assert scores["UA"].news_volume == 1
    assert scores["UA"].composite == 55
    assert scores["PL"].unrest == 8.0
    assert scores["IR"].security == 3.0
    assert scores["IR"].name == "IR"


def test_restore_and_state_round_trip(tmp_path):
    scorer = InstabilityScorer(_catalog(tmp_path, []))
    assert scorer.restore({"ua": (50, 55), "PL": (None, None)}) == 1
    assert scorer.restored
    assert scorer.pair("UA").current == 55

    clone = InstabilityScorer(_catalog(tmp_path, []))
    clone.import_state(scorer.export_state())
    assert clone.pair("UA").previous == 50


def test_invalid_floor_is_malformed(tmp_path):
    catalog = _catalog(tmp_path, [{"code": "UA", "name": "Ukraine", "floor": 140}])
    with pytest.raises(MalformedConfiguration):
        catalog.profiles()


def _rewrite(path: Path, payload: dict) -> None:
    previous = path.stat().st_mtime_ns
    path.write_text(json.dumps(payload), encoding="utf-8")
    os.utime(path, ns=(previous + 1_000_000_000, previous + 1_000_000_000))


def test_bad_edit_after_validation_keeps_last_valid_profiles(tmp_path):
    catalog = _catalog(tmp_path, [{"code": "UA", "name": "Ukraine", "floor": 55}])
    assert catalog.validate() == 1
    scorer = InstabilityScorer(catalog)
    assert {s.country_code: s.composite for s in scorer.compute(now=NOW)} == {"UA": 55}

    _rewrite(tmp_path / "country_profiles.json", {"countries": [{"code": "UA", "floor": "high"}]})

    scores = scorer.compute(now=NOW)
    assert [(s.country_code, s.composite) for s in scores] == [("UA", 55)]
    assert catalog.profiles()["UA"].name == "Ukraine"


def test_good_edit_after_validation_is_picked_up(tmp_path):
    catalog = _catalog(tmp_path, [{"code": "UA", "name": "Ukraine", "floor": 55}])
    catalog.validate()

    _rewrite(tmp_path / "country_profiles.json", {"countries": [{"code": "UA", "name": "Ukraine", "floor": 60}]})

    assert catalog.profiles()["UA"].floor == 60


def test_unreadable_edit_keeps_last_payload(tmp_path):
    catalog = _catalog(tmp_path, [{"code": "UA", "name": "Ukraine", "floor": 55}])
    catalog.validate()
    path = tmp_path / "country_profiles.json"
    previous = path.stat().st_mtime_ns
    path.write_text("{not json", encoding="utf-8")
    os.utime(path, ns=(previous + 1_000_000_000, previous + 1_000_000_000))

    assert catalog.profiles()["UA"].floor == 55
