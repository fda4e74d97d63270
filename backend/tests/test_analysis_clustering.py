import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.analysis.clustering import ClusteringEngine
from services.analysis.records import NewsItem, SourceType, Trend
from services.analysis.tokenizer import TokenCache

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _item(
    source_id: str,
    title: str,
    minutes_ago: float = 0.0,
    *,
    tier: int = 4,
    source_type: SourceType = SourceType.MAINSTREAM,
    source_name: str = "",
) -> NewsItem:
    return NewsItem(
        source_id=source_id,
        title=title,
        published_at=NOW - timedelta(minutes=minutes_ago),
        source_tier=tier,
        source_type=source_type,
        source_name=source_name or f"pub-{source_id}",
    )


def _engine() -> ClusteringEngine:
    return ClusteringEngine(similarity_threshold=0.5, min_span_minutes=1.0, trend_ratio=0.2)


def _partition(clusters):
    return sorted(sorted(c.member_ids) for c in clusters)


def test_related_headlines_cluster_and_unrelated_stands_alone():
    items = [
        _item("a", "Broadcom AI Revenue Beats Estimates"),
        _item("b", "Broadcom Posts Strong AI Chip Revenue"),
        _item("c", "Fed Holds Interest Rates Steady"),
    ]
    clusters = _engine().cluster(items)
    assert _partition(clusters) == [["a", "b"], ["c"]]


def test_clustering_is_independent_of_input_order():
    items = [
        _item("a", "Broadcom AI Revenue Beats Estimates", 3),
        _item("b", "Broadcom Posts Strong AI Chip Revenue", 2),
        _item("c", "Fed Holds Interest Rates Steady", 1),
        _item("d", "Fed holds rates steady as inflation cools", 0),
        _item("e", "Earthquake strikes off coast of Taiwan", 5),
    ]
    baseline = _engine().cluster(items)
    shuffled = list(items)
    random.Random(7).shuffle(shuffled)
    again = _engine().cluster(shuffled)

    assert _partition(again) == _partition(baseline)
    assert [c.id for c in again] == [c.id for c in baseline]
    assert [c.primary_item_id for c in again] == [c.primary_item_id for c in baseline]


def test_clustering_same_input_twice_is_identical():
    items = [
        _item("a", "Druzhba pipeline explosion halts crude flows", 10),
        _item("b", "Druzhba pipeline explosion halts crude flows to Hungary", 5),
    ]
    engine = _engine()
    assert engine.cluster(items) == engine.cluster(items)


def test_duplicate_item_ids_are_dropped():
    items = [
        _item("a", "Druzhba pipeline explosion halts crude flows", 10),
        _item("a", "Druzhba pipeline explosion halts crude flows", 10),
    ]
    clusters = _engine().cluster(items)
    assert len(clusters) == 1
    assert clusters[0].member_count == 1


def test_singleton_velocity_uses_minimum_span():
    clusters = _engine().cluster([_item("solo", "Earthquake strikes off coast of Taiwan")])
    assert len(clusters) == 1
    assert clusters[0].velocity_per_hour == 60.0
    assert clusters[0].trend == Trend.STABLE


def test_velocity_over_real_span():
    title = "Druzhba pipeline explosion halts crude flows"
    items = [_item(f"i{n}", title, minutes) for n, minutes in enumerate([120, 60, 0])]
    clusters = _engine().cluster(items)
    assert clusters[0].velocity_per_hour == 1.5


def test_trend_rising_when_second_half_dominates():
    title = "Druzhba pipeline explosion halts crude flows"
    items = [_item(f"i{n}", title, minutes) for n, minutes in enumerate([60, 10, 5, 0])]
    assert _engine().cluster(items)[0].trend == Trend.RISING


def test_trend_falling_when_first_half_dominates():
    title = "Druzhba pipeline explosion halts crude flows"
    items = [_item(f"i{n}", title, minutes) for n, minutes in enumerate([60, 55, 50, 0])]
    assert _engine().cluster(items)[0].trend == Trend.FALLING


def test_primary_prefers_authoritative_tier_then_recency():
    title = "Druzhba pipeline explosion halts crude flows"
    items = [
        _item("blog", title, 1, tier=4),
        _item("wire-old", title, 30, tier=1, source_type=SourceType.WIRE),
        _item("wire-new", title, 10, tier=1, source_type=SourceType.WIRE),
    ]
    cluster = _engine().cluster(items)[0]
    assert cluster.primary_item_id == "wire-new"
    assert cluster.source_types == frozenset({SourceType.MAINSTREAM, SourceType.WIRE})
    assert cluster.source_count == 3


def test_clusters_sorted_by_last_update_and_token_cache_shared():
    items = [
        _item("old", "Fed Holds Interest Rates Steady", 90),
        _item("new", "Earthquake strikes off coast of Taiwan", 1),
    ]
    cache = TokenCache()
    clusters = _engine().cluster(items, cache)
    assert [c.primary_item_id for c in clusters] == ["new", "old"]
    assert len(cache) == 2


def test_empty_input():
    assert _engine().cluster([]) == []


def test_reclustering_members_of_separate_clusters_keeps_them_apart():
    pipeline_story = [
        _item("a", "Druzhba pipeline explosion halts crude flows", 10),
        _item("b", "Druzhba pipeline explosion halts crude flows to Hungary", 5),
    ]
    rates_story = [
        _item("c", "Fed Holds Interest Rates Steady", 8),
        _item("d", "Fed holds rates steady as inflation cools", 2),
    ]
    engine = _engine()
    separate = engine.cluster(pipeline_story) + engine.cluster(rates_story)

    together = engine.cluster(pipeline_story + rates_story)

    assert _partition(together) == _partition(separate) == [["a", "b"], ["c", "d"]]
    assert sorted(c.id for c in together) == sorted(c.id for c in separate)


def test_reclustering_merges_clusters_whose_primaries_are_similar():
    engine = _engine()
    first = engine.cluster([_item("x", "Oil prices surge after pipeline explosion", 4)])
    second = engine.cluster([_item("y", "Oil prices surge after refinery explosion", 1)])
    assert len(first) == len(second) == 1

    together = engine.cluster(
        [_item("x", "Oil prices surge after pipeline explosion", 4), _item("y", "Oil prices surge after refinery explosion", 1)]
    )
    assert _partition(together) == [["x", "y"]]


def test_identical_non_latin_headlines_form_one_cluster():
    title = "Землетрясение магнитудой 7 произошло у берегов Японии"
    items = [_item("r1", title, 3), _item("r2", title, 2), _item("r3", title, 1)]
    clusters = _engine().cluster(items)
    assert _partition(clusters) == [["r1", "r2", "r3"]]
