import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.analysis.baseline import BaselineDetector, InMemoryBaselineStore, summarize
from services.analysis.records import Baseline, DeviationLevel

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _detector(store=None) -> BaselineDetector:
    return BaselineDetector(
        store,
        short_days=7,
        long_days=30,
        min_samples=6,
        z_spike=2.5,
        z_elevated=1.5,
        z_quiet=-2.0,
    )


def _history(detector: BaselineDetector, values, *, step=timedelta(hours=6), key="news:politics") -> Baseline:
    baseline = Baseline(metric_key=key)
    start = NOW - step * len(values)
    for n, value in enumerate(values):
        baseline = detector.roll(baseline, value, start + step * n)
    return baseline


def test_summarize_population_stats():
    stats = summarize([10, 12, 10, 12])
    assert stats.mean == 11
    assert stats.stddev == 1
    assert stats.sample_count == 4


def test_short_history_is_insufficient():
    detector = _detector()
    baseline = _history(detector, [4, 5, 6])
    result = detector.deviation(50, baseline)
    assert result.level == DeviationLevel.INSUFFICIENT_DATA
    assert result.z_score is None
    assert result.insufficient


def test_zero_stddev_is_always_normal():
    detector = _detector()
    baseline = _history(detector, [5] * 10)
    for current in (0, 5, 500):
        result = detector.deviation(current, baseline)
        assert result.level == DeviationLevel.NORMAL
        assert result.z_score == 0.0


@pytest.mark.parametrize(
    "current, level",
    [
        (15, DeviationLevel.SPIKE),
        (12.8, DeviationLevel.ELEVATED),
        (11, DeviationLevel.NORMAL),
        (8, DeviationLevel.QUIET),
    ],
)
def test_deviation_levels(current, level):
    detector = _detector()
    baseline = _history(detector, [10, 12] * 4)
    result = detector.deviation(current, baseline)
    assert result.level == level
    assert result.sample_count == 8


def test_roll_drops_observations_outside_long_window():
    detector = _detector()
    baseline = _history(detector, [1, 2, 3], step=timedelta(days=20))
    rolled = detector.roll(baseline, 4, NOW)
    # Observations at NOW-60d and NOW-40d fall out of the 30-day window.
    assert [obs.value for obs in rolled.observations] == [3, 4]
    assert rolled.window_long.sample_count == 2
    assert rolled.window_short.sample_count == 1
    assert rolled.updated_at == NOW


def test_falls_back_to_long_window_when_short_is_thin():
    detector = _detector()
    baseline = _history(detector, [10, 12] * 4, step=timedelta(days=3))
    assert baseline.window_short.sample_count < 6
    result = detector.deviation(11, baseline)
    assert result.sample_count == baseline.window_long.sample_count
    assert result.level == DeviationLevel.NORMAL


@pytest.mark.asyncio
async def test_evaluate_stages_without_writing_until_commit():
    store = InMemoryBaselineStore()
    detector = _detector(store)

    deviations, staged = await detector.evaluate({"news:politics": 3, "protests:global": 1}, NOW)
    assert [d.metric_key for d in deviations] == ["news:politics", "protests:global"]
    assert all(d.insufficient for d in deviations)
    assert len(store) == 0

    await detector.commit(staged)
    assert len(store) == 2
    stored = await store.get("news:politics")
    assert stored.window_long.sample_count == 1


@pytest.mark.asyncio
async def test_update_baseline_writes_through():
    store = InMemoryBaselineStore()
    detector = _detector(store)
    for hours in range(6):
        await detector.update_baseline("outages:global", 2.0, NOW + timedelta(hours=hours))
    stored = await store.get("outages:global")
    assert stored.window_short.sample_count == 6
    assert detector.deviation(2.0, stored).level == DeviationLevel.NORMAL
