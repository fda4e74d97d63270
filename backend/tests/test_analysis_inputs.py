import json
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.analysis.inputs import (
    FileSnapshotProvider,
    parse_cycle_input,
    parse_geo_event,
    parse_news_item,
)
from services.analysis.records import GeoEventKind, Severity, SignalKind, SourceType


def _payload() -> dict:
    return {
        "collected_at": "2026-03-02T12:00:00Z",
        "news": [
            {
                "id": "n1",
                "title": "Broadcom AI Revenue Beats Estimates",
                "pub_date": "2026-03-02T11:55:00Z",
                "tier": 1,
                "source_type": "wire",
                "source": "Reuters",
                "unknown_field": "ignored",
            },
            {"id": "n2", "title": "", "pub_date": "2026-03-02T11:55:00Z"},
        ],
        "quotes": [
            {"symbol": "AVGO", "price": 1400.5, "change": 2.5, "timestamp": 1772452800000},
            {"symbol": "XOM", "price": 110.0},
        ],
        "geo_events": [
            {"kind": "military_flight", "lat": 25.1, "lon": 121.2, "occurred_at": "2026-03-02T10:00:00Z", "country_code": "tw"},
            {"kind": "alien_landing", "lat": 1, "lon": 1, "occurred_at": "2026-03-02T10:00:00Z"},
        ],
        "detections": [
            {"kind": "prediction_leads_news", "subject": {"market_id": "m-42"}, "confidence": 0.72, "severity": "high"},
            {"kind": "military_surge", "subject": {}},
        ],
    }


def test_parse_cycle_input_keeps_valid_rows_only():
    batch = parse_cycle_input(_payload())

    assert [n.source_id for n in batch.news] == ["n1"]
    news = batch.news[0]
    assert news.source_tier == 1
    assert news.source_type == SourceType.WIRE
    assert news.publisher == "Reuters"

    assert [q.symbol for q in batch.quotes] == ["AVGO"]
    assert batch.quotes[0].timestamp == datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    assert len(batch.geo_events) == 1
    assert batch.geo_events[0].kind == GeoEventKind.MILITARY_FLIGHT
    assert batch.geo_events[0].country_code == "TW"

    assert len(batch.upstream) == 1
    upstream = batch.upstream[0]
    assert upstream.kind == SignalKind.PREDICTION_LEADS_NEWS
    assert upstream.severity == Severity.HIGH
    assert batch.collected_at == datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def test_news_item_defaults_and_clamping():
    item = parse_news_item({"id": "x", "title": "Quake hits coast", "published_at": "2026-03-02T11:00:00", "tier": 9})
    assert item.source_tier == 4
    assert item.source_type == SourceType.MAINSTREAM
    assert item.category == "general"
    assert item.published_at.tzinfo is not None


def test_geo_event_requires_coordinates_and_time():
    assert parse_geo_event({"kind": "protest", "lat": "n/a", "lon": 3, "occurred_at": "2026-03-02T10:00:00Z"}) is None
    assert parse_geo_event({"kind": "protest", "lat": 1, "lon": 3}) is None


@pytest.mark.asyncio
async def test_file_provider_reads_each_snapshot_once(tmp_path):
    path = tmp_path / "snapshot.json"
    provider = FileSnapshotProvider(path)
    assert await provider.fetch() is None

    path.write_text(json.dumps(_payload()), encoding="utf-8")
    first = await provider.fetch()
    assert first is not None and len(first.news) == 1
    assert await provider.fetch() is None

    stat = path.stat()
    path.write_text(json.dumps({"news": []}), encoding="utf-8")
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))
    second = await provider.fetch()
    assert second is not None and second.news == ()


@pytest.mark.asyncio
async def test_file_provider_skips_unreadable_snapshot(tmp_path):
    path = tmp_path / "snapshot.json"
    path.write_text("{broken", encoding="utf-8")
    assert await FileSnapshotProvider(path).fetch() is None
