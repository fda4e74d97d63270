"""Shared fixtures for analysis core tests."""

import sys
from datetime import datetime, timezone
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import pytest

from services.analysis.entity_catalog import EntityRecord, EntityType, build_entity_index


NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def entity_index():
    records = [
        EntityRecord(
            id="AVGO",
            display_name="Broadcom",
            type=EntityType.COMPANY,
            aliases=frozenset({"Broadcom", "AVGO"}),
            keywords=frozenset({"custom silicon"}),
            sector="semiconductors",
            related_ids=frozenset({"NVDA"}),
        ),
        EntityRecord(
            id="NVDA",
            display_name="Nvidia",
            type=EntityType.COMPANY,
            aliases=frozenset({"Nvidia", "NVDA"}),
            keywords=frozenset({"gpu"}),
            sector="semiconductors",
        ),
        EntityRecord(
            id="XOM",
            display_name="Exxon Mobil",
            type=EntityType.COMPANY,
            aliases=frozenset({"Exxon", "XOM"}),
            keywords=frozenset({"refinery"}),
            sector="energy",
        ),
        EntityRecord(
            id="AI",
            display_name="C3.ai",
            type=EntityType.COMPANY,
            aliases=frozenset({"AI", "C3.ai"}),
            sector="software",
        ),
    ]
    return build_entity_index(records)
