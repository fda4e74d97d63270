import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models import database
from services.analysis.records import Detection, SignalKind
from services.analysis.signal_generator import SignalGenerator
from workers import analysis_worker

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


async def _open(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'worker.db'}")
    await database.init_database(engine)
    return engine, sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def _generator() -> SignalGenerator:
    return SignalGenerator(learning_minutes=0, started_at=NOW - timedelta(hours=1))


def _silent(symbol: str) -> Detection:
    return Detection(kind=SignalKind.SILENT_DIVERGENCE, subject={"symbol": symbol}, confidence=0.6)


@pytest.mark.asyncio
async def test_dedup_state_survives_running_and_error_writes(tmp_path):
    engine, session_factory = await _open(tmp_path)
    generator = _generator()
    assert len(generator.generate([_silent("XOM")], NOW)) == 1

    await analysis_worker._write_snapshot(
        {"current_activity": "Idle", "last_error": None, "generator_state": generator.export_state()},
        stats={"signals": 1},
        signals=[],
        session_factory=session_factory,
    )
    await analysis_worker._write_snapshot(
        {"running": True, "current_activity": "Running analysis cycle..."},
        stats={},
        session_factory=session_factory,
    )
    await analysis_worker._write_snapshot(
        {"current_activity": "Error: database is locked", "last_error": "database is locked"},
        stats={},
        session_factory=session_factory,
    )

    status = await analysis_worker._read_snapshot(session_factory)
    assert status["current_activity"] == "Error: database is locked"
    assert status["last_error"] == "database is locked"
    assert status["running"] is True

    restarted = _generator()
    restarted.import_state(status["generator_state"])
    assert restarted.generate([_silent("XOM")], NOW + timedelta(hours=1)) == []
    await engine.dispose()


@pytest.mark.asyncio
async def test_read_snapshot_is_empty_before_first_write(tmp_path):
    engine, session_factory = await _open(tmp_path)
    assert await analysis_worker._read_snapshot(session_factory) == {}
    await engine.dispose()
