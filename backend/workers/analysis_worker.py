"""Analysis worker: runs refresh cycles over collaborator snapshots and writes DB snapshots.

Run from backend dir:
  python -m workers.analysis_worker
"""

from __future__ import annotations

import asyncio
import os
import sys
from datetime import datetime, timezone

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)
if os.getcwd() != _BACKEND:
    os.chdir(_BACKEND)

from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from config import settings
from models.database import AnalysisSnapshot, AsyncSessionLocal, init_database
from services.analysis import (
    AnalysisPipeline,
    BaselineDetector,
    CycleTimeout,
    FileSnapshotProvider,
    country_catalog,
    entity_catalog,
)
from services.analysis.persistence import SqlBaselineStore, SqlCountryScoreStore, SqlCycleCommitter
from utils.logger import get_logger, setup_logging

setup_logging(
    level=settings.LOG_LEVEL,
    json_format=settings.LOG_JSON,
    log_file=settings.LOG_FILE,
)
logger = get_logger("analysis_worker")

_IDLE_SLEEP_SECONDS = 5


def _signal_rows(signals) -> list[dict]:
    return [
        {
            "id": s.id,
            "kind": s.kind.value,
            "subject_key": s.subject_key,
            "confidence": s.confidence,
            "severity": s.severity.value,
            "first_fired_at": s.first_fired_at.isoformat(),
            "title": s.title,
            "details": s.details,
        }
        for s in signals
    ]


async def _read_snapshot(session_factory=None) -> dict:
    async with (session_factory or AsyncSessionLocal)() as session:
        row = await session.get(AnalysisSnapshot, "latest")
        if row is None or not isinstance(row.status, dict):
            return {}
        return dict(row.status)


async def _write_snapshot(
    status: dict,
    stats: dict,
    signals: list[dict] | None = None,
    session_factory=None,
):
    """Write the analysis snapshot row.

    ``status`` is merged into the stored status, so keys a write leaves
    out (the dedup ``generator_state`` during a run or after an error)
    keep their last value.
    """
    try:
        async with (session_factory or AsyncSessionLocal)() as session:
            row = await session.get(AnalysisSnapshot, "latest")
            merged = dict(row.status) if row is not None and isinstance(row.status, dict) else {}
            merged.update(status)
            values = {
                "status": merged,
                "stats": stats,
                "updated_at": datetime.now(timezone.utc),
            }
            if signals is not None:
                values["signals_json"] = signals
            stmt = sqlite_insert(AnalysisSnapshot).values(
                id="latest", **values
            ).on_conflict_do_update(
                index_elements=["id"],
                set_=values,
            )
            await session.execute(stmt)
            await session.commit()
    except Exception as e:
        logger.warning("Failed to write analysis snapshot: %s", e)


async def _build_pipeline() -> AnalysisPipeline:
    # Malformed registries and country profiles raise here, before the loop starts.
    index = entity_catalog.index()
    pipeline = AnalysisPipeline(
        index,
        baseline_detector=BaselineDetector(SqlBaselineStore()),
        score_store=SqlCountryScoreStore(),
        committer=SqlCycleCommitter(),
        countries=country_catalog,
    )
    restored = await pipeline.restore()

    previous = await _read_snapshot()
    generator_state = previous.get("generator_state")
    if isinstance(generator_state, dict):
        pipeline.generator.import_state(generator_state)

    logger.info(
        "Analysis pipeline ready",
        entities=len(index),
        restored_scores=restored,
        dedup_entries=len(pipeline.generator.dedup),
    )
    return pipeline


async def _run_loop() -> None:
    logger.info("Analysis worker started")

    if not settings.ANALYSIS_ENABLED:
        logger.info("Analysis is disabled; worker idling")
        while True:
            await asyncio.sleep(60)

    pipeline = await _build_pipeline()
    provider = FileSnapshotProvider()
    interval = settings.ANALYSIS_INTERVAL_SECONDS

    try:
        while True:
            try:
                batch = await provider.fetch()
                if batch is None:
                    await asyncio.sleep(min(_IDLE_SLEEP_SECONDS, interval))
                    continue

                await _write_snapshot(
                    status={"running": True, "enabled": True, "current_activity": "Running analysis cycle..."},
                    stats={},
                )
                result = await pipeline.run_cycle(batch)
                if result is None:
                    await asyncio.sleep(min(_IDLE_SLEEP_SECONDS, interval))
                    continue

                await _write_snapshot(
                    status={
                        "running": True,
                        "enabled": True,
                        "current_activity": "Idle",
                        "last_cycle_id": result.cycle_id,
                        "last_run_at": result.completed_at.isoformat(),
                        "last_error": None,
                        "learning": pipeline.generator.learning_status(),
                        "generator_state": pipeline.generator.export_state(),
                    },
                    stats={
                        **result.stats,
                        "cycles_completed": pipeline.cycles_completed,
                        "cycles_skipped": pipeline.cycles_skipped,
                    },
                    signals=_signal_rows(result.signals),
                )
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                raise
            except CycleTimeout as exc:
                logger.warning("Analysis cycle abandoned: %s", exc)
                await _write_snapshot(
                    status={
                        "running": True,
                        "enabled": True,
                        "current_activity": "Cycle timed out",
                        "last_error": str(exc),
                    },
                    stats={"cycles_skipped": pipeline.cycles_skipped},
                )
                await asyncio.sleep(min(_IDLE_SLEEP_SECONDS, interval))
            except Exception as exc:
                logger.exception("Analysis cycle failed: %s", exc)
                await _write_snapshot(
                    status={
                        "running": True,
                        "enabled": True,
                        "current_activity": f"Error: {exc}",
                        "last_error": str(exc),
                    },
                    stats={},
                )
                await asyncio.sleep(min(_IDLE_SLEEP_SECONDS, interval))
    finally:
        pipeline.shutdown()


async def main() -> None:
    await init_database()
    logger.info("Database initialized")
    try:
        await _run_loop()
    except asyncio.CancelledError:
        logger.info("Analysis worker shutting down")


if __name__ == "__main__":
    asyncio.run(main())
