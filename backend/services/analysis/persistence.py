"""SQLAlchemy-backed stores for baselines and prior country scores."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from models.database import AnalysisBaselineRecord, AsyncSessionLocal, CountryScoreRecord
from .records import Baseline, CountryScore, Observation, RollingStats, coerce_utc

logger = logging.getLogger(__name__)


def _observations_to_json(baseline: Baseline) -> list[dict[str, Any]]:
    return [
        {"t": coerce_utc(obs.observed_at).isoformat(), "v": obs.value}
        for obs in baseline.observations
    ]


def _observations_from_json(rows: Any) -> tuple[Observation, ...]:
    out: list[Observation] = []
    for row in rows or []:
        if not isinstance(row, dict):
            continue
        try:
            observed_at = coerce_utc(datetime.fromisoformat(str(row.get("t"))))
            value = float(row.get("v"))
        except (TypeError, ValueError):
            continue
        out.append(Observation(observed_at=observed_at, value=value))
    out.sort(key=lambda obs: obs.observed_at)
    return tuple(out)


def baseline_from_record(record: AnalysisBaselineRecord) -> Baseline:
    return Baseline(
        metric_key=record.metric_key,
        window_short=RollingStats(
            mean=float(record.short_mean or 0.0),
            stddev=float(record.short_stddev or 0.0),
            sample_count=int(record.short_samples or 0),
        ),
        window_long=RollingStats(
            mean=float(record.long_mean or 0.0),
            stddev=float(record.long_stddev or 0.0),
            sample_count=int(record.long_samples or 0),
        ),
        observations=_observations_from_json(record.observations),
        updated_at=coerce_utc(record.updated_at),
    )


def _baseline_values(baseline: Baseline) -> dict[str, Any]:
    return {
        "observations": _observations_to_json(baseline),
        "short_mean": baseline.window_short.mean,
        "short_stddev": baseline.window_short.stddev,
        "short_samples": baseline.window_short.sample_count,
        "long_mean": baseline.window_long.mean,
        "long_stddev": baseline.window_long.stddev,
        "long_samples": baseline.window_long.sample_count,
        "updated_at": baseline.updated_at,
    }


def _score_values(score: CountryScore) -> dict[str, Any]:
    return {
        "name": score.name,
        "composite": score.composite,
        "previous": score.previous,
        "level": score.level.value,
        "trend": score.trend.value,
        "components": {
            "unrest": score.unrest,
            "security": score.security,
            "information": score.information,
            "computed_score": score.computed_score,
            "floor": score.floor,
            "damping": score.damping,
        },
        "computed_at": score.computed_at,
    }


async def _upsert_baselines(session, baselines: Mapping[str, Baseline]) -> None:
    for metric_key, baseline in baselines.items():
        values = _baseline_values(baseline)
        stmt = sqlite_insert(AnalysisBaselineRecord).values(
            metric_key=metric_key, **values
        ).on_conflict_do_update(
            index_elements=["metric_key"],
            set_=values,
        )
        await session.execute(stmt)


async def _upsert_scores(session, scores: Sequence[CountryScore]) -> None:
    for score in scores:
        values = _score_values(score)
        stmt = sqlite_insert(CountryScoreRecord).values(
            country_code=score.country_code, **values
        ).on_conflict_do_update(
            index_elements=["country_code"],
            set_=values,
        )
        await session.execute(stmt)


class SqlBaselineStore:
    """Baseline store on the ``analysis_baselines`` table."""

    def __init__(self, session_factory=None) -> None:
        self._session_factory = session_factory or AsyncSessionLocal

    async def get(self, metric_key: str) -> Baseline:
        async with self._session_factory() as session:
            record = await session.get(AnalysisBaselineRecord, metric_key)
            if record is None:
                return Baseline(metric_key=metric_key)
            return baseline_from_record(record)

    async def keys(self) -> list[str]:
        async with self._session_factory() as session:
            rows = await session.execute(select(AnalysisBaselineRecord.metric_key))
            return [row[0] for row in rows.all()]

    async def put(self, metric_key: str, baseline: Baseline) -> None:
        await self.put_many({metric_key: baseline})

    async def put_many(self, baselines: Mapping[str, Baseline]) -> None:
        if not baselines:
            return
        async with self._session_factory() as session:
            await _upsert_baselines(session, baselines)
            await session.commit()
        logger.debug("Persisted %d baselines", len(baselines))


class SqlCountryScoreStore:
    """Prior composites on the ``country_score_records`` table."""

    def __init__(self, session_factory=None) -> None:
        self._session_factory = session_factory or AsyncSessionLocal

    async def load_priors(self) -> dict[str, tuple[Optional[int], Optional[int]]]:
        async with self._session_factory() as session:
            rows = (await session.execute(select(CountryScoreRecord))).scalars().all()
        return {row.country_code: (row.previous, row.composite) for row in rows}

    async def save(self, scores: Sequence[CountryScore]) -> None:
        if not scores:
            return
        async with self._session_factory() as session:
            await _upsert_scores(session, scores)
            await session.commit()
        logger.debug("Persisted %d country scores", len(scores))


class SqlCycleCommitter:
    """Writes a cycle's baselines and country scores in one transaction.

    If any statement fails the session closes without committing, so
    neither table moves.
    """

    def __init__(self, session_factory=None) -> None:
        self._session_factory = session_factory or AsyncSessionLocal

    async def commit_cycle(
        self,
        baselines: Mapping[str, Baseline],
        scores: Sequence[CountryScore],
    ) -> None:
        if not baselines and not scores:
            return
        async with self._session_factory() as session:
            await _upsert_baselines(session, baselines)
            await _upsert_scores(session, scores)
            await session.commit()
        logger.debug(
            "Committed cycle state: %d baselines, %d country scores",
            len(baselines),
            len(scores),
        )


class InMemoryCountryScoreStore:
    def __init__(self) -> None:
        self._rows: dict[str, tuple[Optional[int], Optional[int]]] = {}

    async def load_priors(self) -> dict[str, tuple[Optional[int], Optional[int]]]:
        return dict(self._rows)

    async def save(self, scores: Sequence[CountryScore]) -> None:
        for score in scores:
            self._rows[score.country_code] = (score.previous, score.composite)
