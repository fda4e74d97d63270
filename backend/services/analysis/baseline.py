"""Rolling baselines and z-score deviation for volume metrics.

Each metric keeps its raw observations for the long window so both the
7-day and 30-day statistics can roll forward.  A deviation needs at least
``min_samples`` observations in the window it is evaluated against;
shorter histories are reported as ``insufficient_data`` with no z-score.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Iterable, Mapping, Optional

from config import settings
from interfaces.stores import BaselineStore
from .records import (
    Baseline,
    DeviationLevel,
    DeviationResult,
    Observation,
    RollingStats,
    coerce_utc,
    utc_now,
)

logger = logging.getLogger(__name__)


def summarize(values: Iterable[float]) -> RollingStats:
    """Population mean/stddev of ``values``."""
    data = [float(v) for v in values]
    if not data:
        return RollingStats()
    mean = sum(data) / len(data)
    variance = sum((v - mean) ** 2 for v in data) / len(data)
    return RollingStats(
        mean=mean,
        stddev=math.sqrt(variance) if variance > 0 else 0.0,
        sample_count=len(data),
    )


def empty_baseline(metric_key: str) -> Baseline:
    return Baseline(metric_key=metric_key)


class BaselineDetector:
    """Maintains per-metric baselines and scores new observations."""

    def __init__(
        self,
        store: Optional[BaselineStore] = None,
        *,
        short_days: Optional[int] = None,
        long_days: Optional[int] = None,
        min_samples: Optional[int] = None,
        z_spike: Optional[float] = None,
        z_elevated: Optional[float] = None,
        z_quiet: Optional[float] = None,
    ) -> None:
        self._store = store if store is not None else InMemoryBaselineStore()
        self._short = timedelta(days=short_days or settings.ANALYSIS_BASELINE_SHORT_DAYS)
        self._long = timedelta(days=long_days or settings.ANALYSIS_BASELINE_LONG_DAYS)
        self._min_samples = int(min_samples or settings.ANALYSIS_BASELINE_MIN_SAMPLES)
        self._z_spike = settings.ANALYSIS_Z_SPIKE if z_spike is None else z_spike
        self._z_elevated = settings.ANALYSIS_Z_ELEVATED if z_elevated is None else z_elevated
        self._z_quiet = settings.ANALYSIS_Z_QUIET if z_quiet is None else z_quiet

    @property
    def store(self) -> BaselineStore:
        return self._store

    # -- Pure operations -----------------------------------------------------

    def roll(self, baseline: Baseline, value: float, now: Optional[datetime] = None) -> Baseline:
        """Return ``baseline`` with ``value`` appended and both windows recomputed."""
        now = coerce_utc(now) or utc_now()
        long_cutoff = now - self._long
        short_cutoff = now - self._short
        kept = [obs for obs in baseline.observations if coerce_utc(obs.observed_at) >= long_cutoff]
        kept.append(Observation(observed_at=now, value=float(value)))
        kept.sort(key=lambda obs: obs.observed_at)
        return Baseline(
            metric_key=baseline.metric_key,
            window_short=summarize(
                obs.value for obs in kept if coerce_utc(obs.observed_at) >= short_cutoff
            ),
            window_long=summarize(obs.value for obs in kept),
            observations=tuple(kept),
            updated_at=now,
        )

    def classify(self, z_score: float) -> DeviationLevel:
        if z_score > self._z_spike:
            return DeviationLevel.SPIKE
        if z_score > self._z_elevated:
            return DeviationLevel.ELEVATED
        if z_score < self._z_quiet:
            return DeviationLevel.QUIET
        return DeviationLevel.NORMAL

    def deviation(self, current: float, baseline: Baseline) -> DeviationResult:
        """Standardized distance of ``current`` from ``baseline``.

        Prefers the 7-day window once it holds enough samples, else the
        30-day window.  A zero stddev is always ``normal``.
        """
        if baseline.window_short.sample_count >= self._min_samples:
            stats = baseline.window_short
        elif baseline.window_long.sample_count >= self._min_samples:
            stats = baseline.window_long
        else:
            return DeviationResult(
                metric_key=baseline.metric_key,
                current=float(current),
                level=DeviationLevel.INSUFFICIENT_DATA,
                z_score=None,
                mean=baseline.window_long.mean,
                stddev=baseline.window_long.stddev,
                sample_count=baseline.window_long.sample_count,
            )

        if stats.stddev <= 0:
            z_score = 0.0
            level = DeviationLevel.NORMAL
        else:
            z_score = (float(current) - stats.mean) / stats.stddev
            level = self.classify(z_score)

        return DeviationResult(
            metric_key=baseline.metric_key,
            current=float(current),
            level=level,
            z_score=round(z_score, 3),
            mean=round(stats.mean, 3),
            stddev=round(stats.stddev, 3),
            sample_count=stats.sample_count,
        )

    # -- Store-backed operations ---------------------------------------------

    async def update_baseline(
        self,
        metric_key: str,
        current_count: float,
        now: Optional[datetime] = None,
    ) -> Baseline:
        baseline = await self._store.get(metric_key)
        updated = self.roll(baseline, current_count, now)
        await self._store.put(metric_key, updated)
        return updated

    async def evaluate(
        self,
        counts: Mapping[str, float],
        now: Optional[datetime] = None,
    ) -> tuple[list[DeviationResult], dict[str, Baseline]]:
        """Score ``counts`` against stored baselines without writing.

        Returns the deviations and the rolled baselines staged for
        ``commit``.
        """
        deviations: list[DeviationResult] = []
        staged: dict[str, Baseline] = {}
        for metric_key in sorted(counts):
            value = float(counts[metric_key])
            prior = await self._store.get(metric_key)
            deviations.append(self.deviation(value, prior))
            staged[metric_key] = self.roll(prior, value, now)

        flagged = [d for d in deviations if d.level in (DeviationLevel.SPIKE, DeviationLevel.ELEVATED)]
        logger.info(
            "Baseline evaluation: %d metrics, %d above baseline, %d insufficient",
            len(deviations),
            len(flagged),
            sum(1 for d in deviations if d.insufficient),
        )
        return deviations, staged

    async def known_metrics(self) -> list[str]:
        return sorted(await self._store.keys())

    async def commit(self, staged: Mapping[str, Baseline]) -> None:
        if staged:
            await self._store.put_many(dict(staged))


class InMemoryBaselineStore:
    """Process-local baseline store."""

    def __init__(self, baselines: Optional[Mapping[str, Baseline]] = None) -> None:
        self._baselines: dict[str, Baseline] = dict(baselines or {})

    async def get(self, metric_key: str) -> Baseline:
        return self._baselines.get(metric_key) or empty_baseline(metric_key)

    async def put(self, metric_key: str, baseline: Baseline) -> None:
        self._baselines[metric_key] = baseline

    async def put_many(self, baselines: Mapping[str, Baseline]) -> None:
        self._baselines.update(baselines)

    async def keys(self) -> list[str]:
        return list(self._baselines)

    def __len__(self) -> int:
        return len(self._baselines)
