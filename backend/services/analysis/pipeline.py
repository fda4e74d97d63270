"""Per-cycle orchestration of the analysis stages.

Stage order is fixed: tokenize and cluster, correlate, then deviation,
convergence and country scoring, then signal generation.  Clustering and
correlation run in a worker pool on a pickled snapshot of the cycle input
and are awaited with a deadline.  Baselines, country score pairs and
dedup entries are staged during the cycle and only committed once every
stage has finished, so an abandoned cycle leaves no partial state.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import Counter
from concurrent.futures import Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from config import settings
from interfaces.stores import CountryScoreStore, CycleCommitter
from utils.logger import pipeline_logger
from .baseline import BaselineDetector
from .clustering import ClusteringEngine
from .convergence_grid import detect_convergence, detect_regional_convergence
from .correlator import EntityCorrelator
from .country_catalog import CountryCatalog, country_catalog
from .detections import (
    cii_detections,
    cluster_detections,
    convergence_detections,
    correlation_detections,
    deviation_detections,
)
from .entity_catalog import EntityIndex
from .errors import CycleTimeout
from .instability_scorer import InstabilityScorer
from .records import (
    ConvergenceAlert,
    CorrelationResult,
    CountryScore,
    Detection,
    DeviationResult,
    GeoEvent,
    GeoEventKind,
    MarketQuote,
    NewsCluster,
    NewsItem,
    RegionalConvergence,
    Signal,
    coerce_utc,
    utc_now,
)
from .signal_generator import SignalGenerator
from .tokenizer import TokenCache

logger = pipeline_logger


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CycleInput:
    """Immutable input batch for one refresh cycle."""

    news: tuple[NewsItem, ...] = ()
    quotes: tuple[MarketQuote, ...] = ()
    geo_events: tuple[GeoEvent, ...] = ()
    upstream: tuple[Detection, ...] = ()
    collected_at: Optional[datetime] = None


@dataclass
class CycleResult:
    cycle_id: str
    started_at: datetime
    completed_at: datetime
    clusters: list[NewsCluster] = field(default_factory=list)
    correlations: list[CorrelationResult] = field(default_factory=list)
    deviations: list[DeviationResult] = field(default_factory=list)
    convergence_alerts: list[ConvergenceAlert] = field(default_factory=list)
    regional_convergences: list[RegionalConvergence] = field(default_factory=list)
    country_scores: list[CountryScore] = field(default_factory=list)
    signals: list[Signal] = field(default_factory=list)
    stats: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HeavyStageInput:
    news: tuple[NewsItem, ...]
    quotes: tuple[MarketQuote, ...]
    entity_index: EntityIndex
    similarity_threshold: float
    min_span_minutes: float
    trend_ratio: float
    move_threshold: float


@dataclass(frozen=True)
class HeavyStageOutput:
    clusters: list[NewsCluster]
    correlations: list[CorrelationResult]
    distinct_titles: int
    elapsed_seconds: float


def run_heavy_stage(snapshot: HeavyStageInput) -> HeavyStageOutput:
    """Cluster headlines and correlate market movers.  Runs in the worker pool."""
    started = time.monotonic()
    cache = TokenCache()
    clusters = ClusteringEngine(
        similarity_threshold=snapshot.similarity_threshold,
        min_span_minutes=snapshot.min_span_minutes,
        trend_ratio=snapshot.trend_ratio,
    ).cluster(snapshot.news, cache)
    correlations = EntityCorrelator(
        snapshot.entity_index,
        move_threshold=snapshot.move_threshold,
    ).correlate_quotes(snapshot.quotes, clusters)
    return HeavyStageOutput(
        clusters=clusters,
        correlations=correlations,
        distinct_titles=len(cache),
        elapsed_seconds=round(time.monotonic() - started, 3),
    )


def volume_metrics(batch: CycleInput, known: Iterable[str] = ()) -> dict[str, float]:
    """Per-cycle counts tracked against rolling baselines.

    Every key in ``known`` is reported, at zero when the cycle has no items
    for it, so a category that goes silent can still read as quiet.
    """
    counts: Counter = Counter()
    for key in known:
        counts[key] += 0
    for item in batch.news:
        counts[f"news:{(item.category or 'general').strip().lower()}"] += 1
    kinds = Counter(GeoEventKind(event.kind) for event in batch.geo_events)
    for kind in GeoEventKind:
        counts[f"{kind.value}s:global"] = kinds.get(kind, 0)
    return {key: float(value) for key, value in counts.items()}


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class AnalysisPipeline:
    """Runs analysis cycles one at a time and owns cross-cycle state."""

    def __init__(
        self,
        entity_index: EntityIndex,
        *,
        baseline_detector: Optional[BaselineDetector] = None,
        scorer: Optional[InstabilityScorer] = None,
        generator: Optional[SignalGenerator] = None,
        score_store: Optional[CountryScoreStore] = None,
        committer: Optional[CycleCommitter] = None,
        countries: Optional[CountryCatalog] = None,
        executor: Optional[Executor] = None,
        worker_mode: Optional[str] = None,
        pool_size: Optional[int] = None,
        cycle_timeout: Optional[float] = None,
    ) -> None:
        self._index = entity_index
        self._countries = countries or country_catalog
        # Malformed country profiles raise here, not mid-cycle.
        self._countries.validate()
        self._baselines = baseline_detector or BaselineDetector()
        self._scorer = scorer or InstabilityScorer(self._countries)
        self._generator = generator or SignalGenerator()
        self._score_store = score_store
        self._committer = committer
        self._executor = executor
        self._owns_executor = executor is None
        self._worker_mode = (worker_mode or settings.ANALYSIS_WORKER_MODE).lower()
        self._pool_size = max(1, int(pool_size or settings.ANALYSIS_WORKER_POOL_SIZE))
        self._timeout = float(cycle_timeout or settings.ANALYSIS_CYCLE_TIMEOUT_SECONDS)
        self._heavy_future: Optional[Future] = None
        self.cycles_completed = 0
        self.cycles_skipped = 0

    # -- Lifecycle -----------------------------------------------------------

    @property
    def scorer(self) -> InstabilityScorer:
        return self._scorer

    @property
    def generator(self) -> SignalGenerator:
        return self._generator

    @property
    def busy(self) -> bool:
        return self._heavy_future is not None and not self._heavy_future.done()

    def _pool(self) -> Executor:
        if self._executor is None:
            if self._worker_mode == "process":
                self._executor = ProcessPoolExecutor(max_workers=self._pool_size)
            else:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._pool_size, thread_name_prefix="analysis"
                )
        return self._executor

    async def restore(self) -> int:
        """Load prior country scores; restoring any bypasses learning mode."""
        if self._score_store is None:
            return 0
        priors = await self._score_store.load_priors()
        restored = self._scorer.restore(priors)
        if restored:
            self._generator.bypass_learning()
        return restored

    def shutdown(self) -> None:
        if self._executor is not None and self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    # -- Cycle ---------------------------------------------------------------

    async def _persist(self, baselines: dict, scores: list[CountryScore]) -> None:
        """Write staged baselines and scores; a failure leaves both unwritten."""
        if self._committer is not None:
            await self._committer.commit_cycle(baselines, scores)
            return
        # No shared transaction: baselines only after the score store accepted.
        if self._score_store is not None:
            await self._score_store.save(scores)
        await self._baselines.commit(baselines)

    async def _run_heavy(self, batch: CycleInput) -> HeavyStageOutput:
        snapshot = HeavyStageInput(
            news=tuple(batch.news),
            quotes=tuple(batch.quotes),
            entity_index=self._index,
            similarity_threshold=settings.ANALYSIS_SIMILARITY_THRESHOLD,
            min_span_minutes=settings.ANALYSIS_VELOCITY_MIN_SPAN_MINUTES,
            trend_ratio=settings.ANALYSIS_TREND_RATIO,
            move_threshold=settings.ANALYSIS_MARKET_MOVE_THRESHOLD,
        )
        future = self._pool().submit(run_heavy_stage, snapshot)
        self._heavy_future = future
        try:
            return await asyncio.wait_for(asyncio.wrap_future(future), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise CycleTimeout(self._timeout) from exc

    async def run_cycle(
        self,
        batch: CycleInput,
        now: Optional[datetime] = None,
    ) -> Optional[CycleResult]:
        """Run one cycle.  Returns ``None`` when a prior heavy stage is still running.

        Raises ``CycleTimeout`` when the worker pool misses the deadline;
        nothing is committed in that case.
        """
        if self.busy:
            self.cycles_skipped += 1
            logger.warning("Skipping analysis cycle: previous heavy stage still running")
            return None

        cycle_id = uuid.uuid4().hex[:12]
        log = logger.with_context(cycle_id=cycle_id)
        now = coerce_utc(now) or coerce_utc(batch.collected_at) or utc_now()
        started = utc_now()

        heavy = await self._run_heavy(batch)

        known = await self._baselines.known_metrics()
        deviations, staged_baselines = await self._baselines.evaluate(volume_metrics(batch, known), now)
        alerts = detect_convergence(batch.geo_events, now=now)
        regional = detect_regional_convergence(batch.geo_events, self._countries.regions(), now=now)
        scores = self._scorer.compute(
            clusters=heavy.clusters,
            geo_events=batch.geo_events,
            convergence_alerts=alerts,
            now=now,
        )

        detections: list[Detection] = []
        detections.extend(cluster_detections(heavy.clusters))
        detections.extend(correlation_detections(heavy.correlations))
        detections.extend(deviation_detections(deviations))
        detections.extend(convergence_detections(alerts))
        detections.extend(cii_detections(scores))
        detections.extend(batch.upstream)
        planned = self._generator.plan(detections, now)

        # All stages done: commit cross-cycle state together.
        await self._persist(staged_baselines, scores)
        self._scorer.commit(scores)
        self._generator.commit(planned)
        self.cycles_completed += 1

        completed = utc_now()
        stats = {
            "news_items": len(batch.news),
            "clusters": len(heavy.clusters),
            "distinct_titles": heavy.distinct_titles,
            "heavy_stage_seconds": heavy.elapsed_seconds,
            "market_movers": len(heavy.correlations),
            "deviations": len(deviations),
            "convergence_alerts": len(alerts),
            "countries_scored": len(scores),
            "detections": len(detections),
            "signals": len(planned.signals),
            "suppressed": planned.suppressed,
            "learning_gated": planned.gated,
            "cycle_seconds": round((completed - started).total_seconds(), 3),
        }
        log.info(
            "Analysis cycle complete: %d clusters, %d signals (%d suppressed)",
            len(heavy.clusters),
            len(planned.signals),
            planned.suppressed,
            **stats,
        )
        return CycleResult(
            cycle_id=cycle_id,
            started_at=started,
            completed_at=completed,
            clusters=heavy.clusters,
            correlations=heavy.correlations,
            deviations=deviations,
            convergence_alerts=alerts,
            regional_convergences=regional,
            country_scores=scores,
            signals=planned.signals,
            stats=stats,
        )
