"""Collaborator contracts for the analysis core.

These protocols define the minimum async API the refresh loop needs from
persistence and input collaborators, decoupling the pipeline from
concrete storage and feed clients.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Mapping, Optional, Protocol, Sequence

if TYPE_CHECKING:
    from services.analysis.pipeline import CycleInput
    from services.analysis.records import Baseline, CountryScore


class BaselineStore(Protocol):
    """Persisted rolling baselines keyed by an opaque metric key."""

    async def get(self, metric_key: str) -> "Baseline":
        """Return the stored baseline, or an empty one on first run."""

    async def put(self, metric_key: str, baseline: "Baseline") -> None:
        """Store a single baseline."""

    async def put_many(self, baselines: Mapping[str, "Baseline"]) -> None:
        """Store several baselines in one transaction."""

    async def keys(self) -> list[str]:
        """Every metric key with a stored baseline."""


class CountryScoreStore(Protocol):
    """Prior composite scores so trend survives restarts."""

    async def load_priors(self) -> dict[str, tuple[Optional[int], Optional[int]]]:
        """Return ``{country_code: (previous, current)}``."""

    async def save(self, scores: Sequence["CountryScore"]) -> None:
        """Persist the committed scores of a cycle."""


class CycleCommitter(Protocol):
    """Persists one cycle's baselines and country scores together."""

    async def commit_cycle(
        self,
        baselines: Mapping[str, "Baseline"],
        scores: Sequence["CountryScore"],
    ) -> None:
        """Write both or neither."""


class InputProvider(Protocol):
    """Supplies one cycle's input batch."""

    async def fetch(self) -> Optional["CycleInput"]:
        """Return the next batch, or ``None`` when nothing is available."""
