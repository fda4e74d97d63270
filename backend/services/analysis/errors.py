"""Exceptions raised by the analysis core.

Only configuration problems and the orchestration deadline are errors.
Bad or missing data degrades results instead, and a baseline that is too
short is reported through ``DeviationLevel.INSUFFICIENT_DATA``.
"""

from __future__ import annotations


class AnalysisError(Exception):
    """Base class for analysis-core failures."""


class MalformedConfiguration(AnalysisError):
    """Static catalog content is unusable (raised at load time only)."""

    def __init__(self, message: str, *, source: str | None = None) -> None:
        self.source = source
        if source:
            message = f"{source}: {message}"
        super().__init__(message)


class CycleTimeout(AnalysisError):
    """The worker pool did not return the heavy stage within the deadline."""

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"analysis heavy stage exceeded {timeout_seconds:.1f}s")
