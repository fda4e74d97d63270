from .database import (
    AnalysisBaselineRecord,
    AnalysisSnapshot,
    AsyncSessionLocal,
    Base,
    CountryScoreRecord,
    init_database,
)

__all__ = [
    "AnalysisBaselineRecord",
    "AnalysisSnapshot",
    "AsyncSessionLocal",
    "Base",
    "CountryScoreRecord",
    "init_database",
]
