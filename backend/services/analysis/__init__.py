"""Signal analysis core.

Clusters headlines, correlates market movers with news, tracks volume
baselines, detects geographic convergence, scores country instability
and turns the resulting detections into deduplicated signals.
"""

from .errors import AnalysisError, MalformedConfiguration, CycleTimeout
from .tokenizer import tokenize, jaccard, TokenCache, build_inverted_index, candidate_pairs
from .clustering import ClusteringEngine
from .entity_catalog import entity_catalog, EntityCatalog, EntityIndex, EntityRecord, build_entity_index
from .correlator import EntityCorrelator
from .baseline import BaselineDetector, InMemoryBaselineStore
from .country_catalog import country_catalog, CountryCatalog
from .convergence_grid import detect_convergence, detect_regional_convergence, grid_key
from .instability_scorer import InstabilityScorer
from .signal_generator import SignalGenerator, DedupTable
from .pipeline import AnalysisPipeline, CycleInput, CycleResult
from .inputs import FileSnapshotProvider, parse_cycle_input

__all__ = [
    "AnalysisError", "MalformedConfiguration", "CycleTimeout",
    "tokenize", "jaccard", "TokenCache", "build_inverted_index", "candidate_pairs",
    "ClusteringEngine",
    "entity_catalog", "EntityCatalog", "EntityIndex", "EntityRecord", "build_entity_index",
    "EntityCorrelator",
    "BaselineDetector", "InMemoryBaselineStore",
    "country_catalog", "CountryCatalog",
    "detect_convergence", "detect_regional_convergence", "grid_key",
    "InstabilityScorer",
    "SignalGenerator", "DedupTable",
    "AnalysisPipeline", "CycleInput", "CycleResult",
    "FileSnapshotProvider", "parse_cycle_input",
]
