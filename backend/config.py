import logging
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()


def _detect_project_root(backend_dir: Path) -> Path:
    """Resolve project root from the backend directory in the repo layout."""
    return backend_dir.parent.resolve()


_PROJECT_ROOT = _detect_project_root(_BACKEND_DIR)
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "analysis.db").resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"
_LOGGER = logging.getLogger(__name__)


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = f"{_SQLITE_ASYNC_PREFIX}{_DEFAULT_DB_PATH}"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False
    LOG_FILE: Optional[str] = None

    # Static catalogs (entity registry, country profiles)
    ANALYSIS_DATA_DIR: Optional[str] = None

    # Tokenizer / clustering
    ANALYSIS_SIMILARITY_THRESHOLD: float = 0.5
    ANALYSIS_MIN_TOKEN_LENGTH: int = 3
    ANALYSIS_VELOCITY_MIN_SPAN_MINUTES: float = 1.0
    ANALYSIS_TREND_RATIO: float = 0.2
    ANALYSIS_VELOCITY_SPIKE_PER_HOUR: float = 6.0
    ANALYSIS_SOURCE_CONVERGENCE_MIN_TYPES: int = 3
    ANALYSIS_SOURCE_CONVERGENCE_WINDOW_MINUTES: int = 60

    # Entity correlation
    ANALYSIS_MARKET_MOVE_THRESHOLD: float = 2.0

    # Baselines
    ANALYSIS_BASELINE_SHORT_DAYS: int = 7
    ANALYSIS_BASELINE_LONG_DAYS: int = 30
    ANALYSIS_BASELINE_MIN_SAMPLES: int = 6
    ANALYSIS_Z_SPIKE: float = 2.5
    ANALYSIS_Z_ELEVATED: float = 1.5
    ANALYSIS_Z_QUIET: float = -2.0

    # Geographic convergence
    ANALYSIS_GRID_CELL_DEGREES: float = 1.0
    ANALYSIS_CONVERGENCE_WINDOW_HOURS: int = 24
    ANALYSIS_CONVERGENCE_MIN_KINDS: int = 3

    # Country instability
    ANALYSIS_NEWS_VOLUME_THRESHOLD: float = 20.0
    ANALYSIS_LEARNING_MINUTES: float = 15.0
    ANALYSIS_CII_SPIKE_DELTA: int = 10

    # Signal dedup TTLs
    ANALYSIS_TTL_MARKET_MINUTES: int = 360
    ANALYSIS_TTL_PREDICTION_MINUTES: int = 120
    ANALYSIS_TTL_DEFAULT_MINUTES: int = 30

    # Refresh loop / worker pool
    ANALYSIS_ENABLED: bool = True
    ANALYSIS_INTERVAL_SECONDS: int = 300
    ANALYSIS_CYCLE_TIMEOUT_SECONDS: float = 60.0
    ANALYSIS_WORKER_MODE: str = "process"
    ANALYSIS_WORKER_POOL_SIZE: int = 1
    ANALYSIS_INPUT_SNAPSHOT_PATH: Optional[str] = None

    @field_validator("ANALYSIS_SIMILARITY_THRESHOLD", "ANALYSIS_TREND_RATIO")
    @classmethod
    def validate_unit_interval(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("must be in (0, 1]")
        return v

    @field_validator("ANALYSIS_BASELINE_MIN_SAMPLES", "ANALYSIS_CONVERGENCE_MIN_KINDS")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("ANALYSIS_GRID_CELL_DEGREES", "ANALYSIS_NEWS_VOLUME_THRESHOLD")
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("ANALYSIS_WORKER_MODE")
    @classmethod
    def validate_worker_mode(cls, v: str) -> str:
        mode = (v or "").strip().lower()
        if mode not in {"process", "thread"}:
            raise ValueError("ANALYSIS_WORKER_MODE must be 'process' or 'thread'")
        return mode

    @field_validator("DATABASE_URL")
    @classmethod
    def ensure_sqlite_parent_dir(cls, v: str) -> str:
        if v.startswith(_SQLITE_ASYNC_PREFIX):
            raw_path = v[len(_SQLITE_ASYNC_PREFIX):]
            if raw_path and raw_path != ":memory:":
                try:
                    Path(raw_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
                except OSError as exc:
                    _LOGGER.warning("Could not create database directory for %s: %s", raw_path, exc)
        return v

    class Config:
        # Project-root .env first, then backend/.env as an override.
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
