from sqlalchemy import (
    Column,
    String,
    Integer,
    Float,
    DateTime,
    JSON,
    Index,
    event,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import declarative_base, sessionmaker
from datetime import datetime, timezone
import logging

from config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ==================== BASELINES ====================


class AnalysisBaselineRecord(Base):
    """Rolling observations and window stats for one volume metric."""

    __tablename__ = "analysis_baselines"

    metric_key = Column(String, primary_key=True)  # e.g. "news:politics"
    observations = Column(JSON, nullable=False, default=list)  # [{"t": iso, "v": float}]
    short_mean = Column(Float, nullable=False, default=0.0)
    short_stddev = Column(Float, nullable=False, default=0.0)
    short_samples = Column(Integer, nullable=False, default=0)
    long_mean = Column(Float, nullable=False, default=0.0)
    long_stddev = Column(Float, nullable=False, default=0.0)
    long_samples = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


# ==================== COUNTRY SCORES ====================


class CountryScoreRecord(Base):
    """Latest committed instability score per country."""

    __tablename__ = "country_score_records"

    country_code = Column(String, primary_key=True)
    name = Column(String, nullable=True)
    composite = Column(Integer, nullable=False)  # 0-100
    previous = Column(Integer, nullable=True)
    level = Column(String, nullable=False)
    trend = Column(String, nullable=False)  # rising/falling/stable
    components = Column(JSON, nullable=True)  # unrest/security/information breakdown
    computed_at = Column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        Index("idx_country_score_composite", "composite"),
        Index("idx_country_score_computed", "computed_at"),
    )


# ==================== WORKER SNAPSHOT ====================


class AnalysisSnapshot(Base):
    """Worker snapshot for the analysis refresh loop."""

    __tablename__ = "analysis_snapshots"

    id = Column(String, primary_key=True, default="latest")
    status = Column(JSON, nullable=True)
    signals_json = Column(JSON, nullable=True)  # last batch of signals
    stats = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


# ==================== DATABASE SETUP ====================

# SQLite-specific: improve concurrency (WAL + busy_timeout applied in _set_sqlite_pragma)
_engine_kw: dict = {"echo": False}
if "sqlite" in settings.DATABASE_URL:
    _engine_kw["connect_args"] = {"timeout": 30}  # Wait up to 30s when DB is locked

async_engine = create_async_engine(settings.DATABASE_URL, **_engine_kw)


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite for concurrent readers (WAL mode, busy timeout)."""
    if "sqlite" not in settings.DATABASE_URL:
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


event.listens_for(async_engine.sync_engine, "connect")(_set_sqlite_pragma)

AsyncSessionLocal = sessionmaker(
    async_engine, class_=AsyncSession, expire_on_commit=False
)


async def init_database(engine=None):
    """Create analysis tables if they do not exist."""
    engine = engine or async_engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Analysis database initialized")

