# backend/app/db.py

import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from sqlalchemy.exc import SQLAlchemyError

from backend.app.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------
# Prometheus Metrics
# ---------------------------------------------------------
from prometheus_client import Counter, Histogram

DB_QUERY_LATENCY = Histogram(
    "db_query_latency_seconds",
    "Latency of DB operations (commit/rollback/init)"
)

DB_COMMIT_TOTAL = Counter(
    "db_commit_total",
    "Total DB commit operations",
    ["result"]  # ok | failed
)

DB_ROLLBACK_TOTAL = Counter(
    "db_rollback_total",
    "Total DB rollback operations",
    ["result"]  # ok | failed
)

DB_INIT_FAILURE_TOTAL = Counter(
    "db_init_failure_total",
    "DB initialization failures"
)

# ---------------------------------------------------------
# DATABASE ENGINE INIT
# ---------------------------------------------------------
engine_kwargs = {"future": True}
if settings.DATABASE_URL.startswith("sqlite"):
    engine_kwargs["connect_args"] = {"check_same_thread": False}
    # in-memory sqlite: every session must see the same connection
    if settings.DATABASE_URL in ("sqlite://", "sqlite:///:memory:"):
        engine_kwargs["poolclass"] = StaticPool

engine = create_engine(settings.DATABASE_URL, **engine_kwargs)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()


# ---------------------------------------------------------
# DB INIT FUNCTION
# ---------------------------------------------------------
def init_db():
    """
    Create DB tables from models. Call at startup.
    """
    import backend.app.models  # noqa: F401  (registers every mapped class)

    try:
        with DB_QUERY_LATENCY.time():
            Base.metadata.create_all(bind=engine)
    except SQLAlchemyError:
        DB_INIT_FAILURE_TOTAL.inc()
        logger.exception("Error initializing DB")
        raise


def get_db():
    """FastAPI dependency yielding a request-scoped session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# ---------------------------------------------------------
# SAFE HELPERS FOR COMMIT & ROLLBACK
# ---------------------------------------------------------
def safe_commit(db):
    """
    Commit with metrics instrumentation.
    """
    with DB_QUERY_LATENCY.time():
        try:
            db.commit()
            DB_COMMIT_TOTAL.labels(result="ok").inc()
        except Exception:
            DB_COMMIT_TOTAL.labels(result="failed").inc()
            raise


def safe_rollback(db):
    """
    Rollback with instrumentation.
    """
    with DB_QUERY_LATENCY.time():
        try:
            db.rollback()
            DB_ROLLBACK_TOTAL.labels(result="ok").inc()
        except Exception:
            DB_ROLLBACK_TOTAL.labels(result="failed").inc()
            raise
