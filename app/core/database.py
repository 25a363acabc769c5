"""Database configuration and session management.

Features:
- Connection pooling with configurable settings
- Query performance monitoring and slow query logging
- SQLite pragmas and a shared in-memory pool for tests
"""

import logging
import time
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

IS_SQLITE = settings.database_url.startswith("sqlite")
IS_MEMORY = IS_SQLITE and (
    settings.database_url in ("sqlite://", "sqlite:///:memory:")
)

# Ensure data directory exists for file-backed SQLite
if IS_SQLITE and not IS_MEMORY:
    db_path = settings.database_url.replace("sqlite:///", "")
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

engine_args: dict[str, Any] = {
    "echo": settings.debug and settings.enable_query_logging,
}

if IS_SQLITE:
    engine_args["connect_args"] = {"check_same_thread": False}
    if IS_MEMORY:
        # One shared connection so every session sees the same in-memory database
        engine_args["poolclass"] = StaticPool
else:
    engine_args.update({
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_timeout": settings.database_pool_timeout,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    })

engine = create_engine(settings.database_url, **engine_args)


@event.listens_for(engine, "before_cursor_execute")
def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    """Capture query start time for performance monitoring."""
    conn.info.setdefault("query_start_time", [])
    conn.info["query_start_time"].append(time.perf_counter())


@event.listens_for(engine, "after_cursor_execute")
def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    """Log slow queries based on configured threshold."""
    start_time = conn.info["query_start_time"].pop()
    total_time = (time.perf_counter() - start_time) * 1000

    if total_time > settings.slow_query_threshold_ms:
        logger.warning(
            f"Slow query detected ({total_time:.2f}ms): {statement[:200]}..."
        )

    if settings.debug and settings.enable_query_logging:
        logger.debug(f"Query executed in {total_time:.2f}ms: {statement[:100]}...")


if IS_SQLITE:
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        """Set SQLite pragmas for performance."""
        cursor = dbapi_connection.cursor()
        if not IS_MEMORY:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA cache_size=10000")
        cursor.execute("PRAGMA temp_store=MEMORY")
        cursor.close()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency for database sessions."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Context manager for database sessions (for background jobs)."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db() -> None:
    """Initialize database tables and their indexes.

    Indexes are declared on the models (``__table_args__``) so that
    ``create_all`` builds them together with the tables.
    """
    # Import models to register them with Base
    from app import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info(f"Database ready ({len(Base.metadata.tables)} tables)")


def get_db_stats(db: Session) -> dict[str, Any]:
    """Get database statistics for monitoring."""
    stats = {}

    for table in ["cars", "cars_staging", "sync_runs", "sync_status"]:
        try:
            result = db.execute(text(f"SELECT COUNT(*) FROM {table}"))
            stats[f"{table}_count"] = result.scalar()
        except Exception:
            stats[f"{table}_count"] = None

    return stats
