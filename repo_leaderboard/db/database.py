from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from repo_leaderboard.core.config import settings

# =============================================================================
# Sync Engine & Session (workers, CLI and Celery tasks)
# =============================================================================
_sync_engine = None
_sync_session_maker = None


def _get_sync_database_url(url: str) -> str:
    """Make sure PostgreSQL URLs use the psycopg2 driver."""
    # postgresql+asyncpg:// -> postgresql+psycopg2://
    if "+asyncpg" in url:
        return url.replace("+asyncpg", "+psycopg2")
    # postgresql:// -> postgresql+psycopg2://
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg2://")
    return url


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def create_sync_engine(url: str | None = None, **kwargs) -> Engine:
    """Create an engine for ``url`` (defaults to the configured database).

    SQLite engines get foreign keys and WAL turned on so cascades and
    concurrent worker threads behave as they do on PostgreSQL.
    """
    url = _get_sync_database_url(url or str(settings.database_url))
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False, "timeout": 30})
        engine = create_engine(url, echo=settings.debug, **kwargs)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine
    return create_engine(
        url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,
        echo=settings.debug,
        **kwargs,
    )


def get_sync_engine() -> Engine:
    """Get or create the sync database engine (lazy initialization).

    This is lazily initialized to avoid import errors when psycopg2 is not installed.
    """
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = create_sync_engine()
    return _sync_engine


def get_sync_session_maker() -> sessionmaker[Session]:
    """Get or create the sync session maker (lazy initialization)."""
    global _sync_session_maker
    if _sync_session_maker is None:
        _sync_session_maker = sessionmaker(
            bind=get_sync_engine(),
            expire_on_commit=False,
        )
    return _sync_session_maker


@contextmanager
def get_sync_db(
    session_maker: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Context manager for synchronous database sessions.

    Commits on success and rolls back on any exception. Pass
    ``session_maker`` to run against a different engine (tests, tools).

    Usage in workers:
        with get_sync_db() as db:
            repository = db.get(Repository, repository_id)
            repository.last_attempt = utcnow()
    """
    session = (session_maker or get_sync_session_maker())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Engine | None = None) -> None:
    """Initialize database tables."""
    from repo_leaderboard.db.models import Base

    Base.metadata.create_all(engine or get_sync_engine())
