"""Database engine and session factory."""

from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from src.settings import get_settings

_sync_engine = None


def get_sync_engine(database_url: Optional[str] = None):
    """Get or create the database engine.

    The first call fixes the URL (from the argument or settings); later
    calls return the same engine.
    """
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = create_engine(
            database_url or get_settings().database_url,
            pool_pre_ping=True,
        )
    return _sync_engine


def get_sync_session_factory(database_url: Optional[str] = None):
    return sessionmaker(bind=get_sync_engine(database_url), expire_on_commit=False)


def create_tables(database_url: Optional[str] = None) -> None:
    """Create missing tables directly from the ORM metadata."""
    from src.db.base import Base
    import src.db.models  # noqa: F401  (registers tables on Base)

    Base.metadata.create_all(get_sync_engine(database_url))


def dispose_engine() -> None:
    """Dispose the cached engine (used on shutdown and in tests)."""
    global _sync_engine
    if _sync_engine is not None:
        _sync_engine.dispose()
        _sync_engine = None


# Convenience alias
SyncSessionLocal = get_sync_session_factory
