"""Database package for the notification engine."""

from src.db.base import Base
from src.db.engine import get_sync_engine, get_sync_session_factory, create_tables, dispose_engine, SyncSessionLocal
from src.db.models import NotificationDocumentRecord

__all__ = [
    "Base",
    "get_sync_engine",
    "get_sync_session_factory",
    "create_tables",
    "dispose_engine",
    "SyncSessionLocal",
    "NotificationDocumentRecord",
]
