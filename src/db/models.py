"""SQLAlchemy ORM models for the notification engine.

Tables:
- notification_documents: JSON documents keyed by (collection, key), covering
  subscriptions, notification history, preferences, scheduled notifications,
  templates and dead letters
"""

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)

from src.db.base import Base


class NotificationDocumentRecord(Base):
    """One stored notification-engine document."""

    __tablename__ = "notification_documents"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    collection = Column(String(30), nullable=False)
    key = Column(String(64), nullable=False)
    user_id = Column(String(64), nullable=True)
    payload = Column(Text, nullable=False)  # JSON
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("collection", "key", name="uq_notification_documents_collection_key"),
        Index("ix_notification_documents_collection_user", "collection", "user_id"),
    )
