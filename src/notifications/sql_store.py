"""SQLAlchemy-backed document store."""

from typing import Callable, Optional
import json

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from src.db.models import NotificationDocumentRecord
from src.notifications.store import NotificationStore


class SQLAlchemyStore(NotificationStore):
    """Stores documents as JSON text in the notification_documents table."""

    blocking_io = True

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _find(self, session: Session, collection: str, key: str) -> Optional[NotificationDocumentRecord]:
        stmt = select(NotificationDocumentRecord).where(
            NotificationDocumentRecord.collection == collection,
            NotificationDocumentRecord.key == key,
        )
        return session.execute(stmt).scalar_one_or_none()

    def get(self, collection: str, key: str) -> Optional[dict]:
        with self._session_factory() as session:
            record = self._find(session, collection, key)
            return json.loads(record.payload) if record else None

    def put(self, collection: str, key: str, document: dict, user_id: Optional[str] = None) -> None:
        payload = json.dumps(document)
        with self._session_factory() as session:
            record = self._find(session, collection, key)
            if record is None:
                session.add(NotificationDocumentRecord(
                    collection=collection,
                    key=key,
                    user_id=user_id,
                    payload=payload,
                ))
            else:
                record.payload = payload
                record.user_id = user_id
            session.commit()

    def delete(self, collection: str, key: str) -> bool:
        with self._session_factory() as session:
            record = self._find(session, collection, key)
            if record is None:
                return False
            session.delete(record)
            session.commit()
            return True

    def query_by_user(self, collection: str, user_id: str) -> list[dict]:
        stmt = select(NotificationDocumentRecord.payload).where(
            NotificationDocumentRecord.collection == collection,
            NotificationDocumentRecord.user_id == user_id,
        ).order_by(NotificationDocumentRecord.id)
        with self._session_factory() as session:
            return [json.loads(payload) for payload in session.execute(stmt).scalars()]

    def query(self, collection: str, predicate: Optional[Callable[[dict], bool]] = None) -> list[dict]:
        stmt = select(NotificationDocumentRecord.payload).where(
            NotificationDocumentRecord.collection == collection,
        ).order_by(NotificationDocumentRecord.id)
        with self._session_factory() as session:
            docs = [json.loads(payload) for payload in session.execute(stmt).scalars()]
        if predicate is None:
            return docs
        return [doc for doc in docs if predicate(doc)]
