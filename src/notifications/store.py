"""Document store interface for notification state.

Every record is stored as a JSON-compatible dict under a (collection, key)
pair, optionally tagged with the owning user for per-user queries.
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from copy import deepcopy
from typing import Any, Callable, Optional
import asyncio
import threading

# Collections
SUBSCRIPTIONS = "subscriptions"
NOTIFICATIONS = "notifications"
PREFERENCES = "preferences"
SCHEDULED = "scheduled"
TEMPLATES = "templates"
DEAD_LETTERS = "dead_letters"

COLLECTIONS = (SUBSCRIPTIONS, NOTIFICATIONS, PREFERENCES, SCHEDULED, TEMPLATES, DEAD_LETTERS)


class NotificationStore(ABC):
    """Narrow persistence interface used by the engine components."""

    # Calls block on I/O and must run off the event loop
    blocking_io = False

    @abstractmethod
    def get(self, collection: str, key: str) -> Optional[dict]:
        """Fetch one document, or None."""

    @abstractmethod
    def put(self, collection: str, key: str, document: dict, user_id: Optional[str] = None) -> None:
        """Insert or replace a document."""

    @abstractmethod
    def delete(self, collection: str, key: str) -> bool:
        """Delete a document. Returns False if it did not exist."""

    @abstractmethod
    def query_by_user(self, collection: str, user_id: str) -> list[dict]:
        """All documents in a collection owned by user_id."""

    @abstractmethod
    def query(self, collection: str, predicate: Optional[Callable[[dict], bool]] = None) -> list[dict]:
        """All documents in a collection matching predicate."""


async def run_store_io(store: NotificationStore, fn: Callable[..., Any], *args, **kwargs) -> Any:
    """Call fn, in a worker thread when the store does blocking I/O."""
    if store.blocking_io:
        return await asyncio.to_thread(fn, *args, **kwargs)
    return fn(*args, **kwargs)


class InMemoryStore(NotificationStore):
    """Process-local store. Documents are copied on the way in and out."""

    def __init__(self):
        self._docs: dict[str, dict[str, dict]] = defaultdict(dict)
        self._owners: dict[str, dict[str, Optional[str]]] = defaultdict(dict)
        self._lock = threading.Lock()

    def get(self, collection: str, key: str) -> Optional[dict]:
        with self._lock:
            doc = self._docs[collection].get(key)
            return deepcopy(doc) if doc is not None else None

    def put(self, collection: str, key: str, document: dict, user_id: Optional[str] = None) -> None:
        with self._lock:
            self._docs[collection][key] = deepcopy(document)
            self._owners[collection][key] = user_id

    def delete(self, collection: str, key: str) -> bool:
        with self._lock:
            if key not in self._docs[collection]:
                return False
            del self._docs[collection][key]
            self._owners[collection].pop(key, None)
            return True

    def query_by_user(self, collection: str, user_id: str) -> list[dict]:
        with self._lock:
            owners = self._owners[collection]
            return [
                deepcopy(doc)
                for key, doc in self._docs[collection].items()
                if owners.get(key) == user_id
            ]

    def query(self, collection: str, predicate: Optional[Callable[[dict], bool]] = None) -> list[dict]:
        with self._lock:
            docs = [deepcopy(doc) for doc in self._docs[collection].values()]
        if predicate is None:
            return docs
        return [doc for doc in docs if predicate(doc)]

    def count(self, collection: str) -> int:
        with self._lock:
            return len(self._docs[collection])
