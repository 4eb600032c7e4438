"""
Document store with live, filtered subscriptions.

The feedback lifecycle only needs three things from its database:
- add a document to a collection (the store assigns the id)
- fetch one document by id
- subscribe to every document in a collection matching one field value,
  receiving the FULL matching set again whenever something changes

Documents are JSON payloads in the `documents` table (see app.models).
Every write that goes through this store (our own creates as well as the
processing server's status updates) notifies the subscribers of that
collection. Notifications are delivered from tasks on the event loop, so
a writer never waits on subscribers.

Usage:
    store = get_document_store()
    doc_id = await store.add_document("feedback", {"userId": "u1", ...})
    registration = store.subscribe("feedback", "userId", "u1", listener)
    ...
    registration.remove()
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from app.database import AsyncSessionLocal
from app.models import Document

logger = logging.getLogger(__name__)

FEEDBACK_COLLECTION = "feedback"
USERS_COLLECTION = "users"


class StoreError(Exception):
    """The store could not complete a read or write."""


class DocumentNotFound(StoreError):
    def __init__(self, collection: str, document_id: str):
        self.collection = collection
        self.document_id = document_id
        super().__init__(f"{collection}/{document_id} not found")


@dataclass(frozen=True)
class StoredDocument:
    id: str
    data: dict[str, Any]


# Called with (documents, None) on success or (None, error) on failure
SnapshotListener = Callable[[Optional[list[StoredDocument]], Optional[Exception]], None]


@dataclass(eq=False)
class ListenerRegistration:
    """Handle for one live subscription. remove() stops deliveries."""

    store: "DocumentStore"
    collection: str
    field_name: str
    value: str
    listener: SnapshotListener
    active: bool = True
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def remove(self) -> None:
        if self.active:
            self.active = False
            self.store._unregister(self)


class DocumentStore:
    """SQLAlchemy-backed document store."""

    def __init__(self, session_factory=AsyncSessionLocal):
        self._session_factory = session_factory
        self._registrations: dict[str, list[ListenerRegistration]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()

    # --- Writes ---

    async def add_document(self, collection: str, fields: dict[str, Any]) -> str:
        """Create a document and return its generated id."""
        try:
            async with self._session_factory() as session:
                document = Document(collection=collection, data=dict(fields))
                session.add(document)
                await session.commit()
                document_id = document.id
        except SQLAlchemyError as e:
            logger.error("Failed to add document to %s: %s", collection, e)
            raise StoreError(f"Failed to add document to {collection}: {e}") from e

        logger.info("Created %s/%s", collection, document_id)
        self._notify(collection)
        return document_id

    async def set_document(self, collection: str, document_id: str, fields: dict[str, Any]) -> None:
        """Create or replace a document under a caller-chosen id."""
        try:
            async with self._session_factory() as session:
                document = await session.get(Document, document_id)
                if document is None:
                    session.add(Document(id=document_id, collection=collection, data=dict(fields)))
                else:
                    document.data = dict(fields)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to write %s/%s: %s", collection, document_id, e)
            raise StoreError(f"Failed to write {collection}/{document_id}: {e}") from e

        self._notify(collection)

    async def update_document(self, collection: str, document_id: str, fields: dict[str, Any]) -> None:
        """Merge fields into an existing document.

        Raises:
            DocumentNotFound: If there is no such document.
        """
        try:
            async with self._session_factory() as session:
                document = await session.get(Document, document_id)
                if document is None or document.collection != collection:
                    raise DocumentNotFound(collection, document_id)
                # Reassign so the JSON column is flagged dirty
                document.data = {**document.data, **fields}
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to update %s/%s: %s", collection, document_id, e)
            raise StoreError(f"Failed to update {collection}/{document_id}: {e}") from e

        self._notify(collection)

    # --- Reads ---

    async def get_document(self, collection: str, document_id: str) -> Optional[dict[str, Any]]:
        """Fetch one document's fields, or None if it doesn't exist."""
        try:
            async with self._session_factory() as session:
                document = await session.get(Document, document_id)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read {collection}/{document_id}: {e}") from e

        if document is None or document.collection != collection:
            return None
        return dict(document.data)

    async def query(self, collection: str, field_name: str, value: str) -> list[StoredDocument]:
        """All documents in a collection whose field equals value."""
        stmt = (
            select(Document)
            .where(
                Document.collection == collection,
                Document.data[field_name].as_string() == value,
            )
            .order_by(Document.created_at)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                documents = result.scalars().all()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to query {collection}: {e}") from e

        return [StoredDocument(id=d.id, data=dict(d.data)) for d in documents]

    # --- Subscriptions ---

    def subscribe(
        self,
        collection: str,
        field_name: str,
        value: str,
        listener: SnapshotListener,
    ) -> ListenerRegistration:
        """Start delivering snapshots of matching documents to listener.

        The current snapshot is delivered right away, then again after
        every write to the collection. Must be called from a running loop.
        """
        registration = ListenerRegistration(
            store=self,
            collection=collection,
            field_name=field_name,
            value=value,
            listener=listener,
        )
        self._registrations[collection].append(registration)
        logger.debug("Listener added for %s where %s == %s", collection, field_name, value)
        self._schedule(registration)
        return registration

    def listener_count(self, collection: str) -> int:
        return len(self._registrations.get(collection, []))

    async def flush(self) -> None:
        """Wait until every scheduled snapshot delivery has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _unregister(self, registration: ListenerRegistration) -> None:
        registrations = self._registrations.get(registration.collection, [])
        if registration in registrations:
            registrations.remove(registration)
            logger.debug("Listener removed for %s (remaining: %d)",
                         registration.collection, len(registrations))
        if not registrations:
            self._registrations.pop(registration.collection, None)

    def _notify(self, collection: str) -> None:
        for registration in list(self._registrations.get(collection, [])):
            self._schedule(registration)

    def _schedule(self, registration: ListenerRegistration) -> None:
        task = asyncio.get_running_loop().create_task(self._deliver(registration))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, registration: ListenerRegistration) -> None:
        # One delivery at a time per registration, each querying after the
        # previous one finished, so snapshots never go backwards.
        async with registration._lock:
            if not registration.active:
                return
            try:
                documents = await self.query(
                    registration.collection, registration.field_name, registration.value
                )
            except StoreError as e:
                logger.error("Snapshot delivery failed for %s: %s", registration.collection, e)
                if registration.active:
                    registration.listener(None, e)
                return

            if registration.active:
                registration.listener(documents, None)


# Global singleton instance
_store: Optional[DocumentStore] = None


def get_document_store() -> DocumentStore:
    """Get the process-wide document store."""
    global _store
    if _store is None:
        _store = DocumentStore()
    return _store
