"""
Feedback lifecycle controller.

This owns the flow for one user's punch-video feedback:
1. submit_feedback: create a "pending" record, then upload the capture to
   the processing server with the record's id
2. observe_feedback: keep a live, filtered subscription on the user's
   records, validating every snapshot before republishing it
3. close: release the subscription

Status changes after the upload (pending → processing → completed/error)
are written by the processing server, never by us. We only see them
arrive through the subscription:

    controller = FeedbackController(UserSession("u1"), store, uploader, signals)
    async with controller:
        feed = controller.observe_feedback()
        feedback_id = await controller.submit_feedback(media)
        snapshot = await feed.next()   # eventually contains feedback_id

No retries happen here. A failed upload leaves its record "pending" for
the user (or the server) to sort out.
"""

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Optional

from app.schemas.feedback import FeedbackRecord, FeedbackStatus
from app.services.signals import FeedbackSignals, get_feedback_signals
from app.services.store import (
    FEEDBACK_COLLECTION,
    USERS_COLLECTION,
    DocumentStore,
    ListenerRegistration,
    StoredDocument,
    StoreError,
    get_document_store,
)
from app.services.upload import (
    MediaHandle,
    ProgressCallback,
    UploadError,
    UploadService,
    get_upload_service,
)
from app.services.validation import normalize_documents

logger = logging.getLogger(__name__)

OWNER_FIELD = "userId"
COACH_FIELD = "myCoach"


# --- Errors ---

class FeedbackError(Exception):
    """Base class for submission failures shown to the user."""


class UserNotAuthenticated(FeedbackError):
    def __init__(self):
        super().__init__("User not logged in")


class SubmissionInProgress(FeedbackError):
    def __init__(self, media_key: str):
        self.media_key = media_key
        super().__init__("This video is already being submitted")


class RecordCreationFailed(FeedbackError):
    def __init__(self, cause: Exception):
        self.cause = cause
        super().__init__(f"Failed to create feedback: {cause}")


class UploadFailed(FeedbackError):
    def __init__(self, cause: Exception, feedback_id: str):
        self.cause = cause
        self.feedback_id = feedback_id
        super().__init__(f"Upload error: {cause}")


# --- Session and snapshots ---

@dataclass(frozen=True)
class UserSession:
    """Who the controller acts for. An empty user_id means signed out."""
    user_id: str = ""

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)


@dataclass(frozen=True)
class FeedbackSnapshot:
    """The full validated record set at one point in time."""
    records: Mapping[str, FeedbackRecord]
    received_at: datetime
    error: Optional[str] = None

    @classmethod
    def empty(cls) -> "FeedbackSnapshot":
        return cls(records=MappingProxyType({}), received_at=datetime.now(timezone.utc))


class FeedClosed(Exception):
    """The subscription behind a feed was released."""


_CLOSED = object()


class FeedbackFeed:
    """Channel of FeedbackSnapshots for one subscription.

    Snapshots are complete, so a consumer that falls behind only needs the
    newest one: the queue holds a single pending item and replaces it.
    """

    def __init__(self, owner_id: str):
        self.owner_id = owner_id
        self.latest: Optional[FeedbackSnapshot] = None
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)

    def _replace(self, item) -> None:
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(item)

    def publish(self, snapshot: FeedbackSnapshot) -> None:
        if self.closed:
            return
        self.latest = snapshot
        self._replace(snapshot)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._replace(_CLOSED)

    async def next(self) -> FeedbackSnapshot:
        """Wait for the next snapshot.

        Raises:
            FeedClosed: Once the subscription has been released.
        """
        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise FeedClosed()
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> FeedbackSnapshot:
        try:
            return await self.next()
        except FeedClosed:
            raise StopAsyncIteration


# --- Controller ---

@dataclass(eq=False)
class FeedbackController:
    session: UserSession
    store: DocumentStore
    uploader: UploadService
    signals: FeedbackSignals
    _in_flight: set = field(default_factory=set, init=False, repr=False)
    _registration: Optional[ListenerRegistration] = field(default=None, init=False, repr=False)
    _feed: Optional[FeedbackFeed] = field(default=None, init=False, repr=False)

    async def __aenter__(self) -> "FeedbackController":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --- Submission ---

    async def submit_feedback(
        self,
        media: MediaHandle,
        owner_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        """Create a pending record for a capture and upload it.

        Args:
            media: The recorded capture.
            owner_id: Submitting user; defaults to the session's user.
            on_progress: Optional upload progress callback.

        Returns:
            The new feedback id, once the processing server accepted the upload.

        Raises:
            UserNotAuthenticated: No owner identity. Nothing is created.
            SubmissionInProgress: This capture is already being submitted.
            RecordCreationFailed: The store rejected the profile read or create.
            UploadFailed: The upload failed; the record stays "pending".
        """
        owner_id = self.session.user_id if owner_id is None else owner_id
        if not owner_id:
            raise UserNotAuthenticated()

        # Claimed before the first await so a concurrent call can't slip in
        key = media.key
        if key in self._in_flight:
            logger.info("Rejecting duplicate submission for %s", media.filename)
            raise SubmissionInProgress(key)
        self._in_flight.add(key)

        try:
            try:
                profile = await self.store.get_document(USERS_COLLECTION, owner_id) or {}
                coach_id = profile.get(COACH_FIELD)
                if not isinstance(coach_id, str) or not coach_id:
                    coach_id = None

                feedback_id = await self.store.add_document(FEEDBACK_COLLECTION, {
                    "userId": owner_id,
                    "coachId": coach_id,
                    "createdAt": datetime.now(timezone.utc).isoformat(),
                    "status": FeedbackStatus.PENDING.value,
                    "fileName": media.filename,
                })
            except StoreError as e:
                raise RecordCreationFailed(e) from e

            logger.info("Created pending feedback %s (coach: %s)", feedback_id, coach_id)

            try:
                await self.uploader.upload(
                    media,
                    feedback_id=feedback_id,
                    owner_id=owner_id,
                    coach_id=coach_id,
                    on_progress=on_progress,
                )
            except UploadError as e:
                logger.error("Feedback %s left pending after upload failure: %s", feedback_id, e)
                raise UploadFailed(e, feedback_id) from e
        finally:
            self._in_flight.discard(key)

        self.signals.publish_feedback_ready(feedback_id, owner_id)
        return feedback_id

    # --- Observation ---

    @property
    def is_observing(self) -> bool:
        return self._registration is not None and self._registration.active

    @property
    def is_idle(self) -> bool:
        """Nothing in flight and nothing observed."""
        return not self._in_flight and not self.is_observing

    def observe_feedback(self, owner_id: Optional[str] = None) -> FeedbackFeed:
        """Open (or reuse) the live subscription on an owner's feedback.

        Calling again for the same owner returns the same feed without a
        second listener. A different owner replaces the subscription.
        """
        owner_id = self.session.user_id if owner_id is None else owner_id
        if not owner_id:
            raise UserNotAuthenticated()

        if self.is_observing and self._feed is not None:
            if self._feed.owner_id == owner_id:
                return self._feed
            self.close()

        logger.debug("Fetching feedback for user %s", owner_id)
        feed = FeedbackFeed(owner_id)
        self._feed = feed
        self._registration = self.store.subscribe(
            FEEDBACK_COLLECTION,
            OWNER_FIELD,
            owner_id,
            lambda documents, error: self._on_snapshot(feed, documents, error),
        )
        return feed

    def _on_snapshot(
        self,
        feed: FeedbackFeed,
        documents: Optional[list[StoredDocument]],
        error: Optional[Exception],
    ) -> None:
        now = datetime.now(timezone.utc)
        if error is not None:
            logger.error("Error fetching feedback: %s", error)
            previous = feed.latest.records if feed.latest else MappingProxyType({})
            feed.publish(FeedbackSnapshot(records=previous, received_at=now, error=str(error)))
            return

        records = normalize_documents(((d.id, d.data) for d in documents or []), now)
        logger.debug("Fetched %d valid feedback items", len(records))
        feed.publish(FeedbackSnapshot(records=MappingProxyType(records), received_at=now))

    def close(self) -> None:
        """Release the subscription. Uploads in flight keep running."""
        if self._registration is not None:
            logger.debug("Removing feedback listener for %s", self.session.user_id)
            self._registration.remove()
            self._registration = None
        if self._feed is not None:
            self._feed.close()
            self._feed = None


async def fetch_feedback(store: DocumentStore, owner_id: str) -> dict[str, FeedbackRecord]:
    """One-off read of an owner's validated feedback, without subscribing."""
    documents = await store.query(FEEDBACK_COLLECTION, OWNER_FIELD, owner_id)
    return normalize_documents(
        ((d.id, d.data) for d in documents),
        datetime.now(timezone.utc),
    )


class ControllerRegistry:
    """One controller per active user, so the single-flight guard spans requests.

    Callers release() a user when their request is done; idle controllers
    are dropped so the registry only holds users with work in progress.
    """

    def __init__(self, store: DocumentStore, uploader: UploadService, signals: FeedbackSignals):
        self.store = store
        self.uploader = uploader
        self.signals = signals
        self._controllers: dict[str, FeedbackController] = {}

    def get(self, user_id: str) -> FeedbackController:
        controller = self._controllers.get(user_id)
        if controller is None:
            controller = FeedbackController(
                session=UserSession(user_id),
                store=self.store,
                uploader=self.uploader,
                signals=self.signals,
            )
            if user_id:
                self._controllers[user_id] = controller
        return controller

    def release(self, user_id: str) -> None:
        """Forget a user's controller once it has nothing left to do."""
        controller = self._controllers.get(user_id)
        if controller is not None and controller.is_idle:
            del self._controllers[user_id]

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._controllers

    def close_all(self) -> None:
        for controller in self._controllers.values():
            controller.close()
        self._controllers.clear()


# Global singleton instance
_registry: Optional[ControllerRegistry] = None


def get_controller_registry() -> ControllerRegistry:
    """Get the process-wide controller registry."""
    global _registry
    if _registry is None:
        _registry = ControllerRegistry(
            store=get_document_store(),
            uploader=get_upload_service(),
            signals=get_feedback_signals(),
        )
    return _registry


def reset_controller_registry() -> None:
    global _registry
    if _registry is not None:
        _registry.close_all()
        _registry = None
