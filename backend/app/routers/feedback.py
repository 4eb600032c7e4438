"""
Feedback API endpoints.

These cover the feedback lifecycle for a recorded punch:
1. POST /feedback: submit a saved capture (creates a pending record + uploads)
2. GET /feedback: paginated list, filterable by period, sortable by date/score
3. GET /feedback/stats: hourly/daily/weekly score buckets and period summaries
4. GET /feedback/{id}: one record
5. POST /feedback/{id}/status: callback for the processing server
6. WS /feedback/stream: live snapshots and "feedback ready" events

The processing server moves a record along on its own:
    pending → processing → completed (or error)
Clients either poll GET /feedback or keep the stream open to see it happen.
"""

import asyncio
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect

from app.config import settings
from app.dependencies import USER_ID_PATTERN, require_pipeline_token, require_user_session
from app.routers.captures import ALLOWED_TYPES, validate_capture_id
from app.schemas.feedback import (
    FeedbackCreateRequest,
    FeedbackListResponse,
    FeedbackRecord,
    FeedbackStatus,
    FeedbackSubmitResponse,
    StatsResponse,
    StatusUpdateRequest,
)
from app.services.feedback import (
    ControllerRegistry,
    FeedbackController,
    FeedbackFeed,
    FeedbackSnapshot,
    FeedClosed,
    RecordCreationFailed,
    SubmissionInProgress,
    UploadFailed,
    UserNotAuthenticated,
    UserSession,
    fetch_feedback,
    get_controller_registry,
)
from app.services.presentation import (
    SortOption,
    TimePeriod,
    filter_by_period,
    paginate,
    sort_records,
    summarize_period,
)
from app.services.signals import FeedbackReady, FeedbackSignals, get_feedback_signals
from app.services.statistics import trailing_stats
from app.services.storage import get_storage_service
from app.services.store import (
    FEEDBACK_COLLECTION,
    DocumentNotFound,
    DocumentStore,
    StoreError,
    get_document_store,
)
from app.services.upload import MediaHandle, UploadService, get_upload_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/feedback", tags=["feedback"])

MAX_PAGE_SIZE = 100


@router.post("", response_model=FeedbackSubmitResponse)
async def submit_feedback(
    request: FeedbackCreateRequest,
    session: UserSession = Depends(require_user_session),
    registry: ControllerRegistry = Depends(get_controller_registry),
):
    """Submit a saved capture for feedback.

    Creates a pending feedback record, then uploads the capture to the
    processing server. Returns once the upload was accepted; the record
    is still "pending" at that point.
    """
    validate_capture_id(request.capture_id)

    storage = get_storage_service()
    path = await storage.find_capture(session.user_id, request.capture_id)
    if path is None:
        raise HTTPException(status_code=404, detail="Capture not found")

    controller = registry.get(session.user_id)
    try:
        media = MediaHandle.from_path(path, content_type=_content_type_for(path.suffix))
        feedback_id = await controller.submit_feedback(media)
    except UserNotAuthenticated as e:
        raise HTTPException(status_code=401, detail=str(e))
    except SubmissionInProgress as e:
        raise HTTPException(status_code=409, detail=str(e))
    except RecordCreationFailed as e:
        raise HTTPException(status_code=500, detail=str(e))
    except UploadFailed as e:
        raise HTTPException(
            status_code=502,
            detail=f"{e} (feedback {e.feedback_id} left pending)",
        )
    finally:
        registry.release(session.user_id)

    return FeedbackSubmitResponse(
        feedback_id=feedback_id,
        status=FeedbackStatus.PENDING,
        message="Video uploaded. Feedback is on its way.",
    )


@router.get("", response_model=FeedbackListResponse)
async def list_feedback(
    period: Optional[TimePeriod] = None,
    sort: SortOption = SortOption.DATE,
    page: int = 1,
    page_size: int = settings.FEEDBACK_PAGE_SIZE,
    session: UserSession = Depends(require_user_session),
    store: DocumentStore = Depends(get_document_store),
):
    """List the caller's feedback with optional period filter and sorting.

    Args:
        period: day (24h), week (7 days), month or year
        sort: date (newest first) or score (highest first)
        page: Page number (1-indexed, clamped to the available pages)
        page_size: Results per page (default 5, max 100)
    """
    if page_size < 1:
        raise HTTPException(status_code=400, detail="page_size must be at least 1")
    page_size = min(page_size, MAX_PAGE_SIZE)

    records = await _load_records(store, session.user_id)
    now = datetime.now(timezone.utc)

    selected = list(records.values())
    if period is not None:
        selected = filter_by_period(selected, period, now)
    result = paginate(sort_records(selected, sort), page, page_size)

    return FeedbackListResponse(
        items=result.items,
        total=result.total,
        page=result.page,
        page_size=page_size,
        total_pages=result.total_pages,
        period=period.value if period else None,
        sort=sort.value,
    )


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    session: UserSession = Depends(require_user_session),
    store: DocumentStore = Depends(get_document_store),
):
    """Score statistics for the caller's completed feedback."""
    records = await _load_records(store, session.user_id)
    return build_stats(records, datetime.now(timezone.utc))


@router.get("/{feedback_id}", response_model=FeedbackRecord)
async def get_feedback(
    feedback_id: str,
    session: UserSession = Depends(require_user_session),
    store: DocumentStore = Depends(get_document_store),
):
    """Get one of the caller's feedback records."""
    records = await _load_records(store, session.user_id)
    record = records.get(feedback_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Feedback not found")
    return record


@router.post("/{feedback_id}/status", dependencies=[Depends(require_pipeline_token)])
async def update_feedback_status(
    feedback_id: str,
    update: StatusUpdateRequest,
    store: DocumentStore = Depends(get_document_store),
):
    """Record a status change reported by the processing server.

    Requires the shared pipeline token in the X-Pipeline-Token header.

    Open streams for the record's owner receive a fresh snapshot.
    """
    fields = {"status": update.status}
    if update.video_url is not None:
        fields["videoUrl"] = update.video_url
    if update.model_feedback is not None:
        fields["modelFeedback"] = update.model_feedback
    if update.error is not None:
        fields["error"] = update.error

    try:
        await store.update_document(FEEDBACK_COLLECTION, feedback_id, fields)
    except DocumentNotFound:
        raise HTTPException(status_code=404, detail="Feedback not found")
    except StoreError as e:
        raise HTTPException(status_code=500, detail=f"Failed to update feedback: {str(e)}")

    logger.info("Feedback %s moved to %s", feedback_id, update.status)
    return {"message": "Status updated", "feedback_id": feedback_id, "status": update.status}


@router.websocket("/stream")
async def stream_feedback(
    websocket: WebSocket,
    user_id: str = "",
    store: DocumentStore = Depends(get_document_store),
    uploader: UploadService = Depends(get_upload_service),
    signals: FeedbackSignals = Depends(get_feedback_signals),
):
    """Push the caller's validated feedback on every change.

    Messages:
        {"type": "snapshot", "records": [...], "stats": {...}, "error": null}
        {"type": "feedback_ready", "feedback_id": "..."}

    The subscription lives exactly as long as the connection.
    """
    if not user_id or not USER_ID_PATTERN.match(user_id):
        await websocket.close(code=1008)
        return

    await websocket.accept()
    ready_queue = signals.subscribe()
    try:
        async with FeedbackController(UserSession(user_id), store, uploader, signals) as controller:
            feed = controller.observe_feedback()
            await _pump_stream(websocket, feed, ready_queue, user_id)
    except WebSocketDisconnect:
        logger.debug("Feedback stream for %s disconnected", user_id)
    finally:
        signals.unsubscribe(ready_queue)


# --- Helpers ---

def _content_type_for(suffix: str) -> Optional[str]:
    extension = suffix.lstrip(".").lower()
    for content_type, known in ALLOWED_TYPES.items():
        if known == extension:
            return content_type
    return None


def build_stats(records: Mapping[str, FeedbackRecord], now: datetime) -> StatsResponse:
    trailing = trailing_stats(records, now)
    return StatsResponse(
        generated_at=now,
        hourly=trailing.hourly,
        daily=trailing.daily,
        weekly=trailing.weekly,
        periods={p.value: summarize_period(records, p, now) for p in TimePeriod},
    )


async def _load_records(store: DocumentStore, user_id: str) -> dict[str, FeedbackRecord]:
    try:
        return await fetch_feedback(store, user_id)
    except StoreError as e:
        raise HTTPException(status_code=500, detail=f"Failed to load feedback: {str(e)}")


def _snapshot_message(snapshot: FeedbackSnapshot) -> dict:
    records = sort_records(snapshot.records.values(), SortOption.DATE)
    return {
        "type": "snapshot",
        "records": [r.model_dump(mode="json") for r in records],
        "stats": build_stats(snapshot.records, snapshot.received_at).model_dump(mode="json"),
        "error": snapshot.error,
    }


async def _pump_stream(
    websocket: WebSocket,
    feed: FeedbackFeed,
    ready_queue: asyncio.Queue,
    user_id: str,
) -> None:
    """Forward snapshots and ready events until the client goes away."""
    snapshot_task = asyncio.ensure_future(feed.next())
    ready_task = asyncio.ensure_future(ready_queue.get())
    # Reading is how we notice the client disconnecting
    receive_task = asyncio.ensure_future(websocket.receive_text())

    try:
        while True:
            done, _ = await asyncio.wait(
                {snapshot_task, ready_task, receive_task},
                return_when=asyncio.FIRST_COMPLETED,
            )

            if receive_task in done:
                receive_task.result()
                receive_task = asyncio.ensure_future(websocket.receive_text())

            if snapshot_task in done:
                try:
                    snapshot = snapshot_task.result()
                except FeedClosed:
                    return
                await websocket.send_json(_snapshot_message(snapshot))
                snapshot_task = asyncio.ensure_future(feed.next())

            if ready_task in done:
                event: FeedbackReady = ready_task.result()
                if event.user_id == user_id:
                    await websocket.send_json({
                        "type": "feedback_ready",
                        "feedback_id": event.feedback_id,
                    })
                ready_task = asyncio.ensure_future(ready_queue.get())
    finally:
        for task in (snapshot_task, ready_task, receive_task):
            task.cancel()
