"""
Tests for the feedback lifecycle controller.

The store is real (SQLite); the processing server is FakeUploadService
from conftest.
"""

import asyncio

import pytest

from app.schemas.feedback import FeedbackStatus
from app.services.feedback import (
    ControllerRegistry,
    FeedbackController,
    FeedClosed,
    RecordCreationFailed,
    SubmissionInProgress,
    UploadFailed,
    UserNotAuthenticated,
    UserSession,
)
from app.services.store import DocumentStore, StoreError
from app.services.upload import MediaHandle, UploadError


class BrokenStore(DocumentStore):
    """A store whose creates always fail."""

    async def add_document(self, collection, fields):
        raise StoreError("quota exceeded")


async def _next(feed, timeout=2.0):
    return await asyncio.wait_for(feed.next(), timeout)


async def _snapshot_with(feed, predicate, attempts=10):
    """Read snapshots until one satisfies predicate."""
    for _ in range(attempts):
        snapshot = await _next(feed)
        if predicate(snapshot):
            return snapshot
    raise AssertionError("no matching snapshot arrived")


# --- submit_feedback ---

@pytest.mark.asyncio
async def test_submit_creates_pending_record_and_uploads(controller, store, uploader, capture, user_id):
    feedback_id = await controller.submit_feedback(capture)

    document = await store.get_document("feedback", feedback_id)
    assert document["userId"] == user_id
    assert document["status"] == "pending"
    assert document["fileName"] == "punch.mov"
    assert document["coachId"] is None
    assert "createdAt" in document

    assert len(uploader.calls) == 1
    call = uploader.calls[0]
    assert call["feedback_id"] == feedback_id
    assert call["owner_id"] == user_id
    assert call["coach_id"] is None
    assert call["media"] == capture


@pytest.mark.asyncio
async def test_submit_passes_assigned_coach(controller, store, uploader, capture, user_id):
    await store.set_document("users", user_id, {"myCoach": "coach-42"})

    feedback_id = await controller.submit_feedback(capture)

    assert (await store.get_document("feedback", feedback_id))["coachId"] == "coach-42"
    assert uploader.calls[0]["coach_id"] == "coach-42"


@pytest.mark.asyncio
async def test_submit_publishes_ready_signal(controller, signals, capture, user_id):
    queue = signals.subscribe()

    feedback_id = await controller.submit_feedback(capture)

    event = queue.get_nowait()
    assert event.feedback_id == feedback_id
    assert event.user_id == user_id


@pytest.mark.asyncio
async def test_submit_does_not_complete_the_record(controller, store, capture):
    feedback_id = await controller.submit_feedback(capture)

    assert (await store.get_document("feedback", feedback_id))["status"] == "pending"


@pytest.mark.asyncio
async def test_submit_without_user_is_rejected(store, uploader, signals, capture):
    """Signed-out submissions create nothing and upload nothing."""
    controller = FeedbackController(UserSession(""), store, uploader, signals)
    queue = signals.subscribe()

    with pytest.raises(UserNotAuthenticated):
        await controller.submit_feedback(capture)

    assert uploader.calls == []
    assert await store.query("feedback", "userId", "") == []
    assert queue.empty()


@pytest.mark.asyncio
async def test_explicit_empty_owner_is_rejected(controller, uploader, capture):
    with pytest.raises(UserNotAuthenticated):
        await controller.submit_feedback(capture, owner_id="")

    assert uploader.calls == []


@pytest.mark.asyncio
async def test_record_creation_failure_skips_upload(setup_db, uploader, signals, capture, user_id):
    controller = FeedbackController(UserSession(user_id), BrokenStore(), uploader, signals)

    with pytest.raises(RecordCreationFailed) as exc_info:
        await controller.submit_feedback(capture)

    assert isinstance(exc_info.value.cause, StoreError)
    assert "Failed to create feedback" in str(exc_info.value)
    assert uploader.calls == []


@pytest.mark.asyncio
async def test_upload_failure_leaves_record_pending(controller, store, uploader, signals, capture, user_id):
    uploader.error = UploadError("Server responded with HTTP 503")
    queue = signals.subscribe()

    with pytest.raises(UploadFailed) as exc_info:
        await controller.submit_feedback(capture)

    feedback_id = exc_info.value.feedback_id
    document = await store.get_document("feedback", feedback_id)
    assert document["status"] == "pending"
    assert [d.id for d in await store.query("feedback", "userId", user_id)] == [feedback_id]
    assert "Upload error" in str(exc_info.value)
    assert queue.empty()


@pytest.mark.asyncio
async def test_concurrent_submissions_create_one_record(controller, store, uploader, capture, user_id):
    uploader.gate = asyncio.Event()

    first = asyncio.create_task(controller.submit_feedback(capture))
    await asyncio.sleep(0)  # let the first call claim the capture

    with pytest.raises(SubmissionInProgress):
        await controller.submit_feedback(capture)

    uploader.gate.set()
    feedback_id = await first

    documents = await store.query("feedback", "userId", user_id)
    assert [d.id for d in documents] == [feedback_id]
    assert len(uploader.calls) == 1


@pytest.mark.asyncio
async def test_gathered_submissions_create_one_record(controller, store, capture, user_id):
    results = await asyncio.gather(
        controller.submit_feedback(capture),
        controller.submit_feedback(capture),
        return_exceptions=True,
    )

    ids = [r for r in results if isinstance(r, str)]
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(ids) == 1
    assert len(errors) == 1 and isinstance(errors[0], SubmissionInProgress)
    assert len(await store.query("feedback", "userId", user_id)) == 1


@pytest.mark.asyncio
async def test_guard_is_released_after_failure(controller, uploader, capture):
    uploader.error = UploadError("boom")
    with pytest.raises(UploadFailed):
        await controller.submit_feedback(capture)

    uploader.error = None
    assert await controller.submit_feedback(capture)


@pytest.mark.asyncio
async def test_different_captures_may_upload_together(controller, uploader, capture, tmp_path):
    other_path = tmp_path / "second.mov"
    other_path.write_bytes(b"\x00" * 16)
    uploader.gate = asyncio.Event()

    tasks = [
        asyncio.create_task(controller.submit_feedback(capture)),
        asyncio.create_task(controller.submit_feedback(MediaHandle.from_path(other_path))),
    ]
    await asyncio.sleep(0.1)
    uploader.gate.set()

    ids = await asyncio.gather(*tasks)
    assert len(set(ids)) == 2


# --- observe_feedback ---

@pytest.mark.asyncio
async def test_observe_delivers_validated_snapshot(controller, make_feedback):
    """completed + pending + bogus documents leave two records."""
    completed = await make_feedback(status="completed", modelFeedback={"body": {"jab_score": 7.5}})
    pending = await make_feedback(status="pending")
    await make_feedback(status="bogus")

    feed = controller.observe_feedback()
    snapshot = await _next(feed)

    assert set(snapshot.records) == {completed, pending}
    assert snapshot.records[completed].score == 7.5
    assert snapshot.records[pending].score == 0.0
    assert snapshot.error is None


@pytest.mark.asyncio
async def test_observe_drops_errored_records(controller, make_feedback):
    await make_feedback(status="completed", error="processing crashed")
    await make_feedback(status="completed", modelFeedback={"body": {"error": "no punch found"}})
    await make_feedback()

    snapshot = await _next(controller.observe_feedback())

    assert len(snapshot.records) == 1
    assert all(r.status == FeedbackStatus.PENDING for r in snapshot.records.values())


@pytest.mark.asyncio
async def test_observe_follows_status_transitions(controller, store, make_feedback):
    feedback_id = await make_feedback(status="pending")
    feed = controller.observe_feedback()
    await _next(feed)

    await store.update_document("feedback", feedback_id, {"status": "processing"})
    snapshot = await _snapshot_with(feed, lambda s: s.records[feedback_id].status == FeedbackStatus.PROCESSING)
    assert snapshot.records[feedback_id].is_processing

    await store.update_document("feedback", feedback_id, {
        "status": "completed",
        "videoUrl": "https://cdn.test/v.mp4",
        "modelFeedback": {"body": {"jab_score": 8.25}},
    })
    snapshot = await _snapshot_with(feed, lambda s: s.records[feedback_id].is_completed)
    record = snapshot.records[feedback_id]
    assert record.score == 8.25
    assert record.video_url == "https://cdn.test/v.mp4"


@pytest.mark.asyncio
async def test_observe_sees_own_submission(controller, capture):
    feed = controller.observe_feedback()
    await _next(feed)

    feedback_id = await controller.submit_feedback(capture)

    snapshot = await _snapshot_with(feed, lambda s: feedback_id in s.records)
    assert snapshot.records[feedback_id].status == FeedbackStatus.PENDING


@pytest.mark.asyncio
async def test_observe_only_sees_owner_records(controller, store, make_feedback):
    mine = await make_feedback()
    await store.add_document("feedback", {"userId": "somebody-else", "status": "pending"})

    snapshot = await _next(controller.observe_feedback())

    assert list(snapshot.records) == [mine]


@pytest.mark.asyncio
async def test_observe_twice_is_one_subscription(controller, store, make_feedback):
    feed = controller.observe_feedback()
    again = controller.observe_feedback()

    assert again is feed
    assert store.listener_count("feedback") == 1

    await store.flush()
    await make_feedback()
    await store.flush()

    # The post-write snapshot replaced the initial one; nothing else is queued
    snapshot = await _next(feed)
    assert len(snapshot.records) == 1
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(feed.next(), 0.2)


@pytest.mark.asyncio
async def test_observe_other_owner_replaces_subscription(controller, store, make_feedback):
    first = controller.observe_feedback()
    second = controller.observe_feedback("another-user")

    assert second is not first
    assert second.owner_id == "another-user"
    assert store.listener_count("feedback") == 1
    with pytest.raises(FeedClosed):
        await _next(first)


@pytest.mark.asyncio
async def test_observe_requires_user(store, uploader, signals):
    controller = FeedbackController(UserSession(""), store, uploader, signals)

    with pytest.raises(UserNotAuthenticated):
        controller.observe_feedback()


@pytest.mark.asyncio
async def test_close_releases_subscription(controller, store, make_feedback):
    feed = controller.observe_feedback()
    await _next(feed)

    controller.close()
    await make_feedback()
    await store.flush()

    assert store.listener_count("feedback") == 0
    assert not controller.is_observing
    assert [s async for s in feed] == []


@pytest.mark.asyncio
async def test_context_manager_releases_subscription(store, uploader, signals, user_id):
    async with FeedbackController(UserSession(user_id), store, uploader, signals) as controller:
        controller.observe_feedback()
        assert store.listener_count("feedback") == 1

    assert store.listener_count("feedback") == 0


@pytest.mark.asyncio
async def test_reopen_after_close_subscribes_again(controller, store):
    first = controller.observe_feedback()
    controller.close()

    second = controller.observe_feedback()

    assert second is not first
    assert store.listener_count("feedback") == 1
    assert (await _next(second)).records == {}


@pytest.mark.asyncio
async def test_store_error_keeps_previous_records(controller, store, make_feedback, monkeypatch):
    feedback_id = await make_feedback()
    feed = controller.observe_feedback()
    await _next(feed)

    async def failing_query(*args, **kwargs):
        raise StoreError("connection lost")

    monkeypatch.setattr(store, "query", failing_query)
    await make_feedback()

    snapshot = await _next(feed)
    assert snapshot.error == "connection lost"
    assert list(snapshot.records) == [feedback_id]


# --- ControllerRegistry ---

@pytest.mark.asyncio
async def test_registry_keeps_controller_while_submission_in_flight(store, uploader, signals, capture, user_id):
    registry = ControllerRegistry(store=store, uploader=uploader, signals=signals)
    uploader.gate = asyncio.Event()

    controller = registry.get(user_id)
    task = asyncio.create_task(controller.submit_feedback(capture))
    await asyncio.sleep(0)

    registry.release(user_id)
    assert user_id in registry
    assert registry.get(user_id) is controller

    uploader.gate.set()
    await task
    registry.release(user_id)

    assert user_id not in registry
    assert registry.get(user_id) is not controller


@pytest.mark.asyncio
async def test_registry_keeps_observing_controller(store, uploader, signals, user_id):
    registry = ControllerRegistry(store=store, uploader=uploader, signals=signals)
    controller = registry.get(user_id)
    controller.observe_feedback()

    registry.release(user_id)
    assert user_id in registry

    controller.close()
    registry.release(user_id)
    assert user_id not in registry


def test_registry_does_not_cache_signed_out_users(store, uploader, signals):
    registry = ControllerRegistry(store=store, uploader=uploader, signals=signals)

    registry.get("")

    assert "" not in registry
