"""
Test fixtures shared across all tests.

Architecture:
- Tests run against a throwaway SQLite database (aiosqlite) created in a
  temp directory. The environment is set BEFORE the app is imported,
  because app.config and app.database read it at import time.
- pyproject.toml puts every test and fixture on one session-wide event loop.
- The processing server is replaced by FakeUploadService; the httpx upload
  client itself is covered in test_upload.py with httpx.MockTransport.
- Each test gets its own user id so records from other tests never show up
  in its snapshots.
"""

import asyncio
import os
import tempfile
import uuid
from datetime import datetime, timezone

_TEST_DIR = tempfile.mkdtemp(prefix="formfighter-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR}/test.db"
os.environ["STORAGE_PATH"] = os.path.join(_TEST_DIR, "uploads")
os.environ["UPLOAD_URL"] = "http://processing.test/api/upload"
os.environ["PIPELINE_TOKEN"] = "pipeline-test-token"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.database import Base, engine
from app.main import app
from app.services.feedback import (
    ControllerRegistry,
    FeedbackController,
    UserSession,
    get_controller_registry,
)
from app.services.signals import FeedbackSignals, get_feedback_signals
from app.services.store import DocumentStore, get_document_store
from app.services.upload import MediaHandle, UploadError, get_upload_service


class FakeUploadService:
    """Stands in for the processing server.

    Records every upload. Set `error` to make uploads fail, or `gate` to an
    asyncio.Event to hold uploads until the test releases them.
    """

    def __init__(self):
        self.calls: list[dict] = []
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def upload(self, media, feedback_id, owner_id, coach_id=None, on_progress=None):
        self.calls.append({
            "media": media,
            "feedback_id": feedback_id,
            "owner_id": owner_id,
            "coach_id": coach_id,
        })
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error

    async def aclose(self):
        pass


@pytest_asyncio.fixture(scope="session")
async def setup_db():
    """Create all tables once before the test session."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield


@pytest.fixture
def user_id():
    return f"user-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def store(setup_db):
    return DocumentStore()


@pytest.fixture
def signals():
    return FeedbackSignals()


@pytest.fixture
def uploader():
    return FakeUploadService()


@pytest.fixture
def controller(user_id, store, uploader, signals):
    controller = FeedbackController(
        session=UserSession(user_id),
        store=store,
        uploader=uploader,
        signals=signals,
    )
    yield controller
    controller.close()


@pytest.fixture
def capture(tmp_path):
    """A small fake recording on disk."""
    path = tmp_path / "punch.mov"
    path.write_bytes(b"\x00\x00\x00\x14ftypqt  " + b"\x00" * 1024)
    return MediaHandle.from_path(path)


@pytest.fixture
def make_feedback(store, user_id):
    """Write a raw feedback document straight into the store."""

    async def _make(**fields):
        data = {
            "userId": user_id,
            "createdAt": datetime.now(timezone.utc).isoformat(),
            "status": "pending",
            "fileName": "punch.mov",
        }
        data.update(fields)
        return await store.add_document("feedback", data)

    return _make


@pytest.fixture
def app_overrides(store, uploader, signals):
    """Point the app's dependencies at this test's store, uploader and signals."""
    registry = ControllerRegistry(store=store, uploader=uploader, signals=signals)
    app.dependency_overrides[get_document_store] = lambda: store
    app.dependency_overrides[get_upload_service] = lambda: uploader
    app.dependency_overrides[get_feedback_signals] = lambda: signals
    app.dependency_overrides[get_controller_registry] = lambda: registry
    yield registry
    registry.close_all()
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(setup_db, app_overrides):
    """Async HTTP test client against the real FastAPI app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def upload_error():
    return UploadError("Server responded with HTTP 503")
