"""
Pydantic schemas for feedback records, statistics and the Feedback API.

FeedbackRecord is the strongly-typed, validated shape of a raw feedback
document. Raw documents come out of the store as loose dicts; they only
become FeedbackRecords by passing app.services.validation.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class FeedbackStatus(str, Enum):
    """Recognised lifecycle states. Anything else is invalid."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class FeedbackRecord(BaseModel):
    """A validated feedback record as seen by clients."""

    model_config = ConfigDict(frozen=True)

    id: str
    owner_id: str
    coach_id: Optional[str] = None
    created_at: datetime
    status: FeedbackStatus
    video_url: Optional[str] = None
    score: float = 0.0
    file_name: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return self.status == FeedbackStatus.COMPLETED

    @property
    def is_processing(self) -> bool:
        return self.status in (FeedbackStatus.PENDING, FeedbackStatus.PROCESSING)


class StatBucket(BaseModel):
    """Average score and count for one fixed-width time window."""

    model_config = ConfigDict(frozen=True)

    bucket_start: datetime
    average_score: float
    count: int


class PeriodSummary(BaseModel):
    """Count of records in a period and the mean of the completed ones."""
    count: int
    average_score: float


# --- Request Schemas ---

class FeedbackCreateRequest(BaseModel):
    """Submit a previously saved capture for feedback."""
    capture_id: str


class StatusUpdateRequest(BaseModel):
    """Written by the processing server as a submission moves along.

    The status is stored as given (the store's schema is owned by the
    pipeline); unrecognised values are simply dropped on read.
    """
    status: str
    video_url: Optional[str] = None
    model_feedback: Optional[dict[str, Any]] = None
    error: Optional[str] = None


# --- Response Schemas ---

class CaptureResponse(BaseModel):
    """Returned after a capture is saved."""
    capture_id: str
    filename: str
    file_size_bytes: int


class FeedbackSubmitResponse(BaseModel):
    """Returned once the capture reached the processing server."""
    feedback_id: str
    status: FeedbackStatus
    message: str


class FeedbackListResponse(BaseModel):
    """Paginated list of feedback records."""
    items: list[FeedbackRecord]
    total: int
    page: int
    page_size: int
    total_pages: int
    period: Optional[str] = None
    sort: str


class StatsResponse(BaseModel):
    """Trailing-window buckets plus per-period summaries."""
    generated_at: datetime
    hourly: list[StatBucket]
    daily: list[StatBucket]
    weekly: list[StatBucket]
    periods: dict[str, PeriodSummary]
