"""
Feedback document validation.

Raw feedback documents are written by two parties: this service creates
them as "pending", and the external processing server fills in status,
videoUrl and modelFeedback later. Documents can therefore be seen
half-written, or carry pipeline errors. Every document streamed from the
store goes through validate_feedback_document before anyone sees it:

1. Drop if a top-level "error" field is present
2. Drop if "status" is missing, empty or not a recognised FeedbackStatus
3. Drop if modelFeedback.body.error is set
4. Otherwise read the score: modelFeedback.body.jab_score for completed
   records, 0 for everything else

Dropped documents are expected noise, so they're logged at debug level
and never surfaced as user-facing errors.
"""

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any, Optional

from pydantic import TypeAdapter, ValidationError

from app.schemas.feedback import FeedbackRecord, FeedbackStatus

logger = logging.getLogger(__name__)

SCORE_FIELD = "jab_score"

_timestamp = TypeAdapter(datetime)


class InvalidRecord(Exception):
    """A raw feedback document that must not reach clients."""

    def __init__(self, document_id: str, reason: str):
        self.document_id = document_id
        self.reason = reason
        super().__init__(f"Invalid feedback {document_id}: {reason}")


def _result_body(data: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
    """Return modelFeedback.body when it is structurally present."""
    model_feedback = data.get("modelFeedback")
    if not isinstance(model_feedback, Mapping):
        return None
    body = model_feedback.get("body")
    if not isinstance(body, Mapping):
        return None
    return body


def _extract_score(body: Optional[Mapping[str, Any]]) -> float:
    if body is None:
        return 0.0
    score = body.get(SCORE_FIELD)
    # bool is an int subclass; a True score is not a score
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        return 0.0
    return float(score)


def _parse_created_at(value: Any, fallback: datetime) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = _timestamp.validate_python(value)
        except ValidationError:
            return fallback
    else:
        return fallback
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=fallback.tzinfo)
    return parsed


def validate_feedback_document(
    document_id: str,
    data: Mapping[str, Any],
    now: datetime,
) -> FeedbackRecord:
    """Turn one raw feedback document into a FeedbackRecord.

    Args:
        document_id: Store-assigned identifier.
        data: Raw document fields.
        now: Used as created_at when the document has no usable timestamp.

    Raises:
        InvalidRecord: If any rejection rule matches.
    """
    if "error" in data:
        raise InvalidRecord(document_id, "document has an error field")

    raw_status = data.get("status")
    if not isinstance(raw_status, str) or not raw_status:
        raise InvalidRecord(document_id, "missing status")
    try:
        status = FeedbackStatus(raw_status)
    except ValueError:
        raise InvalidRecord(document_id, f"unrecognised status {raw_status!r}")

    body = _result_body(data)
    if body is not None and body.get("error") not in (None, ""):
        raise InvalidRecord(document_id, f"result error: {body.get('error')}")

    score = _extract_score(body) if status == FeedbackStatus.COMPLETED else 0.0

    try:
        return FeedbackRecord(
            id=document_id,
            owner_id=str(data.get("userId") or ""),
            coach_id=data.get("coachId") if isinstance(data.get("coachId"), str) else None,
            created_at=_parse_created_at(data.get("createdAt"), now),
            status=status,
            video_url=data.get("videoUrl") if isinstance(data.get("videoUrl"), str) else None,
            score=score,
            file_name=data.get("fileName") if isinstance(data.get("fileName"), str) else None,
        )
    except ValidationError as e:
        raise InvalidRecord(document_id, str(e))


def normalize_documents(
    documents: Iterable[tuple[str, Mapping[str, Any]]],
    now: datetime,
) -> dict[str, FeedbackRecord]:
    """Validate a full snapshot, keeping only the valid records.

    Args:
        documents: (document_id, data) pairs from the store.
        now: Snapshot time, see validate_feedback_document.

    Returns:
        Mapping of id -> FeedbackRecord.
    """
    records: dict[str, FeedbackRecord] = {}
    for document_id, data in documents:
        try:
            record = validate_feedback_document(document_id, data, now)
        except InvalidRecord as e:
            logger.debug("Skipping invalid feedback %s: %s", e.document_id, e.reason)
            continue
        logger.debug("Processing feedback %s with status %s", document_id, record.status.value)
        records[document_id] = record

    logger.debug("Validated %d feedback records", len(records))
    return records
