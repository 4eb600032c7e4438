"""
Capture API endpoints.

A capture is a recorded punch video parked on the server before the user
decides what to do with it:
1. POST /captures: save a recording (returns a capture_id)
2. DELETE /captures/{id}: discard it
Submitting a capture for feedback happens in the feedback router.

Design notes:
- Only HTTP parsing lives here; storage is the storage service's job
- The MIME allow-list is checked here, before anything touches disk
"""

import re
from pathlib import PurePath
from uuid import uuid4

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from app.dependencies import require_user_session
from app.schemas.feedback import CaptureResponse
from app.services.feedback import UserSession
from app.services.storage import capture_prefix, get_storage_service

router = APIRouter(prefix="/api/v1/captures", tags=["captures"])

# Allowed video MIME types and their file extensions
ALLOWED_TYPES = {
    "video/quicktime": "mov",
    "video/mp4": "mp4",
    "video/x-m4v": "m4v",
}
CAPTURE_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")


def validate_capture_id(capture_id: str) -> str:
    if not CAPTURE_ID_PATTERN.match(capture_id):
        raise HTTPException(status_code=404, detail="Capture not found")
    return capture_id


@router.post("", response_model=CaptureResponse)
async def save_capture(
    file: UploadFile = File(...),
    session: UserSession = Depends(require_user_session),
):
    """Save a recorded video so it can be submitted later.

    Accepts MOV, MP4 and M4V files.
    """
    if file.content_type not in ALLOWED_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid file type '{file.content_type}'. "
                   f"Accepted: {', '.join(ALLOWED_TYPES.values())}",
        )

    capture_id = uuid4().hex
    # Keep only the final path component of whatever the client sent
    filename = PurePath(file.filename or "").name
    if filename in ("", ".", ".."):
        filename = f"capture.{ALLOWED_TYPES[file.content_type]}"
    key = f"{capture_prefix(session.user_id, capture_id)}/{filename}"

    storage = get_storage_service()
    try:
        file_size = await storage.save_file(file, key)
    except OSError as e:
        raise HTTPException(
            status_code=500,
            detail=f"Failed to save file: {str(e)}",
        )

    return CaptureResponse(
        capture_id=capture_id,
        filename=filename,
        file_size_bytes=file_size,
    )


@router.delete("/{capture_id}")
async def discard_capture(
    capture_id: str,
    session: UserSession = Depends(require_user_session),
):
    """Discard a capture without submitting it."""
    validate_capture_id(capture_id)

    storage = get_storage_service()
    if not await storage.delete_capture(session.user_id, capture_id):
        raise HTTPException(status_code=404, detail="Capture not found")

    return {"message": "Capture deleted", "capture_id": capture_id}
