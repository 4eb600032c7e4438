"""
Upload client for the processing server.

Sends a recorded capture to the processing server as a multipart form:
    file        the video itself
    feedbackId  id of the pending feedback record it belongs to
    coachId     assigned coach, only when the user has one
with the submitting user in the `userID` header.

The server's reply has no body contract: a 2xx means the capture was
accepted, anything else (or a transport error) is a failure. The server
then drives the feedback record through processing → completed/error on
its own; we never poll it.
"""

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional

import httpx

from app.config import settings

logger = logging.getLogger(__name__)


class UploadError(Exception):
    """The processing server did not accept the capture."""


@dataclass(frozen=True)
class MediaHandle:
    """A capture on local disk, ready to be submitted."""
    path: Path
    filename: str
    content_type: str = settings.UPLOAD_MIME_TYPE

    @classmethod
    def from_path(cls, path, content_type: Optional[str] = None) -> "MediaHandle":
        path = Path(path)
        return cls(
            path=path,
            filename=path.name,
            content_type=content_type or settings.UPLOAD_MIME_TYPE,
        )

    @property
    def key(self) -> str:
        """Identity of the physical capture, used for single-flight checks."""
        return os.path.abspath(self.path)


@dataclass(frozen=True)
class UploadProgress:
    bytes_sent: int
    total_bytes: int

    @property
    def fraction_completed(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return min(1.0, self.bytes_sent / self.total_bytes)


ProgressCallback = Callable[[UploadProgress], None]


class _ProgressFile:
    """File wrapper that reports how much httpx has read so far."""

    def __init__(self, file: BinaryIO, total_bytes: int, callback: ProgressCallback):
        self._file = file
        self._total = total_bytes
        self._sent = 0
        self._callback = callback

    def read(self, size: int = -1) -> bytes:
        chunk = self._file.read(size)
        if chunk:
            self._sent += len(chunk)
            self._callback(UploadProgress(self._sent, self._total))
        return chunk

    def seek(self, offset: int, whence: int = 0) -> int:
        position = self._file.seek(offset, whence)
        if whence == 0:
            self._sent = position
        return position

    def tell(self) -> int:
        return self._file.tell()

    def fileno(self) -> int:
        return self._file.fileno()


class UploadService:
    """Async multipart uploader built on httpx.

    Usage:
        uploader = UploadService()
        await uploader.upload(media, feedback_id="abc", owner_id="u1")
        await uploader.aclose()
    """

    def __init__(
        self,
        upload_url: str = settings.UPLOAD_URL,
        timeout: float = settings.UPLOAD_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.upload_url = upload_url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def upload(
        self,
        media: MediaHandle,
        feedback_id: str,
        owner_id: str,
        coach_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        """Upload one capture. Returns when the server accepted it.

        Raises:
            UploadError: On a non-2xx response, a transport failure, or an
                unreadable capture file.
        """
        def report(progress: UploadProgress) -> None:
            logger.debug("Upload progress for %s: %.2f", feedback_id, progress.fraction_completed)
            if on_progress is not None:
                on_progress(progress)

        data = {"feedbackId": feedback_id}
        if coach_id:
            data["coachId"] = coach_id
        # Content-Type is left to httpx so the multipart boundary is set
        headers = {"userID": owner_id}

        logger.info("Starting upload of %s for feedback %s", media.filename, feedback_id)
        try:
            total = media.path.stat().st_size
            with open(media.path, "rb") as raw:
                body = _ProgressFile(raw, total, report)
                response = await self._client.post(
                    self.upload_url,
                    data=data,
                    files={"file": (media.filename, body, media.content_type)},
                    headers=headers,
                )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("Upload failed for %s: HTTP %d", feedback_id, e.response.status_code)
            raise UploadError(f"Server responded with HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error("Upload failed for %s: %s", feedback_id, e)
            raise UploadError(str(e) or e.__class__.__name__) from e
        except OSError as e:
            logger.error("Could not read capture %s: %s", media.path, e)
            raise UploadError(f"Could not read capture: {e}") from e

        logger.info("Upload success for feedback %s", feedback_id)

    async def aclose(self) -> None:
        await self._client.aclose()


# Global singleton instance
_uploader: Optional[UploadService] = None


def get_upload_service() -> UploadService:
    """Get the process-wide upload client."""
    global _uploader
    if _uploader is None:
        _uploader = UploadService()
    return _uploader


async def close_upload_service() -> None:
    global _uploader
    if _uploader is not None:
        await _uploader.aclose()
        _uploader = None
