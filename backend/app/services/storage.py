"""
Capture storage.

A recorded punch video is kept locally until the user either submits it
for feedback or discards it. Captures are laid out as

    captures/{user_id}/{capture_id}/{original filename}

so the original filename survives (it ends up in the feedback record's
fileName field and the upload's multipart filename).

Usage:
    storage = get_storage_service()
    size = await storage.save_file(file, "captures/u1/abc/punch.mov")
    path = await storage.find_capture("u1", "abc")
    await storage.delete_capture("u1", "abc")
"""

import logging
import shutil
from pathlib import Path
from typing import Optional

from fastapi import UploadFile

from app.config import settings

logger = logging.getLogger(__name__)


def capture_prefix(user_id: str, capture_id: str) -> str:
    return f"captures/{user_id}/{capture_id}"


class LocalStorageService:
    """Saves captures to a local directory."""

    def __init__(self, base_path: Optional[str] = None):
        self.base_path = Path(base_path or settings.STORAGE_PATH)
        self.base_path.mkdir(parents=True, exist_ok=True)

    async def save_file(self, file: UploadFile, key: str) -> int:
        """Save an uploaded file to local disk.

        Args:
            file: FastAPI UploadFile (supports async read)
            key: The storage key (e.g., "captures/u1/abc/punch.mov")

        Returns:
            The number of bytes written
        """
        file_path = self.base_path / key
        file_path.parent.mkdir(parents=True, exist_ok=True)

        # Write in chunks to handle large files without loading into memory
        chunk_size = 1024 * 1024  # 1MB chunks
        total_bytes = 0

        with open(file_path, "wb") as dest:
            while True:
                chunk = await file.read(chunk_size)
                if not chunk:
                    break
                dest.write(chunk)
                total_bytes += len(chunk)

        logger.debug("Saved %s (%d bytes)", key, total_bytes)
        return total_bytes

    async def find_capture(self, user_id: str, capture_id: str) -> Optional[Path]:
        """Path of a saved capture, or None if it doesn't exist."""
        directory = self.base_path / capture_prefix(user_id, capture_id)
        if not directory.is_dir():
            return None
        files = sorted(p for p in directory.iterdir() if p.is_file())
        return files[0] if files else None

    async def delete_capture(self, user_id: str, capture_id: str) -> bool:
        """Discard a capture. Returns False if there was nothing to delete."""
        directory = self.base_path / capture_prefix(user_id, capture_id)
        if not directory.exists():
            return False
        shutil.rmtree(directory)
        logger.info("Temporary capture %s deleted", capture_id)
        return True


def get_storage_service() -> LocalStorageService:
    """Factory function: returns the configured storage backend."""
    return LocalStorageService()
