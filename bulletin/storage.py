"""
Blob storage for attachment bytes.

The core only ever sees the location string returned by ``store``; the
bytes themselves never reach the database.
"""
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path

from starlette.concurrency import run_in_threadpool

from bulletin.exceptions import FieldError, StorageError, ValidationError

logger = logging.getLogger(__name__)

# Separators and NUL; "." and ".." would resolve to a directory.
UNSAFE_CHARS = ("/", "\\", "\x00")
UNSAFE_NAMES = ("", ".", "..")


@dataclass(frozen=True)
class FileMetadata:
    file_name: str
    size: int
    mime_type: str
    uploaded_by: str | None = None


def clean_file_name(file_name: str) -> str:
    """
    Return *file_name* stripped of surrounding whitespace, rejecting any
    name that is not a single plain path component.
    """
    name = (file_name or "").strip()
    if name in UNSAFE_NAMES or any(c in name for c in UNSAFE_CHARS):
        raise ValidationError([
            FieldError("files", "fileName.invalid", f"Invalid file name: {file_name!r}")
        ])
    return name


class LocalBlobStore:
    """Writes each upload to ``<root>/<random>_<name>``."""

    def __init__(self, root: str | os.PathLike) -> None:
        self.root = Path(root).resolve()

    async def store(self, data: bytes, metadata: FileMetadata) -> str:
        name = clean_file_name(metadata.file_name)
        target = self.root / f"{uuid.uuid4().hex}_{name}"
        try:
            await run_in_threadpool(self._write, target, data)
        except OSError as exc:
            raise StorageError(f"Could not store file {name}") from exc
        logger.debug("Stored %s (%d bytes) at %s", name, len(data), target)
        return str(target)

    def _write(self, target: Path, data: bytes) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    async def delete(self, location: str) -> None:
        """Remove a blob written by ``store``; a missing file is not an error."""
        try:
            await run_in_threadpool(Path(location).unlink, missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Could not delete {location}") from exc
