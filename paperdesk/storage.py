"""Uploaded-file handling: PDF validation and a local object store.

The store hands back a public URL plus an opaque file ID; callers never see
filesystem paths.
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path

import aiofiles
import aiofiles.os

from paperdesk.config import Config
from paperdesk.errors import NotFound, ValidationFailed
from paperdesk.models import StoredFile

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF"
PDF_CONTENT_TYPES = {"application/pdf", "application/x-pdf"}


def validate_pdf_upload(
    filename: str | None,
    content_type: str | None,
    data: bytes,
    max_bytes: int,
) -> None:
    """Reject anything that is not a PDF under ``max_bytes``."""
    errors: list[str] = []
    name = (filename or "").strip()
    if not name:
        errors.append("A PDF file is required")
    elif Path(name).suffix.lower() != ".pdf":
        errors.append("Only PDF files are allowed")
    if content_type and content_type.split(";")[0].strip().lower() not in PDF_CONTENT_TYPES:
        errors.append("Only PDF files are allowed")
    if len(data) > max_bytes:
        errors.append(f"File exceeds the maximum size of {max_bytes // (1024 * 1024)} MB")
    elif not data.startswith(PDF_MAGIC):
        errors.append("File content is not a valid PDF")
    if errors:
        # Keep order, drop the duplicate "Only PDF" message.
        unique = list(dict.fromkeys(errors))
        raise ValidationFailed(unique[0], unique)


class LocalObjectStore:
    """Store files under a directory with path traversal protection."""

    def __init__(self, root: Path, base_url: str = "/api/files"):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    @classmethod
    def from_config(cls, config: Config) -> "LocalObjectStore":
        return cls(config.uploads_path, config.storage.public_base_url)

    def _path_for(self, file_id: str) -> Path:
        if not file_id or ".." in file_id or "/" in file_id or "\\" in file_id:
            raise NotFound("File not found")
        path = (self.root / file_id).resolve()
        if path.parent != self.root.resolve():
            raise NotFound("File not found")
        return path

    async def put(self, data: bytes, filename: str, *, folder: str = "papers") -> StoredFile:
        """Write ``data`` and return its public reference."""
        suffix = Path(filename).suffix.lower() or ".bin"
        file_id = f"{folder}-{uuid.uuid4().hex}{suffix}"
        self.root.mkdir(parents=True, exist_ok=True)
        path = self._path_for(file_id)
        async with aiofiles.open(path, "wb") as f:
            await f.write(data)
        logger.debug("stored %s (%d bytes) as %s", filename, len(data), file_id)
        return StoredFile(url=f"{self.base_url}/{file_id}", file_id=file_id, filename=filename)

    async def read(self, file_id: str) -> bytes:
        path = self._path_for(file_id)
        if not await aiofiles.os.path.exists(path):
            raise NotFound("File not found")
        async with aiofiles.open(path, "rb") as f:
            return await f.read()

    async def delete(self, file_id: str) -> None:
        path = self._path_for(file_id)
        if await aiofiles.os.path.exists(path):
            await aiofiles.os.remove(path)


async def store_pdf(
    store: LocalObjectStore,
    config: Config,
    *,
    filename: str | None,
    content_type: str | None,
    data: bytes,
    folder: str = "papers",
) -> StoredFile:
    """Validate then store an uploaded PDF."""
    validate_pdf_upload(filename, content_type, data, config.storage.max_upload_bytes)
    return await store.put(data, filename or "upload.pdf", folder=folder)
