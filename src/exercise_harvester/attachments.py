"""Filesystem-backed key/value store for page rasters and OCR sources."""

from __future__ import annotations

from pathlib import Path, PurePosixPath
from typing import Optional

from .logging_utils import get_logger

logger = get_logger(__name__)


class LocalAttachmentStore:
    """Persist binary attachments under a root directory keyed by relative path."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def save(self, path: str, data: bytes) -> str:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.debug("Stored attachment %s (%s bytes)", path, len(data))
        return path

    def get(self, path: str) -> Optional[bytes]:
        target = self._resolve(path)
        if not target.exists():
            return None
        return target.read_bytes()

    def _resolve(self, path: str) -> Path:
        relative = PurePosixPath(path)
        if relative.is_absolute() or ".." in relative.parts:
            raise ValueError(f"Attachment path must be relative: {path}")
        return self.root.joinpath(*relative.parts)
