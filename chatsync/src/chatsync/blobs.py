from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from urllib.parse import quote

from .errors import NotFoundError, ValidationError, WriteError

logger = logging.getLogger(__name__)


class LocalBlobStore:
    """Stores blobs as files under ``root`` and hands out HTTP download URLs."""

    def __init__(self, root: str | Path, base_url: str) -> None:
        self.root = Path(root).resolve()
        self.base_url = base_url.rstrip("/")

    def _resolve(self, path: str) -> Path:
        relative = PurePosixPath(path)
        if not path or relative.is_absolute() or ".." in relative.parts:
            raise ValidationError("invalid blob path")
        target = (self.root / Path(*relative.parts)).resolve()
        if self.root not in target.parents:
            raise ValidationError("invalid blob path")
        return target

    def upload(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_suffix(target.suffix + ".tmp")
            tmp.write_bytes(data)
            tmp.replace(target)
        except OSError as exc:
            raise WriteError(f"blob upload failed: {exc}") from exc
        logger.debug("stored blob %s (%d bytes)", path, len(data))

    def download_url(self, path: str) -> str:
        target = self._resolve(path)
        if not target.is_file():
            raise NotFoundError("blob not found")
        return f"{self.base_url}/blobs/{quote(path)}"

    def read(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except FileNotFoundError as exc:
            raise NotFoundError("blob not found") from exc
