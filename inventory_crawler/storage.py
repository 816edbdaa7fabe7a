"""Object storage for diagnostic bundles (fetch traces, HTML samples)."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

DIAGNOSTICS_BUCKET = "diagnostics"


class ObjectStorage(Protocol):
    def put_object(self, bucket: str, key: str, data: bytes, content_type: str) -> None: ...


class LocalObjectStorage:
    """Stores objects as files under ``root/<bucket>/<key>``."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, bucket: str, key: str) -> Path:
        path = (self.root / bucket / key).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise ValueError(f"Object key escapes storage root: {key}")
        return path

    def put_object(self, bucket: str, key: str, data: bytes, content_type: str) -> None:
        path = self._path(bucket, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.debug("Stored %s (%s, %d bytes)", path, content_type, len(data))

    def get_object(self, bucket: str, key: str) -> bytes:
        return self._path(bucket, key).read_bytes()


def storage_from_settings(settings) -> ObjectStorage | None:
    """LocalObjectStorage when a diagnostics directory is configured, else None."""
    if settings.diagnostics_dir is None:
        return None
    return LocalObjectStorage(settings.diagnostics_dir)
