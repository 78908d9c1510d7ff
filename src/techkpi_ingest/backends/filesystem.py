"""Filesystem-based ObjectStorage implementation.

Objects are plain files laid out under one directory per bucket:
    {root}/{bucket}/{object_path}

Implements the ObjectStorage protocol via structural subtyping.
"""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath

from techkpi_ingest.models import StoredObject

logger = logging.getLogger("techkpi_ingest")


class FileSystemObjectStorage:
    """Filesystem-backed object storage scoped to one bucket.

    Passes ``isinstance(storage, ObjectStorage)``.  Content types are accepted
    for interface compatibility but not persisted.
    """

    def __init__(self, root: str, bucket: str = "ingest-ontrac-raw-v1") -> None:
        """Initialize the storage.

        Args:
            root: Root directory. The bucket directory is created under it if
                it does not exist.
            bucket: Bucket name, used as the first directory level.
        """
        self.bucket = bucket
        self._base_path = Path(root) / bucket
        self._base_path.mkdir(parents=True, exist_ok=True)

    def put(self, path: str, data: bytes, content_type: str | None = None) -> None:
        """Write an object, creating parent directories as needed.

        Raises:
            RuntimeError: If the file cannot be written.
        """
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise RuntimeError(f"Failed to write object '{path}': {exc}") from exc
        logger.debug("Stored %s/%s (%d bytes)", self.bucket, path, len(data))

    def get(self, path: str) -> bytes:
        """Read an object.

        Raises:
            FileNotFoundError: If no object exists at *path*.
        """
        target = self._resolve(path)
        if not target.is_file():
            raise FileNotFoundError(f"Object not found: {self.bucket}/{path}")
        return target.read_bytes()

    def list(self, prefix: str, limit: int | None = None) -> list[StoredObject]:
        """List objects directly under *prefix*, sorted by name.

        Sub-directories are not included.  A missing prefix lists as empty.
        """
        directory = self._resolve(prefix) if prefix.strip("/") else self._base_path
        if not directory.is_dir():
            return []

        objects = [
            StoredObject(name=entry.name, size=entry.stat().st_size)
            for entry in sorted(directory.iterdir())
            if entry.is_file()
        ]
        if limit is not None:
            objects = objects[:limit]
        return objects

    def delete(self, path: str) -> bool:
        target = self._resolve(path)
        if not target.is_file():
            return False
        try:
            target.unlink()
        except OSError as exc:
            raise RuntimeError(f"Failed to delete object '{path}': {exc}") from exc
        return True

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _resolve(self, path: str) -> Path:
        parts = PurePosixPath(path.strip("/")).parts
        if any(part in ("..", ".") for part in parts):
            raise ValueError(f"Object path must not contain relative segments: {path!r}")
        return self._base_path.joinpath(*parts)
