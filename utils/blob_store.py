"""Blob storage for raw uploaded image bytes.

The pipeline depends only on the `BlobStore` protocol: `get` returns exactly the
bytes previously `put`. Keys are opaque to callers.
"""
import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/heic": "heic",
    "image/heif": "heif",
    "image/webp": "webp",
}


class BlobNotFoundError(KeyError):
    pass


class BlobStore(Protocol):
    def put(self, data: bytes, mime_type: str) -> str: ...

    def get(self, key: str) -> bytes: ...

    def delete(self, key: str) -> None: ...


def _new_key(mime_type: str) -> str:
    return f"uploads/{uuid.uuid4()}.{_EXTENSIONS.get(mime_type, 'bin')}"


class InMemoryBlobStore:
    """Process-local blob store. Used in tests and for dry runs."""

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, data: bytes, mime_type: str) -> str:
        key = _new_key(mime_type)
        with self._lock:
            self._blobs[key] = bytes(data)
        return key

    def get(self, key: str) -> bytes:
        with self._lock:
            try:
                return self._blobs[key]
            except KeyError:
                raise BlobNotFoundError(key) from None

    def delete(self, key: str) -> None:
        with self._lock:
            self._blobs.pop(key, None)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._blobs


class LocalBlobStore:
    """Filesystem blob store rooted at `root`. Keys are relative paths."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def put(self, data: bytes, mime_type: str) -> str:
        key = _new_key(mime_type)
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)
        logger.debug("Stored blob %s (%d bytes)", key, len(data))
        return key

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise BlobNotFoundError(key)
        return path.read_bytes()

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise BlobNotFoundError(key)
        return path
