from __future__ import annotations

import asyncio
import hashlib
import logging
import mimetypes
import os
import tempfile
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from pathlib import Path
from urllib.parse import quote, unquote

from src.asspp.domain.exceptions import (
    ArtifactNotFoundError,
    ArtifactTooLargeError,
    InvalidKeyError,
    StorageError,
)
from src.asspp.domain.keys import validate_key
from src.asspp.domain.models.artifact import ArtifactInfo
from src.asspp.domain.repositories import ObjectStoreRepository

logger = logging.getLogger(__name__)

_TMP_PREFIX = ".tmp-"
_TYPE_PREFIX = ".type-"


def encode_segment(segment: str) -> str:
    encoded = quote(segment, safe="")
    # Names starting with "." are reserved for temporary and content-type files.
    if encoded.startswith("."):
        encoded = "%2E" + encoded[1:]
    return encoded


def decode_segment(name: str) -> str:
    return unquote(name)


def _type_path(path: Path) -> Path:
    # Content type of each object is kept beside it in a hidden file.
    return path.with_name(_TYPE_PREFIX + path.name)


class FilesystemObjectStore(ObjectStoreRepository):
    """Stores each object as one file below ``root``.

    Key segments are percent-encoded into path segments. Writes go to a
    temporary file in the target directory and are renamed into place, so
    a concurrent reader sees either the previous or the new bytes.
    """

    def __init__(self, root: str | Path, *, max_object_bytes: int | None = None) -> None:
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._max_object_bytes = max_object_bytes

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, key: str) -> Path:
        validate_key(key)
        path = self._root.joinpath(*(encode_segment(s) for s in key.split("/")))
        if not path.resolve().is_relative_to(self._root):
            raise InvalidKeyError(key, "escapes the storage root")
        return path

    async def put(self, key: str, data: bytes, content_type: str | None = None) -> ArtifactInfo:
        path = self.path_for(key)
        if self._max_object_bytes is not None and len(data) > self._max_object_bytes:
            raise ArtifactTooLargeError(len(data), self._max_object_bytes)
        content_type = content_type or self._guess_type(key)
        try:
            await asyncio.to_thread(self._write_object, path, data, content_type)
        except OSError as exc:
            raise StorageError(f"Failed to write '{key}': {exc}") from exc
        logger.debug("Stored object", extra={"key": key, "size": len(data)})
        return ArtifactInfo(
            key=key,
            size=len(data),
            content_type=content_type,
            created_at=datetime.now(UTC),
            sha256=hashlib.sha256(data).hexdigest(),
        )

    async def get(self, key: str) -> bytes:
        path = self.path_for(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except (FileNotFoundError, IsADirectoryError):
            raise ArtifactNotFoundError(key) from None
        except OSError as exc:
            raise StorageError(f"Failed to read '{key}': {exc}") from exc

    async def delete(self, key: str) -> None:
        path = self.path_for(key)
        try:
            await asyncio.to_thread(self._remove_and_prune, path)
        except (FileNotFoundError, IsADirectoryError):
            raise ArtifactNotFoundError(key) from None
        except OSError as exc:
            raise StorageError(f"Failed to delete '{key}': {exc}") from exc

    async def exists(self, key: str) -> bool:
        path = self.path_for(key)
        return await asyncio.to_thread(path.is_file)

    async def stat(self, key: str) -> ArtifactInfo:
        path = self.path_for(key)
        try:
            st = await asyncio.to_thread(path.stat)
        except FileNotFoundError:
            raise ArtifactNotFoundError(key) from None
        except OSError as exc:
            raise StorageError(f"Failed to stat '{key}': {exc}") from exc
        if not path.is_file():
            raise ArtifactNotFoundError(key)
        content_type = await asyncio.to_thread(self._read_type, path)
        return ArtifactInfo(
            key=key,
            size=st.st_size,
            content_type=content_type or self._guess_type(key),
            created_at=datetime.fromtimestamp(st.st_mtime, UTC),
        )

    async def stream(self, key: str, chunk_size: int = 1024 * 1024) -> AsyncIterator[bytes]:
        path = self.path_for(key)
        try:
            handle = await asyncio.to_thread(path.open, "rb")
        except (FileNotFoundError, IsADirectoryError):
            raise ArtifactNotFoundError(key) from None
        except OSError as exc:
            raise StorageError(f"Failed to open '{key}': {exc}") from exc
        try:
            while True:
                chunk = await asyncio.to_thread(handle.read, chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            handle.close()

    async def list_keys(self, prefix: str = "") -> AsyncIterator[str]:
        keys = await asyncio.to_thread(self._walk_keys)
        for key in keys:
            if key.startswith(prefix):
                yield key

    async def remove_temporary_files(self) -> int:
        """Delete leftovers of interrupted writes and empty directories."""
        return await asyncio.to_thread(self._clean_tree)

    def _write_object(self, path: Path, data: bytes, content_type: str) -> None:
        self._write_atomic(path, data)
        self._write_atomic(_type_path(path), content_type.encode("utf-8"))

    @staticmethod
    def _read_type(path: Path) -> str | None:
        try:
            return _type_path(path).read_text(encoding="utf-8").strip() or None
        except FileNotFoundError:
            return None

    def _write_atomic(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=_TMP_PREFIX)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _remove_and_prune(self, path: Path) -> None:
        path.unlink()
        _type_path(path).unlink(missing_ok=True)
        parent = path.parent
        while parent != self._root and parent.is_relative_to(self._root):
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent

    def _walk_keys(self) -> list[str]:
        keys: list[str] = []
        for dirpath, dirnames, filenames in os.walk(self._root):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            rel = Path(dirpath).relative_to(self._root)
            prefix = [decode_segment(part) for part in rel.parts]
            for name in sorted(filenames):
                if name.startswith("."):
                    continue
                keys.append("/".join([*prefix, decode_segment(name)]))
        return keys

    def _clean_tree(self) -> int:
        removed = 0
        for dirpath, _dirnames, filenames in os.walk(self._root, topdown=False):
            current = Path(dirpath)
            for name in filenames:
                if name.startswith(_TMP_PREFIX):
                    (current / name).unlink(missing_ok=True)
                    removed += 1
                elif name.startswith(_TYPE_PREFIX):
                    if (current / name[len(_TYPE_PREFIX) :]).exists():
                        continue
                    (current / name).unlink(missing_ok=True)
            if current != self._root and not any(current.iterdir()):
                current.rmdir()
        return removed

    @staticmethod
    def _guess_type(key: str) -> str:
        guessed, _ = mimetypes.guess_type(key)
        return guessed or "application/octet-stream"
