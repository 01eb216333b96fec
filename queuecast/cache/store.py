"""
queuecast/cache/store.py — Key/value storage backends for the offline cache.

``FileCacheStore`` keeps one JSON document per key in a directory (the
durable equivalent of browser ``localStorage``). ``MemoryCacheStore`` is
process-local and can emulate a storage quota.
"""

from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable
from urllib.parse import quote

from queuecast.core.logger import get_logger

_log = get_logger()


class StorageQuotaError(OSError):
    """Raised by a store when a write would exceed its capacity."""


@runtime_checkable
class CacheStore(Protocol):
    """String key → string value storage shared by every display instance."""

    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None when the key is absent."""
        ...

    def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any prior value."""
        ...


class MemoryCacheStore:
    """
    In-process store.

    Args:
        quota_bytes: Optional total size limit over all values (UTF-8 bytes).
            A write that would exceed it raises :class:`StorageQuotaError`
            and leaves the prior value in place.
    """

    def __init__(self, quota_bytes: Optional[int] = None) -> None:
        self._data: dict[str, str] = {}
        self._quota = quota_bytes
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            if self._quota is not None:
                used = sum(
                    len(v.encode("utf-8")) for k, v in self._data.items() if k != key
                )
                if used + len(value.encode("utf-8")) > self._quota:
                    raise StorageQuotaError(f"storage quota of {self._quota} bytes exceeded")
            self._data[key] = value

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._data)


class FileCacheStore:
    """
    One percent-encoded ``<key>.json`` file per key under ``directory``.

    Writes go to a temp file in the same directory and are moved into place
    with :func:`os.replace`, so a reader never sees a half-written snapshot.

    Args:
        directory: Storage directory; created on first write.
    """

    def __init__(self, directory: Path | str) -> None:
        self._dir = Path(directory)

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, key: str) -> Path:
        """File for ``key``, percent-encoded (``Lab A`` becomes ``Lab%20A.json``)."""
        if not key:
            raise ValueError("cache key must not be empty")
        return self._dir / f"{quote(key, safe='')}.json"

    def get(self, key: str) -> Optional[str]:
        path = self.path_for(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set(self, key: str, value: str) -> None:
        path = self.path_for(key)
        self._dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self._dir, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(value)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        _log.debug("cache_store", "file_written", {"path": str(path), "bytes": len(value)})
