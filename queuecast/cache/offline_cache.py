"""
queuecast/cache/offline_cache.py — Best-effort snapshot cache for offline displays.

The engine saves the latest (entries, settings) pair per display scope while
online and reads it back only when connectivity drops. Storage failures of
any kind degrade to "no cache available" — nothing here ever raises into the
caller except a missing scope key.
"""

from __future__ import annotations

import json
from typing import Any, Iterable, Mapping, Optional

from pydantic import ValidationError

from queuecast.cache.store import CacheStore
from queuecast.core.constants import C
from queuecast.core.logger import get_logger
from queuecast.core.models import CacheSnapshot, QueueEntry
from queuecast.core.timers import Clock, system_clock_ms

_log = get_logger()


class OfflineCache:
    """
    TTL-bounded snapshot cache keyed by display scope.

    Args:
        store: Shared storage backend.
        ttl_ms: Maximum snapshot age that may still be surfaced.
        clock: Returns "now" in epoch milliseconds.

    Example::

        cache = OfflineCache(FileCacheStore(".queuecast_cache"))
        cache.save("reception_display_cache", entries, settings)
        snap = cache.load("reception_display_cache")   # None once stale
    """

    def __init__(
        self,
        store: CacheStore,
        ttl_ms: int = C.CACHE_TTL_MS,
        clock: Clock = system_clock_ms,
    ) -> None:
        self._store = store
        self._ttl_ms = ttl_ms
        self._clock = clock

    @property
    def ttl_ms(self) -> int:
        return self._ttl_ms

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    def save(
        self,
        scope_key: str,
        entries: Iterable[QueueEntry],
        settings: Mapping[str, Any],
    ) -> bool:
        """
        Write a fresh snapshot for ``scope_key``, replacing any prior one.

        Args:
            scope_key: Cache key of the display scope.
            entries: Entries as last delivered by the live feed.
            settings: Settings map currently in effect.

        Returns:
            True if the snapshot was written, False if storage refused it.

        Raises:
            ValueError: If ``scope_key`` is empty.
        """
        _require_key(scope_key)
        snapshot = CacheSnapshot(
            entries=tuple(entries),
            settings=dict(settings),
            captured_at=self._clock(),
        )
        try:
            payload = json.dumps(snapshot.to_json_dict(), ensure_ascii=False, default=str)
            self._store.set(scope_key, payload)
        except Exception as exc:  # noqa: BLE001
            _log.error("cache", "save_failed", {"key": scope_key, "error": str(exc)})
            return False

        _log.debug("cache", "snapshot_saved", {
            "key": scope_key,
            "entries": len(snapshot.entries),
            "captured_at": snapshot.captured_at,
        })
        return True

    def load(self, scope_key: str) -> Optional[CacheSnapshot]:
        """
        Return the snapshot for ``scope_key`` while it is within the TTL.

        Stale snapshots are reported as absent but left in storage; the next
        successful :meth:`save` overwrites them.

        Raises:
            ValueError: If ``scope_key`` is empty.
        """
        _require_key(scope_key)
        try:
            raw = self._store.get(scope_key)
        except Exception as exc:  # noqa: BLE001
            _log.error("cache", "read_failed", {"key": scope_key, "error": str(exc)})
            return None
        if raw is None:
            _log.info("cache", "miss", {"key": scope_key})
            return None

        try:
            snapshot = _decode(raw)
        except (ValueError, TypeError, KeyError, ValidationError) as exc:
            _log.warn("cache", "corrupt_snapshot", {"key": scope_key, "error": str(exc)})
            return None

        now = self._clock()
        if not snapshot.is_valid(now, self._ttl_ms):
            _log.info("cache", "stale_snapshot", {
                "key": scope_key,
                "age_ms": round(now - snapshot.captured_at),
                "ttl_ms": self._ttl_ms,
            })
            return None

        _log.info("cache", "hit", {
            "key": scope_key,
            "entries": len(snapshot.entries),
            "age_ms": round(now - snapshot.captured_at),
        })
        return snapshot


# ──────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────

def _require_key(scope_key: str) -> None:
    if not scope_key or not scope_key.strip():
        raise ValueError("scope_key must be a non-empty string")


def _decode(raw: str) -> CacheSnapshot:
    """Parse the stored JSON form; raises on any structural problem."""
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError(f"snapshot must be a JSON object, got {type(data).__name__}")
    entries = data["entries"]
    settings = data.get("settings") or {}
    timestamp = data["timestamp"]
    if not isinstance(entries, list) or not isinstance(settings, dict):
        raise ValueError("snapshot entries/settings have the wrong shape")
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
        raise ValueError(f"snapshot timestamp must be numeric, got {timestamp!r}")
    return CacheSnapshot(
        entries=tuple(QueueEntry.model_validate(e) for e in entries),
        settings=settings,
        captured_at=float(timestamp),
    )
