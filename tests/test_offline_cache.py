"""
tests/test_offline_cache.py — Tests for queuecast.cache (stores + OfflineCache).

The clock is injected so TTL boundaries are exact.
"""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from queuecast.cache.offline_cache import OfflineCache
from queuecast.cache.store import FileCacheStore, MemoryCacheStore, StorageQuotaError
from queuecast.core.models import QueueEntry

_T0 = 1_700_000_000_000.0
_KEY = "departmental_display_cache_Lab"


class FakeClock:
    def __init__(self, now: float = _T0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _entries(*tokens: str) -> list[QueueEntry]:
    return [
        QueueEntry.model_validate({
            "id": t, "token": t, "department": "Lab",
            "status": "Called" if i == 0 else "Waiting",
            "createdAt": _T0 + i,
        })
        for i, t in enumerate(tokens)
    ]


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store() -> MemoryCacheStore:
    return MemoryCacheStore()


@pytest.fixture()
def cache(store: MemoryCacheStore, clock: FakeClock) -> OfflineCache:
    return OfflineCache(store, clock=clock)


# ──────────────────────────────────────────────────────────────
# Save / load
# ──────────────────────────────────────────────────────────────

def test_save_then_load_returns_snapshot(cache: OfflineCache) -> None:
    assert cache.save(_KEY, _entries("A0", "A2"), {"clinic_name": "Mercy"})
    snap = cache.load(_KEY)
    assert snap is not None
    assert [e.token for e in snap.entries] == ["A0", "A2"]
    assert snap.settings == {"clinic_name": "Mercy"}
    assert snap.captured_at == _T0


def test_wire_format(cache: OfflineCache, store: MemoryCacheStore) -> None:
    cache.save(_KEY, _entries("A0"), {"x": 1})
    data = json.loads(store.get(_KEY))
    assert set(data) == {"entries", "settings", "timestamp"}
    assert data["timestamp"] == _T0
    assert data["entries"][0]["token"] == "A0"
    assert "createdAt" in data["entries"][0]


def test_save_overwrites_prior_snapshot(cache: OfflineCache, clock: FakeClock) -> None:
    cache.save(_KEY, _entries("A0"), {})
    clock.now += 5_000
    cache.save(_KEY, _entries("A1"), {})
    snap = cache.load(_KEY)
    assert [e.token for e in snap.entries] == ["A1"]
    assert snap.captured_at == _T0 + 5_000


def test_scopes_do_not_pollute_each_other(cache: OfflineCache) -> None:
    cache.save("departmental_display_cache_Lab", _entries("L1"), {})
    cache.save("departmental_display_cache_Pharmacy", _entries("P1"), {})
    assert cache.load("departmental_display_cache_Lab").entries[0].token == "L1"
    assert cache.load("departmental_display_cache_Pharmacy").entries[0].token == "P1"


def test_missing_key_is_a_miss(cache: OfflineCache) -> None:
    assert cache.load(_KEY) is None


@pytest.mark.parametrize("key", ["", "   "])
def test_empty_scope_key_raises(cache: OfflineCache, key: str) -> None:
    with pytest.raises(ValueError):
        cache.save(key, [], {})
    with pytest.raises(ValueError):
        cache.load(key)


# ──────────────────────────────────────────────────────────────
# TTL
# ──────────────────────────────────────────────────────────────

def test_snapshot_usable_just_before_ttl(cache: OfflineCache, clock: FakeClock) -> None:
    cache.save(_KEY, _entries("A0"), {})
    clock.now = _T0 + 599_999
    assert cache.load(_KEY) is not None


def test_snapshot_unusable_after_ttl(cache: OfflineCache, clock: FakeClock, store) -> None:
    cache.save(_KEY, _entries("A0"), {})
    clock.now = _T0 + 600_001
    assert cache.load(_KEY) is None
    assert store.get(_KEY) is not None


def test_snapshot_unusable_exactly_at_ttl(cache: OfflineCache, clock: FakeClock) -> None:
    cache.save(_KEY, _entries("A0"), {})
    clock.now = _T0 + 600_000
    assert cache.load(_KEY) is None


def test_custom_ttl(store: MemoryCacheStore, clock: FakeClock) -> None:
    cache = OfflineCache(store, ttl_ms=1_000, clock=clock)
    cache.save(_KEY, [], {})
    clock.now += 999
    assert cache.load(_KEY) is not None
    clock.now += 1
    assert cache.load(_KEY) is None


# ──────────────────────────────────────────────────────────────
# Failure handling
# ──────────────────────────────────────────────────────────────

def test_quota_error_is_swallowed_and_keeps_prior(clock: FakeClock) -> None:
    store = MemoryCacheStore(quota_bytes=400)
    cache = OfflineCache(store, clock=clock)
    assert cache.save(_KEY, _entries("A0"), {})
    assert not cache.save(_KEY, _entries(*[f"A{i}" for i in range(20)]), {})
    assert [e.token for e in cache.load(_KEY).entries] == ["A0"]


def test_quota_store_raises_storage_quota_error() -> None:
    store = MemoryCacheStore(quota_bytes=4)
    with pytest.raises(StorageQuotaError):
        store.set("k", "12345")


def test_unreadable_store_is_a_miss(clock: FakeClock) -> None:
    store = MagicMock()
    store.get.side_effect = PermissionError("denied")
    store.set.side_effect = PermissionError("denied")
    cache = OfflineCache(store, clock=clock)
    assert cache.save(_KEY, [], {}) is False
    assert cache.load(_KEY) is None


@pytest.mark.parametrize("raw", [
    "{not json",
    "[]",
    json.dumps({"entries": [], "settings": {}}),
    json.dumps({"entries": "nope", "settings": {}, "timestamp": _T0}),
    json.dumps({"entries": [], "settings": {}, "timestamp": "yesterday"}),
    json.dumps({"entries": [{"token": "A0"}], "settings": {}, "timestamp": _T0}),
])
def test_corrupt_snapshot_is_a_miss(
    store: MemoryCacheStore, cache: OfflineCache, raw: str,
) -> None:
    store.set(_KEY, raw)
    assert cache.load(_KEY) is None


# ──────────────────────────────────────────────────────────────
# FileCacheStore
# ──────────────────────────────────────────────────────────────

def test_file_store_round_trip(tmp_path: Path, clock: FakeClock) -> None:
    store = FileCacheStore(tmp_path / "cache")
    cache = OfflineCache(store, clock=clock)
    cache.save(_KEY, _entries("A0"), {"clinic_name": "Mercy"})
    assert (tmp_path / "cache" / f"{_KEY}.json").exists()
    assert cache.load(_KEY).settings == {"clinic_name": "Mercy"}
    assert not list((tmp_path / "cache").glob(".tmp-*"))


def test_file_store_sanitises_keys(tmp_path: Path) -> None:
    store = FileCacheStore(tmp_path)
    path = store.path_for("departmental_display_cache_X-ray/../etc")
    assert path.parent == tmp_path
    assert store.get("absent") is None


def test_file_store_keeps_similar_keys_apart(tmp_path: Path) -> None:
    store = FileCacheStore(tmp_path)
    keys = ["departmental_display_cache_Lab A", "departmental_display_cache_Lab_A",
            "departmental_display_cache_Lab/A"]
    for n, key in enumerate(keys):
        store.set(key, f'"{n}"')
    assert [store.get(key) for key in keys] == ['"0"', '"1"', '"2"']
    assert len(list(tmp_path.glob("*.json"))) == 3
