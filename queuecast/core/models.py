"""
queuecast/core/models.py — Data model shared by every engine component.

``QueueEntry`` is a pydantic model because it is parsed from untrusted feed
and cache payloads; everything the engine derives is a frozen dataclass.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from queuecast.core.constants import (
    C,
    ConnectivityStatus,
    DisplayMode,
    EntryStatus,
    KioskPhase,
    Priority,
)
from queuecast.core.logger import get_logger

_log = get_logger()


# ──────────────────────────────────────────────────────────────
# Queue records
# ──────────────────────────────────────────────────────────────

class QueueEntry(BaseModel):
    """
    One queue ticket as delivered by the live feed.

    Accepts both the feed's camelCase names and the data store's snake_case
    column names. Immutable once parsed.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    token: str
    full_name: str = Field(
        default="",
        validation_alias=AliasChoices("fullName", "full_name"),
        serialization_alias="fullName",
    )
    department: str
    priority: Priority = Priority.NORMAL
    status: EntryStatus
    created_at: datetime = Field(
        validation_alias=AliasChoices("createdAt", "created_at", "timestamp"),
        serialization_alias="createdAt",
    )

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> Any:
        """Data store ids may arrive as integers."""
        return str(v) if isinstance(v, int) else v

    @field_validator("token", "department")
    @classmethod
    def _must_be_non_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @field_validator("created_at", mode="before")
    @classmethod
    def _epoch_ms(cls, v: Any) -> Any:
        """Integer/float timestamps are epoch milliseconds."""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return datetime.fromtimestamp(v / 1000.0, tz=timezone.utc)
        return v

    @field_validator("created_at")
    @classmethod
    def _assume_utc(cls, v: datetime) -> datetime:
        return v if v.tzinfo is not None else v.replace(tzinfo=timezone.utc)

    def to_record(self) -> dict[str, Any]:
        """Return the JSON-safe camelCase form used by the cache."""
        return self.model_dump(mode="json", by_alias=True)


def parse_entries(raw: Iterable[Any]) -> list[QueueEntry]:
    """
    Parse a feed delivery into :class:`QueueEntry` objects, preserving order.

    Items that are already entries pass through. Invalid records are dropped
    with a warning; a bad record never poisons the rest of the delivery.

    Args:
        raw: Sequence of dicts (or entries) in feed order.

    Returns:
        The valid entries, in the same relative order.
    """
    entries: list[QueueEntry] = []
    dropped = 0
    for item in raw:
        if isinstance(item, QueueEntry):
            entries.append(item)
            continue
        try:
            entries.append(QueueEntry.model_validate(item))
        except ValidationError as exc:
            dropped += 1
            _log.warn("feed", "entry_rejected", {
                "record": item if isinstance(item, dict) else repr(item),
                "errors": exc.error_count(),
            })
    if dropped:
        _log.info("feed", "delivery_parsed", {"kept": len(entries), "dropped": dropped})
    return entries


# ──────────────────────────────────────────────────────────────
# Derived view
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DerivedQueueView:
    """
    What a display shows for one scope.

    Attributes:
        scope: Department name, or ``"all"``.
        current_serving: Most recently called/served entry, if any.
        upcoming: Waiting entries, oldest first, truncated to the display limit.
        counts_by_status: Tally of all five statuses over the scoped entries.
        total_waiting: Number of waiting entries before truncation.
    """

    scope: str
    current_serving: Optional[QueueEntry]
    upcoming: tuple[QueueEntry, ...]
    counts_by_status: Mapping[EntryStatus, int]
    total_waiting: int

    @property
    def upcoming_tokens(self) -> list[str]:
        return [e.token for e in self.upcoming]

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "current_serving": (
                self.current_serving.to_record() if self.current_serving else None
            ),
            "upcoming": [e.to_record() for e in self.upcoming],
            "counts_by_status": {s.value: n for s, n in self.counts_by_status.items()},
            "total_waiting": self.total_waiting,
        }


# ──────────────────────────────────────────────────────────────
# Cache snapshot
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CacheSnapshot:
    """
    Last known good data for one display scope.

    Attributes:
        entries: Entries exactly as last received from the live feed.
        settings: Settings map in effect when the snapshot was captured.
        captured_at: Capture time in epoch milliseconds.
    """

    entries: tuple[QueueEntry, ...]
    settings: Mapping[str, Any]
    captured_at: float

    def is_valid(self, now_ms: float, ttl_ms: int = C.CACHE_TTL_MS) -> bool:
        """Return True while ``now - captured_at < ttl``."""
        return now_ms - self.captured_at < ttl_ms

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "entries": [e.to_record() for e in self.entries],
            "settings": dict(self.settings),
            "timestamp": self.captured_at,
        }


# ──────────────────────────────────────────────────────────────
# State values (replaced wholesale on every change)
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ConnectivityState:
    """Snapshot of the connectivity monitor."""

    status: ConnectivityStatus
    attempt: int = 0
    max_attempts: int = C.MAX_RECONNECT_ATTEMPTS
    next_retry_ms: Optional[int] = None

    @property
    def is_online(self) -> bool:
        return self.status is ConnectivityStatus.ONLINE

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            "next_retry_ms": self.next_retry_ms,
        }


@dataclass(frozen=True)
class KioskState:
    """Snapshot of the kiosk activation state machine."""

    phase: KioskPhase = KioskPhase.IDLE
    fullscreen_active: bool = False
    audio_unlocked: bool = False
    needs_user_gesture: bool = False
    activated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "fullscreen_active": self.fullscreen_active,
            "audio_unlocked": self.audio_unlocked,
            "needs_user_gesture": self.needs_user_gesture,
            "activated": self.activated,
        }


@dataclass(frozen=True)
class DisplayFrame:
    """
    Everything a display surface needs to render after one engine step.

    Attributes:
        mode: LIVE, CACHED (offline fallback) or NO_DATA.
        view: Derived view for the display scope; None in NO_DATA mode.
        department_views: Per-department views for multi-department displays.
        settings: Settings map the view was derived with.
        connectivity: Current connectivity snapshot.
        kiosk: Current kiosk snapshot.
        banner: Operator-facing status line, if any.
        audio_enabled: Whether the display's audio toggle is on.
        last_announcement: Most recent dispatched announcement, if any.
    """

    mode: DisplayMode
    view: Optional[DerivedQueueView]
    connectivity: ConnectivityState
    kiosk: KioskState
    department_views: Mapping[str, DerivedQueueView] = field(default_factory=dict)
    settings: Mapping[str, Any] = field(default_factory=dict)
    banner: Optional[str] = None
    audio_enabled: bool = True
    last_announcement: Optional[Mapping[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "view": self.view.to_dict() if self.view else None,
            "department_views": {
                name: v.to_dict() for name, v in self.department_views.items()
            },
            "connectivity": self.connectivity.to_dict(),
            "kiosk": self.kiosk.to_dict(),
            "settings": dict(self.settings),
            "banner": self.banner,
            "audio_enabled": self.audio_enabled,
            "last_announcement": (
                dict(self.last_announcement) if self.last_announcement else None
            ),
        }
