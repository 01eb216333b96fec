"""
queuecast/core/constants.py — All engine constants for QueueCast.

Single frozen dataclass with typed constant groups: cache TTL, reconnect
backoff, announcement timing, chime tones and upcoming-list limits, plus the
enums shared across modules (entry status/priority, connectivity status,
kiosk phase, display kind/mode).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar


# ──────────────────────────────────────────────────────────────
# Queue record enums
# ──────────────────────────────────────────────────────────────

class EntryStatus(Enum):
    """Lifecycle status of a queue entry as stored by the external data store."""

    WAITING = "Waiting"
    CALLED = "Called"
    SERVED = "Served"
    COMPLETED = "Completed"
    SKIPPED = "Skipped"


class Priority(Enum):
    """Triage priority of a queue entry."""

    NORMAL = "Normal"
    EMERGENCY = "Emergency"


#: Statuses that count as "being served" when picking the current entry.
SERVING_STATUSES: frozenset[EntryStatus] = frozenset(
    {EntryStatus.CALLED, EntryStatus.SERVED}
)


# ──────────────────────────────────────────────────────────────
# Engine state enums
# ──────────────────────────────────────────────────────────────

class ConnectivityStatus(Enum):
    """States of the connectivity monitor."""

    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"
    RECONNECTING = "RECONNECTING"
    FAILED = "FAILED"


class KioskPhase(Enum):
    """States of the kiosk activation state machine."""

    IDLE = "IDLE"
    AWAITING_GESTURE = "AWAITING_GESTURE"
    ACTIVATED = "ACTIVATED"


class DisplayKind(Enum):
    """The display surfaces served by the engine."""

    DEPARTMENTAL = "departmental"
    RECEPTION = "reception"
    UNIVERSAL = "universal"


class DisplayMode(Enum):
    """Where the currently rendered view came from."""

    LIVE = "LIVE"
    CACHED = "CACHED"
    NO_DATA = "NO_DATA"


# ──────────────────────────────────────────────────────────────
# Frozen constants dataclass
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class QueueCastConstants:
    """
    Frozen dataclass holding all QueueCast engine constants.

    Use the class attributes directly — do not instantiate this class.

    Example::

        from queuecast.core.constants import QueueCastConstants as C

        print(C.CACHE_TTL_MS)            # 600000
        print(C.MAX_RECONNECT_ATTEMPTS)  # 10
    """

    # ── Offline cache ─────────────────────────────────────────
    CACHE_TTL_MS: ClassVar[int] = 600_000
    """A snapshot older than this (10 minutes) must not be surfaced."""

    CACHE_REFRESH_MS: ClassVar[int] = 60_000
    """Period of the background re-save of the latest live data."""

    # ── Reconnect backoff ─────────────────────────────────────
    BACKOFF_BASE_MS: ClassVar[int] = 1_000
    """Delay before the first reconnect retry."""

    BACKOFF_CAP_MS: ClassVar[int] = 30_000
    """Upper bound for any single reconnect delay."""

    MAX_RECONNECT_ATTEMPTS: ClassVar[int] = 10
    """Retries scheduled before the monitor gives up and enters FAILED."""

    # ── Announcements ─────────────────────────────────────────
    CHIME_DELAY_MS: ClassVar[int] = 500
    """Gap between the start of the chime and the speech call."""

    CHIME_VOLUME: ClassVar[float] = 0.6
    """Default chime gain in [0, 1]."""

    CHIME_TONES_HZ: ClassVar[tuple[float, float]] = (800.0, 600.0)
    """Two-tone high-low chime."""

    CHIME_TONE_S: ClassVar[float] = 0.3
    """Duration of each chime tone in seconds."""

    CHIME_OVERLAP: ClassVar[float] = 0.7
    """Second tone starts at this fraction of the first tone's duration."""

    UNLOCK_TONE_HZ: ClassVar[float] = 440.0
    UNLOCK_TONE_S: ClassVar[float] = 0.1
    UNLOCK_TONE_VOLUME: ClassVar[float] = 0.001
    """Near-silent tone used to unlock audio output after a user gesture."""

    DEFAULT_TEMPLATE: ClassVar[str] = (
        "Token {number}, please proceed to {room}, {department} at {hospitalName}"
    )
    DEFAULT_HOSPITAL_NAME: ClassVar[str] = "Hospital"

    # ── Upcoming-list limits per display kind ─────────────────
    UPCOMING_LIMITS: ClassVar[dict[DisplayKind, int]] = {
        DisplayKind.DEPARTMENTAL: 6,
        DisplayKind.RECEPTION: 5,
        DisplayKind.UNIVERSAL: 3,
    }

    # ── Scope ─────────────────────────────────────────────────
    ALL_SCOPE: ClassVar[str] = "all"
    """Scope value meaning "every department"."""

    RECEPTION_DEPARTMENT: ClassVar[str] = "Reception"

    CACHE_KEY_PREFIXES: ClassVar[dict[DisplayKind, str]] = {
        DisplayKind.DEPARTMENTAL: "departmental_display_cache",
        DisplayKind.RECEPTION: "reception_display_cache",
        DisplayKind.UNIVERSAL: "universal_display_cache",
    }


# ──────────────────────────────────────────────────────────────
# Module-level convenience alias
# ──────────────────────────────────────────────────────────────

#: Convenience alias: ``from queuecast.core.constants import C``
C = QueueCastConstants
