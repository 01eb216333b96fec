"""
queuecast/output/announcer.py — Chime → speech announcements, at most once per call.

``AnnouncementScheduler.maybe_announce`` runs after every derived view. It
announces the current entry when it has just been called and returns a
:class:`Suppressed` result naming the first condition that failed otherwise.

Conditions, in evaluation order:

1. audio toggle on
2. voice announcements enabled
3. not showing cached (offline) data
4. a current entry exists
5. its status is Called
6. its token differs from the last one announced for the scope
7. the same token is not already waiting for its speech slot
8. the token was not chimed and then cut off by a newer call
9. audio output is permitted (kiosk activated or no gesture required)

The token is committed to the :class:`AnnouncementRecord` as soon as the
speech call has been issued, whether or not it raised. A token whose
speech was cancelled by a newer call has already been chimed, so it is held
as superseded until an announcement that cancels nothing clears the list.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

from queuecast.core.config import AnnouncementSettings
from queuecast.core.constants import EntryStatus
from queuecast.core.logger import get_logger
from queuecast.core.models import DerivedQueueView
from queuecast.core.timers import TimerHandle, TimerScheduler
from queuecast.output.tts import TextToSpeechAdapter

_log = get_logger()

_PLACEHOLDER = re.compile(r"\{(\w+)\}")
_LEADING_LETTERS = re.compile(r"^[A-Za-z]+")


# ──────────────────────────────────────────────────────────────
# Template expansion
# ──────────────────────────────────────────────────────────────

def token_prefix(token: str) -> str:
    """Leading letters of a token (``"LAB012"`` → ``"LAB"``); empty if none."""
    match = _LEADING_LETTERS.match(token)
    return match.group(0) if match else ""


def expand_template(
    template: str,
    number: str,
    department: str,
    hospital_name: str,
    room: str = "",
) -> str:
    """
    Substitute announcement placeholders literally.

    Known placeholders: ``{number}``, ``{department}``, ``{hospitalName}``,
    ``{room}`` and ``{prefix}``. Anything else in braces is left as written.

    >>> expand_template("Token {number}, proceed to {department}", "P5", "Pharmacy", "X")
    'Token P5, proceed to Pharmacy'
    """
    values = {
        "number": number,
        "department": department,
        "hospitalName": hospital_name,
        "room": room,
        "prefix": token_prefix(number),
    }

    def _sub(match: re.Match[str]) -> str:
        key = match.group(1)
        return values[key] if key in values else match.group(0)

    return _PLACEHOLDER.sub(_sub, template)


# ──────────────────────────────────────────────────────────────
# Results and record
# ──────────────────────────────────────────────────────────────

class SuppressionReason(Enum):
    AUDIO_DISABLED = "audio_disabled"
    VOICE_DISABLED = "voice_disabled"
    OFFLINE = "offline"
    NO_CURRENT_ENTRY = "no_current_entry"
    NOT_CALLED = "not_called"
    ALREADY_ANNOUNCED = "already_announced"
    PENDING = "pending"
    SUPERSEDED = "superseded"
    AUDIO_LOCKED = "audio_locked"


@dataclass(frozen=True)
class AnnouncementDispatched:
    """An announcement was started (the speech may still be waiting on the chime)."""

    scope_key: str
    token: str
    text: str
    chime: bool
    speech_delay_ms: int

    def to_dict(self) -> dict:
        return {
            "dispatched": True,
            "scope_key": self.scope_key,
            "token": self.token,
            "text": self.text,
            "chime": self.chime,
            "speech_delay_ms": self.speech_delay_ms,
        }


@dataclass(frozen=True)
class Suppressed:
    reason: SuppressionReason
    scope_key: str
    token: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "dispatched": False,
            "reason": self.reason.value,
            "scope_key": self.scope_key,
            "token": self.token,
        }


AnnounceResult = Union[AnnouncementDispatched, Suppressed]


class AnnouncementRecord:
    """Per display instance: last token announced for each scope key."""

    def __init__(self) -> None:
        self._last: dict[str, str] = {}

    def last_announced(self, scope_key: str) -> Optional[str]:
        return self._last.get(scope_key)

    def commit(self, scope_key: str, token: str) -> None:
        self._last[scope_key] = token

    def to_dict(self) -> dict[str, str]:
        return dict(self._last)


@dataclass
class _Pending:
    token: str
    handle: TimerHandle


# ──────────────────────────────────────────────────────────────
# Scheduler
# ──────────────────────────────────────────────────────────────

class AnnouncementScheduler:
    """
    Decides whether to announce and sequences chime → delay → speech.

    Args:
        tts: Audio output.
        scheduler: Timer source for the chime → speech gap.
        audio_permitted: Returns True when audio output may be used.
        record: Shared record; a fresh one is created if omitted.
        on_spoken: Called with ``(scope_key, token, text)`` after each speech call.
    """

    def __init__(
        self,
        tts: TextToSpeechAdapter,
        scheduler: TimerScheduler,
        audio_permitted: Callable[[], bool],
        record: Optional[AnnouncementRecord] = None,
        on_spoken: Optional[Callable[[str, str, str], None]] = None,
    ) -> None:
        self._tts = tts
        self._scheduler = scheduler
        self._audio_permitted = audio_permitted
        self._record = record if record is not None else AnnouncementRecord()
        self._on_spoken = on_spoken
        self._pending: dict[str, _Pending] = {}
        self._superseded: dict[str, set[str]] = {}

    @property
    def record(self) -> AnnouncementRecord:
        return self._record

    def pending_token(self, scope_key: str) -> Optional[str]:
        pending = self._pending.get(scope_key)
        return pending.token if pending else None

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    def maybe_announce(
        self,
        view: DerivedQueueView,
        scope_key: str,
        settings: AnnouncementSettings,
        audio_enabled: bool = True,
        offline: bool = False,
        room: str = "",
    ) -> AnnounceResult:
        """
        Announce ``view.current_serving`` if every condition holds.

        Args:
            view: Freshly derived view.
            scope_key: Key the announcement is recorded under.
            settings: Effective announcement settings.
            audio_enabled: The display's audio toggle.
            offline: True while the view comes from the offline cache.
            room: Room name for the ``{room}`` placeholder.
        """
        current = view.current_serving
        token = current.token if current else None

        def _suppress(reason: SuppressionReason) -> Suppressed:
            _log.debug("announcer", "suppressed", {
                "scope_key": scope_key, "token": token, "reason": reason.value,
            })
            return Suppressed(reason, scope_key, token)

        if not audio_enabled:
            return _suppress(SuppressionReason.AUDIO_DISABLED)
        if not settings.voice_enabled:
            return _suppress(SuppressionReason.VOICE_DISABLED)
        if offline:
            return _suppress(SuppressionReason.OFFLINE)
        if current is None:
            return _suppress(SuppressionReason.NO_CURRENT_ENTRY)
        if current.status is not EntryStatus.CALLED:
            return _suppress(SuppressionReason.NOT_CALLED)
        if self._record.last_announced(scope_key) == current.token:
            return _suppress(SuppressionReason.ALREADY_ANNOUNCED)
        if self.pending_token(scope_key) == current.token:
            return _suppress(SuppressionReason.PENDING)
        if current.token in self._superseded.get(scope_key, ()):
            return _suppress(SuppressionReason.SUPERSEDED)
        if not self._audio_permitted():
            return _suppress(SuppressionReason.AUDIO_LOCKED)

        superseded = self._cancel_pending(scope_key, superseded_by=current.token)
        if superseded is None:
            self._superseded.pop(scope_key, None)
        else:
            self._superseded.setdefault(scope_key, set()).add(superseded)

        text = expand_template(
            settings.template,
            number=current.token,
            department=current.department,
            hospital_name=settings.hospital_name,
            room=room or current.department,
        )

        if not settings.chime_enabled:
            self._speak(scope_key, current.token, text, settings)
            return AnnouncementDispatched(scope_key, current.token, text, False, 0)

        try:
            self._tts.play_chime(settings.chime_volume)
        except Exception as exc:  # noqa: BLE001
            _log.error("announcer", "chime_failed", {"scope_key": scope_key, "error": str(exc)})

        delay = max(int(settings.chime_delay_ms), 0)
        token_now = current.token
        handle = self._scheduler.call_later(
            delay, lambda: self._speak(scope_key, token_now, text, settings)
        )
        self._pending[scope_key] = _Pending(token=token_now, handle=handle)
        _log.info("announcer", "chime_started", {
            "scope_key": scope_key, "token": token_now, "speech_in_ms": delay,
        })
        return AnnouncementDispatched(scope_key, token_now, text, True, delay)

    def dispose(self) -> None:
        """Cancel every pending delayed speech call."""
        for scope_key in list(self._pending):
            self._cancel_pending(scope_key)
        self._superseded.clear()

    # ──────────────────────────────────────────
    # Internal
    # ──────────────────────────────────────────

    def _speak(
        self,
        scope_key: str,
        token: str,
        text: str,
        settings: AnnouncementSettings,
    ) -> None:
        self._pending.pop(scope_key, None)
        try:
            self._tts.speak(text, settings)
            _log.info("announcer", "announced", {"scope_key": scope_key, "token": token})
        except Exception as exc:  # noqa: BLE001
            _log.error("announcer", "speech_failed", {
                "scope_key": scope_key, "token": token, "error": str(exc),
            })
        finally:
            self._record.commit(scope_key, token)

        if self._on_spoken is not None:
            self._on_spoken(scope_key, token, text)

    def _cancel_pending(self, scope_key: str, superseded_by: Optional[str] = None) -> Optional[str]:
        """Cancel the scope's waiting speech call; returns the token it was for."""
        pending = self._pending.pop(scope_key, None)
        if pending is None:
            return None
        pending.handle.cancel()
        _log.info("announcer", "pending_cancelled", {
            "scope_key": scope_key,
            "token": pending.token,
            "superseded_by": superseded_by,
        })
        return pending.token
