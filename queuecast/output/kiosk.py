"""
queuecast/output/kiosk.py — Kiosk activation behind an explicit user gesture.

Platforms block programmatic fullscreen and autoplay audio until the user
has interacted with the page. This machine records whether that gesture has
happened and which subsystems it managed to unlock.

States::

    IDLE ──configure(auto_*)──► AWAITING_GESTURE ──activate_kiosk()──► ACTIVATED
      └──────────────activate_kiosk() (nothing configured)──────────────┘

ACTIVATED is terminal for the session. ``activate_kiosk()`` may be called
again at any time: it retries the configured subsystems that are still
locked and is a no-op when nothing is left to do.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from queuecast.core.config import KioskSettings
from queuecast.core.constants import KioskPhase
from queuecast.core.fsm import StateMachine, TransitionCallback
from queuecast.core.logger import get_logger
from queuecast.core.models import KioskState
from queuecast.input.platform import PlatformBridge
from queuecast.output.tts import TextToSpeechAdapter

_log = get_logger()

_TRANSITIONS: dict[KioskPhase, tuple[KioskPhase, ...]] = {
    KioskPhase.IDLE: (KioskPhase.AWAITING_GESTURE, KioskPhase.ACTIVATED),
    KioskPhase.AWAITING_GESTURE: (KioskPhase.ACTIVATED, KioskPhase.IDLE),
    KioskPhase.ACTIVATED: (),
}


class SubsystemOutcome(Enum):
    NOT_CONFIGURED = "not_configured"
    UNSUPPORTED = "unsupported"
    ALREADY_ACTIVE = "already_active"
    GRANTED = "granted"
    DENIED = "denied"


@dataclass(frozen=True)
class ActivationResult:
    """Outcome of one ``activate_kiosk()`` call, per subsystem."""

    fullscreen: SubsystemOutcome
    audio: SubsystemOutcome
    state: KioskState

    @property
    def partial(self) -> bool:
        """True when at least one configured subsystem was refused."""
        return SubsystemOutcome.DENIED in (self.fullscreen, self.audio)

    def to_dict(self) -> dict:
        return {
            "fullscreen": self.fullscreen.value,
            "audio": self.audio.value,
            "partial": self.partial,
            "state": self.state.to_dict(),
        }


class KioskActivationStateMachine(StateMachine[KioskPhase]):
    """
    Tracks the kiosk user gesture and the subsystems it unlocked.

    Args:
        platform: Fullscreen control and autoplay policy.
        tts: Audio output used for the near-silent unlock tone.
        settings: Initial kiosk settings; see :meth:`configure`.
        on_transition: Observer ``(from_phase, to_phase, reason)``.
    """

    def __init__(
        self,
        platform: PlatformBridge,
        tts: TextToSpeechAdapter,
        settings: Optional[KioskSettings] = None,
        on_transition: TransitionCallback | None = None,
    ) -> None:
        super().__init__(
            "KioskActivation",
            KioskPhase.IDLE,
            _TRANSITIONS,
            on_transition=on_transition,
        )
        self._platform = platform
        self._tts = tts
        self._settings = settings or KioskSettings(auto_fullscreen=False, auto_audio=False)
        self._audio_unlocked = False
        self._fullscreen_active = False
        self.configure(self._settings)

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    @property
    def settings(self) -> KioskSettings:
        return self._settings

    @property
    def state(self) -> KioskState:
        return KioskState(
            phase=self.current_state,
            fullscreen_active=self._fullscreen_active,
            audio_unlocked=self._audio_unlocked,
            needs_user_gesture=self._needs_gesture(),
            activated=self.current_state is KioskPhase.ACTIVATED,
        )

    @property
    def audio_permitted(self) -> bool:
        """
        True when audio output may be used.

        Audio is permitted once the unlock tone has played, once a gesture
        has been recorded on a display that does not ask for auto-audio, or
        whenever the platform allows audio without a gesture.
        """
        if self._audio_unlocked:
            return True
        if self.current_state is KioskPhase.ACTIVATED and not self._settings.auto_audio:
            return True
        return self._platform.audio_permitted_without_gesture()

    def configure(self, settings: KioskSettings) -> None:
        """Apply new kiosk settings; moves between IDLE and AWAITING_GESTURE."""
        self._settings = settings
        self._fullscreen_active = self._platform.is_fullscreen()
        wants = settings.auto_fullscreen or settings.auto_audio
        phase = self.current_state
        if wants and phase is KioskPhase.IDLE:
            self.transition(KioskPhase.AWAITING_GESTURE, "kiosk_configured")
        elif not wants and phase is KioskPhase.AWAITING_GESTURE:
            self.transition(KioskPhase.IDLE, "kiosk_unconfigured")

    def activate_kiosk(self) -> ActivationResult:
        """
        Handle a user gesture: request fullscreen, then unlock audio.

        Each step runs only if configured and still locked, and its outcome is
        reported independently. Denials are results, never exceptions.
        """
        if self.current_state is KioskPhase.ACTIVATED and not self._needs_gesture():
            _log.debug("kiosk", "activate_noop", {})
            return ActivationResult(
                SubsystemOutcome.ALREADY_ACTIVE if self._settings.auto_fullscreen
                else SubsystemOutcome.NOT_CONFIGURED,
                SubsystemOutcome.ALREADY_ACTIVE if self._settings.auto_audio
                else SubsystemOutcome.NOT_CONFIGURED,
                self.state,
            )

        fullscreen = self._try_fullscreen()
        audio = self._try_audio()

        if self.current_state is not KioskPhase.ACTIVATED:
            self.transition(KioskPhase.ACTIVATED, "user_gesture")

        result = ActivationResult(fullscreen, audio, self.state)
        _log.info("kiosk", "activation_attempted", result.to_dict())
        return result

    def on_fullscreen_changed(self, active: bool) -> None:
        """Mirror the platform's fullscreen change notification."""
        if active == self._fullscreen_active:
            return
        self._fullscreen_active = active
        _log.info("kiosk", "fullscreen_changed", {
            "active": active,
            "needs_user_gesture": self._needs_gesture(),
        })

    # ──────────────────────────────────────────
    # Internal
    # ──────────────────────────────────────────

    def _needs_gesture(self) -> bool:
        if self.current_state is KioskPhase.IDLE:
            return False
        if self.current_state is KioskPhase.AWAITING_GESTURE:
            return True
        fullscreen_locked = (
            self._settings.auto_fullscreen
            and self._platform.fullscreen_supported()
            and not self._fullscreen_active
        )
        audio_locked = self._settings.auto_audio and not self._audio_unlocked
        return fullscreen_locked or audio_locked

    def _try_fullscreen(self) -> SubsystemOutcome:
        if not self._settings.auto_fullscreen:
            return SubsystemOutcome.NOT_CONFIGURED
        if not self._platform.fullscreen_supported():
            return SubsystemOutcome.UNSUPPORTED
        if self._fullscreen_active or self._platform.is_fullscreen():
            self._fullscreen_active = True
            return SubsystemOutcome.ALREADY_ACTIVE
        try:
            granted = bool(self._platform.request_fullscreen())
        except Exception as exc:  # noqa: BLE001
            _log.warn("kiosk", "fullscreen_request_failed", {"error": str(exc)})
            granted = False
        if not granted:
            return SubsystemOutcome.DENIED
        self._fullscreen_active = True
        return SubsystemOutcome.GRANTED

    def _try_audio(self) -> SubsystemOutcome:
        if not self._settings.auto_audio:
            return SubsystemOutcome.NOT_CONFIGURED
        if self._audio_unlocked:
            return SubsystemOutcome.ALREADY_ACTIVE
        try:
            unlocked = bool(self._tts.unlock_audio(self._settings.unlock_tone_volume))
        except Exception as exc:  # noqa: BLE001
            _log.warn("kiosk", "audio_unlock_failed", {"error": str(exc)})
            unlocked = False
        if not unlocked:
            return SubsystemOutcome.DENIED
        self._audio_unlocked = True
        return SubsystemOutcome.GRANTED

    # ──────────────────────────────────────────
    # State hooks
    # ──────────────────────────────────────────

    def _on_enter_awaiting_gesture(self) -> None:
        _log.info("kiosk", "awaiting_gesture", {
            "auto_fullscreen": self._settings.auto_fullscreen,
            "auto_audio": self._settings.auto_audio,
        })

    def _on_enter_activated(self) -> None:
        _log.info("kiosk", "activated", {})
