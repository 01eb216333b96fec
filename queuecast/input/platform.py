"""
queuecast/input/platform.py — Host platform signals and capabilities.

The engine never talks to a browser or OS directly. Connectivity changes,
fullscreen changes and user gestures are normalised into
:class:`PlatformEvent` values, and the few capabilities the kiosk needs are
reached through the :class:`PlatformBridge` protocol.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, runtime_checkable

from queuecast.core.logger import get_logger

_log = get_logger()


class PlatformEvent(Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    FULLSCREEN_CHANGED = "fullscreen_changed"
    USER_GESTURE = "user_gesture"


@dataclass(frozen=True)
class PlatformSignal:
    """One normalised platform event; ``active`` is used by FULLSCREEN_CHANGED."""

    event: PlatformEvent
    active: Optional[bool] = None

    @classmethod
    def parse(cls, name: str, active: Optional[bool] = None) -> "PlatformSignal":
        """
        Build a signal from its wire name.

        Raises:
            ValueError: If ``name`` is not a known event.
        """
        try:
            event = PlatformEvent(name.strip().lower())
        except ValueError:
            valid = ", ".join(e.value for e in PlatformEvent)
            raise ValueError(f"unknown platform event {name!r} (expected one of: {valid})") from None
        return cls(event=event, active=active)


@runtime_checkable
class PlatformBridge(Protocol):
    """Capabilities of the device the display runs on."""

    def is_online(self) -> bool:
        ...

    def fullscreen_supported(self) -> bool:
        ...

    def is_fullscreen(self) -> bool:
        ...

    def request_fullscreen(self) -> bool:
        """Ask for fullscreen; False (or an exception) means it was denied."""
        ...

    def audio_permitted_without_gesture(self) -> bool:
        """True when the platform lets audio play before any user gesture."""
        ...


class SimulatedPlatform:
    """
    In-process :class:`PlatformBridge` used by the web host and by tests.

    The web host has no window of its own: the display page reports its
    connectivity and fullscreen state back over HTTP, and those reports are
    mirrored here.

    Args:
        online: Initial connectivity.
        fullscreen_supported: Whether fullscreen can be requested at all.
        allow_fullscreen: Whether a fullscreen request is granted.
        autoplay_allowed: Whether audio is permitted without a gesture.
    """

    def __init__(
        self,
        online: bool = True,
        fullscreen_supported: bool = True,
        allow_fullscreen: bool = True,
        autoplay_allowed: bool = False,
    ) -> None:
        self.online = online
        self.supported = fullscreen_supported
        self.allow_fullscreen = allow_fullscreen
        self.autoplay_allowed = autoplay_allowed
        self.fullscreen = False
        self.fullscreen_requests = 0

    def is_online(self) -> bool:
        return self.online

    def fullscreen_supported(self) -> bool:
        return self.supported

    def is_fullscreen(self) -> bool:
        return self.fullscreen

    def request_fullscreen(self) -> bool:
        self.fullscreen_requests += 1
        if not (self.supported and self.allow_fullscreen):
            _log.warn("platform", "fullscreen_denied", {"requests": self.fullscreen_requests})
            return False
        self.fullscreen = True
        return True

    def audio_permitted_without_gesture(self) -> bool:
        return self.autoplay_allowed

    def apply(self, signal: PlatformSignal) -> None:
        """Mirror a reported signal into the simulated device state."""
        if signal.event is PlatformEvent.ONLINE:
            self.online = True
        elif signal.event is PlatformEvent.OFFLINE:
            self.online = False
        elif signal.event is PlatformEvent.FULLSCREEN_CHANGED and signal.active is not None:
            self.fullscreen = bool(signal.active)
