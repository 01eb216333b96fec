"""
queuecast/pipeline/controller.py — DisplayController: one engine per display surface.

Wires the engine components together for a single display instance::

    live feed ─► reduce ─┬─► DisplayFrame ─► EventBus (ON_FRAME)
                         │
    offline? ─► OfflineCache snapshot
                         │
                         └─► AnnouncementScheduler ─► TextToSpeechAdapter
                               ▲
                               └── KioskActivationStateMachine (audio permission)

Every external event (feed delivery, settings update, platform signal, user
gesture, timer) runs to completion on the engine loop and ends with a new
:class:`~queuecast.core.models.DisplayFrame` published on the EventBus.
"""

from __future__ import annotations

import time
from collections import defaultdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from queuecast.cache.offline_cache import OfflineCache
from queuecast.core.config import ConfigProvider, QueueCastConfig
from queuecast.core.constants import C, ConnectivityStatus, DisplayKind, DisplayMode
from queuecast.core.logger import get_logger
from queuecast.core.models import (
    CacheSnapshot,
    DerivedQueueView,
    DisplayFrame,
    QueueEntry,
    parse_entries,
)
from queuecast.core.timers import TimerHandle, TimerScheduler
from queuecast.display.reducer import reduce, reduce_by_department
from queuecast.input.feeds import FeedHub, Unsubscribe
from queuecast.input.platform import PlatformBridge, PlatformEvent, PlatformSignal
from queuecast.network.connectivity import ConnectivityMonitor
from queuecast.output.announcer import (
    AnnouncementDispatched,
    AnnouncementScheduler,
    AnnounceResult,
)
from queuecast.output.kiosk import ActivationResult, KioskActivationStateMachine
from queuecast.output.tts import TextToSpeechAdapter

_log = get_logger()

# ── EventBus event-name constants ─────────────────────────────────────────────

ON_FRAME        = "ON_FRAME"
"""Fired after every engine step with the new display frame."""

ON_ANNOUNCEMENT = "ON_ANNOUNCEMENT"
"""Fired when an announcement is dispatched (``phase="dispatched"``) and when its speech is issued (``phase="spoken"``)."""

ON_CONNECTIVITY = "ON_CONNECTIVITY"
"""Fired on every connectivity state change, including each retry."""

ON_KIOSK        = "ON_KIOSK"
"""Fired after a kiosk activation attempt or fullscreen change."""


# ── EventBus ──────────────────────────────────────────────────────────────────

class EventBus:
    """
    Synchronous in-process publish/subscribe.

    Callbacks run in registration order; a failing callback is logged and
    never disrupts the remaining subscribers.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Callable[[Dict[str, Any]], None]]] = (
            defaultdict(list)
        )

    def subscribe(
        self, event: str, callback: Callable[[Dict[str, Any]], None]
    ) -> Callable[[], None]:
        """
        Register *callback* for *event*.

        Returns:
            A function that removes the subscription.
        """
        self._subscribers[event].append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers.get(event, []):
                self._subscribers[event].remove(callback)

        return _unsubscribe

    def publish(self, event: str, data: Dict[str, Any]) -> None:
        for cb in list(self._subscribers.get(event, [])):
            try:
                cb(data)
            except Exception as exc:  # noqa: BLE001
                _log.error("pipeline", "event_callback_error", {
                    "event": event,
                    "error": str(exc),
                })


# ── DisplayController ─────────────────────────────────────────────────────────

def cache_key(kind: DisplayKind, scope: str) -> str:
    """Storage key of a display scope, e.g. ``departmental_display_cache_Lab``."""
    return f"{C.CACHE_KEY_PREFIXES[kind]}_{scope}"


def resolve_scope(kind: DisplayKind, scope: Optional[str]) -> str:
    """
    Normalise the scope a display kind is created with.

    Reception displays always show the Reception department and universal
    displays always show every department.

    Raises:
        ValueError: If a departmental display has no department.
    """
    if kind is DisplayKind.RECEPTION:
        return C.RECEPTION_DEPARTMENT
    if kind is DisplayKind.UNIVERSAL:
        return C.ALL_SCOPE
    if not scope or not scope.strip() or scope.strip() == C.ALL_SCOPE:
        raise ValueError("a departmental display needs a department scope")
    return scope.strip()


class DisplayController:
    """
    Engine for one display instance.

    Args:
        kind: Display kind (departmental, reception, universal).
        scope: Department name for departmental displays; ignored otherwise.
        settings: Runtime settings source, overlaid on the static config.
        cache: Snapshot cache shared by every display.
        tts: Audio output.
        platform: Host platform bridge.
        scheduler: Timer source for backoff, chime delay and cache refresh.
        entries_feed: Live feed of full entry lists.
        settings_feed: Settings feed of whole settings maps.
        bus: EventBus to publish on; a private one is created if omitted.

    Example::

        ctrl = DisplayController(DisplayKind.DEPARTMENTAL, "Lab", provider,
                                 cache, tts, platform, AsyncioScheduler())
        ctrl.bus.subscribe(ON_FRAME, render)
        ctrl.init()
        ctrl.on_entries(rows)
        ...
        ctrl.dispose()
    """

    def __init__(
        self,
        kind: DisplayKind,
        scope: Optional[str],
        settings: ConfigProvider,
        cache: OfflineCache,
        tts: TextToSpeechAdapter,
        platform: PlatformBridge,
        scheduler: TimerScheduler,
        entries_feed: Optional[FeedHub] = None,
        settings_feed: Optional[FeedHub] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self._kind = kind
        self._scope = resolve_scope(kind, scope)
        self._cache_key = cache_key(kind, self._scope)
        self._settings = settings
        self._cache = cache
        self._tts = tts
        self._platform = platform
        self._scheduler = scheduler
        self._entries_feed = entries_feed
        self._settings_feed = settings_feed
        self.bus = bus or EventBus()
        self._log = _log.bind(display=f"{kind.value}/{self._scope}")

        config = self._static_config
        self._limit = config.display.upcoming_limit(kind)
        self._departments = tuple(config.display.departments)
        self._rooms = dict(config.display.department_rooms)
        self._refresh_ms = config.cache.refresh_ms

        self._monitor = ConnectivityMonitor(
            scheduler,
            probe=platform.is_online,
            on_transition=self._on_connectivity_change,
            base_ms=config.connectivity.backoff_base_ms,
            cap_ms=config.connectivity.backoff_cap_ms,
            max_attempts=config.connectivity.max_attempts,
        )
        self._kiosk = KioskActivationStateMachine(platform, tts, settings.kiosk_settings())
        self._announcer = AnnouncementScheduler(
            tts,
            scheduler,
            audio_permitted=lambda: self._kiosk.audio_permitted,
            on_spoken=self._on_spoken,
        )

        self._live_entries: Optional[list[QueueEntry]] = None
        self._snapshot: Optional[CacheSnapshot] = None
        self._offline = False
        self._audio_enabled = True
        self._last_announcement: Optional[Dict[str, Any]] = None
        self._frame: Optional[DisplayFrame] = None
        self._refresh_timer: Optional[TimerHandle] = None
        self._unsubscribers: list[Unsubscribe] = []
        self._initialised = False

    # ──────────────────────────────────────────
    # Properties
    # ──────────────────────────────────────────

    @property
    def kind(self) -> DisplayKind:
        return self._kind

    @property
    def scope(self) -> str:
        return self._scope

    @property
    def cache_key(self) -> str:
        return self._cache_key

    @property
    def connectivity(self) -> ConnectivityMonitor:
        return self._monitor

    @property
    def kiosk(self) -> KioskActivationStateMachine:
        return self._kiosk

    @property
    def announcer(self) -> AnnouncementScheduler:
        return self._announcer

    @property
    def audio_enabled(self) -> bool:
        return self._audio_enabled

    @property
    def frame(self) -> DisplayFrame:
        """Latest frame; computed on demand before the first engine step."""
        return self._frame if self._frame is not None else self._build_frame()

    @property
    def _static_config(self) -> QueueCastConfig:
        return self._settings.config

    # ──────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────

    def init(self) -> None:
        """Subscribe to the feeds, start connectivity tracking and cache refresh."""
        if self._initialised:
            return
        self._initialised = True
        _t = time.perf_counter()

        self._monitor.start()
        if self._settings_feed is not None:
            self._unsubscribers.append(self._settings_feed.subscribe(self.on_settings))
        if self._entries_feed is not None:
            self._unsubscribers.append(self._entries_feed.subscribe(self.on_entries))
        self._schedule_refresh()
        self._step("init")

        self._log.perf("pipeline", "display_init", (time.perf_counter() - _t) * 1_000.0, {
            "cache_key": self._cache_key,
        })

    def dispose(self) -> None:
        """Unsubscribe, cancel every timer and pending announcement, stop audio."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        if self._refresh_timer is not None:
            self._refresh_timer.cancel()
            self._refresh_timer = None
        self._monitor.stop()
        self._announcer.dispose()
        try:
            self._tts.stop()
        except Exception as exc:  # noqa: BLE001
            self._log.warn("pipeline", "tts_stop_failed", {"error": str(exc)})
        self._initialised = False
        self._log.info("pipeline", "display_disposed", {})

    # ──────────────────────────────────────────
    # Inputs
    # ──────────────────────────────────────────

    def on_entries(self, raw: Iterable[Any]) -> DisplayFrame:
        """Handle one full live-feed delivery (latest wins)."""
        self._live_entries = parse_entries(raw)
        if not self._offline:
            self._save_snapshot()
        return self._step("entries")

    def on_settings(self, settings: Mapping[str, Any]) -> DisplayFrame:
        """Handle one whole settings map from the settings feed."""
        self._settings.update(settings)
        self._kiosk.configure(self._settings.kiosk_settings())
        if not self._offline and self._live_entries is not None:
            self._save_snapshot()
        return self._step("settings")

    def handle_platform_event(
        self,
        event: PlatformEvent | PlatformSignal,
        active: Optional[bool] = None,
    ) -> DisplayFrame:
        """Route a normalised platform event to the machine that owns it."""
        signal = event if isinstance(event, PlatformSignal) else PlatformSignal(event, active)
        if signal.event is PlatformEvent.ONLINE:
            self._monitor.handle_online()
            return self.frame
        if signal.event is PlatformEvent.OFFLINE:
            self._monitor.handle_offline()
            return self.frame
        if signal.event is PlatformEvent.FULLSCREEN_CHANGED:
            self._kiosk.on_fullscreen_changed(bool(signal.active))
            self.bus.publish(ON_KIOSK, self._kiosk.state.to_dict())
        else:
            self.activate_kiosk()
            return self.frame
        return self._step(f"platform_{signal.event.value}")

    def activate_kiosk(self) -> ActivationResult:
        """User gesture: unlock fullscreen/audio, then re-run the engine step."""
        result = self._kiosk.activate_kiosk()
        self.bus.publish(ON_KIOSK, result.to_dict())
        self._step("kiosk_activated")
        return result

    def set_audio_enabled(self, enabled: bool) -> DisplayFrame:
        """Display-level audio toggle."""
        self._audio_enabled = bool(enabled)
        self._log.info("pipeline", "audio_toggled", {"enabled": enabled})
        return self._step("audio_toggle")

    # ──────────────────────────────────────────
    # Engine step
    # ──────────────────────────────────────────

    def _step(self, cause: str) -> DisplayFrame:
        mode, entries, settings_map = self._source()
        view, dept_views = self._derive(mode, entries)

        if mode is not DisplayMode.NO_DATA and view is not None:
            for result in self._announce(mode, view, dept_views, settings_map):
                if isinstance(result, AnnouncementDispatched):
                    self._last_announcement = result.to_dict()
                    self.bus.publish(ON_ANNOUNCEMENT, {**result.to_dict(), "phase": "dispatched"})

        frame = self._build_frame(mode, view, dept_views, settings_map)
        self._frame = frame
        self._log.debug("pipeline", "frame", {"cause": cause, "mode": mode.value})
        self.bus.publish(ON_FRAME, frame.to_dict())
        return frame

    def _source(self) -> tuple[DisplayMode, Optional[list[QueueEntry]], Mapping[str, Any]]:
        if self._offline:
            if self._snapshot is None:
                return DisplayMode.NO_DATA, None, self._settings.settings
            return (
                DisplayMode.CACHED,
                list(self._snapshot.entries),
                self._snapshot.settings or self._settings.settings,
            )
        if self._live_entries is None:
            return DisplayMode.NO_DATA, None, self._settings.settings
        return DisplayMode.LIVE, self._live_entries, self._settings.settings

    def _derive(
        self,
        mode: DisplayMode,
        entries: Optional[list[QueueEntry]],
    ) -> tuple[Optional[DerivedQueueView], Dict[str, DerivedQueueView]]:
        if mode is DisplayMode.NO_DATA or entries is None:
            return None, {}
        if self._kind is DisplayKind.UNIVERSAL:
            departments = _departments_in_order(self._departments, entries)
            return (
                reduce(entries, C.ALL_SCOPE, self._limit),
                reduce_by_department(entries, departments, self._limit),
            )
        return reduce(entries, self._scope, self._limit), {}

    def _announce(
        self,
        mode: DisplayMode,
        view: DerivedQueueView,
        dept_views: Mapping[str, DerivedQueueView],
        settings_map: Mapping[str, Any],
    ) -> list[AnnounceResult]:
        settings = self._settings.announcement_settings(self._kind, settings_map)
        offline = mode is DisplayMode.CACHED
        targets = dept_views if self._kind is DisplayKind.UNIVERSAL else {self._scope: view}
        results: list[AnnounceResult] = []
        for scope_key, scoped_view in targets.items():
            department = (
                scoped_view.current_serving.department
                if scoped_view.current_serving else scope_key
            )
            results.append(self._announcer.maybe_announce(
                scoped_view,
                scope_key,
                settings,
                audio_enabled=self._audio_enabled,
                offline=offline,
                room=self._rooms.get(department, department),
            ))
        return results

    def _build_frame(
        self,
        mode: Optional[DisplayMode] = None,
        view: Optional[DerivedQueueView] = None,
        dept_views: Optional[Mapping[str, DerivedQueueView]] = None,
        settings_map: Optional[Mapping[str, Any]] = None,
    ) -> DisplayFrame:
        if mode is None:
            mode, entries, settings_map = self._source()
            view, dept_views = self._derive(mode, entries)
        return DisplayFrame(
            mode=mode,
            view=view,
            connectivity=self._monitor.state,
            kiosk=self._kiosk.state,
            department_views=dict(dept_views or {}),
            settings=dict(settings_map or {}),
            banner=self._banner(mode),
            audio_enabled=self._audio_enabled,
            last_announcement=self._last_announcement,
        )

    def _banner(self, mode: DisplayMode) -> Optional[str]:
        conn = self._monitor.state
        parts: list[str] = []
        if conn.status is ConnectivityStatus.FAILED:
            parts.append("Reconnection failed.")
        elif not conn.is_online:
            parts.append("Offline.")
        if conn.status is ConnectivityStatus.RECONNECTING:
            parts.append(f"Reconnecting (attempt {conn.attempt}/{conn.max_attempts}).")

        if mode is DisplayMode.CACHED and self._snapshot is not None:
            captured = datetime.fromtimestamp(self._snapshot.captured_at / 1000.0, tz=timezone.utc)
            parts.append(f"Showing cached data from {captured:%H:%M:%S} UTC.")
            parts.append("Audio paused (offline).")
        elif mode is DisplayMode.NO_DATA:
            parts.append("No cached data available." if self._offline else "Waiting for queue data.")
        return " ".join(parts) if parts else None

    # ──────────────────────────────────────────
    # Connectivity and cache
    # ──────────────────────────────────────────

    def _on_connectivity_change(self, from_state: Enum, to_state: Enum, reason: str) -> None:
        self.bus.publish(ON_CONNECTIVITY, {
            **self._monitor.state.to_dict(),
            "from": from_state.value,
            "reason": reason,
        })
        if to_state is ConnectivityStatus.OFFLINE:
            self._enter_offline()
        elif to_state is ConnectivityStatus.ONLINE:
            self._exit_offline()
        if self._initialised:
            self._step(f"connectivity_{to_state.value.lower()}")

    def _enter_offline(self) -> None:
        self._offline = True
        self._snapshot = self._cache.load(self._cache_key)
        self._log.warn("pipeline", "offline_mode", {
            "cached": self._snapshot is not None,
        })

    def _exit_offline(self) -> None:
        self._offline = False
        self._snapshot = None
        if self._live_entries is not None:
            self._save_snapshot()
        self._log.info("pipeline", "live_mode", {})

    def _save_snapshot(self) -> None:
        self._cache.save(self._cache_key, self._live_entries or [], self._settings.settings)

    def _schedule_refresh(self) -> None:
        if self._refresh_ms > 0:
            self._refresh_timer = self._scheduler.call_later(self._refresh_ms, self._on_refresh)

    def _on_refresh(self) -> None:
        """Periodic tick: re-save live data, or re-check the cached snapshot's TTL."""
        self._refresh_timer = None
        if not self._offline:
            if self._live_entries is not None:
                self._save_snapshot()
        elif self._snapshot is not None:
            snapshot = self._cache.load(self._cache_key)
            if snapshot is None:
                self._log.warn("pipeline", "cached_snapshot_expired", {})
            self._snapshot = snapshot
            self._step("cache_refresh")
        self._schedule_refresh()

    def _on_spoken(self, scope_key: str, token: str, text: str) -> None:
        self.bus.publish(ON_ANNOUNCEMENT, {
            "phase": "spoken",
            "scope_key": scope_key,
            "token": token,
            "text": text,
        })


def _departments_in_order(configured: Iterable[str], entries: Iterable[QueueEntry]) -> list[str]:
    """Configured departments first, then any others seen in the feed."""
    ordered = list(dict.fromkeys(configured))
    seen = set(ordered)
    for entry in entries:
        if entry.department not in seen:
            seen.add(entry.department)
            ordered.append(entry.department)
    return ordered
