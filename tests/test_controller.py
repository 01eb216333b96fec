"""
tests/test_controller.py — Tests for queuecast.pipeline.controller.DisplayController.

Everything runs on ManualScheduler; the cache clock is the scheduler's clock
so TTL expiry and reconnect backoff move together.
"""

from __future__ import annotations

import unittest
from typing import Any
from unittest.mock import MagicMock

import pytest

from queuecast.cache.offline_cache import OfflineCache
from queuecast.cache.store import MemoryCacheStore
from queuecast.core.config import QueueCastConfig, SettingsProvider
from queuecast.core.constants import ConnectivityStatus, DisplayKind, DisplayMode, KioskPhase
from queuecast.core.timers import ManualScheduler
from queuecast.input.feeds import FeedHub
from queuecast.input.platform import PlatformEvent, PlatformSignal, SimulatedPlatform
from queuecast.pipeline.controller import (
    ON_ANNOUNCEMENT,
    ON_CONNECTIVITY,
    ON_FRAME,
    ON_KIOSK,
    DisplayController,
    EventBus,
    cache_key,
    resolve_scope,
)

_T0 = 1_700_000_000_000


def _row(token: str, status: str = "Waiting", department: str = "Lab", offset: int = 0) -> dict:
    return {
        "id": token, "token": token, "department": department,
        "status": status, "createdAt": _T0 + offset,
    }


class Rig:
    """One display plus the fakes around it."""

    def __init__(
        self,
        kind: DisplayKind = DisplayKind.DEPARTMENTAL,
        scope: str | None = "Lab",
        online: bool = True,
        autoplay: bool = True,
        settings: dict | None = None,
    ) -> None:
        self.scheduler = ManualScheduler(start_ms=_T0)
        self.store = MemoryCacheStore()
        self.cache = OfflineCache(self.store, clock=self.scheduler.now_ms)
        self.platform = SimulatedPlatform(online=online, autoplay_allowed=autoplay)
        self.tts = MagicMock()
        self.tts.unlock_audio.return_value = True
        self.provider = SettingsProvider(QueueCastConfig(), initial=settings)
        self.events: dict[str, list[dict[str, Any]]] = {
            ON_FRAME: [], ON_ANNOUNCEMENT: [], ON_CONNECTIVITY: [], ON_KIOSK: [],
        }
        bus = EventBus()
        for name, sink in self.events.items():
            bus.subscribe(name, sink.append)
        self.ctrl = DisplayController(
            kind, scope, self.provider, self.cache, self.tts,
            self.platform, self.scheduler, bus=bus,
        )

    def go_offline(self) -> None:
        self.platform.online = False
        self.ctrl.handle_platform_event(PlatformEvent.OFFLINE)

    def go_online(self) -> None:
        self.platform.online = True
        self.ctrl.handle_platform_event(PlatformEvent.ONLINE)

    def announced(self, phase: str = "dispatched") -> list[str]:
        return [e["token"] for e in self.events[ON_ANNOUNCEMENT] if e["phase"] == phase]


@pytest.fixture()
def rig() -> Rig:
    r = Rig()
    r.ctrl.init()
    return r


# ──────────────────────────────────────────────────────────────
# Scope helpers
# ──────────────────────────────────────────────────────────────

def test_resolve_scope() -> None:
    assert resolve_scope(DisplayKind.RECEPTION, None) == "Reception"
    assert resolve_scope(DisplayKind.UNIVERSAL, "Lab") == "all"
    assert resolve_scope(DisplayKind.DEPARTMENTAL, " Lab ") == "Lab"


@pytest.mark.parametrize("scope", [None, "", "  ", "all"])
def test_departmental_display_needs_a_department(scope) -> None:
    with pytest.raises(ValueError):
        resolve_scope(DisplayKind.DEPARTMENTAL, scope)


def test_cache_keys_are_per_kind_and_scope() -> None:
    assert cache_key(DisplayKind.DEPARTMENTAL, "Lab") == "departmental_display_cache_Lab"
    assert cache_key(DisplayKind.RECEPTION, "Reception") == "reception_display_cache_Reception"
    assert cache_key(DisplayKind.UNIVERSAL, "all") == "universal_display_cache_all"


# ──────────────────────────────────────────────────────────────
# Live mode
# ──────────────────────────────────────────────────────────────

def test_frame_before_first_delivery_waits_for_data() -> None:
    r = Rig()
    frame = r.ctrl.frame
    assert frame.mode is DisplayMode.NO_DATA
    assert frame.view is None
    r.ctrl.init()
    assert r.ctrl.frame.banner == "Waiting for queue data."
    assert len(r.events[ON_FRAME]) == 1


def test_departmental_view_is_scoped(rig: Rig) -> None:
    frame = rig.ctrl.on_entries([
        _row("L0", "Called"),
        _row("P1", department="Pharmacy", offset=1),
        _row("L1", offset=2),
    ])
    assert frame.mode is DisplayMode.LIVE
    assert frame.view.current_serving.token == "L0"
    assert frame.view.upcoming_tokens == ["L1"]
    assert frame.banner is None
    assert rig.events[ON_FRAME][-1]["view"]["upcoming"][0]["token"] == "L1"


def test_delivery_saves_snapshot_while_online(rig: Rig) -> None:
    rig.ctrl.on_entries([_row("L0", "Called")])
    snap = rig.cache.load("departmental_display_cache_Lab")
    assert [e.token for e in snap.entries] == ["L0"]


def test_feeds_are_replayed_on_init() -> None:
    r = Rig()
    entries, settings = FeedHub("entries"), FeedHub("settings")
    settings.publish({"clinic_name": "Mercy"})
    entries.publish([_row("L0", "Called")])
    ctrl = DisplayController(
        DisplayKind.DEPARTMENTAL, "Lab", r.provider, r.cache, r.tts,
        r.platform, r.scheduler, entries_feed=entries, settings_feed=settings,
    )
    ctrl.init()
    assert ctrl.frame.mode is DisplayMode.LIVE
    assert ctrl.frame.settings == {"clinic_name": "Mercy"}
    entries.publish([_row("L9", "Called")])
    assert ctrl.frame.view.current_serving.token == "L9"
    ctrl.dispose()
    entries.publish([_row("L10", "Called")])
    assert ctrl.frame.view.current_serving.token == "L9"


# ──────────────────────────────────────────────────────────────
# Offline fallback
# ──────────────────────────────────────────────────────────────

def test_offline_shows_cached_snapshot_not_live_delivery(rig: Rig) -> None:
    rig.ctrl.on_entries([_row("A0", "Called")])
    rig.go_offline()
    frame = rig.ctrl.on_entries([_row("A1", "Called")])
    assert frame.mode is DisplayMode.CACHED
    assert frame.view.current_serving.token == "A0"
    assert "Showing cached data from" in frame.banner
    assert "Audio paused (offline)." in frame.banner
    snap = rig.cache.load(rig.ctrl.cache_key)
    assert [e.token for e in snap.entries] == ["A0"]


def test_offline_without_cache_is_no_data() -> None:
    r = Rig(online=False)
    r.ctrl.init()
    frame = r.ctrl.frame
    assert frame.mode is DisplayMode.NO_DATA
    assert frame.view is None
    assert frame.banner.startswith("Offline.")
    assert "No cached data available." in frame.banner


def test_reconnecting_banner_counts_attempts(rig: Rig) -> None:
    rig.ctrl.on_entries([_row("A0")])
    rig.go_offline()
    rig.scheduler.advance(1000)
    assert "Reconnecting (attempt 2/10)." in rig.ctrl.frame.banner


def test_connectivity_events(rig: Rig) -> None:
    rig.go_offline()
    statuses = [e["status"] for e in rig.events[ON_CONNECTIVITY]]
    assert statuses == ["OFFLINE", "RECONNECTING"]
    assert rig.events[ON_CONNECTIVITY][0]["from"] == "ONLINE"


def test_back_online_saves_fresh_snapshot(rig: Rig) -> None:
    rig.ctrl.on_entries([_row("A0", "Called")])
    rig.go_offline()
    rig.ctrl.on_entries([_row("A1", "Called")])
    rig.scheduler.advance(5_000)
    rig.go_online()
    frame = rig.ctrl.frame
    assert frame.mode is DisplayMode.LIVE
    assert frame.view.current_serving.token == "A1"
    snap = rig.cache.load(rig.ctrl.cache_key)
    assert [e.token for e in snap.entries] == ["A1"]
    assert snap.captured_at == _T0 + 5_000


def test_successful_retry_returns_to_live(rig: Rig) -> None:
    rig.ctrl.on_entries([_row("A0")])
    rig.go_offline()
    rig.platform.online = True
    rig.scheduler.advance(1000)
    assert rig.ctrl.connectivity.current_state is ConnectivityStatus.ONLINE
    assert rig.ctrl.frame.mode is DisplayMode.LIVE


def test_cached_snapshot_expires_on_refresh(rig: Rig) -> None:
    rig.ctrl.on_entries([_row("A0", "Called")])
    rig.go_offline()
    rig.scheduler.advance(540_000)
    assert rig.ctrl.frame.mode is DisplayMode.CACHED
    rig.scheduler.advance(60_000)
    frame = rig.ctrl.frame
    assert frame.mode is DisplayMode.NO_DATA
    assert frame.banner == "Reconnection failed. No cached data available."


def test_online_refresh_resaves_latest_delivery(rig: Rig) -> None:
    rig.ctrl.on_entries([_row("A0")])
    rig.scheduler.advance(60_000)
    assert rig.cache.load(rig.ctrl.cache_key).captured_at == _T0 + 60_000


# ──────────────────────────────────────────────────────────────
# Announcements
# ──────────────────────────────────────────────────────────────

def test_called_entry_is_announced_once(rig: Rig) -> None:
    for _ in range(3):
        rig.ctrl.on_entries([_row("L0", "Called"), _row("L1")])
        rig.scheduler.advance(600)
    rig.tts.play_chime.assert_called_once()
    assert rig.tts.speak.call_count == 1
    text = rig.tts.speak.call_args[0][0]
    assert text == "Token L0, please proceed to Lab Counter, Lab at Hospital"
    assert rig.announced() == ["L0"]
    assert rig.announced("spoken") == ["L0"]
    assert rig.ctrl.frame.last_announcement["token"] == "L0"


def test_cached_mode_suppresses_audio(rig: Rig) -> None:
    rig.ctrl.set_audio_enabled(False)
    rig.ctrl.on_entries([_row("L0", "Called")])
    rig.go_offline()
    rig.ctrl.set_audio_enabled(True)
    rig.scheduler.advance(600)
    rig.tts.play_chime.assert_not_called()
    rig.tts.speak.assert_not_called()
    rig.go_online()
    rig.scheduler.advance(600)
    rig.tts.speak.assert_called_once()


def test_audio_toggle_is_reflected_in_frame(rig: Rig) -> None:
    frame = rig.ctrl.set_audio_enabled(False)
    assert frame.audio_enabled is False
    rig.ctrl.on_entries([_row("L0", "Called")])
    rig.tts.play_chime.assert_not_called()


def test_universal_announces_per_department() -> None:
    r = Rig(kind=DisplayKind.UNIVERSAL, scope=None, settings={"enable_announcement_chime": "false"})
    r.ctrl.init()
    frame = r.ctrl.on_entries([
        _row("L0", "Called"),
        _row("P0", "Called", department="Pharmacy", offset=1),
        _row("E1", department="Eye Clinic", offset=2),
    ])
    assert frame.view.scope == "all"
    assert list(frame.department_views)[:3] == ["Consultation", "Lab", "Pharmacy"]
    assert "Eye Clinic" in frame.department_views
    assert sorted(r.announced()) == ["L0", "P0"]
    scopes = {e["scope_key"] for e in r.events[ON_ANNOUNCEMENT]}
    assert scopes == {"Lab", "Pharmacy"}
    assert r.tts.speak.call_count == 2


def test_reception_uses_reception_template() -> None:
    r = Rig(kind=DisplayKind.RECEPTION, scope=None, settings={
        "enable_announcement_chime": False,
        "announcement_template": "General {number}",
        "reception_announcement_template": "Reception {number} to {room}",
    })
    r.ctrl.init()
    r.ctrl.on_entries([_row("R1", "Called", department="Reception")])
    assert r.tts.speak.call_args[0][0] == "Reception R1 to Reception Desk"


def test_unmapped_department_room_is_the_department() -> None:
    r = Rig(scope="Dental", settings={"enable_announcement_chime": False})
    r.ctrl.init()
    r.ctrl.on_entries([_row("D1", "Called", department="Dental")])
    assert "proceed to Dental, Dental" in r.tts.speak.call_args[0][0]


# ──────────────────────────────────────────────────────────────
# Kiosk, settings and lifecycle
# ──────────────────────────────────────────────────────────────

class TestKioskWiring(unittest.TestCase):
    """Audio stays locked until a user gesture on platforms without autoplay."""

    def setUp(self) -> None:
        self.rig = Rig(autoplay=False)
        self.rig.ctrl.init()

    def test_locked_audio_defers_announcement_until_gesture(self) -> None:
        self.rig.ctrl.on_entries([_row("L0", "Called")])
        self.rig.tts.play_chime.assert_not_called()
        result = self.rig.ctrl.activate_kiosk()
        self.assertEqual(result.state.phase, KioskPhase.ACTIVATED)
        self.rig.tts.play_chime.assert_called_once()
        self.assertEqual(self.rig.events[ON_KIOSK][-1]["state"]["phase"], "ACTIVATED")

    def test_user_gesture_event_activates(self) -> None:
        self.rig.ctrl.handle_platform_event(PlatformSignal.parse("user_gesture"))
        self.assertTrue(self.rig.ctrl.kiosk.audio_permitted)

    def test_settings_feed_reconfigures_kiosk(self) -> None:
        frame = self.rig.ctrl.on_settings({"enable_auto_fullscreen": "true"})
        self.assertEqual(frame.kiosk.phase, KioskPhase.AWAITING_GESTURE)
        self.assertTrue(frame.kiosk.needs_user_gesture)

    def test_fullscreen_change_publishes_kiosk_state(self) -> None:
        self.rig.ctrl.on_settings({"enable_auto_fullscreen": True})
        self.rig.ctrl.activate_kiosk()
        frame = self.rig.ctrl.handle_platform_event(PlatformEvent.FULLSCREEN_CHANGED, False)
        self.assertFalse(frame.kiosk.fullscreen_active)
        self.assertFalse(self.rig.events[ON_KIOSK][-1]["fullscreen_active"])


def test_settings_update_is_saved_with_snapshot(rig: Rig) -> None:
    rig.ctrl.on_entries([_row("L0")])
    rig.ctrl.on_settings({"clinic_name": "Mercy"})
    assert rig.cache.load(rig.ctrl.cache_key).settings == {"clinic_name": "Mercy"}


def test_malformed_settings_value_does_not_stall_display(rig: Rig) -> None:
    rig.ctrl.on_settings({"chime_volume": "loud"})
    frame = rig.ctrl.on_entries([_row("L1", "Called")])
    assert frame.mode is DisplayMode.LIVE
    assert frame.view.current_serving.token == "L1"
    rig.scheduler.advance(1_000)
    rig.tts.play_chime.assert_called_once_with(pytest.approx(0.6))
    rig.tts.speak.assert_called_once()

    rig.go_offline()
    frame = rig.ctrl.frame
    assert frame.mode is DisplayMode.CACHED
    assert frame.settings == {"chime_volume": "loud"}


def test_dispose_cancels_pending_work(rig: Rig) -> None:
    rig.ctrl.on_entries([_row("L0", "Called")])
    rig.ctrl.on_entries([_row("L0", "Served"), _row("L2", "Called")])
    rig.ctrl.dispose()
    assert rig.scheduler.pending == 0
    rig.scheduler.advance(3_600_000)
    rig.tts.speak.assert_not_called()
    rig.tts.stop.assert_called_once()


def test_failing_bus_subscriber_does_not_stop_engine(rig: Rig) -> None:
    rig.ctrl.bus.subscribe(ON_FRAME, MagicMock(side_effect=RuntimeError("render")))
    frame = rig.ctrl.on_entries([_row("L0")])
    assert frame.mode is DisplayMode.LIVE
    assert rig.events[ON_FRAME][-1]["mode"] == "LIVE"
