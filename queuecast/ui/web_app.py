"""
queuecast/ui/web_app.py — FastAPI host for QueueCast display engines.

Each display route gets its own :class:`~queuecast.pipeline.controller.DisplayController`,
created on first use and fed from two shared feeds. Display pages report
their platform state (connectivity, fullscreen, user gestures) back over
HTTP and receive frames over a WebSocket.

REST endpoints
--------------
GET  /health                               JSON health check
GET  /displays/{kind}/{scope}/state        Current display frame
POST /displays/{kind}/{scope}/activate     User gesture → kiosk activation
POST /displays/{kind}/{scope}/audio        Audio toggle   {"enabled": true|false}
POST /displays/{kind}/{scope}/platform     Platform event {"event": "offline", "active": null}
POST /feed/entries                         Full entry list (live feed delivery)
POST /feed/settings                        Whole settings map (settings feed delivery)

WebSocket
---------
ws://<host>:<port>/displays/{kind}/{scope}/ws

Messages pushed by server (JSON):
  {"type": "frame",        ...DisplayFrame...}     ← also sent on connect
  {"type": "announcement", "phase": "dispatched", "token": "A1", ...}
  {"type": "connectivity", "status": "RECONNECTING", "attempt": 2, ...}
  {"type": "kiosk",        ...}
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set, Tuple

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from queuecast.cache.offline_cache import OfflineCache
from queuecast.cache.store import CacheStore, FileCacheStore, MemoryCacheStore
from queuecast.core.config import QueueCastConfig, SettingsProvider
from queuecast.core.constants import DisplayKind
from queuecast.core.logger import get_logger
from queuecast.core.models import parse_entries
from queuecast.core.timers import AsyncioScheduler, TimerScheduler
from queuecast.input.feeds import FeedHub
from queuecast.input.platform import PlatformEvent, PlatformSignal, SimulatedPlatform
from queuecast.output.tts import TextToSpeechAdapter
from queuecast.pipeline.controller import (
    ON_ANNOUNCEMENT,
    ON_CONNECTIVITY,
    ON_FRAME,
    ON_KIOSK,
    DisplayController,
    resolve_scope,
)

_log = get_logger()

DisplayKey = Tuple[DisplayKind, str]


# ── Request bodies ────────────────────────────────────────────────────────────

class AudioToggle(BaseModel):
    enabled: bool


class PlatformReport(BaseModel):
    event: str
    active: Optional[bool] = None


# ── WebSocket fan-out ─────────────────────────────────────────────────────────

class _Broadcaster:
    """Per-display sets of WebSocket clients, fed from EventBus callbacks."""

    def __init__(self) -> None:
        self._clients: Dict[DisplayKey, Set[WebSocket]] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def client_count(self) -> int:
        return sum(len(c) for c in self._clients.values())

    def add(self, key: DisplayKey, ws: WebSocket) -> None:
        self._loop = asyncio.get_running_loop()
        self._clients.setdefault(key, set()).add(ws)

    def discard(self, key: DisplayKey, ws: WebSocket) -> None:
        self._clients.get(key, set()).discard(ws)

    def push(self, key: DisplayKey, msg: Dict[str, Any]) -> None:
        """Schedule ``msg`` for every client of ``key``; safe from any thread."""
        if self._loop is None or not self._clients.get(key):
            return
        asyncio.run_coroutine_threadsafe(self._broadcast(key, msg), self._loop)

    async def _broadcast(self, key: DisplayKey, msg: Dict[str, Any]) -> None:
        text = json.dumps(msg, default=str)
        dead: List[WebSocket] = []
        for ws in list(self._clients.get(key, ())):
            try:
                await ws.send_text(text)
            except Exception:  # noqa: BLE001
                dead.append(ws)
        for ws in dead:
            self.discard(key, ws)


# ── Display registry ──────────────────────────────────────────────────────────

class DisplayRegistry:
    """
    Creates and owns one :class:`DisplayController` per display route.

    Args:
        config: Static configuration.
        tts: Audio output shared by every display.
        cache: Snapshot cache shared by every display.
        scheduler_factory: Builds the timer source for a new display.
        platform_factory: Builds the platform bridge for a new display.
    """

    def __init__(
        self,
        config: QueueCastConfig,
        tts: TextToSpeechAdapter,
        cache: OfflineCache,
        scheduler_factory: Callable[[], TimerScheduler] = AsyncioScheduler,
        platform_factory: Callable[[], SimulatedPlatform] = SimulatedPlatform,
    ) -> None:
        self.config = config
        self.tts = tts
        self.cache = cache
        self.entries_feed: FeedHub[List[Dict[str, Any]]] = FeedHub("entries")
        self.settings_feed: FeedHub[Dict[str, Any]] = FeedHub("settings")
        self.broadcaster = _Broadcaster()
        self._scheduler_factory = scheduler_factory
        self._platform_factory = platform_factory
        self._displays: Dict[DisplayKey, DisplayController] = {}
        self._platforms: Dict[DisplayKey, SimulatedPlatform] = {}

    def __len__(self) -> int:
        return len(self._displays)

    @staticmethod
    def key_for(kind: str, scope: str) -> DisplayKey:
        """
        Parse route parameters into a registry key.

        Raises:
            ValueError: Unknown display kind or missing department.
        """
        try:
            display_kind = DisplayKind(kind.lower())
        except ValueError:
            valid = ", ".join(k.value for k in DisplayKind)
            raise ValueError(f"unknown display kind {kind!r} (expected one of: {valid})") from None
        return display_kind, resolve_scope(display_kind, scope)

    def known_departments(self) -> List[str]:
        """Configured departments, then any others in the latest entries delivery."""
        departments = list(dict.fromkeys(self.config.display.departments))
        if self.entries_feed.has_value:
            for entry in parse_entries(self.entries_feed.latest or []):
                if entry.department not in departments:
                    departments.append(entry.department)
        return departments

    def get(self, kind: str, scope: str) -> DisplayController:
        """
        Return the controller for a route, creating and initialising it on first use.

        Raises:
            ValueError: Unknown display kind, or a department that is neither
                configured nor present in the entries feed.
        """
        key = self.key_for(kind, scope)
        controller = self._displays.get(key)
        if controller is not None:
            return controller
        if key[0] is DisplayKind.DEPARTMENTAL and key[1] not in self.known_departments():
            raise ValueError(f"unknown department {key[1]!r}")

        platform = self._platform_factory()
        controller = DisplayController(
            key[0],
            key[1],
            SettingsProvider(self.config),
            self.cache,
            self.tts,
            platform,
            self._scheduler_factory(),
            entries_feed=self.entries_feed,
            settings_feed=self.settings_feed,
        )
        self._wire(key, controller)
        self._displays[key] = controller
        self._platforms[key] = platform
        controller.init()
        _log.info("web_app", "display_created", {"kind": key[0].value, "scope": key[1]})
        return controller

    def platform(self, kind: str, scope: str) -> SimulatedPlatform:
        key = self.key_for(kind, scope)
        self.get(kind, scope)
        return self._platforms[key]

    def dispose(self) -> None:
        for controller in self._displays.values():
            controller.dispose()
        self._displays.clear()
        self._platforms.clear()

    def _wire(self, key: DisplayKey, controller: DisplayController) -> None:
        push = self.broadcaster.push
        controller.bus.subscribe(ON_FRAME, lambda d: push(key, {"type": "frame", **d}))
        controller.bus.subscribe(
            ON_ANNOUNCEMENT, lambda d: push(key, {"type": "announcement", **d})
        )
        controller.bus.subscribe(
            ON_CONNECTIVITY, lambda d: push(key, {"type": "connectivity", **d})
        )
        controller.bus.subscribe(ON_KIOSK, lambda d: push(key, {"type": "kiosk", **d}))


def build_cache(config: QueueCastConfig) -> OfflineCache:
    """Snapshot cache on the configured backend."""
    store: CacheStore
    if config.cache.backend == "memory":
        store = MemoryCacheStore()
    else:
        store = FileCacheStore(config.cache.resolved_directory)
    return OfflineCache(store, ttl_ms=config.cache.ttl_ms)


# ── App factory ───────────────────────────────────────────────────────────────

def create_app(
    config: QueueCastConfig,
    tts: TextToSpeechAdapter,
    cache: Optional[OfflineCache] = None,
    scheduler_factory: Callable[[], TimerScheduler] = AsyncioScheduler,
    platform_factory: Callable[[], SimulatedPlatform] = SimulatedPlatform,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Static configuration.
        tts: Audio output shared by every display.
        cache: Snapshot cache; built from ``config.cache`` if omitted.
        scheduler_factory: Timer source per display.
        platform_factory: Platform bridge per display.
    """
    registry = DisplayRegistry(
        config,
        tts,
        cache or build_cache(config),
        scheduler_factory=scheduler_factory,
        platform_factory=platform_factory,
    )

    @asynccontextmanager
    async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
        _log.info("web_app", "startup", {})
        yield
        registry.dispose()
        _log.info("web_app", "shutdown", {})

    app = FastAPI(title="QueueCast", version="1.0", lifespan=_lifespan)
    app.state.registry = registry

    def _display(kind: str, scope: str) -> DisplayController:
        try:
            return registry.get(kind, scope)
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    # ── Routes ────────────────────────────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse({
            "status": "ok",
            "displays": len(registry),
            "clients": registry.broadcaster.client_count,
            "feeds": {
                "entries": registry.entries_feed.deliveries,
                "settings": registry.settings_feed.deliveries,
            },
        })

    @app.get("/displays/{kind}/{scope}/state")
    async def display_state(kind: str, scope: str) -> JSONResponse:
        return JSONResponse(_display(kind, scope).frame.to_dict())

    @app.post("/displays/{kind}/{scope}/activate")
    async def activate(kind: str, scope: str) -> JSONResponse:
        result = _display(kind, scope).activate_kiosk()
        return JSONResponse(result.to_dict())

    @app.post("/displays/{kind}/{scope}/audio")
    async def audio(kind: str, scope: str, body: AudioToggle) -> JSONResponse:
        frame = _display(kind, scope).set_audio_enabled(body.enabled)
        return JSONResponse(frame.to_dict())

    @app.post("/displays/{kind}/{scope}/platform")
    async def platform_event(kind: str, scope: str, body: PlatformReport) -> JSONResponse:
        controller = _display(kind, scope)
        try:
            signal = PlatformSignal.parse(body.event, body.active)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        if signal.event is PlatformEvent.FULLSCREEN_CHANGED and signal.active is None:
            raise HTTPException(status_code=422, detail="fullscreen_changed needs 'active'")
        registry.platform(kind, scope).apply(signal)
        frame = controller.handle_platform_event(signal)
        return JSONResponse(frame.to_dict())

    @app.post("/feed/entries")
    async def feed_entries(entries: List[Dict[str, Any]]) -> JSONResponse:
        registry.entries_feed.publish(entries)
        return JSONResponse({"ok": True, "entries": len(entries)})

    @app.post("/feed/settings")
    async def feed_settings(settings: Dict[str, Any]) -> JSONResponse:
        registry.settings_feed.publish(settings)
        return JSONResponse({"ok": True, "keys": sorted(settings)})

    @app.websocket("/displays/{kind}/{scope}/ws")
    async def display_ws(ws: WebSocket, kind: str, scope: str) -> None:
        try:
            key = registry.key_for(kind, scope)
            controller = registry.get(kind, scope)
        except ValueError as exc:
            await ws.close(code=1008, reason=str(exc))
            return

        await ws.accept()
        registry.broadcaster.add(key, ws)
        await ws.send_text(json.dumps({"type": "frame", **controller.frame.to_dict()}, default=str))
        _log.info("web_app", "ws_connected", {"kind": key[0].value, "scope": key[1]})

        try:
            while True:
                msg = await ws.receive_text()
                _handle_client_msg(controller, msg)
        except WebSocketDisconnect:
            pass
        finally:
            registry.broadcaster.discard(key, ws)
            _log.info("web_app", "ws_disconnected", {"kind": key[0].value, "scope": key[1]})

    return app


def _handle_client_msg(controller: DisplayController, msg: str) -> None:
    """Handle display-page messages: ``{"action": "activate"}`` or ``{"action": "audio", "enabled": false}``."""
    try:
        data = json.loads(msg)
    except ValueError:
        _log.warn("web_app", "ws_bad_message", {"message": msg[:200]})
        return
    if not isinstance(data, dict):
        return
    action = data.get("action")
    if action == "activate":
        controller.activate_kiosk()
    elif action == "audio":
        controller.set_audio_enabled(bool(data.get("enabled", True)))


# ── Public launcher ───────────────────────────────────────────────────────────

def start_web_server(
    config: QueueCastConfig,
    tts: TextToSpeechAdapter,
    host: Optional[str] = None,
    port: Optional[int] = None,
) -> None:
    """
    Build the app and run uvicorn in the current thread (blocking).

    Args:
        config: Static configuration; supplies the default host and port.
        tts: Audio output for every display.
        host: Bind address override.
        port: TCP port override.
    """
    import uvicorn  # type: ignore

    app = create_app(config, tts)
    bind_host = host or config.server.host
    bind_port = port or config.server.port
    server_config = uvicorn.Config(
        app,
        host=bind_host,
        port=bind_port,
        log_level="warning",
        access_log=False,
    )
    server = uvicorn.Server(server_config)
    _log.info("web_app", "server_start", {"host": bind_host, "port": bind_port})
    server.run()
