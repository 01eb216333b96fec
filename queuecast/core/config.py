"""
queuecast/core/config.py — Typed configuration for QueueCast.

Two layers:

* **Static config** — ``config/queuecast.yaml`` validated into frozen
  dataclasses by :func:`load_config`. Never read YAML anywhere else.
* **Runtime settings** — the whole-map updates pushed by the settings feed.
  :class:`SettingsProvider` keeps the latest map and overlays it on the
  static defaults, producing :class:`AnnouncementSettings` and
  :class:`KioskSettings` for the engine.
"""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

import yaml

from queuecast.core.constants import C, DisplayKind
from queuecast.core.errors import ConfigError

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Dataclass hierarchy, mirrors queuecast.yaml
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class DisplayConfig:
    """Display scoping and list limits."""

    departments: tuple[str, ...] = (
        "Consultation", "Lab", "Pharmacy", "X-ray", "Scan", "Billing",
    )
    department_rooms: Mapping[str, str] = field(default_factory=lambda: {
        "Consultation": "Room 1-3",
        "Lab": "Lab Counter",
        "Pharmacy": "Pharmacy",
        "X-ray": "X-ray Room",
        "Scan": "Scan Room",
        "Billing": "Billing Counter",
        "Reception": "Reception Desk",
    })
    departmental_limit: int = C.UPCOMING_LIMITS[DisplayKind.DEPARTMENTAL]
    reception_limit: int = C.UPCOMING_LIMITS[DisplayKind.RECEPTION]
    universal_limit: int = C.UPCOMING_LIMITS[DisplayKind.UNIVERSAL]

    def upcoming_limit(self, kind: DisplayKind) -> int:
        return {
            DisplayKind.DEPARTMENTAL: self.departmental_limit,
            DisplayKind.RECEPTION: self.reception_limit,
            DisplayKind.UNIVERSAL: self.universal_limit,
        }[kind]


@dataclass(frozen=True)
class AnnouncementConfig:
    """Announcement defaults; the settings feed overrides these at runtime."""

    enable_voice_announcements: bool = True
    enable_announcement_chime: bool = True
    template: str = C.DEFAULT_TEMPLATE
    reception_template: Optional[str] = None
    chime_delay_ms: int = C.CHIME_DELAY_MS
    chime_volume: float = C.CHIME_VOLUME
    voice_rate: float = 1.0
    voice_pitch: float = 1.0
    voice_volume: float = 0.8
    voice_name: str = "default"
    voice_language: str = "en-GB"
    hospital_name: str = C.DEFAULT_HOSPITAL_NAME


@dataclass(frozen=True)
class ConnectivityConfig:
    """Reconnect backoff parameters."""

    backoff_base_ms: int = C.BACKOFF_BASE_MS
    backoff_cap_ms: int = C.BACKOFF_CAP_MS
    max_attempts: int = C.MAX_RECONNECT_ATTEMPTS


@dataclass(frozen=True)
class CacheConfig:
    """Offline snapshot cache."""

    backend: str = "file"
    directory: str = ".queuecast_cache"
    ttl_ms: int = C.CACHE_TTL_MS
    refresh_ms: int = C.CACHE_REFRESH_MS

    @property
    def resolved_directory(self) -> Path:
        return Path(os.path.expanduser(self.directory))


@dataclass(frozen=True)
class KioskConfig:
    """Kiosk defaults; ``enable_auto_fullscreen``/``enable_auto_sound`` override."""

    auto_fullscreen: bool = False
    auto_audio: bool = False
    unlock_tone_volume: float = C.UNLOCK_TONE_VOLUME


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(frozen=True)
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 7870


@dataclass(frozen=True)
class QueueCastConfig:
    """Root configuration object — single source of truth for static settings."""

    display: DisplayConfig = field(default_factory=DisplayConfig)
    announcement: AnnouncementConfig = field(default_factory=AnnouncementConfig)
    connectivity: ConnectivityConfig = field(default_factory=ConnectivityConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    kiosk: KioskConfig = field(default_factory=KioskConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


# ──────────────────────────────────────────────
# Loader
# ──────────────────────────────────────────────


def load_config(config_path: Path | str | None = None) -> QueueCastConfig:
    """
    Load, validate, and return a QueueCastConfig from a YAML file.

    The search order for the config file is:
    1. *config_path* argument (if provided)
    2. ``QUEUECAST_CONFIG`` environment variable
    3. ``config/queuecast.yaml`` in the project root
    4. Built-in defaults (no file required)

    Raises:
        ConfigError: If a YAML field has an invalid type or value.
        FileNotFoundError: If an explicitly named file does not exist.
    """
    resolved_path: Path | None = None

    if config_path is not None:
        resolved_path = Path(config_path)
        if not resolved_path.exists():
            raise FileNotFoundError(f"Config file not found: {resolved_path}")
    elif "QUEUECAST_CONFIG" in os.environ:
        resolved_path = Path(os.environ["QUEUECAST_CONFIG"])
        if not resolved_path.exists():
            raise FileNotFoundError(
                f"QUEUECAST_CONFIG points to missing file: {resolved_path}"
            )
    else:
        candidate = Path(__file__).resolve().parent.parent.parent / "config" / "queuecast.yaml"
        if candidate.exists():
            resolved_path = candidate

    raw: dict = {}
    if resolved_path is not None:
        logger.info("Loading config from: %s", resolved_path)
        with resolved_path.open("r", encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh) or {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config file must be a YAML mapping, got: {type(loaded)}")
        raw = loaded
    else:
        logger.info("No config file found — using built-in defaults")

    try:
        display_raw = dict(raw.get("display") or {})
        if isinstance(display_raw.get("departments"), list):
            display_raw["departments"] = tuple(display_raw["departments"])
        if "department_rooms" in display_raw:
            display_raw["department_rooms"] = dict(display_raw["department_rooms"] or {})

        config = QueueCastConfig(
            display=DisplayConfig(**display_raw),
            announcement=AnnouncementConfig(**(raw.get("announcement") or {})),
            connectivity=ConnectivityConfig(**(raw.get("connectivity") or {})),
            cache=CacheConfig(**(raw.get("cache") or {})),
            kiosk=KioskConfig(**(raw.get("kiosk") or {})),
            logging=LoggingConfig(**(raw.get("logging") or {})),
            server=ServerConfig(**(raw.get("server") or {})),
        )
    except TypeError as exc:
        raise ConfigError(f"Invalid config value: {exc}") from exc

    _validate_config(config)
    logger.debug("Config loaded: %s", config)
    return config


def _validate_config(config: QueueCastConfig) -> None:
    """
    Validate cross-field constraints on the loaded configuration.

    Raises:
        ConfigError: If any configured value violates a hard constraint.
    """
    conn = config.connectivity
    if conn.backoff_base_ms <= 0:
        raise ConfigError(f"connectivity.backoff_base_ms must be positive, got {conn.backoff_base_ms}")
    if conn.backoff_cap_ms < conn.backoff_base_ms:
        raise ConfigError(
            "connectivity.backoff_cap_ms must be ≥ backoff_base_ms, "
            f"got {conn.backoff_cap_ms} < {conn.backoff_base_ms}"
        )
    if conn.max_attempts < 1:
        raise ConfigError(f"connectivity.max_attempts must be ≥ 1, got {conn.max_attempts}")

    if config.cache.backend not in {"file", "memory"}:
        raise ConfigError(f"cache.backend must be 'file' or 'memory', got '{config.cache.backend}'")
    if config.cache.ttl_ms <= 0:
        raise ConfigError(f"cache.ttl_ms must be positive, got {config.cache.ttl_ms}")

    ann = config.announcement
    if ann.chime_delay_ms < 0:
        raise ConfigError(f"announcement.chime_delay_ms must be ≥ 0, got {ann.chime_delay_ms}")
    for name in ("chime_volume", "voice_volume"):
        value = getattr(ann, name)
        if not (0.0 <= value <= 1.0):
            raise ConfigError(f"announcement.{name} must be in [0, 1], got {value}")

    for kind in DisplayKind:
        limit = config.display.upcoming_limit(kind)
        if limit < 1:
            raise ConfigError(f"display.{kind.value}_limit must be ≥ 1, got {limit}")

    if config.logging.level not in {"DEBUG", "INFO", "WARN", "ERROR"}:
        raise ConfigError(f"logging.level must be DEBUG/INFO/WARN/ERROR, got '{config.logging.level}'")


# ──────────────────────────────────────────────
# Runtime settings (settings feed overlay)
# ──────────────────────────────────────────────


def parse_bool(value: Any, default: bool) -> bool:
    """Accept ``True``/``False`` or their string forms; anything else → default."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    return default


def _parse_float(settings: Mapping[str, Any], key: str, default: float) -> float:
    """Numeric setting; a missing or unparseable value falls back to ``default``."""
    value = settings.get(key)
    if value is None or value == "":
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = math.nan
    if not math.isfinite(number):
        logger.warning("Setting %r must be a finite number, got %r; using %r", key, value, default)
        return default
    return number


@dataclass(frozen=True)
class AnnouncementSettings:
    """Effective announcement configuration for one engine step."""

    voice_enabled: bool
    chime_enabled: bool
    template: str
    chime_delay_ms: int
    chime_volume: float
    hospital_name: str
    voice_rate: float = 1.0
    voice_pitch: float = 1.0
    voice_volume: float = 0.8
    voice_name: str = "default"
    voice_language: str = "en-GB"


@dataclass(frozen=True)
class KioskSettings:
    auto_fullscreen: bool
    auto_audio: bool
    unlock_tone_volume: float = C.UNLOCK_TONE_VOLUME


@runtime_checkable
class ConfigProvider(Protocol):
    """Source of the current runtime settings for one display engine."""

    @property
    def config(self) -> QueueCastConfig:
        ...

    @property
    def settings(self) -> Mapping[str, Any]:
        ...

    def update(self, settings: Mapping[str, Any]) -> None:
        ...

    def announcement_settings(
        self,
        kind: DisplayKind = DisplayKind.DEPARTMENTAL,
        settings: Optional[Mapping[str, Any]] = None,
    ) -> AnnouncementSettings:
        ...

    def kiosk_settings(self) -> KioskSettings:
        ...


class SettingsProvider:
    """
    Holds the latest settings-feed map and derives typed settings from it.

    Updates replace the map wholesale ("latest wins"). Malformed values in the
    map never raise when settings are derived; each falls back to its default.

    Args:
        config: Static configuration supplying the defaults.
        initial: Optional initial settings map.
    """

    def __init__(
        self,
        config: QueueCastConfig,
        initial: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._config = config
        self._settings: Mapping[str, Any] = dict(initial or {})

    @property
    def settings(self) -> Mapping[str, Any]:
        return self._settings

    @property
    def config(self) -> QueueCastConfig:
        return self._config

    def update(self, settings: Mapping[str, Any]) -> None:
        """Replace the settings map."""
        if not isinstance(settings, Mapping):
            raise ConfigError(f"settings must be a mapping, got {type(settings).__name__}")
        self._settings = dict(settings)

    def announcement_settings(
        self,
        kind: DisplayKind = DisplayKind.DEPARTMENTAL,
        settings: Optional[Mapping[str, Any]] = None,
    ) -> AnnouncementSettings:
        """
        Overlay a settings map on the static announcement defaults.

        Args:
            kind: Display kind; reception displays prefer
                ``reception_announcement_template``.
            settings: Map to use instead of the latest one (e.g. cached settings).
        """
        s = self._settings if settings is None else settings
        base = self._config.announcement

        template = s.get("announcement_template") or base.template
        if kind is DisplayKind.RECEPTION:
            template = (
                s.get("reception_announcement_template")
                or base.reception_template
                or template
            )

        return AnnouncementSettings(
            voice_enabled=parse_bool(
                s.get("enable_voice_announcements"), base.enable_voice_announcements
            ),
            chime_enabled=parse_bool(
                s.get("enable_announcement_chime"), base.enable_announcement_chime
            ),
            template=str(template),
            chime_delay_ms=int(_parse_float(s, "chime_delay_ms", base.chime_delay_ms)),
            chime_volume=_parse_float(s, "chime_volume", base.chime_volume),
            hospital_name=str(s.get("clinic_name") or base.hospital_name),
            voice_rate=_parse_float(s, "voice_rate", base.voice_rate),
            voice_pitch=_parse_float(s, "voice_pitch", base.voice_pitch),
            voice_volume=_parse_float(s, "voice_volume", base.voice_volume),
            voice_name=str(s.get("voice_name") or base.voice_name),
            voice_language=str(s.get("voice_language") or base.voice_language),
        )

    def kiosk_settings(self) -> KioskSettings:
        base = self._config.kiosk
        return KioskSettings(
            auto_fullscreen=parse_bool(
                self._settings.get("enable_auto_fullscreen"), base.auto_fullscreen
            ),
            auto_audio=parse_bool(self._settings.get("enable_auto_sound"), base.auto_audio),
            unlock_tone_volume=base.unlock_tone_volume,
        )
