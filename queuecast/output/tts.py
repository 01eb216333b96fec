"""
queuecast/output/tts.py — Offline speech and chime output for announcements.

Speech: pyttsx3, driven from a daemon worker thread so the engine loop never
blocks on synthesis. Chime and audio-unlock tones: synthesised with numpy
and played through ``pygame.mixer``.

The engine only depends on :class:`TextToSpeechAdapter`; :class:`TTSEngine`
is the concrete implementation used by the web host.
"""

from __future__ import annotations

import queue
import threading
import uuid
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence, runtime_checkable

import numpy as np

from queuecast.core.config import AnnouncementSettings
from queuecast.core.constants import C
from queuecast.core.logger import get_logger

_log = get_logger()

# Sentinel value to signal the worker to exit
_STOP_SENTINEL = object()

_SAMPLE_RATE = 22050

# pyttsx3 speaks at ~175 words per minute at rate 1.0
_BASE_WPM = 175


@runtime_checkable
class TextToSpeechAdapter(Protocol):
    """Audio output used by the announcement scheduler and the kiosk."""

    def play_chime(self, volume: float) -> None:
        ...

    def speak(self, text: str, settings: AnnouncementSettings) -> None:
        ...

    def unlock_audio(self, volume: float) -> bool:
        """Play a near-silent tone; True if audio output is now usable."""
        ...

    def stop(self) -> None:
        ...


# ──────────────────────────────────────────────────────────────
# Tone synthesis
# ──────────────────────────────────────────────────────────────

def synthesize_tone(
    frequency_hz: float,
    duration_s: float,
    volume: float,
    sample_rate: int = _SAMPLE_RATE,
    decay: bool = True,
) -> np.ndarray:
    """
    Sine tone as float32 samples in [-volume, volume].

    With ``decay`` the gain falls exponentially to 1% of ``volume`` over
    the tone, like a struck bell.
    """
    n = max(int(round(duration_s * sample_rate)), 1)
    t = np.arange(n, dtype=np.float32) / sample_rate
    wave = np.sin(2.0 * np.pi * frequency_hz * t).astype(np.float32)
    if decay:
        envelope = np.power(0.01, t / duration_s, dtype=np.float32)
    else:
        envelope = np.ones(n, dtype=np.float32)
    return (wave * envelope * volume).astype(np.float32)


def synthesize_chime(
    volume: float = C.CHIME_VOLUME,
    tones_hz: Sequence[float] = C.CHIME_TONES_HZ,
    tone_s: float = C.CHIME_TONE_S,
    overlap: float = C.CHIME_OVERLAP,
    sample_rate: int = _SAMPLE_RATE,
) -> np.ndarray:
    """
    High-low chime: each tone starts ``overlap * tone_s`` after the previous one.

    Returns:
        Mixed float32 samples clipped to [-1, 1].
    """
    step = int(round(overlap * tone_s * sample_rate))
    parts = [synthesize_tone(f, tone_s, volume, sample_rate) for f in tones_hz]
    total = step * (len(parts) - 1) + max(len(p) for p in parts)
    mix = np.zeros(total, dtype=np.float32)
    for i, part in enumerate(parts):
        start = i * step
        mix[start:start + len(part)] += part
    return np.clip(mix, -1.0, 1.0)


def to_pcm16(samples: np.ndarray) -> bytes:
    """Convert float samples in [-1, 1] to little-endian signed 16-bit PCM."""
    return (np.clip(samples, -1.0, 1.0) * 32767).astype("<i2").tobytes()


# ──────────────────────────────────────────────────────────────
# TTSEngine
# ──────────────────────────────────────────────────────────────

@dataclass
class _SpeechJob:
    """A single speech request enqueued for the worker thread."""

    job_id: str
    text: str
    settings: AnnouncementSettings


class TTSEngine:
    """
    Non-blocking offline audio output.

    ``speak`` enqueues the text and returns immediately; the worker thread
    owns the pyttsx3 engine (pyttsx3 engines are not thread-safe). Newer
    announcements replace queued ones that have not started yet.

    Usage::

        engine = TTSEngine()
        engine.play_chime(0.6)
        engine.speak("Token A1, please proceed to Room 1-3", settings)
        engine.shutdown()
    """

    def __init__(self, sample_rate: int = _SAMPLE_RATE) -> None:
        self._sample_rate = sample_rate
        self._pygame_ready = False
        self._queue: queue.Queue[object] = queue.Queue(maxsize=3)
        self._lock = threading.Lock()
        self._engine: Optional[object] = None
        self._running = False

        self._init_mixer()
        self._start_worker()

    # ──────────────────────────────────────────
    # TextToSpeechAdapter
    # ──────────────────────────────────────────

    def play_chime(self, volume: float) -> None:
        self._play_samples(synthesize_chime(volume, sample_rate=self._sample_rate), "chime")

    def unlock_audio(self, volume: float) -> bool:
        tone = synthesize_tone(
            C.UNLOCK_TONE_HZ, C.UNLOCK_TONE_S, volume, self._sample_rate, decay=False,
        )
        return self._play_samples(tone, "unlock_tone")

    def speak(self, text: str, settings: AnnouncementSettings) -> None:
        """
        Enqueue ``text`` for speech and return immediately.

        Raises:
            RuntimeError: If the engine has been shut down.
        """
        if not self._running:
            raise RuntimeError("TTSEngine has been shut down")
        text = text.strip()
        if not text:
            _log.warn("tts_engine", "empty_text_ignored", {})
            return

        job = _SpeechJob(job_id=str(uuid.uuid4())[:8], text=text, settings=settings)
        try:
            self._queue.put_nowait(job)
        except queue.Full:
            # Drop oldest job if queue is full
            try:
                self._queue.get_nowait()
            except queue.Empty:
                pass
            self._queue.put_nowait(job)

        _log.info("tts_engine", "enqueued", {"job_id": job.job_id, "text_len": len(text)})

    def stop(self) -> None:
        """Drop queued speech and silence current output."""
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break

        with self._lock:
            engine = self._engine
        if engine is not None:
            try:
                engine.stop()  # type: ignore[attr-defined]
            except Exception as exc:  # noqa: BLE001
                _log.warn("tts_engine", "engine_stop_failed", {"error": str(exc)})

        if self._pygame_ready:
            import pygame  # type: ignore
            pygame.mixer.stop()

        _log.info("tts_engine", "stopped", {})

    def shutdown(self) -> None:
        """Stop the worker thread and release audio resources."""
        self._running = False
        self._queue.put(_STOP_SENTINEL)
        if self._worker.is_alive():
            self._worker.join(timeout=3.0)

        if self._pygame_ready:
            import pygame  # type: ignore
            pygame.mixer.quit()
            self._pygame_ready = False

        _log.info("tts_engine", "shutdown", {})

    # ──────────────────────────────────────────
    # Initialisation helpers
    # ──────────────────────────────────────────

    def _init_mixer(self) -> None:
        try:
            import pygame  # type: ignore
            pygame.mixer.init(frequency=self._sample_rate, size=-16, channels=1, buffer=512)
            self._pygame_ready = True
            _log.info("tts_engine", "pygame_ready", {"freq": self._sample_rate, "channels": 1})
        except Exception as exc:  # noqa: BLE001
            _log.warn("tts_engine", "pygame_init_failed", {"error": str(exc)})

    def _start_worker(self) -> None:
        self._running = True
        self._worker = threading.Thread(
            target=self._worker_loop,
            name="tts-worker",
            daemon=True,
        )
        self._worker.start()

    def _play_samples(self, samples: np.ndarray, label: str) -> bool:
        if not self._pygame_ready:
            _log.warn("tts_engine", f"{label}_no_mixer", {})
            return False
        try:
            import pygame  # type: ignore
            pygame.mixer.Sound(buffer=to_pcm16(samples)).play()
        except Exception as exc:  # noqa: BLE001
            _log.error("tts_engine", f"{label}_error", {"error": str(exc)})
            return False
        _log.debug("tts_engine", f"{label}_played", {"samples": int(samples.size)})
        return True

    # ──────────────────────────────────────────
    # Worker thread
    # ──────────────────────────────────────────

    def _worker_loop(self) -> None:
        """Drain the job queue until :meth:`shutdown`; never lets an error escape."""
        engine = self._create_engine()
        with self._lock:
            self._engine = engine

        while self._running:
            try:
                item = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            if item is _STOP_SENTINEL:
                break

            job: _SpeechJob = item  # type: ignore[assignment]
            if engine is None:
                _log.warn("tts_engine", "speech_unavailable", {"job_id": job.job_id})
                continue
            try:
                self._apply_voice(engine, job.settings)
                engine.say(job.text)  # type: ignore[attr-defined]
                engine.runAndWait()  # type: ignore[attr-defined]
                _log.info("tts_engine", "spoken", {"job_id": job.job_id})
            except Exception as exc:  # noqa: BLE001
                _log.error("tts_engine", "speak_error", {
                    "job_id": job.job_id,
                    "error": str(exc),
                })

    @staticmethod
    def _create_engine() -> Optional[object]:
        try:
            import pyttsx3  # type: ignore[import]
            return pyttsx3.init()
        except Exception as exc:  # noqa: BLE001
            _log.error("tts_engine", "pyttsx3_init_failed", {"error": str(exc)})
            return None

    @staticmethod
    def _apply_voice(engine: object, settings: AnnouncementSettings) -> None:
        """Map announcement voice settings onto pyttsx3 properties."""
        engine.setProperty("rate", int(_BASE_WPM * settings.voice_rate))  # type: ignore[attr-defined]
        engine.setProperty("volume", settings.voice_volume)  # type: ignore[attr-defined]
        voice_id = _select_voice(
            engine.getProperty("voices") or [],  # type: ignore[attr-defined]
            settings.voice_name,
            settings.voice_language,
        )
        if voice_id is not None:
            engine.setProperty("voice", voice_id)  # type: ignore[attr-defined]


def _select_voice(voices: Sequence[object], name: str, language: str) -> Optional[str]:
    """
    Pick a pyttsx3 voice id: exact name first, then language prefix match.

    ``"default"`` (or empty) for ``name`` skips the name match.
    """
    wanted_name = (name or "").strip().lower()
    if wanted_name and wanted_name != "default":
        for voice in voices:
            if str(getattr(voice, "name", "")).lower() == wanted_name:
                return getattr(voice, "id", None)

    lang = (language or "").replace("_", "-").lower()
    if not lang:
        return None
    base = lang.split("-")[0]
    fallback: Optional[str] = None
    for voice in voices:
        for raw in getattr(voice, "languages", None) or []:
            code = raw.decode("utf-8", "ignore") if isinstance(raw, bytes) else str(raw)
            code = code.lstrip("\x05").replace("_", "-").lower()
            if code == lang:
                return getattr(voice, "id", None)
            if fallback is None and code.split("-")[0] == base:
                fallback = getattr(voice, "id", None)
    return fallback
