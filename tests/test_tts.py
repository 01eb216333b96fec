"""
tests/test_tts.py — Tests for the audio helpers in queuecast.output.tts.

No audio device is touched: only the numpy synthesis and voice selection
are exercised.
"""

from __future__ import annotations

from types import SimpleNamespace

import numpy as np
import pytest

from queuecast.output.tts import _select_voice, synthesize_chime, synthesize_tone, to_pcm16

_RATE = 22050


# ──────────────────────────────────────────────────────────────
# Tone synthesis
# ──────────────────────────────────────────────────────────────

def test_tone_length_and_amplitude() -> None:
    tone = synthesize_tone(800.0, 0.3, 0.6, _RATE)
    assert tone.dtype == np.float32
    assert len(tone) == 6615
    assert float(np.max(np.abs(tone))) <= 0.6 + 1e-6


def test_tone_decays() -> None:
    tone = synthesize_tone(440.0, 0.3, 1.0, _RATE)
    head = float(np.max(np.abs(tone[:500])))
    tail = float(np.max(np.abs(tone[-500:])))
    assert tail < head * 0.05


def test_flat_tone_keeps_volume() -> None:
    tone = synthesize_tone(440.0, 0.1, 0.5, _RATE, decay=False)
    assert float(np.max(np.abs(tone[-200:]))) == pytest.approx(0.5, abs=0.01)


def test_chime_second_tone_overlaps_first() -> None:
    chime = synthesize_chime(0.6, sample_rate=_RATE)
    tone = 6615
    assert tone < len(chime) < 2 * tone
    assert float(np.max(np.abs(chime))) <= 1.0


def test_loud_chime_is_clipped() -> None:
    chime = synthesize_chime(1.0, tones_hz=(500.0, 500.0), overlap=0.0, sample_rate=_RATE)
    assert float(np.max(chime)) <= 1.0
    assert float(np.min(chime)) >= -1.0


def test_pcm16_conversion() -> None:
    pcm = to_pcm16(np.array([0.0, 1.0, -1.0, 2.0], dtype=np.float32))
    assert np.frombuffer(pcm, dtype="<i2").tolist() == [0, 32767, -32767, 32767]


# ──────────────────────────────────────────────────────────────
# Voice selection
# ──────────────────────────────────────────────────────────────

_VOICES = [
    SimpleNamespace(id="v-us", name="Alex", languages=[b"\x05en-us"]),
    SimpleNamespace(id="v-gb", name="Daniel", languages=["en_GB"]),
    SimpleNamespace(id="v-fr", name="Thomas", languages=["fr-FR"]),
]


@pytest.mark.parametrize("name, language, expected", [
    ("Thomas", "en-GB", "v-fr"),
    ("default", "en-GB", "v-gb"),
    ("", "en-AU", "v-us"),
    ("nobody", "de-DE", None),
    ("default", "", None),
])
def test_select_voice(name: str, language: str, expected) -> None:
    assert _select_voice(_VOICES, name, language) == expected
