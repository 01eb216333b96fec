"""
tests/test_main.py — CLI entry point smoke tests (server and audio mocked).
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import main as entry


def test_missing_config_exits_with_2(tmp_path: Path) -> None:
    assert entry.main(["--config", str(tmp_path / "absent.yaml")]) == 2


def test_invalid_config_exits_with_2(tmp_path: Path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("connectivity:\n  max_attempts: 0\n", encoding="utf-8")
    assert entry.main(["--config", str(path)]) == 2


def test_serves_with_overrides(monkeypatch) -> None:
    engine = MagicMock()
    serve = MagicMock()
    monkeypatch.setattr("queuecast.output.tts.TTSEngine", MagicMock(return_value=engine))
    monkeypatch.setattr("queuecast.ui.web_app.start_web_server", serve)

    assert entry.main(["--port", "9100", "--log-level", "WARN"]) == 0
    _, kwargs = serve.call_args
    assert kwargs["port"] == 9100
    assert kwargs["host"] == "0.0.0.0"
    engine.shutdown.assert_called_once()


def test_server_crash_exits_with_1(monkeypatch) -> None:
    engine = MagicMock()
    monkeypatch.setattr("queuecast.output.tts.TTSEngine", MagicMock(return_value=engine))
    monkeypatch.setattr(
        "queuecast.ui.web_app.start_web_server", MagicMock(side_effect=OSError("port in use")),
    )
    assert entry.main([]) == 1
    engine.shutdown.assert_called_once()
