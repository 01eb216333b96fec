"""
tests/test_logger.py — Tests for the JSONL logger in queuecast.core.logger.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from queuecast.core.logger import QCLogger


def _records(log: QCLogger) -> list[dict]:
    log.flush()
    lines: list[dict] = []
    for path in sorted(log.log_dir.glob("queuecast_*.jsonl")):
        lines.extend(json.loads(line) for line in path.read_text(encoding="utf-8").splitlines())
    return lines


@pytest.fixture()
def log(tmp_path: Path):
    logger = QCLogger(tmp_path / "logs")
    yield logger
    logger.close()


def test_startup_record_is_written(log: QCLogger) -> None:
    first = _records(log)[0]
    assert first["phase"] == "system"
    assert first["event"] == "startup"


def test_record_shape(log: QCLogger) -> None:
    log.info("cache", "snapshot_saved", {"entries": 3})
    log.perf("pipeline", "display_init", 1.23456)
    info, perf = _records(log)[-2:]
    assert info["level"] == "INFO"
    assert info["data"] == {"entries": 3}
    assert "ctx" not in info
    assert "latency_ms" not in info
    assert perf["latency_ms"] == pytest.approx(1.235)


def test_bound_context_is_attached(log: QCLogger) -> None:
    bound = log.bind(display="departmental/Lab")
    bound.bind(cause="entries").warn("pipeline", "offline_mode", {"cached": True})
    last = _records(log)[-1]
    assert last["ctx"] == {"display": "departmental/Lab", "cause": "entries"}
    assert last["level"] == "WARN"


def test_level_filter(log: QCLogger) -> None:
    log.debug("pipeline", "frame")
    assert _records(log)[-1]["event"] != "frame"
    log.set_level("DEBUG")
    log.debug("pipeline", "frame")
    assert _records(log)[-1]["event"] == "frame"
    log.set_level("ERROR")
    log.warn("connectivity", "retry_scheduled")
    assert _records(log)[-1]["event"] == "frame"


def test_unserialisable_data_is_stringified(log: QCLogger) -> None:
    log.info("feed", "delivery", {"path": Path("/tmp/x")})
    assert _records(log)[-1]["data"]["path"] == str(Path("/tmp/x"))
