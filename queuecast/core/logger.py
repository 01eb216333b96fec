"""
queuecast/core/logger.py — JSONL structured logger for QueueCast.

One JSON object per line in ``<log_dir>/queuecast_{date}.jsonl``, a new file
per UTC day. WARN/ERROR are mirrored to stderr through stdlib logging.

A display engine logs through a :class:`BoundLogger` so every record it
writes carries the display it came from::

    from queuecast.core.logger import get_logger
    log = get_logger().bind(display="departmental/Lab")
    log.info("cache", "snapshot_saved", {"entries": 14})
    log.perf("pipeline", "display_init", 3.2)

The log directory defaults to ``logs/``; ``QUEUECAST_LOG_DIR`` moves it.
"""

from __future__ import annotations

import json
import logging
import os
import platform
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional, TextIO

# ── stdlib mirror logger (stderr for WARN+) ──────────────────
_stdlib = logging.getLogger("queuecast")
if not _stdlib.handlers:
    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s: %(message)s"))
    _stdlib.addHandler(_handler)
_stdlib.setLevel(logging.WARNING)
_stdlib.propagate = False

_DEFAULT_LOG_DIR = "logs"

#: Record levels in ascending severity; PERF ranks with INFO.
LEVELS: Mapping[str, int] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "PERF": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}

_instance: Optional["QCLogger"] = None
_instance_lock = threading.Lock()


class QCLogger:
    """
    Process-wide JSONL logger. Obtain it with :func:`get_logger`.

    A record looks like::

        {"ts": "2026-10-19T08:12:01.123+00:00", "level": "WARN",
         "phase": "connectivity", "event": "retry_scheduled",
         "ctx": {"display": "reception/Reception"},
         "data": {"attempt": 2, "delay_ms": 2000}}

    ``ctx`` appears only for bound loggers and ``latency_ms`` only for
    :meth:`perf` records.

    Args:
        log_dir: Directory receiving the daily files.
        level: Records below this level are dropped.
    """

    def __init__(self, log_dir: Path, level: str = "INFO") -> None:
        self._lock = threading.Lock()
        self._log_dir = log_dir
        self._min_rank = LEVELS[level]
        self._file: Optional[TextIO] = None
        self._day = ""
        self._write("INFO", "system", "startup", {
            "python_version": sys.version.split()[0],
            "platform": platform.platform(),
            "pid": os.getpid(),
        })

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    def set_level(self, level: str) -> None:
        """Drop file records below ``level``."""
        self._min_rank = LEVELS[level]

    def bind(self, **context: Any) -> "BoundLogger":
        """Return a logger that adds ``context`` to every record it writes."""
        return BoundLogger(self, context)

    # ── level methods ─────────────────────────────────────────

    def debug(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        self._write("DEBUG", phase, event, data)

    def info(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """
        Write an INFO record.

        Args:
            phase: Engine component (``'cache'``, ``'announcer'``, ...).
            event: Short event identifier (``'snapshot_saved'``).
            data: Extra key-value context.
        """
        self._write("INFO", phase, event, data)

    def warn(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        self._write("WARN", phase, event, data)

    def error(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        self._write("ERROR", phase, event, data)

    def perf(
        self,
        phase: str,
        event: str,
        latency_ms: float,
        data: Optional[dict] = None,
    ) -> None:
        """Write a PERF record carrying ``latency_ms``."""
        self._write("PERF", phase, event, data, latency_ms=latency_ms)

    def flush(self) -> None:
        with self._lock:
            if self._file is not None and not self._file.closed:
                self._file.flush()

    def close(self) -> None:
        """Close the current file; the next record reopens it."""
        with self._lock:
            if self._file is not None and not self._file.closed:
                self._file.close()
            self._file = None
            self._day = ""

    # ── internal ──────────────────────────────────────────────

    def _write(
        self,
        level: str,
        phase: str,
        event: str,
        data: Optional[dict],
        latency_ms: Optional[float] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        rank = LEVELS[level]
        if rank >= logging.WARNING:
            where = f" {dict(context)}" if context else ""
            _stdlib.log(rank, "[%s] %s%s | %s", phase, event, where, data or {})
        if rank < self._min_rank:
            return

        now = datetime.now(tz=timezone.utc)
        record: dict[str, Any] = {
            "ts": now.isoformat(timespec="milliseconds"),
            "level": level,
            "phase": phase,
            "event": event,
        }
        if context:
            record["ctx"] = dict(context)
        record["data"] = data or {}
        if latency_ms is not None:
            record["latency_ms"] = round(latency_ms, 3)
        line = json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str)

        with self._lock:
            stream = self._stream_for(now)
            if stream is not None:
                stream.write(line + "\n")

    def _stream_for(self, now: datetime) -> Optional[TextIO]:
        """Current day's file, opened on the first record of each day. Caller holds the lock."""
        day = now.strftime("%Y-%m-%d")
        if day == self._day and self._file is not None:
            return self._file
        if self._file is not None and not self._file.closed:
            self._file.close()
        self._day = day
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
            self._file = open(  # noqa: WPS515
                self._log_dir / f"queuecast_{day}.jsonl", "a", encoding="utf-8", buffering=1,
            )
        except OSError as exc:
            _stdlib.error("log file unavailable in %s: %s", self._log_dir, exc)
            self._file = None
        return self._file


class BoundLogger:
    """A :class:`QCLogger` view that tags each record with fixed context."""

    def __init__(self, parent: QCLogger, context: Mapping[str, Any]) -> None:
        self._parent = parent
        self._context = dict(context)

    @property
    def context(self) -> Mapping[str, Any]:
        return self._context

    def bind(self, **context: Any) -> "BoundLogger":
        return BoundLogger(self._parent, {**self._context, **context})

    def debug(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        self._parent._write("DEBUG", phase, event, data, context=self._context)

    def info(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        self._parent._write("INFO", phase, event, data, context=self._context)

    def warn(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        self._parent._write("WARN", phase, event, data, context=self._context)

    def error(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        self._parent._write("ERROR", phase, event, data, context=self._context)

    def perf(
        self,
        phase: str,
        event: str,
        latency_ms: float,
        data: Optional[dict] = None,
    ) -> None:
        self._parent._write("PERF", phase, event, data, latency_ms=latency_ms, context=self._context)


# ──────────────────────────────────────────────────────────────
# Singleton accessor
# ──────────────────────────────────────────────────────────────

def get_logger() -> QCLogger:
    """Return the application-wide :class:`QCLogger`, creating it on first use."""
    global _instance
    if _instance is None:
        with _instance_lock:
            if _instance is None:
                log_dir = Path(os.environ.get("QUEUECAST_LOG_DIR", _DEFAULT_LOG_DIR))
                _instance = QCLogger(log_dir)
    return _instance


def set_level(level: str) -> None:
    """
    Apply one level name (``DEBUG``/``INFO``/``WARN``/``ERROR``) to both the
    JSONL file and the stderr mirror. The mirror never goes below WARN.
    """
    if level not in LEVELS:
        raise ValueError(f"unknown log level {level!r}")
    get_logger().set_level(level)
    _stdlib.setLevel(max(LEVELS[level], logging.WARNING))
