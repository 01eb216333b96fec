"""
queuecast/network/connectivity.py — Connectivity tracking with bounded reconnects.

States::

    ONLINE ──offline──► OFFLINE ──► RECONNECTING ──probe ok / online──► ONLINE
                                        │  ▲
                                        └──┘ retry (attempt n+1)
                                        │
                                        └── attempts exhausted ──► FAILED
    FAILED ──platform online──► ONLINE

Retry ``n`` (0-based) is scheduled ``min(base * 2**n, cap)`` ms after the
previous one failed. At most ``max_attempts`` retries are scheduled per
outage; after that the monitor stays in FAILED until the platform itself
reports that it is online again.
"""

from __future__ import annotations

from typing import Callable, Optional

from queuecast.core.constants import C, ConnectivityStatus
from queuecast.core.fsm import StateMachine, TransitionCallback
from queuecast.core.logger import get_logger
from queuecast.core.models import ConnectivityState
from queuecast.core.timers import TimerHandle, TimerScheduler

_log = get_logger()

_TRANSITIONS: dict[ConnectivityStatus, tuple[ConnectivityStatus, ...]] = {
    ConnectivityStatus.ONLINE: (
        ConnectivityStatus.OFFLINE,
    ),
    ConnectivityStatus.OFFLINE: (
        ConnectivityStatus.RECONNECTING,
        ConnectivityStatus.ONLINE,
        ConnectivityStatus.FAILED,
    ),
    ConnectivityStatus.RECONNECTING: (
        ConnectivityStatus.RECONNECTING,
        ConnectivityStatus.ONLINE,
        ConnectivityStatus.FAILED,
    ),
    ConnectivityStatus.FAILED: (
        ConnectivityStatus.ONLINE,
    ),
}


def backoff_delay_ms(
    attempt: int,
    base_ms: int = C.BACKOFF_BASE_MS,
    cap_ms: int = C.BACKOFF_CAP_MS,
) -> int:
    """
    Delay before retry number ``attempt`` (0-based).

    >>> [backoff_delay_ms(n) for n in range(7)]
    [1000, 2000, 4000, 8000, 16000, 30000, 30000]
    """
    if attempt < 0:
        raise ValueError(f"attempt must be ≥ 0, got {attempt}")
    return min(base_ms * (2 ** attempt), cap_ms)


class ConnectivityMonitor(StateMachine[ConnectivityStatus]):
    """
    Tracks online/offline transitions and drives the reconnect sequence.

    Platform events arrive through :meth:`handle_online` and
    :meth:`handle_offline`. When a retry timer expires the monitor calls
    ``probe``; a probe that raises counts as a failed retry.

    Args:
        scheduler: Timer source for the backoff sequence.
        probe: Returns True if connectivity is available right now.
        on_transition: Observer ``(from_status, to_status, reason)``.
        base_ms: First retry delay.
        cap_ms: Largest retry delay.
        max_attempts: Retries per outage before entering FAILED.
    """

    def __init__(
        self,
        scheduler: TimerScheduler,
        probe: Callable[[], bool],
        on_transition: TransitionCallback | None = None,
        base_ms: int = C.BACKOFF_BASE_MS,
        cap_ms: int = C.BACKOFF_CAP_MS,
        max_attempts: int = C.MAX_RECONNECT_ATTEMPTS,
    ) -> None:
        super().__init__(
            "ConnectivityMonitor",
            ConnectivityStatus.ONLINE,
            _TRANSITIONS,
            on_transition=on_transition,
        )
        self._scheduler = scheduler
        self._probe = probe
        self._base_ms = base_ms
        self._cap_ms = cap_ms
        self._max_attempts = max_attempts
        self._attempt = 0
        self._next_delay: Optional[int] = None
        self._timer: Optional[TimerHandle] = None
        self._delays: list[int] = []

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    @property
    def state(self) -> ConnectivityState:
        """Current state as an immutable value."""
        return ConnectivityState(
            status=self.current_state,
            attempt=self._attempt,
            max_attempts=self._max_attempts,
            next_retry_ms=self._next_delay,
        )

    @property
    def scheduled_delays(self) -> list[int]:
        """Every retry delay scheduled so far, in order (diagnostics)."""
        return list(self._delays)

    def start(self) -> None:
        """Mirror the platform's connectivity at startup."""
        if self._safe_probe():
            _log.info("connectivity", "started_online", {})
            return
        _log.warn("connectivity", "started_offline", {})
        self._go_offline("offline_at_startup")

    def stop(self) -> None:
        """Cancel any pending retry. The current status is kept."""
        self._cancel_timer()

    def handle_online(self) -> None:
        """Platform reports connectivity; cancels retries and resets the attempt count."""
        self._cancel_timer()
        if self.current_state is ConnectivityStatus.ONLINE:
            return
        self._enter_online("platform_online")

    def handle_offline(self) -> None:
        """Platform reports loss of connectivity."""
        if self.current_state is not ConnectivityStatus.ONLINE:
            _log.debug("connectivity", "offline_ignored", {
                "state": self.current_state.value,
            })
            return
        self._go_offline("platform_offline")

    # ──────────────────────────────────────────
    # Reconnect loop
    # ──────────────────────────────────────────

    def _go_offline(self, reason: str) -> None:
        self._attempt = 0
        self._next_delay = None
        self.transition(ConnectivityStatus.OFFLINE, reason)
        self._schedule_retry()

    def _schedule_retry(self) -> None:
        if self._attempt >= self._max_attempts:
            self._next_delay = None
            _log.error("connectivity", "reconnect_exhausted", {
                "attempts": self._attempt,
            })
            self.transition(ConnectivityStatus.FAILED, "max_attempts_reached")
            return

        delay = backoff_delay_ms(self._attempt, self._base_ms, self._cap_ms)
        self._attempt += 1
        self._next_delay = delay
        self._delays.append(delay)
        self._timer = self._scheduler.call_later(delay, self._on_retry_due)
        _log.info("connectivity", "retry_scheduled", {
            "attempt": self._attempt,
            "max_attempts": self._max_attempts,
            "delay_ms": delay,
        })
        self.transition(
            ConnectivityStatus.RECONNECTING,
            f"attempt {self._attempt}/{self._max_attempts}",
        )

    def _on_retry_due(self) -> None:
        self._timer = None
        if self.current_state is not ConnectivityStatus.RECONNECTING:
            return
        if self._safe_probe():
            self._enter_online("retry_succeeded")
            return
        self._schedule_retry()

    def _enter_online(self, reason: str) -> None:
        self._attempt = 0
        self._next_delay = None
        self.transition(ConnectivityStatus.ONLINE, reason)

    def _safe_probe(self) -> bool:
        try:
            return bool(self._probe())
        except Exception as exc:  # noqa: BLE001
            _log.warn("connectivity", "probe_error", {"error": str(exc)})
            return False

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    # ──────────────────────────────────────────
    # State hooks
    # ──────────────────────────────────────────

    def _on_enter_online(self) -> None:
        _log.info("connectivity", "online", {})

    def _on_enter_offline(self) -> None:
        _log.warn("connectivity", "offline", {})

    def _on_enter_failed(self) -> None:
        _log.error("connectivity", "reconnection_failed", {
            "max_attempts": self._max_attempts,
        })
