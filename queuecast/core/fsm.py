"""
queuecast/core/fsm.py — Validated finite state machine base for QueueCast.

Each engine concern (connectivity, kiosk activation) subclasses
:class:`StateMachine` with its own transition map. The base provides
validated transitions, name-dispatched ``_on_enter_<state>`` /
``_on_exit_<state>`` hooks, a bounded transition history and an external
observer callback.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable, Generic, Mapping, TypeVar

from queuecast.core.errors import InvalidTransitionError

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=Enum)

#: Observer signature: ``(from_state, to_state, reason)``.
TransitionCallback = Callable[[Enum, Enum, str], None]

# Maximum number of transition records kept in history
_MAX_HISTORY = 50


class StateMachine(Generic[S]):
    """
    Finite state machine with an explicit transition map.

    Illegal transitions raise :class:`InvalidTransitionError`. Self-transitions
    are legal only when listed in the map. Hooks are looked up by name, so a
    subclass reacts to ``FAILED`` by defining ``_on_enter_failed``.

    Args:
        name: Machine name used in logs and errors.
        initial: Initial state.
        transitions: Map of state → states reachable from it.
        on_transition: Optional observer invoked after every transition.
    """

    def __init__(
        self,
        name: str,
        initial: S,
        transitions: Mapping[S, tuple[S, ...]],
        on_transition: TransitionCallback | None = None,
    ) -> None:
        self._name = name
        self._state: S = initial
        self._transitions = transitions
        self._lock = threading.RLock()
        self._history: list[dict] = []
        self._external_callback = on_transition
        logger.info("%s initialised in state: %s", name, initial.value)

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    @property
    def current_state(self) -> S:
        """Return the current state."""
        with self._lock:
            return self._state

    def can_transition(self, target: S) -> bool:
        """Return True if ``target`` is reachable from the current state."""
        with self._lock:
            return target in self._transitions.get(self._state, ())

    def transition(self, new_state: S, reason: str = "") -> None:
        """
        Attempt a validated state transition.

        Fires ``_on_exit_<from>`` then ``_on_enter_<to>`` and finally the
        external observer.

        Args:
            new_state: Target state.
            reason: Human-readable reason (kept in history and logs).

        Raises:
            InvalidTransitionError: If the transition is not in the map.
        """
        with self._lock:
            from_state = self._state
            if new_state not in self._transitions.get(from_state, ()):
                raise InvalidTransitionError(self._name, from_state, new_state, reason)
            self._fire("exit", from_state)
            self._state = new_state
            self._record(from_state, new_state, reason)

        logger.info(
            "%s: %s → %s%s",
            self._name,
            from_state.value,
            new_state.value,
            f" [{reason}]" if reason else "",
        )

        self._fire("enter", new_state)

        if self._external_callback is not None:
            try:
                self._external_callback(from_state, new_state, reason)
            except Exception as exc:  # noqa: BLE001
                logger.warning("%s external callback raised: %s", self._name, exc)

    def get_history(self) -> list[dict]:
        """
        Return a copy of the last (up to 50) transition records.

        Each record has keys ``from``, ``to``, ``reason`` and ``timestamp``.
        """
        with self._lock:
            return list(self._history)

    # ──────────────────────────────────────────
    # Internal helpers
    # ──────────────────────────────────────────

    def _record(self, from_state: S, to_state: S, reason: str) -> None:
        self._history.append({
            "from": from_state.value,
            "to": to_state.value,
            "reason": reason,
            "timestamp": time.time(),
        })
        if len(self._history) > _MAX_HISTORY:
            self._history.pop(0)

    def _fire(self, kind: str, state: S) -> None:
        """Dispatch to ``_on_<kind>_<state>`` if the subclass defines it."""
        method_name = f"_on_{kind}_{state.value.lower()}"
        method = getattr(self, method_name, None)
        if callable(method):
            try:
                method()
            except Exception as exc:  # noqa: BLE001
                logger.warning("%s hook %r raised: %s", self._name, method_name, exc)

    def __repr__(self) -> str:
        with self._lock:
            last = self._history[-1] if self._history else None
            last_str = f"{last['from']}→{last['to']}" if last else "none"
            return f"{type(self).__name__}(state={self._state.value}, last={last_str})"
