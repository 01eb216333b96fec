"""
queuecast/core/errors.py — Exception types raised by QueueCast.

Only configuration and programmer errors are raised out of the engine;
runtime failures (storage, audio, connectivity) are converted into state.
"""

from __future__ import annotations

from enum import Enum


class QueueCastError(Exception):
    """Base class for all QueueCast exceptions."""


class ConfigError(QueueCastError, ValueError):
    """Raised when a configuration file or settings map holds an invalid value."""


class InvalidTransitionError(QueueCastError, RuntimeError):
    """
    Raised when a requested state transition is not in the machine's map.

    Args:
        machine: Name of the state machine that rejected the transition.
        from_state: Current state at the time of the illegal attempt.
        to_state: Requested (invalid) target state.
        reason: Caller-supplied reason string.
    """

    def __init__(
        self,
        machine: str,
        from_state: Enum,
        to_state: Enum,
        reason: str = "",
    ) -> None:
        self.machine = machine
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason
        super().__init__(
            f"{machine}: invalid transition {from_state.value} → {to_state.value}"
            + (f" (reason: {reason})" if reason else "")
        )
