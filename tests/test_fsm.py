"""
tests/test_fsm.py — pytest unit tests for queuecast.core.fsm.StateMachine.

Uses a small three-state traffic-light machine so the base class is tested
independently of the connectivity and kiosk maps.
"""

from __future__ import annotations

from enum import Enum

import pytest

from queuecast.core.errors import InvalidTransitionError
from queuecast.core.fsm import StateMachine


class Light(Enum):
    RED = "RED"
    GREEN = "GREEN"
    AMBER = "AMBER"


TRANSITIONS: dict[Light, tuple[Light, ...]] = {
    Light.RED: (Light.GREEN,),
    Light.GREEN: (Light.AMBER,),
    Light.AMBER: (Light.RED, Light.AMBER),
}


class HookedLight(StateMachine[Light]):
    """Records every hook call in order."""

    def __init__(self, **kwargs) -> None:
        super().__init__("Light", Light.RED, TRANSITIONS, **kwargs)
        self.calls: list[str] = []

    def _on_exit_red(self) -> None:
        self.calls.append("exit_red")

    def _on_enter_green(self) -> None:
        self.calls.append("enter_green")

    def _on_enter_amber(self) -> None:
        raise RuntimeError("hook failure must not escape")


# ──────────────────────────────────────────────────────────────
# Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture()
def light() -> StateMachine[Light]:
    return StateMachine("Light", Light.RED, TRANSITIONS)


@pytest.fixture()
def light_with_callbacks() -> tuple[StateMachine[Light], list[tuple]]:
    log: list[tuple[Light, Light, str]] = []
    machine = StateMachine(
        "Light", Light.RED, TRANSITIONS,
        on_transition=lambda f, t, r: log.append((f, t, r)),
    )
    return machine, log


# ──────────────────────────────────────────────────────────────
# Transitions
# ──────────────────────────────────────────────────────────────

def test_initial_state(light: StateMachine[Light]) -> None:
    assert light.current_state is Light.RED
    assert light.get_history() == []


def test_valid_transition_updates_state(light: StateMachine[Light]) -> None:
    light.transition(Light.GREEN, "go")
    assert light.current_state is Light.GREEN
    assert light.can_transition(Light.AMBER)
    assert not light.can_transition(Light.RED)


def test_invalid_transition_raises_and_keeps_state(light: StateMachine[Light]) -> None:
    with pytest.raises(InvalidTransitionError) as exc_info:
        light.transition(Light.AMBER, "skip green")
    err = exc_info.value
    assert err.machine == "Light"
    assert err.from_state is Light.RED
    assert err.to_state is Light.AMBER
    assert "skip green" in str(err)
    assert light.current_state is Light.RED


def test_self_transition_only_when_listed(light: StateMachine[Light]) -> None:
    with pytest.raises(InvalidTransitionError):
        light.transition(Light.RED)
    light.transition(Light.GREEN)
    light.transition(Light.AMBER)
    light.transition(Light.AMBER, "hold")
    assert light.current_state is Light.AMBER


def test_external_callback_receives_every_transition(light_with_callbacks) -> None:
    machine, log = light_with_callbacks
    machine.transition(Light.GREEN, "a")
    machine.transition(Light.AMBER, "b")
    assert log == [
        (Light.RED, Light.GREEN, "a"),
        (Light.GREEN, Light.AMBER, "b"),
    ]


def test_failing_callback_does_not_block_transition() -> None:
    def _boom(*_args) -> None:
        raise ValueError("observer bug")

    machine = StateMachine("Light", Light.RED, TRANSITIONS, on_transition=_boom)
    machine.transition(Light.GREEN)
    assert machine.current_state is Light.GREEN


# ──────────────────────────────────────────────────────────────
# Hooks and history
# ──────────────────────────────────────────────────────────────

def test_hooks_are_dispatched_by_state_name() -> None:
    machine = HookedLight()
    machine.transition(Light.GREEN)
    assert machine.calls == ["exit_red", "enter_green"]


def test_raising_hook_is_contained() -> None:
    machine = HookedLight()
    machine.transition(Light.GREEN)
    machine.transition(Light.AMBER)
    assert machine.current_state is Light.AMBER


def test_history_is_bounded_to_fifty(light: StateMachine[Light]) -> None:
    cycle = [Light.GREEN, Light.AMBER, Light.RED]
    for i in range(60):
        light.transition(cycle[i % 3], f"step {i}")
    history = light.get_history()
    assert len(history) == 50
    assert history[-1]["reason"] == "step 59"
    assert set(history[0]) == {"from", "to", "reason", "timestamp"}


def test_repr_shows_state_and_last_transition(light: StateMachine[Light]) -> None:
    assert "state=RED" in repr(light)
    light.transition(Light.GREEN)
    assert "RED→GREEN" in repr(light)
