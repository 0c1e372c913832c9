"""Lifecycle state machine for the broker manager."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class BrokerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"


@dataclass(frozen=True, slots=True)
class _Transition:
    trigger: str
    source: BrokerState
    dest: BrokerState


_TRANSITIONS: tuple[_Transition, ...] = (
    _Transition("begin_init", BrokerState.UNINITIALIZED, BrokerState.INITIALIZING),
    _Transition("init_succeeded", BrokerState.INITIALIZING, BrokerState.READY),
    _Transition("init_failed", BrokerState.INITIALIZING, BrokerState.UNINITIALIZED),
    _Transition("begin_shutdown", BrokerState.READY, BrokerState.SHUTTING_DOWN),
    _Transition("shutdown_done", BrokerState.SHUTTING_DOWN, BrokerState.UNINITIALIZED),
)


@dataclass(slots=True)
class BrokerLifecycle:
    """Minimal FSM: raises on triggers that are invalid for the current state."""

    state: BrokerState = BrokerState.UNINITIALIZED
    history: list[BrokerState] = field(default_factory=list)

    def trigger(self, trigger: str) -> BrokerState:
        for transition in _TRANSITIONS:
            if transition.trigger == trigger and transition.source == self.state:
                self.history.append(self.state)
                self.state = transition.dest
                return self.state
        raise RuntimeError(f"No transition for trigger '{trigger}' from state '{self.state.value}'")

    @property
    def is_ready(self) -> bool:
        return self.state is BrokerState.READY
