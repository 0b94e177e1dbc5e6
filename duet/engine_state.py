from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .errors import IllegalTransition


class Phase(str, Enum):
    LOADING = "LOADING"
    LOAD_FAILED = "LOAD_FAILED"
    # Active(normal)
    ACTIVE = "ACTIVE"
    EMITTING = "EMITTING"
    # Active(dormant): announced but the window has not opened yet, then inside it.
    WINDING_DOWN = "WINDING_DOWN"
    DORMANT = "DORMANT"


class Trigger(str, Enum):
    LOADED = "LOADED"
    LOAD_FAILED = "LOAD_FAILED"
    RETRY = "RETRY"
    BEGIN_EMIT = "BEGIN_EMIT"
    END_EMIT = "END_EMIT"
    ANNOUNCE = "ANNOUNCE"
    SLEEP = "SLEEP"
    WAKE = "WAKE"
    RELOAD = "RELOAD"


_TRANSITIONS: dict[tuple[Phase, Trigger], Phase] = {
    (Phase.LOADING, Trigger.LOADED): Phase.ACTIVE,
    (Phase.LOADING, Trigger.LOAD_FAILED): Phase.LOAD_FAILED,
    (Phase.LOAD_FAILED, Trigger.RETRY): Phase.LOADING,
    (Phase.ACTIVE, Trigger.BEGIN_EMIT): Phase.EMITTING,
    (Phase.EMITTING, Trigger.END_EMIT): Phase.ACTIVE,
    (Phase.ACTIVE, Trigger.ANNOUNCE): Phase.WINDING_DOWN,
    (Phase.ACTIVE, Trigger.SLEEP): Phase.DORMANT,
    (Phase.WINDING_DOWN, Trigger.SLEEP): Phase.DORMANT,
    # Re-entry recomputes the wake timer.
    (Phase.DORMANT, Trigger.SLEEP): Phase.DORMANT,
    (Phase.DORMANT, Trigger.WAKE): Phase.ACTIVE,
    (Phase.WINDING_DOWN, Trigger.WAKE): Phase.ACTIVE,
    (Phase.ACTIVE, Trigger.RELOAD): Phase.LOADING,
    (Phase.WINDING_DOWN, Trigger.RELOAD): Phase.LOADING,
    (Phase.DORMANT, Trigger.RELOAD): Phase.LOADING,
}


@dataclass(frozen=True, slots=True)
class EngineState:
    phase: Phase = Phase.LOADING

    @property
    def is_active(self) -> bool:
        return self.phase in {Phase.ACTIVE, Phase.EMITTING, Phase.WINDING_DOWN, Phase.DORMANT}

    @property
    def is_dormant(self) -> bool:
        return self.phase in {Phase.WINDING_DOWN, Phase.DORMANT}

    @property
    def is_emitting(self) -> bool:
        return self.phase == Phase.EMITTING

    @property
    def accepts_turns(self) -> bool:
        return self.phase in {Phase.ACTIVE, Phase.EMITTING}


def can_transition(state: EngineState, trigger: Trigger) -> bool:
    return (state.phase, trigger) in _TRANSITIONS


def transition(state: EngineState, trigger: Trigger) -> EngineState:
    nxt = _TRANSITIONS.get((state.phase, trigger))
    if nxt is None:
        raise IllegalTransition(f"{trigger.value} is not allowed in {state.phase.value}")
    return EngineState(phase=nxt)
