"""Pure transition rules for the browser daemon."""

from __future__ import annotations

from enum import StrEnum


class DesiredState(StrEnum):
    RUNNING = "running"
    STOPPED = "stopped"


class CurrentState(StrEnum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class Action(StrEnum):
    NONE = "none"
    START = "start"
    STOP = "stop"
    RESTART = "restart"


# Current states each action may be issued from
_VALID_SOURCES: dict[Action, frozenset[CurrentState]] = {
    Action.START: frozenset({CurrentState.STOPPED, CurrentState.ERROR}),
    Action.STOP: frozenset({CurrentState.RUNNING, CurrentState.STARTING, CurrentState.ERROR}),
    Action.RESTART: frozenset({CurrentState.RUNNING, CurrentState.STARTING, CurrentState.ERROR}),
}

_NEXT_STATE: dict[Action, CurrentState] = {
    Action.START: CurrentState.STARTING,
    Action.STOP: CurrentState.STOPPING,
    Action.RESTART: CurrentState.STARTING,
}


def compute_required_action(
    desired: DesiredState, current: CurrentState, *, stalled: bool = False
) -> Action:
    """The single action that moves *current* toward *desired*.

    A daemon in ``error`` that should be running is restarted; one that
    should be stopped is stopped.  A daemon still ``starting`` is stopped
    when it is no longer wanted, and restarted once it has *stalled* (running
    but never ready).  ``stopping`` waits for the next observation.
    """
    if desired.value == current.value or current == CurrentState.STOPPING:
        return Action.NONE
    if current == CurrentState.STARTING:
        if desired == DesiredState.STOPPED:
            return Action.STOP
        return Action.RESTART if stalled else Action.NONE
    if current == CurrentState.ERROR:
        return Action.RESTART if desired == DesiredState.RUNNING else Action.STOP
    if desired == DesiredState.RUNNING:
        return Action.START
    return Action.STOP


def is_valid_transition(current: CurrentState, action: Action) -> bool:
    if action == Action.NONE:
        return True
    return current in _VALID_SOURCES[action]


def compute_next_state(current: CurrentState, action: Action) -> CurrentState:
    """Predicted state right after *action* is issued, before it is observed."""
    if action == Action.NONE:
        return current
    return _NEXT_STATE[action]
