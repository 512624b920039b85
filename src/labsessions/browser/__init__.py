"""Per-session browser-automation daemon management.

Callers declare what they want (``desired_state``); a reconciler loop
observes what the daemon service reports (``current_state``) and issues the
minimal action to converge the two.
"""

from labsessions.browser.state_machine import (
    Action,
    CurrentState,
    DesiredState,
    compute_next_state,
    compute_required_action,
    is_valid_transition,
)
from labsessions.browser.state_store import BrowserSessionState, InMemoryStateStore, StateStore

__all__ = [
    "Action",
    "BrowserSessionState",
    "CurrentState",
    "DesiredState",
    "InMemoryStateStore",
    "StateStore",
    "compute_next_state",
    "compute_required_action",
    "is_valid_transition",
]
