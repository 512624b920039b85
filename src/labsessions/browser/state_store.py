"""Storage for per-session browser daemon state."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Protocol

from labsessions.browser.state_machine import CurrentState, DesiredState
from labsessions.utils import utc_now


@dataclass(frozen=True)
class BrowserSessionState:
    session_id: str
    desired_state: DesiredState = DesiredState.STOPPED
    current_state: CurrentState = CurrentState.STOPPED
    stream_port: int | None = None
    error_message: str | None = None
    retry_count: int = 0
    updated_at: str = ""

    def to_snapshot(self) -> dict[str, object]:
        return {
            "desiredState": self.desired_state.value,
            "currentState": self.current_state.value,
            "streamPort": self.stream_port,
            "errorMessage": self.error_message,
        }


class StateStore(Protocol):
    async def get(self, session_id: str) -> BrowserSessionState | None: ...
    async def get_all(self) -> list[BrowserSessionState]: ...
    async def set_desired_state(
        self, session_id: str, desired: DesiredState
    ) -> BrowserSessionState: ...
    async def set_current_state(
        self,
        session_id: str,
        current: CurrentState,
        *,
        stream_port: int | None = None,
        error_message: str | None = None,
    ) -> BrowserSessionState | None: ...
    async def set_retry_count(
        self, session_id: str, retry_count: int
    ) -> BrowserSessionState | None: ...
    async def delete(self, session_id: str) -> None: ...


class InMemoryStateStore:
    """Process-local :class:`StateStore`; state is rebuilt from observation after restarts."""

    def __init__(self) -> None:
        self._states: dict[str, BrowserSessionState] = {}

    def _current(self, session_id: str) -> BrowserSessionState:
        return self._states.get(session_id) or BrowserSessionState(session_id=session_id)

    def _put(self, state: BrowserSessionState) -> BrowserSessionState:
        state = replace(state, updated_at=utc_now())
        self._states[state.session_id] = state
        return state

    async def get(self, session_id: str) -> BrowserSessionState | None:
        return self._states.get(session_id)

    async def get_all(self) -> list[BrowserSessionState]:
        return list(self._states.values())

    async def set_desired_state(
        self, session_id: str, desired: DesiredState
    ) -> BrowserSessionState:
        state = self._current(session_id)
        if state.desired_state != desired:
            # A new request gets a fresh retry budget
            state = replace(state, desired_state=desired, retry_count=0)
        return self._put(state)

    async def set_current_state(
        self,
        session_id: str,
        current: CurrentState,
        *,
        stream_port: int | None = None,
        error_message: str | None = None,
    ) -> BrowserSessionState | None:
        """Record an observation; sessions that were deleted meanwhile stay deleted."""
        existing = self._states.get(session_id)
        if existing is None:
            return None
        state = replace(
            existing,
            current_state=current,
            stream_port=stream_port,
            error_message=error_message,
        )
        return self._put(state)

    async def set_retry_count(
        self, session_id: str, retry_count: int
    ) -> BrowserSessionState | None:
        existing = self._states.get(session_id)
        if existing is None:
            return None
        return self._put(replace(existing, retry_count=retry_count))

    async def delete(self, session_id: str) -> None:
        self._states.pop(session_id, None)
