"""Desired/current state convergence for browser daemons.

:class:`Reconciler` handles one pass for one session: observe the daemon,
compute the required action, execute it, store the outcome and notify
handlers.  :class:`ReconcilerLoop` runs a pass over every known session on a
fixed interval.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from labsessions.browser.controller import DaemonController, DaemonStatus
from labsessions.browser.state_machine import (
    Action,
    CurrentState,
    compute_next_state,
    compute_required_action,
    is_valid_transition,
)
from labsessions.browser.state_store import BrowserSessionState, StateStore
from labsessions.logger import logger

type StateChangeHandler = Callable[[str, BrowserSessionState], None]
type ErrorHandler = Callable[[str, Exception], None]


def observed_state(status: DaemonStatus) -> CurrentState:
    if not status.running:
        return CurrentState.STOPPED
    return CurrentState.RUNNING if status.ready else CurrentState.STARTING


class Reconciler:
    def __init__(
        self,
        store: StateStore,
        controller: DaemonController,
        max_retries: int = 3,
        start_timeout: float = 60.0,
    ) -> None:
        self._store = store
        self._controller = controller
        self._max_retries = max_retries
        self._start_timeout = start_timeout
        # First time each session was observed running but not ready
        self._starting_since: dict[str, float] = {}
        self._state_handlers: list[StateChangeHandler] = []
        self._error_handlers: list[ErrorHandler] = []
        self._locks: dict[str, asyncio.Lock] = {}

    def on_state_change(self, handler: StateChangeHandler) -> None:
        self._state_handlers.append(handler)

    def on_error(self, handler: ErrorHandler) -> None:
        self._error_handlers.append(handler)

    def forget(self, session_id: str) -> None:
        self._locks.pop(session_id, None)
        self._starting_since.pop(session_id, None)

    async def reconcile_all(self) -> None:
        """One pass over every stored session; a failing session never stops the pass."""
        for state in await self._store.get_all():
            try:
                await self.reconcile_session(state.session_id)
            except Exception as exc:
                logger.warning(
                    "Browser reconciliation failed", session_id=state.session_id, err=str(exc)
                )
                self._emit_error(state.session_id, exc)

    async def reconcile_session(self, session_id: str) -> Action:
        # The loop and an explicit warm-up can target the same session at once
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            return await self._reconcile_locked(session_id)

    async def _reconcile_locked(self, session_id: str) -> Action:
        state = await self._store.get(session_id)
        if state is None:
            return Action.NONE

        state = await self._observe(state)
        if state is None:
            return Action.NONE
        action = compute_required_action(
            state.desired_state, state.current_state, stalled=self._is_stalled(state)
        )
        if action == Action.NONE:
            return action
        if not is_valid_transition(state.current_state, action):
            logger.warning(
                "Skipping invalid browser transition",
                session_id=session_id,
                current=state.current_state,
                action=action,
            )
            return Action.NONE
        if action == Action.RESTART and state.retry_count >= self._max_retries:
            if state.current_state == CurrentState.STARTING:
                return await self._abandon_start(session_id)
            logger.debug("Browser retry budget exhausted", session_id=session_id)
            return Action.NONE

        logger.info(
            "Reconciling browser daemon",
            session_id=session_id,
            desired=state.desired_state,
            current=state.current_state,
            action=action,
        )
        self._starting_since.pop(session_id, None)
        if action == Action.RESTART and state.current_state == CurrentState.STARTING:
            # A stalled start spends retry budget like a failed one
            await self._store.set_retry_count(session_id, state.retry_count + 1)
        await self._set_current(
            session_id,
            compute_next_state(state.current_state, action),
            stream_port=state.stream_port,
        )
        try:
            await self._execute(session_id, action)
        except Exception as exc:
            await self._store.set_retry_count(session_id, state.retry_count + 1)
            await self._set_current(session_id, CurrentState.ERROR, error_message=str(exc))
            self._emit_error(session_id, exc)
        return action

    async def _abandon_start(self, session_id: str) -> Action:
        """Stop a daemon that never became ready and park it in ``error``."""
        logger.warning("Browser daemon never became ready", session_id=session_id)
        self._starting_since.pop(session_id, None)
        try:
            await self._controller.stop(session_id)
        except Exception as exc:
            logger.warning(
                "Stopping stalled browser daemon failed", session_id=session_id, err=str(exc)
            )
        message = "browser daemon did not become ready"
        await self._set_current(session_id, CurrentState.ERROR, error_message=message)
        self._emit_error(session_id, RuntimeError(message))
        return Action.STOP

    def _is_stalled(self, state: BrowserSessionState) -> bool:
        if state.current_state != CurrentState.STARTING:
            self._starting_since.pop(state.session_id, None)
            return False
        now = asyncio.get_running_loop().time()
        since = self._starting_since.setdefault(state.session_id, now)
        return now - since >= self._start_timeout

    async def _observe(self, state: BrowserSessionState) -> BrowserSessionState | None:
        status = await self._controller.get_status(state.session_id)
        observed = observed_state(status)
        # A failed start leaves nothing running; keep the error until it is retried
        if state.current_state == CurrentState.ERROR and observed == CurrentState.STOPPED:
            return state
        if observed == CurrentState.RUNNING and state.retry_count:
            state = await self._store.set_retry_count(state.session_id, 0)
            if state is None:
                return None
        if observed == state.current_state and status.port == state.stream_port:
            return state
        return await self._set_current(state.session_id, observed, stream_port=status.port)

    async def _execute(self, session_id: str, action: Action) -> None:
        if action == Action.STOP:
            await self._controller.stop(session_id)
            await self._set_current(session_id, CurrentState.STOPPED)
            return

        if action == Action.RESTART:
            await self._controller.stop(session_id)
        status = await self._controller.start(session_id)
        await self._set_current(session_id, observed_state(status), stream_port=status.port)

    async def _set_current(
        self,
        session_id: str,
        current: CurrentState,
        *,
        stream_port: int | None = None,
        error_message: str | None = None,
    ) -> BrowserSessionState | None:
        state = await self._store.set_current_state(
            session_id, current, stream_port=stream_port, error_message=error_message
        )
        if state is None:
            # Forgotten while this pass was in flight
            return None
        for handler in self._state_handlers:
            try:
                handler(session_id, state)
            except Exception:
                logger.exception("Browser state handler failed", session_id=session_id)
        return state

    def _emit_error(self, session_id: str, error: Exception) -> None:
        for handler in self._error_handlers:
            try:
                handler(session_id, error)
            except Exception:
                logger.exception("Browser error handler failed", session_id=session_id)


class ReconcilerLoop:
    """Runs ``reconciler.reconcile_all()`` now and then every *interval* seconds."""

    def __init__(
        self,
        reconciler: Reconciler,
        interval: float,
        on_error: Callable[[Exception], None] | None = None,
    ) -> None:
        self._reconciler = reconciler
        self._interval = interval
        self._on_error = on_error
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="browser-reconciler-loop")

    def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await self._reconciler.reconcile_all()
            except Exception as exc:
                if self._on_error is not None:
                    self._on_error(exc)
                else:
                    logger.exception("Browser reconciler pass failed")
            await asyncio.sleep(self._interval)
