"""Browser daemon facade used by the rest of the engine.

Callers only ever record *intent*: subscribing to a session's browser sets
its desired state to running and returns immediately; the reconciler loop
does the actual start in the background.  The last subscriber leaving
schedules a stop after a grace period so quick reconnects keep the daemon.
"""

from __future__ import annotations

import asyncio

from labsessions.browser.controller import DaemonController
from labsessions.browser.reconciler import Reconciler, ReconcilerLoop
from labsessions.browser.state_machine import CurrentState, DesiredState
from labsessions.browser.state_store import BrowserSessionState, StateStore
from labsessions.logger import logger
from labsessions.naming import format_network_name
from labsessions.network import SessionNetworkManager
from labsessions.publisher import SESSION_BROWSER_STATE, Publisher
from labsessions.utils import create_background_task

WARM_UP_POLL_INTERVAL = 0.5


class BrowserUnavailableError(Exception):
    """The daemon for a session could not be brought up."""


class SessionManager:
    """Subscriber bookkeeping plus session-network attachment for the browser."""

    def __init__(self, networks: SessionNetworkManager | None = None) -> None:
        self._networks = networks
        self._subscribers: dict[str, int] = {}

    def subscriber_count(self, session_id: str) -> int:
        return self._subscribers.get(session_id, 0)

    def subscribe(self, session_id: str) -> int:
        count = self._subscribers.get(session_id, 0) + 1
        self._subscribers[session_id] = count
        return count

    def unsubscribe(self, session_id: str) -> int:
        count = max(0, self._subscribers.get(session_id, 0) - 1)
        if count:
            self._subscribers[session_id] = count
        else:
            self._subscribers.pop(session_id, None)
        return count

    def forget(self, session_id: str) -> None:
        self._subscribers.pop(session_id, None)

    async def ensure_network(self, session_id: str) -> None:
        """Re-attach shared containers (the browser itself) to the session network."""
        if self._networks is None:
            return
        await self._networks.connect_shared_containers(format_network_name(session_id))


class BrowserOrchestrator:
    def __init__(
        self,
        store: StateStore,
        controller: DaemonController,
        reconciler: Reconciler,
        loop: ReconcilerLoop,
        sessions: SessionManager,
        *,
        cleanup_delay: float,
        publisher: Publisher | None = None,
    ) -> None:
        self._store = store
        self._controller = controller
        self._reconciler = reconciler
        self._loop = loop
        self._sessions = sessions
        self._cleanup_delay = cleanup_delay
        self._publisher = publisher
        self._pending_stops: dict[str, asyncio.Task[None]] = {}
        reconciler.on_state_change(self._publish_state)
        reconciler.on_error(self._log_error)

    def start(self) -> None:
        self._loop.start()

    def stop(self) -> None:
        self._loop.stop()
        for task in self._pending_stops.values():
            task.cancel()
        self._pending_stops.clear()

    # --- Intent ---

    async def request_running(self, session_id: str) -> BrowserSessionState:
        await self._sessions.ensure_network(session_id)
        return await self._store.set_desired_state(session_id, DesiredState.RUNNING)

    async def request_stopped(self, session_id: str) -> BrowserSessionState:
        return await self._store.set_desired_state(session_id, DesiredState.STOPPED)

    async def subscribe(self, session_id: str) -> BrowserSessionState:
        self._cancel_pending_stop(session_id)
        count = self._sessions.subscribe(session_id)
        logger.debug("Browser subscriber added", session_id=session_id, subscribers=count)
        return await self.request_running(session_id)

    async def unsubscribe(self, session_id: str) -> None:
        count = self._sessions.unsubscribe(session_id)
        logger.debug("Browser subscriber removed", session_id=session_id, subscribers=count)
        if count == 0:
            self._schedule_stop(session_id)

    # --- Direct operations ---

    async def warm_up_browser(self, session_id: str) -> BrowserSessionState:
        """Start the daemon now and wait until it reports ready.

        Raises:
            BrowserUnavailableError: if the daemon lands in ``error``.
        """
        await self.request_running(session_id)
        while True:
            await self._reconciler.reconcile_session(session_id)
            state = await self._store.get(session_id)
            if state is None:
                raise BrowserUnavailableError(f"Browser state for {session_id} was removed")
            if state.current_state == CurrentState.RUNNING:
                return state
            if state.current_state == CurrentState.ERROR:
                raise BrowserUnavailableError(state.error_message or "browser daemon failed")
            await asyncio.sleep(WARM_UP_POLL_INTERVAL)

    async def force_stop_browser(self, session_id: str) -> None:
        """Stop the daemon immediately and forget everything about the session.

        The session is forgotten even when the stop call fails, so the
        reconciler loop never brings the daemon back.
        """
        self._cancel_pending_stop(session_id)
        self._sessions.forget(session_id)
        try:
            if await self._store.get(session_id) is not None:
                await self._controller.stop(session_id)
        finally:
            await self._store.delete(session_id)
            self._reconciler.forget(session_id)

    async def get_status(self, session_id: str) -> BrowserSessionState | None:
        return await self._store.get(session_id)

    async def navigate(self, session_id: str, url: str) -> None:
        await self._controller.navigate(session_id, url)

    # --- Internals ---

    def _schedule_stop(self, session_id: str) -> None:
        self._cancel_pending_stop(session_id)
        self._pending_stops[session_id] = create_background_task(
            self._stop_after_delay(session_id), name=f"browser-stop-{session_id}"
        )

    def _cancel_pending_stop(self, session_id: str) -> None:
        task = self._pending_stops.pop(session_id, None)
        if task is not None:
            task.cancel()

    async def _stop_after_delay(self, session_id: str) -> None:
        await asyncio.sleep(self._cleanup_delay)
        self._pending_stops.pop(session_id, None)
        if self._sessions.subscriber_count(session_id) == 0:
            logger.info("No browser subscribers left; stopping", session_id=session_id)
            await self.request_stopped(session_id)

    def _publish_state(self, session_id: str, state: BrowserSessionState) -> None:
        if self._publisher is not None:
            self._publisher.publish_snapshot(
                SESSION_BROWSER_STATE, state.to_snapshot(), params={"uuid": session_id}
            )

    def _log_error(self, session_id: str, error: Exception) -> None:
        logger.warning("Browser daemon error", session_id=session_id, err=str(error))
