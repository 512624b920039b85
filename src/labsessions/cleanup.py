"""Session teardown.

Three entry points share one tolerant stop-and-remove helper:

- :meth:`SessionCleanupService.cleanup_session_full` for explicit deletion
- :meth:`SessionCleanupService.cleanup_orphaned_resources` when the session
  row disappeared while its containers were still starting
- :meth:`SessionCleanupService.cleanup_on_error` when initialization failed

Teardown is best-effort: a failure on one container, the proxy or the
network is logged and the remaining steps still run.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

from labsessions.db import Repository
from labsessions.logger import logger
from labsessions.network import SessionNetworkManager
from labsessions.proxy import ProxyManager
from labsessions.publisher import SESSIONS, Publisher
from labsessions.runtime.provider import RuntimeProvider
from labsessions.types import SessionStatus

type SessionClearedHandler = Callable[[str], Awaitable[None]]


class BrowserControl(Protocol):
    async def force_stop_browser(self, session_id: str) -> None: ...


@dataclass
class ContainerCleanupResult:
    runtime_id: str
    success: bool
    still_exists: bool
    error: Exception | None = None


class SessionCleanupService:
    def __init__(
        self,
        runtime: RuntimeProvider,
        repo: Repository,
        publisher: Publisher,
        proxy: ProxyManager,
        networks: SessionNetworkManager,
        browser: BrowserControl | None = None,
        stop_timeout: int = 10,
    ) -> None:
        self._runtime = runtime
        self._repo = repo
        self._publisher = publisher
        self._proxy = proxy
        self._networks = networks
        self._browser = browser
        self._stop_timeout = stop_timeout
        self._cleared_handlers: list[SessionClearedHandler] = []

    def set_browser(self, browser: BrowserControl | None) -> None:
        self._browser = browser

    def on_session_cleared(self, handler: SessionClearedHandler) -> None:
        """Register a callback run after a full cleanup to drop in-memory session state."""
        self._cleared_handlers.append(handler)

    async def cleanup_session_full(self, session_id: str) -> None:
        session = await self._repo.find_session_by_id(session_id)
        if session is None:
            return

        await self._repo.update_session_status(session_id, SessionStatus.DELETING)
        self._publish_removal(session_id, session.project_id, session.title)

        runtime_ids = await self._repo.find_runtime_ids_by_session_id(session_id)
        await self._stop_and_remove_containers(runtime_ids, session_id)
        await self._force_stop_browser(session_id)
        await self._unregister_proxy(session_id)
        await self._remove_network(session_id)

        await self._repo.delete_session(session_id)
        for handler in self._cleared_handlers:
            try:
                await handler(session_id)
            except Exception:
                logger.exception("Session cleared handler failed", session_id=session_id)
        logger.info("Session cleaned up", session_id=session_id)

    async def cleanup_orphaned_resources(self, session_id: str, runtime_ids: list[str]) -> None:
        """Tear down runtime resources only; the session row is already gone or going."""
        await self._stop_and_remove_containers(runtime_ids, session_id)
        await self._force_stop_browser(session_id)
        await self._unregister_proxy(session_id)
        await self._remove_network(session_id)
        logger.info("Orphaned session resources cleaned up", session_id=session_id)

    async def cleanup_on_error(
        self, session_id: str, project_id: str, runtime_ids: list[str]
    ) -> None:
        await self._repo.update_session_status(session_id, SessionStatus.ERROR)
        self._publish_removal(session_id, project_id, None)

        await self._stop_and_remove_containers(runtime_ids, session_id)
        await self._force_stop_browser(session_id)
        await self._unregister_proxy(session_id)
        await self._remove_network(session_id)

        await self._repo.delete_session(session_id)
        logger.info("Failed session cleaned up", session_id=session_id)

    def _publish_removal(self, session_id: str, project_id: str, title: str | None) -> None:
        self._publisher.publish_delta(
            SESSIONS,
            {
                "type": "remove",
                "session": {"id": session_id, "projectId": project_id, "title": title},
            },
        )

    async def _stop_and_remove_containers(self, runtime_ids: list[str], session_id: str) -> None:
        if not runtime_ids:
            return
        results = await asyncio.gather(
            *(self._stop_and_remove(runtime_id) for runtime_id in runtime_ids)
        )
        for result in results:
            if result.success:
                continue
            if result.error is not None:
                logger.error(
                    "Failed to clean up container",
                    runtime_id=result.runtime_id,
                    session_id=session_id,
                    err=str(result.error),
                )
            elif result.still_exists:
                logger.error(
                    "Container still exists after cleanup",
                    runtime_id=result.runtime_id,
                    session_id=session_id,
                )

    async def _stop_and_remove(self, runtime_id: str) -> ContainerCleanupResult:
        try:
            await self._runtime.stop_container(runtime_id, timeout=self._stop_timeout)
        except Exception as exc:
            # A container that refuses to stop is still force-removed below
            logger.warning("Failed to stop container", runtime_id=runtime_id, err=str(exc))
        try:
            await self._runtime.remove_container(runtime_id, force=True)
            still_exists = await self._runtime.container_exists(runtime_id)
        except Exception as exc:
            return ContainerCleanupResult(runtime_id, success=False, still_exists=True, error=exc)
        return ContainerCleanupResult(runtime_id, success=not still_exists, still_exists=still_exists)

    async def _force_stop_browser(self, session_id: str) -> None:
        if self._browser is None:
            return
        try:
            await self._browser.force_stop_browser(session_id)
        except Exception as exc:
            logger.warning("Failed to stop browser", session_id=session_id, err=str(exc))

    async def _unregister_proxy(self, session_id: str) -> None:
        try:
            await self._proxy.unregister_cluster(session_id)
        except Exception as exc:
            logger.warning("Failed to unregister proxy cluster", session_id=session_id, err=str(exc))

    async def _remove_network(self, session_id: str) -> None:
        try:
            await self._networks.remove_session_network(session_id)
        except Exception as exc:
            logger.error("Failed to clean up session network", session_id=session_id, err=str(exc))
