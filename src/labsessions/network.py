"""Per-session isolated networks.

Every session gets its own bridge network ``lab-<session_id>`` labeled with
the session id.  Long-lived shared containers (the browser service, tool
runtimes) are attached to each session network so session containers can
reach them by name.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

from labsessions.logger import logger
from labsessions.naming import SESSION_LABEL, format_network_name
from labsessions.runtime.provider import RuntimeProvider, SandboxError
from labsessions.types import SessionNetwork


class SessionNetworkManager:
    def __init__(self, runtime: RuntimeProvider, shared_containers: Iterable[str] = ()) -> None:
        self._runtime = runtime
        self._shared_containers = [name for name in shared_containers if name]

    @property
    def shared_containers(self) -> list[str]:
        return list(self._shared_containers)

    async def create_session_network(self, session_id: str) -> SessionNetwork:
        network = format_network_name(session_id)
        await self._runtime.create_network(network, labels={SESSION_LABEL: session_id})
        await self.connect_shared_containers(network)
        return SessionNetwork(id=network, shared_containers=self.shared_containers)

    async def remove_session_network(self, session_id: str) -> None:
        """Detach shared containers and delete the network.

        A network that is already gone, or a shared container that is not
        attached, counts as success.
        """
        network = format_network_name(session_id)
        await self._disconnect_shared_containers(network)
        await self._runtime.remove_network(network)

    async def cleanup_orphaned_session_networks(self, active_session_ids: Iterable[str]) -> int:
        """Remove every session network whose session is not in *active_session_ids*.

        Returns:
            Number of networks actually removed; individual failures are
            logged and skipped.
        """
        active = set(active_session_ids)
        networks = await self._runtime.list_networks(SESSION_LABEL)
        orphaned = sorted(
            {
                session_id
                for session_id in (network.labels.get(SESSION_LABEL) for network in networks)
                if session_id and session_id not in active
            }
        )
        if not orphaned:
            return 0

        results = await asyncio.gather(
            *(self.remove_session_network(session_id) for session_id in orphaned),
            return_exceptions=True,
        )
        removed = 0
        for session_id, result in zip(orphaned, results, strict=True):
            if isinstance(result, Exception):
                logger.warning(
                    "Session network cleanup failed", session_id=session_id, err=str(result)
                )
            else:
                removed += 1
        logger.info("Removed orphaned session networks", removed=removed, found=len(orphaned))
        return removed

    async def reconcile_session_networks(self, active_session_ids: Iterable[str]) -> None:
        """Re-attach shared containers that drifted off active session networks."""
        session_ids = list(active_session_ids)
        if not session_ids or not self._shared_containers:
            return

        logger.info("Reconciling session network connections", sessions=len(session_ids))
        for session_id in session_ids:
            network = format_network_name(session_id)
            if not await self._runtime.network_exists(network):
                continue
            await self.connect_shared_containers(network)
        logger.info("Session network reconciliation complete")

    async def connect_shared_containers(self, network: str) -> None:
        for name in self._shared_containers:
            try:
                if not await self._runtime.is_connected_to_network(name, network):
                    await self._runtime.connect_to_network(name, network)
                    logger.debug("Attached shared container", container=name, network=network)
            except SandboxError as exc:
                logger.warning(
                    "Failed to connect shared container",
                    container=name,
                    network=network,
                    err=str(exc),
                )

    async def _disconnect_shared_containers(self, network: str) -> None:
        for name in self._shared_containers:
            try:
                if await self._runtime.is_connected_to_network(name, network):
                    await self._runtime.disconnect_from_network(name, network)
            except SandboxError as exc:
                logger.warning(
                    "Failed to disconnect shared container",
                    container=name,
                    network=network,
                    err=str(exc),
                )
