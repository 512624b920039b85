"""Session lifecycle facade used by the spawner and the pool manager."""

from __future__ import annotations

from labsessions.cleanup import SessionCleanupService
from labsessions.db import Repository
from labsessions.logger import logger
from labsessions.network import SessionNetworkManager
from labsessions.orchestrator import ContainerOrchestrator


class SessionLifecycleManager:
    def __init__(
        self,
        repo: Repository,
        networks: SessionNetworkManager,
        orchestrator: ContainerOrchestrator,
        cleanup: SessionCleanupService,
    ) -> None:
        self._repo = repo
        self._networks = networks
        self._orchestrator = orchestrator
        self._cleanup = cleanup

    async def initialize(self) -> int:
        """Remove session networks left behind by sessions that no longer exist."""
        active = await self._active_session_ids()
        removed = await self._networks.cleanup_orphaned_session_networks(active)
        if removed:
            logger.info("Removed orphaned networks at startup", count=removed)
        return removed

    async def initialize_session(self, session_id: str, project_id: str) -> bool:
        return await self._orchestrator.initialize_session_containers(session_id, project_id)

    async def cleanup_session(self, session_id: str) -> None:
        await self._cleanup.cleanup_session_full(session_id)

    async def reconcile_networks(self) -> None:
        await self._networks.reconcile_session_networks(await self._active_session_ids())

    async def _active_session_ids(self) -> list[str]:
        return [session.id for session in await self._repo.find_active_sessions()]
