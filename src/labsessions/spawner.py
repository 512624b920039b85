"""Session spawning: claim a warm session from the pool or start a new one."""

from __future__ import annotations

from dataclasses import asdict

from labsessions.db import Repository
from labsessions.lifecycle import SessionLifecycleManager
from labsessions.logger import logger
from labsessions.pool import PoolManager
from labsessions.proxy import ProxyManager
from labsessions.publisher import SESSION_CONTAINERS, SESSIONS, Publisher
from labsessions.types import (
    ContainerStatus,
    Session,
    SpawnedContainer,
    SpawnResult,
    is_container_status,
)
from labsessions.utils import create_background_task

TITLE_MAX_LENGTH = 50


class ProjectHasNoContainersError(Exception):
    """The project defines no containers, so there is nothing to start."""

    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        super().__init__(f"Project {project_id} has no container definitions")


def fallback_title(task_summary: str) -> str | None:
    title = task_summary[:TITLE_MAX_LENGTH].strip()
    return title or None


class SessionSpawner:
    def __init__(
        self,
        repo: Repository,
        lifecycle: SessionLifecycleManager,
        pool: PoolManager,
        publisher: Publisher,
        proxy: ProxyManager,
    ) -> None:
        self._repo = repo
        self._lifecycle = lifecycle
        self._pool = pool
        self._publisher = publisher
        self._proxy = proxy

    async def spawn_session(self, project_id: str, task_summary: str) -> SpawnResult:
        """Return a session for *project_id* without waiting for its containers.

        A pooled session is returned with its containers already running.
        Otherwise a new session is recorded with every container ``starting``
        and initialization continues in the background.

        Raises:
            ProjectHasNoContainersError: if the project defines no containers.
        """
        title = fallback_title(task_summary)

        result = await self._claim_pooled(project_id, title)
        if result is not None:
            return result

        result = await self._create_with_containers(project_id, title)
        session_id = result.session.id
        create_background_task(
            self._lifecycle.initialize_session(session_id, project_id),
            name=f"session-init-{session_id}",
        )
        create_background_task(
            self._pool.reconcile_pool(project_id), name=f"pool-reconcile-{project_id}"
        )
        return result

    async def _claim_pooled(self, project_id: str, title: str | None) -> SpawnResult | None:
        session = await self._pool.claim_pooled_session(project_id)
        if session is None:
            return None
        if title:
            await self._repo.update_session_title(session.id, title)
            session.title = title

        definitions = {
            definition.id: definition
            for definition in await self._repo.find_containers_by_project_id(project_id)
        }
        routes = self._proxy.get_urls(session.id)
        containers: list[SpawnedContainer] = []
        for row in await self._repo.find_session_containers_by_session_id(session.id):
            if not is_container_status(row.status):
                raise ValueError(f"Invalid container status: {row.status}")
            definition = definitions[row.container_definition_id]
            containers.append(
                SpawnedContainer(
                    id=row.id,
                    name=definition.display_name,
                    status=ContainerStatus(row.status),
                    urls=[route for route in routes if route.container_port in definition.ports],
                )
            )

        logger.info("Spawned session from pool", session_id=session.id, project_id=project_id)
        self._publish_created(session, containers)
        return SpawnResult(session=session, containers=containers)

    async def _create_with_containers(self, project_id: str, title: str | None) -> SpawnResult:
        definitions = await self._repo.find_containers_by_project_id(project_id)
        if not definitions:
            raise ProjectHasNoContainersError(project_id)

        session = await self._repo.create_session(project_id, title=title)
        containers: list[SpawnedContainer] = []
        for definition in definitions:
            row = await self._repo.create_session_container(
                session.id, definition.id, ContainerStatus.STARTING
            )
            containers.append(
                SpawnedContainer(
                    id=row.id, name=definition.display_name, status=ContainerStatus.STARTING
                )
            )

        logger.info("Spawned new session", session_id=session.id, project_id=project_id)
        self._publish_created(session, containers)
        return SpawnResult(session=session, containers=containers)

    def _publish_created(self, session: Session, containers: list[SpawnedContainer]) -> None:
        self._publisher.publish_delta(
            SESSIONS,
            {
                "type": "add",
                "session": {
                    "id": session.id,
                    "projectId": session.project_id,
                    "title": session.title,
                },
            },
        )
        self._publisher.publish_snapshot(
            SESSION_CONTAINERS,
            [asdict(container) for container in containers],
            params={"uuid": session.id},
        )
