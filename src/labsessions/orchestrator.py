"""Bring a session's containers up in dependency order.

Start levels come from :mod:`labsessions.resolver`.  Containers within a
level are created and started concurrently; the next level only begins once
every container of the current level has been started.  Any failure aborts
the remaining levels and routes the session through error cleanup, so a
session never stays stuck in ``starting``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from labsessions.cleanup import SessionCleanupService
from labsessions.db import Repository
from labsessions.logger import logger
from labsessions.naming import (
    CONTAINER_LABEL,
    PROJECT_LABEL,
    SESSION_LABEL,
    format_container_name,
    format_network_alias,
    format_unique_hostname,
)
from labsessions.network import SessionNetworkManager
from labsessions.proxy import ProxyManager
from labsessions.publisher import SESSION_CONTAINERS, Publisher
from labsessions.resolver import (
    CircularDependencyError,
    build_container_nodes,
    resolve_start_order,
)
from labsessions.runtime.provider import RuntimeProvider
from labsessions.types import (
    ClusterContainer,
    ContainerCreateOptions,
    ContainerDefinition,
    ContainerStatus,
    PortMapping,
    SessionStatus,
    VolumeBinding,
)
from labsessions.utils import SingleFlight
from labsessions.workspace import WorkspacePreparer

SESSION_ID_ENV = "LAB_SESSION_ID"

type SessionReadyHandler = Callable[[str], Awaitable[None]]


@dataclass
class PreparedContainer:
    definition: ContainerDefinition
    workspace: str
    env: dict[str, str]
    hostname: str
    aliases: list[str]
    port_map: dict[int, int]


@dataclass
class _StartProgress:
    """Runtime ids created so far; read by error cleanup after a failure."""

    runtime_ids: list[str] = field(default_factory=list)
    cluster: list[ClusterContainer] = field(default_factory=list)


def build_environment(session_id: str, definition: ContainerDefinition) -> dict[str, str]:
    env = {var.key: var.value for var in definition.env_vars}
    env[SESSION_ID_ENV] = session_id
    return env


def build_aliases_and_port_map(
    session_id: str, container_id: str, ports: list[int]
) -> tuple[list[str], dict[int, int]]:
    """Network aliases for a container plus the ports it exposes to the proxy.

    The unique hostname makes the container addressable across the session
    network; each port alias (``<session>--<port>``) is what the proxy dials.
    """
    aliases = [format_unique_hostname(session_id, container_id)]
    aliases += [format_network_alias(session_id, port) for port in ports]
    return aliases, {port: port for port in ports}


class ContainerOrchestrator:
    def __init__(
        self,
        runtime: RuntimeProvider,
        repo: Repository,
        publisher: Publisher,
        networks: SessionNetworkManager,
        proxy: ProxyManager,
        cleanup: SessionCleanupService,
        workspaces: WorkspacePreparer,
        *,
        workspaces_volume: str,
        workspaces_mount: str,
        browser_socket_volume: str | None = None,
        browser_socket_dir: str | None = None,
    ) -> None:
        self._runtime = runtime
        self._repo = repo
        self._publisher = publisher
        self._networks = networks
        self._proxy = proxy
        self._cleanup = cleanup
        self._workspaces = workspaces
        self._workspaces_volume = workspaces_volume
        self._workspaces_mount = workspaces_mount
        self._browser_socket_volume = browser_socket_volume
        self._browser_socket_dir = browser_socket_dir
        self._initializing: SingleFlight[bool] = SingleFlight("session-init")
        self._ready_handlers: list[SessionReadyHandler] = []

    def on_session_ready(self, handler: SessionReadyHandler) -> None:
        """Register a callback run once a session's containers are all running."""
        self._ready_handlers.append(handler)

    def is_initializing(self, session_id: str) -> bool:
        return self._initializing.in_flight(session_id)

    async def initialize_session_containers(self, session_id: str, project_id: str) -> bool:
        """Start every container of *session_id*; coalesced per session.

        A second call while the first is still running waits for and returns
        the same result instead of starting containers twice.

        Returns:
            True when the session came up (or was deleted mid-start and its
            resources were released), False when startup failed and the
            session was sent through error cleanup.
        """
        return await self._initializing.run(
            session_id, lambda: self._initialize(session_id, project_id)
        )

    async def wait_idle(self) -> None:
        await self._initializing.wait_all()

    async def _initialize(self, session_id: str, project_id: str) -> bool:
        progress = _StartProgress()
        try:
            await self._start_all(session_id, project_id, progress)
        except CircularDependencyError as exc:
            logger.error(
                "Circular container dependency", project_id=project_id, cycle=exc.cycle
            )
            return await self._handle_initialization_error(
                session_id, project_id, progress.runtime_ids
            )
        except Exception:
            logger.exception(
                "Session initialization failed", session_id=session_id, project_id=project_id
            )
            return await self._handle_initialization_error(
                session_id, project_id, progress.runtime_ids
            )

        session = await self._repo.find_session_by_id(session_id)
        if session is None or session.status == SessionStatus.DELETING:
            logger.info("Session deleted during setup", session_id=session_id)
            await self._cleanup.cleanup_orphaned_resources(session_id, progress.runtime_ids)
            return True

        if session.status == SessionStatus.STARTING:
            await self._repo.update_session_status(session_id, SessionStatus.RUNNING)
        logger.info(
            "Session containers running",
            session_id=session_id,
            containers=len(progress.runtime_ids),
        )
        for handler in self._ready_handlers:
            try:
                await handler(session_id)
            except Exception:
                logger.exception("Session ready handler failed", session_id=session_id)
        return True

    async def _start_all(self, session_id: str, project_id: str, progress: _StartProgress) -> None:
        definitions = await self._repo.find_containers_with_dependencies(project_id)
        # Planning errors surface here, before anything touches the runtime
        levels = resolve_start_order(build_container_nodes(definitions))

        network = await self._networks.create_session_network(session_id)

        prepared_list = await asyncio.gather(
            *(self._prepare(session_id, definition) for definition in definitions)
        )
        prepared = {item.definition.id: item for item in prepared_list}

        for index, level in enumerate(levels):
            logger.debug(
                "Starting container level",
                session_id=session_id,
                level=index,
                containers=level.container_ids,
            )
            # Let every sibling settle so all created runtime ids are recorded
            results = await asyncio.gather(
                *(
                    self._create_and_start(
                        session_id, project_id, network.id, prepared[container_id], progress
                    )
                    for container_id in level.container_ids
                ),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result

        if progress.cluster:
            await self._proxy.register_cluster(session_id, network.id, progress.cluster)

    async def _prepare(self, session_id: str, definition: ContainerDefinition) -> PreparedContainer:
        workspace = await self._workspaces.prepare(session_id, definition.id, definition.image)
        aliases, port_map = build_aliases_and_port_map(session_id, definition.id, definition.ports)
        return PreparedContainer(
            definition=definition,
            workspace=workspace,
            env=build_environment(session_id, definition),
            hostname=format_unique_hostname(session_id, definition.id),
            aliases=aliases,
            port_map=port_map,
        )

    def _volumes(self) -> list[VolumeBinding]:
        volumes = [VolumeBinding(source=self._workspaces_volume, target=self._workspaces_mount)]
        if self._browser_socket_volume and self._browser_socket_dir:
            volumes.append(
                VolumeBinding(source=self._browser_socket_volume, target=self._browser_socket_dir)
            )
        return volumes

    async def _create_and_start(
        self,
        session_id: str,
        project_id: str,
        network: str,
        prepared: PreparedContainer,
        progress: _StartProgress,
    ) -> None:
        definition = prepared.definition
        logger.info(
            "Creating container",
            session_id=session_id,
            container_id=definition.id,
            image=definition.image,
        )
        runtime_id = await self._runtime.create_container(
            ContainerCreateOptions(
                image=definition.image,
                name=format_container_name(session_id, definition.id),
                hostname=prepared.hostname,
                workdir=prepared.workspace,
                env=prepared.env,
                ports=[PortMapping(container=port) for port in definition.ports],
                volumes=self._volumes(),
                labels={
                    SESSION_LABEL: session_id,
                    PROJECT_LABEL: project_id,
                    CONTAINER_LABEL: definition.id,
                },
                network=network,
                network_aliases=prepared.aliases,
            )
        )
        progress.runtime_ids.append(runtime_id)
        await self._runtime.start_container(runtime_id)
        logger.info(
            "Container started",
            session_id=session_id,
            container_id=definition.id,
            runtime_id=runtime_id,
        )

        row = await self._repo.update_session_container_runtime_id(
            session_id, definition.id, runtime_id
        )
        if row is not None:
            await self._repo.update_session_container_status(row.id, ContainerStatus.RUNNING)
            self._publisher.publish_delta(
                SESSION_CONTAINERS,
                {"type": "update", "container": {"id": row.id, "status": ContainerStatus.RUNNING}},
                params={"uuid": session_id},
            )

        if prepared.port_map:
            progress.cluster.append(
                ClusterContainer(
                    container_id=definition.id,
                    hostname=prepared.hostname,
                    ports=prepared.port_map,
                )
            )

    async def _handle_initialization_error(
        self, session_id: str, project_id: str, runtime_ids: list[str]
    ) -> bool:
        """Release a failed startup; True when the session was already being deleted."""
        session = await self._repo.find_session_by_id(session_id)
        if session is None or session.status == SessionStatus.DELETING:
            logger.info("Session deleted during failed setup", session_id=session_id)
            await self._cleanup.cleanup_orphaned_resources(session_id, list(runtime_ids))
            return True

        await self._repo.update_session_containers_status_by_session_id(
            session_id, ContainerStatus.ERROR
        )
        for container in await self._repo.find_session_containers_by_session_id(session_id):
            self._publisher.publish_delta(
                SESSION_CONTAINERS,
                {"type": "update", "container": {"id": container.id, "status": ContainerStatus.ERROR}},
                params={"uuid": session_id},
            )
        await self._cleanup.cleanup_on_error(session_id, project_id, list(runtime_ids))
        return False
