"""Runtime event and log watchers.

:class:`ContainerMonitor` follows the runtime's lifecycle event stream for
every session-labeled container and mirrors status changes into the
database and onto the ``sessionContainers`` channel.  :class:`LogMonitor`
tails the logs of one session's containers on demand.
"""

from __future__ import annotations

import asyncio
from collections import deque

from labsessions.db import Repository
from labsessions.logger import logger
from labsessions.naming import SESSION_LABEL
from labsessions.publisher import SESSION_CONTAINERS, Publisher
from labsessions.runtime.provider import RuntimeProvider
from labsessions.types import ContainerEvent, ContainerStatus

SESSION_LOGS = "sessionLogs"
LOG_BUFFER_SIZE = 1000

_ACTION_STATUS: dict[str, ContainerStatus] = {
    "start": ContainerStatus.RUNNING,
    "stop": ContainerStatus.STOPPED,
    "die": ContainerStatus.STOPPED,
    "kill": ContainerStatus.STOPPED,
    "restart": ContainerStatus.STARTING,
    "oom": ContainerStatus.ERROR,
}


def map_event_to_status(event: ContainerEvent) -> ContainerStatus | None:
    if event.action == "health_status":
        if event.attributes.get("health_status") == "unhealthy":
            return ContainerStatus.ERROR
        return None
    return _ACTION_STATUS.get(event.action)


class ContainerMonitor:
    def __init__(
        self,
        runtime: RuntimeProvider,
        repo: Repository,
        publisher: Publisher,
        retry_delay: float = 5.0,
    ) -> None:
        self._runtime = runtime
        self._repo = repo
        self._publisher = publisher
        self._retry_delay = retry_delay
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        logger.info("Starting container monitor")
        self._task = asyncio.create_task(self._run(), name="container-monitor")

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            try:
                async for event in self._runtime.stream_events(SESSION_LABEL):
                    await self.handle_event(event)
                logger.warning("Container event stream ended; resubscribing")
            except Exception:
                logger.exception("Container monitor error; resubscribing")
            await asyncio.sleep(self._retry_delay)

    async def handle_event(self, event: ContainerEvent) -> None:
        status = map_event_to_status(event)
        if status is None:
            return
        session_id = event.attributes.get(SESSION_LABEL)
        if not session_id:
            return
        row = await self._repo.find_session_container_by_runtime_id(event.container_id)
        if row is None:
            return

        await self._repo.update_session_container_status(row.id, status)
        self._publisher.publish_delta(
            SESSION_CONTAINERS,
            {"type": "update", "container": {"id": row.id, "status": status}},
            params={"uuid": session_id},
        )
        logger.debug(
            "Container status changed", session_id=session_id, container=row.id, status=status
        )


class LogMonitor:
    """Streams container logs of watched sessions onto the ``sessionLogs`` channel.

    The last :data:`LOG_BUFFER_SIZE` lines per container are kept so late
    subscribers can be sent a snapshot.
    """

    def __init__(self, runtime: RuntimeProvider, repo: Repository, publisher: Publisher) -> None:
        self._runtime = runtime
        self._repo = repo
        self._publisher = publisher
        self._tasks: dict[str, list[asyncio.Task[None]]] = {}
        self._buffers: dict[str, deque[str]] = {}
        self._containers: dict[str, list[str]] = {}

    def is_watching(self, session_id: str) -> bool:
        return session_id in self._tasks

    def buffered(self, container_id: str) -> list[str]:
        return list(self._buffers.get(container_id, ()))

    async def watch_session(self, session_id: str) -> None:
        if self.is_watching(session_id):
            return
        tasks = []
        for row in await self._repo.find_session_containers_by_session_id(session_id):
            if row.runtime_id is None or row.status != ContainerStatus.RUNNING:
                continue
            self._containers.setdefault(session_id, []).append(row.id)
            tasks.append(
                asyncio.create_task(
                    self._follow(session_id, row.id, row.runtime_id),
                    name=f"logs-{row.id}",
                )
            )
        self._tasks[session_id] = tasks

    def unwatch_session(self, session_id: str) -> None:
        for task in self._tasks.pop(session_id, []):
            task.cancel()

    async def release_session(self, session_id: str) -> None:
        """Session-cleared handler: stop tailing and drop the buffered lines."""
        self.unwatch_session(session_id)
        for container_id in self._containers.pop(session_id, []):
            self._buffers.pop(container_id, None)

    def stop(self) -> None:
        for session_id in list(self._tasks):
            self.unwatch_session(session_id)

    async def _follow(self, session_id: str, container_id: str, runtime_id: str) -> None:
        buffer = self._buffers.setdefault(container_id, deque(maxlen=LOG_BUFFER_SIZE))
        try:
            async for chunk in self._runtime.stream_logs(runtime_id):
                buffer.append(chunk.text)
                self._publisher.publish_event(
                    SESSION_LOGS,
                    {"containerId": container_id, "stream": chunk.stream, "text": chunk.text},
                    params={"uuid": session_id},
                )
        except Exception as exc:
            logger.warning("Log stream failed", container=container_id, err=str(exc))
