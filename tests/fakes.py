"""In-memory runtime provider shared across tests.

Behaves like a well-mannered container engine: teardown of anything that
does not exist succeeds, creation of something that exists raises
``ALREADY_EXISTS``, and every call is appended to ``calls`` so tests can
assert on ordering.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from labsessions.naming import CONTAINER_LABEL
from labsessions.runtime.provider import DEFAULT_STOP_TIMEOUT, SandboxError, SandboxErrorKind
from labsessions.types import (
    ContainerCreateOptions,
    ContainerEvent,
    ContainerInfo,
    ExecResult,
    LogChunk,
    NetworkInfo,
)


@dataclass
class FakeContainer:
    id: str
    options: ContainerCreateOptions
    state: str = "created"


@dataclass
class FakeNetwork:
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    # container id or name -> aliases
    members: dict[str, list[str]] = field(default_factory=dict)


class FakeRuntimeProvider:
    name = "fake"

    def __init__(self) -> None:
        self.containers: dict[str, FakeContainer] = {}
        self.networks: dict[str, FakeNetwork] = {}
        self.volumes: dict[str, dict[str, str]] = {}
        self.images: set[str] = set()
        self.image_workdirs: dict[str, str] = {}
        self.shared: set[str] = set()
        self.logs: dict[str, list[str]] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], Exception] = {}
        self.start_delay = 0.0
        self._events: asyncio.Queue[ContainerEvent | None] = asyncio.Queue()
        self._next_id = 0

    def is_available(self) -> bool:
        return True

    # --- Test helpers ---

    def fail(self, method: str, target: str, exc: Exception | None = None) -> None:
        """Make ``method`` raise for ``target`` (container label id, runtime id, image or network)."""
        self.failures[(method, target)] = exc or SandboxError(
            SandboxErrorKind.RUNTIME, f"{method} {target} failed"
        )

    def add_container(self, runtime_id: str, state: str = "running") -> None:
        self.containers[runtime_id] = FakeContainer(
            id=runtime_id, options=ContainerCreateOptions(image="test"), state=state
        )

    def add_shared_container(self, name: str) -> None:
        self.shared.add(name)

    def emit_event(self, event: ContainerEvent | None) -> None:
        self._events.put_nowait(event)

    def calls_to(self, method: str) -> list[str]:
        return [target for name, target in self.calls if name == method]

    def session_containers(self) -> list[FakeContainer]:
        """Containers created by the orchestrator (helpers carry no container label)."""
        return [c for c in self.containers.values() if CONTAINER_LABEL in c.options.labels]

    def _record(self, method: str, *targets: str) -> None:
        self.calls.append((method, targets[0]))
        for target in targets:
            exc = self.failures.get((method, target))
            if exc is not None:
                raise exc

    def _container(self, runtime_id: str) -> FakeContainer:
        container = self.containers.get(runtime_id)
        if container is None:
            raise SandboxError(SandboxErrorKind.NOT_FOUND, f"No such container: {runtime_id}")
        return container

    # --- Images ---

    async def pull_image(self, ref: str) -> None:
        self._record("pull_image", ref)
        self.images.add(ref)

    async def image_exists(self, ref: str) -> bool:
        return ref in self.images

    async def image_workdir(self, ref: str) -> str | None:
        return self.image_workdirs.get(ref)

    # --- Containers ---

    async def create_container(self, options: ContainerCreateOptions) -> str:
        label = options.labels.get(CONTAINER_LABEL, options.image)
        self._record("create_container", label, options.image)
        if options.network and options.network not in self.networks:
            raise SandboxError(SandboxErrorKind.NOT_FOUND, f"network {options.network} not found")
        self._next_id += 1
        runtime_id = f"c{self._next_id}"
        self.containers[runtime_id] = FakeContainer(id=runtime_id, options=options)
        if options.network:
            self.networks[options.network].members[runtime_id] = list(options.network_aliases)
        return runtime_id

    async def start_container(self, container_id: str) -> None:
        container = self._container(container_id)
        label = container.options.labels.get(CONTAINER_LABEL, container_id)
        self._record("start_container", label, container_id)
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        else:
            await asyncio.sleep(0)
        container.state = "running"

    async def stop_container(self, container_id: str, timeout: int = DEFAULT_STOP_TIMEOUT) -> None:
        self._record("stop_container", container_id)
        container = self.containers.get(container_id)
        if container is not None:
            container.state = "exited"

    async def remove_container(self, container_id: str, force: bool = True) -> None:
        self._record("remove_container", container_id)
        self.containers.pop(container_id, None)
        for network in self.networks.values():
            network.members.pop(container_id, None)

    async def restart_container(
        self, container_id: str, timeout: int = DEFAULT_STOP_TIMEOUT
    ) -> None:
        self._record("restart_container", container_id)
        self._container(container_id).state = "running"

    async def inspect_container(self, container_id: str) -> ContainerInfo:
        container = self._container(container_id)
        return ContainerInfo(
            id=container.id,
            name=container.options.name or container.id,
            image=container.options.image,
            state=container.state,
            labels=dict(container.options.labels),
        )

    async def wait_container(self, container_id: str) -> int:
        self._record("wait_container", container_id)
        self._container(container_id).state = "exited"
        return 0

    async def container_exists(self, container_id: str) -> bool:
        return container_id in self.containers

    async def stream_logs(self, container_id: str, tail: int = 100) -> AsyncIterator[LogChunk]:
        for line in self.logs.get(container_id, [])[-tail:]:
            yield LogChunk(stream="stdout", text=line)

    async def stream_events(self, label: str) -> AsyncIterator[ContainerEvent]:
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def exec(
        self,
        container_id: str,
        command: list[str],
        *,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
    ) -> ExecResult:
        self._record("exec", container_id)
        self._container(container_id)
        return ExecResult(exit_code=0, stdout="", stderr="")

    # --- Volumes ---

    async def create_volume(self, name: str, labels: dict[str, str] | None = None) -> None:
        self._record("create_volume", name)
        self.volumes.setdefault(name, dict(labels or {}))

    async def remove_volume(self, name: str) -> None:
        self._record("remove_volume", name)
        self.volumes.pop(name, None)

    async def volume_exists(self, name: str) -> bool:
        return name in self.volumes

    async def clone_volume(self, source: str, target: str, timeout: float) -> None:
        self._record("clone_volume", source, target)
        self.volumes[target] = dict(self.volumes.get(source, {}))

    # --- Networks ---

    async def create_network(self, name: str, labels: dict[str, str] | None = None) -> None:
        self._record("create_network", name)
        if name in self.networks:
            return
        self.networks[name] = FakeNetwork(name=name, labels=dict(labels or {}))

    async def remove_network(self, name: str) -> None:
        self._record("remove_network", name)
        self.networks.pop(name, None)

    async def network_exists(self, name: str) -> bool:
        return name in self.networks

    async def list_networks(self, label: str) -> list[NetworkInfo]:
        return [
            NetworkInfo(name=network.name, labels=dict(network.labels))
            for network in self.networks.values()
            if label in network.labels
        ]

    async def connect_to_network(
        self, container: str, network: str, aliases: list[str] | None = None
    ) -> None:
        self._record("connect_to_network", container, network)
        if network not in self.networks:
            raise SandboxError(SandboxErrorKind.NOT_FOUND, f"network {network} not found")
        if container not in self.containers and container not in self.shared:
            raise SandboxError(SandboxErrorKind.NOT_FOUND, f"No such container: {container}")
        self.networks[network].members.setdefault(container, list(aliases or []))

    async def disconnect_from_network(self, container: str, network: str) -> None:
        self._record("disconnect_from_network", container, network)
        if network in self.networks:
            self.networks[network].members.pop(container, None)

    async def is_connected_to_network(self, container: str, network: str) -> bool:
        return network in self.networks and container in self.networks[network].members
