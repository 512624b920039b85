"""Container runtime capability contract.

Everything the engine needs from a container engine goes through
:class:`RuntimeProvider`.  Implementations must make teardown idempotent:
stopping/removing something that is already gone, or disconnecting a
container that is not attached, returns normally.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from enum import StrEnum
from typing import Protocol, runtime_checkable

from labsessions.types import (
    ContainerCreateOptions,
    ContainerEvent,
    ContainerInfo,
    ExecResult,
    LogChunk,
    NetworkInfo,
)

DEFAULT_STOP_TIMEOUT = 10


class SandboxErrorKind(StrEnum):
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    CONFLICT = "conflict"
    TIMEOUT = "timeout"
    RUNTIME = "runtime"


class SandboxError(Exception):
    """A container runtime operation failed."""

    def __init__(self, kind: SandboxErrorKind, message: str) -> None:
        self.kind = kind
        super().__init__(message)

    @property
    def is_not_found(self) -> bool:
        return self.kind == SandboxErrorKind.NOT_FOUND


@runtime_checkable
class RuntimeProvider(Protocol):
    """Async capability interface over a container engine."""

    name: str

    # --- Images ---
    async def pull_image(self, ref: str) -> None: ...
    async def image_exists(self, ref: str) -> bool: ...
    async def image_workdir(self, ref: str) -> str | None: ...

    # --- Containers ---
    async def create_container(self, options: ContainerCreateOptions) -> str: ...
    async def start_container(self, container_id: str) -> None: ...
    async def stop_container(
        self, container_id: str, timeout: int = DEFAULT_STOP_TIMEOUT
    ) -> None: ...
    async def remove_container(self, container_id: str, force: bool = True) -> None: ...
    async def restart_container(
        self, container_id: str, timeout: int = DEFAULT_STOP_TIMEOUT
    ) -> None: ...
    async def inspect_container(self, container_id: str) -> ContainerInfo: ...
    async def wait_container(self, container_id: str) -> int: ...
    async def container_exists(self, container_id: str) -> bool: ...
    def stream_logs(self, container_id: str, tail: int = 100) -> AsyncIterator[LogChunk]: ...
    def stream_events(self, label: str) -> AsyncIterator[ContainerEvent]: ...
    async def exec(
        self,
        container_id: str,
        command: list[str],
        *,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
    ) -> ExecResult: ...

    # --- Volumes ---
    async def create_volume(self, name: str, labels: dict[str, str] | None = None) -> None: ...
    async def remove_volume(self, name: str) -> None: ...
    async def volume_exists(self, name: str) -> bool: ...
    async def clone_volume(self, source: str, target: str, timeout: float) -> None: ...

    # --- Networks ---
    async def create_network(self, name: str, labels: dict[str, str] | None = None) -> None: ...
    async def remove_network(self, name: str) -> None: ...
    async def network_exists(self, name: str) -> bool: ...
    async def list_networks(self, label: str) -> list[NetworkInfo]: ...
    async def connect_to_network(
        self, container: str, network: str, aliases: list[str] | None = None
    ) -> None: ...
    async def disconnect_from_network(self, container: str, network: str) -> None: ...
    async def is_connected_to_network(self, container: str, network: str) -> bool: ...
