"""Shared domain types for sessions, containers and the runtime boundary."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class SessionStatus(StrEnum):
    POOLED = "pooled"
    STARTING = "starting"
    RUNNING = "running"
    DELETING = "deleting"
    ERROR = "error"


class ContainerStatus(StrEnum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


def is_container_status(value: str) -> bool:
    return value in ContainerStatus._value2member_map_


# --- Project configuration (read-only from the engine's point of view) ---


@dataclass(frozen=True)
class DependencyEdge:
    depends_on_id: str
    condition: str = "service_started"


@dataclass(frozen=True)
class EnvVar:
    key: str
    value: str


@dataclass
class ContainerDefinition:
    id: str
    project_id: str
    image: str
    hostname: str | None = None
    ports: list[int] = field(default_factory=list)
    env_vars: list[EnvVar] = field(default_factory=list)
    dependencies: list[DependencyEdge] = field(default_factory=list)

    @property
    def display_name(self) -> str:
        """Hostname if set, otherwise the bare image name (``repo/name:tag`` → ``name``)."""
        if self.hostname:
            return self.hostname
        name = self.image.rsplit("/", 1)[-1].split(":", 1)[0]
        if not name:
            msg = f"Unable to extract display name from container image: {self.image}"
            raise ValueError(msg)
        return name


@dataclass(frozen=True)
class ContainerNode:
    """Resolver input: one container and the ids it waits for."""

    id: str
    depends_on: tuple[str, ...] = ()


@dataclass
class StartLevel:
    """A batch of containers whose dependencies all live in earlier levels."""

    container_ids: list[str]


@dataclass
class Project:
    id: str
    name: str


# --- Sessions ---


@dataclass
class Session:
    id: str
    project_id: str
    status: SessionStatus
    title: str | None = None
    created_at: str = ""


@dataclass
class SessionContainer:
    id: str
    session_id: str
    container_definition_id: str
    runtime_id: str | None
    status: ContainerStatus


@dataclass
class SessionNetwork:
    id: str
    shared_containers: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PoolStats:
    available: int
    target: int


# --- Reverse proxy ---


@dataclass
class ClusterContainer:
    container_id: str
    hostname: str
    ports: dict[int, int]


@dataclass(frozen=True)
class RouteInfo:
    container_port: int
    url: str


# --- Spawn result ---


@dataclass
class SpawnedContainer:
    id: str
    name: str
    status: ContainerStatus
    urls: list[RouteInfo] = field(default_factory=list)


@dataclass
class SpawnResult:
    session: Session
    containers: list[SpawnedContainer]


# --- Runtime boundary ---


@dataclass
class PortMapping:
    container: int
    host: int | None = None


@dataclass
class VolumeBinding:
    source: str
    target: str
    read_only: bool = False


@dataclass
class ContainerCreateOptions:
    image: str
    name: str | None = None
    command: list[str] | None = None
    hostname: str | None = None
    workdir: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    ports: list[PortMapping] = field(default_factory=list)
    volumes: list[VolumeBinding] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    network: str | None = None
    network_aliases: list[str] = field(default_factory=list)


@dataclass
class ContainerInfo:
    id: str
    name: str
    image: str
    state: str  # "created" | "running" | "paused" | "restarting" | "exited" | "dead"
    labels: dict[str, str] = field(default_factory=dict)
    ports: dict[int, int] = field(default_factory=dict)

    @property
    def running(self) -> bool:
        return self.state == "running"


@dataclass
class NetworkInfo:
    name: str
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class ExecResult:
    exit_code: int
    stdout: str
    stderr: str


@dataclass
class LogChunk:
    stream: str  # "stdout" | "stderr"
    text: str


@dataclass
class ContainerEvent:
    container_id: str
    action: str
    attributes: dict[str, Any] = field(default_factory=dict)
