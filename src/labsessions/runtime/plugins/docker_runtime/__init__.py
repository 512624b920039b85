"""Docker container runtime plugin."""

from __future__ import annotations

from typing import Any

from labsessions.plugin import hookimpl
from labsessions.runtime.docker import DockerRuntimeProvider


class DockerRuntimePlugin:
    """Plugin providing the Docker CLI runtime."""

    @hookimpl
    def labsessions_runtime_provider(self) -> Any | None:
        return DockerRuntimeProvider()
