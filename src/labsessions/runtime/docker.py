"""Docker runtime provider: drives the ``docker`` CLI."""

from __future__ import annotations

import asyncio
import json
import shutil
import subprocess
from collections.abc import AsyncIterator

from labsessions.logger import logger
from labsessions.runtime._docker import (
    docker_checked,
    docker_idempotent,
    docker_succeeds,
    parse_json_line,
    run_docker,
    stream_docker_lines,
)
from labsessions.runtime.provider import DEFAULT_STOP_TIMEOUT, SandboxError, SandboxErrorKind
from labsessions.types import (
    ContainerCreateOptions,
    ContainerEvent,
    ContainerInfo,
    ExecResult,
    LogChunk,
    NetworkInfo,
    VolumeBinding,
)

ALPINE_IMAGE = "alpine:latest"
VOLUME_CLONE_COMMAND = ["sh", "-c", "cp -a /source/. /target/"]


class DockerRuntimeProvider:
    """Runtime adapter for the Docker CLI."""

    name = "docker"
    cli = "docker"

    def is_available(self) -> bool:
        return shutil.which(self.cli) is not None

    def ensure_running(self) -> None:
        try:
            subprocess.run(
                [self.cli, "info"],
                capture_output=True,
                check=True,
            )
            logger.debug("Docker daemon is running")
        except (subprocess.CalledProcessError, FileNotFoundError) as exc:
            raise RuntimeError(
                "Docker is required but not running. Start with: sudo systemctl start docker"
            ) from exc

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def pull_image(self, ref: str) -> None:
        logger.info("Pulling Docker image", image=ref)
        await docker_checked("pull", ref, timeout=600)
        logger.info("Docker image pulled", image=ref)

    async def image_exists(self, ref: str) -> bool:
        return await docker_succeeds("image", "inspect", ref)

    async def image_workdir(self, ref: str) -> str | None:
        out = await docker_checked("image", "inspect", "-f", "{{.Config.WorkingDir}}", ref)
        return out or None

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    async def create_container(self, options: ContainerCreateOptions) -> str:
        args = ["create"]
        if options.name:
            args += ["--name", options.name]
        if options.hostname:
            args += ["--hostname", options.hostname]
        if options.workdir:
            args += ["--workdir", options.workdir]
        if options.network:
            args += ["--network", options.network]
            for alias in options.network_aliases:
                args += ["--network-alias", alias]
        for key, value in options.env.items():
            args += ["-e", f"{key}={value}"]
        for port in options.ports:
            args += ["-p", f"{port.host}:{port.container}" if port.host else str(port.container)]
        for volume in options.volumes:
            spec = f"type=volume,source={volume.source},target={volume.target}"
            if volume.read_only:
                spec += ",readonly"
            args += ["--mount", spec]
        for key, value in options.labels.items():
            args += ["--label", f"{key}={value}"]
        args.append(options.image)
        if options.command:
            args += options.command
        return await docker_checked(*args, timeout=120)

    async def start_container(self, container_id: str) -> None:
        await docker_checked("start", container_id, timeout=120)

    async def stop_container(self, container_id: str, timeout: int = DEFAULT_STOP_TIMEOUT) -> None:
        await docker_idempotent("stop", "-t", str(timeout), container_id, timeout=timeout + 30)

    async def remove_container(self, container_id: str, force: bool = True) -> None:
        args = ["rm", "-f", container_id] if force else ["rm", container_id]
        await docker_idempotent(*args)

    async def restart_container(
        self, container_id: str, timeout: int = DEFAULT_STOP_TIMEOUT
    ) -> None:
        await docker_checked("restart", "-t", str(timeout), container_id, timeout=timeout + 60)

    async def inspect_container(self, container_id: str) -> ContainerInfo:
        out = await docker_checked("inspect", "--type", "container", "-f", "{{json .}}", container_id)
        data = json.loads(out)
        ports: dict[int, int] = {}
        for key, bindings in ((data.get("NetworkSettings") or {}).get("Ports") or {}).items():
            if not bindings:
                continue
            container_port = int(key.split("/", 1)[0])
            ports[container_port] = int(bindings[0]["HostPort"])
        return ContainerInfo(
            id=data["Id"],
            name=data.get("Name", "").lstrip("/"),
            image=(data.get("Config") or {}).get("Image", ""),
            state=(data.get("State") or {}).get("Status", "unknown"),
            labels=(data.get("Config") or {}).get("Labels") or {},
            ports=ports,
        )

    async def wait_container(self, container_id: str) -> int:
        out = await docker_checked("wait", container_id, timeout=3600)
        return int(out or 0)

    async def container_exists(self, container_id: str) -> bool:
        return await docker_succeeds("inspect", "--type", "container", container_id)

    async def stream_logs(self, container_id: str, tail: int = 100) -> AsyncIterator[LogChunk]:
        # docker logs interleaves stderr into our merged pipe; stream tagging is lost
        async for line in stream_docker_lines("logs", "-f", "--tail", str(tail), container_id):
            yield LogChunk(stream="stdout", text=line)

    async def stream_events(self, label: str) -> AsyncIterator[ContainerEvent]:
        args = (
            "events",
            "--filter",
            "type=container",
            "--filter",
            f"label={label}",
            "--format",
            "{{json .}}",
        )
        async for line in stream_docker_lines(*args):
            data = parse_json_line(line)
            if data is None:
                continue
            actor = data.get("Actor") or {}
            action = str(data.get("Action") or data.get("status") or "")
            # health_status events arrive as "health_status: healthy"
            attributes = dict(actor.get("Attributes") or {})
            if action.startswith("health_status:"):
                attributes["health_status"] = action.split(":", 1)[1].strip()
                action = "health_status"
            yield ContainerEvent(
                container_id=str(actor.get("ID") or data.get("id") or ""),
                action=action,
                attributes=attributes,
            )

    async def exec(
        self,
        container_id: str,
        command: list[str],
        *,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
    ) -> ExecResult:
        args = ["exec"]
        if workdir:
            args += ["-w", workdir]
        for key, value in (env or {}).items():
            args += ["-e", f"{key}={value}"]
        args += [container_id, *command]
        result = await run_docker(*args, check=False, timeout=300)
        return ExecResult(exit_code=result.returncode, stdout=result.stdout, stderr=result.stderr)

    # ------------------------------------------------------------------
    # Volumes
    # ------------------------------------------------------------------

    async def create_volume(self, name: str, labels: dict[str, str] | None = None) -> None:
        args = ["volume", "create"]
        for key, value in (labels or {}).items():
            args += ["--label", f"{key}={value}"]
        args.append(name)
        await docker_idempotent(*args)

    async def remove_volume(self, name: str) -> None:
        await docker_idempotent("volume", "rm", "-f", name)

    async def volume_exists(self, name: str) -> bool:
        return await docker_succeeds("volume", "inspect", name)

    async def clone_volume(self, source: str, target: str, timeout: float) -> None:
        """Copy every file from *source* into a new volume *target*.

        On timeout the helper container and the partially-filled target
        volume are removed before the error propagates.
        """
        await self.create_volume(target)
        if not await self.image_exists(ALPINE_IMAGE):
            await self.pull_image(ALPINE_IMAGE)

        helper_id = await self.create_container(
            ContainerCreateOptions(
                image=ALPINE_IMAGE,
                command=VOLUME_CLONE_COMMAND,
                volumes=[
                    VolumeBinding(source=source, target="/source", read_only=True),
                    VolumeBinding(source=target, target="/target"),
                ],
            )
        )
        try:
            await self.start_container(helper_id)
            exit_code = await asyncio.wait_for(self.wait_container(helper_id), timeout=timeout)
        except TimeoutError as exc:
            logger.error("Volume clone timed out", source=source, target=target, timeout=timeout)
            await self.remove_container(helper_id)
            await self.remove_volume(target)
            raise SandboxError(
                SandboxErrorKind.TIMEOUT, f"Cloning volume {source} -> {target} timed out"
            ) from exc
        await self.remove_container(helper_id)
        if exit_code != 0:
            await self.remove_volume(target)
            raise SandboxError(
                SandboxErrorKind.RUNTIME,
                f"Cloning volume {source} -> {target} exited with code {exit_code}",
            )

    # ------------------------------------------------------------------
    # Networks
    # ------------------------------------------------------------------

    async def create_network(self, name: str, labels: dict[str, str] | None = None) -> None:
        args = ["network", "create", "--driver", "bridge"]
        for key, value in (labels or {}).items():
            args += ["--label", f"{key}={value}"]
        args.append(name)
        await docker_idempotent(*args)
        logger.debug("Docker network ready", network=name)

    async def remove_network(self, name: str) -> None:
        await docker_idempotent("network", "rm", name)

    async def network_exists(self, name: str) -> bool:
        return await docker_succeeds("network", "inspect", name)

    async def list_networks(self, label: str) -> list[NetworkInfo]:
        out = await docker_checked("network", "ls", "--filter", f"label={label}", "-q")
        networks: list[NetworkInfo] = []
        for network_id in out.splitlines():
            if not network_id:
                continue
            try:
                raw = await docker_checked(
                    "network", "inspect", "-f", "{{json .Name}} {{json .Labels}}", network_id
                )
            except SandboxError as exc:
                if exc.is_not_found:
                    continue  # removed between ls and inspect
                raise
            name_json, _, labels_json = raw.partition(" ")
            networks.append(
                NetworkInfo(name=json.loads(name_json), labels=json.loads(labels_json) or {})
            )
        return networks

    async def connect_to_network(
        self, container: str, network: str, aliases: list[str] | None = None
    ) -> None:
        args = ["network", "connect"]
        for alias in aliases or []:
            args += ["--alias", alias]
        args += [network, container]
        try:
            await docker_checked(*args)
        except SandboxError as exc:
            if exc.kind == SandboxErrorKind.ALREADY_EXISTS:
                return
            raise

    async def disconnect_from_network(self, container: str, network: str) -> None:
        await docker_idempotent("network", "disconnect", "-f", network, container)

    async def is_connected_to_network(self, container: str, network: str) -> bool:
        try:
            out = await docker_checked(
                "inspect", "--type", "container", "-f", "{{json .NetworkSettings.Networks}}", container
            )
        except SandboxError as exc:
            if exc.is_not_found:
                return False
            raise
        return network in (json.loads(out) or {})

