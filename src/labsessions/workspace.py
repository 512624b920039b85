"""Per-container workspace directories on the shared workspaces volume."""

from __future__ import annotations

import shlex

from labsessions.logger import logger
from labsessions.naming import format_container_workspace_path
from labsessions.runtime.provider import RuntimeProvider, SandboxError, SandboxErrorKind
from labsessions.types import ContainerCreateOptions, VolumeBinding


class WorkspacePreparer:
    """Seeds ``<mount>/<session>/<container>`` from the image's working directory.

    A short-lived helper container running the session image copies the
    image's ``WORKDIR`` contents into the workspace so the real container
    starts with the project files already in place.
    """

    def __init__(
        self, runtime: RuntimeProvider, volume: str, mount: str, clone_timeout: float = 300.0
    ) -> None:
        self._runtime = runtime
        self._volume = volume
        self._mount = mount
        self._clone_timeout = clone_timeout

    async def ensure_image(self, image: str) -> None:
        if not await self._runtime.image_exists(image):
            await self._runtime.pull_image(image)

    async def prepare(self, session_id: str, container_id: str, image: str) -> str:
        """Create and seed the workspace; return its path inside containers."""
        workspace = format_container_workspace_path(session_id, container_id, self._mount)
        await self.ensure_image(image)

        image_workdir = await self._runtime.image_workdir(image)
        target = shlex.quote(workspace)
        if image_workdir and image_workdir != "/":
            command = f"mkdir -p {target} && cp -r {shlex.quote(image_workdir)}/. {target}/"
        else:
            command = f"mkdir -p {target}"

        helper_id = await self._runtime.create_container(
            ContainerCreateOptions(
                image=image,
                command=["sh", "-c", command],
                volumes=[VolumeBinding(source=self._volume, target=self._mount)],
            )
        )
        try:
            await self._runtime.start_container(helper_id)
            exit_code = await self._runtime.wait_container(helper_id)
        finally:
            await self._runtime.remove_container(helper_id)

        if exit_code != 0:
            raise SandboxError(
                SandboxErrorKind.RUNTIME,
                f"Workspace init for {container_id} exited with code {exit_code}",
            )
        logger.debug("Workspace prepared", session_id=session_id, workspace=workspace)
        return workspace

    async def snapshot(self, target: str) -> None:
        """Copy the whole workspaces volume into a new volume *target*.

        Raises:
            SandboxError: ``TIMEOUT`` when the copy outlives the clone timeout;
                the partial *target* volume is removed first.
        """
        if await self._runtime.volume_exists(target):
            raise SandboxError(SandboxErrorKind.ALREADY_EXISTS, f"Volume {target} already exists")
        await self._runtime.clone_volume(self._volume, target, self._clone_timeout)
        logger.info("Workspaces snapshot created", source=self._volume, target=target)
