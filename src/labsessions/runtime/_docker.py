"""Docker CLI subprocess wrappers.

All public functions are async so they don't block the event loop.
One-shot commands run in a thread via ``asyncio.to_thread``; long-lived
streams (logs, events) use asyncio subprocesses directly.
"""

from __future__ import annotations

import asyncio
import json
import subprocess
from collections.abc import AsyncIterator
from typing import Any

from labsessions.logger import logger
from labsessions.runtime.provider import SandboxError, SandboxErrorKind

_NOT_FOUND_MARKERS = ("no such", "not found", "is not connected")
_EXISTS_MARKERS = ("already exists", "already in use")


def _run_docker_sync(
    *args: str,
    check: bool = True,
    timeout: float = 30,
) -> subprocess.CompletedProcess[str]:
    """Run a ``docker`` CLI command (blocking, internal only)."""
    return subprocess.run(
        ["docker", *args],
        capture_output=True,
        text=True,
        timeout=timeout,
        check=check,
    )


async def run_docker(
    *args: str,
    check: bool = True,
    timeout: float = 30,
) -> subprocess.CompletedProcess[str]:
    """Run a ``docker`` CLI command without blocking the event loop."""
    return await asyncio.to_thread(_run_docker_sync, *args, check=check, timeout=timeout)


def classify_error(stderr: str) -> SandboxErrorKind:
    """Map docker CLI stderr to a :class:`SandboxErrorKind`."""
    text = stderr.lower()
    if any(marker in text for marker in _NOT_FOUND_MARKERS):
        return SandboxErrorKind.NOT_FOUND
    if any(marker in text for marker in _EXISTS_MARKERS):
        return SandboxErrorKind.ALREADY_EXISTS
    if "conflict" in text:
        return SandboxErrorKind.CONFLICT
    return SandboxErrorKind.RUNTIME


async def docker_checked(*args: str, timeout: float = 30) -> str:
    """Run a docker command and return stripped stdout.

    Raises:
        SandboxError: on non-zero exit (kind derived from stderr) or timeout.
    """
    try:
        result = await run_docker(*args, check=False, timeout=timeout)
    except subprocess.TimeoutExpired as exc:
        raise SandboxError(
            SandboxErrorKind.TIMEOUT, f"docker {args[0]} timed out after {timeout}s"
        ) from exc
    if result.returncode != 0:
        stderr = result.stderr.strip()
        raise SandboxError(classify_error(stderr), f"docker {' '.join(args[:2])}: {stderr}")
    return result.stdout.strip()


async def docker_idempotent(*args: str, timeout: float = 30) -> None:
    """Run a docker command, treating not-found / already-exists as success."""
    try:
        await docker_checked(*args, timeout=timeout)
    except SandboxError as exc:
        if exc.kind in (SandboxErrorKind.NOT_FOUND, SandboxErrorKind.ALREADY_EXISTS):
            logger.debug("Docker operation already satisfied", args=args[:2], kind=exc.kind)
            return
        raise


async def docker_succeeds(*args: str, timeout: float = 30) -> bool:
    """Return whether a docker command exits zero (used for existence checks)."""
    result = await run_docker(*args, check=False, timeout=timeout)
    return result.returncode == 0


async def stream_docker_lines(*args: str) -> AsyncIterator[str]:
    """Yield stdout lines from a long-running docker command.

    The subprocess is killed when the consumer stops iterating.
    """
    proc = await asyncio.create_subprocess_exec(
        "docker",
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    assert proc.stdout is not None
    try:
        while True:
            line = await proc.stdout.readline()
            if not line:
                break
            yield line.decode(errors="replace").rstrip("\n")
    finally:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()


def parse_json_line(line: str) -> dict[str, Any] | None:
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON docker output", line=line[:200])
        return None
    return data if isinstance(data, dict) else None
