"""Container runtime detection with plugin-extensible providers.

Docker is built in (registered as a plugin). Additional runtimes can be
provided by third-party plugins via ``labsessions_runtime_provider``.
"""

from __future__ import annotations

from typing import Any

from labsessions.logger import logger
from labsessions.runtime.provider import (
    DEFAULT_STOP_TIMEOUT,
    RuntimeProvider,
    SandboxError,
    SandboxErrorKind,
)

__all__ = [
    "DEFAULT_STOP_TIMEOUT",
    "RuntimeProvider",
    "SandboxError",
    "SandboxErrorKind",
    "detect_runtime",
    "get_runtime",
    "reset_runtime",
]


def _is_valid_runtime(candidate: Any) -> bool:
    return all(
        [
            isinstance(getattr(candidate, "name", None), str),
            callable(getattr(candidate, "is_available", None)),
            isinstance(candidate, RuntimeProvider),
        ]
    )


def _iter_plugin_runtimes() -> list[Any]:
    from labsessions.plugin import get_plugin_manager

    pm = get_plugin_manager()
    runtimes: list[Any] = []
    for runtime in pm.hook.labsessions_runtime_provider():
        if runtime is None:
            continue
        if not _is_valid_runtime(runtime):
            logger.warning(
                "Ignoring invalid plugin runtime object",
                runtime_type=type(runtime).__name__,
            )
            continue
        runtimes.append(runtime)
    return runtimes


def detect_runtime() -> RuntimeProvider:
    """Pick the container runtime to use.

    Priority:
    1) settings.runtime.runtime override (if a provider with that name exists)
    2) docker, when its CLI is available
    3) first available plugin runtime

    Raises:
        RuntimeError: if no registered runtime is available.
    """
    from labsessions.config import get_settings

    override = (get_settings().runtime.runtime or "").lower().strip()
    candidates: dict[str, Any] = {}
    for runtime in _iter_plugin_runtimes():
        name = runtime.name.lower().strip()
        if not name:
            continue
        if name in candidates:
            logger.warning("Duplicate runtime provider ignored", runtime=name)
            continue
        candidates[name] = runtime

    if override:
        selected = candidates.get(override)
        if selected is not None:
            return selected
        logger.warning("Unknown runtime override; falling back to auto-detection", runtime=override)

    docker = candidates.get("docker")
    if docker is not None and docker.is_available():
        return docker

    for runtime in candidates.values():
        if runtime.is_available():
            return runtime

    raise RuntimeError(
        f"No container runtime available (registered: {', '.join(candidates) or 'none'})"
    )


_runtime: RuntimeProvider | None = None


def get_runtime() -> RuntimeProvider:
    """Lazy singleton that caches the result of detect_runtime()."""
    global _runtime  # noqa: PLW0603
    if _runtime is None:
        _runtime = detect_runtime()
        logger.info("Container runtime detected", name=_runtime.name)
    return _runtime


def reset_runtime() -> None:
    """Forget the detected runtime (for tests)."""
    global _runtime  # noqa: PLW0603
    _runtime = None
