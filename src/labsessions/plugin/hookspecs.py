"""Pluggy hook specifications for labsessions plugins.

All hooks use the "labsessions" namespace and are validated by pluggy at
registration time.
"""

from __future__ import annotations

from typing import Any

import pluggy

hookspec = pluggy.HookspecMarker("labsessions")


class LabSessionsSpec:
    """Hook specifications for labsessions plugins."""

    @hookspec
    def labsessions_runtime_provider(self) -> Any | None:
        """Provide a container runtime implementation.

        Runtime plugins return an object implementing
        :class:`labsessions.runtime.provider.RuntimeProvider` plus:
            - name (str): runtime identifier (e.g., "podman")
            - is_available() -> bool

        Returns:
            Runtime object, or None if this plugin doesn't provide one.
        """
