"""Plugin system for labsessions.

Plugins extend labsessions with additional container runtimes. Built on
pluggy (pytest's plugin framework).

Usage:
    from labsessions.plugin import get_plugin_manager

    pm = get_plugin_manager()
    runtimes = pm.hook.labsessions_runtime_provider()
"""

from __future__ import annotations

import importlib

import pluggy

from labsessions.config import get_settings
from labsessions.logger import logger
from labsessions.plugin.hookspecs import LabSessionsSpec

__all__ = [
    "get_plugin_manager",
    "hookimpl",
]

hookimpl = pluggy.HookimplMarker("labsessions")

# Static registry of built-in plugins.
# Each entry: (module_path, class_name, config_key)
# config_key is checked against [plugins.<key>].enabled in config.toml.
_BUILTIN_PLUGIN_SPECS: list[tuple[str, str, str]] = [
    ("labsessions.runtime.plugins.docker_runtime", "DockerRuntimePlugin", "docker-runtime"),
]


def get_plugin_manager() -> pluggy.PluginManager:
    """Create and configure the plugin manager.

    Registers built-in plugins from the static registry, then discovers
    third-party plugins from the ``labsessions`` entry point group.
    """
    pm = pluggy.PluginManager("labsessions")
    pm.add_hookspecs(LabSessionsSpec)

    s = get_settings()

    for module_path, class_name, config_key in _BUILTIN_PLUGIN_SPECS:
        plugin_cfg = s.plugins.get(config_key)
        if plugin_cfg is not None and not plugin_cfg.enabled:
            logger.info("Plugin disabled via config", plugin=config_key)
            continue

        try:
            mod = importlib.import_module(module_path)
            cls = getattr(mod, class_name)
            pm.register(cls(), name=f"builtin-{config_key}")
            logger.debug("Registered built-in plugin", name=config_key)
        except Exception:
            logger.exception("Failed to load built-in plugin", plugin=config_key)

    discovered = pm.load_setuptools_entrypoints("labsessions")
    if discovered:
        logger.info("Discovered third-party plugins", count=discovered)

    # Entry point loaders can hand back classes instead of instances
    for plugin in list(pm.get_plugins()):
        if isinstance(plugin, type):
            plugin_name = pm.get_name(plugin) or plugin.__name__
            pm.unregister(plugin=plugin)
            logger.warning("Unregistered invalid class-based plugin object", plugin=plugin_name)

    return pm
