"""Shared test fixtures for labsessions."""

from __future__ import annotations

import pytest

from labsessions.types import ContainerDefinition, DependencyEdge, EnvVar
from tests.fakes import FakeRuntimeProvider

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset(
    {
        "project_root",
        "database_path",
        "pool_reconcile_timeout",
        "reconcile_interval",
        "browser_cleanup_delay",
    }
)


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (pool, runtime, browser, ...) and cached
    property overrides (project_root, database_path, ...).

    Usage::

        s = make_settings(pool=PoolConfig(size=2))
        s = make_settings(browser=BrowserConfig(enabled=False))
        s = make_settings(database_path=tmp_path / "test.db")
    """
    from labsessions.config import (
        BrowserConfig,
        DatabaseConfig,
        LoggingConfig,
        MonitorConfig,
        PoolConfig,
        ProxyConfig,
        RuntimeConfig,
        Settings,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "pool": PoolConfig(),
        "runtime": RuntimeConfig(),
        "browser": BrowserConfig(),
        "proxy": ProxyConfig(),
        "database": DatabaseConfig(path=":memory:"),
        "monitor": MonitorConfig(),
        "logging": LoggingConfig(),
        "plugins": {},
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def make_definition(
    container_id: str,
    project_id: str = "proj-1",
    *,
    image: str | None = None,
    hostname: str | None = None,
    ports: list[int] | None = None,
    env: dict[str, str] | None = None,
    depends_on: list[str] | None = None,
) -> ContainerDefinition:
    return ContainerDefinition(
        id=container_id,
        project_id=project_id,
        image=image or f"registry.local/{container_id}:latest",
        hostname=hostname,
        ports=ports or [],
        env_vars=[EnvVar(key=k, value=v) for k, v in (env or {}).items()],
        dependencies=[DependencyEdge(depends_on_id=d) for d in depends_on or []],
    )


async def seed_project(repo, *definitions: ContainerDefinition, project_id: str = "proj-1"):
    """Insert a project and its container definitions; returns the project id."""
    await repo.create_project(project_id, project_id)
    for definition in definitions:
        await repo.create_container_definition(definition)
    return project_id


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults: no config.toml,
    no .env, no file I/O.
    """
    monkeypatch.setattr("labsessions.config._settings", make_settings())
    monkeypatch.setattr("labsessions.runtime._runtime", None)


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def repo():
    from labsessions.db import open_repository

    repository = await open_repository(":memory:")
    yield repository
    await repository.close()


@pytest.fixture
def runtime():
    return FakeRuntimeProvider()


@pytest.fixture
def publisher():
    from labsessions.publisher import RecordingPublisher

    return RecordingPublisher()


@pytest.fixture
def services(runtime, repo, publisher):
    """Engine wired against the fake runtime, with the browser subsystem off."""
    from labsessions.app import build_services
    from labsessions.config import BrowserConfig

    settings = make_settings(browser=BrowserConfig(enabled=False))
    return build_services(settings, runtime, repo, publisher)
