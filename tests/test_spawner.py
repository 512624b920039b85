"""Tests for session spawning."""

from __future__ import annotations

import asyncio

import pytest

from labsessions.pool import PoolManager
from labsessions.publisher import SESSION_CONTAINERS, SESSIONS
from labsessions.spawner import ProjectHasNoContainersError, SessionSpawner, fallback_title
from labsessions.types import ContainerStatus, SessionStatus
from tests.conftest import make_definition, seed_project


def _make_spawner(services, pool_size: int = 0) -> tuple[SessionSpawner, PoolManager]:
    pool = PoolManager(
        services.repo,
        services.lifecycle,
        size=pool_size,
        backoff_base=0.001,
        backoff_max=0.002,
        reconcile_timeout=5.0,
    )
    spawner = SessionSpawner(
        services.repo, services.lifecycle, pool, services.publisher, services.proxy
    )
    return spawner, pool


async def _settle(services, pool: PoolManager) -> None:
    # Let the detached init and refill tasks register before waiting on them
    await asyncio.sleep(0.05)
    await services.orchestrator.wait_idle()
    await pool.wait_idle()


@pytest.fixture
async def project(repo):
    return await seed_project(
        repo,
        make_definition("db", image="postgres:16"),
        make_definition("web", ports=[8080], depends_on=["db"], hostname="frontend"),
    )


class TestFallbackTitle:
    def test_truncates_to_fifty_characters(self):
        assert fallback_title("x" * 80) == "x" * 50

    def test_blank_summary_has_no_title(self):
        assert fallback_title("   ") is None


class TestSpawnSession:
    async def test_new_session_returns_before_containers_start(
        self, services, repo, publisher, project
    ):
        spawner, pool = _make_spawner(services)

        result = await spawner.spawn_session(project, "Fix the login form")

        assert result.session.status == SessionStatus.STARTING
        assert result.session.title == "Fix the login form"
        assert [(c.name, c.status) for c in result.containers] == [
            ("postgres", ContainerStatus.STARTING),
            ("frontend", ContainerStatus.STARTING),
        ]
        [added] = publisher.on(SESSIONS, "delta")
        assert added.data["type"] == "add"
        [snapshot] = publisher.on(SESSION_CONTAINERS, "snapshot")
        assert len(snapshot.data) == 2

        await _settle(services, pool)
        found = await repo.find_session_by_id(result.session.id)
        assert found.status == SessionStatus.RUNNING

    async def test_pooled_session_is_returned_when_available(
        self, services, repo, project
    ):
        spawner, pool = _make_spawner(services, pool_size=1)
        await pool.reconcile_pool(project)
        [pooled] = await repo.find_pooled_sessions(project, 1)

        result = await spawner.spawn_session(project, "Add dark mode")

        assert result.session.id == pooled.id
        assert result.session.status == SessionStatus.RUNNING
        assert result.session.title == "Add dark mode"
        web = next(c for c in result.containers if c.name == "frontend")
        assert web.status == ContainerStatus.RUNNING
        assert [route.container_port for route in web.urls] == [8080]
        db = next(c for c in result.containers if c.name == "postgres")
        assert db.urls == []

        found = await repo.find_session_by_id(pooled.id)
        assert found.title == "Add dark mode"
        await _settle(services, pool)

    async def test_project_without_containers(self, services, repo):
        await seed_project(repo, project_id="empty")
        spawner, _ = _make_spawner(services)

        with pytest.raises(ProjectHasNoContainersError):
            await spawner.spawn_session("empty", "anything")
