"""Integration tests for service wiring and the app lifecycle."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest

from labsessions.app import LabSessionsApp, build_services
from labsessions.config import BrowserConfig, PoolConfig, RuntimeConfig
from labsessions.db import open_repository
from labsessions.naming import SESSION_LABEL
from labsessions.publisher import RecordingPublisher
from labsessions.types import SessionStatus
from tests.conftest import make_definition, make_settings, seed_project


def _settings(**overrides):
    overrides.setdefault("browser", BrowserConfig(enabled=False))
    return make_settings(**overrides)


async def _wait_for(predicate, timeout: float = 3.0) -> None:
    async with asyncio.timeout(timeout):
        while not await predicate():
            await asyncio.sleep(0.01)


class TestBuildServices:
    async def test_browser_subsystem_is_optional(self, runtime, repo):
        svc = build_services(_settings(), runtime, repo, RecordingPublisher())
        assert svc.browser is None
        assert svc.daemon_controller is None

    async def test_browser_subsystem_is_wired_when_enabled(self, runtime, repo):
        svc = build_services(
            make_settings(browser=BrowserConfig(enabled=True)), runtime, repo, RecordingPublisher()
        )
        try:
            assert svc.browser is not None
            assert svc.daemon_controller is not None
        finally:
            await svc.daemon_controller.close()

    async def test_pool_size_comes_from_settings(self, runtime, repo):
        svc = build_services(_settings(pool=PoolConfig(size=4)), runtime, repo)
        assert svc.pool.get_target_pool_size() == 4


class TestLabSessionsApp:
    async def test_operations_require_start(self):
        app = LabSessionsApp(_settings())
        with pytest.raises(RuntimeError, match="not started"):
            await app.get_pool_stats("proj-1")

    async def test_startup_removes_orphaned_networks_and_fills_pool(self, runtime):
        repo = await open_repository(":memory:")
        await seed_project(repo, make_definition("db"), make_definition("web", depends_on=["db"]))
        live = await repo.create_session("proj-1")
        await runtime.create_network(f"lab-{live.id}", labels={SESSION_LABEL: live.id})
        await runtime.create_network("lab-gone", labels={SESSION_LABEL: "gone"})

        app = LabSessionsApp(_settings(pool=PoolConfig(size=1)))
        await app.start(runtime=runtime, repo=repo)
        try:
            assert "lab-gone" not in runtime.networks
            assert f"lab-{live.id}" in runtime.networks

            async def _pool_full():
                return (await app.get_pool_stats("proj-1")).available == 1

            await _wait_for(_pool_full)
            await app.svc.pool.wait_idle()
        finally:
            await app.shutdown()

        assert app.services is None

    async def test_spawn_then_cleanup(self, runtime):
        repo = await open_repository(":memory:")
        await seed_project(repo, make_definition("web", ports=[8080]))
        app = LabSessionsApp(_settings())
        await app.start(runtime=runtime, repo=repo)
        try:
            result = await app.spawn_session("proj-1", "Investigate flaky test")
            session_id = result.session.id

            async def _running():
                found = await repo.find_session_by_id(session_id)
                return found is not None and found.status == SessionStatus.RUNNING

            await _wait_for(_running)
            assert len(runtime.session_containers()) == 1

            await app.cleanup_session(session_id)

            assert await repo.find_session_by_id(session_id) is None
            assert runtime.session_containers() == []
            assert f"lab-{session_id}" not in runtime.networks
        finally:
            await app.shutdown()

    async def test_running_sessions_get_log_tailing(self, runtime):
        repo = await open_repository(":memory:")
        await seed_project(repo, make_definition("web"))
        app = LabSessionsApp(_settings())
        await app.start(runtime=runtime, repo=repo)
        try:
            result = await app.spawn_session("proj-1", "Tail the dev server")
            session_id = result.session.id

            async def _watching():
                return app.svc.logs.is_watching(session_id)

            await _wait_for(_watching)
            await app.cleanup_session(session_id)

            assert not app.svc.logs.is_watching(session_id)
        finally:
            await app.shutdown()

    async def test_snapshot_workspaces_uses_clone_timeout(self, runtime, monkeypatch):
        repo = await open_repository(":memory:")
        clones: list[tuple[str, str, float]] = []

        async def _clone(source, target, timeout):
            clones.append((source, target, timeout))

        monkeypatch.setattr(runtime, "clone_volume", _clone)
        app = LabSessionsApp(
            _settings(
                runtime=RuntimeConfig(workspaces_volume="ws", volume_clone_timeout=42.0)
            )
        )
        await app.start(runtime=runtime, repo=repo)
        try:
            await app.snapshot_workspaces("ws-backup")
        finally:
            await app.shutdown()

        assert clones == [("ws", "ws-backup", 42.0)]

    async def test_shared_containers_are_reattached_on_start(self, runtime):
        repo = await open_repository(":memory:")
        await seed_project(repo)
        session = await repo.create_session("proj-1")
        await runtime.create_network(f"lab-{session.id}", labels={SESSION_LABEL: session.id})
        runtime.add_shared_container("browser")

        app = LabSessionsApp(_settings(runtime=RuntimeConfig(shared_containers=["browser"])))
        await app.start(runtime=runtime, repo=repo)
        try:
            assert "browser" in runtime.networks[f"lab-{session.id}"].members
        finally:
            await app.shutdown()

    async def test_start_uses_detected_runtime(self, runtime):
        repo = await open_repository(":memory:")
        app = LabSessionsApp(_settings())
        with patch("labsessions.app.get_runtime", return_value=runtime):
            svc = await app.start(repo=repo)
        try:
            assert svc.runtime is runtime
        finally:
            await app.shutdown()


class TestCleanupCommand:
    async def test_removes_orphaned_networks(self, runtime, tmp_path, monkeypatch):
        from labsessions.__main__ import _cleanup

        db_path = tmp_path / "lab.db"
        monkeypatch.setattr("labsessions.config._settings", _settings(database_path=db_path))
        repo = await open_repository(db_path)
        await seed_project(repo)
        live = await repo.create_session("proj-1")
        await repo.close()
        await runtime.create_network(f"lab-{live.id}", labels={SESSION_LABEL: live.id})
        await runtime.create_network("lab-stale", labels={SESSION_LABEL: "stale"})

        with patch("labsessions.runtime.get_runtime", return_value=runtime):
            await _cleanup()

        assert set(runtime.networks) == {f"lab-{live.id}"}


class TestSnapshotCommand:
    async def test_clones_workspaces_volume(self, runtime, monkeypatch):
        from labsessions.__main__ import _snapshot

        monkeypatch.setattr(
            "labsessions.config._settings",
            _settings(runtime=RuntimeConfig(workspaces_volume="ws", volume_clone_timeout=5.0)),
        )
        runtime.volumes["ws"] = {"owner": "lab"}

        with patch("labsessions.runtime.get_runtime", return_value=runtime):
            await _snapshot("ws-backup")

        assert runtime.volumes["ws-backup"] == {"owner": "lab"}
        assert runtime.calls_to("clone_volume") == ["ws"]
