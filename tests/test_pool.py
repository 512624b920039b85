"""Tests for the warm session pool."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from labsessions.pool import MIN_RECONCILE_ITERATIONS, PoolManager, compute_backoff
from labsessions.types import SessionStatus
from tests.conftest import make_definition, seed_project


def _make_pool(services, size: int, **kwargs) -> PoolManager:
    kwargs.setdefault("backoff_base", 0.001)
    kwargs.setdefault("backoff_max", 0.002)
    kwargs.setdefault("reconcile_timeout", 5.0)
    return PoolManager(services.repo, services.lifecycle, size=size, **kwargs)


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not await predicate():
            await asyncio.sleep(0.01)


def _track_creates(pool: PoolManager):
    """Wrap create_pooled_session to count attempts and peak concurrency."""
    stats = {"calls": 0, "active": 0, "peak": 0}
    original = pool.create_pooled_session

    async def _tracked(project_id):
        stats["calls"] += 1
        stats["active"] += 1
        stats["peak"] = max(stats["peak"], stats["active"])
        try:
            return await original(project_id)
        finally:
            stats["active"] -= 1

    pool.create_pooled_session = _tracked
    return stats


@pytest.fixture
async def project(repo):
    return await seed_project(repo, make_definition("db"), make_definition("web", depends_on=["db"]))


class TestComputeBackoff:
    def test_doubles_per_failure(self):
        assert [compute_backoff(n, 1.0, 100.0) for n in (0, 1, 2, 3)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        assert compute_backoff(10, 1.0, 30.0) == 30.0


class TestReconcilePool:
    async def test_fills_empty_pool_with_sequential_creates(self, services, project):
        pool = _make_pool(services, size=2)
        stats = _track_creates(pool)

        await pool.reconcile_pool(project)

        assert (await pool.get_pool_stats(project)).available == 2
        assert stats["calls"] == 2
        assert stats["peak"] == 1

    async def test_concurrent_calls_share_one_run(self, services, project):
        pool = _make_pool(services, size=2)
        stats = _track_creates(pool)

        await asyncio.gather(pool.reconcile_pool(project), pool.reconcile_pool(project))

        assert stats["calls"] == 2
        assert (await pool.get_pool_stats(project)).available == 2

    async def test_pooled_sessions_have_running_containers(self, services, runtime, project):
        pool = _make_pool(services, size=1)

        await pool.reconcile_pool(project)

        [session] = await services.repo.find_pooled_sessions(project, 5)
        assert session.status == SessionStatus.POOLED
        assert len(runtime.session_containers()) == 2

    async def test_zero_target_does_nothing(self, services, runtime, project):
        pool = _make_pool(services, size=0)
        stats = _track_creates(pool)

        await pool.reconcile_pool(project)

        assert stats["calls"] == 0
        assert runtime.calls == []
        stats = await pool.get_pool_stats(project)
        assert (stats.available, stats.target) == (0, 0)

    async def test_drains_oldest_excess_sessions(self, services, repo, project):
        oldest = await repo.create_pooled_session(project)
        await repo.create_pooled_session(project)
        newest = await repo.create_pooled_session(project)
        pool = _make_pool(services, size=1)

        await pool.reconcile_pool(project)

        remaining = await repo.find_pooled_sessions(project, 5)
        assert [s.id for s in remaining] == [newest.id]
        assert await repo.find_session_by_id(oldest.id) is None

    async def test_backs_off_and_stops_at_iteration_limit(self, services, repo):
        await seed_project(repo, project_id="empty")
        pool = _make_pool(services, size=1, backoff_base=1.0, backoff_max=30.0)
        stats = _track_creates(pool)

        with patch("labsessions.pool.asyncio.sleep", new=AsyncMock()) as sleep:
            await pool.reconcile_pool("empty")

        assert stats["calls"] == MIN_RECONCILE_ITERATIONS
        delays = [call.args[0] for call in sleep.await_args_list]
        assert delays[:5] == [2.0, 4.0, 8.0, 16.0, 30.0]
        assert max(delays) == 30.0

    async def test_success_resets_backoff(self, services, project):
        pool = _make_pool(services, size=2, backoff_base=1.0, backoff_max=30.0)
        original = pool.create_pooled_session
        outcomes = iter([False, True, False, True])

        async def _flaky(project_id):
            if next(outcomes):
                return await original(project_id)
            return None

        pool.create_pooled_session = _flaky
        with patch("labsessions.pool.asyncio.sleep", new=AsyncMock()) as sleep:
            await pool.reconcile_pool(project)

        assert [call.args[0] for call in sleep.await_args_list] == [2.0, 2.0]

    async def test_timeout_ends_the_run(self, services, project):
        pool = _make_pool(services, size=1, reconcile_timeout=0.05)

        async def _hang(project_id):
            await asyncio.sleep(10)

        pool.create_pooled_session = _hang

        async with asyncio.timeout(2):
            await pool.reconcile_pool(project)

        await pool.wait_idle()

    async def test_reconcile_all_pools_covers_every_project(self, services, repo, project):
        await seed_project(repo, make_definition("api", project_id="other"), project_id="other")
        pool = _make_pool(services, size=1)

        await pool.reconcile_all_pools()

        assert (await pool.get_pool_stats(project)).available == 1
        assert (await pool.get_pool_stats("other")).available == 1


class TestClaim:
    async def test_claim_returns_running_session_and_refills(self, services, repo, project):
        pool = _make_pool(services, size=1)
        await pool.reconcile_pool(project)
        [pooled] = await repo.find_pooled_sessions(project, 1)

        claimed = await pool.claim_pooled_session(project)

        assert claimed is not None
        assert claimed.id == pooled.id
        assert claimed.status == SessionStatus.RUNNING

        async def _refilled():
            return (await pool.get_pool_stats(project)).available == 1

        await _wait_for(_refilled)
        await pool.wait_idle()

    async def test_claim_with_pooling_disabled(self, services, repo, project):
        await repo.create_pooled_session(project)
        pool = _make_pool(services, size=0)

        assert await pool.claim_pooled_session(project) is None
        assert await repo.count_pooled_sessions(project) == 1

    async def test_claim_from_empty_pool(self, services, project):
        pool = _make_pool(services, size=1)
        assert await pool.claim_pooled_session(project) is None


class TestCreatePooledSession:
    async def test_no_definitions_returns_none(self, services, repo):
        await seed_project(repo, project_id="empty")
        pool = _make_pool(services, size=1)

        assert await pool.create_pooled_session("empty") is None
        assert await repo.count_pooled_sessions("empty") == 0

    async def test_initialization_failure_returns_none(self, services, runtime, repo, project):
        runtime.fail("start_container", "db")
        pool = _make_pool(services, size=1)

        assert await pool.create_pooled_session(project) is None
        assert await repo.count_pooled_sessions(project) == 0

    async def test_repository_error_returns_none(self, services, repo, project, monkeypatch):
        monkeypatch.setattr(
            repo, "create_pooled_session", AsyncMock(side_effect=RuntimeError("disk full"))
        )
        pool = _make_pool(services, size=1)

        assert await pool.create_pooled_session(project) is None

    async def test_browser_is_warmed(self, services, project):
        browser = AsyncMock()
        pool = _make_pool(services, size=1, browser=browser)

        session = await pool.create_pooled_session(project)

        browser.warm_up_browser.assert_awaited_once_with(session.id)

    async def test_warm_up_failure_keeps_session(self, services, repo, project):
        browser = AsyncMock()
        browser.warm_up_browser.side_effect = RuntimeError("no daemon")
        pool = _make_pool(services, size=1, browser=browser)

        session = await pool.create_pooled_session(project)

        assert session is not None
        assert await repo.count_pooled_sessions(project) == 1
