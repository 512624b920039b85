"""Warm pool of pre-started sessions per project.

Claiming a pooled session hands the caller a session whose containers are
already running.  Each claim (and startup) triggers a convergence run that
fills the pool back up to the target, or drains it when the target shrank.
Runs are coalesced per project and bounded both in iterations and in time,
so a wedged container runtime cannot keep a run alive forever.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

from labsessions.db import Repository
from labsessions.lifecycle import SessionLifecycleManager
from labsessions.logger import logger
from labsessions.types import ContainerStatus, PoolStats, Session
from labsessions.utils import SingleFlight, create_background_task

MIN_RECONCILE_ITERATIONS = 10


class BrowserWarmer(Protocol):
    async def warm_up_browser(self, session_id: str) -> None: ...


def compute_backoff(failures: int, base: float, maximum: float) -> float:
    """Exponential backoff ``base * 2**failures`` capped at *maximum*."""
    return min(base * 2**failures, maximum)


class PoolManager:
    def __init__(
        self,
        repo: Repository,
        lifecycle: SessionLifecycleManager,
        *,
        size: int,
        backoff_base: float,
        backoff_max: float,
        reconcile_timeout: float,
        browser: BrowserWarmer | None = None,
        warm_up_timeout: float = 30.0,
    ) -> None:
        self._repo = repo
        self._lifecycle = lifecycle
        self._size = max(0, size)
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._reconcile_timeout = reconcile_timeout
        self._browser = browser
        self._warm_up_timeout = warm_up_timeout
        self._reconciling: SingleFlight[None] = SingleFlight("pool-reconcile")

    def get_target_pool_size(self) -> int:
        return self._size

    async def get_pool_stats(self, project_id: str) -> PoolStats:
        available = await self._repo.count_pooled_sessions(project_id)
        return PoolStats(available=available, target=self.get_target_pool_size())

    async def claim_pooled_session(self, project_id: str) -> Session | None:
        """Take one ready session for *project_id*, or None if pooling is off or the pool is empty.

        A successful claim starts a refill in the background; the caller
        never waits for it.
        """
        if self.get_target_pool_size() == 0:
            return None

        session = await self._repo.claim_pooled_session(project_id)
        if session is not None:
            logger.info("Claimed pooled session", session_id=session.id, project_id=project_id)
            create_background_task(
                self.reconcile_pool(project_id), name=f"pool-refill-{project_id}"
            )
        return session

    async def create_pooled_session(self, project_id: str) -> Session | None:
        """Create and fully start one pooled session.

        Never raises: any failure returns None so the convergence loop can
        back off instead of crashing.
        """
        try:
            definitions = await self._repo.find_containers_by_project_id(project_id)
            if not definitions:
                return None

            session = await self._repo.create_pooled_session(project_id)
            await asyncio.gather(
                *(
                    self._repo.create_session_container(
                        session.id, definition.id, ContainerStatus.STARTING
                    )
                    for definition in definitions
                )
            )

            if not await self._lifecycle.initialize_session(session.id, project_id):
                logger.error(
                    "Failed to initialize pooled session",
                    session_id=session.id,
                    project_id=project_id,
                )
                return None
        except Exception:
            logger.exception("Failed to create pooled session", project_id=project_id)
            return None

        await self._warm_up(session)
        return session

    async def _warm_up(self, session: Session) -> None:
        if self._browser is None:
            logger.info(
                "Created pooled session", session_id=session.id, project_id=session.project_id
            )
            return
        try:
            await asyncio.wait_for(
                self._browser.warm_up_browser(session.id), timeout=self._warm_up_timeout
            )
        except Exception as exc:
            # The daemon starts lazily on first subscriber instead
            logger.warning(
                "Failed to warm up browser for pooled session",
                session_id=session.id,
                err=str(exc),
            )
            return
        logger.info(
            "Created and warmed up pooled session",
            session_id=session.id,
            project_id=session.project_id,
        )

    async def reconcile_pool(self, project_id: str) -> None:
        """Converge the pool for *project_id*; concurrent callers share one run."""
        await self._reconciling.run(project_id, lambda: self._reconcile_with_timeout(project_id))

    async def _reconcile_with_timeout(self, project_id: str) -> None:
        try:
            await asyncio.wait_for(self._do_reconcile(project_id), timeout=self._reconcile_timeout)
        except TimeoutError:
            logger.error(
                "Pool reconciliation timed out",
                project_id=project_id,
                timeout=self._reconcile_timeout,
            )
        except Exception:
            logger.exception("Pool reconciliation failed", project_id=project_id)

    async def reconcile_all_pools(self) -> None:
        for project in await self._repo.find_all_projects():
            try:
                await self.reconcile_pool(project.id)
            except Exception:
                logger.exception("Failed to reconcile pool", project_id=project.id)

    def initialize(self) -> None:
        logger.info("Initializing session pool", target=self.get_target_pool_size())
        create_background_task(self.reconcile_all_pools(), name="pool-initial-reconcile")

    async def wait_idle(self) -> None:
        await self._reconciling.wait_all()

    async def _fill_one(self, project_id: str, consecutive_failures: int) -> int:
        """Try to add one session; return the updated consecutive-failure count."""
        session = await self.create_pooled_session(project_id)
        if session is not None:
            return 0

        failures = consecutive_failures + 1
        delay = compute_backoff(failures, self._backoff_base, self._backoff_max)
        logger.warning(
            "Pooled session creation failed; backing off",
            project_id=project_id,
            attempt=failures,
            delay=delay,
        )
        await asyncio.sleep(delay)
        return failures

    async def _drain_excess(self, project_id: str, excess: int) -> None:
        logger.info("Removing excess pooled sessions", project_id=project_id, excess=excess)
        for session in await self._repo.find_pooled_sessions(project_id, excess):
            await self._lifecycle.cleanup_session(session.id)
            logger.info("Removed pooled session", session_id=session.id)

    async def _do_reconcile(self, project_id: str) -> None:
        target = self.get_target_pool_size()
        max_iterations = max(MIN_RECONCILE_ITERATIONS, target * 2)
        failures = 0

        for _ in range(max_iterations):
            current = await self._repo.count_pooled_sessions(project_id)
            if current == target:
                return
            if current < target:
                logger.info(
                    "Adding pooled session", project_id=project_id, current=current, target=target
                )
                failures = await self._fill_one(project_id, failures)
            else:
                await self._drain_excess(project_id, current - target)

        logger.warning(
            "Pool reconciliation hit iteration limit",
            project_id=project_id,
            max_iterations=max_iterations,
        )
