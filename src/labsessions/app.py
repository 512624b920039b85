"""Service wiring and the long-running process."""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass

from labsessions.browser.controller import HttpDaemonController
from labsessions.browser.orchestrator import BrowserOrchestrator, SessionManager
from labsessions.browser.reconciler import Reconciler, ReconcilerLoop
from labsessions.browser.state_store import InMemoryStateStore
from labsessions.cleanup import SessionCleanupService
from labsessions.config import Settings, get_settings
from labsessions.db import Repository, open_repository
from labsessions.lifecycle import SessionLifecycleManager
from labsessions.logger import configure as configure_logging
from labsessions.logger import logger
from labsessions.monitor import ContainerMonitor, LogMonitor
from labsessions.network import SessionNetworkManager
from labsessions.orchestrator import ContainerOrchestrator
from labsessions.pool import PoolManager
from labsessions.proxy import ProxyManager
from labsessions.publisher import LocalPublisher, Publisher
from labsessions.runtime import get_runtime
from labsessions.runtime.provider import RuntimeProvider
from labsessions.spawner import SessionSpawner
from labsessions.types import PoolStats, SpawnResult
from labsessions.workspace import WorkspacePreparer


@dataclass
class Services:
    """Every engine component, constructed once and shared."""

    runtime: RuntimeProvider
    repo: Repository
    publisher: Publisher
    proxy: ProxyManager
    networks: SessionNetworkManager
    workspaces: WorkspacePreparer
    cleanup: SessionCleanupService
    orchestrator: ContainerOrchestrator
    lifecycle: SessionLifecycleManager
    pool: PoolManager
    spawner: SessionSpawner
    monitor: ContainerMonitor
    logs: LogMonitor
    browser: BrowserOrchestrator | None = None
    daemon_controller: HttpDaemonController | None = None


def build_services(
    settings: Settings,
    runtime: RuntimeProvider,
    repo: Repository,
    publisher: Publisher | None = None,
) -> Services:
    publisher = publisher or LocalPublisher()
    rt = settings.runtime
    proxy = ProxyManager(settings.proxy.base_domain)
    networks = SessionNetworkManager(runtime, rt.shared_containers)
    workspaces = WorkspacePreparer(
        runtime, rt.workspaces_volume, rt.workspaces_mount, clone_timeout=rt.volume_clone_timeout
    )

    browser: BrowserOrchestrator | None = None
    controller: HttpDaemonController | None = None
    if settings.browser.enabled:
        store = InMemoryStateStore()
        controller = HttpDaemonController(settings.browser.api_url)
        reconciler = Reconciler(
            store,
            controller,
            max_retries=settings.browser.max_retries,
            start_timeout=settings.browser.start_timeout,
        )
        loop = ReconcilerLoop(
            reconciler,
            settings.reconcile_interval,
            on_error=lambda exc: logger.error("Browser reconciler pass failed", err=str(exc)),
        )
        browser = BrowserOrchestrator(
            store,
            controller,
            reconciler,
            loop,
            SessionManager(networks),
            cleanup_delay=settings.browser_cleanup_delay,
            publisher=publisher,
        )

    cleanup = SessionCleanupService(
        runtime, repo, publisher, proxy, networks, browser=browser, stop_timeout=rt.stop_timeout
    )
    orchestrator = ContainerOrchestrator(
        runtime,
        repo,
        publisher,
        networks,
        proxy,
        cleanup,
        workspaces,
        workspaces_volume=rt.workspaces_volume,
        workspaces_mount=rt.workspaces_mount,
        browser_socket_volume=rt.browser_socket_volume if browser else None,
        browser_socket_dir=rt.browser_socket_dir if browser else None,
    )
    lifecycle = SessionLifecycleManager(repo, networks, orchestrator, cleanup)
    pool = PoolManager(
        repo,
        lifecycle,
        size=settings.pool.size,
        backoff_base=settings.pool.backoff_base_ms / 1000,
        backoff_max=settings.pool.backoff_max_ms / 1000,
        reconcile_timeout=settings.pool_reconcile_timeout,
        browser=browser if settings.browser.warm_pooled_sessions else None,
        warm_up_timeout=settings.browser.warm_up_timeout,
    )
    spawner = SessionSpawner(repo, lifecycle, pool, publisher, proxy)
    monitor = ContainerMonitor(
        runtime, repo, publisher, retry_delay=settings.monitor.retry_ms / 1000
    )
    logs = LogMonitor(runtime, repo, publisher)
    orchestrator.on_session_ready(logs.watch_session)
    cleanup.on_session_cleared(logs.release_session)
    return Services(
        runtime=runtime,
        repo=repo,
        publisher=publisher,
        proxy=proxy,
        networks=networks,
        workspaces=workspaces,
        cleanup=cleanup,
        orchestrator=orchestrator,
        lifecycle=lifecycle,
        pool=pool,
        spawner=spawner,
        monitor=monitor,
        logs=logs,
        browser=browser,
        daemon_controller=controller,
    )


class LabSessionsApp:
    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.services: Services | None = None
        self._stop_event = asyncio.Event()
        self._network_task: asyncio.Task[None] | None = None

    @property
    def svc(self) -> Services:
        if self.services is None:
            raise RuntimeError("LabSessionsApp not started - call start() first")
        return self.services

    # --- Exposed operations ---

    async def spawn_session(self, project_id: str, task_summary: str) -> SpawnResult:
        return await self.svc.spawner.spawn_session(project_id, task_summary)

    async def initialize_session_containers(self, session_id: str, project_id: str) -> bool:
        return await self.svc.orchestrator.initialize_session_containers(session_id, project_id)

    async def cleanup_session(self, session_id: str) -> None:
        await self.svc.lifecycle.cleanup_session(session_id)

    async def get_pool_stats(self, project_id: str) -> PoolStats:
        return await self.svc.pool.get_pool_stats(project_id)

    async def snapshot_workspaces(self, target: str) -> None:
        await self.svc.workspaces.snapshot(target)

    # --- Lifecycle ---

    async def start(
        self, runtime: RuntimeProvider | None = None, repo: Repository | None = None
    ) -> Services:
        configure_logging(self.settings.logging.level, self.settings.logging.format)
        repo = repo or await open_repository(self.settings.database_path)
        logger.info("Database initialized", path=str(self.settings.database_path))
        runtime = runtime or get_runtime()

        self.services = svc = build_services(self.settings, runtime, repo)
        await svc.lifecycle.initialize()
        await svc.lifecycle.reconcile_networks()
        svc.monitor.start()
        if svc.browser is not None:
            svc.browser.start()
        svc.pool.initialize()
        self._network_task = asyncio.create_task(
            self._reconcile_networks_periodically(), name="network-reconcile"
        )
        logger.info("labsessions started", pool_target=svc.pool.get_target_pool_size())
        return svc

    async def _reconcile_networks_periodically(self) -> None:
        interval = self.settings.monitor.network_reconcile_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                await self.svc.lifecycle.reconcile_networks()
            except Exception:
                logger.exception("Network reconciliation failed")

    async def shutdown(self) -> None:
        if self.services is None:
            return
        svc = self.services
        if self._network_task is not None:
            self._network_task.cancel()
            self._network_task = None
        svc.monitor.stop()
        svc.logs.stop()
        if svc.browser is not None:
            svc.browser.stop()
        if svc.daemon_controller is not None:
            await svc.daemon_controller.close()
        await svc.repo.close()
        self.services = None
        logger.info("labsessions stopped")

    async def run(self) -> None:
        """Start every loop and wait for SIGINT/SIGTERM."""
        await self.start()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._on_signal, sig.name)
        try:
            await self._stop_event.wait()
        finally:
            await self.shutdown()

    def _on_signal(self, sig_name: str) -> None:
        logger.info("Shutdown signal received", signal=sig_name)
        self._stop_event.set()
