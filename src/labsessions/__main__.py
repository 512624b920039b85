"""Entry point for `python -m labsessions`.

Subcommands:
    labsessions              Run the service (default)
    labsessions cleanup      Remove session networks with no live session, then exit
    labsessions snapshot VOL Copy the shared workspaces volume into a new volume VOL
"""

from __future__ import annotations

import argparse
import asyncio


def _run() -> None:
    from labsessions.app import LabSessionsApp

    app = LabSessionsApp()
    asyncio.run(app.run())


async def _cleanup() -> None:
    from labsessions.config import get_settings
    from labsessions.db import open_repository
    from labsessions.logger import logger
    from labsessions.network import SessionNetworkManager
    from labsessions.runtime import get_runtime

    s = get_settings()
    repo = await open_repository(s.database_path)
    try:
        active = [session.id for session in await repo.find_active_sessions()]
        networks = SessionNetworkManager(get_runtime(), s.runtime.shared_containers)
        removed = await networks.cleanup_orphaned_session_networks(active)
        logger.info("Orphaned network cleanup finished", removed=removed)
    finally:
        await repo.close()


async def _snapshot(target: str) -> None:
    from labsessions.config import get_settings
    from labsessions.runtime import get_runtime
    from labsessions.workspace import WorkspacePreparer

    rt = get_settings().runtime
    preparer = WorkspacePreparer(
        get_runtime(), rt.workspaces_volume, rt.workspaces_mount, rt.volume_clone_timeout
    )
    await preparer.snapshot(target)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="labsessions",
        description="Session orchestration and pooling for coding-agent sandboxes",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("cleanup", help="Remove orphaned session networks and exit")
    snapshot = sub.add_parser("snapshot", help="Copy the workspaces volume into a new volume")
    snapshot.add_argument("volume", help="Name of the volume to create")

    args = parser.parse_args()

    match args.command:
        case "cleanup":
            asyncio.run(_cleanup())
        case "snapshot":
            asyncio.run(_snapshot(args.volume))
        case _:
            _run()


if __name__ == "__main__":
    main()
