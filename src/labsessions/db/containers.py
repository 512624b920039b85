"""Session container rows: one per container definition per session."""

from __future__ import annotations

import aiosqlite

from labsessions.db._connection import Database
from labsessions.types import ContainerStatus, SessionContainer
from labsessions.utils import generate_id

_COLUMNS = "id, session_id, container_definition_id, runtime_id, status"


def _row_to_container(row: aiosqlite.Row) -> SessionContainer:
    return SessionContainer(
        id=row["id"],
        session_id=row["session_id"],
        container_definition_id=row["container_definition_id"],
        runtime_id=row["runtime_id"],
        status=ContainerStatus(row["status"]),
    )


class SessionContainerQueries(Database):
    async def create_session_container(
        self,
        session_id: str,
        container_definition_id: str,
        status: ContainerStatus = ContainerStatus.STARTING,
    ) -> SessionContainer:
        container = SessionContainer(
            id=generate_id(),
            session_id=session_id,
            container_definition_id=container_definition_id,
            runtime_id=None,
            status=status,
        )
        await self.write(
            f"INSERT INTO session_containers ({_COLUMNS}) VALUES (?, ?, ?, ?, ?)",
            (
                container.id,
                container.session_id,
                container.container_definition_id,
                container.runtime_id,
                container.status,
            ),
        )
        return container

    async def find_session_containers_by_session_id(
        self, session_id: str
    ) -> list[SessionContainer]:
        cursor = await self.conn.execute(
            f"SELECT {_COLUMNS} FROM session_containers WHERE session_id = ? ORDER BY rowid",
            (session_id,),
        )
        return [_row_to_container(row) for row in await cursor.fetchall()]

    async def find_session_container_by_runtime_id(
        self, runtime_id: str
    ) -> SessionContainer | None:
        cursor = await self.conn.execute(
            f"SELECT {_COLUMNS} FROM session_containers WHERE runtime_id = ?", (runtime_id,)
        )
        row = await cursor.fetchone()
        return _row_to_container(row) if row else None

    async def find_runtime_ids_by_session_id(self, session_id: str) -> list[str]:
        cursor = await self.conn.execute(
            "SELECT runtime_id FROM session_containers"
            " WHERE session_id = ? AND runtime_id IS NOT NULL ORDER BY rowid",
            (session_id,),
        )
        return [row["runtime_id"] for row in await cursor.fetchall()]

    async def update_session_container_runtime_id(
        self, session_id: str, container_definition_id: str, runtime_id: str
    ) -> SessionContainer | None:
        async with self.atomic_write() as db:
            await db.execute(
                "UPDATE session_containers SET runtime_id = ?"
                " WHERE session_id = ? AND container_definition_id = ?",
                (runtime_id, session_id, container_definition_id),
            )
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM session_containers"
                " WHERE session_id = ? AND container_definition_id = ?",
                (session_id, container_definition_id),
            )
            row = await cursor.fetchone()
        return _row_to_container(row) if row else None

    async def update_session_container_status(
        self, container_id: str, status: ContainerStatus
    ) -> None:
        await self.write(
            "UPDATE session_containers SET status = ? WHERE id = ?", (status, container_id)
        )

    async def update_session_containers_status_by_session_id(
        self, session_id: str, status: ContainerStatus
    ) -> None:
        await self.write(
            "UPDATE session_containers SET status = ? WHERE session_id = ?", (status, session_id)
        )
