"""Session rows, including the per-project pool of pre-started sessions."""

from __future__ import annotations

import aiosqlite

from labsessions.db._connection import Database
from labsessions.types import Session, SessionStatus
from labsessions.utils import generate_id, utc_now

_COLUMNS = "id, project_id, status, title, created_at"


def _row_to_session(row: aiosqlite.Row) -> Session:
    return Session(
        id=row["id"],
        project_id=row["project_id"],
        status=SessionStatus(row["status"]),
        title=row["title"],
        created_at=row["created_at"],
    )


class SessionQueries(Database):
    async def create_session(
        self,
        project_id: str,
        *,
        title: str | None = None,
        status: SessionStatus = SessionStatus.STARTING,
    ) -> Session:
        session = Session(
            id=generate_id(),
            project_id=project_id,
            status=status,
            title=title,
            created_at=utc_now(),
        )
        await self.write(
            f"INSERT INTO sessions ({_COLUMNS}) VALUES (?, ?, ?, ?, ?)",
            (session.id, session.project_id, session.status, session.title, session.created_at),
        )
        return session

    async def create_pooled_session(self, project_id: str) -> Session:
        return await self.create_session(project_id, status=SessionStatus.POOLED)

    async def find_session_by_id(self, session_id: str) -> Session | None:
        cursor = await self.conn.execute(
            f"SELECT {_COLUMNS} FROM sessions WHERE id = ?", (session_id,)
        )
        row = await cursor.fetchone()
        return _row_to_session(row) if row else None

    async def update_session_status(self, session_id: str, status: SessionStatus) -> None:
        await self.write("UPDATE sessions SET status = ? WHERE id = ?", (status, session_id))

    async def update_session_title(self, session_id: str, title: str) -> None:
        await self.write("UPDATE sessions SET title = ? WHERE id = ?", (title, session_id))

    async def delete_session(self, session_id: str) -> None:
        async with self.atomic_write() as db:
            await db.execute("DELETE FROM session_containers WHERE session_id = ?", (session_id,))
            await db.execute("DELETE FROM sessions WHERE id = ?", (session_id,))

    async def find_active_sessions(self) -> list[Session]:
        """Every session that still owns runtime resources (anything but deleting)."""
        cursor = await self.conn.execute(
            f"SELECT {_COLUMNS} FROM sessions WHERE status != ? ORDER BY created_at",
            (SessionStatus.DELETING,),
        )
        return [_row_to_session(row) for row in await cursor.fetchall()]

    # --- Pool ---

    async def count_pooled_sessions(self, project_id: str) -> int:
        cursor = await self.conn.execute(
            "SELECT COUNT(*) AS n FROM sessions WHERE project_id = ? AND status = ?",
            (project_id, SessionStatus.POOLED),
        )
        row = await cursor.fetchone()
        return int(row["n"]) if row else 0

    async def find_pooled_sessions(self, project_id: str, limit: int) -> list[Session]:
        """Oldest pooled sessions first."""
        cursor = await self.conn.execute(
            f"SELECT {_COLUMNS} FROM sessions WHERE project_id = ? AND status = ?"
            " ORDER BY created_at, rowid LIMIT ?",
            (project_id, SessionStatus.POOLED, limit),
        )
        return [_row_to_session(row) for row in await cursor.fetchall()]

    async def claim_pooled_session(self, project_id: str) -> Session | None:
        """Atomically move the oldest pooled session of *project_id* to running.

        The select and the conditional update run under the write lock so two
        concurrent claims can never take the same session.
        """
        async with self.atomic_write() as db:
            cursor = await db.execute(
                "SELECT id FROM sessions WHERE project_id = ? AND status = ?"
                " ORDER BY created_at, rowid LIMIT 1",
                (project_id, SessionStatus.POOLED),
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            await db.execute(
                "UPDATE sessions SET status = ? WHERE id = ? AND status = ?",
                (SessionStatus.RUNNING, row["id"], SessionStatus.POOLED),
            )
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM sessions WHERE id = ?", (row["id"],)
            )
            claimed = await cursor.fetchone()
        return _row_to_session(claimed) if claimed else None
