"""Database connection, schema, and write-transaction internals.

Schema philosophy: ``_SCHEMA`` is the source of truth for the table
definitions.  ``CREATE TABLE IF NOT EXISTS`` handles brand-new databases;
there are no numbered migration files.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

from labsessions.logger import logger

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS container_definitions (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    image TEXT NOT NULL,
    hostname TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_container_definitions_project
    ON container_definitions(project_id);

CREATE TABLE IF NOT EXISTS container_dependencies (
    container_id TEXT NOT NULL,
    depends_on_container_id TEXT NOT NULL,
    condition TEXT NOT NULL DEFAULT 'service_started',
    PRIMARY KEY (container_id, depends_on_container_id),
    FOREIGN KEY (container_id) REFERENCES container_definitions(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS container_ports (
    container_id TEXT NOT NULL,
    port INTEGER NOT NULL,
    PRIMARY KEY (container_id, port),
    FOREIGN KEY (container_id) REFERENCES container_definitions(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS container_env_vars (
    container_id TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (container_id, key),
    FOREIGN KEY (container_id) REFERENCES container_definitions(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    status TEXT NOT NULL,
    title TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (project_id) REFERENCES projects(id)
);
CREATE INDEX IF NOT EXISTS idx_sessions_pool ON sessions(project_id, status, created_at);

CREATE TABLE IF NOT EXISTS session_containers (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    container_definition_id TEXT NOT NULL,
    runtime_id TEXT,
    status TEXT NOT NULL,
    FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_session_containers_session ON session_containers(session_id);
CREATE INDEX IF NOT EXISTS idx_session_containers_runtime ON session_containers(runtime_id);
"""


class Database:
    """Owns one aiosqlite connection shared by every query mixin.

    Python's sqlite3 in legacy isolation mode opens transactions per
    *connection*, not per coroutine.  Two coroutines whose DML interleaves
    at await points share the same implicit transaction, so any write path
    that spans multiple statements MUST go through :meth:`atomic_write`.
    """

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn
        self._write_lock = asyncio.Lock()

    @property
    def conn(self) -> aiosqlite.Connection:
        return self._conn

    @asynccontextmanager
    async def atomic_write(self) -> AsyncIterator[aiosqlite.Connection]:
        """Acquire the write lock, yield the connection, commit or roll back."""
        async with self._write_lock:
            try:
                yield self._conn
                await self._conn.commit()
            except Exception:
                await self._conn.rollback()
                raise

    async def write(self, sql: str, params: tuple | list = ()) -> int:
        """Run a single DML statement under the write lock; return rowcount."""
        async with self.atomic_write() as db:
            cursor = await db.execute(sql, params)
            return cursor.rowcount

    async def close(self) -> None:
        await self._conn.close()


async def open_connection(path: str | Path) -> aiosqlite.Connection:
    """Open a connection with row access by name and the schema applied."""
    if str(path) != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(str(path))
    conn.row_factory = aiosqlite.Row
    await conn.execute("PRAGMA foreign_keys = ON")
    await conn.executescript(_SCHEMA)
    await conn.commit()
    logger.debug("Database ready", path=str(path))
    return conn
