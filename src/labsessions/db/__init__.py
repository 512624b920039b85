"""SQLite persistence layer.

All queries are async using aiosqlite.  :class:`Repository` owns one
connection and is passed explicitly to every service that needs it.

The class is assembled from domain-specific query mixins:
  _connection  schema, connection setup, write lock
  projects     projects and container definitions (ports, env, dependencies)
  sessions     sessions and the pooled-session queue
  containers   per-session container rows
"""

from __future__ import annotations

from pathlib import Path

from labsessions.db._connection import Database, open_connection
from labsessions.db.containers import SessionContainerQueries
from labsessions.db.projects import ProjectQueries
from labsessions.db.sessions import SessionQueries

__all__ = ["Database", "Repository", "open_repository"]


class Repository(ProjectQueries, SessionQueries, SessionContainerQueries):
    """Every persistence operation the engine uses, over one connection."""


async def open_repository(path: str | Path) -> Repository:
    """Open (creating if needed) the database at *path*; ``":memory:"`` for tests."""
    return Repository(await open_connection(path))
