"""Projects and their container definitions (read-mostly configuration)."""

from __future__ import annotations

from collections import defaultdict

from labsessions.db._connection import Database
from labsessions.types import ContainerDefinition, DependencyEdge, EnvVar, Project
from labsessions.utils import utc_now


class ProjectQueries(Database):
    async def create_project(self, project_id: str, name: str) -> Project:
        await self.write(
            "INSERT INTO projects (id, name, created_at) VALUES (?, ?, ?)",
            (project_id, name, utc_now()),
        )
        return Project(id=project_id, name=name)

    async def find_all_projects(self) -> list[Project]:
        cursor = await self.conn.execute("SELECT id, name FROM projects ORDER BY created_at")
        rows = await cursor.fetchall()
        return [Project(id=row["id"], name=row["name"]) for row in rows]

    async def create_container_definition(self, definition: ContainerDefinition) -> None:
        """Insert a definition together with its ports, env vars and dependency edges."""
        async with self.atomic_write() as db:
            await db.execute(
                "INSERT INTO container_definitions (id, project_id, image, hostname, created_at)"
                " VALUES (?, ?, ?, ?, ?)",
                (
                    definition.id,
                    definition.project_id,
                    definition.image,
                    definition.hostname,
                    utc_now(),
                ),
            )
            await db.executemany(
                "INSERT INTO container_ports (container_id, port) VALUES (?, ?)",
                [(definition.id, port) for port in definition.ports],
            )
            await db.executemany(
                "INSERT INTO container_env_vars (container_id, key, value) VALUES (?, ?, ?)",
                [(definition.id, env.key, env.value) for env in definition.env_vars],
            )
            await db.executemany(
                "INSERT INTO container_dependencies"
                " (container_id, depends_on_container_id, condition) VALUES (?, ?, ?)",
                [
                    (definition.id, edge.depends_on_id, edge.condition or "service_started")
                    for edge in definition.dependencies
                ],
            )

    async def find_containers_by_project_id(self, project_id: str) -> list[ContainerDefinition]:
        """Definitions for *project_id* with ports and env vars, without dependency edges."""
        cursor = await self.conn.execute(
            "SELECT id, project_id, image, hostname FROM container_definitions"
            " WHERE project_id = ? ORDER BY created_at, id",
            (project_id,),
        )
        rows = await cursor.fetchall()
        if not rows:
            return []

        ids = [row["id"] for row in rows]
        placeholders = ", ".join("?" for _ in ids)

        ports: dict[str, list[int]] = defaultdict(list)
        cursor = await self.conn.execute(
            f"SELECT container_id, port FROM container_ports"
            f" WHERE container_id IN ({placeholders}) ORDER BY port",
            ids,
        )
        for row in await cursor.fetchall():
            ports[row["container_id"]].append(row["port"])

        env_vars: dict[str, list[EnvVar]] = defaultdict(list)
        cursor = await self.conn.execute(
            f"SELECT container_id, key, value FROM container_env_vars"
            f" WHERE container_id IN ({placeholders}) ORDER BY key",
            ids,
        )
        for row in await cursor.fetchall():
            env_vars[row["container_id"]].append(EnvVar(key=row["key"], value=row["value"]))

        return [
            ContainerDefinition(
                id=row["id"],
                project_id=row["project_id"],
                image=row["image"],
                hostname=row["hostname"],
                ports=ports[row["id"]],
                env_vars=env_vars[row["id"]],
            )
            for row in rows
        ]

    async def find_containers_with_dependencies(
        self, project_id: str
    ) -> list[ContainerDefinition]:
        definitions = await self.find_containers_by_project_id(project_id)
        if not definitions:
            return []

        ids = [definition.id for definition in definitions]
        placeholders = ", ".join("?" for _ in ids)
        cursor = await self.conn.execute(
            f"SELECT container_id, depends_on_container_id, condition"
            f" FROM container_dependencies WHERE container_id IN ({placeholders})"
            f" ORDER BY depends_on_container_id",
            ids,
        )
        edges: dict[str, list[DependencyEdge]] = defaultdict(list)
        for row in await cursor.fetchall():
            edges[row["container_id"]].append(
                DependencyEdge(depends_on_id=row["depends_on_container_id"], condition=row["condition"])
            )
        for definition in definitions:
            definition.dependencies = edges[definition.id]
        return definitions
