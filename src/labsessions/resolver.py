"""Container start-order resolution.

Groups a project's containers into start levels with Kahn's algorithm: every
pass takes all nodes whose dependencies are already placed, so containers in
the same level can be started concurrently.
"""

from __future__ import annotations

from collections.abc import Iterable

from labsessions.types import ContainerDefinition, ContainerNode, StartLevel


class CircularDependencyError(Exception):
    """Raised when container dependencies form a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


def build_container_nodes(definitions: Iterable[ContainerDefinition]) -> list[ContainerNode]:
    return [
        ContainerNode(
            id=definition.id,
            depends_on=tuple(edge.depends_on_id for edge in definition.dependencies),
        )
        for definition in definitions
    ]


def resolve_start_order(nodes: Iterable[ContainerNode]) -> list[StartLevel]:
    """Return start levels such that each node's dependencies are in earlier levels.

    Dependencies on ids that are not part of *nodes* are ignored; they refer
    to containers outside this project and cannot be ordered here.

    Raises:
        CircularDependencyError: if the remaining nodes can never reach
            in-degree zero. ``cycle`` holds ids that lie on a cycle.
        ValueError: if the same id appears twice.
    """
    deps: dict[str, set[str]] = {}
    for node in nodes:
        if node.id in deps:
            raise ValueError(f"Duplicate container id: {node.id}")
        deps[node.id] = set(node.depends_on)

    for wanted in deps.values():
        wanted.intersection_update(deps)

    in_degree = {node_id: len(wanted) for node_id, wanted in deps.items()}
    dependents: dict[str, list[str]] = {node_id: [] for node_id in deps}
    for node_id, wanted in deps.items():
        for dep in wanted:
            dependents[dep].append(node_id)

    levels: list[StartLevel] = []
    remaining = set(deps)
    while remaining:
        ready = sorted(node_id for node_id in remaining if in_degree[node_id] == 0)
        if not ready:
            raise CircularDependencyError(_find_cycle(remaining, deps))

        levels.append(StartLevel(container_ids=ready))
        for node_id in ready:
            remaining.discard(node_id)
            for dependent in dependents[node_id]:
                in_degree[dependent] -= 1

    return levels


def _find_cycle(remaining: set[str], deps: dict[str, set[str]]) -> list[str]:
    """Walk unresolved dependency edges from any stuck node until one repeats.

    Every stuck node has at least one dependency that is also stuck, so the
    walk never dead-ends and must revisit a node; the revisited suffix is a
    genuine cycle.
    """
    start = min(remaining)
    path: list[str] = []
    seen: dict[str, int] = {}
    current = start
    while current not in seen:
        seen[current] = len(path)
        path.append(current)
        current = min(dep for dep in deps[current] if dep in remaining)
    return path[seen[current] :]
