"""Tests for container start-order resolution."""

from __future__ import annotations

import pytest

from labsessions.resolver import (
    CircularDependencyError,
    build_container_nodes,
    resolve_start_order,
)
from labsessions.types import ContainerNode
from tests.conftest import make_definition


def _node(node_id: str, *deps: str) -> ContainerNode:
    return ContainerNode(id=node_id, depends_on=tuple(deps))


def _levels(nodes: list[ContainerNode]) -> list[list[str]]:
    return [level.container_ids for level in resolve_start_order(nodes)]


class TestResolveStartOrder:
    def test_database_before_its_dependents(self):
        levels = _levels([_node("db"), _node("web", "db"), _node("worker", "db")])

        assert levels[0] == ["db"]
        assert set(levels[1]) == {"web", "worker"}
        assert len(levels) == 2

    def test_two_node_cycle_is_reported(self):
        with pytest.raises(CircularDependencyError) as exc_info:
            resolve_start_order([_node("a", "b"), _node("b", "a")])

        assert {"a", "b"} <= set(exc_info.value.cycle)
        assert "a" in str(exc_info.value)

    def test_self_dependency_is_a_cycle(self):
        with pytest.raises(CircularDependencyError) as exc_info:
            resolve_start_order([_node("solo", "solo")])
        assert exc_info.value.cycle == ["solo"]

    def test_cycle_excludes_nodes_merely_downstream_of_it(self):
        with pytest.raises(CircularDependencyError) as exc_info:
            resolve_start_order([_node("a", "b"), _node("b", "a"), _node("c", "a")])
        assert "c" not in exc_info.value.cycle

    def test_empty_input(self):
        assert resolve_start_order([]) == []

    def test_independent_containers_share_one_level(self):
        assert _levels([_node("b"), _node("a"), _node("c")]) == [["a", "b", "c"]]

    def test_chain_produces_one_level_per_link(self):
        levels = _levels([_node("c", "b"), _node("b", "a"), _node("a")])
        assert levels == [["a"], ["b"], ["c"]]

    def test_diamond(self):
        levels = _levels(
            [_node("top"), _node("left", "top"), _node("right", "top"), _node("bottom", "left", "right")]
        )
        assert levels == [["top"], ["left", "right"], ["bottom"]]

    def test_unknown_dependency_is_ignored(self):
        levels = _levels([_node("web", "external-cache"), _node("db")])
        assert levels == [["db", "web"]]

    def test_duplicate_id_raises(self):
        with pytest.raises(ValueError, match="Duplicate"):
            resolve_start_order([_node("db"), _node("db")])

    def test_every_node_appears_exactly_once_after_its_dependencies(self):
        nodes = [
            _node("proxy", "web", "api"),
            _node("web", "api"),
            _node("api", "db", "cache"),
            _node("db"),
            _node("cache"),
            _node("metrics"),
        ]
        levels = _levels(nodes)

        placed = [node_id for level in levels for node_id in level]
        assert sorted(placed) == sorted(node.id for node in nodes)
        level_of = {node_id: i for i, level in enumerate(levels) for node_id in level}
        for node in nodes:
            for dep in node.depends_on:
                assert level_of[dep] < level_of[node.id]


class TestBuildContainerNodes:
    def test_uses_dependency_edges(self):
        nodes = build_container_nodes(
            [make_definition("db"), make_definition("web", depends_on=["db"])]
        )
        assert nodes == [_node("db"), _node("web", "db")]
