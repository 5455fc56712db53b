"""Tests for the dependency graph: construction, readiness, failure propagation."""

from __future__ import annotations

import pytest

from convoy.errors import CyclicDependencyError, DependencyResolutionError
from convoy.scheduler import DependencyGraph, NodeStatus


def diamond() -> DependencyGraph:
    """1 → {2, 3} → 4"""
    return DependencyGraph.from_mapping({1: [], 2: [1], 3: [1], 4: [2, 3]})


# ── Construction ─────────────────────────────────────────────────────────────


class TestConstruction:
    def test_from_mapping_allows_forward_references(self):
        graph = DependencyGraph.from_mapping({"b": ["a"], "a": []})
        assert len(graph) == 2
        assert graph.ready_nodes() == ["a"]

    def test_from_mapping_unknown_dependency(self):
        with pytest.raises(DependencyResolutionError, match="does not exist"):
            DependencyGraph.from_mapping({1: [99]})

    def test_from_mapping_cycle_names_members(self):
        with pytest.raises(CyclicDependencyError) as exc_info:
            DependencyGraph.from_mapping({1: [3], 2: [1], 3: [2], 4: []})
        assert set(exc_info.value.node_ids) == {1, 2, 3}

    def test_self_dependency_is_a_cycle(self):
        graph = DependencyGraph()
        with pytest.raises(CyclicDependencyError):
            graph.add_node("a", dependencies=["a"])
        assert len(graph) == 0

    def test_add_node_duplicate_leaves_graph_unchanged(self):
        graph = DependencyGraph()
        graph.add_node(1)
        with pytest.raises(DependencyResolutionError, match="already exists"):
            graph.add_node(1)
        assert len(graph) == 1

    def test_add_node_unknown_dependency(self):
        graph = DependencyGraph()
        with pytest.raises(DependencyResolutionError):
            graph.add_node(2, dependencies=[1])
        assert 2 not in graph

    def test_add_dependency_rejects_cycle(self):
        graph = DependencyGraph.from_mapping({1: [], 2: [1], 3: [2]})
        with pytest.raises(CyclicDependencyError):
            graph.add_dependency(1, 3)
        assert graph.dependencies(1) == []

    def test_add_dependency_after_dispatch_rejected(self):
        graph = DependencyGraph.from_mapping({1: [], 2: []})
        graph.mark_running(2)
        with pytest.raises(DependencyResolutionError):
            graph.add_dependency(2, 1)

    def test_add_node_under_failed_dependency_starts_blocked(self):
        graph = DependencyGraph()
        graph.add_node(1)
        graph.mark_running(1)
        graph.mark_failed(1)
        node = graph.add_node(2, dependencies=[1])
        assert node.status == NodeStatus.BLOCKED


# ── Readiness ────────────────────────────────────────────────────────────────


class TestReadiness:
    def test_ready_set_in_insertion_order(self):
        graph = DependencyGraph.from_mapping({3: [], 1: [], 2: [3]})
        assert graph.ready_nodes() == [3, 1]

    def test_completion_unlocks_dependents(self):
        graph = diamond()
        graph.mark_running(1)
        assert graph.ready_nodes() == []
        graph.mark_completed(1)
        assert graph.ready_nodes() == [2, 3]
        assert graph.status(2) == NodeStatus.READY

    def test_join_waits_for_all_dependencies(self):
        graph = diamond()
        for node_id in (1, 2):
            graph.mark_running(node_id)
            graph.mark_completed(node_id)
        assert 4 not in graph.ready_nodes()
        graph.mark_running(3)
        graph.mark_completed(3)
        assert graph.ready_nodes() == [4]

    def test_mark_running_requires_ready(self):
        graph = diamond()
        with pytest.raises(DependencyResolutionError, match="not ready"):
            graph.mark_running(4)

    def test_mark_completed_is_idempotent(self):
        graph = diamond()
        graph.mark_completed(1)
        graph.mark_completed(1)
        assert graph.status(1) == NodeStatus.COMPLETED


# ── Failure propagation ──────────────────────────────────────────────────────


class TestFailurePropagation:
    def test_failure_blocks_transitive_dependents(self):
        graph = DependencyGraph.from_mapping({1: [], 2: [1], 3: [2], 4: []})
        graph.mark_running(1)
        blocked = graph.mark_failed(1)
        assert blocked == [2, 3]
        assert graph.status(2) == NodeStatus.BLOCKED
        assert graph.status(3) == NodeStatus.BLOCKED
        assert graph.ready_nodes() == [4]

    def test_failure_does_not_touch_completed_nodes(self):
        graph = diamond()
        graph.mark_running(1)
        graph.mark_completed(1)
        graph.mark_running(2)
        graph.mark_completed(2)
        graph.mark_running(3)
        assert graph.mark_failed(3) == [4]
        assert graph.status(2) == NodeStatus.COMPLETED

    def test_fail_twice_is_noop(self):
        graph = diamond()
        graph.mark_failed(1)
        assert graph.mark_failed(1) == []

    def test_cannot_complete_blocked_node(self):
        graph = diamond()
        graph.mark_failed(1)
        with pytest.raises(DependencyResolutionError):
            graph.mark_completed(4)

    def test_cannot_fail_completed_node(self):
        graph = diamond()
        graph.mark_completed(1)
        with pytest.raises(DependencyResolutionError):
            graph.mark_failed(1)

    def test_graph_completes_after_failure(self):
        graph = diamond()
        graph.mark_failed(1)
        assert graph.is_complete()
        assert graph.counts()["blocked"] == 3


# ── Ordering ─────────────────────────────────────────────────────────────────


class TestOrdering:
    def test_waves(self):
        assert diamond().waves() == [[1], [2, 3], [4]]

    def test_topological_order_respects_edges(self):
        graph = DependencyGraph.from_mapping({"c": ["b"], "b": ["a"], "a": []})
        assert graph.topological_order() == ["a", "b", "c"]

    def test_transitive_dependencies(self):
        assert diamond().transitive_dependencies(4) == [1, 2, 3]

    def test_dependents(self):
        assert diamond().dependents(1) == [2, 3]


class TestRestore:
    def test_restore_completed_unlocks_dependents(self):
        graph = diamond()
        graph.restore(completed=[1, 2, 3])
        assert graph.ready_nodes() == [4]

    def test_restore_failed_blocks(self):
        graph = diamond()
        graph.restore(failed=[1])
        assert graph.status(4) == NodeStatus.BLOCKED

    def test_restore_blocked_is_not_dispatched(self):
        graph = diamond()
        graph.restore(completed=[1], blocked=[2, 1])
        assert graph.status(1) == NodeStatus.COMPLETED
        assert graph.status(2) == NodeStatus.BLOCKED
        assert graph.ready_nodes() == [3]

    def test_restore_ignores_unknown_ids(self):
        graph = diamond()
        graph.restore(completed=[42])
        assert graph.ready_nodes() == [1]
