"""Dependency scheduler — a generic DAG over work nodes.

One abstraction serves two call sites: fleet scheduling (nodes are issue
numbers) and task-plan validation/execution inside a single issue (nodes are
task ids).  The graph is a pure, synchronous, in-memory structure; callers
funnel every mutation through a single control loop.

Key exports:
    DependencyGraph — add nodes/edges, compute the ready set, propagate
        completion and failure.
    WorkNode, NodeStatus — node record and lifecycle states.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum

from convoy.errors import CyclicDependencyError, DependencyResolutionError

logger = logging.getLogger(__name__)

NodeId = int | str


class NodeStatus(str, Enum):
    """Work node lifecycle states."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


_TERMINAL = frozenset({NodeStatus.COMPLETED, NodeStatus.FAILED, NodeStatus.BLOCKED})


@dataclass
class WorkNode:
    """A single node in a dependency graph.

    ``status`` never stores ``READY``; readiness is derived from the
    dependencies each time it is asked for.
    """

    id: NodeId
    dependencies: frozenset[NodeId]
    status: NodeStatus = NodeStatus.PENDING


class DependencyGraph:
    """Directed acyclic graph of work nodes with failure propagation.

    Usage::

        graph = DependencyGraph()
        graph.add_node(1)
        graph.add_node(2, dependencies=[1])
        for node_id in graph.ready_nodes():
            graph.mark_running(node_id)
            ...
            graph.mark_completed(node_id)  # or graph.mark_failed(node_id)

    Invariants:
        - A node is ready iff it is pending and all its dependencies are
          completed.
        - A node becomes blocked as soon as any (transitive) dependency
          fails.  Blocked is terminal.
        - Construction errors leave the graph unchanged.
    """

    def __init__(self) -> None:
        # Insertion order is the dispatch order for ready_nodes()
        self._nodes: dict[NodeId, WorkNode] = {}
        self._dependents: dict[NodeId, list[NodeId]] = {}

    @classmethod
    def from_mapping(cls, mapping: Mapping[NodeId, Iterable[NodeId]]) -> DependencyGraph:
        """Build a graph from ``{node_id: [dependency ids]}``.

        Dependencies may reference nodes declared later in the mapping.  The
        mapping's order becomes the insertion order.

        Raises:
            DependencyResolutionError: a dependency id is not a key of the mapping.
            CyclicDependencyError: the mapping contains a cycle.
        """
        deps = {node_id: list(dict.fromkeys(node_deps)) for node_id, node_deps in mapping.items()}

        for node_id, node_deps in deps.items():
            for dep in node_deps:
                if dep not in deps:
                    raise DependencyResolutionError(
                        f"Node {node_id!r} depends on {dep!r}, which does not exist"
                    )

        cyclic = _unsorted_nodes(deps)
        if cyclic:
            raise CyclicDependencyError(
                f"Cyclic dependency detected among nodes: {', '.join(str(n) for n in cyclic)}",
                cyclic,
            )

        graph = cls()
        for node_id, node_deps in deps.items():
            graph._insert(node_id, node_deps)
        return graph

    # ── Construction ─────────────────────────────────────────────────────────

    def add_node(self, node_id: NodeId, dependencies: Iterable[NodeId] = ()) -> WorkNode:
        """Add a node whose dependencies must already exist in the graph.

        A node added with an already-failed (or blocked) dependency starts
        out blocked.

        Raises:
            CyclicDependencyError: the node depends on itself.
            DependencyResolutionError: duplicate id or unknown dependency.
        """
        deps = list(dict.fromkeys(dependencies))
        if node_id in deps:
            raise CyclicDependencyError(f"Node {node_id!r} depends on itself", [node_id])
        if node_id in self._nodes:
            raise DependencyResolutionError(f"Node {node_id!r} already exists")
        for dep in deps:
            if dep not in self._nodes:
                raise DependencyResolutionError(
                    f"Node {node_id!r} depends on {dep!r}, which does not exist"
                )

        node = self._insert(node_id, deps)
        if any(self._nodes[d].status in (NodeStatus.FAILED, NodeStatus.BLOCKED) for d in deps):
            node.status = NodeStatus.BLOCKED
        return node

    def add_dependency(self, node_id: NodeId, dependency_id: NodeId) -> None:
        """Add the edge "``node_id`` depends on ``dependency_id``".

        Raises:
            DependencyResolutionError: either node is unknown, or ``node_id``
                has already left the pending state.
            CyclicDependencyError: the edge would close a cycle.
        """
        node = self._require(node_id)
        self._require(dependency_id)
        if dependency_id in node.dependencies:
            return
        if node.status != NodeStatus.PENDING:
            raise DependencyResolutionError(
                f"Cannot add a dependency to node {node_id!r} in status {node.status.value}"
            )
        if node_id == dependency_id or node_id in self._ancestors(dependency_id):
            raise CyclicDependencyError(
                f"Adding dependency {node_id!r} -> {dependency_id!r} would create a cycle",
                [node_id, dependency_id],
            )

        node.dependencies = node.dependencies | {dependency_id}
        self._dependents[dependency_id].append(node_id)
        if self._nodes[dependency_id].status in (NodeStatus.FAILED, NodeStatus.BLOCKED):
            node.status = NodeStatus.BLOCKED

    def _insert(self, node_id: NodeId, deps: list[NodeId]) -> WorkNode:
        node = WorkNode(id=node_id, dependencies=frozenset(deps))
        self._nodes[node_id] = node
        self._dependents.setdefault(node_id, [])
        for dep in deps:
            self._dependents.setdefault(dep, []).append(node_id)
        return node

    # ── Queries ──────────────────────────────────────────────────────────────

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def nodes(self) -> list[WorkNode]:
        """All nodes in insertion order."""
        return list(self._nodes.values())

    def status(self, node_id: NodeId) -> NodeStatus:
        """Current status of a node, with readiness derived on the fly."""
        node = self._require(node_id)
        if node.status == NodeStatus.PENDING and self._deps_completed(node):
            return NodeStatus.READY
        return node.status

    def dependencies(self, node_id: NodeId) -> list[NodeId]:
        """Direct dependencies of a node, in insertion order."""
        node = self._require(node_id)
        return [n for n in self._nodes if n in node.dependencies]

    def dependents(self, node_id: NodeId) -> list[NodeId]:
        """Direct dependents of a node, in the order the edges were added."""
        self._require(node_id)
        return list(self._dependents[node_id])

    def ready_nodes(self) -> list[NodeId]:
        """Pending nodes whose dependencies are all completed, in insertion order.

        Recomputed on every call.
        """
        return [
            node.id
            for node in self._nodes.values()
            if node.status == NodeStatus.PENDING and self._deps_completed(node)
        ]

    def is_complete(self) -> bool:
        """True once no node is pending, ready or running."""
        return all(node.status in _TERMINAL for node in self._nodes.values())

    def counts(self) -> dict[str, int]:
        """Node counts per status (``ready`` counted separately from ``pending``)."""
        counts = {status.value: 0 for status in NodeStatus}
        for node_id in self._nodes:
            counts[self.status(node_id).value] += 1
        return counts

    def waves(self) -> list[list[NodeId]]:
        """Kahn layers: wave 0 has no dependencies, wave N depends only on waves < N."""
        in_degree = {n: len(node.dependencies) for n, node in self._nodes.items()}
        current = [n for n, deg in in_degree.items() if deg == 0]
        waves: list[list[NodeId]] = []
        while current:
            waves.append(current)
            following: list[NodeId] = []
            for n in current:
                for dependent in self._dependents[n]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        following.append(dependent)
            current = following
        return waves

    def topological_order(self) -> list[NodeId]:
        """All node ids, dependencies before dependents."""
        return [n for wave in self.waves() for n in wave]

    def transitive_dependencies(self, node_id: NodeId) -> list[NodeId]:
        """Every direct and indirect dependency, in topological order."""
        ancestors = self._ancestors(node_id)
        return [n for n in self.topological_order() if n in ancestors]

    # ── Transitions ──────────────────────────────────────────────────────────

    def mark_running(self, node_id: NodeId) -> None:
        """Move a ready node to running.

        Raises:
            DependencyResolutionError: the node is not ready.
        """
        if self.status(node_id) != NodeStatus.READY:
            raise DependencyResolutionError(
                f"Node {node_id!r} is not ready (status: {self.status(node_id).value})"
            )
        self._nodes[node_id].status = NodeStatus.RUNNING

    def mark_completed(self, node_id: NodeId) -> None:
        """Mark a node completed.  Completing a completed node is a no-op.

        Raises:
            DependencyResolutionError: the node already failed or is blocked.
        """
        node = self._require(node_id)
        if node.status == NodeStatus.COMPLETED:
            return
        if node.status in (NodeStatus.FAILED, NodeStatus.BLOCKED):
            raise DependencyResolutionError(
                f"Cannot complete node {node_id!r} in status {node.status.value}"
            )
        node.status = NodeStatus.COMPLETED

    def mark_failed(self, node_id: NodeId) -> list[NodeId]:
        """Mark a node failed and block every transitive dependent.

        Single breadth-first pass.  Returns the ids that became blocked, in
        the order they were reached.  Failing a failed node is a no-op.

        Raises:
            DependencyResolutionError: the node already completed or is blocked.
        """
        node = self._require(node_id)
        if node.status == NodeStatus.FAILED:
            return []
        if node.status in (NodeStatus.COMPLETED, NodeStatus.BLOCKED):
            raise DependencyResolutionError(
                f"Cannot fail node {node_id!r} in status {node.status.value}"
            )
        node.status = NodeStatus.FAILED

        newly_blocked: list[NodeId] = []
        queue: deque[NodeId] = deque([node_id])
        seen: set[NodeId] = {node_id}
        while queue:
            current = queue.popleft()
            for dependent in self._dependents[current]:
                if dependent in seen:
                    continue
                seen.add(dependent)
                dep_node = self._nodes[dependent]
                if dep_node.status not in _TERMINAL:
                    dep_node.status = NodeStatus.BLOCKED
                    newly_blocked.append(dependent)
                queue.append(dependent)

        if newly_blocked:
            logger.info(
                "Node %s failed; blocked dependents: %s",
                node_id,
                ", ".join(str(n) for n in newly_blocked),
            )
        return newly_blocked

    def restore(
        self,
        *,
        completed: Iterable[NodeId] = (),
        failed: Iterable[NodeId] = (),
        blocked: Iterable[NodeId] = (),
    ) -> None:
        """Re-apply terminal states from a previous run (resume).

        Unknown ids are ignored so a checkpoint from a larger run can be
        replayed onto a smaller graph.  ``blocked`` only applies to nodes
        that are still pending.
        """
        for node_id in completed:
            if node_id in self._nodes:
                self._nodes[node_id].status = NodeStatus.COMPLETED
        for node_id in failed:
            if node_id in self._nodes and self._nodes[node_id].status != NodeStatus.FAILED:
                self.mark_failed(node_id)
        for node_id in blocked:
            node = self._nodes.get(node_id)
            if node is not None and node.status == NodeStatus.PENDING:
                node.status = NodeStatus.BLOCKED

    # ── Internals ────────────────────────────────────────────────────────────

    def _require(self, node_id: NodeId) -> WorkNode:
        node = self._nodes.get(node_id)
        if node is None:
            raise DependencyResolutionError(f"Unknown node: {node_id!r}")
        return node

    def _deps_completed(self, node: WorkNode) -> bool:
        return all(self._nodes[d].status == NodeStatus.COMPLETED for d in node.dependencies)

    def _ancestors(self, node_id: NodeId) -> set[NodeId]:
        """All nodes reachable from ``node_id`` by following dependencies."""
        seen: set[NodeId] = set()
        stack = list(self._nodes[node_id].dependencies)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._nodes[current].dependencies)
        return seen


def _unsorted_nodes(deps: Mapping[NodeId, list[NodeId]]) -> list[NodeId]:
    """Kahn's algorithm; returns the nodes that could not be ordered (cycle members)."""
    in_degree = {n: len(d) for n, d in deps.items()}
    dependents: dict[NodeId, list[NodeId]] = {n: [] for n in deps}
    for n, node_deps in deps.items():
        for dep in node_deps:
            dependents[dep].append(n)

    queue = deque(n for n, deg in in_degree.items() if deg == 0)
    processed: set[NodeId] = set()
    while queue:
        current = queue.popleft()
        processed.add(current)
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    return [n for n in deps if n not in processed]
