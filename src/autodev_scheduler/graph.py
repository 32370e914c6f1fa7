"""Task graph construction, readiness and status transitions.

The graph itself is immutable: `TaskGraph.apply` returns a new graph. The
`GraphBoard` wraps the current graph for concurrent workers and serializes
transitions per node, so two workers can never both move the same node.
"""

from __future__ import annotations

import hashlib
import json
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional

from loguru import logger

from .errors import (
    CycleError,
    DanglingDependencyError,
    DuplicateNodeError,
    TransitionError,
    UnreachableNodeError,
)
from .models import EvidenceRecord, TaskNode, TaskStatus

S = TaskStatus

_FORWARD: dict[TaskStatus, frozenset[TaskStatus]] = {
    S.PENDING: frozenset({S.READY, S.BLOCKED}),
    S.READY: frozenset({S.RUNNING, S.PENDING, S.BLOCKED}),
    # RUNNING -> RUNNING and VERIFYING -> RUNNING are in-runner retry re-entries.
    S.RUNNING: frozenset({S.RUNNING, S.VERIFYING, S.FAILED, S.BLOCKED}),
    S.VERIFYING: frozenset({S.RUNNING, S.DONE, S.FAILED, S.BLOCKED}),
    S.DONE: frozenset(),
    S.FAILED: frozenset(),
    S.BLOCKED: frozenset(),
}


def is_legal(current: TaskStatus, target: TaskStatus, *, retry: bool = False, integrated: bool = False) -> bool:
    if target in _FORWARD[current]:
        return True
    # Verified work held back by a conflict completes once its branch is integrated.
    if integrated and current == S.BLOCKED and target == S.DONE:
        return True
    # The explicit retry path may reset any node to PENDING.
    return retry and target == S.PENDING and current != S.PENDING


def transition(
    node: TaskNode,
    status: TaskStatus,
    evidence: Optional[EvidenceRecord] = None,
    *,
    retry: bool = False,
    reason: Optional[str] = None,
    integrated: bool = False,
) -> TaskNode:
    """Return `node` moved to `status`.

    Args:
        node: Current node value.
        status: Target status.
        evidence: New evidence entries to append (never replaces the trail).
        retry: Allow the explicit reset to PENDING.
        reason: Block reason stored when moving to BLOCKED or FAILED.
        integrated: Allow BLOCKED -> DONE for a held-back branch that merged.

    Raises:
        TransitionError: If the move is not legal.
    """
    if not is_legal(node.status, status, retry=retry, integrated=integrated):
        raise TransitionError(node.id, node.status.value, status.value)
    changes: dict[str, Any] = {"status": status}
    if evidence is not None and len(evidence):
        changes["evidence"] = node.evidence.extend(evidence)
    if status == S.RUNNING:
        changes["attempts"] = node.attempts + 1
        if node.status in (S.RUNNING, S.VERIFYING):
            changes["retries_used"] = node.retries_used + 1
    if status == S.PENDING and retry:
        if node.status == S.FAILED:
            changes["retries_used"] = node.retries_used + 1
        changes["block_reason"] = None
    if status in (S.BLOCKED, S.FAILED) and reason:
        changes["block_reason"] = reason
    if status == S.DONE:
        changes["block_reason"] = None
    return replace(node, **changes)


@dataclass
class ExecutionPlan:
    """Static preview of the batches a graph would run in."""

    batches: list[list[str]]
    total_tasks: int
    max_parallelism: int


class TaskGraph:
    """Acyclic graph of task nodes keyed by id."""

    def __init__(self, nodes: Mapping[str, TaskNode], *, _validated: bool = False):
        self._nodes: dict[str, TaskNode] = dict(nodes)
        if not _validated:
            _validate(list(self._nodes.values()))
        self._dependents: dict[str, list[str]] = defaultdict(list)
        for node in self._nodes.values():
            for dep in node.dependencies:
                self._dependents[dep].append(node.id)

    @classmethod
    def build(cls, nodes: Iterable[TaskNode], edges: Iterable[tuple[str, str]] = ()) -> "TaskGraph":
        """Validate nodes plus extra `(dependency, dependent)` edges.

        Raises:
            DuplicateNodeError, DanglingDependencyError, CycleError,
            UnreachableNodeError.
        """
        ordered: dict[str, TaskNode] = {}
        for node in nodes:
            if node.id in ordered:
                raise DuplicateNodeError(node.id)
            ordered[node.id] = node
        for dependency, dependent in edges:
            if dependent not in ordered:
                raise DanglingDependencyError(dependency, dependent)
            node = ordered[dependent]
            if dependency not in node.dependencies:
                ordered[dependent] = replace(node, dependencies=node.dependencies + (dependency,))
        return cls(ordered)

    @property
    def nodes(self) -> Mapping[str, TaskNode]:
        return MappingProxyType(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __getitem__(self, node_id: str) -> TaskNode:
        return self._nodes[node_id]

    def ids(self) -> list[str]:
        return list(self._nodes)

    def status_of(self, node_id: str) -> TaskStatus:
        return self._nodes[node_id].status

    def statuses(self) -> dict[str, TaskStatus]:
        return {node_id: node.status for node_id, node in self._nodes.items()}

    def dependents(self, node_id: str) -> list[str]:
        return list(self._dependents.get(node_id, []))

    def transitive_dependents(self, node_id: str) -> list[str]:
        seen: set[str] = set()
        order: list[str] = []
        queue = deque(self._dependents.get(node_id, []))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            order.append(current)
            queue.extend(self._dependents.get(current, []))
        return order

    def ready_nodes(self) -> set[str]:
        return ready_nodes(self)

    def all_done(self) -> bool:
        return all(node.status == S.DONE for node in self._nodes.values())

    def all_terminal(self) -> bool:
        return all(node.status.terminal for node in self._nodes.values())

    def unmet_dependencies(self, node_id: str) -> list[str]:
        node = self._nodes[node_id]
        return [dep for dep in node.dependencies if self._nodes[dep].status != S.DONE]

    def apply(
        self,
        node_id: str,
        status: TaskStatus,
        evidence: Optional[EvidenceRecord] = None,
        *,
        retry: bool = False,
        reason: Optional[str] = None,
    ) -> "TaskGraph":
        """Return a new graph with one node transitioned."""
        if node_id not in self._nodes:
            raise KeyError(node_id)
        updated = dict(self._nodes)
        updated[node_id] = transition(self._nodes[node_id], status, evidence, retry=retry, reason=reason)
        return TaskGraph(updated, _validated=True)

    def replace_node(self, node: TaskNode) -> "TaskGraph":
        updated = dict(self._nodes)
        updated[node.id] = node
        return TaskGraph(updated, _validated=True)

    def plan(self, max_parallelism: Optional[int] = None) -> ExecutionPlan:
        """Batch nodes with Kahn's algorithm, ignoring current status.

        With `max_parallelism`, oversized batches are split by ascending
        complexity, mirroring how the scheduler selects groups.
        """
        in_degree = {node_id: len(node.dependencies) for node_id, node in self._nodes.items()}
        batches: list[list[str]] = []
        queue = [node_id for node_id, degree in in_degree.items() if degree == 0]
        while queue:
            ordered = sorted(queue, key=lambda nid: (self._nodes[nid].complexity, nid))
            if max_parallelism and len(ordered) > max_parallelism:
                batch, queue = ordered[:max_parallelism], ordered[max_parallelism:]
            else:
                batch, queue = ordered, []
            batches.append(batch)
            for node_id in batch:
                for dependent in self._dependents.get(node_id, []):
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        queue.append(dependent)
        max_batch = max((len(batch) for batch in batches), default=0)
        return ExecutionPlan(batches=batches, total_tasks=len(self._nodes), max_parallelism=max_batch)

    def fingerprint(self) -> str:
        """Hash of the task set and its edges, independent of status."""
        payload = sorted((node_id, sorted(node.dependencies)) for node_id, node in self._nodes.items())
        return hashlib.sha256(json.dumps(payload).encode("utf-8")).hexdigest()[:16]

    def to_dict(self) -> dict[str, Any]:
        return {"nodes": [node.to_dict() for node in self._nodes.values()]}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TaskGraph":
        nodes = [TaskNode.from_dict(item) for item in (data.get("nodes") or [])]
        return cls.build(nodes)


def build(nodes: Iterable[TaskNode], edges: Iterable[tuple[str, str]] = ()) -> TaskGraph:
    return TaskGraph.build(nodes, edges)


def ready_nodes(graph: TaskGraph) -> set[str]:
    """Return every PENDING node whose dependencies are all DONE."""
    nodes = graph.nodes
    return {
        node_id
        for node_id, node in nodes.items()
        if node.status == S.PENDING and all(nodes[dep].status == S.DONE for dep in node.dependencies)
    }


def find_cycle(nodes: list[TaskNode]) -> Optional[list[str]]:
    """Return one dependency cycle as a path, or None."""
    graph: dict[str, list[str]] = defaultdict(list)
    for node in nodes:
        for dep in node.dependencies:
            graph[dep].append(node.id)

    # Track visit state: 0 = unvisited, 1 = visiting, 2 = visited
    state: dict[str, int] = {node.id: 0 for node in nodes}

    for start in (node.id for node in nodes):
        if state[start] != 0:
            continue
        path: list[str] = []
        stack: list[tuple[str, int]] = [(start, 0)]
        while stack:
            current, index = stack.pop()
            if index == 0:
                state[current] = 1
                path.append(current)
            neighbors = graph.get(current, [])
            if index < len(neighbors):
                stack.append((current, index + 1))
                neighbor = neighbors[index]
                if state.get(neighbor) == 1:
                    cycle_start = path.index(neighbor)
                    return path[cycle_start:] + [neighbor]
                if state.get(neighbor) == 0:
                    stack.append((neighbor, 0))
                continue
            state[current] = 2
            path.pop()
    return None


def _validate(nodes: list[TaskNode]) -> None:
    ids = {node.id for node in nodes}
    if len(ids) != len(nodes):
        seen: set[str] = set()
        for node in nodes:
            if node.id in seen:
                raise DuplicateNodeError(node.id)
            seen.add(node.id)
    for node in nodes:
        for dep in node.dependencies:
            if dep not in ids:
                raise DanglingDependencyError(node.id, dep)
    cycle = find_cycle(nodes)
    if cycle:
        raise CycleError(cycle)

    # Every node must be reachable from a root (a node without dependencies).
    children: dict[str, list[str]] = defaultdict(list)
    for node in nodes:
        for dep in node.dependencies:
            children[dep].append(node.id)
    reached: set[str] = set()
    queue = deque(node.id for node in nodes if not node.dependencies)
    while queue:
        current = queue.popleft()
        if current in reached:
            continue
        reached.add(current)
        queue.extend(children.get(current, []))
    missing = ids - reached
    if missing:
        raise UnreachableNodeError(missing)


class GraphBoard:
    """Thread-safe holder of the live graph.

    Each node has its own lock; `apply` on independent nodes never contends
    beyond the brief swap of the shared graph reference.
    """

    def __init__(self, graph: TaskGraph):
        self._graph = graph
        self._node_locks = {node_id: threading.Lock() for node_id in graph.ids()}
        self._swap_lock = threading.Lock()
        self._owners: dict[str, str] = {}

    def snapshot(self) -> TaskGraph:
        with self._swap_lock:
            return self._graph

    def node(self, node_id: str) -> TaskNode:
        return self.snapshot()[node_id]

    def owner_of(self, node_id: str) -> Optional[str]:
        with self._swap_lock:
            return self._owners.get(node_id)

    def apply(
        self,
        node_id: str,
        status: TaskStatus,
        evidence: Optional[EvidenceRecord] = None,
        *,
        expect: Optional[TaskStatus] = None,
        owner: Optional[str] = None,
        retry: bool = False,
        reason: Optional[str] = None,
        integrated: bool = False,
    ) -> TaskNode:
        """Transition one node and return its new value.

        Args:
            expect: Status the caller believes the node is in; a mismatch
                means another writer got there first and raises.
            owner: Execution context claiming a node entering RUNNING, or
                the context that must currently own it for other moves.

        Raises:
            TransitionError: On an illegal move or a lost race.
        """
        with self._node_locks[node_id]:
            current = self.snapshot()[node_id]
            if expect is not None and current.status != expect:
                raise TransitionError(node_id, current.status.value, status.value, f"expected {expect.value}")
            held_by = self.owner_of(node_id)
            if owner is not None and held_by is not None and held_by != owner:
                raise TransitionError(node_id, current.status.value, status.value, f"owned by {held_by}")
            updated = transition(current, status, evidence, retry=retry, reason=reason, integrated=integrated)
            with self._swap_lock:
                self._graph = self._graph.replace_node(updated)
                if status == S.RUNNING and owner is not None:
                    self._owners[node_id] = owner
                elif status != S.VERIFYING and status != S.RUNNING:
                    self._owners.pop(node_id, None)
            logger.debug("Task {}: {} -> {}", node_id, current.status.value, status.value)
            return updated

    def block(self, node_id: str, reason: str) -> bool:
        """Move a non-terminal node to BLOCKED; return False if already terminal."""
        with self._node_locks[node_id]:
            current = self.snapshot()[node_id]
            if current.status.terminal:
                return False
            updated = transition(current, S.BLOCKED, reason=reason)
            with self._swap_lock:
                self._graph = self._graph.replace_node(updated)
                self._owners.pop(node_id, None)
            return True
