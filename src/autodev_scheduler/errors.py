"""Exception taxonomy for graph construction, scheduling and persistence."""

from __future__ import annotations

from typing import Iterable, Optional


class OrchestratorError(Exception):
    """Base class for every error raised by the scheduler core."""


class GraphError(OrchestratorError):
    """The decomposition cannot form a valid task graph."""


class DuplicateNodeError(GraphError):
    def __init__(self, node_id: str):
        super().__init__(f"Duplicate task id: {node_id}")
        self.node_id = node_id


class DanglingDependencyError(GraphError):
    def __init__(self, node_id: str, missing: str):
        super().__init__(f"Task {node_id} depends on unknown task {missing!r}")
        self.node_id = node_id
        self.missing = missing


class CycleError(GraphError):
    def __init__(self, cycle: list[str]):
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")
        self.cycle = list(cycle)


class UnreachableNodeError(GraphError):
    def __init__(self, node_ids: Iterable[str]):
        ids = sorted(node_ids)
        super().__init__(f"Tasks not reachable from any root: {', '.join(ids)}")
        self.node_ids = ids


class DescriptorError(GraphError):
    """Decomposition input failed validation."""


class TransitionError(OrchestratorError):
    def __init__(self, node_id: str, current: str, target: str, reason: Optional[str] = None):
        message = f"Illegal transition for {node_id}: {current} -> {target}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)
        self.node_id = node_id
        self.current = current
        self.target = target


class StalledGraphError(OrchestratorError):
    """No task can make progress although the graph is not finished."""

    def __init__(self, blocked: Iterable[str], unmet: dict[str, list[str]]):
        self.blocked = sorted(blocked)
        self.unmet = {key: list(value) for key, value in unmet.items()}
        detail = "; ".join(f"{node} waits on {', '.join(deps)}" for node, deps in sorted(self.unmet.items()))
        super().__init__(f"Task graph stalled with {len(self.blocked)} blocked task(s): {detail}")


class ContextAcquisitionError(OrchestratorError):
    def __init__(self, scope_id: str, detail: str):
        super().__init__(f"Could not acquire execution context for {scope_id}: {detail}")
        self.scope_id = scope_id
        self.detail = detail


class CheckpointWriteError(OrchestratorError):
    pass


class StateLockedError(OrchestratorError):
    """Another session holds the project's state directory."""

    def __init__(self, lock_path: str, waited: float):
        super().__init__(f"Another session is running ({lock_path} held for {waited:.1f}s)")
        self.lock_path = lock_path
        self.waited = waited


class ConfigError(OrchestratorError, ValueError):
    """The configuration file exists but cannot be used."""
