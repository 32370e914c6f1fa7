"""Shared fixtures: in-memory contexts, a resolver-backed integrator and git repos."""

from __future__ import annotations

import shutil
import subprocess
import threading
from pathlib import Path
from typing import Callable, Iterable, Optional

import pytest

from autodev_scheduler.checkpoint import CheckpointManager
from autodev_scheduler.config import SchedulerConfig
from autodev_scheduler.errors import ContextAcquisitionError
from autodev_scheduler.events import EventLog
from autodev_scheduler.graph import TaskGraph
from autodev_scheduler.integration import BranchResult
from autodev_scheduler.models import ExecutionContext, TaskNode
from autodev_scheduler.resolver import BranchChanges, Decide, IntegrationOutcome, integrate
from autodev_scheduler.scheduler import GroupScheduler


def node(node_id: str, *deps: str, complexity: int = 3, **kwargs) -> TaskNode:
    return TaskNode(id=node_id, dependencies=tuple(deps), complexity=complexity, **kwargs)


def graph_of(*nodes: TaskNode) -> TaskGraph:
    return TaskGraph.build(nodes)


class FakeContexts:
    """Context manager whose workspaces are plain dicts of file text."""

    def __init__(self, fail_scopes: Iterable[str] = ()):
        self.fail_scopes = set(fail_scopes)
        self.acquired: list[ExecutionContext] = []
        self.released: dict[str, str] = {}
        self.files: dict[str, dict[str, Optional[str]]] = {}
        self.committed: dict[str, dict[str, Optional[str]]] = {}
        self.parked: dict[str, ExecutionContext] = {}
        self.resets: list[str] = []
        self._open: dict[str, ExecutionContext] = {}
        self._lock = threading.Lock()

    def acquire(self, scope_id: str, task_ids: Iterable[str]) -> ExecutionContext:
        if scope_id in self.fail_scopes:
            raise ContextAcquisitionError(scope_id, "simulated failure")
        context = ExecutionContext(
            context_id=f"ctx-{scope_id}",
            branch=f"auto/{scope_id}",
            root=Path("/nonexistent") / scope_id,
            owner=scope_id,
            task_ids=tuple(task_ids),
            kind="memory",
        )
        with self._lock:
            if context.branch in self._open:
                raise ContextAcquisitionError(scope_id, "branch already owned")
            self._open[context.branch] = context
            self.acquired.append(context)
            self.files[context.branch] = {}
            self.committed[context.branch] = {}
        return context

    def write(self, context: ExecutionContext, path: str, text: Optional[str]) -> None:
        with self._lock:
            self.files[context.branch][path] = text

    def release(self, context: ExecutionContext, disposition: str) -> None:
        with self._lock:
            self._open.pop(context.branch, None)
            self.released[context.branch] = disposition

    def commit(self, context: ExecutionContext, message: str) -> Optional[str]:
        with self._lock:
            self.committed[context.branch] = dict(self.files[context.branch])
        return None

    def reset(self, context: ExecutionContext) -> None:
        with self._lock:
            self.files[context.branch] = dict(self.committed.get(context.branch, {}))
            self.resets.append(context.branch)

    def park(self, context: ExecutionContext) -> ExecutionContext:
        with self._lock:
            self._open.pop(context.branch, None)
            self.parked[context.branch] = context
        return context

    def open_contexts(self) -> list[ExecutionContext]:
        with self._lock:
            return list(self._open.values())

    def cleanup_orphans(self, keep: Iterable[Path] = ()) -> list[str]:
        return []

    def health(self) -> list[str]:
        return []


class FakeIntegrator:
    """Fold in-memory branches into a dict main line with the real resolver."""

    def __init__(self, contexts: FakeContexts, main_line: Optional[dict[str, str]] = None, decide: Optional[Decide] = None):
        self.contexts = contexts
        self.main_line: dict[str, Optional[str]] = dict(main_line or {})
        self.decide = decide
        self.calls: list[list[str]] = []
        # Each branch merges against the main line it was cut from.
        self.bases: dict[str, dict[str, Optional[str]]] = {}

    def integrate(self, branches: list[BranchResult]) -> IntegrationOutcome:
        self.calls.append([branch.name for branch in branches])
        changes = [
            BranchChanges(
                name=branch.name,
                files=dict(self.contexts.files.get(branch.name, {})),
                complexity=branch.complexity,
                task_ids=list(branch.task_ids),
                base=self.bases.setdefault(branch.name, dict(self.main_line)),
            )
            for branch in branches
        ]
        outcome = integrate(self.main_line, changes, self.decide)
        self.main_line = dict(outcome.merged)
        for name in [*outcome.integrated, *outcome.failed]:
            self.bases.pop(name, None)
        return outcome


def ok_execute(node: TaskNode, context: ExecutionContext) -> dict:
    return {"output": f"ran {node.id}", "usage": 1}


def ok_verify(node: TaskNode, context: ExecutionContext) -> bool:
    return True


@pytest.fixture
def config() -> SchedulerConfig:
    return SchedulerConfig(
        max_parallelism=4,
        sequential_threshold=1,
        max_retries=1,
        task_timeout_seconds=5.0,
        context_acquire_retries=0,
        retry_initial_delay=0.0,
        retry_max_delay=0.0,
        checkpoint_interval_seconds=None,
        checkpoint_write_retries=0,
    )


@pytest.fixture
def contexts() -> FakeContexts:
    return FakeContexts()


@pytest.fixture
def make_scheduler(config: SchedulerConfig, contexts: FakeContexts, tmp_path: Path) -> Callable[..., GroupScheduler]:
    def factory(
        graph: TaskGraph,
        *,
        execute_fn=ok_execute,
        verify_fn=ok_verify,
        integrator=None,
        checkpoints: Optional[CheckpointManager] = None,
        **overrides,
    ) -> GroupScheduler:
        cfg = overrides.pop("config", config)
        return GroupScheduler(
            graph,
            config=cfg,
            contexts=overrides.pop("contexts", contexts),
            integrator=integrator or FakeIntegrator(contexts),
            execute_fn=execute_fn,
            verify_fn=verify_fn,
            checkpoints=checkpoints,
            events=overrides.pop("events", EventLog()),
            **overrides,
        )

    return factory


@pytest.fixture
def checkpoints(tmp_path: Path) -> CheckpointManager:
    return CheckpointManager(tmp_path / ".autodev", write_retries=0, keep=3, retry_delay=0.0)


def _git(cwd: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)
    return result.stdout


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Initialize a git repo with an initial commit on `main`."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-q")
    _git(repo, "checkout", "-q", "-b", "main")
    _git(repo, "config", "user.email", "test@test.com")
    _git(repo, "config", "user.name", "Test")
    (repo / "README.md").write_text("# init\n")
    (repo / "imports.txt").write_text("import os\n")
    _git(repo, "add", "-A")
    _git(repo, "commit", "-q", "-m", "initial")
    return repo


@pytest.fixture
def git() -> Callable[..., str]:
    return _git
