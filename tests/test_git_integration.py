"""End-to-end merges of worktree branches through the git integrator."""

from __future__ import annotations

from pathlib import Path

from autodev_scheduler.config import SchedulerConfig
from autodev_scheduler.contexts import GitWorktreeManager
from autodev_scheduler.git_utils import _git_has_changes, _git_merge_in_progress
from autodev_scheduler.integration import BranchResult, GitIntegrator
from autodev_scheduler.models import ConflictClass, ResolutionKind


def _branch(manager: GitWorktreeManager, scope: str, edits: dict[str, str], complexity: int = 3) -> BranchResult:
    context = manager.acquire(scope, [scope])
    for rel, text in edits.items():
        (context.root / rel).write_text(text)
    manager.commit(context, f"{scope}: edit")
    return BranchResult(context=context, complexity=complexity, task_ids=[scope])


def test_disjoint_branches_merge_cleanly(git_repo: Path):
    manager = GitWorktreeManager(git_repo, SchedulerConfig())
    branches = [
        _branch(manager, "docs", {"README.md": "# init\nmore docs\n"}),
        _branch(manager, "code", {"app.py": "print('app')\n"}),
    ]
    outcome = GitIntegrator(git_repo).integrate(branches)
    assert sorted(outcome.integrated) == ["auto/code", "auto/docs"]
    assert (git_repo / "app.py").read_text() == "print('app')\n"
    assert (git_repo / "README.md").read_text() == "# init\nmore docs\n"
    assert not _git_has_changes(git_repo)


def test_additive_conflict_is_resolved_from_index_stages(git_repo: Path, git):
    manager = GitWorktreeManager(git_repo, SchedulerConfig())
    branches = [
        _branch(manager, "x", {"imports.txt": "import os\nimport sys\n"}),
        _branch(manager, "y", {"imports.txt": "import os\nimport json\n"}),
    ]
    outcome = GitIntegrator(git_repo).integrate(branches)
    assert outcome.integrated == ["auto/x", "auto/y"]
    assert (git_repo / "imports.txt").read_text() == "import os\nimport json\nimport sys\n"
    [record] = outcome.conflicts
    assert record.classification == ConflictClass.ADDITIVE
    assert record.resolution.kind == ResolutionKind.AUTO_RESOLVED
    assert not _git_merge_in_progress(git_repo)
    assert "merge auto/y" in git(git_repo, "log", "--format=%s", "-1")


def test_semantic_conflict_aborts_merge_and_keeps_main_clean(git_repo: Path):
    manager = GitWorktreeManager(git_repo, SchedulerConfig())
    branches = [
        _branch(manager, "first", {"README.md": "# first title\n"}, complexity=1),
        _branch(manager, "second", {"README.md": "# second title\n"}, complexity=2),
    ]
    outcome = GitIntegrator(git_repo).integrate(branches)
    assert outcome.integrated == ["auto/first"]
    assert outcome.rejected == ["auto/second"]
    [conflict] = outcome.unresolved
    assert conflict.path == "README.md"
    assert (git_repo / "README.md").read_text() == "# first title\n"
    assert not _git_merge_in_progress(git_repo)
    assert not _git_has_changes(git_repo)


def test_decision_resolves_semantic_conflict(git_repo: Path):
    manager = GitWorktreeManager(git_repo, SchedulerConfig())
    branches = [
        _branch(manager, "first", {"README.md": "# first title\n"}, complexity=1),
        _branch(manager, "second", {"README.md": "# second title\n"}, complexity=2),
    ]
    outcome = GitIntegrator(git_repo, decide=lambda escalation: "take-second").integrate(branches)
    assert outcome.integrated == ["auto/first", "auto/second"]
    assert (git_repo / "README.md").read_text() == "# second title\n"


def test_branch_without_commits_counts_as_integrated(git_repo: Path):
    manager = GitWorktreeManager(git_repo, SchedulerConfig())
    context = manager.acquire("noop", ["noop"])
    outcome = GitIntegrator(git_repo).integrate([BranchResult(context=context, complexity=1, task_ids=["noop"])])
    assert outcome.integrated == ["auto/noop"]
