"""Tests for copy and git-worktree execution contexts."""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from autodev_scheduler.config import SchedulerConfig
from autodev_scheduler.contexts import (
    DISPOSITION_CONFLICT,
    DISPOSITION_FAILED,
    DISPOSITION_MERGED,
    CopyTreeManager,
    GitWorktreeManager,
    group_scope,
    scope_slug,
)
from autodev_scheduler.errors import ContextAcquisitionError
from autodev_scheduler.git_utils import _git_branch_exists, _git_head_sha


def test_scope_slug_keeps_safe_ids_as_they_are():
    assert scope_slug("task-1") == "task-1"
    assert scope_slug("v1.2_fix") == "v1.2_fix"


def test_scope_slug_keeps_distinct_ids_apart():
    assert scope_slug("feat-x") == "feat-x"
    assert scope_slug("feat/x") != "feat-x"
    assert scope_slug("feat/x").startswith("feat-x-")
    assert scope_slug("feat/login page").startswith("feat-login-page-")
    assert scope_slug("..").startswith("scope-")
    for raw in ("x.lock", "a..b", ".hidden", "trailing."):
        slug = scope_slug(raw)
        assert not slug.endswith((".lock", "."))
        assert ".." not in slug
        assert not slug.startswith(".")


def test_group_scope_depends_on_members():
    assert group_scope(2, ["a", "b"]) != group_scope(2, ["a", "c"])
    assert group_scope(2, ["a", "b"]).startswith("group-2-")


class TestCopyTreeManager:
    @pytest.fixture
    def project(self, tmp_path: Path) -> Path:
        project = tmp_path / "project"
        (project / "src").mkdir(parents=True)
        (project / "src" / "app.py").write_text("print('hi')\n")
        (project / ".autodev").mkdir()
        (project / ".autodev" / "config.yaml").write_text("max_parallelism: 2\n")
        return project

    def test_acquire_copies_project_without_state_dir(self, project: Path):
        manager = CopyTreeManager(project, SchedulerConfig())
        context = manager.acquire("a", ["a"])
        assert (context.root / "src" / "app.py").read_text() == "print('hi')\n"
        assert Path(context.extra["base_dir"], "src", "app.py").exists()
        # Only carried files come along from the state directory.
        assert (context.root / ".autodev" / "config.yaml").exists()
        assert not (context.root / ".autodev" / "worktrees").exists()
        assert manager.open_contexts() == [context]

    def test_one_owner_per_branch(self, project: Path):
        manager = CopyTreeManager(project, SchedulerConfig())
        manager.acquire("a", ["a"])
        with pytest.raises(ContextAcquisitionError):
            manager.acquire("a", ["a"])

    def test_reset_restores_last_commit(self, project: Path):
        manager = CopyTreeManager(project, SchedulerConfig())
        context = manager.acquire("a", ["a", "b"])
        (context.root / "one.txt").write_text("1\n")
        manager.commit(context, "a")
        (context.root / "two.txt").write_text("2\n")
        manager.reset(context)
        assert (context.root / "one.txt").exists()
        assert not (context.root / "two.txt").exists()

    def test_release_disposes_workspace(self, project: Path):
        manager = CopyTreeManager(project, SchedulerConfig())
        context = manager.acquire("a", ["a"])
        manager.release(context, DISPOSITION_MERGED)
        assert not context.root.exists()
        assert not Path(context.extra["base_dir"]).exists()
        assert manager.open_contexts() == []
        manager.acquire("a", ["a"])

    def test_failed_context_kept_for_inspection(self, project: Path):
        manager = CopyTreeManager(project, SchedulerConfig(keep_failed_contexts=True))
        context = manager.acquire("a", ["a"])
        manager.release(context, DISPOSITION_FAILED)
        assert context.root.exists()

    def test_cleanup_orphans_removes_unowned_dirs(self, project: Path):
        manager = CopyTreeManager(project, SchedulerConfig())
        live = manager.acquire("live", ["live"])
        (manager.root / "stale").mkdir()
        removed = manager.cleanup_orphans()
        assert removed == ["stale"]
        assert live.root.exists()
        assert Path(live.extra["base_dir"]).exists()

    def test_parked_context_keeps_its_snapshots(self, project: Path):
        manager = CopyTreeManager(project, SchedulerConfig())
        context = manager.acquire("a", ["a"])
        (context.root / "new.txt").write_text("held\n")
        manager.commit(context, "a")
        parked = manager.park(context)
        assert not context.root.exists()
        assert (parked.root / "new.txt").read_text() == "held\n"
        assert manager.open_contexts() == []

        keep = [parked.root, Path(parked.extra["base_dir"])]
        assert manager.cleanup_orphans(keep=keep) == []
        assert parked.root.exists()
        manager.release(parked, DISPOSITION_MERGED)
        assert not Path(parked.extra["base_dir"]).exists()


class TestGitWorktreeManager:
    def test_acquire_creates_branch_from_head(self, git_repo: Path):
        manager = GitWorktreeManager(git_repo, SchedulerConfig())
        context = manager.acquire("task-1", ["task-1"])
        assert context.branch == "auto/task-1"
        assert context.base_ref == _git_head_sha(git_repo)
        assert (context.root / "README.md").exists()
        assert _git_branch_exists(git_repo, "auto/task-1")

    def test_state_dir_is_ignored_by_git(self, git_repo: Path, git):
        manager = GitWorktreeManager(git_repo, SchedulerConfig())
        manager.acquire("task-1", ["task-1"])
        assert git(git_repo, "status", "--porcelain").strip() == ""

    def test_commit_and_release_merged(self, git_repo: Path):
        manager = GitWorktreeManager(git_repo, SchedulerConfig())
        context = manager.acquire("task-1", ["task-1"])
        (context.root / "feature.txt").write_text("feature\n")
        sha = manager.commit(context, "task-1: add feature")
        assert sha is not None and sha != context.base_ref
        assert manager.commit(context, "nothing") is None

        manager.release(context, DISPOSITION_MERGED)
        assert not context.root.exists()
        assert not _git_branch_exists(git_repo, "auto/task-1")

    def test_conflicted_branch_is_preserved(self, git_repo: Path):
        manager = GitWorktreeManager(git_repo, SchedulerConfig())
        context = manager.acquire("task-1", ["task-1"])
        manager.release(context, DISPOSITION_CONFLICT)
        assert not context.root.exists()
        assert _git_branch_exists(git_repo, "auto/task-1")

    def test_park_removes_worktree_but_keeps_branch(self, git_repo: Path):
        manager = GitWorktreeManager(git_repo, SchedulerConfig())
        context = manager.acquire("task-1", ["task-1"])
        parked = manager.park(context)
        assert not context.root.exists()
        assert _git_branch_exists(git_repo, parked.branch)
        assert manager.open_contexts() == []

    @pytest.mark.parametrize("task_id", ["x.lock", "a..b", "feat/x", "fix login"])
    def test_awkward_task_ids_get_usable_branches(self, git_repo: Path, task_id):
        manager = GitWorktreeManager(git_repo, SchedulerConfig())
        context = manager.acquire(scope_slug(task_id), [task_id])
        assert context.root.is_dir()
        assert _git_branch_exists(git_repo, context.branch)

    def test_invalid_branch_name_is_refused(self, git_repo: Path):
        manager = GitWorktreeManager(git_repo, SchedulerConfig(branch_prefix="bad..prefix/"))
        with pytest.raises(ContextAcquisitionError, match="not a valid branch name"):
            manager.acquire("task-1", ["task-1"])
        assert manager.open_contexts() == []

    def test_stale_branch_is_replaced(self, git_repo: Path, git):
        git(git_repo, "branch", "auto/task-1")
        manager = GitWorktreeManager(git_repo, SchedulerConfig())
        context = manager.acquire("task-1", ["task-1"])
        assert context.root.is_dir()

    def test_failed_acquisition_leaves_nothing_behind(self, tmp_path: Path, git):
        if shutil.which("git") is None:
            pytest.skip("git is not installed")
        repo = tmp_path / "empty"
        repo.mkdir()
        git(repo, "init", "-q")
        manager = GitWorktreeManager(repo, SchedulerConfig())
        with pytest.raises(ContextAcquisitionError):
            manager.acquire("task-1", ["task-1"])
        assert manager.open_contexts() == []
        assert not (manager.root / "task-1").exists()
