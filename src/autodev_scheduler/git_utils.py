"""Provide small git helpers and the process-wide git lock."""

from __future__ import annotations

import os
import subprocess
import threading
from pathlib import Path
from typing import Callable, Optional, TypeVar

from loguru import logger

from .constants import STATE_DIR_NAME

T = TypeVar("T")

_FALLBACK_IDENTITY = {
    "GIT_AUTHOR_NAME": "autodev-scheduler",
    "GIT_AUTHOR_EMAIL": "autodev-scheduler@localhost",
    "GIT_COMMITTER_NAME": "autodev-scheduler",
    "GIT_COMMITTER_EMAIL": "autodev-scheduler@localhost",
}


class GitCoordinator:
    """Serialize git operations that touch shared repository metadata.

    Worktree creation, branch deletion and merges all write to the common
    `.git` directory, so only one thread may run them at a time.
    """

    _instance: Optional["GitCoordinator"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "GitCoordinator":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._git_lock = threading.RLock()
        return cls._instance

    def execute_git_operation(self, operation: Callable[[], T], operation_name: str = "git operation") -> T:
        """Run `operation` while holding the git lock.

        Raises:
            Any exception raised by the operation.
        """
        thread_id = threading.current_thread().name
        logger.debug("Thread {} waiting for git lock ({})", thread_id, operation_name)
        with self._git_lock:
            try:
                return operation()
            except Exception as exc:
                logger.error("Thread {} git operation failed ({}): {}", thread_id, operation_name, exc)
                raise
            finally:
                logger.debug("Thread {} releasing git lock ({})", thread_id, operation_name)


def get_git_coordinator() -> GitCoordinator:
    return GitCoordinator()


def _run_git(
    cwd: Path,
    *args: str,
    check: bool = False,
    env: Optional[dict[str, str]] = None,
) -> subprocess.CompletedProcess:
    logger.debug("git {} (cwd={})", " ".join(args), cwd)
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        errors="surrogateescape",
        check=False,
        env=env,
    )
    if check and result.returncode != 0:
        raise subprocess.CalledProcessError(result.returncode, result.args, result.stdout, result.stderr)
    return result


def _git_is_repo(project_dir: Path) -> bool:
    try:
        result = _run_git(project_dir, "rev-parse", "--is-inside-work-tree")
    except FileNotFoundError:
        logger.debug("git executable not found")
        return False
    return result.returncode == 0 and result.stdout.strip().lower() == "true"


def _git_current_branch(project_dir: Path) -> Optional[str]:
    result = _run_git(project_dir, "rev-parse", "--abbrev-ref", "HEAD")
    if result.returncode != 0:
        return None
    branch = result.stdout.strip()
    return branch if branch and branch != "HEAD" else None


def _git_head_sha(project_dir: Path, ref: str = "HEAD") -> Optional[str]:
    result = _run_git(project_dir, "rev-parse", "--verify", "-q", ref)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def _git_branch_exists(project_dir: Path, branch: str) -> bool:
    return _run_git(project_dir, "show-ref", "--verify", "-q", f"refs/heads/{branch}").returncode == 0


def _git_valid_branch_name(project_dir: Path, branch: str) -> bool:
    return _run_git(project_dir, "check-ref-format", "--branch", branch).returncode == 0


def _git_has_changes(project_dir: Path) -> bool:
    result = _run_git(project_dir, "status", "--porcelain")
    return result.returncode == 0 and bool(result.stdout.strip())


def _git_merge_in_progress(project_dir: Path) -> bool:
    return _git_head_sha(project_dir, "MERGE_HEAD") is not None


def _git_conflicted_files(project_dir: Path) -> list[str]:
    result = _run_git(project_dir, "diff", "--name-only", "--diff-filter=U")
    if result.returncode != 0:
        return []
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def _git_show(project_dir: Path, obj: str) -> Optional[str]:
    """Return the blob at `obj` (`ref:path` or `:stage:path`), or None."""
    result = _run_git(project_dir, "show", obj)
    if result.returncode != 0:
        return None
    return result.stdout


def _git_identity_env(project_dir: Path) -> Optional[dict[str, str]]:
    """Fallback author identity for repositories without one configured."""
    if _run_git(project_dir, "config", "user.email").returncode == 0:
        return None
    env = dict(os.environ)
    for key, value in _FALLBACK_IDENTITY.items():
        env.setdefault(key, value)
    return env


def _git_commit_all(project_dir: Path, message: str) -> Optional[str]:
    """Stage everything and commit; return the new sha or None if clean."""
    _run_git(project_dir, "add", "-A", check=True)
    if _run_git(project_dir, "diff", "--cached", "--quiet").returncode == 0:
        return None
    _run_git(project_dir, "commit", "-m", message, check=True, env=_git_identity_env(project_dir))
    return _git_head_sha(project_dir)


def _ensure_git_exclude(project_dir: Path) -> None:
    """Keep the state directory out of every worktree's status."""
    result = _run_git(project_dir, "rev-parse", "--git-common-dir")
    if result.returncode != 0:
        return
    common_dir = Path(result.stdout.strip())
    if not common_dir.is_absolute():
        common_dir = project_dir / common_dir
    exclude_path = common_dir / "info" / "exclude"
    entry = f"{STATE_DIR_NAME}/"
    try:
        contents = exclude_path.read_text() if exclude_path.exists() else ""
        lines = {line.strip().rstrip("/") for line in contents.splitlines() if line.strip()}
        if STATE_DIR_NAME in lines:
            return
        if contents and not contents.endswith("\n"):
            contents += "\n"
        exclude_path.parent.mkdir(parents=True, exist_ok=True)
        exclude_path.write_text(contents + entry + "\n")
    except OSError as exc:
        logger.warning("Unable to update git exclude file: {}", exc)


def _ensure_branch(project_dir: Path, branch: str) -> None:
    """Check out `branch`, creating it from HEAD when missing."""
    if _git_current_branch(project_dir) == branch:
        return
    if _git_branch_exists(project_dir, branch):
        _run_git(project_dir, "checkout", "-q", branch, check=True)
    else:
        _run_git(project_dir, "checkout", "-q", "-b", branch, check=True)
