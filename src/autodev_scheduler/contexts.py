"""Allocate and dispose isolated execution contexts.

Two managers share one contract:

- `GitWorktreeManager` gives every scope its own `git worktree` on a
  dedicated `auto/<scope>` branch cut from the current integration line.
- `CopyTreeManager` is the fallback for projects that are not git
  repositories; it copies the project tree and keeps a base snapshot so the
  integrator can compute what the scope changed.

Acquisition is all-or-nothing: when any step fails the partial branch and
directory are rolled back before `ContextAcquisitionError` is raised.

A context whose branch is held back by an undecided conflict is parked: the
workspace goes, but what a later merge needs (the branch, or the copy
snapshots) stays until the branch is integrated.
"""

from __future__ import annotations

import hashlib
import re
import shutil
import subprocess
import threading
from dataclasses import replace
from pathlib import Path
from typing import Iterable, Optional, Protocol

from loguru import logger

from .config import SchedulerConfig
from .constants import DISPOSAL_DELETE_ON_SUCCESS, STATE_DIR_NAME
from .errors import ContextAcquisitionError
from .git_utils import (
    _ensure_git_exclude,
    _git_branch_exists,
    _git_commit_all,
    _git_head_sha,
    _git_valid_branch_name,
    _run_git,
    get_git_coordinator,
)
from .models import ExecutionContext

DISPOSITION_MERGED = "merged"
DISPOSITION_FAILED = "failed"
DISPOSITION_CONFLICT = "conflict"
DISPOSITION_CANCELLED = "cancelled"

_SLUG_RE = re.compile(r"[^A-Za-z0-9._-]+")
_DOTS_RE = re.compile(r"\.{2,}")


def _digest(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8", errors="surrogateescape")).hexdigest()[:8]


def scope_slug(value: str) -> str:
    """Make `value` safe to use as a branch suffix and directory name.

    An id that has to be rewritten gets a short hash of the raw id appended,
    so two distinct ids never share a scope (`feat/x` and `feat-x`).
    """
    slug = _DOTS_RE.sub("-", _SLUG_RE.sub("-", value)).strip(".-")
    if slug.endswith(".lock"):
        slug = slug[: -len(".lock")].rstrip(".-")
    if slug == value:
        return slug
    return f"{slug or 'scope'}-{_digest(value)}"


def group_scope(round_number: int, task_ids: Iterable[str]) -> str:
    """Scope of the shared context that runs a small group sequentially."""
    return f"group-{round_number}-{_digest(chr(0).join(task_ids))}"


def _copy_ignore(project_dir: Path, root: Path):
    names = {STATE_DIR_NAME, ".git"}
    try:
        names.add(root.relative_to(project_dir).parts[0])
    except (ValueError, IndexError):
        pass
    return shutil.ignore_patterns(*names)


class ContextManager(Protocol):
    def acquire(self, scope_id: str, task_ids: Iterable[str]) -> ExecutionContext: ...

    def release(self, context: ExecutionContext, disposition: str) -> None: ...

    def commit(self, context: ExecutionContext, message: str) -> Optional[str]: ...

    def reset(self, context: ExecutionContext) -> None: ...

    def park(self, context: ExecutionContext) -> ExecutionContext: ...

    def open_contexts(self) -> list[ExecutionContext]: ...

    def cleanup_orphans(self, keep: Iterable[Path] = ()) -> list[str]: ...

    def health(self) -> list[str]: ...


def _copy_carry_files(project_dir: Path, target: Path, carry_files: Iterable[str]) -> None:
    for rel in carry_files:
        source = project_dir / rel
        if not source.is_file():
            continue
        destination = target / rel
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)


def _wants_removal(config: SchedulerConfig, disposition: str) -> bool:
    if disposition == DISPOSITION_MERGED:
        return config.disposal_policy == DISPOSAL_DELETE_ON_SUCCESS
    if disposition == DISPOSITION_FAILED:
        return not config.keep_failed_contexts
    # Conflicted and cancelled work keeps its branch; the directory goes.
    return True


class _Registry:
    """Branch ownership table: one live context per branch."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._contexts: dict[str, Optional[ExecutionContext]] = {}

    def reserve(self, branch: str, scope_id: str) -> None:
        with self._lock:
            if branch in self._contexts:
                current = self._contexts[branch]
                owner = current.owner if current else "a pending acquisition"
                raise ContextAcquisitionError(scope_id, f"branch {branch} is already owned by {owner}")
            self._contexts[branch] = None

    def bind(self, context: ExecutionContext) -> None:
        with self._lock:
            self._contexts[context.branch] = context

    def drop(self, branch: str) -> None:
        with self._lock:
            self._contexts.pop(branch, None)

    def contexts(self) -> list[ExecutionContext]:
        with self._lock:
            return [context for context in self._contexts.values() if context is not None]

    def roots(self) -> set[Path]:
        return {context.root.resolve() for context in self.contexts()}


class GitWorktreeManager:
    """One worktree and branch per scope, created from the integration line."""

    kind = "worktree"

    def __init__(self, project_dir: Path, config: SchedulerConfig):
        self.project_dir = project_dir.resolve()
        self.config = config
        self.root = self.project_dir / config.worktree_dir
        self._registry = _Registry()
        self._git = get_git_coordinator()
        _ensure_git_exclude(self.project_dir)

    def branch_for(self, scope_id: str) -> str:
        return f"{self.config.branch_prefix}{scope_id}"

    def acquire(self, scope_id: str, task_ids: Iterable[str]) -> ExecutionContext:
        """Create a worktree for `scope_id`.

        Raises:
            ContextAcquisitionError: If the branch name is invalid or already
                owned, or git cannot create the worktree. Nothing is left
                registered.
        """
        branch = self.branch_for(scope_id)
        path = self.root / scope_id
        if not _git_valid_branch_name(self.project_dir, branch):
            raise ContextAcquisitionError(scope_id, f"{branch!r} is not a valid branch name")
        self._registry.reserve(branch, scope_id)
        try:
            context = self._git.execute_git_operation(
                lambda: self._create(scope_id, branch, path, tuple(task_ids)),
                operation_name=f"acquire {branch}",
            )
        except Exception as exc:
            self._registry.drop(branch)
            self._git.execute_git_operation(
                lambda: self._remove(path, branch, delete_branch=True),
                operation_name=f"rollback {branch}",
            )
            if isinstance(exc, ContextAcquisitionError):
                raise
            raise ContextAcquisitionError(scope_id, str(exc)) from exc
        self._registry.bind(context)
        logger.info("Acquired worktree {} on branch {}", path, branch)
        return context

    def _create(self, scope_id: str, branch: str, path: Path, task_ids: tuple[str, ...]) -> ExecutionContext:
        base_ref = _git_head_sha(self.project_dir)
        if base_ref is None:
            raise ContextAcquisitionError(scope_id, "integration line has no commits")
        # A crash can leave the same workspace or branch behind; start fresh.
        self._remove(path, branch, delete_branch=True)
        path.parent.mkdir(parents=True, exist_ok=True)
        result = _run_git(self.project_dir, "worktree", "add", "-b", branch, str(path), base_ref)
        if result.returncode != 0:
            raise ContextAcquisitionError(scope_id, result.stderr.strip() or "git worktree add failed")
        if not path.is_dir():
            raise ContextAcquisitionError(scope_id, f"worktree path {path} was not created")
        _copy_carry_files(self.project_dir, path, self.config.carry_files)
        return ExecutionContext(
            context_id=f"ctx-{scope_id}",
            branch=branch,
            root=path,
            owner=scope_id,
            task_ids=task_ids,
            base_ref=base_ref,
            kind=self.kind,
            disposal_policy=self.config.disposal_policy,
        )

    def _remove(self, path: Path, branch: str, *, delete_branch: bool) -> None:
        if path.exists():
            _run_git(self.project_dir, "worktree", "remove", "--force", str(path))
            if path.exists():
                shutil.rmtree(path, ignore_errors=True)
        _run_git(self.project_dir, "worktree", "prune")
        if delete_branch and _git_branch_exists(self.project_dir, branch):
            _run_git(self.project_dir, "branch", "-D", branch)

    def commit(self, context: ExecutionContext, message: str) -> Optional[str]:
        """Commit everything in the context; None when there was nothing to commit."""
        sha = _git_commit_all(context.root, message)
        if sha:
            logger.debug("Committed {} on {}", sha[:12], context.branch)
        return sha

    def head(self, context: ExecutionContext) -> Optional[str]:
        return _git_head_sha(context.root)

    def reset(self, context: ExecutionContext) -> None:
        """Discard uncommitted changes so the next task starts from the last commit."""
        _run_git(context.root, "reset", "--hard", "-q")
        _run_git(context.root, "clean", "-fdq")

    def park(self, context: ExecutionContext) -> ExecutionContext:
        """Remove the worktree of a held-back context but keep its branch.

        The returned context stays valid for a later merge of the branch.
        """
        self._git.execute_git_operation(
            lambda: self._remove(context.root, context.branch, delete_branch=False),
            operation_name=f"park {context.branch}",
        )
        self._registry.drop(context.branch)
        logger.info("Parked {}; branch {} kept for a later merge", context.context_id, context.branch)
        return context

    def release(self, context: ExecutionContext, disposition: str) -> None:
        remove_dir = _wants_removal(self.config, disposition)
        delete_branch = remove_dir and disposition in (DISPOSITION_MERGED, DISPOSITION_FAILED)
        try:
            if remove_dir:
                self._git.execute_git_operation(
                    lambda: self._remove(context.root, context.branch, delete_branch=delete_branch),
                    operation_name=f"release {context.branch}",
                )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("Unable to dispose context {}: {}", context.context_id, exc)
        finally:
            self._registry.drop(context.branch)
        logger.debug(
            "Released {} ({}): workspace {}, branch {}",
            context.context_id,
            disposition,
            "removed" if remove_dir else "kept",
            "deleted" if delete_branch else "kept",
        )

    def open_contexts(self) -> list[ExecutionContext]:
        return self._registry.contexts()

    def cleanup_orphans(self, keep: Iterable[Path] = ()) -> list[str]:
        """Remove worktree directories no live context owns, except `keep`."""
        removed: list[str] = []
        if not self.root.exists():
            return removed
        live = self._registry.roots() | {Path(path).resolve() for path in keep}
        for child in sorted(self.root.iterdir()):
            if not child.is_dir() or child.resolve() in live:
                continue
            self._git.execute_git_operation(
                lambda child=child: self._remove(child, self.branch_for(child.name), delete_branch=False),
                operation_name=f"cleanup {child.name}",
            )
            removed.append(child.name)
        if removed:
            logger.info("Removed {} orphaned worktree(s): {}", len(removed), ", ".join(removed))
        _run_git(self.project_dir, "worktree", "prune")
        return removed

    def health(self) -> list[str]:
        """Return ids of registered contexts whose workspace disappeared."""
        return [context.context_id for context in self._registry.contexts() if not context.root.is_dir()]


class CopyTreeManager:
    """Directory-copy contexts for projects without git."""

    kind = "copy"

    def __init__(self, project_dir: Path, config: SchedulerConfig):
        self.project_dir = project_dir.resolve()
        self.config = config
        self.root = self.project_dir / config.worktree_dir
        self._registry = _Registry()

    def acquire(self, scope_id: str, task_ids: Iterable[str]) -> ExecutionContext:
        branch = f"{self.config.branch_prefix}{scope_id}"
        path = self.root / scope_id
        base = self.root / f".{scope_id}.base"
        committed = self.root / f".{scope_id}.head"
        self._registry.reserve(branch, scope_id)
        try:
            for stale in (path, base, committed):
                shutil.rmtree(stale, ignore_errors=True)
            self.root.mkdir(parents=True, exist_ok=True)
            shutil.copytree(self.project_dir, base, ignore=_copy_ignore(self.project_dir, self.root))
            shutil.copytree(base, path)
            shutil.copytree(base, committed)
            _copy_carry_files(self.project_dir, path, self.config.carry_files)
        except OSError as exc:
            self._registry.drop(branch)
            for stale in (path, base, committed):
                shutil.rmtree(stale, ignore_errors=True)
            raise ContextAcquisitionError(scope_id, str(exc)) from exc
        context = ExecutionContext(
            context_id=f"ctx-{scope_id}",
            branch=branch,
            root=path,
            owner=scope_id,
            task_ids=tuple(task_ids),
            kind=self.kind,
            disposal_policy=self.config.disposal_policy,
            extra={"base_dir": str(base), "head_dir": str(committed)},
        )
        self._registry.bind(context)
        logger.info("Acquired copy context {}", path)
        return context

    def commit(self, context: ExecutionContext, message: str) -> Optional[str]:
        head = Path(context.extra["head_dir"])
        shutil.rmtree(head, ignore_errors=True)
        shutil.copytree(context.root, head, ignore=shutil.ignore_patterns(STATE_DIR_NAME))
        logger.debug("Snapshot {} ({})", context.context_id, message)
        return None

    def reset(self, context: ExecutionContext) -> None:
        head = Path(context.extra["head_dir"])
        shutil.rmtree(context.root, ignore_errors=True)
        shutil.copytree(head, context.root)
        _copy_carry_files(self.project_dir, context.root, self.config.carry_files)

    def park(self, context: ExecutionContext) -> ExecutionContext:
        """Drop the working copy; the base and committed snapshots stay for a later merge."""
        shutil.rmtree(context.root, ignore_errors=True)
        self._registry.drop(context.branch)
        return replace(context, root=Path(context.extra["head_dir"]))

    def release(self, context: ExecutionContext, disposition: str) -> None:
        try:
            if _wants_removal(self.config, disposition):
                for key in ("base_dir", "head_dir"):
                    shutil.rmtree(context.extra.get(key, ""), ignore_errors=True)
                shutil.rmtree(context.root, ignore_errors=True)
        finally:
            self._registry.drop(context.branch)

    def open_contexts(self) -> list[ExecutionContext]:
        return self._registry.contexts()

    def cleanup_orphans(self, keep: Iterable[Path] = ()) -> list[str]:
        removed: list[str] = []
        if not self.root.exists():
            return removed
        live = self._registry.roots() | {Path(path).resolve() for path in keep}
        for child in sorted(self.root.iterdir()):
            if not child.is_dir() or child.resolve() in live:
                continue
            if child.name.startswith(".") and child.name.endswith((".base", ".head")):
                scope = child.name[1:].rsplit(".", 1)[0]
                if (self.root / scope).resolve() in live:
                    continue
            shutil.rmtree(child, ignore_errors=True)
            removed.append(child.name)
        return removed

    def health(self) -> list[str]:
        return [context.context_id for context in self._registry.contexts() if not context.root.is_dir()]
