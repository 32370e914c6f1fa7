"""Integrate finished branches into the project's main line.

`GitIntegrator` merges worktree branches with `git merge --no-ff
--no-commit`; when git reports conflicted paths, each one is rebuilt from the
index stages (`:1:` base, `:2:` ours, `:3:` theirs) by the conflict resolver.
A branch with an undecided semantic conflict is aborted with `git merge
--abort` and its branch is kept for manual resolution.

`DirectoryIntegrator` does the same for copy contexts by comparing each
context against the snapshot it was created from.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol

from loguru import logger

from .constants import STATE_DIR_NAME
from .git_utils import (
    _git_conflicted_files,
    _git_current_branch,
    _git_head_sha,
    _git_identity_env,
    _git_merge_in_progress,
    _git_show,
    _run_git,
    get_git_coordinator,
)
from .models import ExecutionContext
from .resolver import MAIN_LINE, Decide, FileMerge, IntegrationOutcome, merge_file


@dataclass
class BranchResult:
    """A finished context waiting to be integrated."""

    context: ExecutionContext
    complexity: int
    task_ids: list[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.context.branch

    def to_dict(self) -> dict[str, Any]:
        return {"context": self.context.to_dict(), "complexity": self.complexity, "task_ids": list(self.task_ids)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BranchResult":
        return cls(
            context=ExecutionContext.from_dict(dict(data.get("context") or {})),
            complexity=int(data.get("complexity", 3) or 3),
            task_ids=[str(task_id) for task_id in data.get("task_ids") or []],
        )


class Integrator(Protocol):
    def integrate(self, branches: list[BranchResult]) -> IntegrationOutcome: ...


def _ordered(branches: list[BranchResult]) -> list[BranchResult]:
    return sorted(branches, key=lambda branch: (branch.complexity, branch.name))


def _reject(outcome: IntegrationOutcome, branch: BranchResult, merges: list[FileMerge]) -> None:
    outcome.rejected.append(branch.name)
    for merge in merges:
        outcome.conflicts.extend(record for record in merge.records if record.unresolved)
    logger.warning("Branch {} held back: unresolved semantic conflict", branch.name)


class GitIntegrator:
    def __init__(self, project_dir: Path, decide: Optional[Decide] = None):
        self.project_dir = project_dir.resolve()
        self.decide = decide
        self._git = get_git_coordinator()

    def integrate(self, branches: list[BranchResult]) -> IntegrationOutcome:
        outcome = IntegrationOutcome(merged={})
        for branch in _ordered(branches):
            self._git.execute_git_operation(
                lambda branch=branch: self._merge_one(branch, outcome),
                operation_name=f"merge {branch.name}",
            )
        logger.info(
            "Integration summary: merged [{}], held back [{}], failed [{}]",
            ", ".join(outcome.integrated),
            ", ".join(outcome.rejected),
            ", ".join(outcome.failed),
        )
        return outcome

    def _commit(self, message: str) -> None:
        _run_git(self.project_dir, "commit", "-q", "-m", message, check=True, env=_git_identity_env(self.project_dir))

    def _merge_one(self, branch: BranchResult, outcome: IntegrationOutcome) -> None:
        head = _git_head_sha(self.project_dir, f"refs/heads/{branch.name}")
        if head is None:
            outcome.failed[branch.name] = "branch no longer exists"
            return
        if head == branch.context.base_ref:
            # Nothing was committed on the branch.
            outcome.integrated.append(branch.name)
            return
        message = f"merge {branch.name}"
        result = _run_git(
            self.project_dir,
            "merge",
            "--no-ff",
            "--no-commit",
            branch.name,
            env=_git_identity_env(self.project_dir),
        )
        if result.returncode == 0:
            if _git_merge_in_progress(self.project_dir):
                self._commit(message)
            outcome.integrated.append(branch.name)
            logger.info("Merged {}", branch.name)
            return

        conflicted = _git_conflicted_files(self.project_dir)
        if not conflicted:
            _run_git(self.project_dir, "merge", "--abort")
            detail = (result.stderr or result.stdout).strip() or "git merge failed"
            outcome.failed[branch.name] = detail
            logger.error("Merge of {} failed: {}", branch.name, detail)
            return

        first = _git_current_branch(self.project_dir) or MAIN_LINE
        merges = [
            merge_file(
                path,
                _git_show(self.project_dir, f":1:{path}"),
                _git_show(self.project_dir, f":2:{path}"),
                _git_show(self.project_dir, f":3:{path}"),
                first=first,
                second=branch.name,
                task_ids=branch.task_ids,
                decide=self.decide,
            )
            for path in conflicted
        ]
        if not all(merge.clean for merge in merges):
            _run_git(self.project_dir, "merge", "--abort")
            _reject(outcome, branch, merges)
            return
        for merge in merges:
            outcome.conflicts.extend(merge.records)
            outcome.merged[merge.path] = merge.text
            target = self.project_dir / merge.path
            if merge.text is None:
                _run_git(self.project_dir, "rm", "-q", "-f", "--", merge.path, check=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(merge.text, encoding="utf-8", errors="surrogateescape")
            _run_git(self.project_dir, "add", "--", merge.path, check=True)
        self._commit(message)
        outcome.integrated.append(branch.name)
        logger.info("Merged {} after reconciling {} file(s)", branch.name, len(merges))


def _read_text(path: Path) -> Optional[str]:
    if not path.is_file():
        return None
    return path.read_bytes().decode("utf-8", errors="surrogateescape")


def _walk(root: Path) -> set[str]:
    found: set[str] = set()
    if not root.is_dir():
        return found
    for current, dirs, files in os.walk(root):
        dirs[:] = [name for name in dirs if name not in (STATE_DIR_NAME, ".git")]
        for name in files:
            found.add(Path(current, name).relative_to(root).as_posix())
    return found


def _changed_paths(base_dir: Path, root: Path) -> list[str]:
    changed = []
    for rel in sorted(_walk(base_dir) | _walk(root)):
        if _read_text(base_dir / rel) != _read_text(root / rel):
            changed.append(rel)
    return changed


class DirectoryIntegrator:
    """Integrate copy contexts straight into the project directory."""

    def __init__(self, project_dir: Path, decide: Optional[Decide] = None):
        self.project_dir = project_dir.resolve()
        self.decide = decide

    def integrate(self, branches: list[BranchResult]) -> IntegrationOutcome:
        outcome = IntegrationOutcome(merged={})
        last_writer: dict[str, str] = {}
        for branch in _ordered(branches):
            base_dir = Path(branch.context.extra.get("base_dir", ""))
            root = branch.context.root
            if not base_dir.is_dir() or not root.is_dir():
                outcome.failed[branch.name] = "context snapshot no longer exists"
                logger.error("Cannot integrate {}: its snapshot is gone", branch.name)
                continue
            merges = [
                merge_file(
                    rel,
                    _read_text(base_dir / rel),
                    _read_text(self.project_dir / rel),
                    _read_text(root / rel),
                    first=last_writer.get(rel, MAIN_LINE),
                    second=branch.name,
                    task_ids=branch.task_ids,
                    decide=self.decide,
                )
                for rel in _changed_paths(base_dir, root)
            ]
            if not all(merge.clean for merge in merges):
                _reject(outcome, branch, merges)
                continue
            for merge in merges:
                target = self.project_dir / merge.path
                if merge.text is None:
                    if target.exists():
                        target.unlink()
                else:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    target.write_bytes(merge.text.encode("utf-8", errors="surrogateescape"))
                outcome.merged[merge.path] = merge.text
                outcome.conflicts.extend(merge.records)
                last_writer[merge.path] = branch.name
            outcome.integrated.append(branch.name)
        return outcome
