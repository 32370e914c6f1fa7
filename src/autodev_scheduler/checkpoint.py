"""Durable checkpoints of orchestration progress.

Each checkpoint is written to a fresh `checkpoints/ckpt-<seq>.yaml` file;
only after that file is fully on disk does `CURRENT.json` switch to it.
A crash mid-write therefore leaves the previous checkpoint current.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from loguru import logger

from .constants import (
    CHECKPOINT_FORMAT_VERSION,
    CHECKPOINT_POINTER_FILE,
    CHECKPOINTS_DIR,
    DEFAULT_CHECKPOINT_WRITE_RETRIES,
    DEFAULT_CHECKPOINTS_TO_KEEP,
)
from .errors import CheckpointWriteError, GraphError
from .graph import TaskGraph
from .integration import BranchResult
from .io_utils import _atomic_write_json, _atomic_write_yaml, _load_data_with_error
from .models import ConflictRecord, EvidenceRecord, FailureReport, TaskStatus
from .utils import _now_iso, retry_call

_CHECKPOINT_RE = re.compile(r"^ckpt-(\d+)\.yaml$")


@dataclass
class ResumePointer:
    """Where scheduling continues: the round number and the group it would run."""

    round: int = 0
    next_group: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"round": self.round, "next_group": list(self.next_group)}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ResumePointer":
        data = data or {}
        return cls(round=int(data.get("round", 0) or 0), next_group=list(data.get("next_group") or []))


@dataclass
class Checkpoint:
    graph: TaskGraph
    resume_pointer: ResumePointer
    evidence: dict[str, EvidenceRecord] = field(default_factory=dict)
    conflicts: list[ConflictRecord] = field(default_factory=list)
    failures: list[FailureReport] = field(default_factory=list)
    held: list[BranchResult] = field(default_factory=list)
    budget: dict[str, Any] = field(default_factory=dict)
    reason: str = "group"
    next_actions: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=_now_iso)
    sequence: int = 0
    path: Optional[Path] = None

    @property
    def fingerprint(self) -> str:
        return self.graph.fingerprint()

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": CHECKPOINT_FORMAT_VERSION,
            "sequence": self.sequence,
            "created_at": self.created_at,
            "reason": self.reason,
            "fingerprint": self.fingerprint,
            "resume_pointer": self.resume_pointer.to_dict(),
            "budget": dict(self.budget),
            "graph": self.graph.to_dict(),
            "evidence": {key: record.to_list() for key, record in self.evidence.items()},
            "conflicts": [record.to_dict() for record in self.conflicts],
            "failures": [failure.to_dict() for failure in self.failures],
            "held": [branch.to_dict() for branch in self.held],
            "next_actions": dict(self.next_actions),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], path: Optional[Path] = None) -> "Checkpoint":
        version = int(data.get("version", 0) or 0)
        if version != CHECKPOINT_FORMAT_VERSION:
            raise ValueError(f"unsupported checkpoint version {version}")
        return cls(
            graph=TaskGraph.from_dict(data.get("graph") or {}),
            resume_pointer=ResumePointer.from_dict(data.get("resume_pointer")),
            evidence={str(k): EvidenceRecord.from_list(v) for k, v in (data.get("evidence") or {}).items()},
            conflicts=[ConflictRecord.from_dict(item) for item in (data.get("conflicts") or [])],
            failures=[FailureReport.from_dict(item) for item in (data.get("failures") or [])],
            held=[BranchResult.from_dict(item) for item in (data.get("held") or [])],
            budget=dict(data.get("budget") or {}),
            reason=str(data.get("reason") or "group"),
            next_actions=dict(data.get("next_actions") or {}),
            created_at=str(data.get("created_at") or _now_iso()),
            sequence=int(data.get("sequence", 0) or 0),
            path=path,
        )


def reset_in_flight(graph: TaskGraph) -> tuple[TaskGraph, list[str]]:
    """Move every Ready/Running/Verifying node back to Pending.

    Partial work inside an execution context is never trusted, so such
    nodes are re-run from scratch.
    """
    reset: list[str] = []
    for node_id, node in graph.nodes.items():
        if node.status.in_flight:
            graph = graph.apply(node_id, TaskStatus.PENDING, retry=True)
            reset.append(node_id)
    return graph, reset


class CheckpointManager:
    def __init__(
        self,
        state_dir: Path,
        *,
        write_retries: int = DEFAULT_CHECKPOINT_WRITE_RETRIES,
        keep: int = DEFAULT_CHECKPOINTS_TO_KEEP,
        retry_delay: float = 0.1,
    ):
        self.state_dir = state_dir
        self.directory = state_dir / CHECKPOINTS_DIR
        self.pointer_path = self.directory / CHECKPOINT_POINTER_FILE
        self.write_retries = write_retries
        self.keep = keep
        self.retry_delay = retry_delay

    def _files(self) -> list[tuple[int, Path]]:
        if not self.directory.exists():
            return []
        found = []
        for path in self.directory.iterdir():
            match = _CHECKPOINT_RE.match(path.name)
            if match:
                found.append((int(match.group(1)), path))
        return sorted(found)

    def _next_sequence(self) -> int:
        files = self._files()
        return files[-1][0] + 1 if files else 1

    def snapshot(
        self,
        graph: TaskGraph,
        evidence: Optional[Mapping[str, EvidenceRecord]],
        resume_pointer: ResumePointer,
        *,
        conflicts: Optional[list[ConflictRecord]] = None,
        failures: Optional[list[FailureReport]] = None,
        held: Optional[list[BranchResult]] = None,
        budget: Optional[dict[str, Any]] = None,
        reason: str = "group",
        next_actions: Optional[dict[str, Any]] = None,
    ) -> Checkpoint:
        """Write a new checkpoint and make it current.

        Raises:
            CheckpointWriteError: When every write attempt failed. The previous
                checkpoint stays current.
        """
        checkpoint = Checkpoint(
            graph=graph,
            resume_pointer=resume_pointer,
            evidence=dict(evidence or {}),
            conflicts=list(conflicts or []),
            failures=list(failures or []),
            held=list(held or []),
            budget=dict(budget or {}),
            reason=reason,
            next_actions=dict(next_actions or {}),
        )

        def write() -> Path:
            checkpoint.sequence = self._next_sequence()
            path = self.directory / f"ckpt-{checkpoint.sequence:06d}.yaml"
            _atomic_write_yaml(path, checkpoint.to_dict())
            _atomic_write_json(
                self.pointer_path,
                {"current": path.name, "sequence": checkpoint.sequence, "created_at": checkpoint.created_at},
            )
            return path

        try:
            checkpoint.path = retry_call(
                write,
                attempts=self.write_retries + 1,
                retry_on=(OSError, yaml.YAMLError),
                initial_delay=self.retry_delay,
                jitter=False,
                label="checkpoint write",
            )
        except (OSError, yaml.YAMLError) as exc:
            raise CheckpointWriteError(f"Unable to write checkpoint: {exc}") from exc
        self._prune()
        logger.info("Checkpoint {} written ({})", checkpoint.sequence, reason)
        return checkpoint

    def _prune(self) -> None:
        files = self._files()
        for _, path in files[: max(0, len(files) - self.keep)]:
            try:
                path.unlink()
            except OSError as exc:
                logger.debug("Unable to prune {}: {}", path.name, exc)

    def _load(self, path: Path) -> Optional[Checkpoint]:
        data, err = _load_data_with_error(path, {})
        if err or not data:
            logger.warning("Skipping unreadable checkpoint {}: {}", path.name, err or "empty")
            return None
        try:
            return Checkpoint.from_dict(data, path=path)
        except (GraphError, ValueError, TypeError, KeyError) as exc:
            logger.warning("Skipping invalid checkpoint {}: {}", path.name, exc)
            return None

    def load_current(self) -> Optional[Checkpoint]:
        """Return the newest readable checkpoint exactly as written."""
        candidates: list[Path] = []
        pointer, err = _load_data_with_error(self.pointer_path, {})
        if err:
            logger.warning("Checkpoint pointer unreadable: {}", err)
        current = pointer.get("current") if isinstance(pointer, dict) else None
        if current:
            candidates.append(self.directory / str(current))
        candidates.extend(path for _, path in reversed(self._files()) if path not in candidates)
        for path in candidates:
            if not path.exists():
                continue
            checkpoint = self._load(path)
            if checkpoint is not None:
                return checkpoint
        return None

    def restore(self) -> Optional[Checkpoint]:
        """Load the current checkpoint ready for scheduling.

        Nodes recorded in flight are reset to Pending. Returns None on a cold
        start.
        """
        checkpoint = self.load_current()
        if checkpoint is None:
            return None
        checkpoint.graph, reset = reset_in_flight(checkpoint.graph)
        if reset:
            logger.info("Reset {} in-flight task(s) to pending: {}", len(reset), ", ".join(reset))
        return checkpoint

    def clear(self) -> None:
        for _, path in self._files():
            path.unlink(missing_ok=True)
        self.pointer_path.unlink(missing_ok=True)
