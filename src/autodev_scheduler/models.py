"""Define task nodes, execution contexts, conflicts and collaborator results."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .constants import EVIDENCE_SUMMARY_MAX_CHARS
from .utils import _now_iso


def _short_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


class TaskStatus(str, Enum):
    """Lifecycle status of a task node."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"
    BLOCKED = "blocked"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def in_flight(self) -> bool:
        return self in IN_FLIGHT_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.FAILED, TaskStatus.BLOCKED})
IN_FLIGHT_STATUSES = frozenset({TaskStatus.READY, TaskStatus.RUNNING, TaskStatus.VERIFYING})


@dataclass(frozen=True)
class VerificationDirective:
    """Opaque verification command owned by the verification collaborator."""

    command: Optional[str] = None
    expect_exit: int = 0
    timeout_seconds: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "expect_exit": int(self.expect_exit),
            "timeout_seconds": self.timeout_seconds,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "VerificationDirective":
        data = data or {}
        timeout = data.get("timeout_seconds")
        return cls(
            command=data.get("command"),
            expect_exit=int(data.get("expect_exit", 0) or 0),
            timeout_seconds=float(timeout) if timeout is not None else None,
        )


@dataclass(frozen=True)
class EvidenceEntry:
    attempt: int
    kind: str
    passed: bool
    summary: str = ""
    captured_at: str = field(default_factory=_now_iso)
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt,
            "kind": self.kind,
            "passed": self.passed,
            "summary": self.summary,
            "captured_at": self.captured_at,
            "detail": dict(self.detail),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EvidenceEntry":
        return cls(
            attempt=int(data.get("attempt", 0) or 0),
            kind=str(data.get("kind", "")),
            passed=bool(data.get("passed", False)),
            summary=str(data.get("summary", "") or ""),
            captured_at=str(data.get("captured_at") or _now_iso()),
            detail=dict(data.get("detail") or {}),
        )


@dataclass(frozen=True)
class EvidenceRecord:
    """Append-only trail of what happened while a task ran."""

    entries: tuple[EvidenceEntry, ...] = ()

    def append(self, entry: EvidenceEntry) -> "EvidenceRecord":
        summary = entry.summary
        if len(summary) > EVIDENCE_SUMMARY_MAX_CHARS:
            entry = replace(entry, summary=summary[-EVIDENCE_SUMMARY_MAX_CHARS:])
        return EvidenceRecord(entries=self.entries + (entry,))

    def extend(self, other: "EvidenceRecord") -> "EvidenceRecord":
        record = self
        for entry in other.entries:
            record = record.append(entry)
        return record

    @property
    def last(self) -> Optional[EvidenceEntry]:
        return self.entries[-1] if self.entries else None

    def failures(self) -> list[EvidenceEntry]:
        return [entry for entry in self.entries if not entry.passed]

    def __len__(self) -> int:
        return len(self.entries)

    def to_list(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self.entries]

    @classmethod
    def from_list(cls, data: Optional[list[dict[str, Any]]]) -> "EvidenceRecord":
        return cls(entries=tuple(EvidenceEntry.from_dict(item) for item in (data or [])))


@dataclass(frozen=True)
class TaskNode:
    """A single schedulable unit of work."""

    id: str
    description: str = ""
    file_targets: tuple[str, ...] = ()
    complexity: int = 3
    dependencies: tuple[str, ...] = ()
    status: TaskStatus = TaskStatus.PENDING
    verification: VerificationDirective = field(default_factory=VerificationDirective)
    evidence: EvidenceRecord = field(default_factory=EvidenceRecord)
    execute: Optional[str] = None
    attempts: int = 0
    retries_used: int = 0
    block_reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "file_targets": list(self.file_targets),
            "complexity": int(self.complexity),
            "dependencies": list(self.dependencies),
            "status": self.status.value,
            "verification": self.verification.to_dict(),
            "evidence": self.evidence.to_list(),
            "execute": self.execute,
            "attempts": int(self.attempts),
            "retries_used": int(self.retries_used),
            "block_reason": self.block_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskNode":
        try:
            status = TaskStatus(str(data.get("status", TaskStatus.PENDING.value)))
        except ValueError:
            status = TaskStatus.PENDING
        return cls(
            id=str(data.get("id", "")),
            description=str(data.get("description", "") or ""),
            file_targets=tuple(data.get("file_targets") or ()),
            complexity=int(data.get("complexity", 3) or 3),
            dependencies=tuple(data.get("dependencies") or ()),
            status=status,
            verification=VerificationDirective.from_dict(data.get("verification")),
            evidence=EvidenceRecord.from_list(data.get("evidence")),
            execute=data.get("execute"),
            attempts=int(data.get("attempts", 0) or 0),
            retries_used=int(data.get("retries_used", 0) or 0),
            block_reason=data.get("block_reason"),
        )


@dataclass
class ExecutionContext:
    """An isolated workspace bound to exactly one branch of work."""

    context_id: str
    branch: str
    root: Path
    owner: str
    task_ids: tuple[str, ...]
    base_ref: Optional[str] = None
    kind: str = "worktree"
    disposal_policy: str = "delete-on-success"
    created_at: str = field(default_factory=_now_iso)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def shared(self) -> bool:
        return len(self.task_ids) > 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "context_id": self.context_id,
            "branch": self.branch,
            "root": str(self.root),
            "owner": self.owner,
            "task_ids": list(self.task_ids),
            "base_ref": self.base_ref,
            "kind": self.kind,
            "disposal_policy": self.disposal_policy,
            "created_at": self.created_at,
            "extra": dict(self.extra),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionContext":
        return cls(
            context_id=str(data["context_id"]),
            branch=str(data["branch"]),
            root=Path(str(data["root"])),
            owner=str(data.get("owner") or data["context_id"]),
            task_ids=tuple(data.get("task_ids") or ()),
            base_ref=data.get("base_ref"),
            kind=str(data.get("kind") or "worktree"),
            disposal_policy=str(data.get("disposal_policy") or "delete-on-success"),
            created_at=str(data.get("created_at") or _now_iso()),
            extra=dict(data.get("extra") or {}),
        )


class ConflictClass(str, Enum):
    ADDITIVE = "additive"
    OVERLAPPING_NON_SEMANTIC = "overlapping_non_semantic"
    SEMANTIC = "semantic"


class ResolutionKind(str, Enum):
    AUTO_RESOLVED = "auto_resolved"
    ESCALATED = "escalated"
    USER_RESOLVED = "user_resolved"


@dataclass
class Resolution:
    kind: ResolutionKind
    strategy: Optional[str] = None
    choice: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "strategy": self.strategy, "choice": self.choice}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Resolution":
        return cls(
            kind=ResolutionKind(str(data.get("kind", ResolutionKind.ESCALATED.value))),
            strategy=data.get("strategy"),
            choice=data.get("choice"),
        )


@dataclass
class ResolutionOption:
    name: str
    description: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "description": self.description}


@dataclass
class ConflictRecord:
    """Outcome of reconciling one overlapping region between branches."""

    path: str
    branches: list[str]
    classification: ConflictClass
    resolution: Resolution
    region: tuple[int, int] = (0, 0)
    task_ids: list[str] = field(default_factory=list)
    candidates: dict[str, str] = field(default_factory=dict)
    options: list[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: _short_id("conflict"))
    created_at: str = field(default_factory=_now_iso)

    @property
    def unresolved(self) -> bool:
        return self.resolution.kind == ResolutionKind.ESCALATED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "path": self.path,
            "branches": list(self.branches),
            "classification": self.classification.value,
            "resolution": self.resolution.to_dict(),
            "region": list(self.region),
            "task_ids": list(self.task_ids),
            "candidates": dict(self.candidates),
            "options": list(self.options),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConflictRecord":
        region = list(data.get("region") or [0, 0])
        return cls(
            id=str(data.get("id") or _short_id("conflict")),
            path=str(data.get("path", "")),
            branches=list(data.get("branches") or []),
            classification=ConflictClass(str(data.get("classification", ConflictClass.SEMANTIC.value))),
            resolution=Resolution.from_dict(dict(data.get("resolution") or {})),
            region=(int(region[0]), int(region[1])),
            task_ids=list(data.get("task_ids") or []),
            candidates=dict(data.get("candidates") or {}),
            options=list(data.get("options") or []),
            created_at=str(data.get("created_at") or _now_iso()),
        )


@dataclass
class ConflictEscalation:
    """Structured prompt sent to an external decision-maker."""

    conflict_id: str
    path: str
    region: tuple[int, int]
    base_text: str
    candidates: dict[str, str]
    options: list[ResolutionOption]
    task_ids: list[str] = field(default_factory=list)

    def option_names(self) -> list[str]:
        return [option.name for option in self.options]

    def to_dict(self) -> dict[str, Any]:
        return {
            "conflict_id": self.conflict_id,
            "path": self.path,
            "region": list(self.region),
            "base_text": self.base_text,
            "candidates": dict(self.candidates),
            "options": [option.to_dict() for option in self.options],
            "task_ids": list(self.task_ids),
        }


@dataclass
class ExecutionResult:
    """What the execution collaborator reports back."""

    changed_files: list[str] = field(default_factory=list)
    usage: float = 0.0
    output: str = ""
    detail: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, value: Any) -> "ExecutionResult":
        if value is None:
            return cls()
        if isinstance(value, ExecutionResult):
            return value
        if isinstance(value, dict):
            return cls(
                changed_files=list(value.get("changed_files") or []),
                usage=float(value.get("usage", 0.0) or 0.0),
                output=str(value.get("output", "") or ""),
                detail=dict(value.get("detail") or {}),
            )
        return cls(output=str(value))


@dataclass
class VerificationOutcome:
    passed: bool
    summary: str = ""
    timed_out: bool = False
    detail: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, value: Any) -> "VerificationOutcome":
        if isinstance(value, VerificationOutcome):
            return value
        if isinstance(value, bool):
            return cls(passed=value)
        if isinstance(value, tuple) and len(value) == 2:
            return cls(passed=bool(value[0]), summary=str(value[1] or ""))
        if isinstance(value, dict):
            return cls(
                passed=bool(value.get("passed", False)),
                summary=str(value.get("summary", "") or ""),
                timed_out=bool(value.get("timed_out", False)),
                detail=dict(value.get("detail") or {}),
            )
        raise TypeError(f"Unsupported verification result: {type(value).__name__}")


@dataclass
class FailureReport:
    """User-facing description of why a task or scope did not finish."""

    task_ids: list[str]
    kind: str
    message: str
    retryable: bool = False
    resumable: bool = False
    needs_decision: bool = False
    hints: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_ids": list(self.task_ids),
            "kind": self.kind,
            "message": self.message,
            "retryable": self.retryable,
            "resumable": self.resumable,
            "needs_decision": self.needs_decision,
            "hints": list(self.hints),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FailureReport":
        return cls(
            task_ids=list(data.get("task_ids") or []),
            kind=str(data.get("kind", "")),
            message=str(data.get("message", "")),
            retryable=bool(data.get("retryable", False)),
            resumable=bool(data.get("resumable", False)),
            needs_decision=bool(data.get("needs_decision", False)),
            hints=list(data.get("hints") or []),
        )


@dataclass
class TaskResult:
    task_id: str
    status: TaskStatus
    attempts: int
    evidence: EvidenceRecord
    failure: Optional[FailureReport] = None
    changed_files: list[str] = field(default_factory=list)
    usage: float = 0.0
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == TaskStatus.DONE
