"""Structured run summaries and their rich console rendering."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from .checkpoint import ResumePointer
from .graph import ExecutionPlan, TaskGraph
from .models import ConflictRecord, FailureReport, TaskStatus

RUN_COMPLETED = "completed"
RUN_PARTIAL = "partial"
RUN_STALLED = "stalled"
RUN_CANCELLED = "cancelled"
RUN_HANDOFF = "handoff"

_EXIT_CODES = {
    RUN_COMPLETED: 0,
    RUN_PARTIAL: 2,
    RUN_STALLED: 2,
    RUN_CANCELLED: 3,
    RUN_HANDOFF: 3,
}

_STATUS_STYLES = {
    TaskStatus.DONE: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.BLOCKED: "yellow",
    TaskStatus.PENDING: "dim",
}


@dataclass
class RunReport:
    """Terminal summary of one scheduling session."""

    status: str
    graph: TaskGraph
    failures: list[FailureReport] = field(default_factory=list)
    conflicts: list[ConflictRecord] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    resume_pointer: Optional[ResumePointer] = None
    checkpoint_path: Optional[str] = None
    budget: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    rounds: int = 0

    @property
    def task_statuses(self) -> dict[str, TaskStatus]:
        return self.graph.statuses()

    @property
    def unresolved_conflicts(self) -> list[ConflictRecord]:
        return [record for record in self.conflicts if record.unresolved]

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES.get(self.status, 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "tasks": {
                node_id: {
                    "status": node.status.value,
                    "attempts": node.attempts,
                    "block_reason": node.block_reason,
                }
                for node_id, node in self.graph.nodes.items()
            },
            "failures": [failure.to_dict() for failure in self.failures],
            "unresolved_conflicts": [record.to_dict() for record in self.unresolved_conflicts],
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "resume_pointer": self.resume_pointer.to_dict() if self.resume_pointer else None,
            "checkpoint": self.checkpoint_path,
            "budget": dict(self.budget),
            "warnings": list(self.warnings),
            "rounds": self.rounds,
        }


def render_plan(graph: TaskGraph, plan: ExecutionPlan, console: Optional[Console] = None) -> None:
    console = console or Console()
    tree = Tree(f"[bold]Execution plan[/bold]: {plan.total_tasks} task(s), {len(plan.batches)} group(s)")
    for index, batch in enumerate(plan.batches, start=1):
        branch = tree.add(f"Group {index} ({len(batch)} task(s))")
        for node_id in batch:
            node = graph[node_id]
            deps = f" after {', '.join(node.dependencies)}" if node.dependencies else ""
            branch.add(f"[cyan]{node_id}[/cyan] complexity={node.complexity}{deps}")
    console.print(tree)


def render_report(report: RunReport, console: Optional[Console] = None) -> None:
    console = console or Console()
    table = Table(title=f"Run {report.status}")
    table.add_column("Task", style="cyan")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Reason")
    for node_id, node in report.graph.nodes.items():
        style = _STATUS_STYLES.get(node.status, "white")
        table.add_row(node_id, f"[{style}]{node.status.value}[/{style}]", str(node.attempts), node.block_reason or "")
    console.print(table)

    for failure in report.failures:
        flags = [
            name
            for name, flag in (
                ("retryable", failure.retryable),
                ("resumable", failure.resumable),
                ("needs decision", failure.needs_decision),
            )
            if flag
        ]
        suffix = f" [{', '.join(flags)}]" if flags else ""
        console.print(f"[bold red]{failure.kind}[/bold red] {', '.join(failure.task_ids)}: {failure.message}{suffix}")
        for hint in failure.hints:
            console.print(f"  [dim]- {hint}[/dim]")

    unresolved = report.unresolved_conflicts
    if unresolved:
        conflicts = Table(title="Unresolved conflicts")
        conflicts.add_column("Path")
        conflicts.add_column("Branches")
        conflicts.add_column("Lines")
        conflicts.add_column("Options")
        for record in unresolved:
            conflicts.add_row(
                record.path,
                " vs ".join(record.branches),
                f"{record.region[0]}-{record.region[1]}",
                ", ".join(record.options),
            )
        console.print(conflicts)

    for warning in report.warnings:
        console.print(f"[bold yellow]warning:[/bold yellow] {warning}")
    if report.resume_pointer and report.status != RUN_COMPLETED:
        console.print(
            f"Resume at round {report.resume_pointer.round}: {', '.join(report.resume_pointer.next_group) or '(recompute)'}"
        )
    console.print(f"[dim]Elapsed {report.elapsed_seconds:.1f}s[/dim]")
