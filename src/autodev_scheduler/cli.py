from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

from loguru import logger
from rich.console import Console

from .config import load_config
from .constants import STATE_DIR_NAME
from .errors import OrchestratorError
from .escalation import InteractiveChannel, pending_decisions, record_decision
from .logging_utils import _configure_logging
from .orchestrator import Orchestrator
from .reporting import render_plan, render_report
from .resolver import RESOLUTION_OPTIONS
from .signals import request_cancel, request_handoff


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _tasks_path(args: argparse.Namespace) -> Path:
    path = Path(args.tasks).expanduser()
    return path if path.is_absolute() else (Path.cwd() / path).resolve()


def _orchestrator(args: argparse.Namespace, project_dir: Path, **kwargs) -> Orchestrator:
    config = load_config(project_dir).with_overrides(
        max_parallelism=getattr(args, "max_parallel", None),
        max_retries=getattr(args, "max_retries", None),
        task_timeout_seconds=getattr(args, "timeout", None),
        sequential_threshold=getattr(args, "sequential_threshold", None),
        session_budget=getattr(args, "budget", None),
    )
    return Orchestrator(project_dir, config=config, **kwargs)


def _plan(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    orchestrator = _orchestrator(args, project_dir)
    graph, plan = orchestrator.plan(_tasks_path(args))
    if args.json:
        sys.stdout.write(json.dumps({"batches": plan.batches, "total_tasks": plan.total_tasks}, indent=2) + "\n")
    else:
        render_plan(graph, plan, Console())
    return 0


def _run(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    console = Console()
    decide = InteractiveChannel(console) if args.interactive else None
    orchestrator = _orchestrator(args, project_dir, decide=decide)
    try:
        report = orchestrator.run(
            _tasks_path(args),
            resume=args.resume,
            retry_failed=args.retry_failed,
        )
    except KeyboardInterrupt:
        sys.stderr.write("Interrupted; the last checkpoint is kept.\n")
        return 130
    if args.json:
        sys.stdout.write(json.dumps(report.to_dict(), indent=2) + "\n")
    else:
        render_report(report, console)
    return report.exit_code


def _status(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    checkpoint = Orchestrator(project_dir).status()
    if checkpoint is None:
        sys.stdout.write("No checkpoint found.\n")
        return 1
    decisions = pending_decisions(project_dir)
    if args.json:
        payload = checkpoint.to_dict()
        payload["pending_decisions"] = decisions
        sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")
        return 0
    console = Console()
    console.print(
        f"Checkpoint {checkpoint.sequence} ({checkpoint.reason}) at {checkpoint.created_at}, "
        f"round {checkpoint.resume_pointer.round}"
    )
    for node_id, node in checkpoint.graph.nodes.items():
        reason = f" ({node.block_reason})" if node.block_reason else ""
        console.print(f"  {node_id}: {node.status.value}{reason}")
    for record in checkpoint.conflicts:
        if record.unresolved:
            decided = decisions.get(record.path, {}).get("choice")
            console.print(f"  conflict {record.path}: {', '.join(record.options)}" + (f" -> {decided}" if decided else ""))
    for branch in checkpoint.held:
        console.print(f"  held back: {branch.name} ({', '.join(branch.task_ids)}), merged again on resume")
    if checkpoint.next_actions:
        console.print(f"Next actions: {json.dumps(checkpoint.next_actions, default=str)}")
    return 0


def _resolve(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    try:
        record_decision(project_dir, args.path, args.choice)
    except ValueError as exc:
        sys.stderr.write(str(exc) + "\n")
        return 1
    sys.stdout.write(json.dumps({"path": args.path, "choice": args.choice}) + "\n")
    return 0


def _handoff(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    payload = request_handoff(project_dir / STATE_DIR_NAME, args.reason)
    sys.stdout.write(json.dumps(payload) + "\n")
    return 0


def _cancel(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    request_cancel(project_dir / STATE_DIR_NAME)
    sys.stdout.write(json.dumps({"cancel": True}) + "\n")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Dependency-aware scheduler for autonomous development tasks")
    parser.add_argument("--project-dir", default=None, help="Target project directory (default: current working directory)")
    parser.add_argument("--log-level", default="INFO", help="Log level (DEBUG, INFO, WARNING, ERROR)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    plan = subparsers.add_parser("plan", help="Show the execution groups for a task file")
    plan.add_argument("tasks", help="YAML/JSON task file")
    plan.add_argument("--max-parallel", type=int, default=None)
    plan.add_argument("--json", action="store_true")
    plan.set_defaults(func=_plan)

    run = subparsers.add_parser("run", help="Run (or resume) a task file")
    run.add_argument("tasks", help="YAML/JSON task file")
    run.add_argument("--max-parallel", type=int, default=None)
    run.add_argument("--max-retries", type=int, default=None)
    run.add_argument("--timeout", type=float, default=None, help="Per-task timeout in seconds")
    run.add_argument("--sequential-threshold", type=int, default=None)
    run.add_argument("--budget", type=float, default=None, help="Session budget in abstract units")
    run.add_argument("--resume", action=argparse.BooleanOptionalAction, default=True)
    run.add_argument("--retry-failed", action="store_true", help="Re-open failed tasks when resuming")
    run.add_argument("--interactive", action="store_true", help="Prompt for semantic conflict decisions")
    run.add_argument("--json", action="store_true")
    run.set_defaults(func=_run)

    status = subparsers.add_parser("status", help="Show the current checkpoint")
    status.add_argument("--json", action="store_true")
    status.set_defaults(func=_status)

    resolve = subparsers.add_parser("resolve", help="Record a decision for an escalated conflict")
    resolve.add_argument("path", help="Conflicting file path, relative to the project")
    resolve.add_argument("choice", choices=list(RESOLUTION_OPTIONS))
    resolve.set_defaults(func=_resolve)

    handoff = subparsers.add_parser("handoff", help="Ask a running session to checkpoint and stop")
    handoff.add_argument("--reason", default="requested")
    handoff.set_defaults(func=_handoff)

    cancel = subparsers.add_parser("cancel", help="Cancel a running session")
    cancel.set_defaults(func=_cancel)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return int(handler(args) or 0)
    except OrchestratorError as exc:
        logger.debug("Command failed: {!r}", exc)
        sys.stderr.write(f"Error: {exc}\n")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
