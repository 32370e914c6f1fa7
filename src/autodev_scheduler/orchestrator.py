"""Wire the scheduler to a project directory.

`Orchestrator.run` is the single entry point used by the CLI: it loads the
task graph, resumes from the last checkpoint when one matches, picks the
context and integration backends, and runs one scheduling session.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Optional, Union

from loguru import logger

from .budget import ResourceBudget
from .checkpoint import Checkpoint, CheckpointManager
from .collaborators import CommandExecutor, CommandVerifier, SessionMemory
from .config import SchedulerConfig, load_config
from .constants import EVENTS_FILE, FAILURE_CONFLICT, LOCK_FILE, RESUMABLE_FAILURES, STATE_DIR_NAME
from .contexts import ContextManager, CopyTreeManager, GitWorktreeManager
from .descriptors import ComplexityScorer, TaskDescriptor, load_descriptors, parse_descriptors, to_nodes
from .errors import StalledGraphError
from .escalation import ChainChannel, DecisionFileChannel, discard_decisions, pending_decisions
from .events import EventLog
from .git_utils import _ensure_branch, _git_has_changes, _git_head_sha, _git_is_repo
from .graph import ExecutionPlan, TaskGraph
from .integration import DirectoryIntegrator, GitIntegrator, Integrator
from .io_utils import FileLock
from .models import TaskStatus
from .reporting import RUN_STALLED, RunReport
from .resolver import Decide
from .runner import ExecuteFn, VerifyFn
from .scheduler import GroupScheduler
from .signals import SIGNAL_CANCEL, SIGNAL_HANDOFF, SignalWatcher

S = TaskStatus

Descriptors = Union[Path, list[TaskDescriptor], list[dict[str, Any]], dict[str, Any]]


class Orchestrator:
    def __init__(
        self,
        project_dir: Path,
        *,
        config: Optional[SchedulerConfig] = None,
        execute_fn: Optional[ExecuteFn] = None,
        verify_fn: Optional[VerifyFn] = None,
        decide: Optional[Decide] = None,
        scorer: Optional[ComplexityScorer] = None,
    ):
        self.project_dir = Path(project_dir).resolve()
        self.state_dir = self.project_dir / STATE_DIR_NAME
        self.config = config or load_config(self.project_dir)
        self.execute_fn = execute_fn or CommandExecutor(self.config.task_timeout_seconds)
        self.verify_fn = verify_fn or CommandVerifier(self.config.task_timeout_seconds)
        self.decisions = DecisionFileChannel(self.project_dir)
        self.decide = ChainChannel(self.decisions, decide) if decide is not None else ChainChannel(self.decisions)
        self.scorer = scorer
        self.checkpoints = CheckpointManager(
            self.state_dir,
            write_retries=self.config.checkpoint_write_retries,
            keep=self.config.checkpoints_to_keep,
        )
        self.cancel_event = threading.Event()
        self.scheduler: Optional[GroupScheduler] = None

    def load(self, descriptors: Descriptors, memory: Optional[SessionMemory] = None) -> TaskGraph:
        """Build the task graph.

        Raises:
            DescriptorError: If the descriptors are malformed.
            GraphError: If the graph has a cycle, duplicate or dangling reference.
        """
        if isinstance(descriptors, Path):
            parsed = load_descriptors(descriptors)
        else:
            parsed = parse_descriptors(descriptors)
        memory = memory or SessionMemory.load(self.project_dir)
        return TaskGraph.build(to_nodes(parsed, scorer=self.scorer, memory=memory.view))

    def plan(self, descriptors: Descriptors) -> tuple[TaskGraph, ExecutionPlan]:
        graph = self.load(descriptors)
        return graph, graph.plan(self.config.max_parallelism)

    def cancel(self) -> None:
        """Cancel the running session from another thread."""
        self.cancel_event.set()

    def _backends(self) -> tuple[ContextManager, Integrator]:
        if _git_is_repo(self.project_dir) and _git_head_sha(self.project_dir):
            if self.config.integration_branch:
                _ensure_branch(self.project_dir, self.config.integration_branch)
            if _git_has_changes(self.project_dir):
                logger.warning("Working tree has uncommitted changes; merges may refuse to run")
            return GitWorktreeManager(self.project_dir, self.config), GitIntegrator(self.project_dir, self.decide)
        logger.info("{} is not a git repository with commits; using directory copies", self.project_dir)
        return CopyTreeManager(self.project_dir, self.config), DirectoryIntegrator(self.project_dir, self.decide)

    def _resume(self, graph: TaskGraph, checkpoint: Checkpoint, held_tasks: set[str], retry_failed: bool) -> TaskGraph:
        """Re-open checkpointed nodes that this session can make progress on.

        Tasks held back by a conflict stay blocked while their branch is kept;
        the scheduler offers that branch to the integrator again. Without a
        kept branch the work is gone and the task runs again.
        """
        resumed = checkpoint.graph
        reopened: list[str] = []
        for node_id, node in checkpoint.graph.nodes.items():
            reopen = False
            if node.status == S.BLOCKED:
                if node.block_reason in RESUMABLE_FAILURES:
                    reopen = True
                elif node.block_reason == FAILURE_CONFLICT and node_id not in held_tasks:
                    reopen = True
            elif node.status == S.FAILED and retry_failed:
                reopen = True
            if not reopen:
                continue
            resumed = resumed.apply(node_id, S.PENDING, retry=True)
            if node.status == S.FAILED:
                # An explicit retry starts with a fresh retry allowance.
                resumed = resumed.replace_node(replace(resumed[node_id], retries_used=0))
            reopened.append(node_id)
        if reopened:
            logger.info("Re-opened {} task(s): {}", len(reopened), ", ".join(sorted(reopened)))

        # Descriptions and verification may have been edited between sessions;
        # status, counters and complexity come from the checkpoint.
        for node_id, fresh in graph.nodes.items():
            saved = resumed[node_id]
            resumed = resumed.replace_node(
                replace(fresh, status=saved.status, evidence=saved.evidence, attempts=saved.attempts,
                        retries_used=saved.retries_used, block_reason=saved.block_reason,
                        complexity=saved.complexity)
            )
        # A re-opened task produces new work; its old undecided conflicts are moot.
        checkpoint.conflicts = [
            record
            for record in checkpoint.conflicts
            if not (record.unresolved and set(record.task_ids) & set(reopened))
        ]
        checkpoint.failures = [
            failure for failure in checkpoint.failures if not set(failure.task_ids) & set(reopened)
        ]
        return resumed

    def _prune_decisions(self) -> None:
        """Drop decisions applied by integrated branches.

        Decisions only ever answer conflicts of held-back branches, so once
        none is held back the rest are stale as well.
        """
        discard_decisions(self.project_dir, self.scheduler.decided_paths)
        if not self.scheduler.held:
            discard_decisions(self.project_dir, pending_decisions(self.project_dir))

    def run(
        self,
        descriptors: Descriptors,
        *,
        resume: bool = True,
        retry_failed: bool = False,
    ) -> RunReport:
        """Run one scheduling session and return its report.

        Raises:
            DescriptorError: If the descriptors are malformed.
            GraphError: If the task graph is invalid.
        """
        with FileLock(self.state_dir / LOCK_FILE):
            memory = SessionMemory.load(self.project_dir)
            graph = self.load(descriptors, memory)

            signals = SignalWatcher(self.state_dir)
            # A signal left behind by a previous session must not stop this one.
            signals.consume(SIGNAL_CANCEL)
            signals.consume(SIGNAL_HANDOFF)

            checkpoint = self.checkpoints.restore() if resume else None
            if checkpoint is not None and checkpoint.fingerprint != graph.fingerprint():
                logger.warning("Task set changed since the last checkpoint; starting fresh")
                checkpoint = None

            contexts, integrator = self._backends()
            start_round = 0
            conflicts, failures, evidence, held = [], [], {}, []
            if checkpoint is not None:
                logger.info("Resuming from checkpoint {} (round {})", checkpoint.sequence, checkpoint.resume_pointer.round)
                held = [branch for branch in checkpoint.held if branch.context.kind == contexts.kind]
                held_tasks = {task_id for branch in held for task_id in branch.task_ids}
                graph = self._resume(graph, checkpoint, held_tasks, retry_failed)
                start_round = checkpoint.resume_pointer.round
                conflicts, failures, evidence = checkpoint.conflicts, checkpoint.failures, checkpoint.evidence

            keep = [Path(path) for branch in held for path in (branch.context.root, *branch.context.extra.values())]
            cleaned = contexts.cleanup_orphans(keep=keep)
            if cleaned:
                logger.info("Removed {} orphaned context(s): {}", len(cleaned), ", ".join(cleaned))

            # Each session starts with the full budget.
            budget = ResourceBudget(
                self.config.session_budget,
                self.config.budget_warning_threshold,
                self.config.budget_checkpoint_threshold,
            )
            self.scheduler = GroupScheduler(
                graph,
                config=self.config,
                contexts=contexts,
                integrator=integrator,
                execute_fn=self.execute_fn,
                verify_fn=self.verify_fn,
                checkpoints=self.checkpoints,
                budget=budget,
                events=EventLog(self.state_dir / EVENTS_FILE),
                signals=signals,
                cancel_event=self.cancel_event,
                start_round=start_round,
                conflicts=conflicts,
                failures=failures,
                evidence=evidence,
                held=held,
            )
            try:
                report = self.scheduler.run()
            except StalledGraphError as exc:
                logger.error("Scheduling stalled: {}", exc)
                report = RunReport(status=RUN_STALLED, graph=self.scheduler.graph, warnings=[str(exc)])
            finally:
                memory.record(self.scheduler.results)
                memory.save()
            self._prune_decisions()
            logger.info("Run {} after {:.1f}s", report.status, report.elapsed_seconds)
            return report

    def status(self) -> Optional[Checkpoint]:
        """Return the current checkpoint as written, without resetting anything."""
        return self.checkpoints.load_current()
