"""Schedule ready tasks in groups, run them, and integrate their branches.

One coordinating loop per run:

1. Block dependents of failed/blocked tasks.
2. Stop when every task is terminal, or on cancel/handoff.
3. Pick the ready set (bounded by `max_parallelism`, cheapest first).
4. Run the group, sequentially in one shared context when it is at most
   `sequential_threshold` tasks, else one isolated context per task.
5. Integrate every successful branch, then checkpoint.

A new group never starts before the previous group has been integrated.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Optional

from loguru import logger

from .budget import BudgetLevel, ResourceBudget
from .checkpoint import CheckpointManager, ResumePointer
from .config import SchedulerConfig
from .constants import (
    FAILURE_CANCELLED,
    FAILURE_CONFLICT,
    FAILURE_CONTEXT,
    FAILURE_EXECUTION,
    FAILURE_MERGE,
    FAILURE_STALLED,
    FAILURE_TIMEOUT,
    FAILURE_UPSTREAM,
)
from .contexts import (
    DISPOSITION_CANCELLED,
    DISPOSITION_CONFLICT,
    DISPOSITION_FAILED,
    DISPOSITION_MERGED,
    ContextManager,
    group_scope,
    scope_slug,
)
from .errors import CheckpointWriteError, ContextAcquisitionError, StalledGraphError
from .events import (
    CANCELLED,
    CHECKPOINT_FAILED,
    CHECKPOINT_WRITTEN,
    CONFLICT,
    GROUP_INTEGRATED,
    GROUP_STARTED,
    HANDOFF,
    RUN_FINISHED,
    RUN_STARTED,
    EventLog,
)
from .graph import GraphBoard, TaskGraph
from .integration import BranchResult, Integrator
from .models import (
    ConflictRecord,
    EvidenceEntry,
    EvidenceRecord,
    ExecutionContext,
    FailureReport,
    TaskResult,
    TaskStatus,
)
from .reporting import RUN_CANCELLED, RUN_COMPLETED, RUN_HANDOFF, RUN_PARTIAL, RUN_STALLED, RunReport
from .resolver import IntegrationOutcome
from .runner import ExecuteFn, TaskRunner, VerifyFn, failure_report
from .signals import SIGNAL_CANCEL, SIGNAL_HANDOFF, SignalWatcher
from .utils import retry_call

S = TaskStatus

# How often the coordinator wakes up while a group runs.
_POLL_SECONDS = 0.5


class GroupScheduler:
    def __init__(
        self,
        graph: TaskGraph,
        *,
        config: SchedulerConfig,
        contexts: ContextManager,
        integrator: Integrator,
        execute_fn: ExecuteFn,
        verify_fn: VerifyFn,
        checkpoints: Optional[CheckpointManager] = None,
        budget: Optional[ResourceBudget] = None,
        events: Optional[EventLog] = None,
        signals: Optional[SignalWatcher] = None,
        cancel_event: Optional[threading.Event] = None,
        start_round: int = 0,
        conflicts: Optional[list[ConflictRecord]] = None,
        failures: Optional[list[FailureReport]] = None,
        evidence: Optional[dict[str, EvidenceRecord]] = None,
        held: Optional[list[BranchResult]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.board = GraphBoard(graph)
        self.contexts = contexts
        self.integrator = integrator
        self.execute_fn = execute_fn
        self.verify_fn = verify_fn
        self.checkpoints = checkpoints
        self.budget = budget or ResourceBudget(
            config.session_budget, config.budget_warning_threshold, config.budget_checkpoint_threshold
        )
        self.events = events or EventLog()
        self.signals = signals
        self.cancel_event = cancel_event or threading.Event()
        self.round = start_round
        self.conflicts: list[ConflictRecord] = list(conflicts or [])
        self.failures: list[FailureReport] = list(failures or [])
        self.evidence: dict[str, EvidenceRecord] = dict(evidence or {})
        self.held: dict[str, BranchResult] = {branch.name: branch for branch in held or []}
        self.decided_paths: set[str] = set()
        self.results: list[TaskResult] = []
        self.warnings: list[str] = []
        self.groups: list[list[str]] = []
        self.clock = clock
        self.runner = TaskRunner(
            self.board,
            max_retries=config.max_retries,
            timeout_seconds=config.task_timeout_seconds,
            events=self.events,
            reset_fn=contexts.reset,
        )
        self._started = clock()
        self._last_checkpoint = self._started
        self._checkpoint_requested = threading.Event()
        self._handoff_reason: Optional[str] = None
        self._last_checkpoint_path: Optional[str] = None

    @property
    def graph(self) -> TaskGraph:
        return self.board.snapshot()

    def request_checkpoint(self) -> None:
        """Ask for a checkpoint at the next suspension point."""
        self._checkpoint_requested.set()

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def run(self) -> RunReport:
        """Schedule until the graph is exhausted, stalled, cancelled or handed off."""
        self.events.emit(RUN_STARTED, None, tasks=len(self.graph), round=self.round)
        logger.info("Scheduling {} task(s) starting at round {}", len(self.graph), self.round)
        self._reintegrate_held()
        while True:
            self._block_downstream()
            stop = self._stop_signal()
            if stop is not None and stop[0] == SIGNAL_CANCEL:
                self._cancel(stop[1])
                status = RUN_CANCELLED
                break

            graph = self.graph
            if graph.all_terminal():
                if stop is not None and self.signals is not None:
                    # Nothing left to hand off.
                    self.signals.consume(stop[0])
                status = RUN_COMPLETED if graph.all_done() else RUN_PARTIAL
                break

            if stop is not None:
                self._handoff(stop[1])
                status = RUN_HANDOFF
                break

            ready = graph.ready_nodes()
            if not ready:
                self._stall(graph)
                status = RUN_STALLED
                break

            group = self._select(ready)
            self._run_group(group)
            self.round += 1
            self._after_group()

        if status in (RUN_COMPLETED, RUN_PARTIAL, RUN_STALLED):
            self._checkpoint("final")
        return self._report(status)

    def _select(self, ready: set[str]) -> list[str]:
        graph = self.graph
        ordered = sorted(ready, key=lambda node_id: (graph[node_id].complexity, node_id))
        group = ordered[: self.config.max_parallelism]
        for node_id in group:
            self.board.apply(node_id, S.READY, expect=S.PENDING)
        if len(ordered) > len(group):
            logger.info("Ready set of {} capped at {}; deferring {}", len(ordered), len(group), ", ".join(ordered[len(group):]))
        self.groups.append(list(group))
        self.events.emit(GROUP_STARTED, f"round-{self.round}", tasks=group)
        logger.info("Round {}: running group [{}]", self.round, ", ".join(group))
        return group

    def _preview_next(self) -> list[str]:
        graph = self.graph
        ordered = sorted(graph.ready_nodes(), key=lambda node_id: (graph[node_id].complexity, node_id))
        return ordered[: self.config.max_parallelism]

    def _block_downstream(self) -> None:
        graph = self.graph
        for node_id, node in graph.nodes.items():
            if node.status not in (S.FAILED, S.BLOCKED):
                continue
            newly = [
                dependent
                for dependent in graph.transitive_dependents(node_id)
                if self.board.node(dependent).status == S.PENDING
                and self.board.block(dependent, FAILURE_UPSTREAM)
            ]
            if newly:
                logger.warning("Blocked {} downstream of {}", ", ".join(newly), node_id)
                self.failures.append(
                    failure_report(newly, FAILURE_UPSTREAM, f"upstream task {node_id} ended {node.status.value}")
                )

    def _stall(self, graph: TaskGraph) -> None:
        pending = [node_id for node_id, node in graph.nodes.items() if node.status == S.PENDING]
        unmet = {node_id: graph.unmet_dependencies(node_id) for node_id in pending}
        stuck = [node_id for node_id, node in graph.nodes.items() if not node.status.terminal]
        error = StalledGraphError(stuck, unmet)
        for node_id in stuck:
            self.board.block(node_id, FAILURE_STALLED)
        logger.error("{}", error)
        report = failure_report(stuck, FAILURE_STALLED, str(error))
        self.failures.append(report)

    # ------------------------------------------------------------------
    # Group execution
    # ------------------------------------------------------------------

    def _run_group(self, group: list[str]) -> None:
        finished: list[tuple[ExecutionContext, list[TaskResult]]] = []
        if len(group) <= self.config.sequential_threshold:
            shared = self._run_shared(group)
            if shared is not None:
                finished.append(shared)
        else:
            finished.extend(self._run_parallel(group))
        self._integrate(finished)

    def _run_shared(self, group: list[str]) -> Optional[tuple[ExecutionContext, list[TaskResult]]]:
        scope = scope_slug(group[0]) if len(group) == 1 else group_scope(self.round, group)
        context = self._acquire(scope, group)
        if context is None:
            return None
        results: list[TaskResult] = []
        for task_id in group:
            if self.cancel_event.is_set():
                self.board.block(task_id, FAILURE_CANCELLED)
                continue
            result = self._run_task(task_id, context)
            results.append(result)
            if self.runner.tainted(context):
                for rest in group[group.index(task_id) + 1 :]:
                    self.board.block(rest, FAILURE_TIMEOUT)
                break
            if result.success:
                self.contexts.commit(context, f"{task_id}: {self.graph[task_id].description}".strip())
            else:
                self.contexts.reset(context)
            self._poll_during_group()
        return context, results

    def _run_isolated(self, task_id: str) -> Optional[tuple[ExecutionContext, list[TaskResult]]]:
        context = self._acquire(scope_slug(task_id), [task_id])
        if context is None:
            return None
        result = self._run_task(task_id, context)
        if result.success:
            self.contexts.commit(context, f"{task_id}: {self.graph[task_id].description}".strip())
        return context, [result]

    def _run_parallel(self, group: list[str]) -> list[tuple[ExecutionContext, list[TaskResult]]]:
        finished: list[tuple[ExecutionContext, list[TaskResult]]] = []
        with ThreadPoolExecutor(max_workers=len(group), thread_name_prefix="task") as pool:
            futures: dict[Future, str] = {pool.submit(self._run_isolated, task_id): task_id for task_id in group}
            pending = set(futures)
            while pending:
                done, pending = wait(pending, timeout=_POLL_SECONDS, return_when=FIRST_COMPLETED)
                for future in done:
                    task_id = futures[future]
                    try:
                        outcome = future.result()
                    except Exception as exc:
                        # _run_task already contains collaborator errors; this is infrastructure.
                        logger.exception("Worker for {} crashed: {}", task_id, exc)
                        self._force_fail(task_id, f"worker crashed: {exc}")
                        continue
                    if outcome is not None:
                        finished.append(outcome)
                self._poll_during_group()
        return finished

    def _poll_during_group(self) -> None:
        stop = self._stop_signal(peek=True)
        if stop is not None and stop[0] == SIGNAL_CANCEL and not self.cancel_event.is_set():
            logger.warning("Cancellation requested; stopping in-flight tasks at their next boundary")
            self.cancel_event.set()
        if self._checkpoint_due():
            self._checkpoint("interval")

    def _acquire(self, scope: str, task_ids: list[str]) -> Optional[ExecutionContext]:
        try:
            return retry_call(
                lambda: self.contexts.acquire(scope, task_ids),
                attempts=self.config.context_acquire_retries + 1,
                retry_on=(ContextAcquisitionError,),
                initial_delay=self.config.retry_initial_delay,
                max_delay=self.config.retry_max_delay,
                label=f"acquire context {scope}",
            )
        except ContextAcquisitionError as exc:
            for task_id in task_ids:
                self.board.block(task_id, FAILURE_CONTEXT)
            self.failures.append(failure_report(task_ids, FAILURE_CONTEXT, str(exc), retryable=True))
            return None

    def _run_task(self, task_id: str, context: ExecutionContext) -> TaskResult:
        try:
            result = self.runner.run(task_id, context, self.execute_fn, self.verify_fn, self.cancel_event)
        except Exception as exc:
            logger.exception("Unexpected error running task {}: {}", task_id, exc)
            result = self._force_fail(task_id, f"unexpected error: {exc}")
        self.results.append(result)
        if result.failure is not None:
            self.failures.append(result.failure)
        if result.usage:
            level = self.budget.add_usage(result.usage, phase="execution")
            if level == BudgetLevel.CHECKPOINT:
                self._handoff_reason = self._handoff_reason or "session budget exhausted"
        return result

    def _force_fail(self, task_id: str, message: str) -> TaskResult:
        node = self.board.node(task_id)
        entry = EvidenceRecord().append(EvidenceEntry(node.attempts, "execution", False, message))
        if node.status in (S.RUNNING, S.VERIFYING):
            node = self.board.apply(task_id, S.FAILED, entry, reason=FAILURE_EXECUTION)
        elif not node.status.terminal:
            self.board.block(task_id, FAILURE_EXECUTION)
            node = self.board.node(task_id)
        return TaskResult(
            task_id=task_id,
            status=node.status,
            attempts=node.attempts,
            evidence=node.evidence,
            failure=failure_report([task_id], FAILURE_EXECUTION, message),
        )

    # ------------------------------------------------------------------
    # Integration
    # ------------------------------------------------------------------

    def _integrate(self, finished: list[tuple[ExecutionContext, list[TaskResult]]]) -> None:
        branches: list[BranchResult] = []
        dispositions: dict[str, str] = {}
        for context, results in finished:
            done = [result.task_id for result in results if result.success]
            if done and self.runner.tainted(context):
                self._hold_back(
                    BranchResult(context=context, complexity=0, task_ids=done),
                    FAILURE_TIMEOUT,
                    "a timed-out collaborator was still writing to the context",
                )
                done = []
            if not done:
                dispositions[context.branch] = DISPOSITION_CANCELLED if self.cancel_event.is_set() else DISPOSITION_FAILED
                continue
            complexity = max(self.graph[task_id].complexity for task_id in done)
            branches.append(BranchResult(context=context, complexity=complexity, task_ids=done))

        parked: set[str] = set()
        if branches:
            outcome = self.integrator.integrate(branches)
            by_name = {branch.name: branch for branch in branches}
            for name in outcome.integrated:
                dispositions[name] = DISPOSITION_MERGED
            for name in outcome.rejected:
                self._hold_back(by_name[name], FAILURE_CONFLICT, "unresolved semantic conflict with the integration line")
                self._park(by_name[name])
                parked.add(name)
            for name, detail in outcome.failed.items():
                dispositions[name] = DISPOSITION_CONFLICT
                self._hold_back(by_name[name], FAILURE_MERGE, detail)
            self._record_outcome(outcome)

        for context, _ in finished:
            if context.branch not in parked:
                self.contexts.release(context, dispositions.get(context.branch, DISPOSITION_MERGED))

    def _record_outcome(self, outcome: IntegrationOutcome) -> None:
        for record in outcome.conflicts:
            self.events.emit(
                CONFLICT,
                record.path,
                classification=record.classification.value,
                resolution=record.resolution.kind.value,
                branches=record.branches,
            )
        self.conflicts.extend(outcome.conflicts)
        self.decided_paths |= outcome.decided_paths
        summary = (
            f"merged: {', '.join(outcome.integrated) or '-'}; "
            f"held back: {', '.join(outcome.rejected) or '-'}; "
            f"failed: {', '.join(outcome.failed) or '-'}"
        )
        record = self.evidence.get("integration", EvidenceRecord())
        self.evidence["integration"] = record.append(
            EvidenceEntry(self.round, "integration", not outcome.rejected and not outcome.failed, summary)
        )
        self.events.emit(
            GROUP_INTEGRATED,
            f"round-{self.round}",
            merged=outcome.integrated,
            rejected=outcome.rejected,
            failed=sorted(outcome.failed),
        )

    def _park(self, branch: BranchResult) -> None:
        context = self.contexts.park(branch.context)
        self.held[branch.name] = BranchResult(context=context, complexity=branch.complexity, task_ids=list(branch.task_ids))

    def _reintegrate_held(self) -> None:
        """Offer branches held back in an earlier session to the integrator again.

        The branch is merged against the base it was cut from, so the same
        conflict comes back and a recorded decision is applied to it. Old
        conflict records and failures of these tasks are dropped first; the
        integration recreates whatever is still undecided.
        """
        graph = self.graph
        waiting = [
            branch
            for branch in self.held.values()
            if all(
                graph[task_id].status == S.BLOCKED and graph[task_id].block_reason == FAILURE_CONFLICT
                for task_id in branch.task_ids
            )
        ]
        if not waiting:
            return
        task_ids = {task_id for branch in waiting for task_id in branch.task_ids}
        self.conflicts = [
            record for record in self.conflicts if not (record.unresolved and task_ids & set(record.task_ids))
        ]
        self.failures = [
            failure
            for failure in self.failures
            if not (failure.kind == FAILURE_CONFLICT and task_ids & set(failure.task_ids))
        ]
        logger.info("Re-integrating {} held-back branch(es): {}", len(waiting), ", ".join(b.name for b in waiting))
        outcome = self.integrator.integrate(waiting)
        by_name = {branch.name: branch for branch in waiting}
        for name in outcome.integrated:
            branch = self.held.pop(name)
            for task_id in branch.task_ids:
                entry = EvidenceEntry(
                    self.board.node(task_id).attempts, "integration", True, f"held-back branch {name} integrated"
                )
                self.board.apply(task_id, S.DONE, EvidenceRecord().append(entry), integrated=True)
            self.contexts.release(branch.context, DISPOSITION_MERGED)
        for name in outcome.rejected:
            self.failures.append(_conflict_report(by_name[name], "unresolved semantic conflict with the integration line"))
        for name, detail in outcome.failed.items():
            branch = self.held.pop(name)
            logger.warning("Held-back branch {} cannot be merged ({}); re-running {}", name, detail, ", ".join(branch.task_ids))
            for task_id in branch.task_ids:
                self.board.apply(task_id, S.PENDING, retry=True)
            self.contexts.release(branch.context, DISPOSITION_CONFLICT)
        self._record_outcome(outcome)

    def _hold_back(self, branch: BranchResult, kind: str, detail: str) -> None:
        for task_id in branch.task_ids:
            # Done work that could not be integrated is not done.
            self.board.apply(task_id, S.PENDING, retry=True)
            self.board.block(task_id, kind)
        if kind == FAILURE_CONFLICT:
            self.failures.append(_conflict_report(branch, detail))
        else:
            self.failures.append(failure_report(branch.task_ids, kind, f"branch {branch.name}: {detail}"))

    # ------------------------------------------------------------------
    # Checkpoints, budget and signals
    # ------------------------------------------------------------------

    def _after_group(self) -> None:
        if self.config.session_seconds:
            fraction = (self.clock() - self._started) / self.config.session_seconds
            if self.budget.level_for(fraction) == BudgetLevel.CHECKPOINT:
                self._handoff_reason = self._handoff_reason or "session time exhausted"
        self._checkpoint("group")

    def _checkpoint_due(self) -> bool:
        if self._checkpoint_requested.is_set():
            return True
        interval = self.config.checkpoint_interval_seconds
        return bool(interval) and self.clock() - self._last_checkpoint >= interval

    def _stop_signal(self, peek: bool = False) -> Optional[tuple[str, str]]:
        if self.cancel_event.is_set():
            return SIGNAL_CANCEL, "cancelled"
        signal = self.signals.poll() if self.signals is not None else None
        if signal is not None:
            return signal
        if self._handoff_reason and not peek:
            return SIGNAL_HANDOFF, self._handoff_reason
        return None

    def _checkpoint(self, reason: str, next_actions: Optional[dict[str, Any]] = None) -> None:
        self._checkpoint_requested.clear()
        self._last_checkpoint = self.clock()
        if self.checkpoints is None:
            return
        try:
            checkpoint = self.checkpoints.snapshot(
                self.graph,
                self.evidence,
                ResumePointer(round=self.round, next_group=self._preview_next()),
                conflicts=self.conflicts,
                failures=self.failures,
                held=list(self.held.values()),
                budget=self.budget.to_dict(),
                reason=reason,
                next_actions=next_actions,
            )
        except CheckpointWriteError as exc:
            message = f"checkpointing is failing, progress since the last checkpoint would be lost on a crash: {exc}"
            logger.error("{}", message)
            if message not in self.warnings:
                self.warnings.append(message)
            self.events.emit(CHECKPOINT_FAILED, None, reason=reason, error=str(exc))
            return
        self._last_checkpoint_path = str(checkpoint.path) if checkpoint.path else None
        self.events.emit(CHECKPOINT_WRITTEN, None, reason=reason, sequence=checkpoint.sequence)

    def _remaining(self) -> list[str]:
        return [node_id for node_id, node in self.graph.nodes.items() if not node.status.terminal]

    def _handoff(self, reason: str) -> None:
        logger.info("Handing off after round {}: {}", self.round, reason)
        self._checkpoint(
            "handoff",
            next_actions={
                "reason": reason,
                "remaining": self._remaining(),
                "resume_round": self.round,
                "next_group": self._preview_next(),
            },
        )
        if self.signals is not None:
            self.signals.consume(SIGNAL_HANDOFF)
        self.events.emit(HANDOFF, None, reason=reason, remaining=self._remaining())

    def _cancel(self, reason: str) -> None:
        logger.warning("Cancelling run: {}", reason)
        self.cancel_event.set()
        cancelled = [node_id for node_id in self._remaining() if self.board.block(node_id, FAILURE_CANCELLED)]
        if cancelled:
            self.failures.append(failure_report(cancelled, FAILURE_CANCELLED, reason))
        for context in self.contexts.open_contexts():
            try:
                self.contexts.release(context, DISPOSITION_CANCELLED)
            except OSError as exc:
                logger.warning("Unable to dispose {}: {}", context.context_id, exc)
        self._checkpoint("cancelled", next_actions={"reason": reason, "cancelled": cancelled})
        if self.signals is not None:
            self.signals.consume(SIGNAL_CANCEL)
        self.events.emit(CANCELLED, None, reason=reason, tasks=cancelled)

    def _report(self, status: str) -> RunReport:
        elapsed = self.clock() - self._started
        pointer = None
        if status != RUN_COMPLETED:
            pointer = ResumePointer(round=self.round, next_group=self._preview_next())
        self.events.emit(RUN_FINISHED, None, status=status, elapsed=round(elapsed, 3))
        logger.info("Run {} after {} round(s) in {:.1f}s", status, len(self.groups), elapsed)
        return RunReport(
            status=status,
            graph=self.graph,
            failures=list(self.failures),
            conflicts=list(self.conflicts),
            elapsed_seconds=elapsed,
            resume_pointer=pointer,
            checkpoint_path=self._last_checkpoint_path,
            budget=self.budget.to_dict(),
            warnings=list(self.warnings),
            rounds=len(self.groups),
        )


def _conflict_report(branch: BranchResult, detail: str) -> FailureReport:
    report = failure_report(branch.task_ids, FAILURE_CONFLICT, f"branch {branch.name}: {detail}")
    report.needs_decision = True
    return report
