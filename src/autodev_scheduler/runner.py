"""Drive one task through Running -> Verifying -> Done/Failed.

The runner owns sequencing, timeouts and evidence capture; the content of
execution and verification belongs to the collaborators passed to `run`.
A failed attempt (verification failure, timeout or collaborator error)
re-enters Running with the failure appended to the task's evidence until
the retry bound is spent. Before each retry the context is reset to its last
commit, so an attempt never builds on a failed attempt's leftovers.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Optional

from loguru import logger

from .constants import (
    FAILURE_CANCELLED,
    FAILURE_EXECUTION,
    FAILURE_TIMEOUT,
    FAILURE_VERIFICATION,
    RESOLUTION_HINTS,
    RESUMABLE_FAILURES,
)
from .events import TASK_ATTEMPT, TASK_FINISHED, EventLog
from .graph import GraphBoard
from .models import (
    EvidenceEntry,
    EvidenceRecord,
    ExecutionContext,
    ExecutionResult,
    FailureReport,
    TaskNode,
    TaskResult,
    TaskStatus,
    VerificationOutcome,
)

# Collaborators run on a worker thread so the runner can enforce timeouts. An
# overrunning collaborator cannot be killed: the runner waits up to
# `settle_seconds` for it before touching the context again, and marks the
# context tainted when it is still running. CommandExecutor passes its timeout
# to the subprocess, so it always settles.
ExecuteFn = Callable[[TaskNode, ExecutionContext], Any]
VerifyFn = Callable[[TaskNode, ExecutionContext], Any]


class _Timeout(Exception):
    def __init__(self, message: str, future: Future):
        super().__init__(message)
        self.future = future


def _call_with_timeout(fn: Callable[[], Any], timeout: Optional[float], name: str) -> Any:
    if not timeout:
        return fn()
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
    future = executor.submit(fn)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as exc:
        raise _Timeout(f"exceeded {timeout:g}s", future) from exc
    finally:
        # A timed-out collaborator keeps running in the background; never wait on it.
        executor.shutdown(wait=False, cancel_futures=True)


def failure_report(task_ids: list[str], kind: str, message: str, *, retryable: bool = False) -> FailureReport:
    return FailureReport(
        task_ids=list(task_ids),
        kind=kind,
        message=message,
        retryable=retryable,
        resumable=kind in RESUMABLE_FAILURES,
        needs_decision=False,
        hints=list(RESOLUTION_HINTS.get(kind, [])),
    )


class TaskRunner:
    def __init__(
        self,
        board: GraphBoard,
        *,
        max_retries: int,
        timeout_seconds: Optional[float],
        events: Optional[EventLog] = None,
        reset_fn: Optional[Callable[[ExecutionContext], None]] = None,
        settle_seconds: Optional[float] = None,
    ):
        self.board = board
        self.reset_fn = reset_fn
        self.max_retries = max_retries
        self.timeout_seconds = timeout_seconds
        self.settle_seconds = timeout_seconds if settle_seconds is None else settle_seconds
        self.events = events or EventLog()
        self._tainted: set[str] = set()
        self._lock = threading.Lock()

    def tainted(self, context: ExecutionContext) -> bool:
        """True when a timed-out collaborator may still be writing into `context`."""
        with self._lock:
            return context.context_id in self._tainted

    def _settle(self, stragglers: list[Future], context: ExecutionContext) -> bool:
        if not stragglers:
            return True
        _, running = wait_futures(stragglers, timeout=self.settle_seconds)
        stragglers[:] = list(running)
        if running:
            with self._lock:
                self._tainted.add(context.context_id)
            logger.error(
                "A timed-out collaborator is still running in {}; the context will not be reused",
                context.context_id,
            )
            return False
        return True

    def run(
        self,
        task_id: str,
        context: ExecutionContext,
        execute_fn: ExecuteFn,
        verify_fn: VerifyFn,
        cancel_event: Optional[threading.Event] = None,
    ) -> TaskResult:
        """Run `task_id` to a terminal status inside `context`.

        The node must be READY. Returns a `TaskResult`; collaborator errors
        never escape as exceptions.

        Raises:
            TransitionError: If another worker already owns the node.
        """
        started = time.monotonic()
        owner = context.context_id
        self.board.apply(task_id, TaskStatus.RUNNING, expect=TaskStatus.READY, owner=owner)
        usage = 0.0
        changed: list[str] = []
        stragglers: list[Future] = []

        while True:
            node = self.board.node(task_id)
            if cancel_event is not None and cancel_event.is_set():
                return self._cancelled(node, started, usage, changed)

            self.events.emit(TASK_ATTEMPT, task_id, attempt=node.attempts, context=context.context_id)
            logger.info("Task {} attempt {} in {}", task_id, node.attempts, context.context_id)
            kind, message, evidence, result = self._attempt(node, context, execute_fn, verify_fn, owner, stragglers)
            if result is not None:
                usage += result.usage
                changed.extend(path for path in result.changed_files if path not in changed)

            if kind is None:
                node = self.board.apply(task_id, TaskStatus.DONE, evidence, owner=owner)
                return self._finish(node, started, usage, changed)

            if cancel_event is not None and cancel_event.is_set():
                self.board.apply(task_id, TaskStatus.BLOCKED, evidence, owner=owner, reason=FAILURE_CANCELLED)
                return self._cancelled(self.board.node(task_id), started, usage, changed)

            node = self.board.node(task_id)
            settled = self._settle(stragglers, context)
            if not settled:
                message += "; the collaborator is still running"
            if settled and node.retries_used < self.max_retries:
                logger.warning(
                    "Task {} attempt {} failed ({}): {}. Retrying ({}/{})",
                    task_id,
                    node.attempts,
                    kind,
                    message,
                    node.retries_used + 1,
                    self.max_retries,
                )
                if self.reset_fn is not None:
                    self.reset_fn(context)
                self.board.apply(task_id, TaskStatus.RUNNING, evidence, owner=owner)
                continue

            logger.error("Task {} failed after {} attempt(s): {}", task_id, node.attempts, message)
            node = self.board.apply(task_id, TaskStatus.FAILED, evidence, owner=owner, reason=kind)
            failure = failure_report(
                [task_id],
                kind,
                f"{message} (after {node.attempts} attempt(s), {node.retries_used} retr{'y' if node.retries_used == 1 else 'ies'})",
            )
            return self._finish(node, started, usage, changed, failure)

    def _attempt(
        self,
        node: TaskNode,
        context: ExecutionContext,
        execute_fn: ExecuteFn,
        verify_fn: VerifyFn,
        owner: str,
        stragglers: list[Future],
    ) -> tuple[Optional[str], str, EvidenceRecord, Optional[ExecutionResult]]:
        """Run one execute+verify pass; return (failure kind or None, message, evidence, result)."""
        attempt = node.attempts
        evidence = EvidenceRecord()
        try:
            raw = _call_with_timeout(lambda: execute_fn(node, context), self.timeout_seconds, f"exec-{node.id}")
            result = ExecutionResult.coerce(raw)
        except _Timeout as exc:
            stragglers.append(exc.future)
            message = f"execution timed out: {exc}"
            return FAILURE_TIMEOUT, message, evidence.append(EvidenceEntry(attempt, "timeout", False, message)), None
        except Exception as exc:
            message = f"execution raised {exc.__class__.__name__}: {exc}"
            detail = {"output": getattr(exc, "output", "")} if getattr(exc, "output", None) else {}
            entry = EvidenceEntry(attempt, "execution", False, message, detail=detail)
            return FAILURE_EXECUTION, message, evidence.append(entry), None

        evidence = evidence.append(EvidenceEntry(attempt, "execution", True, result.output))
        # Execution evidence is attached on the way into VERIFYING.
        node = self.board.apply(node.id, TaskStatus.VERIFYING, evidence, owner=owner)
        evidence = EvidenceRecord()
        timeout = node.verification.timeout_seconds or self.timeout_seconds
        try:
            raw_outcome = _call_with_timeout(lambda: verify_fn(node, context), timeout, f"verify-{node.id}")
            outcome = VerificationOutcome.coerce(raw_outcome)
        except _Timeout as exc:
            stragglers.append(exc.future)
            message = f"verification timed out: {exc}"
            return FAILURE_TIMEOUT, message, evidence.append(EvidenceEntry(attempt, "timeout", False, message)), result
        except Exception as exc:
            message = f"verification raised {exc.__class__.__name__}: {exc}"
            return FAILURE_VERIFICATION, message, evidence.append(EvidenceEntry(attempt, "verification", False, message)), result

        entry = EvidenceEntry(attempt, "verification", outcome.passed, outcome.summary, detail=dict(outcome.detail))
        evidence = evidence.append(entry)
        if outcome.passed:
            return None, "", evidence, result
        if outcome.timed_out:
            return FAILURE_TIMEOUT, "verification timed out", evidence, result
        message = "verification failed"
        if outcome.summary:
            message += f": {outcome.summary.splitlines()[0]}"
        return FAILURE_VERIFICATION, message, evidence, result

    def _cancelled(self, node: TaskNode, started: float, usage: float, changed: list[str]) -> TaskResult:
        if not node.status.terminal:
            self.board.block(node.id, FAILURE_CANCELLED)
            node = self.board.node(node.id)
        failure = failure_report([node.id], FAILURE_CANCELLED, "run cancelled while the task was in flight")
        return self._finish(node, started, usage, changed, failure)

    def _finish(
        self,
        node: TaskNode,
        started: float,
        usage: float,
        changed: list[str],
        failure: Optional[FailureReport] = None,
    ) -> TaskResult:
        result = TaskResult(
            task_id=node.id,
            status=node.status,
            attempts=node.attempts,
            evidence=node.evidence,
            failure=failure,
            changed_files=changed,
            usage=usage,
            duration_seconds=time.monotonic() - started,
        )
        self.events.emit(
            TASK_FINISHED,
            node.id,
            status=node.status.value,
            attempts=node.attempts,
            failure=failure.kind if failure else None,
        )
        return result
