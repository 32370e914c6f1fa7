"""Tests for the per-task execute/verify/retry loop."""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from autodev_scheduler.errors import TransitionError
from autodev_scheduler.events import TASK_ATTEMPT, EventLog
from autodev_scheduler.graph import GraphBoard
from autodev_scheduler.models import ExecutionContext, TaskStatus, VerificationOutcome
from autodev_scheduler.runner import TaskRunner

from conftest import graph_of, node, ok_execute, ok_verify

S = TaskStatus


def _context(owner: str = "scope") -> ExecutionContext:
    return ExecutionContext(
        context_id=f"ctx-{owner}",
        branch=f"auto/{owner}",
        root=Path("/nonexistent"),
        owner=owner,
        task_ids=("t",),
    )


def _board() -> GraphBoard:
    return GraphBoard(graph_of(node("t")).apply("t", S.READY))


def test_success_path_collects_evidence():
    board = _board()
    result = TaskRunner(board, max_retries=2, timeout_seconds=None).run("t", _context(), ok_execute, ok_verify)
    assert result.success
    assert result.attempts == 1
    assert result.usage == 1
    final = board.node("t")
    assert final.status == S.DONE
    assert [entry.kind for entry in final.evidence.entries] == ["execution", "verification"]
    assert board.owner_of("t") is None


@pytest.mark.parametrize("max_retries", [0, 1, 2, 4])
def test_retries_are_bounded(max_retries):
    board = _board()
    calls = {"verify": 0}

    def always_fails(node, context):
        calls["verify"] += 1
        return VerificationOutcome(passed=False, summary="assert 1 == 2")

    result = TaskRunner(board, max_retries=max_retries, timeout_seconds=None).run("t", _context(), ok_execute, always_fails)

    final = board.node("t")
    assert final.status == S.FAILED
    assert final.attempts == max_retries + 1
    assert final.retries_used == max_retries
    assert final.block_reason == "verification_failed"
    assert calls["verify"] == max_retries + 1
    assert result.failure is not None
    assert result.failure.kind == "verification_failed"
    assert len(final.evidence.failures()) == max_retries + 1


def test_failure_then_success_within_budget():
    board = _board()
    outcomes = iter([False, True])
    result = TaskRunner(board, max_retries=2, timeout_seconds=None).run(
        "t", _context(), ok_execute, lambda node, context: next(outcomes)
    )
    assert result.success
    assert board.node("t").attempts == 2
    assert board.node("t").retries_used == 1


def test_execution_error_is_contained():
    board = _board()

    def explode(node, context):
        raise RuntimeError("tool crashed")

    result = TaskRunner(board, max_retries=0, timeout_seconds=None).run("t", _context(), explode, ok_verify)
    assert result.status == S.FAILED
    assert result.failure.kind == "execution_error"
    assert "tool crashed" in board.node("t").evidence.last.summary


def test_timeout_fails_the_attempt():
    board = _board()
    release = threading.Event()

    def hangs(node, context):
        release.wait(5)
        return None

    try:
        result = TaskRunner(board, max_retries=0, timeout_seconds=0.2).run("t", _context(), hangs, ok_verify)
    finally:
        release.set()
    assert result.status == S.FAILED
    assert result.failure.kind == "timeout"
    assert board.node("t").block_reason == "timeout"


def test_cancel_before_attempt_blocks_task():
    board = _board()
    cancel = threading.Event()
    cancel.set()
    result = TaskRunner(board, max_retries=0, timeout_seconds=None).run("t", _context(), ok_execute, ok_verify, cancel)
    assert result.status == S.BLOCKED
    assert board.node("t").block_reason == "cancelled"
    assert result.failure.resumable


def test_second_runner_cannot_claim_running_task():
    board = _board()
    board.apply("t", S.RUNNING, expect=S.READY, owner="ctx-other")
    with pytest.raises(TransitionError):
        TaskRunner(board, max_retries=0, timeout_seconds=None).run("t", _context(), ok_execute, ok_verify)


def test_attempt_events_are_emitted():
    events = EventLog()
    board = _board()
    outcomes = iter([False, True])
    TaskRunner(board, max_retries=1, timeout_seconds=None, events=events).run(
        "t", _context(), ok_execute, lambda node, context: next(outcomes)
    )
    assert [event["payload"]["attempt"] for event in events.events(TASK_ATTEMPT)] == [1, 2]


def test_context_is_reset_before_each_retry():
    board = _board()
    resets = []
    outcomes = iter([False, False, True])
    result = TaskRunner(board, max_retries=2, timeout_seconds=None, reset_fn=resets.append).run(
        "t", _context(), ok_execute, lambda node, context: next(outcomes)
    )
    assert result.success
    assert [context.context_id for context in resets] == ["ctx-scope", "ctx-scope"]


def test_retry_waits_for_a_timed_out_collaborator():
    board = _board()
    files = {}
    calls = []

    def slow_then_quick(node, context):
        calls.append(node.attempts)
        if len(calls) == 1:
            time.sleep(0.3)
            files["cfg.py"] = "stale"
        else:
            files["cfg.py"] = "fresh"
        return {"output": "ok"}

    runner = TaskRunner(
        board, max_retries=1, timeout_seconds=0.1, settle_seconds=5.0, reset_fn=lambda context: files.clear()
    )
    result = runner.run("t", _context(), slow_then_quick, ok_verify)
    assert result.success
    assert files == {"cfg.py": "fresh"}
    assert not runner.tainted(_context())


def test_collaborator_that_never_settles_taints_the_context():
    board = _board()
    release = threading.Event()
    resets = []

    def hangs(node, context):
        release.wait(5)

    runner = TaskRunner(board, max_retries=3, timeout_seconds=0.1, settle_seconds=0.1, reset_fn=resets.append)
    try:
        result = runner.run("t", _context(), hangs, ok_verify)
    finally:
        release.set()
    assert result.status == S.FAILED
    assert result.attempts == 1
    assert resets == []
    assert runner.tainted(_context())
    assert "still running" in result.failure.message
