"""Tests for graph construction, readiness and status transitions."""

from __future__ import annotations

import threading

import pytest

from autodev_scheduler.errors import CycleError, DanglingDependencyError, DuplicateNodeError, TransitionError
from autodev_scheduler.graph import GraphBoard, TaskGraph, is_legal
from autodev_scheduler.models import EvidenceEntry, EvidenceRecord, TaskStatus

from conftest import graph_of, node

S = TaskStatus


def _diamond() -> TaskGraph:
    return graph_of(node("a"), node("b", "a"), node("c", "a"), node("d", "b", "c"))


class TestBuild:
    def test_empty_graph_is_complete(self):
        graph = TaskGraph.build([])
        assert len(graph) == 0
        assert graph.all_done()
        assert graph.ready_nodes() == set()

    def test_duplicate_id_rejected(self):
        with pytest.raises(DuplicateNodeError):
            TaskGraph.build([node("a"), node("a")])

    def test_dangling_dependency_rejected(self):
        with pytest.raises(DanglingDependencyError):
            TaskGraph.build([node("a", "missing")])

    def test_cycle_rejected_with_path(self):
        with pytest.raises(CycleError) as excinfo:
            TaskGraph.build([node("root"), node("a", "root", "c"), node("b", "a"), node("c", "b")])
        assert "a" in str(excinfo.value)

    def test_self_dependency_is_a_cycle(self):
        with pytest.raises(CycleError):
            TaskGraph.build([node("a", "a")])

    def test_extra_edges_are_merged(self):
        graph = TaskGraph.build([node("a"), node("b")], edges=[("a", "b")])
        assert graph["b"].dependencies == ("a",)

    def test_edge_to_unknown_node_rejected(self):
        with pytest.raises(DanglingDependencyError):
            TaskGraph.build([node("a")], edges=[("a", "ghost")])

    def test_round_trip_through_dict(self):
        graph = _diamond().apply("a", S.READY).apply("a", S.RUNNING)
        restored = TaskGraph.from_dict(graph.to_dict())
        assert restored.statuses() == graph.statuses()
        assert restored["a"].attempts == 1
        assert restored.fingerprint() == graph.fingerprint()


class TestReadiness:
    def test_only_roots_ready_initially(self):
        assert _diamond().ready_nodes() == {"a"}

    def test_join_waits_for_every_dependency(self):
        graph = _diamond()
        for node_id in ("a", "b"):
            graph = graph.apply(node_id, S.READY).apply(node_id, S.RUNNING).apply(node_id, S.VERIFYING).apply(node_id, S.DONE)
        assert graph.ready_nodes() == {"c"}
        assert graph.unmet_dependencies("d") == ["c"]

    def test_ready_nodes_are_pending_with_done_dependencies(self):
        graph = _diamond().apply("a", S.READY).apply("a", S.RUNNING)
        for node_id in graph.ready_nodes():
            current = graph[node_id]
            assert current.status == S.PENDING
            assert all(graph[dep].status == S.DONE for dep in current.dependencies)
        assert graph.ready_nodes() == set()

    def test_transitive_dependents(self):
        assert sorted(_diamond().transitive_dependents("a")) == ["b", "c", "d"]

    def test_plan_batches_by_level_and_complexity(self):
        graph = graph_of(node("x", complexity=4), node("y", complexity=1), node("z", "x", "y"))
        plan = graph.plan()
        assert plan.batches == [["y", "x"], ["z"]]
        assert plan.total_tasks == 3

    def test_plan_respects_parallelism_cap(self):
        graph = graph_of(node("a"), node("b"), node("c"))
        assert graph.plan(max_parallelism=2).batches == [["a", "b"], ["c"]]


class TestTransitions:
    @pytest.mark.parametrize(
        ("current", "target", "legal"),
        [
            (S.PENDING, S.READY, True),
            (S.PENDING, S.RUNNING, False),
            (S.READY, S.RUNNING, True),
            (S.RUNNING, S.VERIFYING, True),
            (S.VERIFYING, S.DONE, True),
            (S.RUNNING, S.DONE, False),
            (S.DONE, S.RUNNING, False),
            (S.FAILED, S.PENDING, False),
            (S.BLOCKED, S.READY, False),
        ],
    )
    def test_legality(self, current, target, legal):
        assert is_legal(current, target) is legal

    def test_retry_path_resets_to_pending(self):
        assert is_legal(S.FAILED, S.PENDING, retry=True)
        assert is_legal(S.BLOCKED, S.PENDING, retry=True)
        assert not is_legal(S.PENDING, S.PENDING, retry=True)

    def test_apply_returns_new_graph(self):
        graph = _diamond()
        moved = graph.apply("a", S.READY)
        assert graph["a"].status == S.PENDING
        assert moved["a"].status == S.READY
        assert moved.status_of("a") == S.READY

    def test_illegal_apply_raises(self):
        with pytest.raises(TransitionError):
            _diamond().apply("a", S.DONE)

    def test_evidence_is_appended_never_replaced(self):
        first = EvidenceRecord().append(EvidenceEntry(1, "execution", True, "one"))
        second = EvidenceRecord().append(EvidenceEntry(1, "verification", False, "two"))
        graph = _diamond().apply("a", S.READY).apply("a", S.RUNNING, first).apply("a", S.VERIFYING, second)
        assert [entry.summary for entry in graph["a"].evidence.entries] == ["one", "two"]

    def test_retry_counters(self):
        graph = _diamond().apply("a", S.READY).apply("a", S.RUNNING).apply("a", S.VERIFYING).apply("a", S.RUNNING)
        assert graph["a"].attempts == 2
        assert graph["a"].retries_used == 1

    def test_block_reason_recorded(self):
        graph = _diamond().apply("b", S.BLOCKED, reason="upstream_failed")
        assert graph["b"].block_reason == "upstream_failed"
        assert graph.apply("b", S.PENDING, retry=True)["b"].block_reason is None


class TestGraphBoard:
    def test_expect_guards_against_lost_race(self):
        board = GraphBoard(_diamond())
        board.apply("a", S.READY, expect=S.PENDING)
        with pytest.raises(TransitionError):
            board.apply("a", S.READY, expect=S.PENDING)

    def test_owner_is_enforced(self):
        board = GraphBoard(_diamond().apply("a", S.READY))
        board.apply("a", S.RUNNING, owner="ctx-1")
        assert board.owner_of("a") == "ctx-1"
        with pytest.raises(TransitionError):
            board.apply("a", S.VERIFYING, owner="ctx-2")
        board.apply("a", S.VERIFYING, owner="ctx-1")
        board.apply("a", S.DONE, owner="ctx-1")
        assert board.owner_of("a") is None

    def test_block_skips_terminal_nodes(self):
        board = GraphBoard(_diamond())
        assert board.block("d", "stalled_graph") is True
        assert board.block("d", "stalled_graph") is False

    def test_at_most_one_writer_under_contention(self):
        board = GraphBoard(_diamond().apply("a", S.READY))
        barrier = threading.Barrier(8)
        winners: list[str] = []
        lock = threading.Lock()

        def claim(owner: str) -> None:
            barrier.wait()
            try:
                board.apply("a", S.RUNNING, expect=S.READY, owner=owner)
            except TransitionError:
                return
            with lock:
                winners.append(owner)

        threads = [threading.Thread(target=claim, args=(f"ctx-{i}",)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(winners) == 1
        assert board.owner_of("a") == winners[0]
        assert board.node("a").attempts == 1
