"""Tests for conflict classification, resolution and branch integration."""

from __future__ import annotations

from autodev_scheduler.escalation import PolicyChannel
from autodev_scheduler.models import ConflictClass, ConflictEscalation, ResolutionKind
from autodev_scheduler.resolver import (
    OPTION_FIRST_THEN_SECOND,
    OPTION_KEEP_BASE,
    OPTION_TAKE_SECOND,
    STRATEGY_KEEP_BASELINE,
    STRATEGY_LEXICAL_UNION,
    STRATEGY_TAKE_SUBSTANTIVE,
    BranchChanges,
    integrate,
    merge_file,
    merge_order,
)

BASE = "import os\n"


class TestMergeFile:
    def test_one_sided_change_is_taken(self):
        result = merge_file("a.py", "x = 1\n", "x = 1\n", "x = 2\n")
        assert result.clean
        assert result.text == "x = 2\n"
        assert result.records == []

    def test_disjoint_regions_merge_without_records(self):
        base = "a\nb\nc\nd\ne\n"
        ours = "A\nb\nc\nd\ne\n"
        theirs = "a\nb\nc\nd\nE\n"
        result = merge_file("f.txt", base, ours, theirs)
        assert result.clean
        assert result.text == "A\nb\nc\nd\nE\n"
        assert result.records == []

    def test_additive_insertions_union(self):
        result = merge_file("imports.py", BASE, BASE + "import sys\n", BASE + "import json\n")
        assert result.clean
        assert result.text == "import os\nimport json\nimport sys\n"
        [record] = result.records
        assert record.classification == ConflictClass.ADDITIVE
        assert record.resolution.kind == ResolutionKind.AUTO_RESOLVED
        assert record.resolution.strategy == STRATEGY_LEXICAL_UNION

    def test_additive_resolution_is_commutative(self):
        one = merge_file("imports.py", BASE, BASE + "import sys\n", BASE + "import json\n")
        two = merge_file("imports.py", BASE, BASE + "import json\n", BASE + "import sys\n")
        assert one.text == two.text

    def test_additive_union_drops_duplicates(self):
        result = merge_file("imports.py", BASE, BASE + "import re\nimport sys\n", BASE + "import sys\nimport abc\n")
        assert result.text == "import os\nimport abc\nimport re\nimport sys\n"

    def test_whitespace_only_edits_keep_baseline(self):
        base = "def f(a,b):\n    return a+b\n"
        ours = "def f(a, b):\n    return a+b\n"
        theirs = "def f(a,  b):\n    return a+b\n"
        result = merge_file("m.py", base, ours, theirs)
        assert result.clean
        assert result.text == ours
        [record] = result.records
        assert record.classification == ConflictClass.OVERLAPPING_NON_SEMANTIC
        assert record.resolution.strategy == STRATEGY_KEEP_BASELINE

    def test_whitespace_against_substantive_takes_substantive(self):
        base = "value = compute(a,b)\n"
        ours = "value = compute(a, b)\n"
        theirs = "value = compute(a, b, c)\n"
        result = merge_file("m.py", base, ours, theirs)
        assert result.clean
        assert result.text == theirs
        assert result.records[0].resolution.strategy == STRATEGY_TAKE_SUBSTANTIVE

    def test_semantic_conflict_escalates(self):
        result = merge_file("cfg.py", "limit = 1\n", "limit = 2\n", "limit = 3\n", second="auto/b", task_ids=["b"])
        assert not result.clean
        [record] = result.records
        assert record.classification == ConflictClass.SEMANTIC
        assert record.unresolved
        assert record.branches == ["main", "auto/b"]
        assert record.task_ids == ["b"]
        assert "limit = 2" in record.candidates["main"]
        assert "limit = 3" in record.candidates["auto/b"]
        [escalation] = result.escalations
        assert escalation.conflict_id == record.id
        assert OPTION_KEEP_BASE in escalation.option_names()

    def test_decision_is_applied(self):
        seen: list[ConflictEscalation] = []

        def decide(escalation: ConflictEscalation) -> str:
            seen.append(escalation)
            return OPTION_FIRST_THEN_SECOND

        result = merge_file("cfg.py", "limit = 1\n", "limit = 2\n", "limit = 3\n", decide=decide)
        assert result.clean
        assert result.text == "limit = 2\nlimit = 3\n"
        assert result.records[0].resolution.kind == ResolutionKind.USER_RESOLVED
        assert result.records[0].resolution.choice == OPTION_FIRST_THEN_SECOND
        assert len(seen) == 1

    def test_invalid_decision_is_ignored(self):
        result = merge_file("cfg.py", "limit = 1\n", "limit = 2\n", "limit = 3\n", decide=lambda esc: "merge-it-somehow")
        assert not result.clean

    def test_delete_modify_conflict_offers_file_options(self):
        result = merge_file("gone.py", "x = 1\n", None, "x = 2\n")
        assert not result.clean
        assert OPTION_FIRST_THEN_SECOND not in result.escalations[0].option_names()

        kept = merge_file("gone.py", "x = 1\n", None, "x = 2\n", decide=PolicyChannel(OPTION_TAKE_SECOND))
        assert kept.clean
        assert kept.text == "x = 2\n"

    def test_both_sides_identical(self):
        result = merge_file("same.py", "a\n", "b\n", "b\n")
        assert result.clean
        assert result.text == "b\n"


class TestIntegrate:
    def test_merge_order_is_complexity_then_name(self):
        branches = [
            BranchChanges("auto/z", {}, complexity=1),
            BranchChanges("auto/b", {}, complexity=3),
            BranchChanges("auto/a", {}, complexity=3),
        ]
        assert [branch.name for branch in merge_order(branches)] == ["auto/z", "auto/a", "auto/b"]

    def test_additive_branches_all_integrate(self):
        main = {"imports.py": BASE}
        outcome = integrate(
            main,
            [
                BranchChanges("auto/a", {"imports.py": BASE + "import sys\n"}, complexity=2),
                BranchChanges("auto/b", {"imports.py": BASE + "import json\n"}, complexity=1),
            ],
        )
        assert outcome.integrated == ["auto/b", "auto/a"]
        assert outcome.merged["imports.py"] == "import os\nimport json\nimport sys\n"
        assert outcome.unresolved == []

    def test_semantic_conflict_rejects_whole_branch(self):
        main = {"cfg.py": "limit = 1\n", "other.py": "a\n"}
        outcome = integrate(
            main,
            [
                BranchChanges("auto/a", {"cfg.py": "limit = 2\n"}, complexity=1, task_ids=["a"]),
                BranchChanges("auto/b", {"cfg.py": "limit = 3\n", "other.py": "b\n"}, complexity=2, task_ids=["b"]),
            ],
        )
        assert outcome.integrated == ["auto/a"]
        assert outcome.rejected == ["auto/b"]
        assert outcome.merged["cfg.py"] == "limit = 2\n"
        # The rejected branch's clean file is not applied either.
        assert outcome.merged["other.py"] == "a\n"
        [conflict] = outcome.unresolved
        assert conflict.branches == ["auto/a", "auto/b"]
        assert conflict.task_ids == ["b"]

    def test_new_files_and_deletions(self):
        outcome = integrate(
            {"old.py": "x\n"},
            [BranchChanges("auto/a", {"old.py": None, "new.py": "y\n"})],
        )
        assert outcome.merged == {"new.py": "y\n"}
