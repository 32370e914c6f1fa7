"""Reconcile file versions produced by concurrently executed branches.

Every file is merged three ways (base, the current integration line, the
incoming branch) at line granularity. Overlapping change regions are
classified:

- additive: both sides only insert entries at the same point; the entries
  are combined and ordered lexically, so the result does not depend on
  which branch arrived first.
- overlapping_non_semantic: both sides touched the region but the versions
  differ only in whitespace, or one side merely reformatted it; the
  substantive edit wins.
- semantic: anything else. Never auto-resolved; an escalation with both
  candidate diffs and named options is offered to the `decide` callback.

Branches are folded one at a time in ascending complexity order. A branch
whose semantic conflict stays undecided is rejected as a whole, so the
integration line never holds half a branch.
"""

from __future__ import annotations

import difflib
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Optional

from loguru import logger

from .models import (
    ConflictClass,
    ConflictEscalation,
    ConflictRecord,
    Resolution,
    ResolutionKind,
    ResolutionOption,
)

Decide = Callable[[ConflictEscalation], Optional[str]]

MAIN_LINE = "main"

STRATEGY_LEXICAL_UNION = "lexical-union"
STRATEGY_KEEP_BASELINE = "keep-baseline"
STRATEGY_TAKE_SUBSTANTIVE = "take-substantive"
STRATEGY_KEEP_SUBSTANTIVE = "keep-substantive"

OPTION_TAKE_FIRST = "take-first"
OPTION_TAKE_SECOND = "take-second"
OPTION_FIRST_THEN_SECOND = "first-then-second"
OPTION_SECOND_THEN_FIRST = "second-then-first"
OPTION_KEEP_BASE = "keep-base"

RESOLUTION_OPTIONS = (
    OPTION_TAKE_FIRST,
    OPTION_TAKE_SECOND,
    OPTION_FIRST_THEN_SECOND,
    OPTION_SECOND_THEN_FIRST,
    OPTION_KEEP_BASE,
)

_REGION_OPTIONS = (
    (OPTION_TAKE_FIRST, "Keep only the integration line's version of the region"),
    (OPTION_TAKE_SECOND, "Keep only the incoming branch's version of the region"),
    (OPTION_FIRST_THEN_SECOND, "Keep both versions, integration line first"),
    (OPTION_SECOND_THEN_FIRST, "Keep both versions, incoming branch first"),
    (OPTION_KEEP_BASE, "Drop both edits and keep the original region"),
)

_FILE_OPTIONS = (
    (OPTION_TAKE_FIRST, "Keep the integration line's version of the file"),
    (OPTION_TAKE_SECOND, "Keep the incoming branch's version of the file"),
    (OPTION_KEEP_BASE, "Restore the original file"),
)


@dataclass
class _Hunk:
    start: int
    end: int
    lines: list[str]
    side: str

    @property
    def insertion(self) -> bool:
        return self.start == self.end


@dataclass
class FileMerge:
    """Result of merging one path."""

    path: str
    text: Optional[str]
    records: list[ConflictRecord] = field(default_factory=list)
    escalations: list[ConflictEscalation] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.escalations


@dataclass
class BranchChanges:
    """Files a branch changed, with their new contents (None = deleted)."""

    name: str
    files: dict[str, Optional[str]]
    complexity: int = 3
    task_ids: list[str] = field(default_factory=list)
    base: Optional[dict[str, Optional[str]]] = None


@dataclass
class IntegrationOutcome:
    merged: dict[str, Optional[str]]
    conflicts: list[ConflictRecord] = field(default_factory=list)
    integrated: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def unresolved(self) -> list[ConflictRecord]:
        return [record for record in self.conflicts if record.unresolved]

    @property
    def decided_paths(self) -> set[str]:
        """Paths where a decision was applied by a branch that got integrated."""
        return {
            record.path for record in self.conflicts if record.resolution.kind == ResolutionKind.USER_RESOLVED
        }


def merge_order(branches: Iterable[BranchChanges]) -> list[BranchChanges]:
    """Simplest branch first; ties broken by name."""
    return sorted(branches, key=lambda branch: (branch.complexity, branch.name))


def _lines(text: Optional[str]) -> list[str]:
    return text.splitlines(keepends=True) if text else []


def _squash(lines: list[str]) -> str:
    return "".join("".join(lines).split())


def _with_newline(line: str) -> str:
    return line if line.endswith("\n") else line + "\n"


def _hunks(base: list[str], other: list[str], side: str) -> list[_Hunk]:
    matcher = difflib.SequenceMatcher(None, base, other, autojunk=False)
    return [
        _Hunk(i1, i2, other[j1:j2], side)
        for tag, i1, i2, j1, j2 in matcher.get_opcodes()
        if tag != "equal"
    ]


def _overlaps(a: _Hunk, b: _Hunk) -> bool:
    if a.insertion and b.insertion:
        return a.start == b.start
    if a.insertion:
        return b.start <= a.start <= b.end
    if b.insertion:
        return a.start <= b.start <= a.end
    return a.start < b.end and b.start < a.end


def _clusters(hunks: list[_Hunk]) -> list[list[_Hunk]]:
    clusters: list[list[_Hunk]] = []
    for hunk in sorted(hunks, key=lambda h: (h.start, h.end)):
        if clusters and any(_overlaps(hunk, member) for member in clusters[-1]):
            clusters[-1].append(hunk)
        else:
            clusters.append([hunk])
    return clusters


def _apply(base: list[str], start: int, end: int, hunks: list[_Hunk]) -> list[str]:
    out: list[str] = []
    pos = start
    for hunk in sorted(hunks, key=lambda h: (h.start, h.end)):
        out.extend(base[pos:hunk.start])
        out.extend(hunk.lines)
        pos = hunk.end
    out.extend(base[pos:end])
    return out


def _diff(path: str, before: list[str], after: list[str], label: str) -> str:
    return "".join(
        difflib.unified_diff(before, after, fromfile=f"base/{path}", tofile=f"{label}/{path}")
    )


def _decide(
    decide: Optional[Decide],
    record: ConflictRecord,
    escalation: ConflictEscalation,
) -> Optional[str]:
    if decide is None:
        return None
    choice = decide(escalation)
    if choice is None:
        return None
    if choice not in escalation.option_names():
        logger.warning(
            "Ignoring decision {!r} for {}: expected one of {}",
            choice,
            record.path,
            ", ".join(escalation.option_names()),
        )
        return None
    return choice


class _FileMerger:
    def __init__(
        self,
        path: str,
        base: Optional[str],
        ours: Optional[str],
        theirs: Optional[str],
        first: str,
        second: str,
        task_ids: list[str],
        decide: Optional[Decide],
    ):
        self.path = path
        self.base = base
        self.ours = ours
        self.theirs = theirs
        self.first = first
        self.second = second
        self.task_ids = task_ids
        self.decide = decide
        self.records: list[ConflictRecord] = []
        self.escalations: list[ConflictEscalation] = []

    def _record(
        self,
        classification: ConflictClass,
        resolution: Resolution,
        region: tuple[int, int],
        **extra,
    ) -> ConflictRecord:
        record = ConflictRecord(
            path=self.path,
            branches=[self.first, self.second],
            classification=classification,
            resolution=resolution,
            region=region,
            task_ids=list(self.task_ids),
            **extra,
        )
        self.records.append(record)
        if classification != ConflictClass.SEMANTIC:
            logger.info(
                "Auto-resolved {} conflict in {} lines {}-{} ({})",
                classification.value,
                self.path,
                region[0],
                region[1],
                resolution.strategy,
            )
        return record

    def _escalate(
        self,
        region: tuple[int, int],
        base_lines: list[str],
        ours_lines: list[str],
        theirs_lines: list[str],
        options: tuple[tuple[str, str], ...],
    ) -> Optional[str]:
        candidates = {
            self.first: _diff(self.path, base_lines, ours_lines, self.first),
            self.second: _diff(self.path, base_lines, theirs_lines, self.second),
        }
        record = self._record(
            ConflictClass.SEMANTIC,
            Resolution(kind=ResolutionKind.ESCALATED),
            region,
            candidates=candidates,
            options=[name for name, _ in options],
        )
        escalation = ConflictEscalation(
            conflict_id=record.id,
            path=self.path,
            region=region,
            base_text="".join(base_lines),
            candidates=candidates,
            options=[ResolutionOption(name, description) for name, description in options],
            task_ids=list(self.task_ids),
        )
        choice = _decide(self.decide, record, escalation)
        if choice is None:
            logger.warning(
                "Semantic conflict in {} lines {}-{} between {} and {} needs a decision",
                self.path,
                region[0],
                region[1],
                self.first,
                self.second,
            )
            self.escalations.append(escalation)
            return None
        record.resolution = Resolution(kind=ResolutionKind.USER_RESOLVED, choice=choice)
        logger.info("Applied decision {} to conflict in {}", choice, self.path)
        return choice

    def merge(self) -> FileMerge:
        ours, theirs, base = self.ours, self.theirs, self.base
        if ours == theirs or theirs == base:
            return FileMerge(self.path, ours)
        if ours == base:
            return FileMerge(self.path, theirs)
        if ours is None or theirs is None:
            return self._merge_deletion()
        return self._merge_lines()

    def _merge_deletion(self) -> FileMerge:
        base_lines = _lines(self.base)
        choice = self._escalate(
            (0, len(base_lines)), base_lines, _lines(self.ours), _lines(self.theirs), _FILE_OPTIONS
        )
        text: Optional[str] = self.ours
        if choice == OPTION_TAKE_SECOND:
            text = self.theirs
        elif choice == OPTION_KEEP_BASE:
            text = self.base
        return self._result(text)

    def _merge_lines(self) -> FileMerge:
        base_lines = _lines(self.base)
        ours_hunks = _hunks(base_lines, _lines(self.ours), "ours")
        theirs_hunks = _hunks(base_lines, _lines(self.theirs), "theirs")
        out: list[str] = []
        pos = 0
        for cluster in _clusters(ours_hunks + theirs_hunks):
            start = min(hunk.start for hunk in cluster)
            end = max(hunk.end for hunk in cluster)
            out.extend(base_lines[pos:start])
            pos = end
            ours = [hunk for hunk in cluster if hunk.side == "ours"]
            theirs = [hunk for hunk in cluster if hunk.side == "theirs"]
            if not theirs:
                out.extend(_apply(base_lines, start, end, ours))
                continue
            if not ours:
                out.extend(_apply(base_lines, start, end, theirs))
                continue
            out.extend(self._reconcile(base_lines, start, end, ours, theirs))
        out.extend(base_lines[pos:])
        return self._result("".join(out))

    def _reconcile(
        self,
        base_lines: list[str],
        start: int,
        end: int,
        ours: list[_Hunk],
        theirs: list[_Hunk],
    ) -> list[str]:
        region = (start, end)
        base_region = base_lines[start:end]
        ours_lines = _apply(base_lines, start, end, ours)
        theirs_lines = _apply(base_lines, start, end, theirs)
        if ours_lines == theirs_lines:
            return ours_lines

        hunks = ours + theirs
        if self.base is not None and all(hunk.insertion for hunk in hunks):
            entries: list[str] = []
            for hunk in hunks:
                for line in hunk.lines:
                    line = _with_newline(line)
                    if line not in entries:
                        entries.append(line)
            self._record(
                ConflictClass.ADDITIVE,
                Resolution(kind=ResolutionKind.AUTO_RESOLVED, strategy=STRATEGY_LEXICAL_UNION),
                region,
            )
            return sorted(entries)

        squashed_ours, squashed_theirs = _squash(ours_lines), _squash(theirs_lines)
        squashed_base = _squash(base_region)
        strategy: Optional[str] = None
        chosen = ours_lines
        if squashed_ours == squashed_theirs:
            strategy = STRATEGY_KEEP_BASELINE
        elif squashed_ours == squashed_base:
            strategy, chosen = STRATEGY_TAKE_SUBSTANTIVE, theirs_lines
        elif squashed_theirs == squashed_base:
            strategy = STRATEGY_KEEP_SUBSTANTIVE
        if strategy is not None:
            self._record(
                ConflictClass.OVERLAPPING_NON_SEMANTIC,
                Resolution(kind=ResolutionKind.AUTO_RESOLVED, strategy=strategy),
                region,
            )
            return chosen

        choice = self._escalate(region, base_region, ours_lines, theirs_lines, _REGION_OPTIONS)
        if choice == OPTION_TAKE_SECOND:
            return theirs_lines
        if choice == OPTION_FIRST_THEN_SECOND:
            return ours_lines + theirs_lines
        if choice == OPTION_SECOND_THEN_FIRST:
            return theirs_lines + ours_lines
        if choice == OPTION_KEEP_BASE:
            return base_region
        return ours_lines

    def _result(self, text: Optional[str]) -> FileMerge:
        return FileMerge(self.path, text, records=list(self.records), escalations=list(self.escalations))


def merge_file(
    path: str,
    base: Optional[str],
    ours: Optional[str],
    theirs: Optional[str],
    *,
    first: str = MAIN_LINE,
    second: str = "incoming",
    task_ids: Optional[list[str]] = None,
    decide: Optional[Decide] = None,
) -> FileMerge:
    """Three-way merge one file.

    Args:
        path: Repository-relative path, used in records and diffs.
        base: Common ancestor text, or None if the file did not exist.
        ours: Integration-line text, or None if deleted there.
        theirs: Incoming branch text, or None if deleted there.
        first: Label of the integration-line side.
        second: Label of the incoming branch.
        task_ids: Tasks whose work produced the incoming branch.
        decide: Escalation channel consulted for semantic conflicts.

    Returns:
        The merged text plus every conflict record. When `clean` is False
        the text must not be used.
    """
    merger = _FileMerger(path, base, ours, theirs, first, second, list(task_ids or []), decide)
    return merger.merge()


def integrate(
    main_line: Mapping[str, Optional[str]],
    branches: Iterable[BranchChanges],
    decide: Optional[Decide] = None,
) -> IntegrationOutcome:
    """Fold `branches` into `main_line` in merge order.

    `main_line` maps path to text. Each branch is merged against its own
    base snapshot when it carries one, else against `main_line`.
    """
    current: dict[str, Optional[str]] = dict(main_line)
    last_writer: dict[str, str] = {}
    outcome = IntegrationOutcome(merged=current)
    for branch in merge_order(branches):
        base_snapshot = branch.base if branch.base is not None else main_line
        staged: dict[str, Optional[str]] = {}
        records: list[ConflictRecord] = []
        rejected = False
        for path in sorted(branch.files):
            result = merge_file(
                path,
                base_snapshot.get(path),
                current.get(path),
                branch.files[path],
                first=last_writer.get(path, MAIN_LINE),
                second=branch.name,
                task_ids=branch.task_ids,
                decide=decide,
            )
            records.extend(result.records)
            if not result.clean:
                rejected = True
                continue
            staged[path] = result.text
        if rejected:
            outcome.rejected.append(branch.name)
            outcome.conflicts.extend(record for record in records if record.unresolved)
            logger.warning("Branch {} not integrated: unresolved semantic conflict", branch.name)
            continue
        for path, text in staged.items():
            if text is None:
                current.pop(path, None)
            else:
                current[path] = text
            last_writer[path] = branch.name
        outcome.conflicts.extend(records)
        outcome.integrated.append(branch.name)
    return outcome
