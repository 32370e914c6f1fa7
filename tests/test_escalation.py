from __future__ import annotations

import io
from pathlib import Path

import pytest
from rich.console import Console

from autodev_scheduler import escalation as escalation_module
from autodev_scheduler.escalation import (
    ChainChannel,
    DecisionFileChannel,
    DeferredChannel,
    InteractiveChannel,
    PolicyChannel,
    decisions_path,
    discard_decisions,
    pending_decisions,
    record_decision,
)
from autodev_scheduler.models import ConflictEscalation, ResolutionOption


def _escalation(path: str = "cfg.py") -> ConflictEscalation:
    return ConflictEscalation(
        conflict_id="conflict-1",
        path=path,
        region=(1, 1),
        base_text="limit = 1\n",
        candidates={"main": "-limit = 1\n+limit = 2\n", "auto/b": "-limit = 1\n+limit = 3\n"},
        options=[
            ResolutionOption("take-first", "keep main"),
            ResolutionOption("take-second", "keep auto/b"),
            ResolutionOption("keep-base", "keep neither"),
        ],
        task_ids=["b"],
    )


def test_deferred_and_policy_channels():
    assert DeferredChannel()(_escalation()) is None
    assert PolicyChannel("take-second")(_escalation()) == "take-second"
    assert PolicyChannel("first-then-second")(_escalation()) is None


class TestDecisionFile:
    def test_record_and_read_back(self, tmp_path: Path):
        record_decision(tmp_path, "cfg.py", "take-second", conflict_id="conflict-1")
        decisions = pending_decisions(tmp_path)
        assert decisions["cfg.py"]["choice"] == "take-second"
        assert decisions["cfg.py"]["conflict_id"] == "conflict-1"

    def test_later_decision_replaces_earlier(self, tmp_path: Path):
        record_decision(tmp_path, "cfg.py", "take-first")
        record_decision(tmp_path, "cfg.py", "keep-base")
        assert pending_decisions(tmp_path)["cfg.py"]["choice"] == "keep-base"

    def test_corrupt_file_is_not_overwritten(self, tmp_path: Path):
        path = decisions_path(tmp_path)
        path.parent.mkdir(parents=True)
        path.write_text("decisions: [\n")
        assert pending_decisions(tmp_path) == {}
        with pytest.raises(ValueError):
            record_decision(tmp_path, "cfg.py", "take-first")
        assert path.read_text() == "decisions: [\n"

    def test_channel_answers_by_path_and_keeps_the_decision(self, tmp_path: Path):
        record_decision(tmp_path, "cfg.py", "take-second")
        record_decision(tmp_path, "other.py", "take-first")
        channel = DecisionFileChannel(tmp_path)
        assert channel(_escalation("missing.py")) is None
        assert channel(_escalation("cfg.py")) == "take-second"
        # Answering is not consuming: the branch may still be held back.
        assert set(pending_decisions(tmp_path)) == {"cfg.py", "other.py"}
        discard_decisions(tmp_path, ["cfg.py"])
        assert set(pending_decisions(tmp_path)) == {"other.py"}

    def test_choice_not_on_offer_is_ignored(self, tmp_path: Path):
        record_decision(tmp_path, "cfg.py", "first-then-second")
        assert DecisionFileChannel(tmp_path)(_escalation("cfg.py")) is None

    def test_discard_ignores_unknown_paths(self, tmp_path: Path):
        record_decision(tmp_path, "cfg.py", "take-first")
        discard_decisions(tmp_path, ["nope.py"])
        assert set(pending_decisions(tmp_path)) == {"cfg.py"}


def test_chain_uses_first_answer(tmp_path: Path):
    asked = []

    def tracking(escalation):
        asked.append(escalation.path)
        return "keep-base"

    chain = ChainChannel(DeferredChannel(), PolicyChannel("take-first"), tracking)
    assert chain(_escalation()) == "take-first"
    assert asked == []
    assert ChainChannel(DeferredChannel(), tracking)(_escalation()) == "keep-base"


def test_interactive_channel_prompts(monkeypatch):
    buffer = io.StringIO()
    monkeypatch.setattr(escalation_module.Prompt, "ask", lambda *args, **kwargs: "take-first")
    channel = InteractiveChannel(Console(file=buffer, width=120))
    assert channel(_escalation()) == "take-first"
    output = buffer.getvalue()
    assert "cfg.py" in output
    assert "take-second" in output

    monkeypatch.setattr(escalation_module.Prompt, "ask", lambda *args, **kwargs: "defer")
    assert channel(_escalation()) is None
