"""Escalation channels that answer semantic-conflict prompts.

A channel is any callable taking a `ConflictEscalation` and returning the
name of one of its options, or None to leave the conflict escalated. The
affected branch is then held back while independent work continues.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from loguru import logger
from rich.console import Console
from rich.prompt import Prompt

from .constants import DECISIONS_FILE, STATE_DIR_NAME
from .io_utils import _load_data_with_error, _save_data
from .models import ConflictEscalation
from .utils import _now_iso


class DeferredChannel:
    """Never decides; every semantic conflict waits for a later session."""

    def __call__(self, escalation: ConflictEscalation) -> Optional[str]:
        return None


class PolicyChannel:
    """Automated policy: always answer with the same option when offered."""

    def __init__(self, choice: str):
        self.choice = choice

    def __call__(self, escalation: ConflictEscalation) -> Optional[str]:
        if self.choice in escalation.option_names():
            return self.choice
        return None


def decisions_path(project_dir: Path) -> Path:
    return project_dir / STATE_DIR_NAME / DECISIONS_FILE


def record_decision(project_dir: Path, path: str, choice: str, conflict_id: Optional[str] = None) -> dict[str, Any]:
    """Persist a decision for the conflict on `path`.

    Raises:
        ValueError: If the existing decisions file cannot be parsed.
    """
    target = decisions_path(project_dir)
    data, err = _load_data_with_error(target, {})
    if err:
        raise ValueError(f"Refusing to overwrite unreadable decisions file: {err}")
    decisions = dict(data.get("decisions") or {})
    entry = {"choice": choice, "conflict_id": conflict_id, "recorded_at": _now_iso()}
    decisions[path] = entry
    _save_data(target, {"decisions": decisions})
    logger.info("Recorded decision {} for {}", choice, path)
    return entry


def pending_decisions(project_dir: Path) -> dict[str, dict[str, Any]]:
    data, err = _load_data_with_error(decisions_path(project_dir), {})
    if err:
        logger.warning("Ignoring unreadable decisions file: {}", err)
        return {}
    decisions = data.get("decisions") or {}
    return {str(key): dict(value) for key, value in decisions.items() if isinstance(value, dict)}


def discard_decisions(project_dir: Path, paths: Iterable[str]) -> None:
    paths = set(paths)
    if not paths:
        return
    target = decisions_path(project_dir)
    data, err = _load_data_with_error(target, {})
    if err:
        logger.warning("Unable to prune decisions file: {}", err)
        return
    decisions = data.get("decisions") or {}
    kept = {key: value for key, value in decisions.items() if key not in paths}
    if len(kept) != len(decisions):
        _save_data(target, {"decisions": kept})


class DecisionFileChannel:
    """Answer from `.autodev/decisions.yaml`, keyed by path.

    Conflict ids change every time a held-back branch is merged again, so
    decisions match on the path. The orchestrator removes a decision once the
    branch it was applied to has been integrated.
    """

    def __init__(self, project_dir: Path):
        self.project_dir = project_dir

    def __call__(self, escalation: ConflictEscalation) -> Optional[str]:
        entry = pending_decisions(self.project_dir).get(escalation.path)
        if not entry:
            return None
        choice = entry.get("choice")
        if choice not in escalation.option_names():
            return None
        return str(choice)


class InteractiveChannel:
    """Ask a human on the terminal."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def __call__(self, escalation: ConflictEscalation) -> Optional[str]:
        self.console.print(f"\n[bold red]Semantic conflict[/bold red] in [bold]{escalation.path}[/bold]")
        self.console.print(f"[dim]Lines {escalation.region[0]}-{escalation.region[1]}, tasks: {', '.join(escalation.task_ids)}[/dim]")
        for label, diff in escalation.candidates.items():
            self.console.print(f"\n[bold]{label}[/bold]")
            self.console.print(diff or "(no textual change)", markup=False, highlight=False)
        for option in escalation.options:
            self.console.print(f"  [cyan]{option.name}[/cyan]: {option.description}")
        names = escalation.option_names() + ["defer"]
        answer = Prompt.ask("Resolution", choices=names, default="defer", console=self.console)
        return None if answer == "defer" else answer


class ChainChannel:
    """Consult channels in order; the first answer wins."""

    def __init__(self, *channels: Callable[[ConflictEscalation], Optional[str]]):
        self.channels = channels

    def __call__(self, escalation: ConflictEscalation) -> Optional[str]:
        for channel in self.channels:
            choice = channel(escalation)
            if choice is not None:
                return choice
        return None
