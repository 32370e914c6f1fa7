"""Load scheduler configuration from `.autodev/config.yaml`."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional

from .constants import (
    CONFIG_FILE,
    DEFAULT_BRANCH_PREFIX,
    DEFAULT_BUDGET_CHECKPOINT_THRESHOLD,
    DEFAULT_BUDGET_WARNING_THRESHOLD,
    DEFAULT_CHECKPOINT_INTERVAL_SECONDS,
    DEFAULT_CHECKPOINT_WRITE_RETRIES,
    DEFAULT_CHECKPOINTS_TO_KEEP,
    DEFAULT_CONTEXT_ACQUIRE_RETRIES,
    DEFAULT_MAX_PARALLELISM,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_INITIAL_DELAY,
    DEFAULT_RETRY_MAX_DELAY,
    DEFAULT_SEQUENTIAL_THRESHOLD,
    DEFAULT_SESSION_BUDGET,
    DEFAULT_TASK_TIMEOUT_SECONDS,
    DISPOSAL_DELETE_ON_SUCCESS,
    DISPOSAL_POLICIES,
    STATE_DIR_NAME,
    WORKTREES_DIR,
)
from .errors import ConfigError
from .io_utils import _load_data_with_error


@dataclass(frozen=True)
class SchedulerConfig:
    """Every scheduling knob, with no hardcoded values in the scheduler."""

    max_parallelism: int = DEFAULT_MAX_PARALLELISM
    sequential_threshold: int = DEFAULT_SEQUENTIAL_THRESHOLD
    max_retries: int = DEFAULT_MAX_RETRIES
    task_timeout_seconds: Optional[float] = DEFAULT_TASK_TIMEOUT_SECONDS
    context_acquire_retries: int = DEFAULT_CONTEXT_ACQUIRE_RETRIES
    retry_initial_delay: float = DEFAULT_RETRY_INITIAL_DELAY
    retry_max_delay: float = DEFAULT_RETRY_MAX_DELAY
    checkpoint_interval_seconds: Optional[float] = DEFAULT_CHECKPOINT_INTERVAL_SECONDS
    checkpoint_write_retries: int = DEFAULT_CHECKPOINT_WRITE_RETRIES
    checkpoints_to_keep: int = DEFAULT_CHECKPOINTS_TO_KEEP
    session_budget: float = DEFAULT_SESSION_BUDGET
    budget_warning_threshold: float = DEFAULT_BUDGET_WARNING_THRESHOLD
    budget_checkpoint_threshold: float = DEFAULT_BUDGET_CHECKPOINT_THRESHOLD
    session_seconds: Optional[float] = None
    disposal_policy: str = DISPOSAL_DELETE_ON_SUCCESS
    keep_failed_contexts: bool = True
    branch_prefix: str = DEFAULT_BRANCH_PREFIX
    worktree_dir: str = f"{STATE_DIR_NAME}/{WORKTREES_DIR}"
    integration_branch: Optional[str] = None
    carry_files: tuple[str, ...] = field(default=(f"{STATE_DIR_NAME}/{CONFIG_FILE}",))

    def __post_init__(self) -> None:
        problems: list[str] = []
        if self.max_parallelism < 1:
            problems.append("max_parallelism must be >= 1")
        if self.sequential_threshold < 0:
            problems.append("sequential_threshold must be >= 0")
        if self.max_retries < 0:
            problems.append("max_retries must be >= 0")
        if self.task_timeout_seconds is not None and self.task_timeout_seconds <= 0:
            problems.append("task_timeout_seconds must be > 0")
        if self.context_acquire_retries < 0:
            problems.append("context_acquire_retries must be >= 0")
        if self.checkpoint_write_retries < 0:
            problems.append("checkpoint_write_retries must be >= 0")
        if self.checkpoints_to_keep < 1:
            problems.append("checkpoints_to_keep must be >= 1")
        if self.session_budget <= 0:
            problems.append("session_budget must be > 0")
        if not 0 < self.budget_warning_threshold <= self.budget_checkpoint_threshold <= 1:
            problems.append("budget thresholds must satisfy 0 < warning <= checkpoint <= 1")
        if self.disposal_policy not in DISPOSAL_POLICIES:
            problems.append(f"disposal_policy must be one of {sorted(DISPOSAL_POLICIES)}")
        if not self.branch_prefix:
            problems.append("branch_prefix must not be empty")
        if problems:
            raise ConfigError("; ".join(problems))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SchedulerConfig":
        """Build a config from a mapping, rejecting unknown keys."""
        known = {item.name for item in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config key(s): {', '.join(unknown)}")
        values = dict(data)
        if "carry_files" in values:
            values["carry_files"] = tuple(values["carry_files"] or ())
        try:
            return cls(**values)
        except TypeError as exc:
            raise ConfigError(str(exc)) from exc

    def with_overrides(self, **overrides: Any) -> "SchedulerConfig":
        """Return a copy with every non-None override applied."""
        applied = {key: value for key, value in overrides.items() if value is not None}
        if not applied:
            return self
        known = {item.name for item in fields(self)}
        unknown = sorted(set(applied) - known)
        if unknown:
            raise ConfigError(f"Unknown config key(s): {', '.join(unknown)}")
        return replace(self, **applied)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["carry_files"] = list(self.carry_files)
        return data


def load_config(project_dir: Path) -> SchedulerConfig:
    """Load `.autodev/config.yaml`, falling back to defaults when missing.

    Raises:
        ConfigError: If the file is unreadable, is not a mapping, or holds
            unknown keys or invalid values.
    """
    path = project_dir.resolve() / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return SchedulerConfig()
    data, err = _load_data_with_error(path, {})
    if err:
        raise ConfigError(f"Unable to read config: {err}")
    return SchedulerConfig.from_dict(data)
