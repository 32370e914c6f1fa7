from __future__ import annotations

from pathlib import Path

import pytest

from autodev_scheduler.config import SchedulerConfig, load_config
from autodev_scheduler.constants import DEFAULT_MAX_PARALLELISM, DISPOSAL_KEEP_FOR_AUDIT
from autodev_scheduler.errors import ConfigError


def _write_config(project: Path, text: str) -> None:
    path = project / ".autodev" / "config.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


def test_defaults_when_file_missing(tmp_path: Path):
    config = load_config(tmp_path)
    assert config == SchedulerConfig()
    assert config.max_parallelism == DEFAULT_MAX_PARALLELISM


def test_values_are_read_from_yaml(tmp_path: Path):
    _write_config(
        tmp_path,
        "max_parallelism: 6\nmax_retries: 0\ndisposal_policy: keep-for-audit\ncarry_files: [.env]\n",
    )
    config = load_config(tmp_path)
    assert config.max_parallelism == 6
    assert config.max_retries == 0
    assert config.disposal_policy == DISPOSAL_KEEP_FOR_AUDIT
    assert config.carry_files == (".env",)


def test_unknown_key_is_rejected(tmp_path: Path):
    _write_config(tmp_path, "max_paralelism: 6\n")
    with pytest.raises(ConfigError, match="max_paralelism"):
        load_config(tmp_path)


def test_unreadable_file_is_rejected(tmp_path: Path):
    _write_config(tmp_path, "max_parallelism: [\n")
    with pytest.raises(ConfigError):
        load_config(tmp_path)


@pytest.mark.parametrize(
    "overrides",
    [
        {"max_parallelism": 0},
        {"max_retries": -1},
        {"task_timeout_seconds": 0},
        {"session_budget": 0},
        {"budget_warning_threshold": 0.99, "budget_checkpoint_threshold": 0.5},
        {"disposal_policy": "shred"},
        {"branch_prefix": ""},
    ],
)
def test_invalid_values_are_rejected(overrides):
    with pytest.raises(ConfigError):
        SchedulerConfig(**overrides)


def test_overrides_skip_none_and_validate():
    base = SchedulerConfig()
    assert base.with_overrides(max_parallelism=None) is base
    updated = base.with_overrides(max_parallelism=8, max_retries=None)
    assert updated.max_parallelism == 8
    assert updated.max_retries == base.max_retries
    with pytest.raises(ConfigError):
        base.with_overrides(max_parallelism=0)
    with pytest.raises(ConfigError):
        base.with_overrides(colour="blue")


def test_round_trip_through_dict():
    config = SchedulerConfig(max_parallelism=2, carry_files=("a", "b"))
    assert SchedulerConfig.from_dict(config.to_dict()) == config
