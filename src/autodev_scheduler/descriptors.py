"""Validate decomposition input and turn it into task nodes."""

from __future__ import annotations

import re
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional, Protocol

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import DescriptorError
from .models import TaskNode, VerificationDirective


class VerificationSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    command: Optional[str] = None
    expect_exit: int = 0
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


class TaskDescriptor(BaseModel):
    """One task as emitted by the decomposition step."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    description: str = ""
    file_targets: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    complexity: Optional[int] = Field(default=None, ge=1, le=5)
    verification: Optional[VerificationSpec] = None
    execute: Optional[str] = None

    @field_validator("id")
    @classmethod
    def _strip_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("id must not be blank")
        return value

    @field_validator("file_targets", "dependencies")
    @classmethod
    def _dedupe(cls, value: list[str]) -> list[str]:
        seen: set[str] = set()
        ordered: list[str] = []
        for item in value:
            item = str(item).strip()
            if item and item not in seen:
                seen.add(item)
                ordered.append(item)
        return ordered


class ComplexityScorer(Protocol):
    def __call__(self, descriptor: TaskDescriptor, memory: Mapping[str, Any]) -> int: ...


_POSITIVE_SIGNALS = {
    "full": 1.0,
    "complete": 1.0,
    "entire": 1.0,
    "whole": 1.0,
    "system": 1.0,
    "dashboard": 1.0,
    "authentication": 1.0,
    "database": 1.0,
    "schema": 1.0,
    "payment": 1.0,
    "billing": 1.0,
    "migration": 1.0,
    "admin": 0.5,
    "email": 0.5,
    "notification": 0.5,
    "api": 0.5,
    "backend": 0.5,
    "frontend": 0.5,
}

_NEGATIVE_SIGNALS = {
    "simple": -1.0,
    "quick": -1.0,
    "just": -1.0,
    "only": -1.0,
    "small": -1.0,
    "minor": -1.0,
    "fix": -1.0,
    "typo": -1.0,
    "rename": -1.0,
    "button": -0.5,
    "component": -0.5,
}

_WORD_RE = re.compile(r"[a-z0-9\-]+")


class KeywordComplexityScorer:
    """Score a descriptor 1-5 from keyword signals and file fan-out.

    Historical counters in `memory["attempts"]` nudge a task upwards when it
    needed retries in an earlier session.
    """

    def __init__(self, base: float = 2.0):
        self.base = base

    def __call__(self, descriptor: TaskDescriptor, memory: Mapping[str, Any]) -> int:
        words = set(_WORD_RE.findall(descriptor.description.lower()))
        score = self.base
        for signal, modifier in {**_POSITIVE_SIGNALS, **_NEGATIVE_SIGNALS}.items():
            if signal in words:
                score += modifier
        if len(descriptor.file_targets) > 5:
            score += 1
        history = memory.get("attempts") if isinstance(memory, Mapping) else None
        if isinstance(history, Mapping) and int(history.get(descriptor.id, 0) or 0) > 1:
            score += 1
        return max(1, min(5, int(round(score))))


EMPTY_MEMORY: Mapping[str, Any] = MappingProxyType({})


def parse_descriptors(raw: Any) -> list[TaskDescriptor]:
    """Validate raw decomposition output.

    Args:
        raw: Either a list of task mappings or a mapping with a `tasks` list.

    Returns:
        Validated descriptors in input order.

    Raises:
        DescriptorError: If the payload shape or any task is invalid.
    """
    if isinstance(raw, dict):
        raw = raw.get("tasks")
    if not isinstance(raw, list):
        raise DescriptorError("Decomposition input must be a list of tasks (or a mapping with a 'tasks' list)")
    descriptors: list[TaskDescriptor] = []
    for index, item in enumerate(raw):
        if isinstance(item, TaskDescriptor):
            descriptors.append(item)
            continue
        try:
            descriptors.append(TaskDescriptor.model_validate(item))
        except ValidationError as exc:
            label = item.get("id") if isinstance(item, dict) else index
            raise DescriptorError(f"Invalid task descriptor {label!r}: {exc}") from exc
    return descriptors


def load_descriptors(path: Path) -> list[TaskDescriptor]:
    """Load and validate a YAML/JSON task file."""
    if not path.exists():
        raise DescriptorError(f"Task file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as handle:
            # JSON task files parse as YAML too.
            data = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError) as exc:
        raise DescriptorError(f"Unable to read task file {path.name}: {exc}") from exc
    return parse_descriptors(data)


def to_nodes(
    descriptors: list[TaskDescriptor],
    *,
    scorer: Optional[ComplexityScorer] = None,
    memory: Optional[Mapping[str, Any]] = None,
) -> list[TaskNode]:
    """Freeze descriptors into pending task nodes.

    Descriptors without an explicit complexity are scored once here; the
    value is then part of the graph and is never recomputed on resume.
    """
    scorer = scorer or KeywordComplexityScorer()
    memory = memory if memory is not None else EMPTY_MEMORY
    nodes: list[TaskNode] = []
    for descriptor in descriptors:
        complexity = descriptor.complexity
        if complexity is None:
            complexity = max(1, min(5, int(scorer(descriptor, memory))))
            logger.debug("Scored task {} complexity={}", descriptor.id, complexity)
        verification = descriptor.verification or VerificationSpec()
        nodes.append(
            TaskNode(
                id=descriptor.id,
                description=descriptor.description,
                file_targets=tuple(descriptor.file_targets),
                complexity=complexity,
                dependencies=tuple(descriptor.dependencies),
                verification=VerificationDirective(
                    command=verification.command,
                    expect_exit=verification.expect_exit,
                    timeout_seconds=verification.timeout_seconds,
                ),
                execute=descriptor.execute,
            )
        )
    return nodes
