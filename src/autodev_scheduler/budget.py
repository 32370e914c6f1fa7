"""Track how much of a session's resource budget has been spent."""

from __future__ import annotations

import threading
from collections import defaultdict
from enum import Enum
from typing import Any, Optional

from loguru import logger

from .constants import DEFAULT_BUDGET_CHECKPOINT_THRESHOLD, DEFAULT_BUDGET_WARNING_THRESHOLD


class BudgetLevel(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CHECKPOINT = "checkpoint"


class ResourceBudget:
    """Session budget in abstract units (tokens, API calls, cost).

    `add_usage` returns the level reached after the addition. The warning is
    logged once per session when the warning threshold is first crossed.
    """

    def __init__(
        self,
        total: float,
        warning_threshold: float = DEFAULT_BUDGET_WARNING_THRESHOLD,
        checkpoint_threshold: float = DEFAULT_BUDGET_CHECKPOINT_THRESHOLD,
        *,
        used: float = 0.0,
        by_phase: Optional[dict[str, float]] = None,
    ):
        if total <= 0:
            raise ValueError("total budget must be positive")
        self.total = float(total)
        self.warning_threshold = warning_threshold
        self.checkpoint_threshold = checkpoint_threshold
        self._used = float(used)
        self._by_phase: dict[str, float] = defaultdict(float, by_phase or {})
        self._lock = threading.Lock()
        self._warned = False

    @property
    def used(self) -> float:
        with self._lock:
            return self._used

    @property
    def remaining(self) -> float:
        return max(0.0, self.total - self.used)

    @property
    def fraction_used(self) -> float:
        return self.used / self.total

    def by_phase(self) -> dict[str, float]:
        with self._lock:
            return dict(self._by_phase)

    def level_for(self, fraction: float) -> BudgetLevel:
        if fraction >= self.checkpoint_threshold:
            return BudgetLevel.CHECKPOINT
        if fraction >= self.warning_threshold:
            return BudgetLevel.WARNING
        return BudgetLevel.OK

    @property
    def level(self) -> BudgetLevel:
        return self.level_for(self.fraction_used)

    def add_usage(self, units: float, phase: Optional[str] = None) -> BudgetLevel:
        if units < 0:
            raise ValueError("usage cannot be negative")
        with self._lock:
            self._used += units
            if phase:
                self._by_phase[phase] += units
        level = self.level
        if level != BudgetLevel.OK and not self._warned:
            self._warned = True
            logger.warning(
                "Session budget at {:.0%} ({:.0f}/{:.0f}); summarise context and prepare to hand off",
                self.fraction_used,
                self.used,
                self.total,
            )
        return level

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "used": self.used,
            "fraction_used": round(self.fraction_used, 4),
            "level": self.level.value,
            "by_phase": self.by_phase(),
        }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        warning_threshold: float = DEFAULT_BUDGET_WARNING_THRESHOLD,
        checkpoint_threshold: float = DEFAULT_BUDGET_CHECKPOINT_THRESHOLD,
    ) -> "ResourceBudget":
        return cls(
            float(data.get("total") or 1.0),
            warning_threshold,
            checkpoint_threshold,
            used=float(data.get("used") or 0.0),
            by_phase={str(k): float(v) for k, v in (data.get("by_phase") or {}).items()},
        )
