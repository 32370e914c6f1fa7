"""Provide the public `autodev_scheduler` package exports."""

from __future__ import annotations

from .config import SchedulerConfig, load_config
from .graph import GraphBoard, TaskGraph
from .models import TaskNode, TaskStatus
from .orchestrator import Orchestrator
from .reporting import RunReport
from .scheduler import GroupScheduler

__all__ = [
    "GraphBoard",
    "GroupScheduler",
    "Orchestrator",
    "RunReport",
    "SchedulerConfig",
    "TaskGraph",
    "TaskNode",
    "TaskStatus",
    "load_config",
]
