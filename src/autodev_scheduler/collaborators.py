"""Default execution and verification collaborators, and session memory.

The scheduler only needs callables shaped like `CommandExecutor` and
`CommandVerifier`; these run the shell commands carried by task
descriptors inside the task's execution context.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional

from loguru import logger

from .constants import MEMORY_FILE, STATE_DIR_NAME
from .io_utils import _load_data_with_error, _save_data, _tail_text
from .logging_utils import summarize_evidence
from .models import ExecutionContext, ExecutionResult, TaskNode, TaskResult, VerificationOutcome
from .utils import _now_iso


class CommandError(RuntimeError):
    def __init__(self, command: str, exit_code: int, output: str):
        super().__init__(f"Command exited with {exit_code}: {command}")
        self.command = command
        self.exit_code = exit_code
        self.output = output


def _run_shell(command: str, cwd: Path, timeout: Optional[float]) -> subprocess.CompletedProcess:
    return subprocess.run(
        command,
        shell=True,
        cwd=cwd,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )


class CommandExecutor:
    """Run a task's `execute` command in its context root."""

    def __init__(self, timeout_seconds: Optional[float] = None, max_output_chars: int = 4000):
        self.timeout_seconds = timeout_seconds
        self.max_output_chars = max_output_chars

    def __call__(self, node: TaskNode, context: ExecutionContext) -> ExecutionResult:
        if not node.execute:
            return ExecutionResult(output="no execute command")
        logger.debug("Executing task {}: {}", node.id, node.execute)
        result = _run_shell(node.execute, context.root, self.timeout_seconds)
        output = _tail_text((result.stdout or "") + (result.stderr or ""), self.max_output_chars)
        if result.returncode != 0:
            raise CommandError(node.execute, result.returncode, output)
        return ExecutionResult(output=output)


class CommandVerifier:
    """Run a task's verification directive; pass iff the exit code matches."""

    def __init__(self, timeout_seconds: Optional[float] = None):
        self.timeout_seconds = timeout_seconds

    def __call__(self, node: TaskNode, context: ExecutionContext) -> VerificationOutcome:
        directive = node.verification
        if not directive.command:
            return VerificationOutcome(passed=True, summary="no verification command")
        timeout = directive.timeout_seconds or self.timeout_seconds
        try:
            result = _run_shell(directive.command, context.root, timeout)
        except subprocess.TimeoutExpired as exc:
            output = exc.output or ""
            if isinstance(output, bytes):
                output = output.decode("utf-8", errors="replace")
            return VerificationOutcome(
                passed=False,
                timed_out=True,
                summary=summarize_evidence(f"verification timed out after {timeout}s\n{output}"),
            )
        output = (result.stdout or "") + (result.stderr or "")
        return VerificationOutcome(
            passed=result.returncode == directive.expect_exit,
            summary=summarize_evidence(output, exit_code=result.returncode),
            detail={"exit_code": result.returncode, "command": directive.command},
        )


class SessionMemory:
    """Cross-session counters, exposed to scorers as a read-only mapping."""

    def __init__(self, path: Optional[Path], data: Optional[dict[str, Any]] = None):
        self.path = path
        data = data or {}
        self._attempts: dict[str, int] = {str(k): int(v) for k, v in (data.get("attempts") or {}).items()}
        self._durations: dict[str, float] = {str(k): float(v) for k, v in (data.get("durations") or {}).items()}
        self._sessions = int(data.get("sessions", 0) or 0)
        self._updated_at = data.get("updated_at")

    @classmethod
    def load(cls, project_dir: Path) -> "SessionMemory":
        path = project_dir / STATE_DIR_NAME / MEMORY_FILE
        data, err = _load_data_with_error(path, {})
        if err:
            logger.warning("Ignoring unreadable session memory: {}", err)
            data = {}
        return cls(path, data)

    @property
    def view(self) -> Mapping[str, Any]:
        return MappingProxyType(
            {
                "attempts": MappingProxyType(dict(self._attempts)),
                "durations": MappingProxyType(dict(self._durations)),
                "sessions": self._sessions,
                "updated_at": self._updated_at,
            }
        )

    def record(self, results: Iterable[TaskResult]) -> None:
        for result in results:
            self._attempts[result.task_id] = max(self._attempts.get(result.task_id, 0), result.attempts)
            if result.duration_seconds:
                self._durations[result.task_id] = round(result.duration_seconds, 3)

    def save(self) -> None:
        if self.path is None:
            return
        self._sessions += 1
        self._updated_at = _now_iso()
        _save_data(
            self.path,
            {
                "attempts": dict(self._attempts),
                "durations": dict(self._durations),
                "sessions": self._sessions,
                "updated_at": self._updated_at,
            },
        )
