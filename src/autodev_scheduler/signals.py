"""File signals that ask a running scheduler to hand off or cancel.

`autodev-scheduler handoff` and `autodev-scheduler cancel` only drop a file
under `.autodev/`; the scheduler polls for it between and during groups.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .constants import CANCEL_FILE, HANDOFF_FILE
from .io_utils import _atomic_write_json, _load_data_with_error, _save_data
from .utils import _now_iso

SIGNAL_HANDOFF = "handoff"
SIGNAL_CANCEL = "cancel"


def request_handoff(state_dir: Path, reason: str = "requested") -> dict[str, Any]:
    payload = {"timestamp": _now_iso(), "reason": reason, "pid": os.getpid()}
    _save_data(state_dir / HANDOFF_FILE, payload)
    logger.info("Handoff requested: {}", reason)
    return payload


def read_handoff(state_dir: Path) -> Optional[dict[str, Any]]:
    path = state_dir / HANDOFF_FILE
    if not path.exists():
        return None
    data, err = _load_data_with_error(path, {})
    if err:
        # A half-written signal still means "stop".
        return {"reason": "requested", "error": err}
    return data or {"reason": "requested"}


def consume_handoff(state_dir: Path) -> None:
    (state_dir / HANDOFF_FILE).unlink(missing_ok=True)


def request_cancel(state_dir: Path) -> None:
    _atomic_write_json(state_dir / CANCEL_FILE, {"timestamp": _now_iso(), "pid": os.getpid()})
    logger.info("Cancellation requested")


def cancel_requested(state_dir: Path) -> bool:
    return (state_dir / CANCEL_FILE).exists()


def clear_cancel(state_dir: Path) -> None:
    (state_dir / CANCEL_FILE).unlink(missing_ok=True)


class SignalWatcher:
    """Poll the signal files of one state directory."""

    def __init__(self, state_dir: Path):
        self.state_dir = state_dir

    def poll(self) -> Optional[tuple[str, str]]:
        if cancel_requested(self.state_dir):
            return SIGNAL_CANCEL, "cancel requested"
        handoff = read_handoff(self.state_dir)
        if handoff is not None:
            return SIGNAL_HANDOFF, str(handoff.get("reason") or "requested")
        return None

    def consume(self, kind: str) -> None:
        if kind == SIGNAL_CANCEL:
            clear_cancel(self.state_dir)
        else:
            consume_handoff(self.state_dir)
