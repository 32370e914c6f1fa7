"""Durable file helpers for the `.autodev/` state directory.

Every state file is replaced atomically (temp file, fsync, rename) so a
crash leaves either the old or the new version, never a torn one. Loads
report problems instead of raising, so callers can refuse to overwrite a
file they could not read.
"""

from __future__ import annotations

import json
import os
import sys
import tempfile
import time
from pathlib import Path
from typing import IO, Any, Optional

import yaml

from .constants import WINDOWS_LOCK_BYTES
from .errors import StateLockedError
from .utils import _now_iso

_YAML_SUFFIXES = {".yaml", ".yml"}

if sys.platform == "win32":
    import msvcrt

    fcntl = None
else:
    import fcntl


def _try_lock(handle: IO[str]) -> bool:
    if fcntl is not None:
        try:
            fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return False
        return True
    handle.seek(0)
    try:
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, WINDOWS_LOCK_BYTES)
    except OSError:
        return False
    return True


def _unlock(handle: IO[str]) -> None:
    if fcntl is not None:
        fcntl.flock(handle, fcntl.LOCK_UN)
        return
    handle.seek(0)
    msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, WINDOWS_LOCK_BYTES)


class FileLock:
    """Exclusive lock on a state directory, one session at a time.

    Waits up to `timeout` seconds, then raises `StateLockedError` instead
    of blocking forever behind a session that may never finish.
    """

    def __init__(self, lock_path: Path, timeout: float = 5.0, poll_interval: float = 0.1):
        self.lock_path = lock_path
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.handle: Optional[IO[str]] = None

    def __enter__(self) -> "FileLock":
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.lock_path, "a+")
        started = time.monotonic()
        while not _try_lock(handle):
            waited = time.monotonic() - started
            if waited >= self.timeout:
                handle.close()
                raise StateLockedError(str(self.lock_path), waited)
            time.sleep(self.poll_interval)
        self.handle = handle
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.handle is None:
            return
        try:
            _unlock(self.handle)
        finally:
            self.handle.close()
            self.handle = None


def _fsync_dir(path: Path) -> None:
    # Makes the rename durable; some platforms cannot open directories.
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # Temp names are unique per writer.
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    _fsync_dir(path.parent)


def _atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    _atomic_write_text(path, json.dumps(data, indent=2, default=str) + "\n")


def _atomic_write_yaml(path: Path, data: dict[str, Any]) -> None:
    _atomic_write_text(
        path,
        yaml.safe_dump(data, sort_keys=False, default_flow_style=False, allow_unicode=True),
    )


def _save_data(path: Path, data: dict[str, Any]) -> None:
    """Write `data` as YAML or JSON depending on the file suffix."""
    if path.suffix in _YAML_SUFFIXES:
        _atomic_write_yaml(path, data)
    else:
        _atomic_write_json(path, data)


def _load_data_with_error(path: Path, default: dict[str, Any]) -> tuple[dict[str, Any], Optional[str]]:
    """Load a YAML/JSON mapping and return `(data, error_message)`.

    A missing or empty file is not an error and yields `default`.
    """
    if not path.exists():
        return default, None
    try:
        text = path.read_text(encoding="utf-8")
        data = yaml.safe_load(text) if path.suffix in _YAML_SUFFIXES else json.loads(text or "null")
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    if data is None:
        return default, None
    if not isinstance(data, dict):
        return default, f"{path.name}: expected a mapping, got {type(data).__name__}"
    return data, None


def _append_event(events_path: Path, event: dict[str, Any]) -> None:
    events_path.parent.mkdir(parents=True, exist_ok=True)
    record = {"timestamp": _now_iso(), **event}
    with open(events_path, "a", encoding="utf-8") as handle:
        handle.write(json.dumps(record, default=str) + "\n")
        handle.flush()
        os.fsync(handle.fileno())


def _read_events(events_path: Path) -> list[dict[str, Any]]:
    """Read the event log, skipping a torn last line left by a crash."""
    if not events_path.exists():
        return []
    events: list[dict[str, Any]] = []
    for line in events_path.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        try:
            events.append(json.loads(line))
        except json.JSONDecodeError:
            continue
    return events


def _tail_text(text: str, max_chars: int) -> str:
    if max_chars <= 0:
        return ""
    return text if len(text) <= max_chars else text[-max_chars:]
