"""Durable run state and the single-run lock.

The state file is JSON. Every ``record_step`` rewrites it through a temp file
that is fsynced and atomically renamed into place, so after a crash the file
reflects exactly the steps whose ``record_step`` call returned.
"""

import fcntl
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any

from .errors import LockError, StateStoreError
from .models import RunState, StepResult

STATE_FORMAT = 1
DEFAULT_HISTORY_LIMIT = 20

_logging = logging.getLogger(__name__)


def _empty_document() -> dict[str, Any]:
    return {"format": STATE_FORMAT, "steps": {}, "runs": {}, "run_order": []}


class StateStore:
    """Persists the last result of every step plus per-run history."""

    def __init__(self, path: Path | str, history_limit: int = DEFAULT_HISTORY_LIMIT):
        self.path = Path(path)
        self.history_limit = history_limit
        self._document: dict[str, Any] | None = None

    def _read(self) -> dict[str, Any]:
        if self._document is not None:
            return self._document

        if not self.path.exists():
            self._document = _empty_document()
            return self._document

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise StateStoreError(f"State file {self.path} is corrupt: {e}") from e
        except (IOError, OSError) as e:
            raise StateStoreError(f"Failed to read state file {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise StateStoreError(
                f"State file {self.path} must contain an object, got {type(data).__name__}"
            )

        document = _empty_document()
        for key in ("steps", "runs"):
            if isinstance(data.get(key), dict):
                document[key] = data[key]
        if isinstance(data.get("run_order"), list):
            document["run_order"] = [r for r in data["run_order"] if r in document["runs"]]
        self._document = document
        return document

    def load(self) -> RunState:
        """Return the last recorded result per step (empty if no prior run)."""
        records: dict[str, StepResult] = {}
        for step_id, entry in self._read()["steps"].items():
            if not isinstance(entry, dict):
                continue
            try:
                records[step_id] = StepResult.from_dict({**entry, "step_id": step_id})
            except (KeyError, TypeError, ValueError) as e:
                _logging.warning(f"Ignoring unreadable state entry for {step_id}: {e}")
        return RunState(records=records)

    def record_step(self, result: StepResult) -> None:
        """Record a finished step and flush it to disk before returning."""
        document = self._read()
        entry = result.as_dict()
        document["steps"][result.step_id] = {k: v for k, v in entry.items() if k != "step_id"}

        runs = document["runs"]
        if result.run_id not in runs:
            runs[result.run_id] = []
            document["run_order"].append(result.run_id)
        runs[result.run_id].append(entry)

        while len(document["run_order"]) > self.history_limit:
            expired = document["run_order"].pop(0)
            runs.pop(expired, None)

        self._write(document)

    def history(self, run_id: str | None = None) -> list[StepResult]:
        document = self._read()
        run_ids = [run_id] if run_id is not None else document["run_order"]
        results = []
        for rid in run_ids:
            entries = document["runs"].get(rid)
            if not isinstance(entries, list):
                continue
            for entry in entries:
                try:
                    results.append(StepResult.from_dict(entry))
                except (AttributeError, KeyError, TypeError, ValueError) as e:
                    _logging.warning(f"Ignoring unreadable history entry in run {rid}: {e}")
        return results

    def reset(self) -> None:
        """Forget all recorded state."""
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            raise StateStoreError(f"Failed to remove state file {self.path}: {e}") from e
        self._document = _empty_document()
        _logging.info(f"Cleared run state at {self.path}")

    def _write(self, document: dict[str, Any]) -> None:
        temp_path = self.path.with_suffix(f".tmp.{uuid.uuid4().hex[:8]}")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            temp_path.replace(self.path)
            _fsync_dir(self.path.parent)
        except (IOError, OSError) as e:
            if temp_path.exists():
                temp_path.unlink()
            raise StateStoreError(f"Failed to write state to {self.path}: {e}") from e


def _fsync_dir(directory: Path) -> None:
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class RunLock:
    """Exclusive lock held for the duration of a run.

    Uses ``flock`` so the kernel drops the lock if the process dies.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._fd: int | None = None

    def acquire(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise StateStoreError(f"Cannot create run lock {self.path}: {e}") from e
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise LockError(f"Another provisioning run holds {self.path}") from None
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        _logging.debug(f"Acquired run lock {self.path}")

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        _logging.debug(f"Released run lock {self.path}")

    @property
    def held(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


__all__ = ["StateStore", "RunLock", "STATE_FORMAT", "DEFAULT_HISTORY_LIMIT"]
