from __future__ import annotations

import copy
import json
import os
import tempfile
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loopwright.errors import LoopwrightError


class StateError(LoopwrightError):
    """Raised when shared-state operations fail."""


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class RecordStore(ABC):
    """Keyed JSON records; each ``set`` replaces the whole record."""

    @abstractmethod
    def get(self, key: str) -> Any | None:
        """Return the stored payload or ``None`` when absent."""

    @abstractmethod
    def set(self, key: str, data: Any) -> None:
        """Replace the payload stored under ``key``."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove ``key``; returns whether anything was removed."""

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def update(self, key: str, updater: Callable[[Any], Any], default: Any = None) -> Any:
        current = self.get(key)
        updated = updater(default if current is None else current)
        self.set(key, updated)
        return updated


class MemoryRecordStore(RecordStore):
    def __init__(self) -> None:
        self._records: dict[str, Any] = {}

    def get(self, key: str) -> Any | None:
        if key not in self._records:
            return None
        return copy.deepcopy(self._records[key])

    def set(self, key: str, data: Any) -> None:
        self._records[key] = copy.deepcopy(data)

    def delete(self, key: str) -> bool:
        return self._records.pop(key, None) is not None


class JsonFileRecordStore(RecordStore):
    """One JSON file per key under ``root``.

    Records are wrapped in a versioned envelope carrying a revision counter.
    Writes go to a temporary file in the same directory and are moved into
    place with ``os.replace``, so readers see either the old or the new
    record. A lock file serializes writers within and across processes.
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        root: Path,
        *,
        lock_timeout_seconds: float = 3.0,
        stale_lock_seconds: float = 30.0,
    ) -> None:
        self.root = root.resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.root / ".lock"
        self.lock_timeout_seconds = lock_timeout_seconds
        self.stale_lock_seconds = stale_lock_seconds

    def path_for(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise StateError(f"Unsupported record key: {key!r}")
        return self.root / f"{key}.json"

    def _lock_is_stale(self) -> bool:
        """A lock is stale when its holder is gone or it is older than any real write."""
        try:
            raw_pid = self.lock_file.read_text(encoding="utf-8").strip()
            age = time.time() - self.lock_file.stat().st_mtime
        except FileNotFoundError:
            return False
        if age > self.stale_lock_seconds:
            return True
        if not raw_pid.isdigit():
            return False
        try:
            os.kill(int(raw_pid), 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            # Process exists but belongs to another user.
            return False
        return False

    def _break_stale_lock(self) -> None:
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            pass

    @contextmanager
    def _state_lock(self):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if self._lock_is_stale():
                    self._break_stale_lock()
                    continue
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise StateError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw(self, key: str) -> Any:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None

    def _write_atomic(self, path: Path, serialized: str) -> None:
        fd, temp_name = tempfile.mkstemp(prefix=f".{path.stem}-", suffix=".tmp", dir=self.root)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, path)
        except BaseException:
            try:
                os.unlink(temp_name)
            except OSError:
                pass
            raise

    def _normalize_envelope(self, raw_payload: Any) -> dict[str, Any] | None:
        if raw_payload is None:
            return None
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or _utcnow_iso(),
                "data": raw_payload.get("data"),
            }
        # Bare payloads written by hand or by older versions.
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": _utcnow_iso(),
            "data": raw_payload,
        }

    def get_envelope(self, key: str) -> dict[str, Any] | None:
        return self._normalize_envelope(self._read_raw(key))

    def get(self, key: str) -> Any | None:
        envelope = self.get_envelope(key)
        if envelope is None:
            return None
        return envelope.get("data")

    def set(self, key: str, data: Any, expected_revision: int | None = None) -> None:
        path = self.path_for(key)
        with self._state_lock():
            current = self.get_envelope(key)
            current_revision = int(current.get("revision", 0)) if current else 0
            if expected_revision is not None and expected_revision != current_revision:
                raise StateError(f"Concurrent state update detected for record '{key}'.")
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": _utcnow_iso(),
                "data": data,
            }
            self._write_atomic(path, json.dumps(envelope, ensure_ascii=False, indent=2))

    def delete(self, key: str) -> bool:
        path = self.path_for(key)
        with self._state_lock():
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        return True

    def update(self, key: str, updater: Callable[[Any], Any], default: Any = None) -> Any:
        last_error: StateError | None = None
        for _ in range(4):
            current = self.get_envelope(key)
            revision = int(current.get("revision", 0)) if current else 0
            payload = current.get("data") if current else None
            updated = updater(default if payload is None else payload)
            try:
                self.set(key, updated, expected_revision=revision)
                return updated
            except StateError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateError(str(last_error) if last_error else "State update failed.")
