from __future__ import annotations

import json
import os
import tempfile
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

from loopwright.logger import SessionLogger
from loopwright.plan import plan_file_hash
from loopwright.state.records import JsonFileRecordStore, RecordStore, StateError

SessionStatus = Literal["running", "paused", "completed", "failed", "cancelled"]
SESSION_STATUSES: frozenset[str] = frozenset(
    {"running", "paused", "completed", "failed", "cancelled"}
)
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})

SESSION_KEY = "session"
ORIGINAL_REQUEST_KEY = "original_request"

DEFAULT_LOG_MAX_LINES = 500
DEFAULT_ARCHIVE_KEEP = 10
DEFAULT_ARCHIVE_MAX_AGE_DAYS = 7.0


def _iso_timestamp(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, UTC).isoformat(timespec="milliseconds")


@dataclass(slots=True)
class SessionState:
    session_id: str
    started_at: float
    max_iterations: int
    plan_path: str
    iteration: int = 0
    current_batch: int = 0
    total_batches: int = 0
    completed_items: list[str] = field(default_factory=list)
    failed_items: list[str] = field(default_factory=list)
    in_progress_item: str | None = None
    status: SessionStatus = "running"
    last_activity: float = 0.0
    plan_hash: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SessionState:
        known = {item.name for item in fields(cls)}
        values = {key: value for key, value in payload.items() if key in known}
        state = cls(**values)
        state.completed_items = list(state.completed_items or [])
        state.failed_items = list(state.failed_items or [])
        if state.status not in SESSION_STATUSES:
            raise StateError(f"Unknown session status: {state.status}")
        return state


class StateStore:
    """Durable session record, progress log and archive of finished sessions.

    Layout under ``root``::

        state/session.json            live session record (via RecordStore)
        state/original_request.json   request replayed by the continuation gate
        progress.log                  append-only, timestamp-prefixed lines
        archive/<id>__<status>__<stamp>.json

    The store assumes a single live writer per session.
    """

    def __init__(
        self,
        root: Path,
        *,
        records: RecordStore | None = None,
        logger: SessionLogger | None = None,
        log_max_lines: int = DEFAULT_LOG_MAX_LINES,
        archive_keep: int = DEFAULT_ARCHIVE_KEEP,
        archive_max_age_days: float = DEFAULT_ARCHIVE_MAX_AGE_DAYS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.root = root.resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.records = records if records is not None else JsonFileRecordStore(self.root / "state")
        self.logger = logger or SessionLogger("loopwright.state")
        self.progress_path = self.root / "progress.log"
        self.archive_dir = self.root / "archive"
        self.log_max_lines = max(1, int(log_max_lines))
        self.archive_keep = max(0, int(archive_keep))
        self.archive_max_age_days = float(archive_max_age_days)
        self.clock = clock

    # -- session record -------------------------------------------------

    def initialize(
        self,
        max_iterations: int,
        plan_path: Path,
        *,
        plan_hash: str | None = None,
    ) -> SessionState:
        plan_path = Path(plan_path)
        if not plan_path.exists():
            raise StateError(f"Plan not found at {plan_path}. Cannot initialize session.")

        now = self.clock()
        state = SessionState(
            session_id=str(uuid4()),
            started_at=now,
            max_iterations=int(max_iterations),
            plan_path=str(plan_path.resolve()),
            last_activity=now,
            plan_hash=plan_hash if plan_hash is not None else plan_file_hash(plan_path),
        )
        self.save(state)
        self.log(f"Session started: {state.session_id}")
        self.log(f"Plan: {state.plan_path}")
        self.log(f"Max iterations: {state.max_iterations}")
        return state

    def load(self) -> SessionState | None:
        payload = self.records.get(SESSION_KEY)
        if not isinstance(payload, dict):
            return None
        try:
            return SessionState.from_dict(payload)
        except (TypeError, StateError):
            self.logger.warning("Ignoring unreadable session record")
            return None

    def save(self, state: SessionState) -> None:
        self.records.set(SESSION_KEY, state.to_dict())

    def update(self, **changes: Any) -> SessionState | None:
        known = {item.name for item in fields(SessionState)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise StateError(f"Unknown session fields: {', '.join(unknown)}")
        state = self.load()
        if state is None:
            return None
        for key, value in changes.items():
            setattr(state, key, value)
        state.last_activity = self.clock()
        self.save(state)
        return state

    def mark_item_result(
        self,
        item_id: str,
        success: bool,
        error: str | None = None,
    ) -> SessionState | None:
        state = self.load()
        if state is None:
            return None

        # Latest outcome wins; an id is never in both lists.
        target, other = (
            (state.completed_items, state.failed_items)
            if success
            else (state.failed_items, state.completed_items)
        )
        if item_id in other:
            other.remove(item_id)
        if item_id not in target:
            target.append(item_id)
        outcome = "PASSED" if success else f"FAILED: {error or 'Unknown error'}"
        self.log(f"{item_id} - {outcome}")

        state.iteration += 1
        state.last_activity = self.clock()
        self.save(state)
        return state

    def set_in_progress(self, item_id: str | None) -> SessionState | None:
        return self.update(in_progress_item=item_id)

    def set_status(self, status: SessionStatus) -> SessionState | None:
        if status not in SESSION_STATUSES:
            raise StateError(f"Unknown session status: {status}")
        state = self.update(status=status)
        if state is not None:
            self.log(f"Status changed to: {status}")
        return state

    def duration(self, state: SessionState) -> str:
        elapsed = max(0, int(self.clock() - state.started_at))
        return f"{elapsed // 60}m {elapsed % 60}s"

    # -- original request -------------------------------------------------

    def save_original_request(self, request: str) -> None:
        self.records.set(ORIGINAL_REQUEST_KEY, {"request": request})
        self.log("Original request saved for looping")

    def load_original_request(self) -> str | None:
        payload = self.records.get(ORIGINAL_REQUEST_KEY)
        if isinstance(payload, dict) and isinstance(payload.get("request"), str):
            return payload["request"]
        return None

    def clear_original_request(self) -> None:
        self.records.delete(ORIGINAL_REQUEST_KEY)

    # -- progress log -----------------------------------------------------

    def log(self, message: str) -> None:
        self.progress_path.parent.mkdir(parents=True, exist_ok=True)
        with self.progress_path.open("a", encoding="utf-8") as handle:
            handle.write(f"[{_iso_timestamp(self.clock())}] {message}\n")
        self.logger.info(message)

    def read_progress(self, tail: int | None = None) -> str:
        try:
            content = self.progress_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        if tail is None:
            return content
        if tail <= 0:
            return ""
        lines = content.splitlines()
        return "\n".join(lines[-tail:]) + ("\n" if lines else "")

    def _trim_progress(self) -> None:
        try:
            lines = self.progress_path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return
        if len(lines) <= self.log_max_lines:
            return
        kept = "\n".join(lines[-self.log_max_lines :]) + "\n"
        fd, temp_name = tempfile.mkstemp(prefix=".progress-", suffix=".tmp", dir=self.root)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(kept)
        os.replace(temp_name, self.progress_path)

    # -- terminal cleanup -------------------------------------------------

    def archive_name(self, state: SessionState, archived_at: float | None = None) -> str:
        moment = self.clock() if archived_at is None else archived_at
        stamp = datetime.fromtimestamp(moment, UTC).strftime("%Y%m%dT%H%M%SZ")
        return f"{state.session_id}__{state.status}__{stamp}.json"

    def list_archives(self) -> list[Path]:
        if not self.archive_dir.exists():
            return []
        archives = [path for path in self.archive_dir.glob("*.json") if path.is_file()]
        return sorted(archives, key=lambda path: (path.stat().st_mtime, path.name), reverse=True)

    def _archive(self, state: SessionState) -> Path:
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        archived_at = self.clock()
        target = self.archive_dir / self.archive_name(state, archived_at)
        target.write_text(
            json.dumps(state.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8"
        )
        # Archive age is read from mtime, so stamp it with the store clock.
        os.utime(target, (archived_at, archived_at))
        self.records.delete(SESSION_KEY)
        return target

    def prune_archives(self, *, keep: Path | None = None) -> list[Path]:
        cutoff = self.clock() - self.archive_max_age_days * 86400.0
        removed: list[Path] = []
        for index, path in enumerate(self.list_archives()):
            if keep is not None and path == keep:
                continue
            too_many = index >= self.archive_keep
            too_old = path.stat().st_mtime < cutoff
            if too_many or too_old:
                path.unlink(missing_ok=True)
                removed.append(path)
        return removed

    def cleanup(self) -> Path | None:
        """Archive a finished session; no-op unless the status is terminal."""
        state = self.load()
        if state is None or not state.is_terminal:
            return None
        self.log(f"Archiving session {state.session_id} ({state.status})")
        self._trim_progress()
        archived = self._archive(state)
        self.clear_original_request()
        removed = self.prune_archives(keep=archived)
        if removed:
            self.logger.info("Pruned archived sessions", count=len(removed))
        return archived

    def clear(self) -> None:
        self.records.delete(SESSION_KEY)
        self.clear_original_request()
        self.progress_path.unlink(missing_ok=True)

    # -- plan drift checks --------------------------------------------------

    def validate_plan_exists(self) -> bool:
        state = self.load()
        if state is None:
            return False
        exists = Path(state.plan_path).exists()
        if not exists:
            self.log(f"WARNING: plan file missing: {state.plan_path}")
        return exists

    def has_plan_changed(self) -> bool:
        state = self.load()
        if state is None or not state.plan_hash:
            return False
        current = plan_file_hash(Path(state.plan_path))
        if current is None:
            return False
        return current != state.plan_hash

