from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

from loopwright.logger import SessionLogger
from loopwright.state.records import RecordStore

SPEC_LOCK_KEY = "spec_lock"
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_WAIT_TIMEOUT_SECONDS = 300.0


@dataclass(slots=True)
class SpecLockState:
    locked: bool
    item_id: str
    worker: str
    gap_description: str
    locked_at: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SpecLockState:
        return cls(
            locked=bool(payload.get("locked", False)),
            item_id=str(payload.get("item_id", "")),
            worker=str(payload.get("worker", "")),
            gap_description=str(payload.get("gap_description", "")),
            locked_at=float(payload.get("locked_at", 0.0)),
        )


class SpecLock:
    """Cooperative pause flag raised by a worker that hit a specification gap.

    The flag lives in the shared record store so any process can observe or
    release it. Only one lock is tracked: a second report replaces the first.
    """

    def __init__(
        self,
        records: RecordStore,
        *,
        logger: SessionLogger | None = None,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.records = records
        self.logger = logger or SessionLogger("loopwright.spec_lock")
        self.poll_interval_seconds = max(0.0, float(poll_interval_seconds))
        self.clock = clock

    def get_lock_state(self) -> SpecLockState | None:
        payload = self.records.get(SPEC_LOCK_KEY)
        if not isinstance(payload, dict):
            return None
        try:
            return SpecLockState.from_dict(payload)
        except (TypeError, ValueError):
            return None

    def is_locked(self) -> bool:
        state = self.get_lock_state()
        return bool(state and state.locked)

    def report_gap(self, item_id: str, worker: str, gap_description: str) -> SpecLockState:
        previous = self.get_lock_state()
        if previous is not None and previous.locked:
            self.logger.warning(
                "Replacing active spec lock", previous_item=previous.item_id, item=item_id
            )
        state = SpecLockState(
            locked=True,
            item_id=item_id,
            worker=worker,
            gap_description=gap_description,
            locked_at=self.clock(),
        )
        self.records.set(SPEC_LOCK_KEY, state.to_dict())
        self.logger.warning(
            "Spec lock activated; execution paused until the spec is updated",
            item=item_id,
            worker=worker,
            gap=gap_description,
        )
        return state

    def release_lock(self) -> bool:
        released = self.records.delete(SPEC_LOCK_KEY)
        if released:
            self.logger.info("Spec lock released")
        else:
            self.logger.debug("No spec lock to release")
        return released

    async def wait_for_spec_update(
        self, timeout_seconds: float = DEFAULT_WAIT_TIMEOUT_SECONDS
    ) -> bool:
        """Poll until the lock is released; ``False`` when the timeout elapses first."""
        deadline = time.monotonic() + max(0.0, timeout_seconds)
        self.logger.info("Waiting for spec update", timeout_seconds=timeout_seconds)
        while True:
            if not self.is_locked():
                self.logger.info("Spec lock released; resuming")
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.logger.warning("Timed out waiting for spec update")
                return False
            await asyncio.sleep(min(self.poll_interval_seconds, remaining))

    def get_lock_info(self) -> str:
        state = self.get_lock_state()
        if state is None or not state.locked:
            return "No active spec lock."

        elapsed = max(0, int(self.clock() - state.locked_at))
        minutes, seconds = divmod(elapsed, 60)
        return "\n".join(
            [
                "SPEC LOCK ACTIVE",
                "================",
                f"Item: {state.item_id}",
                f"Worker: {state.worker}",
                f"Locked: {minutes}m {seconds}s ago",
                "",
                "Gap Description:",
                state.gap_description,
                "",
                "To release: update the specification and run `loopwright lock release`",
            ]
        )
