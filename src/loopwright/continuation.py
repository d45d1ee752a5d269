from __future__ import annotations

from collections.abc import Callable

from loopwright.logger import SessionLogger
from loopwright.state.store import StateStore

INACTIVITY_TIMEOUT_SECONDS = 30 * 60


class ContinuationGate:
    """Decides whether an external restart trigger should replay the request.

    ``should_continue`` is meant to be called from a stateless hook that can
    re-issue the original top-level request. Checks run in a fixed order and
    the first one that applies wins:

    1. no persisted session
    2. session not running (paused or terminal)
    3. iteration budget spent -> status becomes ``failed``
    4. inactive for more than 30 minutes -> status becomes ``failed``
    5. no persisted original request

    Otherwise the iteration counter is advanced and the request is returned.
    None of the stop conditions raise; callers inspect the session status.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        logger: SessionLogger | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.store = store
        self.logger = logger or SessionLogger("loopwright.continuation")
        self.clock = clock or store.clock

    def save_original_request(self, request: str) -> None:
        self.store.save_original_request(request)

    def should_continue(self) -> str | None:
        state = self.store.load()
        if state is None:
            return None

        if state.status != "running":
            self.logger.debug("Session not running", status=state.status)
            return None

        if state.iteration >= state.max_iterations:
            self.store.set_status("failed")
            self.store.log(f"Max iterations ({state.max_iterations}) reached")
            return None

        inactive_for = self.clock() - state.last_activity
        if inactive_for > INACTIVITY_TIMEOUT_SECONDS:
            self.store.set_status("failed")
            self.store.log("Session timed out after 30 minutes of inactivity")
            return None

        request = self.store.load_original_request()
        if request is None:
            self.logger.warning("No original request saved; stopping loop")
            return None

        state.iteration += 1
        state.last_activity = self.clock()
        self.store.save(state)
        self.store.log(f"Iteration {state.iteration}/{state.max_iterations}")
        return request

    def summary(self) -> str:
        state = self.store.load()
        if state is None:
            return "No active session"
        return "\n".join(
            [
                "Session Summary",
                "===============",
                f"Session ID: {state.session_id}",
                f"Status: {state.status}",
                f"Duration: {self.store.duration(state)}",
                f"Iterations: {state.iteration}/{state.max_iterations}",
                f"Completed: {len(state.completed_items)} items",
                f"Failed: {len(state.failed_items)} items",
                f"In Progress: {state.in_progress_item or 'None'}",
            ]
        )
