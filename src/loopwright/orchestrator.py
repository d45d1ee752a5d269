from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from pathlib import Path

from loopwright.graph import Batch, DependencyGraph
from loopwright.logger import SessionLogger
from loopwright.plan import WorkItem, WorkPlan, save_plan
from loopwright.spec_lock import DEFAULT_WAIT_TIMEOUT_SECONDS, SpecLock
from loopwright.state.records import StateError
from loopwright.state.store import SessionState, StateStore
from loopwright.workers.base import WorkerExecutionError, WorkerRegistry, WorkerResult

DEFAULT_MAX_ITERATIONS = 50


class TaskOrchestrator:
    """Runs a plan batch by batch against the registered workers.

    Items of one batch are dispatched together and all of them are awaited
    before the next batch starts. Each outcome is written to the state store
    as soon as it is known. A failed item never stops the session; only the
    iteration budget, an unreleased spec lock, a status changed from outside
    or the end of the plan do.
    """

    def __init__(
        self,
        store: StateStore,
        registry: WorkerRegistry,
        *,
        logger: SessionLogger | None = None,
        spec_lock: SpecLock | None = None,
        item_timeout_seconds: float | None = None,
        spec_lock_timeout_seconds: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
        archive_on_finish: bool = True,
    ) -> None:
        self.store = store
        self.registry = registry
        self.logger = logger or SessionLogger("loopwright.orchestrator")
        self.spec_lock = spec_lock
        self.item_timeout_seconds = item_timeout_seconds or None
        self.spec_lock_timeout_seconds = spec_lock_timeout_seconds
        self.archive_on_finish = archive_on_finish
        self.last_archive: Path | None = None

    async def execute(
        self,
        plan: WorkPlan,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        *,
        plan_path: Path | None = None,
    ) -> SessionState:
        # Scheduling errors surface here, before any session exists.
        batches = DependencyGraph(plan).generate_batches()
        if plan_path is None:
            plan_path = self.store.root / "plan.json"
            save_plan(plan_path, plan)

        state = self.store.initialize(max_iterations, plan_path, plan_hash=plan.content_hash())
        self.store.update(total_batches=len(batches))
        log = self.logger.child(session_id=state.session_id)
        log.info(
            "Starting execution",
            items=len(plan.items),
            batches=len(batches),
            max_iterations=max_iterations,
        )

        for batch in batches:
            if not await self._may_start_batch(batch, log):
                break
            await self._execute_batch(batch, log)
            self.store.update(current_batch=batch.number)

        return self._finalize(plan, log)

    async def _may_start_batch(self, batch: Batch, log: SessionLogger) -> bool:
        state = self.store.load()
        if state is None:
            log.error("Session record disappeared; stopping")
            return False
        if state.status not in {"running", "paused"}:
            log.warning("Session no longer running; stopping", status=state.status)
            return False
        if state.iteration >= state.max_iterations:
            log.warning("Max iterations reached", max_iterations=state.max_iterations)
            self.store.log(f"Max iterations ({state.max_iterations}) reached")
            self.store.set_status("failed")
            return False

        if self.spec_lock is not None and self.spec_lock.is_locked():
            self.store.set_status("paused")
            released = await self.spec_lock.wait_for_spec_update(self.spec_lock_timeout_seconds)
            if not released:
                log.warning("Spec lock still held; leaving session paused", batch=batch.number)
                return False
            self.store.set_status("running")
        elif state.status == "paused":
            self.store.set_status("running")
        return True

    async def _execute_batch(self, batch: Batch, log: SessionLogger) -> None:
        if batch.parallel:
            log.info(
                f"Batch {batch.number}: running {len(batch.items)} items in parallel",
                items=batch.item_ids(),
            )
        else:
            log.info(f"Batch {batch.number}: running {batch.items[0].id}")
        await asyncio.gather(*(self._execute_item(item, log) for item in batch.items))

    async def _run_worker(self, item: WorkItem) -> WorkerResult:
        worker = self.registry.get_worker(item.worker)
        if self.item_timeout_seconds is None:
            result = await worker.execute(item)
        else:
            try:
                result = await asyncio.wait_for(
                    worker.execute(item), timeout=self.item_timeout_seconds
                )
            except TimeoutError as exc:
                raise TimeoutError(
                    f"Worker '{item.worker}' timed out after {self.item_timeout_seconds:.1f}s"
                ) from exc
        if not isinstance(result, WorkerResult):
            raise WorkerExecutionError(
                f"Worker '{item.worker}' returned {type(result).__name__}, not a WorkerResult"
            )
        return result

    async def _execute_item(self, item: WorkItem, log: SessionLogger) -> None:
        self.store.set_in_progress(item.id)
        log.info(f"Executing {item.id}: {item.title}", worker=item.worker)

        try:
            result = await self._run_worker(item)
        except Exception as exc:
            result = WorkerResult(success=False, error=str(exc) or type(exc).__name__)

        if result.success:
            item.passes = True
            item.notes = result.output
            log.info(f"{item.id} passed")
        else:
            item.passes = False
            item.notes = result.error or result.output or "Unknown error"
            log.warning(f"{item.id} failed", error=item.notes)

        error = None if result.success else item.notes
        state = self.store.mark_item_result(item.id, result.success, error)
        if state is not None and state.in_progress_item == item.id:
            self.store.set_in_progress(None)

    def _finalize(self, plan: WorkPlan, log: SessionLogger) -> SessionState:
        state = self.store.load()
        if state is None:
            raise StateError("Session record disappeared before finalization.")
        if state.status == "running":
            final_status = "completed" if not state.failed_items else "failed"
            state = self.store.set_status(final_status) or state

        log.info(
            f"Execution {state.status}",
            completed=f"{len(state.completed_items)}/{len(plan.items)}",
            failed=len(state.failed_items),
            iterations=f"{state.iteration}/{state.max_iterations}",
        )
        if self.archive_on_finish and state.is_terminal:
            self.last_archive = self.store.cleanup()
        return state

    def status_report(self, plan: WorkPlan) -> str:
        state = self.store.load()
        if state is None:
            return "Not started"
        summary = DependencyGraph(plan).summary()
        last_activity = datetime.fromtimestamp(state.last_activity, UTC).isoformat()
        return "\n".join(
            [
                "Execution Status:",
                "=================",
                f"Session: {state.session_id}",
                f"Status: {state.status}",
                f"Progress: {len(state.completed_items)}/{summary.total_items} items",
                f"Batch: {state.current_batch}/{summary.batch_count}",
                f"Iteration: {state.iteration}/{state.max_iterations}",
                "",
                f"Completed: [{', '.join(state.completed_items) or 'None'}]",
                f"Failed: [{', '.join(state.failed_items) or 'None'}]",
                f"In Progress: {state.in_progress_item or 'None'}",
                "",
                f"Last Activity: {last_activity}",
            ]
        )
