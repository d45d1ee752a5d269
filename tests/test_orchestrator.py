import asyncio
from pathlib import Path

import pytest

from loopwright.graph import CircularDependencyError
from loopwright.logger import SessionLogger
from loopwright.orchestrator import TaskOrchestrator
from loopwright.plan import WorkItem, WorkPlan, save_plan
from loopwright.spec_lock import SpecLock
from loopwright.state import StateStore
from loopwright.workers import Worker, WorkerRegistry, WorkerResult


class RecordingWorker(Worker):
    def __init__(
        self,
        name: str = "coder",
        *,
        fail: set[str] | None = None,
        explode: set[str] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.name = name
        self.fail = fail or set()
        self.explode = explode or set()
        self.delay = delay
        self.events: list[str] = []

    async def execute(self, item: WorkItem) -> WorkerResult:
        self.events.append(f"start:{item.id}")
        if self.delay:
            await asyncio.sleep(self.delay)
        self.events.append(f"end:{item.id}")
        if item.id in self.explode:
            raise RuntimeError(f"{item.id} exploded")
        if item.id in self.fail:
            return WorkerResult(success=False, error=f"{item.id} failed checks")
        return WorkerResult(success=True, output=f"did {item.id}")


class LockingWorker(Worker):
    """Raises the spec lock on its first item and releases it shortly after."""

    def __init__(self, spec_lock: SpecLock) -> None:
        self.name = "coder"
        self.spec_lock = spec_lock
        self.seen: list[str] = []

    async def execute(self, item: WorkItem) -> WorkerResult:
        self.seen.append(item.id)
        if item.id == "A":
            self.spec_lock.report_gap("A", self.name, "missing API contract")
            asyncio.get_running_loop().call_later(0.05, self.spec_lock.release_lock)
        return WorkerResult(success=True, output="ok")


class StaggeredWorker(Worker):
    """Finishes items after per-item delays; listed items raise instead."""

    def __init__(self, delays: dict[str, float], explode: set[str]) -> None:
        self.name = "coder"
        self.delays = delays
        self.explode = explode

    async def execute(self, item: WorkItem) -> WorkerResult:
        await asyncio.sleep(self.delays.get(item.id, 0.0))
        if item.id in self.explode:
            raise RuntimeError(f"{item.id} crashed")
        return WorkerResult(success=True, output=f"did {item.id}")


class LooseWorker(Worker):
    """Returns plain text for item A instead of a result."""

    name = "coder"

    async def execute(self, item: WorkItem) -> WorkerResult:
        if item.id == "A":
            return "done"  # type: ignore[return-value]
        return WorkerResult(success=True, output=f"did {item.id}")


def _item(item_id: str, priority: int = 5, dependencies: list[str] | None = None) -> WorkItem:
    return WorkItem(
        id=item_id,
        title=f"Title {item_id}",
        description=f"Description {item_id}",
        acceptance_criteria=["works"],
        priority=priority,
        worker="coder",
        dependencies=list(dependencies or []),
    )


def _plan(tmp_path: Path, *items: WorkItem) -> tuple[WorkPlan, Path]:
    plan = WorkPlan(project="demo", branch="main", description="Demo", items=list(items))
    plan_path = tmp_path / "plan.json"
    save_plan(plan_path, plan)
    return plan, plan_path


def _store(tmp_path: Path) -> StateStore:
    return StateStore(tmp_path / ".loopwright")


def test_execute_completes_plan_in_batch_order(tmp_path: Path) -> None:
    plan, plan_path = _plan(tmp_path, _item("A", 5), _item("B", 8), _item("C", 3, ["A", "B"]))
    store = _store(tmp_path)
    worker = RecordingWorker(delay=0.01)
    orchestrator = TaskOrchestrator(
        store, WorkerRegistry({"coder": worker}), archive_on_finish=False
    )

    state = asyncio.run(orchestrator.execute(plan, 10, plan_path=plan_path))

    assert state.status == "completed"
    assert sorted(state.completed_items) == ["A", "B", "C"]
    assert state.failed_items == []
    assert state.iteration == 3
    assert state.current_batch == 2
    assert state.total_batches == 2
    assert state.in_progress_item is None
    # B and A run together; C starts only after both have finished.
    assert worker.events[:2] == ["start:B", "start:A"]
    assert worker.events.index("start:C") > worker.events.index("end:A")
    assert worker.events.index("start:C") > worker.events.index("end:B")
    assert all(item.passes for item in plan.items)
    assert plan.item("C").notes == "did C"


def test_failed_and_raising_items_do_not_stop_the_session(tmp_path: Path) -> None:
    plan, plan_path = _plan(
        tmp_path, _item("A"), _item("B"), _item("C", dependencies=["A"])
    )
    store = _store(tmp_path)
    worker = RecordingWorker(fail={"A"}, explode={"B"})
    orchestrator = TaskOrchestrator(
        store, WorkerRegistry({"coder": worker}), archive_on_finish=False
    )

    state = asyncio.run(orchestrator.execute(plan, 10, plan_path=plan_path))

    assert state.status == "failed"
    assert sorted(state.failed_items) == ["A", "B"]
    # C still runs: a failed dependency is recorded, not enforced.
    assert state.completed_items == ["C"]
    assert plan.item("A").notes == "A failed checks"
    assert plan.item("B").notes == "B exploded"
    progress = store.read_progress()
    assert "A - FAILED: A failed checks" in progress
    assert "B - FAILED: B exploded" in progress


def test_sibling_results_are_recorded_in_completion_order(tmp_path: Path) -> None:
    plan, plan_path = _plan(tmp_path, _item("SLOW", 9), _item("FAST", 1))
    store = _store(tmp_path)
    worker = StaggeredWorker({"SLOW": 0.05, "FAST": 0.0}, explode={"SLOW"})
    orchestrator = TaskOrchestrator(
        store, WorkerRegistry({"coder": worker}), archive_on_finish=False
    )

    state = asyncio.run(orchestrator.execute(plan, 10, plan_path=plan_path))

    assert state.completed_items == ["FAST"]
    assert state.failed_items == ["SLOW"]
    assert state.iteration == 2
    progress = store.read_progress()
    assert progress.index("FAST - PASSED") < progress.index("SLOW - FAILED: SLOW crashed")


def test_worker_returning_wrong_type_fails_only_that_item(tmp_path: Path) -> None:
    plan, plan_path = _plan(
        tmp_path, _item("A"), _item("B"), _item("C", dependencies=["A", "B"])
    )
    store = _store(tmp_path)
    orchestrator = TaskOrchestrator(
        store, WorkerRegistry({"coder": LooseWorker()}), archive_on_finish=False
    )

    state = asyncio.run(orchestrator.execute(plan, 10, plan_path=plan_path))

    assert state.status == "failed"
    assert state.failed_items == ["A"]
    assert sorted(state.completed_items) == ["B", "C"]
    assert "returned str, not a WorkerResult" in plan.item("A").notes


def test_unknown_worker_fails_item(tmp_path: Path) -> None:
    item = _item("A")
    item.worker = "designer"
    plan, plan_path = _plan(tmp_path, item)
    store = _store(tmp_path)
    orchestrator = TaskOrchestrator(
        store, WorkerRegistry({"coder": RecordingWorker()}), archive_on_finish=False
    )

    state = asyncio.run(orchestrator.execute(plan, 10, plan_path=plan_path))

    assert state.failed_items == ["A"]
    assert "No worker registered for 'designer'" in plan.item("A").notes


def test_item_timeout_fails_slow_items(tmp_path: Path) -> None:
    plan, plan_path = _plan(tmp_path, _item("A"))
    store = _store(tmp_path)
    orchestrator = TaskOrchestrator(
        store,
        WorkerRegistry({"coder": RecordingWorker(delay=1.0)}),
        item_timeout_seconds=0.05,
        archive_on_finish=False,
    )

    state = asyncio.run(orchestrator.execute(plan, 10, plan_path=plan_path))

    assert state.failed_items == ["A"]
    assert "timed out" in plan.item("A").notes


def test_iteration_budget_stops_before_next_batch(tmp_path: Path) -> None:
    plan, plan_path = _plan(
        tmp_path,
        _item("A"),
        _item("B"),
        _item("C", dependencies=["A"]),
        _item("D", dependencies=["C"]),
    )
    store = _store(tmp_path)
    worker = RecordingWorker()
    orchestrator = TaskOrchestrator(
        store, WorkerRegistry({"coder": worker}), archive_on_finish=False
    )

    state = asyncio.run(orchestrator.execute(plan, 2, plan_path=plan_path))

    assert state.status == "failed"
    assert sorted(state.completed_items) == ["A", "B"]
    assert "start:C" not in worker.events
    assert "Max iterations (2) reached" in store.read_progress()


def test_circular_plan_raises_before_session_exists(tmp_path: Path) -> None:
    plan, plan_path = _plan(
        tmp_path, _item("A", dependencies=["B"]), _item("B", dependencies=["A"])
    )
    store = _store(tmp_path)
    orchestrator = TaskOrchestrator(store, WorkerRegistry({"coder": RecordingWorker()}))

    with pytest.raises(CircularDependencyError):
        asyncio.run(orchestrator.execute(plan, 10, plan_path=plan_path))

    assert store.load() is None


def test_external_cancel_stops_before_next_batch(tmp_path: Path) -> None:
    plan, plan_path = _plan(tmp_path, _item("A"), _item("B", dependencies=["A"]))
    store = _store(tmp_path)

    class CancellingWorker(RecordingWorker):
        async def execute(self, item: WorkItem) -> WorkerResult:
            result = await super().execute(item)
            store.set_status("cancelled")
            return result

    worker = CancellingWorker()
    orchestrator = TaskOrchestrator(store, WorkerRegistry({"coder": worker}))

    state = asyncio.run(orchestrator.execute(plan, 10, plan_path=plan_path))

    assert state.status == "cancelled"
    assert "start:B" not in worker.events
    assert orchestrator.last_archive is not None
    assert "__cancelled__" in orchestrator.last_archive.name
    assert store.load() is None


def test_spec_lock_pauses_until_released(tmp_path: Path) -> None:
    plan, plan_path = _plan(tmp_path, _item("A"), _item("B", dependencies=["A"]))
    store = _store(tmp_path)
    spec_lock = SpecLock(store.records, poll_interval_seconds=0.01)
    worker = LockingWorker(spec_lock)
    logger = SessionLogger("test.orchestrator")
    orchestrator = TaskOrchestrator(
        store,
        WorkerRegistry({"coder": worker}),
        logger=logger,
        spec_lock=spec_lock,
        spec_lock_timeout_seconds=5.0,
        archive_on_finish=False,
    )

    state = asyncio.run(orchestrator.execute(plan, 10, plan_path=plan_path))

    assert state.status == "completed"
    assert worker.seen == ["A", "B"]
    progress = store.read_progress()
    assert "Status changed to: paused" in progress
    assert "Status changed to: running" in progress


def test_unreleased_spec_lock_leaves_session_paused(tmp_path: Path) -> None:
    plan, plan_path = _plan(tmp_path, _item("A"), _item("B", dependencies=["A"]))
    store = _store(tmp_path)
    spec_lock = SpecLock(store.records, poll_interval_seconds=0.01)
    spec_lock.report_gap("A", "coder", "undecided schema")
    worker = RecordingWorker()
    orchestrator = TaskOrchestrator(
        store,
        WorkerRegistry({"coder": worker}),
        spec_lock=spec_lock,
        spec_lock_timeout_seconds=0.05,
    )

    state = asyncio.run(orchestrator.execute(plan, 10, plan_path=plan_path))

    assert state.status == "paused"
    assert worker.events == []
    assert orchestrator.last_archive is None
    assert store.load() is not None


def test_finished_session_is_archived(tmp_path: Path) -> None:
    plan, plan_path = _plan(tmp_path, _item("A"))
    store = _store(tmp_path)
    orchestrator = TaskOrchestrator(store, WorkerRegistry({"coder": RecordingWorker()}))

    state = asyncio.run(orchestrator.execute(plan, 10, plan_path=plan_path))

    assert state.status == "completed"
    assert orchestrator.last_archive is not None
    assert orchestrator.last_archive.exists()
    assert store.load() is None


def test_status_report(tmp_path: Path) -> None:
    plan, plan_path = _plan(tmp_path, _item("A"), _item("B", dependencies=["A"]))
    store = _store(tmp_path)
    orchestrator = TaskOrchestrator(
        store, WorkerRegistry({"coder": RecordingWorker()}), archive_on_finish=False
    )

    assert orchestrator.status_report(plan) == "Not started"

    asyncio.run(orchestrator.execute(plan, 10, plan_path=plan_path))
    report = orchestrator.status_report(plan)

    assert "Status: completed" in report
    assert "Progress: 2/2 items" in report
    assert "Batch: 2/2" in report
    assert "Completed: [A, B]" in report


def test_plan_without_path_is_written_to_state_dir(tmp_path: Path) -> None:
    plan = WorkPlan(project="demo", branch="main", description="Demo", items=[_item("A")])
    store = _store(tmp_path)
    orchestrator = TaskOrchestrator(
        store, WorkerRegistry({"coder": RecordingWorker()}), archive_on_finish=False
    )

    state = asyncio.run(orchestrator.execute(plan, 10))

    assert Path(state.plan_path) == store.root / "plan.json"
    assert store.validate_plan_exists() is True
