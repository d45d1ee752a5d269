from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
from dataclasses import dataclass

from loopwright.errors import LoopwrightError
from loopwright.plan import WorkItem


class WorkerExecutionError(LoopwrightError):
    """Raised by a worker that cannot complete a work item."""


class UnknownWorkerError(LoopwrightError):
    """Raised when an item names a worker that is not registered."""


@dataclass(slots=True)
class WorkerResult:
    success: bool
    output: str = ""
    error: str | None = None


class Worker(ABC):
    name: str = "worker"

    @abstractmethod
    async def execute(self, item: WorkItem) -> WorkerResult:
        """Carry out ``item``; raising is treated as a failed result."""


class WorkerRegistry:
    """Name to worker lookup injected into the orchestrator."""

    def __init__(self, workers: Mapping[str, Worker] | None = None) -> None:
        self._workers: dict[str, Worker] = {}
        for name, worker in (workers or {}).items():
            self.register(name, worker)

    def register(self, name: str, worker: Worker) -> None:
        normalized = name.strip()
        if not normalized:
            raise ValueError("Worker name must not be empty.")
        self._workers[normalized] = worker

    def get_worker(self, name: str) -> Worker:
        worker = self._workers.get(name.strip())
        if worker is None:
            raise UnknownWorkerError(f"No worker registered for '{name}'.")
        return worker

    def names(self) -> list[str]:
        return sorted(self._workers)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.strip() in self._workers

    def __iter__(self) -> Iterator[str]:
        return iter(self._workers)

    def __len__(self) -> int:
        return len(self._workers)
