from __future__ import annotations

from loopwright.plan import WorkItem
from loopwright.workers.base import Worker, WorkerResult


class EchoWorker(Worker):
    """Succeeds immediately; used for dry runs."""

    def __init__(self, name: str = "echo") -> None:
        self.name = name

    async def execute(self, item: WorkItem) -> WorkerResult:
        return WorkerResult(success=True, output=f"Executed: {item.title}")
