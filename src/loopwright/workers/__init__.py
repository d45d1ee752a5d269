from loopwright.workers.agent import AgentWorker, AttemptPolicy, build_item_prompt
from loopwright.workers.base import (
    UnknownWorkerError,
    Worker,
    WorkerExecutionError,
    WorkerRegistry,
    WorkerResult,
)
from loopwright.workers.echo import EchoWorker

__all__ = [
    "AgentWorker",
    "AttemptPolicy",
    "EchoWorker",
    "UnknownWorkerError",
    "Worker",
    "WorkerExecutionError",
    "WorkerRegistry",
    "WorkerResult",
    "build_item_prompt",
]
