from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from loopwright.backends.base import (
    AgentBackend,
    AgentRequest,
    BackendExecutionError,
    BackendTimeoutError,
)
from loopwright.logger import SessionLogger
from loopwright.plan import WorkItem
from loopwright.workers.base import Worker, WorkerResult

DEFAULT_SYSTEM_PROMPT = """
You are a software engineer working through one item of a larger plan.
Implement exactly what the item asks for and satisfy every acceptance criterion.
Stay within the item's scope; other items are handled separately.
""".strip()


def build_item_prompt(item: WorkItem) -> str:
    criteria = [
        f"  {index}. {criterion}"
        for index, criterion in enumerate(item.acceptance_criteria, start=1)
    ]
    parts = [
        f"Item ID: {item.id}",
        f"Title: {item.title}",
        f"Description: {item.description}",
        "",
        "Acceptance Criteria:",
        *criteria,
        "",
        (
            f"Dependencies: {', '.join(item.dependencies)}"
            if item.dependencies
            else "No dependencies - can start immediately"
        ),
    ]
    return "\n".join(parts)


@dataclass(slots=True)
class AttemptPolicy:
    attempts_per_backend: int = 2
    backoff_seconds: float = 0.5
    timeout_seconds: float = 900.0


class AgentWorker(Worker):
    """Worker that hands a work item to agent backends, in preference order.

    Each backend gets up to ``attempts_per_backend`` tries with a linearly
    growing pause between them. A non-retriable error moves straight to the
    next backend. When every backend gives up the item fails with the
    collected error messages; backend errors never escape ``execute``.
    """

    def __init__(
        self,
        name: str,
        backends: Sequence[AgentBackend],
        *,
        policy: AttemptPolicy | None = None,
        model: str | None = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        logger: SessionLogger | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if not backends:
            raise ValueError("AgentWorker needs at least one backend.")
        self.name = name
        self.backends = list(backends)
        self.policy = policy or AttemptPolicy()
        self.model = model
        self.system_prompt = system_prompt
        self.logger = logger or SessionLogger("loopwright.workers")
        self._sleep = sleep

    def build_request(self, item: WorkItem) -> AgentRequest:
        return AgentRequest(
            item_id=item.id,
            worker=self.name,
            system_prompt=self.system_prompt,
            prompt=build_item_prompt(item),
            model=self.model,
        )

    async def _complete(self, backend: AgentBackend, request: AgentRequest) -> str:
        try:
            return await asyncio.wait_for(
                backend.complete(request), timeout=self.policy.timeout_seconds
            )
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"{backend.name} timed out after {self.policy.timeout_seconds:.1f}s",
                backend=backend.name,
            ) from exc

    async def execute(self, item: WorkItem) -> WorkerResult:
        request = self.build_request(item)
        attempts = max(1, self.policy.attempts_per_backend)
        failures: list[str] = []

        for backend in self.backends:
            for attempt in range(1, attempts + 1):
                try:
                    text = (await self._complete(backend, request)).strip()
                except BackendExecutionError as exc:
                    failures.append(f"{backend.name}#{attempt}: {exc}")
                    self.logger.warning(
                        "Agent attempt failed",
                        item=item.id,
                        backend=backend.name,
                        attempt=attempt,
                        retriable=exc.retriable,
                    )
                    if not exc.retriable:
                        break
                    if attempt < attempts:
                        await self._sleep(self.policy.backoff_seconds * attempt)
                    continue

                if not text:
                    failures.append(f"{backend.name}#{attempt}: empty response")
                    continue
                if failures:
                    self.logger.info(
                        "Agent recovered", item=item.id, backend=backend.name, attempt=attempt
                    )
                return WorkerResult(success=True, output=text)

        return WorkerResult(success=False, error="; ".join(failures))
