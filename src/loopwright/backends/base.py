from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from loopwright.errors import LoopwrightError


class BackendExecutionError(LoopwrightError):
    """Raised when a backend fails to produce a response."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when a backend call exceeds its time budget."""


class BackendProcessError(BackendExecutionError):
    """Raised when a backend subprocess cannot be started."""


@dataclass(slots=True)
class AgentRequest:
    """One work item rendered for an agent."""

    item_id: str
    worker: str
    system_prompt: str
    prompt: str
    model: str | None = None


class AgentBackend(ABC):
    name: str = "agent"

    @abstractmethod
    async def complete(self, request: AgentRequest) -> str:
        """Run one agent turn for ``request`` and return its final text."""
