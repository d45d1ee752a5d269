import asyncio

import pytest

from loopwright.backends.base import AgentBackend, AgentRequest, BackendExecutionError
from loopwright.plan import WorkItem
from loopwright.workers import (
    AgentWorker,
    AttemptPolicy,
    EchoWorker,
    UnknownWorkerError,
    WorkerRegistry,
    build_item_prompt,
)


class ScriptedBackend(AgentBackend):
    """Replays a fixed list of outcomes; exceptions are raised, strings returned."""

    def __init__(self, name: str, outcomes: list[str | Exception]) -> None:
        self.name = name
        self.outcomes = list(outcomes)
        self.requests: list[AgentRequest] = []

    async def complete(self, request: AgentRequest) -> str:
        self.requests.append(request)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class HangingBackend(AgentBackend):
    name = "hanging"

    async def complete(self, request: AgentRequest) -> str:
        await asyncio.sleep(10)
        return "too late"


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _flaky(message: str = "overloaded") -> BackendExecutionError:
    return BackendExecutionError(message, backend="test")


def _fatal(message: str = "bad credentials") -> BackendExecutionError:
    return BackendExecutionError(message, backend="test", retriable=False)


def _item(dependencies: list[str] | None = None) -> WorkItem:
    return WorkItem(
        id="T-2",
        title="Add login endpoint",
        description="POST /login returns a token",
        acceptance_criteria=["returns 200 for valid users", "returns 401 otherwise"],
        priority=7,
        worker="coder",
        dependencies=list(dependencies or []),
    )


def test_build_item_prompt_lists_criteria_and_dependencies() -> None:
    prompt = build_item_prompt(_item(["T-1"]))

    assert "Item ID: T-2" in prompt
    assert "Title: Add login endpoint" in prompt
    assert "  1. returns 200 for valid users" in prompt
    assert "  2. returns 401 otherwise" in prompt
    assert prompt.endswith("Dependencies: T-1")


def test_build_item_prompt_without_dependencies() -> None:
    assert build_item_prompt(_item()).endswith("No dependencies - can start immediately")


def test_agent_worker_sends_item_prompt_to_first_backend() -> None:
    backend = ScriptedBackend("claude", ["  implemented item\n"])
    worker = AgentWorker("coder", [backend], model="opus")

    result = asyncio.run(worker.execute(_item()))

    assert result.success is True
    assert result.output == "implemented item"
    request = backend.requests[0]
    assert request.item_id == "T-2"
    assert request.worker == "coder"
    assert request.model == "opus"
    assert "Item ID: T-2" in request.prompt


def test_agent_worker_retries_with_growing_backoff_then_falls_back() -> None:
    first = ScriptedBackend("claude", [_flaky(), _flaky(), _flaky()])
    second = ScriptedBackend("openai", ["done"])
    sleeper = SleepRecorder()
    worker = AgentWorker(
        "coder",
        [first, second],
        policy=AttemptPolicy(attempts_per_backend=3, backoff_seconds=0.5),
        sleep=sleeper,
    )

    result = asyncio.run(worker.execute(_item()))

    assert result.success is True
    assert result.output == "done"
    assert len(first.requests) == 3
    assert len(second.requests) == 1
    assert sleeper.delays == [0.5, 1.0]


def test_agent_worker_skips_retries_on_non_retriable_error() -> None:
    first = ScriptedBackend("claude", [_fatal()])
    second = ScriptedBackend("openai", ["done"])
    sleeper = SleepRecorder()
    worker = AgentWorker("coder", [first, second], sleep=sleeper)

    result = asyncio.run(worker.execute(_item()))

    assert result.success is True
    assert len(first.requests) == 1
    assert sleeper.delays == []


def test_agent_worker_reports_every_failure_instead_of_raising() -> None:
    first = ScriptedBackend("claude", [_fatal("binary missing")])
    second = ScriptedBackend("openai", [_flaky("rate limited"), ""])
    worker = AgentWorker("coder", [first, second], sleep=SleepRecorder())

    result = asyncio.run(worker.execute(_item()))

    assert result.success is False
    assert result.error == (
        "claude#1: binary missing; openai#1: rate limited; openai#2: empty response"
    )


def test_agent_worker_times_out_slow_backend() -> None:
    fallback = ScriptedBackend("openai", ["done"])
    worker = AgentWorker(
        "coder",
        [HangingBackend(), fallback],
        policy=AttemptPolicy(attempts_per_backend=1, timeout_seconds=0.05),
    )

    result = asyncio.run(worker.execute(_item()))

    assert result.success is True
    assert result.output == "done"


def test_agent_worker_requires_a_backend() -> None:
    with pytest.raises(ValueError):
        AgentWorker("coder", [])


def test_echo_worker_succeeds() -> None:
    result = asyncio.run(EchoWorker().execute(_item()))

    assert result.success is True
    assert result.output == "Executed: Add login endpoint"


def test_registry_lookup_and_errors() -> None:
    registry = WorkerRegistry({"coder": EchoWorker("coder")})
    registry.register("tester", EchoWorker("tester"))

    assert "coder" in registry
    assert "reviewer" not in registry
    assert registry.names() == ["coder", "tester"]
    assert len(registry) == 2
    assert registry.get_worker("tester").name == "tester"

    with pytest.raises(UnknownWorkerError, match="reviewer"):
        registry.get_worker("reviewer")
    with pytest.raises(ValueError):
        registry.register("  ", EchoWorker())
