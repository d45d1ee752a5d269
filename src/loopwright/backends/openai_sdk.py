from __future__ import annotations

import asyncio
from typing import Any

from openai import APIConnectionError, APITimeoutError, OpenAI, OpenAIError, RateLimitError

from loopwright.backends.base import AgentBackend, AgentRequest, BackendExecutionError

# Transient failures worth another attempt; anything else is a configuration problem.
RETRIABLE_ERRORS = (APIConnectionError, APITimeoutError, RateLimitError)


class OpenAIBackend(AgentBackend):
    """Work-item backend on the OpenAI Responses API."""

    name = "openai"

    def __init__(self, *, model: str = "gpt-5-codex", client: Any | None = None) -> None:
        self.model = model
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = OpenAI()
            except OpenAIError as exc:
                raise BackendExecutionError(
                    f"OpenAI client unavailable: {exc}", backend="openai", retriable=False
                ) from exc
        return self._client

    def request_kwargs(self, request: AgentRequest) -> dict[str, Any]:
        return {
            "model": request.model or self.model,
            "instructions": request.system_prompt,
            "input": request.prompt,
            "metadata": {"item_id": request.item_id, "worker": request.worker},
        }

    async def complete(self, request: AgentRequest) -> str:
        client = self.client
        kwargs = self.request_kwargs(request)
        try:
            response = await asyncio.to_thread(client.responses.create, **kwargs)
        except RETRIABLE_ERRORS as exc:
            raise BackendExecutionError(
                f"OpenAI request for {request.item_id} failed: {exc}", backend="openai"
            ) from exc
        except OpenAIError as exc:
            raise BackendExecutionError(
                f"OpenAI rejected {request.item_id}: {exc}", backend="openai", retriable=False
            ) from exc

        text = getattr(response, "output_text", None)
        if text is None and isinstance(response, dict):
            text = response.get("output_text")
        return text if isinstance(text, str) else ""
