from loopwright.backends.base import (
    AgentBackend,
    AgentRequest,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from loopwright.backends.claude import ClaudeCodeBackend
from loopwright.backends.openai_sdk import OpenAIBackend

__all__ = [
    "AgentBackend",
    "AgentRequest",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "OpenAIBackend",
]
