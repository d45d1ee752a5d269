from __future__ import annotations

import asyncio
import json
from pathlib import Path

from loopwright.backends.base import (
    AgentBackend,
    AgentRequest,
    BackendExecutionError,
    BackendProcessError,
)


class ClaudeCodeBackend(AgentBackend):
    """Runs ``claude -p`` once per work item and reads its JSON result."""

    name = "claude"

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(self, request: AgentRequest) -> list[str]:
        command = [
            self.binary,
            "-p",
            request.prompt,
            "--output-format",
            "json",
            "--append-system-prompt",
            request.system_prompt,
        ]
        if request.model:
            command.extend(["--model", request.model])
        return command

    @staticmethod
    def parse_result(stdout: str) -> str:
        """Final text of a ``--output-format json`` run; plain output passes through."""
        text = stdout.strip()
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if not isinstance(payload, dict):
            return text
        result = payload.get("result")
        if payload.get("is_error"):
            raise BackendExecutionError(
                f"Claude reported an error: {result or payload.get('subtype', 'unknown')}",
                backend="claude",
            )
        return result if isinstance(result, str) else ""

    async def complete(self, request: AgentRequest) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(request),
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}", backend="claude", retriable=False
            ) from exc

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise BackendExecutionError(
                f"claude exited with {process.returncode} on {request.item_id}: {detail}",
                backend="claude",
                exit_code=process.returncode,
            )
        return self.parse_result(stdout.decode("utf-8", errors="replace"))
