from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

DEFAULT_MAX_ENTRIES = 1000


@dataclass(slots=True)
class LogEntry:
    level: int
    level_name: str
    timestamp: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "level_name": self.level_name,
            "timestamp": self.timestamp,
            "message": self.message,
            "context": dict(self.context),
            "error": self.error,
        }


class SessionLogger:
    """Logger instance that also keeps a bounded in-memory history.

    Records are forwarded to a stdlib ``logging.Logger`` so the usual handler
    configuration applies; the last ``max_entries`` records are additionally
    retained for status output and tests. Child loggers share the parent's
    buffer and merge their preset context into every record.
    """

    def __init__(
        self,
        name: str = "loopwright",
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        level: int = logging.INFO,
        context: dict[str, Any] | None = None,
        _buffer: deque[LogEntry] | None = None,
    ) -> None:
        self.name = name
        self.level = level
        self.context = dict(context or {})
        self._logger = logging.getLogger(name)
        self._buffer: deque[LogEntry] = (
            _buffer if _buffer is not None else deque(maxlen=max(1, max_entries))
        )

    @property
    def max_entries(self) -> int:
        return self._buffer.maxlen or 0

    @staticmethod
    def format_entry(entry: LogEntry) -> str:
        parts = [f"[{entry.timestamp}]", f"[{entry.level_name}]", entry.message]
        if entry.context:
            rendered = " ".join(
                f"{key}={json.dumps(value, ensure_ascii=False, default=str)}"
                for key, value in entry.context.items()
            )
            parts.append(f"({rendered})")
        if entry.error:
            parts.append(f"\n{entry.error}")
        return " ".join(parts)

    def _log(
        self,
        level: int,
        message: str,
        context: dict[str, Any],
        error: BaseException | None = None,
    ) -> None:
        if level < self.level:
            return
        merged = {**self.context, **context}
        entry = LogEntry(
            level=level,
            level_name=logging.getLevelName(level),
            timestamp=datetime.now(UTC).isoformat(timespec="milliseconds"),
            message=message,
            context=merged,
            error=f"{type(error).__name__}: {error}" if error is not None else None,
        )
        self._buffer.append(entry)
        self._logger.log(level, self.format_entry(entry))

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, context)

    def error(self, message: str, error: BaseException | None = None, **context: Any) -> None:
        self._log(logging.ERROR, message, context, error)

    def child(self, **context: Any) -> SessionLogger:
        return SessionLogger(
            self.name,
            level=self.level,
            context={**self.context, **context},
            _buffer=self._buffer,
        )

    def entries(self, level: int | None = None) -> list[LogEntry]:
        if level is None:
            return list(self._buffer)
        return [entry for entry in self._buffer if entry.level == level]

    def clear(self) -> None:
        self._buffer.clear()

    def export_json(self) -> str:
        return json.dumps(
            [entry.to_dict() for entry in self._buffer], ensure_ascii=False, indent=2
        )
