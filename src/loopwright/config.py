from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["claude", "openai"]


@dataclass(slots=True)
class SessionConfig:
    state_dir: str = ".loopwright"
    plan_file: str = "plan.json"
    max_iterations: int = 50
    item_timeout_seconds: float = 0.0
    archive_on_finish: bool = True


@dataclass(slots=True)
class CleanupConfig:
    log_max_lines: int = 500
    archive_keep: int = 10
    archive_max_age_days: float = 7.0


@dataclass(slots=True)
class SpecLockConfig:
    poll_interval_seconds: float = 5.0
    wait_timeout_seconds: float = 300.0


@dataclass(slots=True)
class BackendConfig:
    order: list[BackendName] = field(default_factory=lambda: ["claude", "openai"])
    attempts_per_backend: int = 2
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 900.0
    openai_model: str = "gpt-5-codex"


@dataclass(slots=True)
class WorkersConfig:
    names: list[str] = field(
        default_factory=lambda: ["planner", "coder", "tester", "reviewer", "documenter"]
    )


@dataclass(slots=True)
class LoopwrightConfig:
    session: SessionConfig = field(default_factory=SessionConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)
    spec_lock: SpecLockConfig = field(default_factory=SpecLockConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    workers: WorkersConfig = field(default_factory=WorkersConfig)

    @classmethod
    def default(cls) -> LoopwrightConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> LoopwrightConfig:
        return cls(
            session=SessionConfig(**data.get("session", {})),
            cleanup=CleanupConfig(**data.get("cleanup", {})),
            spec_lock=SpecLockConfig(**data.get("spec_lock", {})),
            backend=BackendConfig(**data.get("backend", {})),
            workers=WorkersConfig(**data.get("workers", {})),
        )

    def to_dict(self) -> dict:
        return {
            "session": {
                "state_dir": self.session.state_dir,
                "plan_file": self.session.plan_file,
                "max_iterations": self.session.max_iterations,
                "item_timeout_seconds": self.session.item_timeout_seconds,
                "archive_on_finish": self.session.archive_on_finish,
            },
            "cleanup": {
                "log_max_lines": self.cleanup.log_max_lines,
                "archive_keep": self.cleanup.archive_keep,
                "archive_max_age_days": self.cleanup.archive_max_age_days,
            },
            "spec_lock": {
                "poll_interval_seconds": self.spec_lock.poll_interval_seconds,
                "wait_timeout_seconds": self.spec_lock.wait_timeout_seconds,
            },
            "backend": {
                "order": list(self.backend.order),
                "attempts_per_backend": self.backend.attempts_per_backend,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
                "openai_model": self.backend.openai_model,
            },
            "workers": {
                "names": list(self.workers.names),
            },
        }

    def state_root(self, base: Path) -> Path:
        state_dir = Path(self.session.state_dir)
        return state_dir if state_dir.is_absolute() else base / state_dir

    def plan_path(self, base: Path) -> Path:
        plan_file = Path(self.session.plan_file)
        return plan_file if plan_file.is_absolute() else self.state_root(base) / plan_file


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: LoopwrightConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["session", "cleanup", "spec_lock", "backend", "workers"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> LoopwrightConfig:
    if not path.exists():
        return LoopwrightConfig.default()
    return LoopwrightConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: LoopwrightConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
