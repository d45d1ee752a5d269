from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loopwright.errors import LoopwrightError

MIN_PRIORITY = 1
MAX_PRIORITY = 10


class PlanValidationError(LoopwrightError):
    """Raised when a plan document is structurally invalid."""


@dataclass(slots=True)
class WorkItem:
    id: str
    title: str
    description: str
    acceptance_criteria: list[str]
    priority: int
    worker: str
    dependencies: list[str] = field(default_factory=list)
    passes: bool = False
    notes: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "acceptance_criteria": list(self.acceptance_criteria),
            "priority": self.priority,
            "worker": self.worker,
            "dependencies": list(self.dependencies),
            "passes": self.passes,
            "notes": self.notes,
        }


@dataclass(slots=True)
class WorkPlan:
    project: str
    branch: str
    description: str
    items: list[WorkItem]

    def item(self, item_id: str) -> WorkItem | None:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def item_ids(self) -> list[str]:
        return [item.id for item in self.items]

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": self.project,
            "branch": self.branch,
            "description": self.description,
            "items": [item.to_dict() for item in self.items],
        }

    def content_hash(self) -> str:
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _require_text(payload: dict[str, Any], key: str, message: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise PlanValidationError(message)
    return value


def _parse_item(payload: Any, index: int) -> WorkItem:
    if not isinstance(payload, dict):
        raise PlanValidationError(f"Item at index {index} must be an object")
    item_id = _require_text(payload, "id", f"Item at index {index} missing id")
    title = _require_text(payload, "title", f"Item {item_id} missing title")
    description = _require_text(payload, "description", f"Item {item_id} missing description")

    criteria = payload.get("acceptance_criteria")
    if not isinstance(criteria, list):
        raise PlanValidationError(f"Item {item_id} must have an acceptance_criteria list")
    if not criteria:
        raise PlanValidationError(f"Item {item_id} must have at least one acceptance criterion")
    if not all(isinstance(criterion, str) for criterion in criteria):
        raise PlanValidationError(f"Item {item_id} acceptance criteria must be strings")

    priority = payload.get("priority")
    # bool is an int subclass; reject it explicitly.
    if (
        isinstance(priority, bool)
        or not isinstance(priority, int)
        or not MIN_PRIORITY <= priority <= MAX_PRIORITY
    ):
        raise PlanValidationError(
            f"Item {item_id} must have priority between {MIN_PRIORITY}-{MAX_PRIORITY}"
        )

    worker = _require_text(payload, "worker", f"Item {item_id} must specify a worker")

    dependencies = payload.get("dependencies", [])
    if not isinstance(dependencies, list) or not all(
        isinstance(dep, str) for dep in dependencies
    ):
        raise PlanValidationError(f"Item {item_id} must have a dependencies list of ids")

    passes = payload.get("passes", False)
    if not isinstance(passes, bool):
        raise PlanValidationError(f"Item {item_id} must have a boolean passes flag")

    notes = payload.get("notes", "")
    if not isinstance(notes, str):
        raise PlanValidationError(f"Item {item_id} notes must be text")

    return WorkItem(
        id=item_id,
        title=title,
        description=description,
        acceptance_criteria=list(criteria),
        priority=priority,
        worker=worker,
        dependencies=list(dependencies),
        passes=passes,
        notes=notes,
    )


def parse_plan(payload: Any) -> WorkPlan:
    """Build a validated ``WorkPlan`` from decoded JSON.

    Raises ``PlanValidationError`` on the first structural problem: missing
    metadata, an empty item list, a malformed item, duplicate ids or a
    dependency on an id that is not part of the plan. Cycles are detected
    later, when the dependency graph is layered.
    """
    if not isinstance(payload, dict):
        raise PlanValidationError("Plan must be a JSON object")
    project = _require_text(payload, "project", "Plan must have a project name")
    branch = _require_text(payload, "branch", "Plan must have a branch name")
    description = _require_text(payload, "description", "Plan must have a description")

    raw_items = payload.get("items")
    if not isinstance(raw_items, list):
        raise PlanValidationError("Plan must have an items list")
    if not raw_items:
        raise PlanValidationError("Plan must have at least one work item")

    items = [_parse_item(raw, index) for index, raw in enumerate(raw_items)]

    seen: set[str] = set()
    for item in items:
        if item.id in seen:
            raise PlanValidationError(f"Duplicate item id: {item.id}")
        seen.add(item.id)

    for item in items:
        for dep in item.dependencies:
            if dep not in seen:
                raise PlanValidationError(f"Item {item.id} depends on non-existent item {dep}")

    return WorkPlan(project=project, branch=branch, description=description, items=items)


def parse_plan_text(raw: str) -> WorkPlan:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise PlanValidationError(f"Failed to parse plan: {exc}") from exc
    return parse_plan(payload)


def load_plan(path: Path) -> WorkPlan:
    if not path.exists():
        raise PlanValidationError(f"Plan not found at {path}")
    return parse_plan_text(path.read_text(encoding="utf-8"))


def save_plan(path: Path, plan: WorkPlan) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    serialized = json.dumps(plan.to_dict(), ensure_ascii=False, indent=2)
    path.write_text(serialized + "\n", encoding="utf-8")


def plan_file_hash(path: Path) -> str | None:
    """Hash of the plan currently on disk, or ``None`` if it cannot be read."""
    try:
        return load_plan(path).content_hash()
    except (OSError, PlanValidationError):
        return None
