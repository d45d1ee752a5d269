from __future__ import annotations

from dataclasses import dataclass

from loopwright.errors import LoopwrightError
from loopwright.plan import WorkItem, WorkPlan


class CircularDependencyError(LoopwrightError):
    """Raised when no further batch can be formed while items remain."""

    def __init__(self, unresolved: list[str]) -> None:
        super().__init__(
            "Unable to resolve dependencies - possible circular dependency among: "
            + ", ".join(unresolved)
        )
        self.unresolved = unresolved


@dataclass(slots=True)
class Batch:
    number: int
    items: list[WorkItem]

    @property
    def parallel(self) -> bool:
        return len(self.items) > 1

    def item_ids(self) -> list[str]:
        return [item.id for item in self.items]


@dataclass(slots=True)
class ExecutionSummary:
    total_items: int
    max_batch_size: int
    batch_count: int
    critical_path: list[str]


class DependencyGraph:
    """Topological layering and critical-path analysis over a validated plan.

    Batches are produced by frontier expansion: each batch holds every item
    whose dependencies were all placed in earlier batches. Items inside a
    batch are ordered by descending priority; equal priorities keep the order
    in which the plan declares them.

    The critical path starts at the deepest item and walks back through the
    deepest dependency. Ties (for the start item and at every step) go to the
    lowest id.
    """

    def __init__(self, plan: WorkPlan) -> None:
        self.plan = plan
        self._items = {item.id: item for item in plan.items}
        self._depths: dict[str, int] = {}
        self._batches: list[Batch] | None = None

    def generate_batches(self) -> list[Batch]:
        if self._batches is not None:
            return list(self._batches)

        batches: list[Batch] = []
        scheduled: set[str] = set()
        remaining = list(self.plan.items)
        while remaining:
            ready = [
                item for item in remaining if all(dep in scheduled for dep in item.dependencies)
            ]
            if not ready:
                raise CircularDependencyError(sorted(item.id for item in remaining))
            # sorted() is stable, so equal priorities stay in declaration order.
            ready = sorted(ready, key=lambda item: -item.priority)
            batches.append(Batch(number=len(batches) + 1, items=ready))
            scheduled.update(item.id for item in ready)
            remaining = [item for item in remaining if item.id not in scheduled]

        self._batches = batches
        return list(batches)

    def depth(self, item_id: str) -> int:
        if item_id in self._depths:
            return self._depths[item_id]
        item = self._items.get(item_id)
        if item is None:
            return 0
        # Iterative post-order walk; recursion would hit the interpreter limit on long chains.
        stack: list[tuple[str, bool]] = [(item_id, False)]
        visiting: set[str] = set()
        while stack:
            current_id, expanded = stack.pop()
            if current_id in self._depths:
                continue
            current = self._items[current_id]
            if expanded:
                visiting.discard(current_id)
                dep_depths = [self._depths.get(dep, 0) for dep in current.dependencies]
                self._depths[current_id] = 1 + max(dep_depths, default=0)
                continue
            if current_id in visiting:
                raise CircularDependencyError(sorted(visiting))
            visiting.add(current_id)
            stack.append((current_id, True))
            for dep in current.dependencies:
                if dep in self._items and dep not in self._depths:
                    if dep in visiting:
                        raise CircularDependencyError(sorted(visiting))
                    stack.append((dep, False))
        return self._depths[item_id]

    def critical_path(self) -> list[str]:
        if not self.plan.items:
            return []
        depths = {item.id: self.depth(item.id) for item in self.plan.items}
        current: str | None = min(depths, key=lambda item_id: (-depths[item_id], item_id))
        path: list[str] = []
        while current is not None:
            path.append(current)
            deps = [dep for dep in self._items[current].dependencies if dep in depths]
            if not deps:
                break
            current = min(deps, key=lambda dep: (-depths[dep], dep))
        return path

    def summary(self) -> ExecutionSummary:
        batches = self.generate_batches()
        return ExecutionSummary(
            total_items=len(self.plan.items),
            max_batch_size=max((len(batch.items) for batch in batches), default=0),
            batch_count=len(batches),
            critical_path=self.critical_path(),
        )

    def visualize(self) -> str:
        lines = ["Dependency Graph:", ""]
        for item in self.plan.items:
            deps = f" <- [{', '.join(item.dependencies)}]" if item.dependencies else ""
            lines.append(f"  {item.id}: {item.title} (priority: {item.priority}){deps}")

        summary = self.summary()
        lines.append("")
        lines.append("Batches:")
        for batch in self.generate_batches():
            mode = "parallel" if batch.parallel else "sequential"
            lines.append(f"  {batch.number}: [{', '.join(batch.item_ids())}] ({mode})")
        lines.append("")
        lines.append("Summary:")
        lines.append(f"  Total items: {summary.total_items}")
        lines.append(f"  Max parallel: {summary.max_batch_size}")
        lines.append(f"  Batches: {summary.batch_count}")
        lines.append(f"  Critical path: [{' -> '.join(summary.critical_path)}]")
        return "\n".join(lines)
