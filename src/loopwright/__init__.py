"""Dependency-aware work-item scheduler and session orchestrator."""

from loopwright.continuation import ContinuationGate
from loopwright.graph import CircularDependencyError, DependencyGraph
from loopwright.orchestrator import TaskOrchestrator
from loopwright.plan import PlanValidationError, WorkItem, WorkPlan, load_plan
from loopwright.spec_lock import SpecLock
from loopwright.state import StateStore

__version__ = "0.1.0"

__all__ = [
    "CircularDependencyError",
    "ContinuationGate",
    "DependencyGraph",
    "PlanValidationError",
    "SpecLock",
    "StateStore",
    "TaskOrchestrator",
    "WorkItem",
    "WorkPlan",
    "__version__",
    "load_plan",
]
