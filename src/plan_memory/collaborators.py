"""Interfaces of the planning and execution collaborators driven by the coordinators."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from plan_memory.models import Complexity, Payload, TaskPlanView


@dataclass(slots=True)
class ToolSpec:
    """One entry of the tool catalog."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PlannedTask:
    """Candidate task proposed by the plan generator, before it gets an id."""

    tool_name: str
    description: str = ""
    parameters: Payload | dict[str, Any] | str | None = None
    complexity: Complexity | str = Complexity.MEDIUM
    requires_validation: bool = False


@dataclass(slots=True)
class ExecutionOutcome:
    """Result of running one task."""

    success: bool
    output: Any = None
    error: str | None = None
    execution_time_ms: int | None = None
    evaluation: Any = None


class ToolCatalog(Protocol):
    """Source of the tools a plan covers."""

    def list_tools(self) -> Sequence[ToolSpec]:
        """Return every tool in a stable order."""


class PlanGenerator(Protocol):
    """Proposes tasks for one batch of tools."""

    def generate(
        self,
        *,
        plan_id: str,
        batch_index: int,
        tools: Sequence[ToolSpec],
        prior_results: Sequence[Any],
    ) -> Sequence[PlannedTask]:
        """Return candidate tasks for ``tools``."""


class TaskExecutor(Protocol):
    """Runs a single planned task."""

    def execute(self, task: TaskPlanView, *, thread_id: str) -> ExecutionOutcome:
        """Execute ``task`` and report what happened."""
