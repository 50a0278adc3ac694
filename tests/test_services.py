from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import allure
import pytest

from plan_memory.collaborators import ExecutionOutcome, PlannedTask, ToolSpec
from plan_memory.manager import PlanMemory
from plan_memory.models import (
    TASK_ID_PATTERN,
    PlanStatus,
    TaskPlanView,
    TaskStatus,
    plan_id_component,
)
from plan_memory.services import PlanningCoordinator

pytestmark = [
    allure.epic("Batch Orchestration"),
    allure.feature("Planning & Execution Coordination"),
]


class StaticCatalog:
    def __init__(self, count: int) -> None:
        self.tools = [ToolSpec(name=f"t{index}", description=f"tool {index}") for index in range(count)]

    def list_tools(self) -> Sequence[ToolSpec]:
        return self.tools


class OneTaskPerTool:
    def __init__(self) -> None:
        self.calls: list[tuple[int, list[str]]] = []

    def generate(
        self,
        *,
        plan_id: str,
        batch_index: int,
        tools: Sequence[ToolSpec],
        prior_results: Sequence[Any],
    ) -> Sequence[PlannedTask]:
        self.calls.append((batch_index, [tool.name for tool in tools]))
        return [
            PlannedTask(tool_name=tool.name, description=f"exercise {tool.name}", parameters={"n": 1})
            for tool in tools
        ]


class ScriptedExecutor:
    """Fails ``t1`` and returns two sub-results for ``t2``."""

    def __init__(self) -> None:
        self.executed: list[str] = []

    def execute(self, task: TaskPlanView, *, thread_id: str) -> ExecutionOutcome:
        self.executed.append(task.task_id)
        if task.tool_name == "t1":
            return ExecutionOutcome(success=False, error="boom", execution_time_ms=5)
        if task.tool_name == "t2":
            return ExecutionOutcome(success=True, output={"results": [{"a": 1}, {"a": 2}]})
        return ExecutionOutcome(success=True, output={"ok": task.tool_name}, execution_time_ms=1)


def _planner(memory: PlanMemory, generator: OneTaskPerTool, tools: int = 7) -> PlanningCoordinator:
    return PlanningCoordinator(
        task_plans=memory.task_plans,
        progress=memory.progress,
        catalog=StaticCatalog(tools),
        generator=generator,
        tools_per_batch=3,
    )


def test_planning_generates_ids_per_batch_and_advances(memory: PlanMemory) -> None:
    generator = OneTaskPerTool()
    planner = _planner(memory, generator)
    assert planner.start("plan 1").total_batches == 3

    first = planner.plan_next_batch("plan 1")
    second = planner.plan_next_batch("plan 1")

    prefix = plan_id_component("plan 1")
    assert prefix.startswith("plan_1_")
    assert [task.task_id for task in first.tasks] == [f"{prefix}-0-{seq}" for seq in (1, 2, 3)]
    assert [task.task_id for task in second.tasks] == [f"{prefix}-1-{seq}" for seq in (1, 2, 3)]
    assert generator.calls == [(0, ["t0", "t1", "t2"]), (1, ["t3", "t4", "t5"])]
    assert memory.progress.get("plan 1").current_batch_index == 2


def test_replanning_an_already_planned_batch_keeps_task_ids(memory: PlanMemory) -> None:
    generator = OneTaskPerTool()
    planner = _planner(memory, generator)
    planner.start("p1")
    planned = planner.plan_next_batch("p1")
    memory.progress.reset_batch_index("p1")

    again = planner.plan_next_batch("p1")

    assert again.already_planned is True
    assert [task.task_id for task in again.tasks] == [task.task_id for task in planned.tasks]
    assert [task.task_id for task in memory.task_plans.get_by_batch("p1", 0)] == [
        task.task_id for task in planned.tasks
    ]
    assert len(generator.calls) == 1
    assert memory.progress.get("p1").current_batch_index == 1


def test_planning_stops_when_plan_is_finished(memory: PlanMemory) -> None:
    planner = _planner(memory, OneTaskPerTool(), tools=2)
    planner.start("p1")
    planner.plan_next_batch("p1")

    result = planner.plan_next_batch("p1")

    assert result.finished is True
    assert result.tasks == []


def test_long_plan_id_gets_valid_task_ids(memory: PlanMemory) -> None:
    plan_id = "thread-" + "a" * 93
    planner = _planner(memory, OneTaskPerTool())
    planner.start(plan_id)

    result = planner.plan_next_batch(plan_id)

    assert len(result.tasks) == 3
    assert all(TASK_ID_PATTERN.match(task.task_id) for task in result.tasks)
    assert memory.task_plans.next_sequence(plan_id, 0) == 4


def test_plan_ids_that_sanitize_alike_do_not_collide(memory: PlanMemory) -> None:
    planner = _planner(memory, OneTaskPerTool())
    planner.start("team/a")
    planner.start("team a")

    first = planner.plan_next_batch("team/a")
    second = planner.plan_next_batch("team a")

    first_ids = {task.task_id for task in first.tasks}
    second_ids = {task.task_id for task in second.tasks}
    assert len(first_ids) == len(second_ids) == 3
    assert first_ids.isdisjoint(second_ids)
    assert {task.plan_id for task in memory.task_plans.get_by_batch("team a", 0)} == {"team a"}


def test_planning_unknown_plan_raises(memory: PlanMemory) -> None:
    with pytest.raises(RuntimeError, match="Plan progress not found"):
        _planner(memory, OneTaskPerTool()).plan_next_batch("missing")


def test_execution_runs_planned_batches_and_completes_plan(memory: PlanMemory) -> None:
    planner = _planner(memory, OneTaskPerTool())
    planner.start("p1")
    planner.plan_next_batch("p1")
    execution = memory.execution()
    executor = ScriptedExecutor()

    while execution.run_next("p1", executor, thread_id="thread-1") is not None:
        pass

    assert executor.executed == ["p1-0-1", "p1-0-2", "p1-0-3"]
    assert memory.cursors.peek("p1").batch_index == 1
    progress = memory.progress.get("p1")
    assert progress.status is PlanStatus.RUNNING
    assert (progress.completed_batches, progress.failed_batches) == (0, 1)

    planner.plan_next_batch("p1")
    planner.plan_next_batch("p1")
    while execution.run_next("p1", executor, thread_id="thread-1") is not None:
        pass

    assert len(executor.executed) == 7
    progress = memory.progress.get("p1")
    assert progress.status is PlanStatus.COMPLETED
    assert (progress.completed_batches, progress.failed_batches) == (2, 1)
    assert progress.overall_success_rate == 66.67

    failed = memory.task_plans.get("p1-0-2")
    assert failed.status is TaskStatus.FAILED
    assert failed.error_message == "boom"
    fanned = memory.task_tests.get_by_task_id("p1-0-3")
    assert [row.test_id for row in fanned] == ["p1-0-3:attempt-1", "p1-0-3:attempt-1:2"]
    assert memory.task_plans.get("p1-0-3").result == {"results": [{"a": 1}, {"a": 2}]}


def test_interrupted_task_is_retried_as_new_attempt(memory: PlanMemory) -> None:
    planner = _planner(memory, OneTaskPerTool(), tools=3)
    planner.start("p1")
    planner.plan_next_batch("p1")
    execution = memory.execution()

    task = execution.next_task("p1")
    first = execution.start_task("p1", task, thread_id="thread-1")
    assert memory.cursors.peek("p1").current_test_id == first.test_id

    resumed = memory.execution().next_task("p1")
    assert resumed.task_id == task.task_id
    second = execution.start_task("p1", resumed, thread_id="thread-1")
    rows = execution.record_outcome("p1", ExecutionOutcome(success=True, output={"ok": 1}))

    assert second.test_id == f"{task.task_id}:attempt-2"
    assert [row.test_id for row in rows] == [second.test_id]
    attempts = memory.task_tests.get_by_task_id(task.task_id)
    assert [(row.test_id, row.status) for row in attempts] == [
        (first.test_id, TaskStatus.RUNNING),
        (second.test_id, TaskStatus.COMPLETED),
    ]
    cursor = memory.cursors.peek("p1")
    assert (cursor.task_index, cursor.current_test_id) == (1, None)


def test_record_outcome_without_bound_test_raises(memory: PlanMemory) -> None:
    planner = _planner(memory, OneTaskPerTool(), tools=3)
    planner.start("p1")
    execution = memory.execution()
    execution.begin("p1")

    with pytest.raises(RuntimeError, match="No in-flight test"):
        execution.record_outcome("p1", ExecutionOutcome(success=True))


def test_first_execution_reset_happens_once(memory: PlanMemory) -> None:
    planner = _planner(memory, OneTaskPerTool(), tools=6)
    planner.start("p1")
    execution = memory.execution()

    first = execution.begin("p1")
    again = execution.begin("p1")
    assert (first.batch_index, first.task_index) == (0, 0)
    assert again == first

    memory.cursors.reset("p1", 1)
    assert execution.begin("p1").batch_index == 1
    assert memory.progress.get("p1").status is PlanStatus.RUNNING


def test_delete_plan_removes_everything(memory: PlanMemory) -> None:
    planner = _planner(memory, OneTaskPerTool(), tools=3)
    planner.start("p1")
    planner.plan_next_batch("p1")
    memory.execution().run_next("p1", ScriptedExecutor(), thread_id="thread-1")

    assert memory.delete_plan("p1") == 3

    assert memory.task_plans.get_by_plan("p1") == []
    assert memory.task_tests.get_by_thread_id("thread-1") == []
    assert memory.progress.get("p1") is None
    assert memory.cursors.exists("p1") is False
