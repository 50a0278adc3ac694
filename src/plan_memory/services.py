"""Planning and execution use cases built on the repositories."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from plan_memory.collaborators import (
    ExecutionOutcome,
    PlanGenerator,
    TaskExecutor,
    ToolCatalog,
)
from plan_memory.cursor import ExecutionCursorStore
from plan_memory.models import (
    ExecutionCursor,
    PlanProgressView,
    PlanStatus,
    TaskPlanView,
    TaskPlanWrite,
    TaskStatus,
    TaskTestView,
    TaskTestWrite,
    make_task_id,
    make_test_id,
)
from plan_memory.progress import BatchProgressTracker
from plan_memory.task_plans import TaskPlanRepository
from plan_memory.task_tests import TaskTestRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PlanningResult:
    """What one planning step did."""

    plan_id: str
    batch_index: int
    tasks: list[TaskPlanView] = field(default_factory=list)
    already_planned: bool = False
    finished: bool = False


class PlanningCoordinator:
    """Plans one batch per call and moves the plan's batch index forward."""

    def __init__(
        self,
        *,
        task_plans: TaskPlanRepository,
        progress: BatchProgressTracker,
        catalog: ToolCatalog,
        generator: PlanGenerator,
        tools_per_batch: int = 5,
    ) -> None:
        self.task_plans = task_plans
        self.progress = progress
        self.catalog = catalog
        self.generator = generator
        self.tools_per_batch = tools_per_batch

    def start(self, plan_id: str) -> PlanProgressView:
        """Create or refresh the plan's progress row from the current catalog."""

        tools = list(self.catalog.list_tools())
        return self.progress.initialize(plan_id, self.tools_per_batch, len(tools))

    def plan_next_batch(
        self,
        plan_id: str,
        *,
        prior_results: Sequence[Any] = (),
    ) -> PlanningResult:
        """Plan the current batch, or just advance past it if it is already planned."""

        state = self.progress.get(plan_id)
        if state is None:
            raise RuntimeError(f"Plan progress not found: {plan_id}")
        batch_index = state.current_batch_index
        if state.is_finished:
            return PlanningResult(plan_id=plan_id, batch_index=batch_index, finished=True)

        if self.task_plans.has_batch(plan_id, batch_index):
            logger.warning(
                "Batch %d of plan %s is already planned, advancing without re-planning",
                batch_index,
                plan_id,
            )
            existing = self.task_plans.get_by_batch(plan_id, batch_index)
            self.progress.advance(plan_id)
            return PlanningResult(
                plan_id=plan_id,
                batch_index=batch_index,
                tasks=existing,
                already_planned=True,
            )

        tools = list(self.catalog.list_tools())[state.tool_slice()]
        candidates = self.generator.generate(
            plan_id=plan_id,
            batch_index=batch_index,
            tools=tools,
            prior_results=prior_results,
        )
        writes = [
            TaskPlanWrite(
                batch_index=batch_index,
                task_id=make_task_id(plan_id, batch_index, seq),
                tool_name=candidate.tool_name,
                description=candidate.description,
                parameters=candidate.parameters,
                complexity=candidate.complexity,
                requires_validation=candidate.requires_validation,
            )
            for seq, candidate in enumerate(candidates, start=1)
        ]
        if not writes:
            logger.warning("Generator proposed no tasks for batch %d of plan %s", batch_index, plan_id)
        saved = self.task_plans.save_batch(plan_id, writes)
        self.progress.advance(plan_id)
        logger.info("Planned %d task(s) for batch %d of plan %s", len(saved), batch_index, plan_id)
        return PlanningResult(plan_id=plan_id, batch_index=batch_index, tasks=saved)


class ExecutionCoordinator:
    """Runs planned tasks one at a time, resumable from the execution cursor.

    The cursor's batch trails the plan's batch index: a batch can only be
    executed once it has been planned. A task counts as done only after its
    result is stored, so a crash mid-task re-runs it as a new attempt.
    """

    def __init__(
        self,
        *,
        task_plans: TaskPlanRepository,
        task_tests: TaskTestRepository,
        progress: BatchProgressTracker,
        cursors: ExecutionCursorStore,
    ) -> None:
        self.task_plans = task_plans
        self.task_tests = task_tests
        self.progress = progress
        self.cursors = cursors

    def begin(self, plan_id: str) -> ExecutionCursor:
        """Start execution at batch 0 the first time a plan is executed.

        Runs only while no cursor exists, and writing the same zeroed cursor
        twice is harmless, so concurrent first calls are safe.
        """

        state = self._require_progress(plan_id)
        cursor = self.cursors.peek(plan_id)
        if cursor is None:
            logger.info("First execution of plan %s, starting at batch 0", plan_id)
            cursor = self.cursors.reset(plan_id, 0)
        if state.status is PlanStatus.PLANNING:
            self.progress.set_status(plan_id, PlanStatus.RUNNING)
        return cursor

    def next_task(self, plan_id: str) -> TaskPlanView | None:
        """Task under the cursor, closing finished batches on the way.

        Returns ``None`` when the plan is finished or the next batch has not
        been planned yet.
        """

        cursor = self.begin(plan_id)
        while True:
            state = self._require_progress(plan_id)
            cursor = self.cursors.load(plan_id, min(cursor.batch_index, state.total_batches))
            if cursor.batch_index >= state.total_batches:
                self._complete_plan(state)
                return None
            if cursor.batch_index >= state.current_batch_index:
                logger.debug("Batch %d of plan %s is not planned yet", cursor.batch_index, plan_id)
                return None
            tasks = self.task_plans.get_by_batch(plan_id, cursor.batch_index)
            if cursor.task_index < len(tasks):
                return tasks[cursor.task_index]
            cursor = self._finish_batch(state, cursor.batch_index)

    def start_task(self, plan_id: str, task: TaskPlanView, *, thread_id: str) -> TaskTestView:
        """Mark ``task`` running, open a new attempt row and bind it to the cursor."""

        test_id = make_test_id(task.task_id, self._next_attempt(task.task_id))
        self.task_plans.update_status(task.task_id, TaskStatus.RUNNING)
        test = self.task_tests.save(
            TaskTestWrite(
                test_id=test_id,
                task_id=task.task_id,
                thread_id=thread_id,
                tool_name=task.tool_name,
                test_data=task.parameters,
                status=TaskStatus.RUNNING,
            ),
        )
        self.cursors.bind_test_id(plan_id, test_id)
        return test

    def record_outcome(self, plan_id: str, outcome: ExecutionOutcome) -> list[TaskTestView]:
        """Persist the result of the bound attempt, then move the cursor on."""

        cursor = self.cursors.peek(plan_id)
        if cursor is None or cursor.current_test_id is None:
            raise RuntimeError(f"No in-flight test bound to plan {plan_id}")
        test = self.task_tests.get(cursor.current_test_id)
        if test is None:
            raise RuntimeError(f"Task test not found: {cursor.current_test_id}")

        status = TaskStatus.COMPLETED if outcome.success else TaskStatus.FAILED
        rows = self.task_tests.record_result(
            test.test_id,
            status,
            outcome.output,
            error_message=outcome.error,
            execution_time_ms=outcome.execution_time_ms,
            evaluation_result=outcome.evaluation,
        )
        self.task_plans.update_status(
            test.task_id,
            status,
            result=outcome.output,
            error_message=outcome.error,
        )
        self.cursors.advance(plan_id)
        return rows

    def run_next(
        self,
        plan_id: str,
        executor: TaskExecutor,
        *,
        thread_id: str,
    ) -> list[TaskTestView] | None:
        """Execute the next task end to end; ``None`` when nothing is runnable."""

        task = self.next_task(plan_id)
        if task is None:
            return None
        self.start_task(plan_id, task, thread_id=thread_id)
        outcome = executor.execute(task, thread_id=thread_id)
        return self.record_outcome(plan_id, outcome)

    def _finish_batch(self, state: PlanProgressView, batch_index: int) -> ExecutionCursor:
        stats = self.task_plans.batch_stats(state.plan_id, batch_index)
        if stats.failed:
            self.progress.increment_failed(state.plan_id)
        else:
            self.progress.increment_completed(state.plan_id)
        rate = self.progress.recompute_success_rate(state.plan_id)
        logger.info(
            "Batch %d of plan %s executed: %d completed, %d failed, plan success rate %s",
            batch_index,
            state.plan_id,
            stats.completed,
            stats.failed,
            rate,
        )
        return self.cursors.reset(state.plan_id, batch_index + 1)

    def _complete_plan(self, state: PlanProgressView) -> None:
        if state.status is PlanStatus.RUNNING:
            self.progress.set_status(state.plan_id, PlanStatus.COMPLETED)

    def _next_attempt(self, task_id: str) -> int:
        prefix = make_test_id(task_id, 0).removesuffix("0")
        attempts = [
            int(test.test_id[len(prefix) :])
            for test in self.task_tests.get_by_task_id(task_id)
            if test.test_id.startswith(prefix) and test.test_id[len(prefix) :].isdigit()
        ]
        return max(attempts, default=0) + 1

    def _require_progress(self, plan_id: str) -> PlanProgressView:
        state = self.progress.get(plan_id)
        if state is None:
            raise RuntimeError(f"Plan progress not found: {plan_id}")
        return state
