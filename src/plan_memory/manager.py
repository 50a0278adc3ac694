"""Entry point wiring the engine, repositories and coordinators together."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from plan_memory.collaborators import PlanGenerator, ToolCatalog
from plan_memory.config import Settings
from plan_memory.cursor import CURSOR_KEY, ExecutionCursorStore
from plan_memory.memory_store import NamespacedStore
from plan_memory.progress import BatchProgressTracker
from plan_memory.resolver import MemoryStoreHandle, StoreResolver
from plan_memory.services import ExecutionCoordinator, PlanningCoordinator
from plan_memory.storage.alembic_runner import upgrade_head
from plan_memory.storage.common import build_engine, utc_now
from plan_memory.task_plans import TaskPlanRepository
from plan_memory.task_tests import TaskTestRepository

logger = logging.getLogger(__name__)


class PlanMemory:
    """Shared engine plus every repository built on it.

    All repositories share one engine and therefore one connection pool.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        runtime_store: MemoryStoreHandle | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        settings.validate()
        self.settings = settings
        self.engine = build_engine(
            settings.database_url,
            busy_timeout_ms=settings.database.busy_timeout_ms,
            pool_size=settings.database.pool_size,
            pool_timeout_seconds=settings.database.pool_timeout_seconds,
        )
        self.namespace = settings.namespace.to_namespace()
        self.store = NamespacedStore(self.engine, clock=clock)
        self.resolver = StoreResolver(
            self.store,
            runtime_store,
            force_durable=settings.force_durable_store,
        )
        self.task_plans = TaskPlanRepository(self.engine, clock=clock)
        self.task_tests = TaskTestRepository(
            self.engine,
            fanout_field=settings.batching.fanout_field,
            clock=clock,
        )
        self.progress = BatchProgressTracker(self.engine, clock=clock)
        self.cursors = ExecutionCursorStore(self.resolver, self.namespace)

    @classmethod
    def from_env(
        cls,
        db_path: Path | None = None,
        *,
        runtime_store: MemoryStoreHandle | None = None,
    ) -> PlanMemory:
        return cls(Settings.from_env(db_path=db_path), runtime_store=runtime_store)

    def __enter__(self) -> PlanMemory:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.settings.database_url)

    def close(self) -> None:
        """Release pooled connections."""

        self.engine.dispose()

    def planning(self, catalog: ToolCatalog, generator: PlanGenerator) -> PlanningCoordinator:
        return PlanningCoordinator(
            task_plans=self.task_plans,
            progress=self.progress,
            catalog=catalog,
            generator=generator,
            tools_per_batch=self.settings.batching.tools_per_batch,
        )

    def execution(self) -> ExecutionCoordinator:
        return ExecutionCoordinator(
            task_plans=self.task_plans,
            task_tests=self.task_tests,
            progress=self.progress,
            cursors=self.cursors,
        )

    def delete_plan(self, plan_id: str) -> int:
        """Hard-delete a plan: its tasks, their tests, progress and cursor.

        Returns the number of task plans removed.
        """

        for task in self.task_plans.get_by_plan(plan_id):
            self.task_tests.delete_by_task_id(task.task_id)
        removed = self.task_plans.delete_by_plan(plan_id)
        self.progress.delete(plan_id)
        self.resolver.delete(self.namespace.plan_path(plan_id), CURSOR_KEY, shared=True)
        logger.info("Deleted plan %s", plan_id)
        return removed
