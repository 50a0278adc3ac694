"""Task plan persistence: planned tasks grouped by plan and batch."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import and_, func
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from plan_memory.errors import ConstraintViolationError, translate_store_errors
from plan_memory.models import (
    TASK_ID_PATTERN,
    BatchStats,
    Complexity,
    Payload,
    TaskPlanView,
    TaskPlanWrite,
    TaskStats,
    TaskStatus,
    plan_id_component,
    success_rate,
)
from plan_memory.storage.common import (
    optional_utc_aware,
    to_db_datetime,
    to_utc_aware,
    upsert_statement,
    utc_now,
)
from plan_memory.storage.sqlmodel_models import TaskPlanRecord

logger = logging.getLogger(__name__)

_TABLE = TaskPlanRecord.__table__  # type: ignore[attr-defined]


class TaskPlanRepository:
    """CRUD over planned tasks.

    ``task_id`` is the global upsert key. Re-saving a task refreshes its
    description fields but never its ``status``; the batch a task belongs to
    is fixed once written.
    """

    def __init__(self, engine: Engine, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.engine = engine
        self._clock = clock

    def save(self, plan_id: str, task: TaskPlanWrite) -> TaskPlanView:
        """Upsert one task and return the stored row."""

        return self.save_batch(plan_id, [task])[0]

    def save_batch(self, plan_id: str, tasks: Sequence[TaskPlanWrite]) -> list[TaskPlanView]:
        """Upsert all tasks in one transaction; any failure leaves nothing written."""

        if not tasks:
            return []
        rows = [_validated_values(plan_id, task) for task in tasks]
        seen: set[str] = set()
        for row in rows:
            if row["task_id"] in seen:
                raise ConstraintViolationError(
                    f"Duplicate task_id in batch for plan {plan_id}: {row['task_id']}",
                )
            seen.add(row["task_id"])

        now = to_db_datetime(self._clock())
        with translate_store_errors("task_plans.save_batch"), Session(self.engine) as session:
            try:
                for row in rows:
                    result = session.exec(_upsert(session, {**row, "created_at": now, "updated_at": now}))
                    if result.rowcount != 1:
                        raise ConstraintViolationError(_conflict_message(session, plan_id, row))
                session.commit()
            except Exception:
                session.rollback()
                raise
            stored = session.exec(
                select(TaskPlanRecord).where(col(TaskPlanRecord.task_id).in_(list(seen))),
            ).all()

        by_task_id = {row.task_id: row for row in stored}
        logger.debug("Saved %d task plan(s) for plan %s", len(rows), plan_id)
        return [_to_view(by_task_id[row["task_id"]]) for row in rows]

    def get(self, task_id: str) -> TaskPlanView | None:
        with translate_store_errors("task_plans.get"), Session(self.engine) as session:
            row = session.exec(
                select(TaskPlanRecord).where(TaskPlanRecord.task_id == task_id),
            ).one_or_none()
        return _to_view(row) if row is not None else None

    def get_by_batch(self, plan_id: str, batch_index: int) -> list[TaskPlanView]:
        """Tasks of one batch in creation order."""

        with translate_store_errors("task_plans.get_by_batch"), Session(self.engine) as session:
            rows = session.exec(
                select(TaskPlanRecord)
                .where(
                    TaskPlanRecord.plan_id == plan_id,
                    TaskPlanRecord.batch_index == batch_index,
                )
                .order_by(col(TaskPlanRecord.created_at).asc(), col(TaskPlanRecord.id).asc()),
            ).all()
        return [_to_view(row) for row in rows]

    def get_by_plan(self, plan_id: str) -> list[TaskPlanView]:
        with translate_store_errors("task_plans.get_by_plan"), Session(self.engine) as session:
            rows = session.exec(
                select(TaskPlanRecord)
                .where(TaskPlanRecord.plan_id == plan_id)
                .order_by(
                    col(TaskPlanRecord.batch_index).asc(),
                    col(TaskPlanRecord.created_at).asc(),
                    col(TaskPlanRecord.id).asc(),
                ),
            ).all()
        return [_to_view(row) for row in rows]

    def has_batch(self, plan_id: str, batch_index: int) -> bool:
        """Whether any task was already planned for this batch."""

        with translate_store_errors("task_plans.has_batch"), Session(self.engine) as session:
            found = session.exec(
                select(TaskPlanRecord.id)
                .where(
                    TaskPlanRecord.plan_id == plan_id,
                    TaskPlanRecord.batch_index == batch_index,
                )
                .limit(1),
            ).first()
        return found is not None

    def next_sequence(self, plan_id: str, batch_index: int) -> int:
        """Next free sequence number for generated task ids of a batch.

        For callers appending tasks to a batch that already has rows, such as
        an operator adding a task to a planned batch through ``save``. A fresh
        batch always starts at 1.
        """

        prefix = f"{plan_id_component(plan_id)}-{batch_index}-"
        with translate_store_errors("task_plans.next_sequence"), Session(self.engine) as session:
            task_ids = session.exec(
                select(TaskPlanRecord.task_id).where(
                    TaskPlanRecord.plan_id == plan_id,
                    TaskPlanRecord.batch_index == batch_index,
                ),
            ).all()
        highest = 0
        for task_id in task_ids:
            suffix = task_id[len(prefix) :] if task_id.startswith(prefix) else ""
            if suffix.isdigit():
                highest = max(highest, int(suffix))
        return highest + 1

    def update_status(
        self,
        task_id: str,
        status: TaskStatus | str,
        *,
        result: Any = None,
        error_message: str | None = None,
    ) -> bool:
        """Move a task to ``status``; returns ``False`` when the task does not exist."""

        status = _coerce_status(status)
        now = to_db_datetime(self._clock())
        values: dict[str, Any] = {"status": status.value, "updated_at": now}
        if status is TaskStatus.RUNNING:
            values["started_at"] = now
        elif status.is_terminal:
            values["completed_at"] = now
        if result is not None:
            values["result"] = result
        if error_message is not None:
            values["error_message"] = error_message

        with translate_store_errors("task_plans.update_status"), Session(self.engine) as session:
            outcome = session.exec(
                sa_update(TaskPlanRecord)
                .where(col(TaskPlanRecord.task_id) == task_id)
                .values(**values),
            )
            session.commit()
        if outcome.rowcount != 1:
            logger.debug("Task plan %s not found for status %s", task_id, status.value)
            return False
        return True

    def delete(self, task_id: str) -> bool:
        with translate_store_errors("task_plans.delete"), Session(self.engine) as session:
            result = session.exec(
                sa_delete(TaskPlanRecord).where(col(TaskPlanRecord.task_id) == task_id),
            )
            session.commit()
        return result.rowcount > 0

    def delete_by_plan(self, plan_id: str) -> int:
        """Hard-delete every task of a plan."""

        with translate_store_errors("task_plans.delete_by_plan"), Session(self.engine) as session:
            result = session.exec(
                sa_delete(TaskPlanRecord).where(col(TaskPlanRecord.plan_id) == plan_id),
            )
            session.commit()
        logger.info("Deleted %d task plan(s) of plan %s", result.rowcount, plan_id)
        return result.rowcount

    def stats(self, plan_id: str) -> TaskStats:
        with translate_store_errors("task_plans.stats"), Session(self.engine) as session:
            by_status = session.exec(
                select(TaskPlanRecord.status, func.count())
                .where(TaskPlanRecord.plan_id == plan_id)
                .group_by(TaskPlanRecord.status),
            ).all()
            by_complexity = session.exec(
                select(TaskPlanRecord.complexity, func.count())
                .where(TaskPlanRecord.plan_id == plan_id)
                .group_by(TaskPlanRecord.complexity),
            ).all()

        stats = TaskStats(by_complexity={str(name): int(count) for name, count in by_complexity})
        for status_value, count in by_status:
            setattr(stats, str(status_value), int(count))
            stats.total += int(count)
        return stats

    def batch_stats(self, plan_id: str, batch_index: int) -> BatchStats:
        with translate_store_errors("task_plans.batch_stats"), Session(self.engine) as session:
            counts = session.exec(
                select(TaskPlanRecord.status, func.count())
                .where(
                    TaskPlanRecord.plan_id == plan_id,
                    TaskPlanRecord.batch_index == batch_index,
                )
                .group_by(TaskPlanRecord.status),
            ).all()

        by_status = {str(status_value): int(count) for status_value, count in counts}
        completed = by_status.get(TaskStatus.COMPLETED.value, 0)
        failed = by_status.get(TaskStatus.FAILED.value, 0)
        return BatchStats(
            total=sum(by_status.values()),
            completed=completed,
            failed=failed,
            success_rate=success_rate(completed, failed),
        )


def _validated_values(plan_id: str, task: TaskPlanWrite) -> dict[str, Any]:
    if not plan_id:
        raise ConstraintViolationError("plan_id must not be empty")
    if not TASK_ID_PATTERN.match(task.task_id or ""):
        raise ConstraintViolationError(f"Invalid task_id: {task.task_id!r}")
    if task.batch_index < 0:
        raise ConstraintViolationError(
            f"batch_index must be >= 0 for task {task.task_id}, got {task.batch_index}",
        )
    if not task.tool_name:
        raise ConstraintViolationError(f"tool_name must not be empty for task {task.task_id}")
    try:
        complexity = Complexity(task.complexity)
    except ValueError as error:
        raise ConstraintViolationError(
            f"Invalid complexity for task {task.task_id}: {task.complexity!r}",
        ) from error
    return {
        "plan_id": plan_id,
        "batch_index": task.batch_index,
        "task_id": task.task_id,
        "tool_name": task.tool_name,
        "description": task.description,
        "parameters": Payload.normalize(task.parameters).to_stored(),
        "complexity": complexity.value,
        "is_required_validate_by_database": bool(task.requires_validation),
        "status": TaskStatus.PENDING.value,
    }


def _upsert(session: Session, values: dict[str, Any]):
    statement = upsert_statement(session.get_bind().dialect.name, _TABLE).values(values)
    return statement.on_conflict_do_update(
        index_elements=["task_id"],
        set_={
            "tool_name": statement.excluded["tool_name"],
            "description": statement.excluded["description"],
            "parameters": statement.excluded["parameters"],
            "complexity": statement.excluded["complexity"],
            "is_required_validate_by_database": statement.excluded["is_required_validate_by_database"],
            "updated_at": statement.excluded["updated_at"],
        },
        where=and_(
            _TABLE.c.plan_id == statement.excluded["plan_id"],
            _TABLE.c.batch_index == statement.excluded["batch_index"],
        ),
    )


def _conflict_message(session: Session, plan_id: str, values: dict[str, Any]) -> str:
    existing = session.exec(
        select(TaskPlanRecord).where(TaskPlanRecord.task_id == values["task_id"]),
    ).one_or_none()
    if existing is None:
        return f"task_id {values['task_id']} could not be written"
    if existing.plan_id != plan_id:
        return f"task_id {values['task_id']} already belongs to plan {existing.plan_id}"
    return (
        f"task_id {values['task_id']} is planned for batch {existing.batch_index}, "
        f"cannot move it to batch {values['batch_index']}"
    )


def _coerce_status(status: TaskStatus | str) -> TaskStatus:
    try:
        return TaskStatus(status)
    except ValueError as error:
        raise ConstraintViolationError(f"Invalid task status: {status!r}") from error


def _to_view(row: TaskPlanRecord) -> TaskPlanView:
    return TaskPlanView(
        plan_id=row.plan_id,
        batch_index=row.batch_index,
        task_id=row.task_id,
        tool_name=row.tool_name,
        description=row.description or "",
        parameters=Payload.from_stored(row.parameters),
        complexity=Complexity(row.complexity),
        requires_validation=bool(row.is_required_validate_by_database),
        status=TaskStatus(row.status),
        result=row.result,
        error_message=row.error_message,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        started_at=optional_utc_aware(row.started_at),
        completed_at=optional_utc_aware(row.completed_at),
    )
