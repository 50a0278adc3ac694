"""Per-plan batch progress: batch counts, the current batch and outcome counters."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlalchemy import case
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from plan_memory.errors import ConstraintViolationError, translate_store_errors
from plan_memory.models import (
    PLAN_STATUS_TRANSITIONS,
    PlanProgressView,
    PlanStatus,
    success_rate,
)
from plan_memory.storage.common import (
    optional_utc_aware,
    to_db_datetime,
    to_utc_aware,
    upsert_statement,
    utc_now,
)
from plan_memory.storage.sqlmodel_models import PlanProgressRecord

logger = logging.getLogger(__name__)

_TABLE = PlanProgressRecord.__table__  # type: ignore[attr-defined]


def total_batches_for(tools_per_batch: int, total_tools: int) -> int:
    """``ceil(total_tools / tools_per_batch)``."""

    return -(-total_tools // tools_per_batch)


class BatchProgressTracker:
    """One progress row per plan.

    ``current_batch_index`` only ever moves forward through ``advance``
    (clamped to ``total_batches``) or back to zero through
    ``reset_batch_index``. Counters are bumped with single-statement updates.
    """

    def __init__(self, engine: Engine, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.engine = engine
        self._clock = clock

    def initialize(self, plan_id: str, tools_per_batch: int, total_tools: int) -> PlanProgressView:
        """Create the progress row, or refresh its totals if the tool set changed.

        An existing plan keeps its current batch index, clamped to the new
        total when the plan shrank.
        """

        if not plan_id:
            raise ConstraintViolationError("plan_id must not be empty")
        if tools_per_batch <= 0:
            raise ConstraintViolationError(f"tools_per_batch must be > 0, got {tools_per_batch}")
        if total_tools < 0:
            raise ConstraintViolationError(f"total_tools must be >= 0, got {total_tools}")

        total_batches = total_batches_for(tools_per_batch, total_tools)
        now = to_db_datetime(self._clock())
        with translate_store_errors("plan_progress.initialize"), Session(self.engine) as session:
            statement = upsert_statement(session.get_bind().dialect.name, _TABLE).values(
                plan_id=plan_id,
                total_batches=total_batches,
                completed_batches=0,
                failed_batches=0,
                current_batch_index=0,
                overall_success_rate=0.0,
                status=PlanStatus.PLANNING.value,
                tools_per_batch=tools_per_batch,
                total_tools=total_tools,
                created_at=now,
                last_updated=now,
            )
            inserted = session.exec(statement.on_conflict_do_nothing(index_elements=["plan_id"]))
            if inserted.rowcount == 1:
                logger.info(
                    "Initialized plan %s: %d tool(s) in %d batch(es) of %d",
                    plan_id,
                    total_tools,
                    total_batches,
                    tools_per_batch,
                )
            else:
                refreshed = session.exec(
                    sa_update(PlanProgressRecord)
                    .where(
                        col(PlanProgressRecord.plan_id) == plan_id,
                        (col(PlanProgressRecord.tools_per_batch) != tools_per_batch)
                        | (col(PlanProgressRecord.total_tools) != total_tools),
                    )
                    .values(
                        total_batches=total_batches,
                        tools_per_batch=tools_per_batch,
                        total_tools=total_tools,
                        current_batch_index=case(
                            (
                                col(PlanProgressRecord.current_batch_index) > total_batches,
                                total_batches,
                            ),
                            else_=col(PlanProgressRecord.current_batch_index),
                        ),
                        last_updated=now,
                    ),
                )
                if refreshed.rowcount:
                    logger.info(
                        "Plan %s re-initialized with %d tool(s) in %d batch(es)",
                        plan_id,
                        total_tools,
                        total_batches,
                    )
            session.commit()
            row = _load(session, plan_id)
            if row is None:
                raise RuntimeError(f"Plan progress not found: {plan_id}")
            return _to_view(row)

    def get(self, plan_id: str) -> PlanProgressView | None:
        with translate_store_errors("plan_progress.get"), Session(self.engine) as session:
            row = _load(session, plan_id)
        return _to_view(row) if row is not None else None

    def list_all(self, status: PlanStatus | str | None = None) -> list[PlanProgressView]:
        """All plans, most recently updated first."""

        statement = select(PlanProgressRecord).order_by(
            col(PlanProgressRecord.last_updated).desc(),
            col(PlanProgressRecord.id).desc(),
        )
        if status is not None:
            statement = statement.where(PlanProgressRecord.status == PlanStatus(status).value)
        with translate_store_errors("plan_progress.list_all"), Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_view(row) for row in rows]

    def advance(self, plan_id: str) -> PlanProgressView | None:
        """Move to the next batch, never past ``total_batches``."""

        index = col(PlanProgressRecord.current_batch_index)
        with translate_store_errors("plan_progress.advance"), Session(self.engine) as session:
            result = session.exec(
                sa_update(PlanProgressRecord)
                .where(col(PlanProgressRecord.plan_id) == plan_id)
                .values(
                    current_batch_index=case(
                        (index < col(PlanProgressRecord.total_batches), index + 1),
                        else_=index,
                    ),
                    last_updated=to_db_datetime(self._clock()),
                ),
            )
            session.commit()
            if result.rowcount != 1:
                return None
            row = _load(session, plan_id)
            if row is None:
                raise RuntimeError(f"Plan progress not found: {plan_id}")
            view = _to_view(row)
        logger.info(
            "Plan %s at batch %d of %d",
            plan_id,
            view.current_batch_index,
            view.total_batches,
        )
        return view

    def increment_completed(self, plan_id: str) -> bool:
        return self._bump(plan_id, "completed_batches")

    def increment_failed(self, plan_id: str) -> bool:
        return self._bump(plan_id, "failed_batches")

    def recompute_success_rate(self, plan_id: str) -> float | None:
        """Recompute and persist the success rate; ``None`` for an unknown plan."""

        with translate_store_errors("plan_progress.recompute"), Session(self.engine) as session:
            row = _load(session, plan_id)
            if row is None:
                return None
            rate = success_rate(row.completed_batches, row.failed_batches)
            session.exec(
                sa_update(PlanProgressRecord)
                .where(col(PlanProgressRecord.plan_id) == plan_id)
                .values(
                    overall_success_rate=rate,
                    last_updated=to_db_datetime(self._clock()),
                ),
            )
            session.commit()
        return rate

    def set_status(self, plan_id: str, status: PlanStatus | str) -> PlanProgressView | None:
        """Apply a state machine transition; ``None`` for an unknown plan."""

        try:
            target = PlanStatus(status)
        except ValueError as error:
            raise ConstraintViolationError(f"Invalid plan status: {status!r}") from error

        now = to_db_datetime(self._clock())
        with translate_store_errors("plan_progress.set_status"), Session(self.engine) as session:
            row = _load(session, plan_id)
            if row is None:
                return None
            current = PlanStatus(row.status)
            if current is target:
                return _to_view(row)
            if target not in PLAN_STATUS_TRANSITIONS[current]:
                raise ConstraintViolationError(
                    f"Plan {plan_id} cannot move from {current.value} to {target.value}",
                )
            values: dict[str, Any] = {"status": target.value, "last_updated": now}
            if target is PlanStatus.RUNNING and row.started_at is None:
                values["started_at"] = now
            if target in {PlanStatus.COMPLETED, PlanStatus.FAILED}:
                values["completed_at"] = now
            result = session.exec(
                sa_update(PlanProgressRecord)
                .where(
                    col(PlanProgressRecord.plan_id) == plan_id,
                    col(PlanProgressRecord.status) == current.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                session.refresh(row)
                if row.status == target.value:
                    return _to_view(row)
                raise ConstraintViolationError(
                    f"Plan {plan_id} changed status concurrently, expected {current.value}",
                )
            session.commit()
            session.refresh(row)
            view = _to_view(row)
        logger.info("Plan %s status %s -> %s", plan_id, current.value, target.value)
        return view

    def reset_batch_index(self, plan_id: str) -> bool:
        """Point the plan back at its first batch."""

        with translate_store_errors("plan_progress.reset_batch_index"), Session(self.engine) as session:
            result = session.exec(
                sa_update(PlanProgressRecord)
                .where(col(PlanProgressRecord.plan_id) == plan_id)
                .values(current_batch_index=0, last_updated=to_db_datetime(self._clock())),
            )
            session.commit()
        if result.rowcount == 1:
            logger.info("Plan %s batch index reset to 0", plan_id)
            return True
        return False

    def delete(self, plan_id: str) -> bool:
        with translate_store_errors("plan_progress.delete"), Session(self.engine) as session:
            result = session.exec(
                sa_delete(PlanProgressRecord).where(col(PlanProgressRecord.plan_id) == plan_id),
            )
            session.commit()
        return result.rowcount > 0

    def _bump(self, plan_id: str, column_name: str) -> bool:
        column = _TABLE.c[column_name]
        with translate_store_errors(f"plan_progress.{column_name}"), Session(self.engine) as session:
            result = session.exec(
                sa_update(PlanProgressRecord)
                .where(col(PlanProgressRecord.plan_id) == plan_id)
                .values({column_name: column + 1, "last_updated": to_db_datetime(self._clock())}),
            )
            session.commit()
        return result.rowcount == 1


def _load(session: Session, plan_id: str) -> PlanProgressRecord | None:
    return session.exec(
        select(PlanProgressRecord).where(PlanProgressRecord.plan_id == plan_id),
    ).one_or_none()


def _to_view(row: PlanProgressRecord) -> PlanProgressView:
    return PlanProgressView(
        plan_id=row.plan_id,
        total_batches=row.total_batches,
        completed_batches=row.completed_batches,
        failed_batches=row.failed_batches,
        current_batch_index=row.current_batch_index,
        overall_success_rate=float(row.overall_success_rate),
        status=PlanStatus(row.status),
        tools_per_batch=row.tools_per_batch,
        total_tools=row.total_tools,
        created_at=to_utc_aware(row.created_at),
        last_updated=to_utc_aware(row.last_updated),
        started_at=optional_utc_aware(row.started_at),
        completed_at=optional_utc_aware(row.completed_at),
    )
