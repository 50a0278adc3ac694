"""SQLModel ORM tables for plan memory storage."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    false,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

JsonType = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")

TASK_STATUS_VALUES = ("pending", "running", "completed", "failed")
COMPLEXITY_VALUES = ("low", "medium", "high")
PLAN_STATUS_VALUES = ("planning", "running", "completed", "failed", "paused")


def _in_check(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


class MemoryStoreEntry(SQLModel, table=True):
    __tablename__ = "memory_store"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("namespace_path", "key", name="uq_memory_store_namespace_key"),
        Index("idx_memory_store_expires_at", "expires_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    namespace_path: str = Field(sa_column=Column(Text, nullable=False))
    key: str = Field(sa_column=Column(Text, nullable=False))
    value: Any = Field(sa_column=Column(JsonType, nullable=True))
    item_metadata: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column("metadata", JsonType, nullable=False, server_default=text("'{}'")),
    )
    expires_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskPlanRecord(SQLModel, table=True):
    __tablename__ = "task_plans"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_task_plans_plan_batch", "plan_id", "batch_index"),
        CheckConstraint(_in_check("complexity", COMPLEXITY_VALUES), name="ck_task_plans_complexity"),
        CheckConstraint(_in_check("status", TASK_STATUS_VALUES), name="ck_task_plans_status"),
        CheckConstraint("batch_index >= 0", name="ck_task_plans_batch_index"),
    )

    id: int | None = Field(default=None, primary_key=True)
    plan_id: str = Field(sa_column=Column(String(255), nullable=False, index=True))
    batch_index: int = Field(sa_column=Column(Integer, nullable=False))
    task_id: str = Field(sa_column=Column(String(255), nullable=False, unique=True))
    tool_name: str = Field(sa_column=Column(String(255), nullable=False, index=True))
    description: str | None = Field(default=None, sa_column=Column(Text))
    parameters: Any = Field(default=None, sa_column=Column(JsonType))
    complexity: str = Field(sa_column=Column(String(20), nullable=False))
    is_required_validate_by_database: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=false()),
    )
    status: str = Field(
        default="pending",
        sa_column=Column(String(20), nullable=False, server_default="pending", index=True),
    )
    result: Any = Field(default=None, sa_column=Column(JsonType))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class PlanProgressRecord(SQLModel, table=True):
    __tablename__ = "plan_progress"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_plan_progress_last_updated", "last_updated"),
        CheckConstraint(_in_check("status", PLAN_STATUS_VALUES), name="ck_plan_progress_status"),
        CheckConstraint(
            "current_batch_index >= 0 AND current_batch_index <= total_batches",
            name="ck_plan_progress_batch_bound",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    plan_id: str = Field(sa_column=Column(String(255), nullable=False, unique=True))
    total_batches: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    completed_batches: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    failed_batches: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    current_batch_index: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    overall_success_rate: float = Field(default=0.0, sa_column=Column(Float, nullable=False))
    status: str = Field(
        default="planning",
        sa_column=Column(String(20), nullable=False, server_default="planning", index=True),
    )
    tools_per_batch: int = Field(sa_column=Column(Integer, nullable=False))
    total_tools: int = Field(sa_column=Column(Integer, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_updated: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TaskTestRecord(SQLModel, table=True):
    __tablename__ = "task_test"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_task_test_created_at", "created_at"),
        CheckConstraint(_in_check("status", TASK_STATUS_VALUES), name="ck_task_test_status"),
    )

    id: int | None = Field(default=None, primary_key=True)
    test_id: str = Field(sa_column=Column(String(255), nullable=False, unique=True))
    task_id: str = Field(sa_column=Column(String(255), nullable=False, index=True))
    thread_id: str = Field(sa_column=Column(String(255), nullable=False, index=True))
    tool_name: str = Field(sa_column=Column(String(255), nullable=False, index=True))
    test_data: Any = Field(sa_column=Column(JsonType, nullable=False))
    test_result: Any = Field(default=None, sa_column=Column(JsonType))
    evaluation_result: Any = Field(default=None, sa_column=Column(JsonType))
    status: str = Field(
        default="pending",
        sa_column=Column(String(20), nullable=False, server_default="pending", index=True),
    )
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    execution_time_ms: int | None = Field(default=None, sa_column=Column(Integer))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
