"""Create memory store, task plan, plan progress and task test tables."""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

revision = "20261016_0001"
down_revision = None
branch_labels = None
depends_on = None

_JSON = sa.JSON(none_as_null=True).with_variant(postgresql.JSONB(none_as_null=True), "postgresql")


def upgrade() -> None:
    op.create_table(
        "memory_store",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("namespace_path", sa.Text(), nullable=False),
        sa.Column("key", sa.Text(), nullable=False),
        sa.Column("value", _JSON, nullable=True),
        sa.Column("metadata", _JSON, nullable=False, server_default=sa.text("'{}'")),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("namespace_path", "key", name="uq_memory_store_namespace_key"),
    )
    op.create_index("idx_memory_store_expires_at", "memory_store", ["expires_at"], unique=False)

    op.create_table(
        "task_plans",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("plan_id", sa.String(length=255), nullable=False),
        sa.Column("batch_index", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(length=255), nullable=False),
        sa.Column("tool_name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("parameters", _JSON, nullable=True),
        sa.Column("complexity", sa.String(length=20), nullable=False),
        sa.Column(
            "is_required_validate_by_database",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("result", _JSON, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("task_id", name="uq_task_plans_task_id"),
        sa.CheckConstraint(
            "complexity IN ('low', 'medium', 'high')",
            name="ck_task_plans_complexity",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed')",
            name="ck_task_plans_status",
        ),
        sa.CheckConstraint("batch_index >= 0", name="ck_task_plans_batch_index"),
    )
    op.create_index("ix_task_plans_plan_id", "task_plans", ["plan_id"], unique=False)
    op.create_index(
        "idx_task_plans_plan_batch",
        "task_plans",
        ["plan_id", "batch_index"],
        unique=False,
    )
    op.create_index("ix_task_plans_tool_name", "task_plans", ["tool_name"], unique=False)
    op.create_index("ix_task_plans_status", "task_plans", ["status"], unique=False)

    op.create_table(
        "plan_progress",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("plan_id", sa.String(length=255), nullable=False),
        sa.Column("total_batches", sa.Integer(), nullable=False),
        sa.Column("completed_batches", sa.Integer(), nullable=False),
        sa.Column("failed_batches", sa.Integer(), nullable=False),
        sa.Column("current_batch_index", sa.Integer(), nullable=False),
        sa.Column("overall_success_rate", sa.Float(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="planning"),
        sa.Column("tools_per_batch", sa.Integer(), nullable=False),
        sa.Column("total_tools", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("plan_id", name="uq_plan_progress_plan_id"),
        sa.CheckConstraint(
            "status IN ('planning', 'running', 'completed', 'failed', 'paused')",
            name="ck_plan_progress_status",
        ),
        sa.CheckConstraint(
            "current_batch_index >= 0 AND current_batch_index <= total_batches",
            name="ck_plan_progress_batch_bound",
        ),
    )
    op.create_index("ix_plan_progress_status", "plan_progress", ["status"], unique=False)
    op.create_index(
        "idx_plan_progress_last_updated",
        "plan_progress",
        ["last_updated"],
        unique=False,
    )

    op.create_table(
        "task_test",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("test_id", sa.String(length=255), nullable=False),
        sa.Column("task_id", sa.String(length=255), nullable=False),
        sa.Column("thread_id", sa.String(length=255), nullable=False),
        sa.Column("tool_name", sa.String(length=255), nullable=False),
        sa.Column("test_data", _JSON, nullable=False),
        sa.Column("test_result", _JSON, nullable=True),
        sa.Column("evaluation_result", _JSON, nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("execution_time_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("test_id", name="uq_task_test_test_id"),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed')",
            name="ck_task_test_status",
        ),
    )
    op.create_index("ix_task_test_task_id", "task_test", ["task_id"], unique=False)
    op.create_index("ix_task_test_thread_id", "task_test", ["thread_id"], unique=False)
    op.create_index("ix_task_test_tool_name", "task_test", ["tool_name"], unique=False)
    op.create_index("ix_task_test_status", "task_test", ["status"], unique=False)
    op.create_index("idx_task_test_created_at", "task_test", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_task_test_created_at", table_name="task_test")
    op.drop_index("ix_task_test_status", table_name="task_test")
    op.drop_index("ix_task_test_tool_name", table_name="task_test")
    op.drop_index("ix_task_test_thread_id", table_name="task_test")
    op.drop_index("ix_task_test_task_id", table_name="task_test")
    op.drop_table("task_test")
    op.drop_index("idx_plan_progress_last_updated", table_name="plan_progress")
    op.drop_index("ix_plan_progress_status", table_name="plan_progress")
    op.drop_table("plan_progress")
    op.drop_index("ix_task_plans_status", table_name="task_plans")
    op.drop_index("ix_task_plans_tool_name", table_name="task_plans")
    op.drop_index("idx_task_plans_plan_batch", table_name="task_plans")
    op.drop_index("ix_task_plans_plan_id", table_name="task_plans")
    op.drop_table("task_plans")
    op.drop_index("idx_memory_store_expires_at", table_name="memory_store")
    op.drop_table("memory_store")
