"""Domain models for plan memory: tasks, tests, progress and cursors."""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.:-]{1,64}$")
_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9_.:-]")
# Leaves 24 characters of the 64 for "-<batch>-<seq>".
_PLAN_ID_COMPONENT_MAX = 40
_PLAN_ID_DIGEST_LENGTH = 10


class TaskStatus(str, Enum):
    """Lifecycle shared by task plans and task tests."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskStatus.COMPLETED, TaskStatus.FAILED}


class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PlanStatus(str, Enum):
    """Batch progress state machine."""

    PLANNING = "planning"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


PLAN_STATUS_TRANSITIONS: dict[PlanStatus, frozenset[PlanStatus]] = {
    PlanStatus.PLANNING: frozenset({PlanStatus.RUNNING}),
    PlanStatus.RUNNING: frozenset({PlanStatus.COMPLETED, PlanStatus.FAILED, PlanStatus.PAUSED}),
    PlanStatus.PAUSED: frozenset({PlanStatus.RUNNING}),
    PlanStatus.COMPLETED: frozenset(),
    PlanStatus.FAILED: frozenset(),
}


class PayloadKind(str, Enum):
    STRUCTURED = "structured"
    OPAQUE = "opaque"


@dataclass(slots=True, frozen=True)
class Payload:
    """Tool parameters or test data: a JSON object or an opaque string.

    Planners and executors hand back whatever they produced; ``normalize``
    is the one place that decides which of the two shapes it is. Strings
    that are not JSON objects are kept verbatim rather than discarded.
    """

    kind: PayloadKind
    data: dict[str, Any] = field(default_factory=dict)
    text: str | None = None

    @classmethod
    def structured(cls, data: dict[str, Any] | None = None) -> Payload:
        return cls(kind=PayloadKind.STRUCTURED, data=dict(data or {}))

    @classmethod
    def opaque(cls, text: str) -> Payload:
        return cls(kind=PayloadKind.OPAQUE, text=text)

    @classmethod
    def normalize(cls, raw: object) -> Payload:
        if isinstance(raw, Payload):
            return raw
        if raw is None:
            return cls.structured()
        if isinstance(raw, dict):
            return cls.structured(raw)
        if isinstance(raw, str):
            if not raw.strip():
                return cls.structured()
            try:
                parsed = json.loads(raw)
            except ValueError:
                return cls.opaque(raw)
            if isinstance(parsed, dict):
                return cls.structured(parsed)
            return cls.opaque(raw)
        return cls.opaque(json.dumps(raw, ensure_ascii=False, sort_keys=True))

    @classmethod
    def from_stored(cls, stored: object) -> Payload:
        """Rebuild from the column value; the stored shape carries the kind."""

        if isinstance(stored, str):
            return cls.opaque(stored)
        if isinstance(stored, dict):
            return cls.structured(stored)
        return cls.structured()

    def to_stored(self) -> dict[str, Any] | str:
        if self.kind is PayloadKind.OPAQUE:
            return self.text or ""
        return dict(self.data)


@dataclass(slots=True, frozen=True)
class MemoryNamespace:
    """Scope shared by every agent of one deployment."""

    project: str
    environment: str
    agent_type: str
    session_id: str | None = None

    def path(self, *suffix: str) -> tuple[str, ...]:
        parts = [self.project, self.environment, self.agent_type]
        if self.session_id:
            parts.append(self.session_id)
        parts.extend(suffix)
        return tuple(parts)

    def plan_path(self, plan_id: str) -> tuple[str, ...]:
        """Namespace holding per-plan coordination records (cursor, batch state)."""

        return ("plans", self.project, self.environment, self.agent_type, plan_id)


@dataclass(slots=True)
class MemoryItem:
    key: str
    value: Any
    metadata: dict[str, Any] = field(default_factory=dict)
    expires_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class TaskPlanWrite:
    """Planned task as produced by the planning worker."""

    batch_index: int
    task_id: str
    tool_name: str
    description: str = ""
    parameters: Payload | dict[str, Any] | str | None = None
    complexity: Complexity | str = Complexity.MEDIUM
    requires_validation: bool = False


@dataclass(slots=True)
class TaskPlanView:
    plan_id: str
    batch_index: int
    task_id: str
    tool_name: str
    description: str
    parameters: Payload
    complexity: Complexity
    requires_validation: bool
    status: TaskStatus
    result: Any
    error_message: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


@dataclass(slots=True)
class TaskTestWrite:
    """Input for inserting or upserting a task test row."""

    test_id: str
    task_id: str
    thread_id: str
    tool_name: str
    test_data: Payload | dict[str, Any] | str | None = None
    test_result: Any = None
    evaluation_result: Any = None
    status: TaskStatus = TaskStatus.PENDING
    error_message: str | None = None
    execution_time_ms: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class TaskTestView:
    test_id: str
    task_id: str
    thread_id: str
    tool_name: str
    test_data: Payload
    test_result: Any
    evaluation_result: Any
    status: TaskStatus
    error_message: str | None
    execution_time_ms: int | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


@dataclass(slots=True)
class PlanProgressView:
    plan_id: str
    total_batches: int
    completed_batches: int
    failed_batches: int
    current_batch_index: int
    overall_success_rate: float
    status: PlanStatus
    tools_per_batch: int
    total_tools: int
    created_at: datetime
    last_updated: datetime
    started_at: datetime | None
    completed_at: datetime | None

    @property
    def is_finished(self) -> bool:
        """No batches remain once the index reaches the total."""

        return self.current_batch_index >= self.total_batches

    def tool_slice(self) -> slice:
        """Slice of the tool catalog covered by the current batch."""

        start = self.current_batch_index * self.tools_per_batch
        return slice(start, start + self.tools_per_batch)


@dataclass(slots=True)
class ExecutionCursor:
    plan_id: str
    batch_index: int
    task_index: int = 0
    current_test_id: str | None = None

    def to_value(self) -> dict[str, Any]:
        return {
            "batchIndex": self.batch_index,
            "taskIndex": self.task_index,
            "currentTestId": self.current_test_id,
        }

    @classmethod
    def from_value(cls, plan_id: str, value: object) -> ExecutionCursor | None:
        if not isinstance(value, dict):
            return None
        batch_index = value.get("batchIndex")
        task_index = value.get("taskIndex", 0)
        if not isinstance(batch_index, int) or not isinstance(task_index, int):
            return None
        current_test_id = value.get("currentTestId")
        return cls(
            plan_id=plan_id,
            batch_index=batch_index,
            task_index=max(0, task_index),
            current_test_id=current_test_id if isinstance(current_test_id, str) else None,
        )


@dataclass(slots=True)
class TaskStats:
    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    by_complexity: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class BatchStats:
    total: int = 0
    completed: int = 0
    failed: int = 0
    success_rate: float = 0.0


def safe_id_component(value: str) -> str:
    """Replace characters not allowed in task ids with underscores."""

    return _UNSAFE_ID_CHARS.sub("_", str(value))


def plan_id_component(plan_id: str) -> str:
    """Task id prefix for ``plan_id``.

    Plan ids that are already safe and short are used as is. Anything else is
    truncated and suffixed with a digest of the raw id, so ids that sanitize
    to the same text still get distinct prefixes and every generated task id
    fits the 64 character limit.
    """

    safe = safe_id_component(plan_id)
    if safe == plan_id and len(safe) <= _PLAN_ID_COMPONENT_MAX:
        return safe
    digest = hashlib.sha256(str(plan_id).encode("utf-8")).hexdigest()[:_PLAN_ID_DIGEST_LENGTH]
    head = safe[: _PLAN_ID_COMPONENT_MAX - _PLAN_ID_DIGEST_LENGTH - 1]
    return f"{head}_{digest}"


def make_task_id(plan_id: str, batch_index: int, seq: int) -> str:
    return f"{plan_id_component(plan_id)}-{batch_index}-{seq}"


def make_test_id(task_id: str, attempt: int) -> str:
    return f"{task_id}:attempt-{attempt}"


def make_sub_result_test_id(parent_test_id: str, ordinal: int) -> str:
    return f"{parent_test_id}:{ordinal}"


def success_rate(completed: int, failed: int) -> float:
    """Percentage of completed over finished, two decimals, 0 when nothing finished."""

    denominator = completed + failed
    if denominator == 0:
        return 0.0
    return round(completed / denominator * 100, 2)
