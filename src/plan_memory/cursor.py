"""Execution cursor: the next task to run inside the current batch of a plan."""

from __future__ import annotations

import logging

from plan_memory.models import ExecutionCursor, MemoryNamespace
from plan_memory.resolver import StoreResolver

logger = logging.getLogger(__name__)

CURSOR_KEY = "executeProgress"


class ExecutionCursorStore:
    """Cursor records kept in shared memory under each plan's namespace.

    A cursor is only meaningful for the batch it was written for. Loading it
    for any other batch starts over at task 0. Moving to another batch is the
    caller's decision; nothing here changes ``batch_index`` on its own.
    """

    def __init__(self, resolver: StoreResolver, namespace: MemoryNamespace) -> None:
        self.resolver = resolver
        self.namespace = namespace

    def peek(self, plan_id: str) -> ExecutionCursor | None:
        """Stored cursor as-is, whatever batch it belongs to."""

        value = self.resolver.get_value(self.namespace.plan_path(plan_id), CURSOR_KEY)
        return ExecutionCursor.from_value(plan_id, value)

    def exists(self, plan_id: str) -> bool:
        return self.peek(plan_id) is not None

    def load(self, plan_id: str, batch_index: int) -> ExecutionCursor:
        """Cursor for ``batch_index``, reset to task 0 when missing or stale."""

        cursor = self.peek(plan_id)
        if cursor is not None and cursor.batch_index == batch_index:
            return cursor
        if cursor is not None:
            logger.warning(
                "Cursor of plan %s points at batch %d, resetting for batch %d",
                plan_id,
                cursor.batch_index,
                batch_index,
            )
        return self.reset(plan_id, batch_index)

    def reset(self, plan_id: str, batch_index: int) -> ExecutionCursor:
        cursor = ExecutionCursor(plan_id=plan_id, batch_index=batch_index)
        self._write(cursor)
        return cursor

    def advance(self, plan_id: str) -> ExecutionCursor:
        """Step past the task whose result was just recorded."""

        cursor = self._require(plan_id)
        cursor.task_index += 1
        cursor.current_test_id = None
        self._write(cursor)
        logger.debug(
            "Cursor of plan %s at batch %d task %d",
            plan_id,
            cursor.batch_index,
            cursor.task_index,
        )
        return cursor

    def bind_test_id(self, plan_id: str, test_id: str) -> ExecutionCursor:
        """Remember the in-flight test so a late result can find its task."""

        cursor = self._require(plan_id)
        cursor.current_test_id = test_id
        self._write(cursor)
        return cursor

    def _require(self, plan_id: str) -> ExecutionCursor:
        cursor = self.peek(plan_id)
        if cursor is None:
            raise RuntimeError(f"Execution cursor not found for plan {plan_id}")
        return cursor

    def _write(self, cursor: ExecutionCursor) -> None:
        self.resolver.put(
            self.namespace.plan_path(cursor.plan_id),
            CURSOR_KEY,
            cursor.to_value(),
            shared=True,
        )
