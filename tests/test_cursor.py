from __future__ import annotations

import allure
import pytest

from plan_memory.cursor import CURSOR_KEY
from plan_memory.manager import PlanMemory

pytestmark = [
    allure.epic("Batch Orchestration"),
    allure.feature("Execution Cursor"),
]


def test_load_without_cursor_starts_fresh_and_persists(memory: PlanMemory) -> None:
    assert memory.cursors.exists("p1") is False

    cursor = memory.cursors.load("p1", 0)

    assert (cursor.batch_index, cursor.task_index, cursor.current_test_id) == (0, 0, None)
    assert memory.cursors.exists("p1") is True
    stored = memory.store.get_value(memory.namespace.plan_path("p1"), CURSOR_KEY)
    assert stored == {"batchIndex": 0, "taskIndex": 0, "currentTestId": None}


def test_advance_increments_by_exactly_one(memory: PlanMemory) -> None:
    memory.cursors.load("p1", 2)

    indexes = [memory.cursors.advance("p1").task_index for _ in range(4)]

    assert indexes == [1, 2, 3, 4]
    assert memory.cursors.load("p1", 2).task_index == 4


def test_stale_cursor_resets_for_other_batch(memory: PlanMemory) -> None:
    memory.cursors.load("p1", 0)
    memory.cursors.advance("p1")
    memory.cursors.advance("p1")

    cursor = memory.cursors.load("p1", 1)

    assert (cursor.batch_index, cursor.task_index) == (1, 0)
    assert memory.cursors.peek("p1").batch_index == 1


def test_bind_test_id_is_cleared_by_advance(memory: PlanMemory) -> None:
    memory.cursors.load("p1", 0)

    bound = memory.cursors.bind_test_id("p1", "p1-0-1:attempt-1")
    assert bound.current_test_id == "p1-0-1:attempt-1"
    assert memory.cursors.peek("p1").current_test_id == "p1-0-1:attempt-1"

    advanced = memory.cursors.advance("p1")
    assert advanced.current_test_id is None
    assert advanced.task_index == 1


def test_advance_without_cursor_raises(memory: PlanMemory) -> None:
    with pytest.raises(RuntimeError, match="Execution cursor not found"):
        memory.cursors.advance("p1")


def test_malformed_stored_cursor_is_treated_as_missing(memory: PlanMemory) -> None:
    memory.store.put(memory.namespace.plan_path("p1"), CURSOR_KEY, "garbage")

    assert memory.cursors.exists("p1") is False
    assert memory.cursors.load("p1", 0).task_index == 0


def test_cursors_are_per_plan(memory: PlanMemory) -> None:
    memory.cursors.load("p1", 0)
    memory.cursors.load("p2", 0)
    memory.cursors.advance("p1")

    assert memory.cursors.peek("p1").task_index == 1
    assert memory.cursors.peek("p2").task_index == 0
