from __future__ import annotations

import allure
import pytest

from plan_memory.errors import ConstraintViolationError
from plan_memory.manager import PlanMemory
from plan_memory.models import PayloadKind, TaskStatus, TaskTestWrite, make_test_id

pytestmark = [
    allure.epic("Batch Orchestration"),
    allure.feature("Task Test Repository"),
]


def _test(test_id: str, *, task_id: str = "p1-0-1", thread_id: str = "thread-1", **overrides):
    values = {
        "test_id": test_id,
        "task_id": task_id,
        "thread_id": thread_id,
        "tool_name": "search",
        "test_data": {"query": "weather"},
    }
    values.update(overrides)
    return TaskTestWrite(**values)


def test_running_row_completes_without_touching_started_at(memory: PlanMemory, clock) -> None:
    created = memory.task_tests.save(_test("t1", status=TaskStatus.RUNNING))
    assert created.started_at is not None
    assert created.completed_at is None

    clock.advance(3)
    assert memory.task_tests.update_status(
        "t1",
        TaskStatus.COMPLETED,
        result={"answer": 42},
        execution_time_ms=3000,
        evaluation_result={"score": 1.0},
    )

    done = memory.task_tests.get("t1")
    assert done is not None
    assert done.status is TaskStatus.COMPLETED
    assert done.completed_at is not None
    assert done.started_at == created.started_at
    assert done.test_result == {"answer": 42}
    assert done.execution_time_ms == 3000
    assert done.evaluation_result == {"score": 1.0}


def test_update_status_unknown_test_returns_false(memory: PlanMemory) -> None:
    assert memory.task_tests.update_status("missing", TaskStatus.FAILED) is False


def test_save_is_upsert_by_test_id(memory: PlanMemory) -> None:
    memory.task_tests.save(_test("t1", status=TaskStatus.RUNNING))
    memory.task_tests.save(_test("t1", status=TaskStatus.FAILED, error_message="timeout"))

    rows = memory.task_tests.get_by_task_id("p1-0-1")
    assert len(rows) == 1
    assert rows[0].status is TaskStatus.FAILED
    assert rows[0].error_message == "timeout"
    assert rows[0].started_at is not None


def test_test_data_keeps_opaque_strings(memory: PlanMemory) -> None:
    memory.task_tests.save(_test("t1", test_data="not json {"))

    stored = memory.task_tests.get("t1")
    assert stored is not None
    assert stored.test_data.kind is PayloadKind.OPAQUE
    assert stored.test_data.text == "not json {"


def test_task_query_is_creation_order_and_thread_query_is_recent_first(
    memory: PlanMemory,
    clock,
) -> None:
    for attempt in (1, 2, 3):
        memory.task_tests.save(_test(make_test_id("p1-0-1", attempt)))
        clock.advance(1)
    memory.task_tests.save(_test("other", task_id="p1-0-2", thread_id="thread-2"))

    by_task = [row.test_id for row in memory.task_tests.get_by_task_id("p1-0-1")]
    by_thread = [row.test_id for row in memory.task_tests.get_by_thread_id("thread-1")]

    assert by_task == ["p1-0-1:attempt-1", "p1-0-1:attempt-2", "p1-0-1:attempt-3"]
    assert by_thread == list(reversed(by_task))


def test_save_batch_is_best_effort(memory: PlanMemory) -> None:
    batch = [_test("t1"), _test("t2"), _test("t3", status="bogus"), _test("t4")]

    with pytest.raises(ConstraintViolationError):
        memory.task_tests.save_batch(batch)

    assert [row.test_id for row in memory.task_tests.get_by_task_id("p1-0-1")] == ["t1", "t2"]


def test_record_result_fans_out_sub_results(memory: PlanMemory) -> None:
    parent_id = make_test_id("p1-0-1", 1)
    memory.task_tests.save(_test(parent_id, status=TaskStatus.RUNNING))

    rows = memory.task_tests.record_result(
        parent_id,
        TaskStatus.COMPLETED,
        {"results": [{"city": "Oslo"}, {"city": "Rome"}, "plain"]},
        execution_time_ms=10,
    )

    assert [row.test_id for row in rows] == [parent_id, f"{parent_id}:2", f"{parent_id}:3"]
    assert [row.test_result for row in rows] == [
        {"city": "Oslo"},
        {"city": "Rome"},
        {"value": "plain"},
    ]
    assert all(row.status is TaskStatus.COMPLETED for row in rows)
    assert all(row.task_id == "p1-0-1" for row in rows)
    assert len(memory.task_tests.get_by_task_id("p1-0-1")) == 3


def test_record_result_without_list_updates_single_row(memory: PlanMemory) -> None:
    memory.task_tests.save(_test("t1", status=TaskStatus.RUNNING))

    rows = memory.task_tests.record_result("t1", TaskStatus.FAILED, {"results": []}, error_message="x")

    assert len(rows) == 1
    assert rows[0].status is TaskStatus.FAILED
    assert rows[0].test_result == {"results": []}


def test_record_result_for_unknown_test_returns_empty(memory: PlanMemory) -> None:
    assert memory.task_tests.record_result("missing", TaskStatus.COMPLETED, {"results": [1, 2]}) == []
    assert memory.task_tests.record_result("missing", TaskStatus.COMPLETED, {"ok": 1}) == []


def test_deletes(memory: PlanMemory) -> None:
    memory.task_tests.save(_test("t1"))
    memory.task_tests.save(_test("t2"))
    memory.task_tests.save(_test("t3", task_id="p1-0-2", thread_id="thread-2"))

    assert memory.task_tests.delete("t1") is True
    assert memory.task_tests.delete("t1") is False
    assert memory.task_tests.delete_by_task_id("p1-0-1") == 1
    assert memory.task_tests.delete_by_thread_id("thread-2") == 1
    assert memory.task_tests.get("t3") is None
