from __future__ import annotations

import allure
import pytest

from plan_memory.models import (
    TASK_ID_PATTERN,
    ExecutionCursor,
    Payload,
    PayloadKind,
    make_sub_result_test_id,
    make_task_id,
    make_test_id,
    plan_id_component,
    success_rate,
)

pytestmark = [
    allure.epic("Batch Orchestration"),
    allure.feature("Domain Models"),
]


@pytest.mark.parametrize(
    ("raw", "kind", "data", "text"),
    [
        (None, PayloadKind.STRUCTURED, {}, None),
        ("", PayloadKind.STRUCTURED, {}, None),
        ({"a": 1}, PayloadKind.STRUCTURED, {"a": 1}, None),
        ('{"a": 1}', PayloadKind.STRUCTURED, {"a": 1}, None),
        ("[1, 2]", PayloadKind.OPAQUE, {}, "[1, 2]"),
        ("city=Oslo", PayloadKind.OPAQUE, {}, "city=Oslo"),
        ([1, 2], PayloadKind.OPAQUE, {}, "[1, 2]"),
    ],
)
def test_payload_normalize(raw: object, kind: PayloadKind, data: dict, text: str | None) -> None:
    payload = Payload.normalize(raw)

    assert payload.kind is kind
    assert payload.data == data
    assert payload.text == text


def test_payload_stored_shape_carries_the_kind() -> None:
    assert Payload.from_stored(Payload.opaque("x").to_stored()) == Payload.opaque("x")
    assert Payload.from_stored({"a": 1}) == Payload.structured({"a": 1})
    assert Payload.from_stored(None) == Payload.structured()


def test_task_id_scheme_replaces_unsafe_characters() -> None:
    task_id = make_task_id("plan #7/α", 2, 11)

    assert task_id.startswith("plan__7___")
    assert task_id.endswith("-2-11")
    assert TASK_ID_PATTERN.match(task_id)


def test_safe_short_plan_id_is_used_verbatim() -> None:
    assert make_task_id("p1.v2", 0, 1) == "p1.v2-0-1"


def test_plan_id_component_is_bounded_and_distinct() -> None:
    long_id = "x" * 100

    assert len(plan_id_component(long_id)) == 40
    assert plan_id_component(long_id) == plan_id_component(long_id)
    assert plan_id_component(long_id) != plan_id_component(long_id + "y")
    assert plan_id_component("team/a") != plan_id_component("team a")
    assert plan_id_component("team/a") != "team_a"
    assert TASK_ID_PATTERN.match(make_task_id(long_id, 99999, 99999))


def test_test_id_helpers() -> None:
    assert make_test_id("p1-0-1", 3) == "p1-0-1:attempt-3"
    assert make_sub_result_test_id("p1-0-1:attempt-3", 2) == "p1-0-1:attempt-3:2"


@pytest.mark.parametrize(
    ("completed", "failed", "expected"),
    [(0, 0, 0.0), (1, 0, 100.0), (1, 2, 33.33), (2, 1, 66.67)],
)
def test_success_rate(completed: int, failed: int, expected: float) -> None:
    assert success_rate(completed, failed) == expected


def test_cursor_value_round_trip_and_malformed_values() -> None:
    cursor = ExecutionCursor(plan_id="p1", batch_index=1, task_index=2, current_test_id="t")

    assert ExecutionCursor.from_value("p1", cursor.to_value()) == cursor
    assert ExecutionCursor.from_value("p1", {"taskIndex": 1}) is None
    assert ExecutionCursor.from_value("p1", "oops") is None
    assert ExecutionCursor.from_value("p1", {"batchIndex": 0}).task_index == 0
