"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from plan_memory.config import Settings
from plan_memory.manager import PlanMemory


class ManualClock:
    """Clock that only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 16, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(db_path=tmp_path / "plan_memory.db")


@pytest.fixture()
def memory(settings: Settings, clock: ManualClock) -> Iterator[PlanMemory]:
    plan_memory = PlanMemory(settings, clock=clock)
    plan_memory.init_schema()
    try:
        yield plan_memory
    finally:
        plan_memory.close()
