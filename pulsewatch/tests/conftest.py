"""Shared fixtures: a controllable clock and an engine on temporary storage."""

from datetime import datetime, timedelta, timezone

import pytest

from pulsewatch.engine import MonitoringEngine
from pulsewatch.storage import DataStorage

T0 = datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.start = start
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def at(self, seconds: float) -> datetime:
        """Jump to ``seconds`` after the start."""
        self.now = self.start + timedelta(seconds=seconds)
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage(tmp_path):
    return DataStorage(str(tmp_path / "data"))


@pytest.fixture
def engine(clock, storage):
    return MonitoringEngine(storage=storage, clock=clock)
