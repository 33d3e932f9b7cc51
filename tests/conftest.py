"""Shared fixtures: a manually driven clock for time-based tasks."""

from __future__ import annotations

import pytest


class FakeClock:
    """
    Monotonic clock that only moves when told to.
    只在被显式推进时才前进的单调时钟，用于让延时任务的测试完全确定。
    """

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float = 1.0) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()
