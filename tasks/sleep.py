"""
Sleep Task - Becomes DONE once a duration has elapsed since start().
延时任务 - 自 start() 起经过指定时长后变为 DONE。

Completion is discovered only through poll(); nothing blocks. The clock
is injectable so tests can drive time explicitly.
完成状态只能通过 poll() 发现，不会阻塞。时钟可注入，便于测试中手动推进时间。
"""

from __future__ import annotations

import time
from typing import Callable

from schema import TaskId
from tasks.base import BaseTask


class SleepTask(BaseTask):
    kind = "sleep"

    def __init__(self, task_id: TaskId, seconds: float, clock: Callable[[], float] | None = None):
        super().__init__(task_id)
        if seconds < 0:
            raise ValueError(f"SleepTask {task_id!r}: seconds must be >= 0, got {seconds}")
        self.seconds = float(seconds)
        self._clock = clock or time.monotonic
        self._started_at: float | None = None  # start() 时记录的时间戳

    def _begin(self) -> None:
        self._started_at = self._clock()

    def _check(self) -> None:
        if self.remaining() <= 0:
            self._complete()

    def remaining(self) -> float:
        """Seconds left before the task may complete (full duration if not started)."""
        if self._started_at is None:
            return self.seconds
        return max(0.0, self.seconds - (self._clock() - self._started_at))

    def wake_after(self) -> float | None:
        if self._started_at is None or self.status().is_terminal:
            return None
        return self.remaining()
