"""
Task State Machine - Validates and enforces task lifecycle transitions.
任务状态机 - 校验并强制执行任务生命周期的合法状态转移。

The transition table is the single source of truth for what state changes
are legal. Any invalid transition raises InvalidTransitionError, so a task
can never move backward or skip RUNNING.
转移表是合法状态变化的唯一权威来源。
任何非法转移都会抛出 InvalidTransitionError，任务因此不可能回退或跳过 RUNNING。

Transition graph:
转移图：
    PENDING ──> RUNNING ──> DONE      (happy path / 正常路径)
                        ──> FAILED
    PENDING ──> SKIPPED                (upstream failed / 上游失败)
"""

from __future__ import annotations

import logging
from typing import Callable

from schema import TaskId, TaskStatus

logger = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """
    Raised when an illegal state transition is attempted.
    当尝试非法状态转移时抛出此异常。
    """
    pass


VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.RUNNING, TaskStatus.SKIPPED},
    TaskStatus.RUNNING: {TaskStatus.DONE, TaskStatus.FAILED},
    # Terminal states
    # 终态 - 不允许任何进一步转移
    TaskStatus.DONE:    set(),
    TaskStatus.FAILED:  set(),
    TaskStatus.SKIPPED: set(),
}

# Position of each status along the lifecycle; used to detect backward moves.
# 各状态在生命周期中的先后位置，用于检测状态回退
STATUS_RANK: dict[TaskStatus, int] = {
    TaskStatus.PENDING: 0,
    TaskStatus.RUNNING: 1,
    TaskStatus.DONE:    2,
    TaskStatus.FAILED:  2,
    TaskStatus.SKIPPED: 2,
}


def can_transition(current: TaskStatus, new_status: TaskStatus) -> bool:
    return new_status in VALID_TRANSITIONS.get(current, set())


class TaskStateMachine:
    """
    Validates and applies the status transitions of one task.
    校验并应用单个任务的状态转移。

    Each task owns one machine; the current status lives here, so the only
    way to change it is `transition()`:
      1. Checks the VALID_TRANSITIONS table
      2. Stores the new status
      3. Fires an optional callback for logging / UI

    每个任务持有一个状态机，当前状态就保存在这里，修改它的唯一途径是 `transition()`。
    """

    def __init__(
        self,
        task_id: TaskId,
        on_transition: Callable[[TaskId, TaskStatus, TaskStatus], None] | None = None,
    ):
        self.task_id = task_id
        self._status = TaskStatus.PENDING
        self._on_transition = on_transition

    @property
    def status(self) -> TaskStatus:
        return self._status

    def can_transition(self, new_status: TaskStatus) -> bool:
        """
        Check whether moving to `new_status` is legal.
        检查转移到 `new_status` 是否合法。
        """
        return can_transition(self._status, new_status)

    def transition(self, new_status: TaskStatus) -> None:
        """
        Apply a state transition. Raises InvalidTransitionError if illegal.
        应用状态转移。若转移非法则抛出 InvalidTransitionError。
        """
        if not self.can_transition(new_status):
            raise InvalidTransitionError(
                f"Task {self.task_id!r}: cannot transition from {self._status.value} to {new_status.value}. "
                f"Valid targets: {sorted(s.value for s in VALID_TRANSITIONS.get(self._status, set()))}"
            )

        old_status = self._status
        self._status = new_status

        logger.debug("[SM] %s: %s -> %s", self.task_id, old_status.value, new_status.value)

        if self._on_transition:
            try:
                self._on_transition(self.task_id, old_status, new_status)
            except Exception:
                # 回调异常不能影响任务状态
                logger.exception("[SM] on_transition callback failed for task %s", self.task_id)
