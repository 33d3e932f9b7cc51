"""
Base Task - Capability contract for everything the scheduler can run.
BaseTask - 调度器可运行的所有任务的能力契约。

Each task exposes:
  - task_id   unique, stable identifier
  - start()   PENDING -> RUNNING, begin the work (may finish synchronously)
  - poll()    re-check completion; a no-op outside RUNNING
  - status()  current TaskStatus, no side effects
  - wake_after() optional hint: seconds until the task may change state

每个任务暴露：
  - task_id：唯一且稳定的标识
  - start()：PENDING -> RUNNING 并开始工作（可能同步完成）
  - poll()：重新检查是否完成；非 RUNNING 状态下为空操作
  - status()：返回当前状态，无副作用
  - wake_after()：可选提示，距离下次可能的状态变化还有多少秒
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Protocol, runtime_checkable

from dag.state_machine import InvalidTransitionError, TaskStateMachine
from schema import TaskId, TaskStatus

logger = logging.getLogger(__name__)


@runtime_checkable
class Task(Protocol):
    """
    Structural type accepted by FlowScheduler.
    FlowScheduler 接受的结构化类型，任何实现这些方法的对象都可以被调度。
    """

    @property
    def task_id(self) -> TaskId: ...

    def start(self) -> None: ...

    def poll(self) -> None: ...

    def status(self) -> TaskStatus: ...


class BaseTask(ABC):
    """
    Abstract base class for the built-in task kinds.
    内置任务类型的抽象基类。

    Status changes go through a TaskStateMachine, so calling start() twice
    raises InvalidTransitionError. Subclasses implement `_begin()` (called
    once, already RUNNING) and `_check()` (called from poll() while
    RUNNING), and finish with `_complete()` or `_fail()`. An exception raised
    from either hook fails the task instead of escaping to the scheduler.

    状态变化全部经过 TaskStateMachine，因此重复调用 start() 会抛出 InvalidTransitionError。
    子类实现 `_begin()` 与 `_check()`，并以 `_complete()` 或 `_fail()` 结束。
    钩子中抛出的异常会使任务失败，而不会传播到调度器。
    """

    kind: str = "task"

    def __init__(self, task_id: TaskId):
        self._task_id = task_id
        self._sm = TaskStateMachine(task_id)
        self.error: str | None = None  # 失败原因（仅 FAILED 时有值）

    def __repr__(self) -> str:
        return f"{type(self).__name__}(task_id={self._task_id!r}, status={self.status().value})"

    @property
    def task_id(self) -> TaskId:
        return self._task_id

    # ------------------------------------------------------------------
    # Capability contract
    # 能力契约
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._sm.status != TaskStatus.PENDING:
            raise InvalidTransitionError(
                f"Task {self._task_id!r}: start() called while {self._sm.status.value}"
            )
        self._sm.transition(TaskStatus.RUNNING)
        logger.debug("[Task] %s (%s) started", self._task_id, self.kind)
        try:
            self._begin()
        except InvalidTransitionError:
            raise
        except Exception as exc:
            logger.exception("[Task] %s failed while starting", self._task_id)
            self._fail(f"{type(exc).__name__}: {exc}")

    def poll(self) -> None:
        if self._sm.status != TaskStatus.RUNNING:
            return
        try:
            self._check()
        except InvalidTransitionError:
            raise
        except Exception as exc:
            logger.exception("[Task] %s failed while polling", self._task_id)
            self._fail(f"{type(exc).__name__}: {exc}")

    def status(self) -> TaskStatus:
        return self._sm.status

    def wake_after(self) -> float | None:
        return None

    # ------------------------------------------------------------------
    # Subclass hooks
    # 子类钩子
    # ------------------------------------------------------------------

    @abstractmethod
    def _begin(self) -> None:
        """
        Start the work. Runs once, right after PENDING -> RUNNING.
        开始执行工作。在 PENDING -> RUNNING 之后调用且仅调用一次。
        """

    def _check(self) -> None:
        """Re-evaluate completion while RUNNING. Synchronous kinds leave this alone."""

    def _complete(self) -> None:
        self._sm.transition(TaskStatus.DONE)
        logger.debug("[Task] %s done", self._task_id)

    def _fail(self, reason: str) -> None:
        self.error = reason
        self._sm.transition(TaskStatus.FAILED)
        logger.warning("[Task] %s failed: %s", self._task_id, reason)
