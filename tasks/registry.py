"""
Task registry - maps a flow file's `kind` string to a task factory.
任务注册表 - 将流程文件中的 `kind` 字符串映射到任务工厂。
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from schema import TaskId, TaskSpec
from tasks.base import BaseTask
from tasks.command import CommandTask
from tasks.echo import EchoTask
from tasks.sleep import SleepTask

logger = logging.getLogger(__name__)

TaskFactory = Callable[..., BaseTask]


class UnknownTaskKindError(ValueError):
    pass


class TaskRegistry:
    """
    Kind name -> factory(task_id, **params).
    任务类型名称 -> 工厂函数 factory(task_id, **params)。
    """

    def __init__(self) -> None:
        self._factories: dict[str, TaskFactory] = {}

    def register(self, kind: str, factory: TaskFactory) -> None:
        if kind in self._factories:
            logger.warning("Task kind '%s' re-registered", kind)
        self._factories[kind] = factory

    @property
    def kinds(self) -> list[str]:
        return sorted(self._factories)

    def create(self, task_id: TaskId, kind: str, params: dict[str, Any] | None = None) -> BaseTask:
        factory = self._factories.get(kind)
        if factory is None:
            raise UnknownTaskKindError(
                f"Task {task_id!r}: unknown kind '{kind}'. Known kinds: {self.kinds}"
            )
        try:
            return factory(task_id, **(params or {}))
        except TypeError as exc:
            # 参数名不匹配时给出更明确的错误
            raise ValueError(f"Task {task_id!r}: bad params for kind '{kind}': {exc}") from exc

    def build(self, spec: TaskSpec) -> BaseTask:
        return self.create(spec.id, spec.kind, spec.params)


def default_registry() -> TaskRegistry:
    """Registry with the built-in kinds: echo, sleep, command."""
    registry = TaskRegistry()
    registry.register(EchoTask.kind, EchoTask)
    registry.register(SleepTask.kind, SleepTask)
    registry.register(CommandTask.kind, CommandTask)
    return registry
