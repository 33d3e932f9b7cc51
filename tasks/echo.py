"""
Echo Task - Writes a message and finishes inside start().
回显任务 - 在 start() 内写出一条消息并立即完成。
"""

from __future__ import annotations

from typing import Callable

from schema import TaskId
from tasks.base import BaseTask


class EchoTask(BaseTask):
    """
    Synchronous task: PENDING -> RUNNING -> DONE all within start().
    同步任务：PENDING -> RUNNING -> DONE 全部在 start() 中完成。
    """

    kind = "echo"

    def __init__(self, task_id: TaskId, message: str, writer: Callable[[str], None] | None = None):
        super().__init__(task_id)
        self.message = message
        self._writer = writer or print

    def _begin(self) -> None:
        self._writer(self.message)
        self._complete()
