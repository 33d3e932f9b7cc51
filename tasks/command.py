"""
Command Task - Runs a shell command in a subprocess without blocking the loop.
命令任务 - 在子进程中运行命令，不阻塞调度循环。

start() launches the process with subprocess.Popen and returns at once;
poll() uses the non-blocking Popen.poll() to discover the exit code.
Exit code 0 -> DONE, anything else -> FAILED. An optional timeout kills
the process and fails the task.
start() 通过 subprocess.Popen 启动进程后立即返回；
poll() 使用非阻塞的 Popen.poll() 获取退出码。
退出码 0 -> DONE，否则 -> FAILED。可选超时会杀掉进程并使任务失败。
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from typing import Callable, Sequence

import config
from schema import TaskId
from tasks.base import BaseTask

logger = logging.getLogger(__name__)


class CommandTask(BaseTask):
    kind = "command"

    def __init__(
        self,
        task_id: TaskId,
        command: str | Sequence[str],
        timeout: float | None = None,
        cwd: str | None = None,
        clock: Callable[[], float] | None = None,
    ):
        super().__init__(task_id)
        # 字符串命令按 shell 规则切分，不经过 shell 执行
        self.argv: list[str] = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.argv:
            raise ValueError(f"CommandTask {task_id!r}: empty command")
        if timeout is None:
            timeout = config.COMMAND_TIMEOUT or None
        self.timeout = timeout
        self.cwd = cwd
        self.returncode: int | None = None
        self._clock = clock or time.monotonic
        self._proc: subprocess.Popen | None = None
        self._started_at: float | None = None

    def _begin(self) -> None:
        logger.info("[Task] %s running: %s", self.task_id, shlex.join(self.argv))
        self._started_at = self._clock()
        self._proc = subprocess.Popen(self.argv, cwd=self.cwd)

    def _check(self) -> None:
        assert self._proc is not None
        code = self._proc.poll()
        if code is None:
            if self.timeout is not None and self._clock() - self._started_at >= self.timeout:
                self._proc.kill()
                self.returncode = self._proc.wait()
                self._fail(f"timed out after {self.timeout}s")
            return

        self.returncode = code
        if code == 0:
            self._complete()
        else:
            self._fail(f"exit code {code}")

    def wake_after(self) -> float | None:
        if self.timeout is None or self._started_at is None or self.status().is_terminal:
            return None
        return max(0.0, self.timeout - (self._clock() - self._started_at))
