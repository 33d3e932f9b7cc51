"""
Flow Scheduler - Cooperative poll / ready / dispatch loop over a task DAG.
流程调度器 - 基于任务 DAG 的协作式「轮询 / 就绪 / 派发」循环。

One iteration, strictly in this order:
  1. Poll phase:      poll() every task, whatever its status
  2. Readiness phase: observe every status, find PENDING tasks whose
                      prerequisites are all DONE
  3. Dispatch phase:  start() every ready task
  4. Termination:     stop when every task was observed in a terminal state

一轮迭代严格按以下顺序执行：
  1. 轮询阶段：对每个任务调用 poll()，无论其状态
  2. 就绪阶段：观察所有状态，找出前置依赖全部 DONE 的 PENDING 任务
  3. 派发阶段：对所有就绪任务调用 start()
  4. 终止检查：所有任务都处于终态时结束

Between iterations where nothing was dispatched the loop waits for the
smaller of `poll_interval` and the nearest task wake-up hint, or until
wake() / cancel() is called. It never blocks inside a task.
若本轮没有派发任何任务，则在 `poll_interval` 与最近的任务唤醒提示之间取较小值等待，
或等到 wake() / cancel() 被调用。循环本身从不在任务内部阻塞。

The loop owns the task collection and the dependency graph for the whole
run; nothing else may change task state while a run is in progress.
运行期间循环独占任务集合与依赖图，其他组件不得修改任务状态。
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any, Callable

import config
from dag.graph import DependencyGraph
from dag.state_machine import STATUS_RANK
from schema import (
    TERMINAL_STATUSES,
    MissingDependencyPolicy,
    RunOutcome,
    RunResult,
    TaskId,
    TaskStatus,
)

if TYPE_CHECKING:
    from tasks.base import Task

logger = logging.getLogger(__name__)


class ContractViolationError(RuntimeError):
    """
    A task broke the capability contract (status moved backward, left
    PENDING without start(), or stayed PENDING after start()).
    任务违反了能力契约（状态回退、未 start() 就离开 PENDING、或 start() 后仍为 PENDING）。
    """

    def __init__(self, task_id: TaskId, message: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id!r}: {message}")


class FlowScheduler:
    """
    Runs a collection of tasks to completion in dependency order.
    按依赖顺序将一组任务运行至完成。

    Usage:
        scheduler = FlowScheduler(tasks, {0: [], 1: [0], 2: [1]})
        result = await scheduler.run()      # or scheduler.run_sync()

    A scheduler runs once. cancel() may be called from any thread or
    coroutine; the loop checks it once per iteration and then returns a
    CANCELLED result, leaving RUNNING tasks unresolved.
    每个调度器只能运行一次。cancel() 可在任意线程或协程中调用；
    循环每轮检查一次，随后返回 CANCELLED 结果，RUNNING 状态的任务保持不变。
    """

    def __init__(
        self,
        tasks: Mapping[TaskId, Task] | Iterable[Task],
        dependencies: DependencyGraph | Mapping[TaskId, Iterable[TaskId]],
        *,
        poll_interval: float | None = None,
        max_iterations: int | None = None,
        missing_policy: MissingDependencyPolicy | str | None = None,
        validate: bool = True,
        on_event: Callable[[str, Any], None] | None = None,
    ):
        self._tasks: dict[TaskId, Task] = self._collect_tasks(tasks)
        self._graph = dependencies if isinstance(dependencies, DependencyGraph) else DependencyGraph(dependencies)

        interval = config.POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self._poll_interval = max(0.0, float(interval))
        limit = config.MAX_ITERATIONS if max_iterations is None else max_iterations
        self._max_iterations = limit if limit and limit > 0 else None  # None = 不限制
        self._policy = MissingDependencyPolicy(missing_policy or config.MISSING_DEPENDENCY_POLICY)
        self._emit = on_event or (lambda *_: None)

        if validate:
            self._graph.validate(self._tasks.keys(), self._policy)

        # Run-scoped state
        # 运行期状态
        self._cancel_requested = threading.Event()
        self._wake_event: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._has_run = False
        self._observed: dict[TaskId, TaskStatus] = {}
        self._started: set[TaskId] = set()
        self._skipped: set[TaskId] = set()
        self._start_order: list[TaskId] = []

    @staticmethod
    def _collect_tasks(tasks: Mapping[TaskId, Task] | Iterable[Task]) -> dict[TaskId, Task]:
        if isinstance(tasks, Mapping):
            for tid, task in tasks.items():
                if task.task_id != tid:
                    raise ValueError(f"Task keyed as {tid!r} reports task_id {task.task_id!r}")
            return dict(tasks)
        collected: dict[TaskId, Task] = {}
        for task in tasks:
            if task.task_id in collected:
                raise ValueError(f"Duplicate task id {task.task_id!r}")
            collected[task.task_id] = task
        return collected

    # ------------------------------------------------------------------
    # Public API
    # 对外接口
    # ------------------------------------------------------------------

    @property
    def tasks(self) -> Mapping[TaskId, Task]:
        return self._tasks

    @property
    def graph(self) -> DependencyGraph:
        return self._graph

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested.is_set()

    def cancel(self) -> None:
        """
        Request cooperative cancellation; observed at the next iteration.
        请求协作式取消；在下一轮迭代开始时生效。
        """
        self._cancel_requested.set()
        self.wake()

    def wake(self) -> None:
        """
        Cut the current inter-iteration wait short (thread-safe).
        提前结束当前的轮间等待（线程安全）。
        """
        loop, event = self._loop, self._wake_event
        if loop is None or event is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            event.set()
        else:
            loop.call_soon_threadsafe(event.set)

    def run_sync(self) -> RunResult:
        """Blocking wrapper around run() for callers without an event loop."""
        return asyncio.run(self.run())

    async def run(self) -> RunResult:
        """
        Drive the loop until every task is terminal, or until cancelled /
        stalled, and return the RunResult.
        驱动循环直到所有任务到达终态（或被取消 / 超过最大轮数），返回 RunResult。
        """
        if self._has_run:
            raise RuntimeError("FlowScheduler.run() may only be called once")
        self._has_run = True
        self._loop = asyncio.get_running_loop()
        self._wake_event = asyncio.Event()
        self._observed = {tid: task.status() for tid, task in self._tasks.items()}
        for tid, status in self._observed.items():
            if status != TaskStatus.PENDING:
                raise ContractViolationError(tid, f"must be pending before the run, found {status.value}")

        began = time.monotonic()
        iteration = 0
        logger.info("[Scheduler] Starting run: %s", self._graph.summary())

        try:
            while True:
                if self._cancel_requested.is_set():
                    outcome = RunOutcome.CANCELLED
                    logger.warning("[Scheduler] Cancelled at iteration %d", iteration)
                    break
                if self._max_iterations is not None and iteration >= self._max_iterations:
                    outcome = RunOutcome.STALLED
                    logger.warning(
                        "[Scheduler] Stalled: %d iterations without finishing, pending=%s",
                        iteration, self._ids_in(TaskStatus.PENDING),
                    )
                    break

                iteration += 1
                self._safe_emit("iteration", {"iteration": iteration})
                finished, dispatched = self._step(iteration)
                if finished:
                    outcome = RunOutcome.DONE if self._all_done() else RunOutcome.FAILED
                    break
                if not dispatched:
                    await self._wait()
        finally:
            self._wake_event = None
            self._loop = None

        result = RunResult(
            outcome=outcome,
            iterations=iteration,
            statuses=dict(self._observed),
            start_order=list(self._start_order),
            elapsed_seconds=time.monotonic() - began,
        )
        logger.info("[Scheduler] Run finished: %s", result.summary())
        self._safe_emit("run_finished", {"result": result})
        return result

    # ------------------------------------------------------------------
    # One iteration
    # 单轮迭代
    # ------------------------------------------------------------------

    def _step(self, iteration: int) -> tuple[bool, bool]:
        """
        Run one poll / ready / dispatch pass.
        Returns (every task terminal, at least one task started).
        执行一轮「轮询 / 就绪 / 派发」，返回（是否全部终态，是否启动了任务）。
        """
        # --- 1. Poll phase ---
        # --- 1. 轮询阶段：给异步任务自报完成的机会 ---
        for task in self._tasks.values():
            task.poll()

        # --- 2. Readiness phase ---
        # --- 2. 就绪阶段：观察状态、传播失败、计算就绪集合 ---
        self._observe_all()
        self._propagate_failures()
        finished = all(status in TERMINAL_STATUSES for status in self._observed.values())
        ready = self._graph.get_ready_ids(self._observed, self._policy)

        # --- 3. Dispatch phase ---
        # --- 3. 派发阶段：同一轮内就绪的任务彼此独立，启动顺序不作保证 ---
        for tid in ready:
            self._dispatch(tid)

        if ready:
            logger.debug("[Scheduler] Iteration %d started %s", iteration, sorted(ready, key=repr))
        return finished, bool(ready)

    def _observe_all(self) -> None:
        for tid, task in self._tasks.items():
            if tid in self._skipped:
                continue
            self._observe(tid, task.status())

    def _observe(self, tid: TaskId, status: TaskStatus) -> None:
        """
        Record a newly observed status, enforcing the contract.
        记录新观察到的状态，并校验契约（不得回退、不得未启动就离开 PENDING）。
        """
        previous = self._observed[tid]
        if status == previous:
            return
        if STATUS_RANK[status] < STATUS_RANK[previous] or previous in TERMINAL_STATUSES:
            raise ContractViolationError(tid, f"status moved from {previous.value} to {status.value}")
        if tid not in self._started:
            raise ContractViolationError(tid, f"reported {status.value} before start() was called")

        self._observed[tid] = status
        if status in TERMINAL_STATUSES:
            logger.info("[Scheduler] Task %s -> %s", tid, status.value)
            self._safe_emit("task_finished", {"task_id": tid, "status": status})

    def _propagate_failures(self) -> None:
        """
        Mark every PENDING task downstream of a FAILED / SKIPPED task as SKIPPED.
        Skipped tasks are never started; the scheduler records the status itself.
        将 FAILED / SKIPPED 任务下游所有 PENDING 任务标记为 SKIPPED，这些任务永远不会被启动。
        """
        blocked = [tid for tid, st in self._observed.items() if st in (TaskStatus.FAILED, TaskStatus.SKIPPED)]
        for source in blocked:
            for tid in self._graph.get_downstream(source):
                if self._observed.get(tid) != TaskStatus.PENDING:
                    continue
                self._skipped.add(tid)
                self._observed[tid] = TaskStatus.SKIPPED
                logger.info("[Scheduler] Task %s SKIPPED (downstream of %s)", tid, source)
                self._safe_emit("task_skipped", {"task_id": tid, "because_of": source})

    def _dispatch(self, tid: TaskId) -> None:
        task = self._tasks[tid]
        self._started.add(tid)
        self._start_order.append(tid)
        task.start()

        status = task.status()
        if status == TaskStatus.PENDING:
            raise ContractViolationError(tid, "still pending after start()")
        self._safe_emit("task_started", {"task_id": tid, "status": status})
        logger.debug("[Scheduler] Task %s started -> %s", tid, status.value)
        # Completion inside start() is only acted upon in the next iteration.
        # start() 内同步完成的状态留到下一轮再观察
        self._observe(tid, TaskStatus.RUNNING)

    # ------------------------------------------------------------------
    # Waiting between iterations
    # 轮间等待
    # ------------------------------------------------------------------

    async def _wait(self) -> None:
        timeout = self._next_timeout()
        if timeout <= 0:
            # 仅让出事件循环，保证取消和其他协程有机会运行
            await asyncio.sleep(0)
            return
        event = self._wake_event
        assert event is not None
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        event.clear()

    def _next_timeout(self) -> float:
        timeout = self._poll_interval
        for tid, task in self._tasks.items():
            if self._observed.get(tid) != TaskStatus.RUNNING:
                continue
            hint_fn = getattr(task, "wake_after", None)
            hint = hint_fn() if callable(hint_fn) else None
            if hint is not None:
                timeout = min(timeout, max(0.0, hint))
        return timeout

    # ------------------------------------------------------------------
    # Helpers
    # 辅助方法
    # ------------------------------------------------------------------

    def _all_done(self) -> bool:
        return all(status == TaskStatus.DONE for status in self._observed.values())

    def _ids_in(self, status: TaskStatus) -> list[TaskId]:
        return sorted((tid for tid, st in self._observed.items() if st == status), key=repr)

    def _safe_emit(self, event: str, data: Any) -> None:
        try:
            self._emit(event, data)
        except Exception:
            # 事件回调（UI / 日志）异常不能中断调度
            logger.exception("[Scheduler] on_event callback failed for %s", event)
