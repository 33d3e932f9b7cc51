"""
调度循环测试 - 覆盖：
  1. 场景 1：echo -> sleep(3) -> echo，使用可控时钟
  2. 场景 2：任务在依赖表中缺失条目
  3. 场景 3：环形依赖 A -> B -> A
  4. 契约与不变量：不得提前启动、不得回退、不得跳过 RUNNING
  5. 失败传播、取消、最大轮数、唤醒提示

所有基于时间的测试都通过 `iteration` 事件推进 FakeClock，结果完全确定。
"""

from __future__ import annotations

import threading
import time

import pytest

from dag.graph import CyclicDependencyError, DanglingDependencyError, MissingDependencyEntryError
from dag.scheduler import ContractViolationError, FlowScheduler
from schema import MissingDependencyPolicy, RunOutcome, TaskStatus
from tasks import BaseTask, EchoTask, SleepTask


# ======================================================================
# Helpers
# ======================================================================


class BoomTask(BaseTask):
    kind = "boom"

    def _begin(self) -> None:
        raise RuntimeError("boom")


class ScriptedTask:
    """
    Hand-written Task (no BaseTask) whose reported statuses are scripted,
    used to break the contract on purpose.
    手写的 Task 实现，状态由脚本控制，用于故意违反契约。
    """

    def __init__(self, task_id, *, after_start=TaskStatus.RUNNING, on_poll=None):
        self.task_id = task_id
        self._status = TaskStatus.PENDING
        self._after_start = after_start
        self._on_poll = list(on_poll or [])
        self.start_calls = 0

    def start(self):
        self.start_calls += 1
        self._status = self._after_start

    def poll(self):
        if self._on_poll:
            self._status = self._on_poll.pop(0)

    def status(self):
        return self._status


class Recorder:
    """
    on_event callback that advances the fake clock each iteration and
    snapshots every task's status when a task is started.
    每轮推进时钟，并在任务启动时记录所有任务的状态快照。
    """

    def __init__(self, clock=None, step: float = 1.0):
        self.clock = clock
        self.step = step
        self.scheduler: FlowScheduler | None = None
        self.events: list[tuple[str, object]] = []
        self.started_at: dict[object, float] = {}
        self.snapshot_at_start: dict[object, dict] = {}

    def __call__(self, event, data):
        self.events.append((event, data))
        if event == "iteration" and self.clock is not None:
            self.clock.advance(self.step)
        if event == "task_started" and self.scheduler is not None:
            tid = data["task_id"]
            self.started_at[tid] = self.clock() if self.clock is not None else time.monotonic()
            self.snapshot_at_start[tid] = {
                other: task.status() for other, task in self.scheduler.tasks.items()
            }

    def names(self):
        return [e for e, _ in self.events]


def _scheduler(tasks, deps, recorder=None, **kwargs) -> FlowScheduler:
    kwargs.setdefault("poll_interval", 0)
    scheduler = FlowScheduler(tasks, deps, on_event=recorder, **kwargs)
    if recorder is not None:
        recorder.scheduler = scheduler
    return scheduler


# ======================================================================
# Scenario 1: echo -> sleep(3) -> echo
# ======================================================================


class TestScenarioChain:

    @pytest.mark.asyncio
    async def test_chain_runs_in_order(self, clock):
        out: list[str] = []
        tasks = [
            EchoTask(0, "Hello", writer=out.append),
            SleepTask(1, 3, clock=clock),
            EchoTask(2, "World", writer=out.append),
        ]
        recorder = Recorder(clock)
        scheduler = _scheduler(tasks, {0: [], 1: [0], 2: [1]}, recorder)

        result = await scheduler.run()

        assert result.outcome == RunOutcome.DONE
        assert result.succeeded
        assert result.statuses == {0: TaskStatus.DONE, 1: TaskStatus.DONE, 2: TaskStatus.DONE}
        assert result.start_order == [0, 1, 2]
        assert out == ["Hello", "World"]

        # task 1 starts right after task 0 is observed done, task 2 only after 3 units
        assert recorder.started_at[1] - recorder.started_at[0] == 1
        assert recorder.started_at[2] - recorder.started_at[1] >= 3
        assert recorder.snapshot_at_start[2][1] == TaskStatus.DONE
        assert result.iterations == 6

    @pytest.mark.asyncio
    async def test_sync_task_completes_in_first_iteration(self, clock):
        tasks = [EchoTask(0, "Hello", writer=lambda _: None), SleepTask(1, 3, clock=clock)]
        recorder = Recorder(clock)
        scheduler = _scheduler(tasks, {0: [], 1: [0]}, recorder)
        await scheduler.run()

        finished = [d for e, d in recorder.events if e == "task_finished"]
        assert finished[0] == {"task_id": 0, "status": TaskStatus.DONE}
        started = [d["task_id"] for e, d in recorder.events if e == "task_started"]
        assert started == [0, 1]

    def test_run_sync(self):
        out: list[str] = []
        tasks = {0: EchoTask(0, "a", writer=out.append), 1: EchoTask(1, "b", writer=out.append)}
        result = _scheduler(tasks, {0: [], 1: [0]}).run_sync()
        assert result.outcome == RunOutcome.DONE
        assert out == ["a", "b"]


# ======================================================================
# Scenario 2: missing dependency entry
# ======================================================================


class TestScenarioMissingEntry:

    def _tasks(self):
        return [EchoTask(0, "a", writer=lambda _: None), EchoTask(1, "b", writer=lambda _: None)]

    def test_rejected_by_default(self):
        with pytest.raises(MissingDependencyEntryError):
            FlowScheduler(self._tasks(), {0: []})

    @pytest.mark.asyncio
    async def test_never_ready_policy_keeps_baseline_behavior(self):
        scheduler = _scheduler(
            self._tasks(), {0: []},
            missing_policy=MissingDependencyPolicy.NEVER_READY,
            max_iterations=25,
        )
        result = await scheduler.run()

        # 基线行为：任务 1 永远不会启动，运行永不结束（这里由 max_iterations 截断）
        assert result.outcome == RunOutcome.STALLED
        assert result.iterations == 25
        assert result.start_order == [0]
        assert result.statuses[1] == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_no_dependencies_policy_runs_it(self):
        scheduler = _scheduler(self._tasks(), {0: []}, missing_policy="no_dependencies")
        result = await scheduler.run()
        assert result.outcome == RunOutcome.DONE
        assert sorted(result.start_order) == [0, 1]


# ======================================================================
# Scenario 3: cycle A -> B -> A
# ======================================================================


class TestScenarioCycle:

    def _tasks(self):
        return [EchoTask("A", "a", writer=lambda _: None), EchoTask("B", "b", writer=lambda _: None)]

    def test_cycle_rejected_before_start(self):
        with pytest.raises(CyclicDependencyError):
            FlowScheduler(self._tasks(), {"A": ["B"], "B": ["A"]})

    @pytest.mark.asyncio
    async def test_unvalidated_cycle_never_finishes(self):
        scheduler = _scheduler(self._tasks(), {"A": ["B"], "B": ["A"]}, validate=False, max_iterations=10)
        result = await scheduler.run()
        assert result.outcome == RunOutcome.STALLED
        assert result.start_order == []

    def test_dangling_reference_rejected(self):
        with pytest.raises(DanglingDependencyError):
            FlowScheduler(self._tasks(), {"A": [], "B": ["C"]})


# ======================================================================
# Invariants
# ======================================================================


class TestInvariants:

    @pytest.mark.asyncio
    async def test_task_not_started_before_all_prerequisites_done(self, clock):
        tasks = [
            SleepTask("a", 2, clock=clock),
            SleepTask("b", 4, clock=clock),
            EchoTask("c", "joined", writer=lambda _: None),
        ]
        recorder = Recorder(clock)
        result = await _scheduler(tasks, {"a": [], "b": [], "c": ["a", "b"]}, recorder).run()

        assert result.outcome == RunOutcome.DONE
        snapshot = recorder.snapshot_at_start["c"]
        assert snapshot["a"] == TaskStatus.DONE
        assert snapshot["b"] == TaskStatus.DONE
        assert recorder.started_at["c"] - recorder.started_at["b"] >= 4

    @pytest.mark.asyncio
    async def test_independent_tasks_end_in_same_done_set(self):
        out: list[str] = []
        tasks = [EchoTask(i, str(i), writer=out.append) for i in range(5)]
        result = await _scheduler(tasks, {i: [] for i in range(5)}).run()

        assert result.outcome == RunOutcome.DONE
        assert set(result.start_order) == set(range(5))
        assert sorted(out) == ["0", "1", "2", "3", "4"]
        assert result.iterations == 2

    @pytest.mark.asyncio
    async def test_pending_tasks_only_observed_running_after_start(self, clock):
        tasks = [SleepTask(0, 2, clock=clock), SleepTask(1, 1, clock=clock)]
        recorder = Recorder(clock)
        await _scheduler(tasks, {0: [], 1: [0]}, recorder).run()

        # while task 0 was running, task 1 was still pending
        assert recorder.snapshot_at_start[0][1] == TaskStatus.PENDING
        assert recorder.snapshot_at_start[1][1] == TaskStatus.RUNNING

    @pytest.mark.asyncio
    async def test_done_tasks_stay_done_through_later_polls(self, clock):
        tasks = [EchoTask(0, "x", writer=lambda _: None), SleepTask(1, 5, clock=clock)]
        result = await _scheduler(tasks, {0: [], 1: []}, Recorder(clock)).run()
        assert result.statuses[0] == TaskStatus.DONE
        assert result.iterations > 5


# ======================================================================
# Contract violations
# ======================================================================


class TestContractViolations:

    @pytest.mark.asyncio
    async def test_status_moving_backward(self):
        task = ScriptedTask(0, on_poll=[TaskStatus.PENDING, TaskStatus.RUNNING, TaskStatus.PENDING])
        with pytest.raises(ContractViolationError, match="moved from running to pending"):
            await _scheduler([task], {0: []}).run()

    @pytest.mark.asyncio
    async def test_done_is_terminal(self):
        task = ScriptedTask(0, after_start=TaskStatus.DONE, on_poll=[TaskStatus.PENDING, TaskStatus.DONE, TaskStatus.RUNNING])
        follower = EchoTask(1, "x", writer=lambda _: None)
        with pytest.raises(ContractViolationError, match="moved from done to running"):
            await _scheduler([task, follower], {0: [], 1: [0]}).run()

    @pytest.mark.asyncio
    async def test_running_without_start(self):
        sneaky = ScriptedTask(1, on_poll=[TaskStatus.RUNNING])
        blocker = ScriptedTask(0)
        with pytest.raises(ContractViolationError, match="before start"):
            await _scheduler([blocker, sneaky], {0: [], 1: [0]}).run()

    @pytest.mark.asyncio
    async def test_still_pending_after_start(self):
        lazy = ScriptedTask(0, after_start=TaskStatus.PENDING)
        with pytest.raises(ContractViolationError, match="still pending"):
            await _scheduler([lazy], {0: []}).run()

    @pytest.mark.asyncio
    async def test_task_must_be_pending_before_run(self):
        task = EchoTask(0, "x", writer=lambda _: None)
        task.start()
        with pytest.raises(ContractViolationError):
            await _scheduler([task], {0: []}).run()

    def test_duplicate_task_ids(self):
        tasks = [EchoTask(0, "a"), EchoTask(0, "b")]
        with pytest.raises(ValueError, match="Duplicate"):
            FlowScheduler(tasks, {0: []})

    def test_mapping_key_must_match_task_id(self):
        with pytest.raises(ValueError):
            FlowScheduler({1: EchoTask(0, "a")}, {1: []})

    @pytest.mark.asyncio
    async def test_scheduler_runs_once(self):
        scheduler = _scheduler([EchoTask(0, "a", writer=lambda _: None)], {0: []})
        await scheduler.run()
        with pytest.raises(RuntimeError):
            await scheduler.run()


# ======================================================================
# Failure propagation
# ======================================================================


class TestFailurePropagation:

    @pytest.mark.asyncio
    async def test_failed_task_skips_downstream(self):
        out: list[str] = []
        tasks = [
            BoomTask(0),
            EchoTask(1, "after boom", writer=out.append),
            EchoTask(2, "after after", writer=out.append),
            EchoTask(3, "independent", writer=out.append),
        ]
        recorder = Recorder()
        result = await _scheduler(tasks, {0: [], 1: [0], 2: [1], 3: []}, recorder).run()

        assert result.outcome == RunOutcome.FAILED
        assert not result.succeeded
        assert result.statuses == {
            0: TaskStatus.FAILED,
            1: TaskStatus.SKIPPED,
            2: TaskStatus.SKIPPED,
            3: TaskStatus.DONE,
        }
        assert out == ["independent"]
        assert 1 not in result.start_order and 2 not in result.start_order
        skipped = {d["task_id"] for e, d in recorder.events if e == "task_skipped"}
        assert skipped == {1, 2}
        assert result.ids_with_status(TaskStatus.SKIPPED) == [1, 2]

    @pytest.mark.asyncio
    async def test_failed_dependency_does_not_deadlock(self):
        tasks = [BoomTask("x"), EchoTask("y", "y", writer=lambda _: None)]
        result = await _scheduler(tasks, {"x": [], "y": ["x"]}, max_iterations=100).run()
        assert result.outcome == RunOutcome.FAILED
        assert result.iterations < 100


# ======================================================================
# Cancellation, stalling and wake-ups
# ======================================================================


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_from_event_callback(self, clock):
        tasks = [SleepTask(0, 1000, clock=clock), EchoTask(1, "never", writer=lambda _: None)]
        recorder = Recorder(clock)

        def cancel_on_third(event, data):
            recorder(event, data)
            if event == "iteration" and data["iteration"] == 3:
                scheduler.cancel()

        scheduler = _scheduler(tasks, {0: [], 1: [0]}, cancel_on_third)
        recorder.scheduler = scheduler
        result = await scheduler.run()

        assert result.outcome == RunOutcome.CANCELLED
        assert result.outcome != RunOutcome.DONE
        assert result.iterations == 3
        # Running tasks are left unresolved
        assert result.statuses[0] == TaskStatus.RUNNING
        assert result.statuses[1] == TaskStatus.PENDING
        assert scheduler.cancelled

    @pytest.mark.asyncio
    async def test_cancel_before_run(self):
        scheduler = _scheduler([EchoTask(0, "x", writer=lambda _: None)], {0: []})
        scheduler.cancel()
        result = await scheduler.run()
        assert result.outcome == RunOutcome.CANCELLED
        assert result.iterations == 0
        assert result.start_order == []

    @pytest.mark.asyncio
    async def test_cancel_from_another_thread_interrupts_wait(self):
        tasks = [SleepTask(0, 60)]
        scheduler = FlowScheduler(tasks, {0: []}, poll_interval=30)
        timer = threading.Timer(0.1, scheduler.cancel)
        timer.start()
        try:
            began = time.monotonic()
            result = await scheduler.run()
        finally:
            timer.cancel()
        assert result.outcome == RunOutcome.CANCELLED
        assert time.monotonic() - began < 5


class TestCadence:

    @pytest.mark.asyncio
    async def test_wake_hint_shortens_wait(self):
        tasks = [SleepTask(0, 0.05)]
        began = time.monotonic()
        result = await FlowScheduler(tasks, {0: []}, poll_interval=30).run()
        assert result.outcome == RunOutcome.DONE
        assert time.monotonic() - began < 5

    @pytest.mark.asyncio
    async def test_max_iterations_reports_stalled(self, clock):
        tasks = [SleepTask(0, 100, clock=clock)]
        result = await _scheduler(tasks, {0: []}, Recorder(clock), max_iterations=5).run()
        assert result.outcome == RunOutcome.STALLED
        assert result.iterations == 5
        assert result.statuses[0] == TaskStatus.RUNNING


class TestEvents:

    @pytest.mark.asyncio
    async def test_event_sequence(self):
        recorder = Recorder()
        await _scheduler([EchoTask(0, "x", writer=lambda _: None)], {0: []}, recorder).run()
        assert recorder.names() == [
            "iteration", "task_started",
            "iteration", "task_finished",
            "run_finished",
        ]
        result = recorder.events[-1][1]["result"]
        assert result.outcome == RunOutcome.DONE

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_stop_run(self):
        def broken(event, data):
            raise RuntimeError("ui crashed")

        result = await FlowScheduler(
            [EchoTask(0, "x", writer=lambda _: None)], {0: []}, poll_interval=0, on_event=broken
        ).run()
        assert result.outcome == RunOutcome.DONE
