"""
Pydantic data models for the flow runner.
Defines the enums and records shared by the graph, the scheduler and the tasks.
流程运行器的 Pydantic 数据模型。
定义了图、调度器与任务各层共享的枚举和数据结构。
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, Field, field_validator

# Task identifiers are opaque: ints or strings, stable for a run.
# 任务 ID 对调度器是不透明的：整数或字符串均可
TaskId = Union[int, str]


# ======================================================================
# Status enums
# 状态枚举
# ======================================================================

class TaskStatus(str, Enum):
    """
    Task lifecycle states, managed by TaskStateMachine.
    任务生命周期状态，由 TaskStateMachine 强制管理合法转移。

    Transition graph:
    转移图：
        PENDING -> RUNNING -> DONE
                           -> FAILED
        PENDING -> SKIPPED  (an upstream task failed / 上游失败)
    """
    PENDING = "pending"   # 等待前置依赖完成
    RUNNING = "running"   # 已启动，等待 poll 报告完成
    DONE = "done"         # 成功完成（终态）
    FAILED = "failed"     # 执行失败（终态）
    SKIPPED = "skipped"   # 因上游失败被跳过（终态）

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.FAILED, TaskStatus.SKIPPED})


class MissingDependencyPolicy(str, Enum):
    """
    What a task without an entry in the dependency map means.
    任务在依赖表中没有条目时的处理策略。
    """
    REJECT = "reject"                   # 视为配置错误，运行前直接拒绝
    NEVER_READY = "never_ready"         # 永远不会就绪（基线行为）
    NO_DEPENDENCIES = "no_dependencies" # 视为没有前置依赖


class RunOutcome(str, Enum):
    """
    How a scheduler run ended.
    一次调度运行的结束方式。
    """
    DONE = "done"           # 所有任务均 DONE
    FAILED = "failed"       # 全部到达终态，但存在 FAILED / SKIPPED
    CANCELLED = "cancelled" # 外部取消
    STALLED = "stalled"     # 超过 max_iterations 仍未结束


# ======================================================================
# Flow definition (input)
# 流程定义（输入）
# ======================================================================

class TaskSpec(BaseModel):
    """
    One task entry of a flow file.
    流程文件中的单个任务条目。
    """
    id: TaskId = Field(description="Unique task identifier")                        # 任务唯一 ID
    kind: str = Field(description="Registered task kind, e.g. 'echo', 'sleep'")     # 任务类型
    params: dict[str, Any] = Field(default_factory=dict, description="Kind-specific parameters")
    depends_on: list[TaskId] = Field(default_factory=list, description="IDs of prerequisite tasks")


class FlowSpec(BaseModel):
    """
    A whole flow: named list of task specs.
    完整流程：带名称的任务条目列表。
    """
    name: str = "flow"
    tasks: list[TaskSpec] = Field(default_factory=list)

    @field_validator("tasks")
    @classmethod
    def _unique_ids(cls, tasks: list[TaskSpec]) -> list[TaskSpec]:
        seen: set[TaskId] = set()
        for spec in tasks:
            if spec.id in seen:
                raise ValueError(f"duplicate task id {spec.id!r}")
            seen.add(spec.id)
        return tasks


# ======================================================================
# Run result (output)
# 运行结果（输出）
# ======================================================================

class RunResult(BaseModel):
    """
    Summary returned by FlowScheduler.run().
    FlowScheduler.run() 的返回值。
    """
    outcome: RunOutcome
    iterations: int = 0                                                  # 执行的循环轮数
    statuses: dict[TaskId, TaskStatus] = Field(default_factory=dict)     # 每个任务的最终状态
    start_order: list[TaskId] = Field(default_factory=list)              # 任务被 start() 的顺序
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.outcome == RunOutcome.DONE

    def ids_with_status(self, status: TaskStatus) -> list[TaskId]:
        return [tid for tid, st in self.statuses.items() if st == status]

    def summary(self) -> str:
        """
        One-line summary for logging, e.g. ``done after 7 iterations [3 done]``.
        """
        counts: dict[str, int] = {}
        for st in self.statuses.values():
            counts[st.value] = counts.get(st.value, 0) + 1
        parts = ", ".join(f"{v} {k}" for k, v in counts.items())
        return f"{self.outcome.value} after {self.iterations} iterations [{parts}]"
