"""
DAG module - Core engine for dependency-ordered task execution.
DAG 模块 - 按依赖顺序执行任务的核心引擎。

Components:
  - graph.py:         DependencyGraph and graph validation
  - state_machine.py: Task lifecycle state machine
  - scheduler.py:     Cooperative polling loop (FlowScheduler)
  - loader.py:        Flow file -> tasks + graph (import it directly)

模块组成：
  - graph.py:         DependencyGraph 数据结构与图校验（环检测、悬空引用等）
  - state_machine.py: 任务生命周期状态机（强制合法状态转移）
  - scheduler.py:     协作式轮询调度循环（FlowScheduler）
  - loader.py:        流程文件 -> 任务 + 图（需直接导入 dag.loader）
"""

from dag.graph import (                   # 依赖图与校验错误
    CyclicDependencyError,
    DanglingDependencyError,
    DependencyGraph,
    GraphValidationError,
    MissingDependencyEntryError,
)
from dag.state_machine import InvalidTransitionError, TaskStateMachine  # 任务状态机
from dag.scheduler import ContractViolationError, FlowScheduler        # 调度循环
