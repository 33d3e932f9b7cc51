"""
Flow loader - builds the task collection and dependency graph from a flow file.
流程加载器 - 从流程文件构建任务集合与依赖图。

A flow file is JSON validated by schema.FlowSpec:
流程文件为 JSON，由 schema.FlowSpec 校验：

    {
      "name": "hello-world",
      "tasks": [
        {"id": 0, "kind": "echo",  "params": {"message": "Hello"}},
        {"id": 1, "kind": "sleep", "params": {"seconds": 3}, "depends_on": [0]},
        {"id": 2, "kind": "echo",  "params": {"message": "World"}, "depends_on": [1]}
      ]
    }

Every listed task gets a dependency entry (an empty one when `depends_on`
is omitted), so flows built here never contain tasks without an entry.
每个任务都会得到一个依赖条目（省略 `depends_on` 时为空），因此这里构建的流程不存在缺失条目的任务。
"""

from __future__ import annotations

import logging
from pathlib import Path

from dag.graph import DependencyGraph
from schema import FlowSpec, TaskId
from tasks.base import BaseTask
from tasks.registry import TaskRegistry, default_registry

logger = logging.getLogger(__name__)


def build_flow(
    spec: FlowSpec,
    registry: TaskRegistry | None = None,
) -> tuple[dict[TaskId, BaseTask], DependencyGraph]:
    """
    Instantiate every task of `spec` and return (tasks, graph).
    实例化 `spec` 中的所有任务，返回 (tasks, graph)。
    """
    registry = registry or default_registry()
    tasks: dict[TaskId, BaseTask] = {}
    dependencies: dict[TaskId, list[TaskId]] = {}
    for task_spec in spec.tasks:
        tasks[task_spec.id] = registry.build(task_spec)
        dependencies[task_spec.id] = list(task_spec.depends_on)

    graph = DependencyGraph(dependencies)
    logger.info("[DAG] Flow '%s' built: %s", spec.name, graph.summary())
    return tasks, graph


def load_flow_spec(path: str | Path) -> FlowSpec:
    text = Path(path).read_text(encoding="utf-8")
    return FlowSpec.model_validate_json(text)


def load_flow(
    path: str | Path,
    registry: TaskRegistry | None = None,
) -> tuple[FlowSpec, dict[TaskId, BaseTask], DependencyGraph]:
    """
    Read, validate and build a flow file.
    读取、校验并构建流程文件。
    """
    spec = load_flow_spec(path)
    tasks, graph = build_flow(spec, registry)
    return spec, tasks, graph
