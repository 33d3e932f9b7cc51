"""
DependencyGraph - Immutable prerequisite map for a flow run.
DependencyGraph - 一次流程运行所使用的不可变前置依赖表。

The graph holds:
  - entries: task_id -> frozenset of prerequisite task_ids
  - nothing else; task state lives in the tasks, not in the graph

图中只保存：
  - entries：task_id -> 前置任务 ID 的 frozenset
  - 不保存任何运行状态；状态属于任务本身

Key operations:
  - validate():          reject dangling ids, cycles and missing entries before a run
  - get_ready_ids():     find PENDING tasks whose prerequisites are all DONE
  - topological_sort():  Kahn's algorithm for a valid execution order
  - get_downstream():    everything that transitively depends on a task

核心操作：
  - validate():          运行前拒绝悬空引用、环与缺失条目
  - get_ready_ids():     找出所有前置依赖均已 DONE 的 PENDING 任务
  - topological_sort():  Kahn 算法确定合法执行顺序
  - get_downstream():    找出所有（传递地）依赖某任务的下游任务
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Collection, Iterable, Mapping

from schema import MissingDependencyPolicy, TaskId, TaskStatus

logger = logging.getLogger(__name__)


# ======================================================================
# Validation errors
# 校验错误
# ======================================================================

class GraphValidationError(ValueError):
    """
    Base class for dependency-graph configuration errors.
    依赖图配置错误的基类。
    """


class DanglingDependencyError(GraphValidationError):
    """A graph key or prerequisite does not name a known task."""

    def __init__(self, dangling: Mapping[TaskId, Collection[TaskId]]):
        self.dangling = dict(dangling)
        details = "; ".join(
            f"{owner!r} -> {sorted(map(repr, ids))}" for owner, ids in self.dangling.items()
        )
        super().__init__(f"Dependency graph references unknown tasks: {details}")


class CyclicDependencyError(GraphValidationError):
    """The graph contains a cycle; `cycle` lists it with the first id repeated at the end."""

    def __init__(self, cycle: list[TaskId]):
        self.cycle = cycle
        path = " -> ".join(repr(tid) for tid in cycle)
        super().__init__(f"Dependency graph contains a cycle: {path}")


class MissingDependencyEntryError(GraphValidationError):
    def __init__(self, missing: Collection[TaskId]):
        self.missing = list(missing)
        super().__init__(
            f"Tasks without a dependency entry: {self.missing!r} "
            f"(give them an empty list to make them roots)"
        )


# ======================================================================
# Graph
# ======================================================================

class DependencyGraph:
    """
    Mapping of task id to the set of task ids it depends on.
    任务 ID 到其前置任务 ID 集合的映射。

    Built once before the run starts and never mutated afterwards. A task
    with an empty set is immediately eligible; what a task *without* an
    entry means is decided by MissingDependencyPolicy.
    在运行前构建一次，之后不可修改。空集合的任务立即可执行；
    没有条目的任务如何处理由 MissingDependencyPolicy 决定。
    """

    def __init__(self, dependencies: Mapping[TaskId, Iterable[TaskId]] | None = None):
        self._deps: dict[TaskId, frozenset[TaskId]] = {
            tid: frozenset(prereqs) for tid, prereqs in (dependencies or {}).items()
        }
        # Reverse edges, used for downstream traversal.
        # 反向边：前置任务 -> 直接依赖它的任务
        self._dependents: dict[TaskId, set[TaskId]] = {}
        for tid, prereqs in self._deps.items():
            for dep in prereqs:
                self._dependents.setdefault(dep, set()).add(tid)

    # ------------------------------------------------------------------
    # Mapping-style access
    # 类映射访问
    # ------------------------------------------------------------------

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._deps

    def __len__(self) -> int:
        return len(self._deps)

    def __repr__(self) -> str:
        return f"DependencyGraph({self.summary()})"

    @property
    def task_ids(self) -> frozenset[TaskId]:
        return frozenset(self._deps)

    def dependencies_of(self, task_id: TaskId) -> frozenset[TaskId] | None:
        """
        Prerequisites of `task_id`, or None when the task has no entry.
        返回 `task_id` 的前置依赖；没有条目时返回 None（与空集合区分开）。
        """
        return self._deps.get(task_id)

    def dependents_of(self, task_id: TaskId) -> frozenset[TaskId]:
        return frozenset(self._dependents.get(task_id, ()))

    def as_dict(self) -> dict[TaskId, list[TaskId]]:
        return {tid: sorted(prereqs, key=repr) for tid, prereqs in self._deps.items()}

    # ------------------------------------------------------------------
    # Validation
    # 校验
    # ------------------------------------------------------------------

    def validate(
        self,
        task_ids: Iterable[TaskId],
        policy: MissingDependencyPolicy = MissingDependencyPolicy.REJECT,
    ) -> None:
        """
        Fail fast on configuration errors, in this order:
          1. dangling references (keys or prerequisites that are not tasks)
          2. tasks without an entry, when policy is REJECT
          3. cycles

        按顺序快速失败：悬空引用 -> 缺失条目（REJECT 策略）-> 环。
        """
        known = set(task_ids)

        dangling: dict[TaskId, set[TaskId]] = {}
        for tid, prereqs in self._deps.items():
            bad = {d for d in prereqs if d not in known}
            if tid not in known:
                bad.add(tid)
            if bad:
                dangling[tid] = bad
        if dangling:
            raise DanglingDependencyError(dangling)

        if policy == MissingDependencyPolicy.REJECT:
            missing = [tid for tid in known if tid not in self._deps]
            if missing:
                raise MissingDependencyEntryError(sorted(missing, key=repr))

        cycle = self.find_cycle()
        if cycle:
            raise CyclicDependencyError(cycle)

        logger.debug("[DAG] Validated %s", self.summary())

    def find_cycle(self) -> list[TaskId] | None:
        """
        Return one cycle as a path (first id repeated at the end), or None.
        Iterative DFS with white/grey/black colouring.

        以路径形式返回一个环（首尾 ID 相同），无环时返回 None。
        使用三色标记的迭代式 DFS。
        """
        WHITE, GREY, BLACK = 0, 1, 2
        color: dict[TaskId, int] = {}

        for root in self._deps:
            if color.get(root, WHITE) != WHITE:
                continue
            path: list[TaskId] = [root]
            stack = [iter(self._deps.get(root, ()))]
            color[root] = GREY
            while stack:
                nxt = next(stack[-1], None)
                if nxt is None:
                    stack.pop()
                    color[path.pop()] = BLACK
                    continue
                state = color.get(nxt, WHITE)
                if state == GREY:
                    return path[path.index(nxt):] + [nxt]
                if state == WHITE:
                    color[nxt] = GREY
                    path.append(nxt)
                    stack.append(iter(self._deps.get(nxt, ())))
        return None

    # ------------------------------------------------------------------
    # Readiness
    # 就绪检测（每轮从头计算，不做增量缓存）
    # ------------------------------------------------------------------

    def is_ready(
        self,
        task_id: TaskId,
        statuses: Mapping[TaskId, TaskStatus],
        policy: MissingDependencyPolicy = MissingDependencyPolicy.REJECT,
    ) -> bool:
        """
        True if every prerequisite of `task_id` is DONE.
        当 `task_id` 的所有前置依赖均为 DONE 时返回 True。

        A prerequisite that is not in `statuses` is never DONE. A task with
        no entry is ready only under NO_DEPENDENCIES.
        不在 `statuses` 中的前置依赖永远不算 DONE；没有条目的任务只在 NO_DEPENDENCIES 策略下就绪。
        """
        prereqs = self._deps.get(task_id)
        if prereqs is None:
            return policy == MissingDependencyPolicy.NO_DEPENDENCIES
        return all(statuses.get(dep) == TaskStatus.DONE for dep in prereqs)

    def get_ready_ids(
        self,
        statuses: Mapping[TaskId, TaskStatus],
        policy: MissingDependencyPolicy = MissingDependencyPolicy.REJECT,
    ) -> set[TaskId]:
        """
        Return the ids of PENDING tasks that can start now.
        返回当前可以启动的 PENDING 任务 ID 集合。
        """
        return {
            tid for tid, status in statuses.items()
            if status == TaskStatus.PENDING and self.is_ready(tid, statuses, policy)
        }

    # ------------------------------------------------------------------
    # Graph algorithms
    # 图算法
    # ------------------------------------------------------------------

    def get_downstream(self, task_id: TaskId) -> set[TaskId]:
        """
        Return every task that transitively depends on `task_id` (BFS).
        通过 BFS 返回所有（传递地）依赖 `task_id` 的下游任务，用于失败时级联跳过。
        """
        visited: set[TaskId] = set()
        queue: deque[TaskId] = deque(self._dependents.get(task_id, ()))
        while queue:
            tid = queue.popleft()
            if tid in visited:
                continue
            visited.add(tid)
            queue.extend(self._dependents.get(tid, ()))
        return visited

    def topological_sort(self) -> list[TaskId]:
        """
        Kahn's algorithm; returns task ids with every task after its prerequisites.
        Raises CyclicDependencyError if the graph has a cycle.

        Kahn 算法 - 返回合法拓扑顺序，保证每个任务出现在其全部前置依赖之后。
        """
        nodes: set[TaskId] = set(self._deps)
        for prereqs in self._deps.values():
            nodes.update(prereqs)

        in_degree: dict[TaskId, int] = {tid: len(self._deps.get(tid, ())) for tid in nodes}
        queue = deque(sorted((tid for tid, deg in in_degree.items() if deg == 0), key=repr))
        result: list[TaskId] = []

        while queue:
            tid = queue.popleft()
            result.append(tid)
            for child in sorted(self._dependents.get(tid, ()), key=repr):
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    queue.append(child)

        if len(result) != len(nodes):
            raise CyclicDependencyError(self.find_cycle() or [])
        return result

    def summary(self) -> str:
        """
        One-line summary for logging, e.g. ``3 tasks, 2 edges, 1 roots``.
        """
        edges = sum(len(p) for p in self._deps.values())
        roots = sum(1 for p in self._deps.values() if not p)
        return f"{len(self._deps)} tasks, {edges} edges, {roots} roots"
