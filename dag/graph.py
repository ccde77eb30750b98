"""
DAG - Directed Acyclic Graph of tasks, the unit users author and register.
DAG —— 任务的有向无环图，是用户编写、注册的基本单元。

The DAG holds:
  - task_dict: task_id -> operator instance, in insertion order
  - edges: (upstream_id, downstream_id) pairs, the single source of truth
    for dependencies (operators ask the DAG for their relatives)
  - schedule metadata: schedule, start_date, end_date, catchup, max_active_runs

DAG 包含：
  - task_dict: task_id -> 算子实例（保持插入顺序）
  - edges:     (上游 ID, 下游 ID) 边集合，依赖关系的唯一权威来源（算子通过 DAG 查询上下游）
  - 调度元数据：schedule、start_date、end_date、catchup、max_active_runs

Key operations:
  - validate(): reject cycles and unknown task references
  - topological_sort(): Kahn's algorithm for execution ordering
  - freeze(): make the DAG immutable once registered

核心操作：
  - validate():          拒绝含环或引用未知任务的图
  - topological_sort():  Kahn 算法确定合法执行顺序
  - freeze():            注册后冻结，之后任何修改都会报错
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections import deque
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Iterable

import config
from exceptions import DagValidationError
from dag.timetable import Timetable, create_timetable
from schema import ensure_utc

if TYPE_CHECKING:
    from operators.base import BaseOperator

logger = logging.getLogger(__name__)

_DAG_ID_RE = re.compile(r"^[A-Za-z0-9_.\-]+$")

# Stack of DAGs opened with `with DAG(...)`; operators created inside attach
# to the innermost one.
# `with DAG(...)` 打开的 DAG 栈；在其中创建的算子自动挂到最内层 DAG 上。
_dag_context_stack: list[DAG] = []


def get_current_dag() -> DAG | None:
    return _dag_context_stack[-1] if _dag_context_stack else None


class DAG:
    """
    A named set of tasks plus the dependency edges between them.
    一组具名任务及其依赖边。

    Usage:
        with DAG("etl", schedule="@daily", start_date=datetime(2024, 1, 1)) as dag:
            extract = BashOperator(task_id="extract", bash_command="echo hi")
            load = EmptyOperator(task_id="load")
            extract >> load
    """

    def __init__(
        self,
        dag_id: str,
        schedule: str | timedelta | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        catchup: bool | None = None,
        max_active_runs: int | None = None,
        default_args: dict[str, Any] | None = None,
        description: str = "",
        tags: Iterable[str] | None = None,
        params: dict[str, Any] | None = None,
        is_paused_upon_creation: bool = False,
    ):
        self.dag_id = dag_id
        self.schedule = schedule
        self.timetable: Timetable = create_timetable(schedule)  # 调度表达式解析失败会在此处抛 ScheduleError
        self.start_date = ensure_utc(start_date) if start_date else None
        self.end_date = ensure_utc(end_date) if end_date else None
        self.catchup = config.CATCHUP_BY_DEFAULT if catchup is None else catchup
        self.max_active_runs = max_active_runs or config.MAX_ACTIVE_RUNS
        self.default_args = dict(default_args or {})
        self.description = description
        self.tags = list(tags or [])
        self.params = dict(params or {})
        self.is_paused_upon_creation = is_paused_upon_creation
        self.fileloc = ""  # 由 DagRegistry.collect_dags 填入来源文件

        self.task_dict: dict[str, BaseOperator] = {}   # 所有任务，key 为 task_id
        self._edges: list[tuple[str, str]] = []        # 依赖边（有序去重）
        self._frozen = False

    # ------------------------------------------------------------------
    # Context manager
    # 上下文管理器
    # ------------------------------------------------------------------

    def __enter__(self) -> DAG:
        _dag_context_stack.append(self)
        return self

    def __exit__(self, *exc_info: Any) -> None:
        _dag_context_stack.pop()

    # ------------------------------------------------------------------
    # Mutation (only before freeze)
    # 结构变更（仅在冻结前允许）
    # ------------------------------------------------------------------

    def _check_mutable(self) -> None:
        if self._frozen:
            raise DagValidationError(f"DAG '{self.dag_id}' is registered and can no longer be modified")

    def add_task(self, task: BaseOperator) -> None:
        self._check_mutable()
        existing = self.task_dict.get(task.task_id)
        if existing is not None and existing is not task:
            raise DagValidationError(
                f"DAG '{self.dag_id}': duplicate task_id '{task.task_id}'"
            )
        self.task_dict[task.task_id] = task

    def add_edge(self, upstream_id: str, downstream_id: str) -> None:
        """
        Record upstream -> downstream. References are checked by validate(),
        not here, so a bad edge is reported at registration time.
        记录 上游 -> 下游 依赖。引用合法性由 validate() 在注册时统一检查。
        """
        self._check_mutable()
        edge = (upstream_id, downstream_id)
        if edge not in self._edges:
            self._edges.append(edge)

    # ------------------------------------------------------------------
    # Queries
    # 查询方法
    # ------------------------------------------------------------------

    @property
    def edges(self) -> list[tuple[str, str]]:
        return list(self._edges)

    @property
    def task_ids(self) -> list[str]:
        return list(self.task_dict)

    @property
    def tasks(self) -> list[BaseOperator]:
        return list(self.task_dict.values())

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def has_task(self, task_id: str) -> bool:
        return task_id in self.task_dict

    def get_task(self, task_id: str) -> BaseOperator:
        try:
            return self.task_dict[task_id]
        except KeyError:
            raise KeyError(f"Task '{task_id}' not found in DAG '{self.dag_id}'") from None

    def upstream_ids(self, task_id: str) -> set[str]:
        """IDs of tasks `task_id` directly depends on. / `task_id` 的直接上游。"""
        return {up for up, down in self._edges if down == task_id}

    def downstream_ids(self, task_id: str) -> set[str]:
        """IDs of tasks that directly depend on `task_id`. / `task_id` 的直接下游。"""
        return {down for up, down in self._edges if up == task_id}

    def get_downstream(self, task_id: str) -> set[str]:
        """
        All transitive downstream task IDs via BFS.
        通过 BFS 返回 `task_id` 的全部传递下游。
        """
        visited: set[str] = set()
        queue: deque[str] = deque(self.downstream_ids(task_id))
        while queue:
            tid = queue.popleft()
            if tid in visited:
                continue
            visited.add(tid)
            queue.extend(self.downstream_ids(tid))
        return visited

    @property
    def roots(self) -> list[str]:
        """Tasks with no upstream. / 没有上游的任务。"""
        has_upstream = {down for _, down in self._edges}
        return [tid for tid in self.task_dict if tid not in has_upstream]

    @property
    def leaves(self) -> list[str]:
        """Tasks with no downstream. / 没有下游的任务。"""
        has_downstream = {up for up, _ in self._edges}
        return [tid for tid in self.task_dict if tid not in has_downstream]

    # ------------------------------------------------------------------
    # Graph algorithms
    # 图算法
    # ------------------------------------------------------------------

    def find_cycle(self) -> list[str] | None:
        """
        Return one cycle as a closed path [a, b, ..., a], or None.
        返回一个环的闭合路径 [a, b, ..., a]；无环时返回 None。
        """
        # 三色 DFS：0 = 未访问，1 = 在当前递归栈中，2 = 已完成
        color: dict[str, int] = {}
        adjacency: dict[str, list[str]] = {}
        for up, down in self._edges:
            adjacency.setdefault(up, []).append(down)

        nodes = list(self.task_dict)
        for up, down in self._edges:
            for tid in (up, down):
                if tid not in self.task_dict and tid not in nodes:
                    nodes.append(tid)

        for start in nodes:
            if color.get(start, 0):
                continue
            path: list[str] = [start]
            stack: list[tuple[str, Iterable[str]]] = [(start, iter(adjacency.get(start, [])))]
            color[start] = 1
            while stack:
                node, children = stack[-1]
                child = next(children, None)
                if child is None:
                    color[node] = 2
                    stack.pop()
                    path.pop()
                    continue
                state = color.get(child, 0)
                if state == 1:
                    # 回边：从 child 在路径中的位置截取出环
                    return path[path.index(child):] + [child]
                if state == 0:
                    color[child] = 1
                    path.append(child)
                    stack.append((child, iter(adjacency.get(child, []))))
        return None

    def topological_sort(self) -> list[str]:
        """
        Kahn's algorithm - task IDs in a valid execution order. Ties keep
        insertion order, so the result is deterministic.

        Kahn 算法 —— 返回任务 ID 的合法拓扑执行顺序。
        同一层级内保持插入顺序，结果是确定的。
        """
        in_degree: dict[str, int] = {tid: 0 for tid in self.task_dict}
        for _, down in self._edges:
            if down in in_degree:
                in_degree[down] += 1

        queue = deque(tid for tid, deg in in_degree.items() if deg == 0)
        result: list[str] = []
        while queue:
            tid = queue.popleft()
            result.append(tid)
            for down in sorted(self.downstream_ids(tid), key=self.task_ids.index):
                in_degree[down] -= 1
                if in_degree[down] == 0:
                    queue.append(down)

        if len(result) != len(self.task_dict):
            cycle = self.find_cycle() or []
            raise DagValidationError(
                f"DAG '{self.dag_id}' contains a cycle: {' -> '.join(cycle)}"
            )
        return result

    # ------------------------------------------------------------------
    # Validation & freezing
    # 校验与冻结
    # ------------------------------------------------------------------

    def validate(self) -> None:
        """
        Raise DagValidationError unless the DAG is well formed.
        校验 DAG 结构，不合法时抛出 DagValidationError：
          1. dag_id 非空且只含合法字符
          2. 所有边的端点都存在
          3. 图中无环
        """
        if not self.dag_id or not _DAG_ID_RE.match(self.dag_id):
            raise DagValidationError(f"Invalid dag_id: {self.dag_id!r}")

        for up, down in self._edges:
            for tid in (up, down):
                if tid not in self.task_dict:
                    raise DagValidationError(
                        f"DAG '{self.dag_id}': edge {up} -> {down} references unknown task '{tid}'"
                    )

        cycle = self.find_cycle()
        if cycle:
            raise DagValidationError(
                f"DAG '{self.dag_id}' contains a cycle: {' -> '.join(cycle)}"
            )

        for task in self.task_dict.values():
            if task.dag is not self:
                raise DagValidationError(
                    f"DAG '{self.dag_id}': task '{task.task_id}' belongs to another DAG"
                )

    def freeze(self) -> None:
        self._frozen = True

    @property
    def version(self) -> str:
        """
        Short hash of the DAG structure; stamped onto every DagRun.
        DAG 结构的短哈希，写入每个 DagRun 以便追溯。
        """
        digest = hashlib.sha1()
        digest.update(self.dag_id.encode())
        digest.update(repr(self.schedule).encode())
        for tid, task in self.task_dict.items():
            digest.update(f"{tid}:{type(task).__name__}:{task.trigger_rule.value}".encode())
        for up, down in self._edges:
            digest.update(f"{up}>{down}".encode())
        return digest.hexdigest()[:12]

    # ------------------------------------------------------------------
    # Display helpers
    # 展示辅助方法
    # ------------------------------------------------------------------

    def summary(self) -> str:
        """
        One-line summary for logging, e.g. DAG[etl: 3 tasks, 2 edges, @daily]
        生成单行摘要，用于日志输出。
        """
        return (
            f"DAG[{self.dag_id}: {len(self.task_dict)} tasks, "
            f"{len(self._edges)} edges, {self.timetable.summary}]"
        )

    def __repr__(self) -> str:
        return f"<DAG: {self.dag_id}>"
