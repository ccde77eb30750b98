"""
Base Operator - Abstract interface for every task in a DAG.
BaseOperator —— DAG 中所有任务的抽象接口。

Each operator exposes:
  - task_id, the identifier unique within its DAG
  - a retry policy (retries, retry_delay, exponential backoff, cap)
  - a trigger rule deciding readiness from upstream outcomes
  - execute(context) to actually do the work; its return value becomes the
    task's XCom `return_value`

每个算子暴露：
  - task_id：在所属 DAG 内唯一的标识
  - 重试策略（retries、retry_delay、指数退避及上限）
  - 触发规则：根据上游结果决定是否就绪
  - execute(context)：实际执行逻辑，其返回值会作为该任务的 XCom `return_value`

Dependencies are declared with `>>` / `<<` (or set_downstream /
set_upstream) and stored on the DAG, never on the operator itself.
依赖通过 `>>` / `<<`（或 set_downstream / set_upstream）声明，存储在 DAG 上而非算子自身。
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Callable

import config
from dag.graph import DAG, get_current_dag
from exceptions import DagValidationError
from schema import TriggerRule

_NOTSET: Any = object()

_TEMPLATE_RE = re.compile(r"\{\{\s*([A-Za-z_][\w.]*)\s*\}\}")


def _as_timedelta(value: timedelta | float | int | None) -> timedelta | None:
    if value is None or isinstance(value, timedelta):
        return value
    return timedelta(seconds=float(value))


def _as_task(obj: Any) -> BaseOperator:
    """Accept an operator or an XComArg (which wraps one). / 接受算子或包装算子的 XComArg。"""
    if isinstance(obj, BaseOperator):
        return obj
    operator = getattr(obj, "operator", None)
    if isinstance(operator, BaseOperator):
        return operator
    raise TypeError(f"Cannot set a dependency on {obj!r}")


def _as_tasks(objs: Any) -> list[BaseOperator]:
    if isinstance(objs, (list, tuple, set)):
        return [_as_task(o) for o in objs]
    return [_as_task(objs)]


class BaseOperator(ABC):
    """
    Abstract base class for all operators.
    所有算子的抽象基类。
    所有具体算子（PythonOperator、BashOperator、EmailOperator 等）都继承自此类。
    """

    # Attributes rendered with {{ ... }} context values before execute().
    # 执行前用 {{ ... }} 上下文变量渲染的属性名。
    template_fields: tuple[str, ...] = ()

    def __init__(
        self,
        task_id: str,
        dag: DAG | None = None,
        retries: int = _NOTSET,
        retry_delay: timedelta | float = _NOTSET,
        retry_exponential_backoff: bool = _NOTSET,
        max_retry_delay: timedelta | float | None = _NOTSET,
        trigger_rule: TriggerRule | str = _NOTSET,
        execution_timeout: timedelta | float | None = _NOTSET,
        do_xcom_push: bool = True,
        on_success_callback: Callable[[dict[str, Any]], None] | None = None,
        on_failure_callback: Callable[[dict[str, Any]], None] | None = None,
        on_retry_callback: Callable[[dict[str, Any]], None] | None = None,
        doc: str = "",
    ):
        if not task_id or not isinstance(task_id, str):
            raise DagValidationError(f"Invalid task_id: {task_id!r}")
        dag = dag or get_current_dag()
        defaults = dag.default_args if dag is not None else {}

        def pick(name: str, value: Any, fallback: Any) -> Any:
            # 显式参数 > DAG default_args > 全局配置
            return value if value is not _NOTSET else defaults.get(name, fallback)

        self.task_id = task_id
        self.retries = int(pick("retries", retries, config.DEFAULT_RETRIES))
        self.retry_delay = _as_timedelta(
            pick("retry_delay", retry_delay, timedelta(seconds=config.DEFAULT_RETRY_DELAY_SECONDS))
        )
        self.retry_exponential_backoff = bool(pick("retry_exponential_backoff", retry_exponential_backoff, False))
        self.max_retry_delay = _as_timedelta(pick("max_retry_delay", max_retry_delay, None))
        self.trigger_rule = TriggerRule(pick("trigger_rule", trigger_rule, config.DEFAULT_TRIGGER_RULE))
        self.execution_timeout = _as_timedelta(
            pick("execution_timeout", execution_timeout, config.TASK_EXECUTION_TIMEOUT or None)
        )
        self.do_xcom_push = do_xcom_push
        self.on_success_callback = on_success_callback or defaults.get("on_success_callback")
        self.on_failure_callback = on_failure_callback or defaults.get("on_failure_callback")
        self.on_retry_callback = on_retry_callback or defaults.get("on_retry_callback")
        self.doc = doc

        if self.retries < 0:
            raise DagValidationError(f"Task '{task_id}': retries must be >= 0")

        self.dag: DAG | None = None
        if dag is not None:
            self.dag = dag
            dag.add_task(self)

    # ------------------------------------------------------------------
    # Execution
    # 执行
    # ------------------------------------------------------------------

    @abstractmethod
    def execute(self, context: dict[str, Any]) -> Any:
        """
        Do the work. The return value is pushed to XCom as `return_value`.
        执行实际工作，返回值会作为 `return_value` 推送到 XCom。
        """

    def render_template(self, value: Any, context: dict[str, Any]) -> Any:
        """
        Substitute `{{ name }}` / `{{ dag_run.conf }}` placeholders from the
        task context. Unknown names are left untouched.
        用任务上下文替换 `{{ name }}` / `{{ dag_run.conf }}` 形式的占位符，未知变量保持原样。
        """
        if isinstance(value, str):
            return _TEMPLATE_RE.sub(lambda m: _lookup(context, m.group(1), m.group(0)), value)
        if isinstance(value, list):
            return [self.render_template(v, context) for v in value]
        if isinstance(value, tuple):
            return tuple(self.render_template(v, context) for v in value)
        if isinstance(value, dict):
            return {k: self.render_template(v, context) for k, v in value.items()}
        return value

    # ------------------------------------------------------------------
    # Dependencies
    # 依赖声明
    # ------------------------------------------------------------------

    @property
    def upstream_task_ids(self) -> set[str]:
        return self.dag.upstream_ids(self.task_id) if self.dag else set()

    @property
    def downstream_task_ids(self) -> set[str]:
        return self.dag.downstream_ids(self.task_id) if self.dag else set()

    @staticmethod
    def _link(upstream: BaseOperator, downstream: BaseOperator) -> None:
        dag = upstream.dag or downstream.dag
        if dag is None:
            raise DagValidationError(
                f"Cannot link '{upstream.task_id}' -> '{downstream.task_id}': neither task belongs to a DAG"
            )
        for task in (upstream, downstream):
            if task.dag is None:
                task.dag = dag
                dag.add_task(task)
        # 跨 DAG 的边会记录到上游所在 DAG，并在注册校验时因引用未知任务被拒绝
        dag.add_edge(upstream.task_id, downstream.task_id)

    def set_downstream(self, others: Any) -> None:
        for other in _as_tasks(others):
            self._link(self, other)

    def set_upstream(self, others: Any) -> None:
        for other in _as_tasks(others):
            self._link(other, self)

    def __rshift__(self, other: Any) -> Any:
        """self >> other"""
        self.set_downstream(other)
        return other

    def __lshift__(self, other: Any) -> Any:
        """self << other"""
        self.set_upstream(other)
        return other

    def __rrshift__(self, other: Any) -> BaseOperator:
        """[a, b] >> self"""
        self.set_upstream(other)
        return self

    def __rlshift__(self, other: Any) -> BaseOperator:
        """[a, b] << self"""
        self.set_downstream(other)
        return self

    def __repr__(self) -> str:
        return f"<Task({type(self).__name__}): {self.task_id}>"


def chain(*tasks: Any) -> None:
    """
    chain(a, [b, c], d) == a >> [b, c] >> d
    按顺序串联任务（列表内的任务彼此并行）。
    """
    for upstream, downstream in zip(tasks, tasks[1:]):
        for up in _as_tasks(upstream):
            up.set_downstream(downstream)


def _lookup(context: dict[str, Any], dotted: str, default: str) -> str:
    current: Any = context
    for part in dotted.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif hasattr(current, part):
            current = getattr(current, part)
        else:
            return default
    return str(current)

