"""
TaskFlow decorators - `@dag` and `@task`.
TaskFlow 装饰器 —— `@dag` 与 `@task`。

    @dag(schedule="@daily", start_date=datetime(2024, 1, 1))
    def etl():
        @task
        def extract():
            return {"rows": 3}

        @task
        def load(data, ds=None):
            print(ds, data["rows"])

        load(extract())

    etl_dag = etl()   # calling the decorated function builds the DAG / 调用即构建 DAG

Calling a `@task` function inside a DAG creates a PythonOperator and returns
an XComArg; passing that XComArg to another task wires the dependency.
在 DAG 内调用 `@task` 函数会创建 PythonOperator 并返回 XComArg；
把该 XComArg 传给另一个任务即建立依赖。
"""

from __future__ import annotations

import functools
import inspect
from typing import Any, Callable

from dag.graph import DAG, get_current_dag
from exceptions import DagValidationError
from operators.python import PythonOperator, XComArg


def _unique_task_id(dag: DAG, task_id: str) -> str:
    """extract, extract__1, extract__2 ... / 同名任务自动加后缀。"""
    if not dag.has_task(task_id):
        return task_id
    n = 1
    while dag.has_task(f"{task_id}__{n}"):
        n += 1
    return f"{task_id}__{n}"


class _TaskDecorator:
    """
    Callable wrapper produced by `@task`.
    `@task` 生成的可调用包装器。
    """

    def __init__(self, function: Callable[..., Any], operator_kwargs: dict[str, Any]):
        self.function = function
        self.operator_kwargs = operator_kwargs
        functools.update_wrapper(self, function)

    def override(self, **operator_kwargs: Any) -> _TaskDecorator:
        """Same function, different operator arguments (task_id, retries...)."""
        return _TaskDecorator(self.function, {**self.operator_kwargs, **operator_kwargs})

    def __call__(self, *args: Any, **kwargs: Any) -> XComArg:
        dag = self.operator_kwargs.get("dag") or get_current_dag()
        if dag is None:
            raise DagValidationError(
                f"@task '{self.function.__name__}' must be called inside a DAG definition"
            )
        op_kwargs = dict(self.operator_kwargs)
        op_kwargs.pop("dag", None)
        task_id = _unique_task_id(dag, op_kwargs.pop("task_id", self.function.__name__))
        op_kwargs.setdefault("doc", inspect.getdoc(self.function) or "")

        operator = PythonOperator(
            task_id=task_id,
            python_callable=self.function,
            op_args=args,
            op_kwargs=kwargs,
            dag=dag,
            **op_kwargs,
        )
        return XComArg(operator)


def task(python_callable: Callable[..., Any] | None = None, **operator_kwargs: Any):
    """
    Turn a function into a PythonOperator factory. Usable bare (`@task`) or
    with operator arguments (`@task(retries=2, task_id="x")`).
    将函数转换为 PythonOperator 工厂。可直接使用 `@task`，也可带参数 `@task(retries=2)`。
    """
    if python_callable is not None:
        return _TaskDecorator(python_callable, operator_kwargs)

    def decorator(func: Callable[..., Any]) -> _TaskDecorator:
        return _TaskDecorator(func, operator_kwargs)

    return decorator


def dag(dag_id: str | Callable[..., Any] | None = None, **dag_kwargs: Any):
    """
    Turn a function into a DAG factory. The DAG id defaults to the function
    name, the description to its docstring, and its keyword defaults become
    DAG params.
    将函数转换为 DAG 工厂。dag_id 默认为函数名，description 默认取文档字符串，
    函数的关键字参数默认值成为 DAG params。
    """
    name = dag_id if isinstance(dag_id, str) else None

    def decorator(func: Callable[..., Any]) -> Callable[..., DAG]:
        signature = inspect.signature(func)

        @functools.wraps(func)
        def factory(*args: Any, **kwargs: Any) -> DAG:
            bound = signature.bind_partial(*args, **kwargs)
            bound.apply_defaults()
            params = {**dag_kwargs.get("params", {}), **bound.arguments}
            options = {k: v for k, v in dag_kwargs.items() if k != "params"}
            options.setdefault("description", inspect.getdoc(func) or "")

            with DAG(dag_id=name or func.__name__, params=params, **options) as new_dag:
                func(*args, **kwargs)
            new_dag.fileloc = inspect.getsourcefile(func) or ""
            return new_dag

        return factory

    if callable(dag_id):
        return decorator(dag_id)  # bare @dag
    return decorator
