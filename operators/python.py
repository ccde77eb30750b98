"""
Python Operator - Runs a Python callable as a task.
Python 算子 —— 将 Python 可调用对象作为任务执行。

Also home of XComArg, the handle returned when a `@task` function is called
while a DAG is being defined. Passing an XComArg into another task both
declares the dependency and, at run time, injects the upstream's XCom value.
这里也定义了 XComArg：在定义 DAG 时调用 `@task` 函数返回的句柄。
将 XComArg 传给另一个任务，既声明了依赖，也会在运行时注入上游的 XCom 值。
"""

from __future__ import annotations

import inspect
from typing import Any, Callable

from operators.base import BaseOperator


class XComArg:
    """
    Lazy reference to another task's XCom value.
    对另一个任务 XCom 值的惰性引用。
    """

    def __init__(self, operator: BaseOperator, key: str = "return_value"):
        self.operator = operator
        self.key = key

    def resolve(self, context: dict[str, Any]) -> Any:
        """Pull the referenced value from the running task's context. / 运行时从上下文中拉取引用的值。"""
        return context["ti"].pull(task_id=self.operator.task_id, key=self.key)

    def __getitem__(self, key: str) -> XComArg:
        """`extract()["rows"]` refers to the `rows` XCom key. / 引用同一任务的其他 XCom key。"""
        return XComArg(self.operator, key=key)

    # 依赖运算符直接代理到所包装的算子
    def __rshift__(self, other: Any) -> Any:
        return self.operator >> other

    def __lshift__(self, other: Any) -> Any:
        return self.operator << other

    def __rrshift__(self, other: Any) -> XComArg:
        self.operator.set_upstream(other)
        return self

    def __rlshift__(self, other: Any) -> XComArg:
        self.operator.set_downstream(other)
        return self

    def __repr__(self) -> str:
        return f"XComArg({self.operator.task_id!r}, key={self.key!r})"


def iter_xcom_args(value: Any):
    """Yield every XComArg nested in args/kwargs containers. / 遍历参数容器中嵌套的所有 XComArg。"""
    if isinstance(value, XComArg):
        yield value
    elif isinstance(value, (list, tuple, set)):
        for item in value:
            yield from iter_xcom_args(item)
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_xcom_args(item)


def resolve_xcom_args(value: Any, context: dict[str, Any]) -> Any:
    if isinstance(value, XComArg):
        return value.resolve(context)
    if isinstance(value, list):
        return [resolve_xcom_args(v, context) for v in value]
    if isinstance(value, tuple):
        return tuple(resolve_xcom_args(v, context) for v in value)
    if isinstance(value, dict):
        return {k: resolve_xcom_args(v, context) for k, v in value.items()}
    return value


class PythonOperator(BaseOperator):
    """
    Call `python_callable(*op_args, **op_kwargs)`; its return value is the
    task's XCom `return_value`.
    调用 `python_callable(*op_args, **op_kwargs)`，返回值即该任务的 XCom `return_value`。

    Context variables (logical_date, ds, ti, params, ...) are injected when
    the callable names them as parameters, or all at once through **kwargs.
    当可调用对象以参数名声明上下文变量（logical_date、ds、ti、params 等）时自动注入；
    声明了 **kwargs 时注入全部上下文。
    """

    template_fields = ("op_args", "op_kwargs")

    def __init__(
        self,
        task_id: str,
        python_callable: Callable[..., Any],
        op_args: list[Any] | tuple[Any, ...] | None = None,
        op_kwargs: dict[str, Any] | None = None,
        **kwargs: Any,
    ):
        if not callable(python_callable):
            raise TypeError(f"Task '{task_id}': python_callable must be callable")
        super().__init__(task_id=task_id, **kwargs)
        self.python_callable = python_callable
        self.op_args = list(op_args or [])
        self.op_kwargs = dict(op_kwargs or {})

        # 参数中引用的上游 XComArg 自动成为依赖
        for arg in iter_xcom_args([self.op_args, self.op_kwargs]):
            self.set_upstream(arg.operator)

    def execute(self, context: dict[str, Any]) -> Any:
        args = resolve_xcom_args(self.render_template(self.op_args, context), context)
        kwargs = resolve_xcom_args(self.render_template(self.op_kwargs, context), context)
        kwargs = inject_context(self.python_callable, args, kwargs, context)
        context["log"].info("Calling %s", getattr(self.python_callable, "__name__", repr(self.python_callable)))
        return self.python_callable(*args, **kwargs)


def inject_context(
    func: Callable[..., Any],
    args: list[Any],
    kwargs: dict[str, Any],
    context: dict[str, Any],
) -> dict[str, Any]:
    """
    Add context entries the callable asks for by name. Explicit arguments win.
    添加可调用对象按名称请求的上下文变量，显式传入的参数优先。
    """
    try:
        signature = inspect.signature(func)
    except (TypeError, ValueError):
        return kwargs

    params = list(signature.parameters.values())
    positional = [
        p.name for p in params
        if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
    ]
    filled = set(positional[:len(args)]) | set(kwargs)

    merged = dict(kwargs)
    accepts_var_kw = any(p.kind == inspect.Parameter.VAR_KEYWORD for p in params)
    for name, value in context.items():
        if name in filled:
            continue
        param = signature.parameters.get(name)
        if param is not None and param.kind in (
            inspect.Parameter.POSITIONAL_OR_KEYWORD, inspect.Parameter.KEYWORD_ONLY
        ):
            merged[name] = value
        elif param is None and accepts_var_kw:
            merged[name] = value
    return merged
