"""
Task context - what an operator sees while it runs.
任务上下文 —— 算子运行时可以访问的全部信息。

Context keys / 上下文键：
  dag, task, ti, dag_run, run_id, logical_date, ds, ds_nodash, ts,
  data_interval_start, data_interval_end, params, conf, log, try_number
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from schema import DagRun, TaskInstance
from store.xcom import RETURN_VALUE_KEY, XComChannel


class RuntimeTaskInstance:
    """
    The `ti` object handed to running tasks: the TaskInstance record plus
    XCom helpers bound to the current run.
    交给运行中任务的 `ti` 对象：TaskInstance 记录加上绑定当前运行的 XCom 辅助方法。
    """

    def __init__(self, ti: TaskInstance, xcom: XComChannel):
        self._ti = ti
        self._xcom = xcom

    @property
    def task_id(self) -> str:
        return self._ti.task_id

    @property
    def run_id(self) -> str:
        return self._ti.run_id

    @property
    def dag_id(self) -> str:
        return self._ti.dag_id

    @property
    def try_number(self) -> int:
        return self._ti.try_number

    @property
    def max_tries(self) -> int:
        return self._ti.max_tries

    @property
    def state(self):
        return self._ti.state

    @property
    def log_path(self) -> str:
        return self._ti.log_path

    def pull(self, task_id: str, key: str = RETURN_VALUE_KEY) -> Any:
        """Strict read; raises XComNotFound. / 严格读取，不存在时抛出 XComNotFound。"""
        return self._xcom.get(self.run_id, task_id, key)

    def xcom_pull(
        self,
        task_ids: str | Iterable[str] | None = None,
        key: str = RETURN_VALUE_KEY,
        default: Any = None,
    ) -> Any:
        """
        Lenient read. A single task id returns one value, a list of ids
        returns a list; None reads this task's own entries.
        宽松读取。传单个 task_id 返回单个值，传列表返回列表；None 表示读取当前任务自己的条目。
        """
        if task_ids is None:
            task_ids = self.task_id
        if isinstance(task_ids, str):
            return self._xcom.get_or_default(self.run_id, task_ids, key, default)
        return [self._xcom.get_or_default(self.run_id, tid, key, default) for tid in task_ids]

    def xcom_push(self, key: str, value: Any) -> None:
        self._xcom.put(self.run_id, self.task_id, key, value, dag_id=self.dag_id)

    def __repr__(self) -> str:
        return f"<TaskInstance: {self.dag_id}.{self.task_id} {self.run_id} [try {self.try_number}]>"


def build_context(
    dag,
    task,
    dag_run: DagRun,
    ti: RuntimeTaskInstance,
    log: logging.Logger,
) -> dict[str, Any]:
    """
    Assemble the template/injection context for one attempt.
    为一次尝试组装模板渲染与参数注入所用的上下文。
    """
    logical_date = dag_run.logical_date
    return {
        "dag": dag,
        "task": task,
        "ti": ti,
        "dag_run": dag_run,
        "run_id": dag_run.run_id,
        "logical_date": logical_date,
        "ds": logical_date.strftime("%Y-%m-%d"),
        "ds_nodash": logical_date.strftime("%Y%m%d"),
        "ts": logical_date.isoformat(),
        "data_interval_start": dag_run.data_interval_start,
        "data_interval_end": dag_run.data_interval_end,
        "params": {**dag.params, **dag_run.conf},   # 手动触发的 conf 覆盖 DAG 默认 params
        "conf": dict(dag_run.conf),
        "log": log,
        "try_number": ti.try_number,
    }
