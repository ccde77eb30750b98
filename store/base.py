"""
State Store - Abstract persistence interface for DAG runs, task instances,
XComs and DAG paused flags.
状态存储 —— DAG 运行、任务实例、XCom 以及 DAG 暂停标记的抽象持久化接口。

Every state change of a task instance or a DAG run goes through a
compare-and-set on its prior state: the write only applies when the stored
state still equals `expected`. This is what stops two schedulers (or a
scheduler and a recovering engine) from dispatching the same instance twice.
任务实例和 DAG 运行的每次状态变化都基于先前状态做 compare-and-set：
只有存储中的状态仍等于 `expected` 时写入才会生效，从而避免同一实例被重复派发。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from schema import DagRun, DagRunState, DagRunType, TaskInstance, TaskState, XComEntry


class StateStore(ABC):
    """
    Abstract base class for state stores.
    所有状态存储的抽象基类。
    """

    # ------------------------------------------------------------------
    # DAG runs
    # DAG 运行
    # ------------------------------------------------------------------

    @abstractmethod
    def create_dag_run(self, run: DagRun, task_instances: list[TaskInstance]) -> DagRun:
        """
        Persist a new run together with its task instances, atomically.
        Raises DagRunAlreadyExists if the run_id is taken.
        原子地持久化新运行及其全部任务实例；run_id 已存在时抛出 DagRunAlreadyExists。
        """

    @abstractmethod
    def get_dag_run(self, run_id: str) -> DagRun:
        """Raises DagRunNotFound. / 不存在时抛出 DagRunNotFound。"""

    @abstractmethod
    def list_dag_runs(
        self,
        dag_id: str | None = None,
        state: DagRunState | None = None,
    ) -> list[DagRun]:
        """Runs ordered by logical date. / 按逻辑日期排序的运行列表。"""

    @abstractmethod
    def set_dag_run_state(
        self,
        run_id: str,
        expected: DagRunState,
        new_state: DagRunState,
        **changes: Any,
    ) -> DagRun | None:
        """CAS on the run state; None when the stored state differs. / 状态不符时返回 None。"""

    @abstractmethod
    def delete_dag_run(self, run_id: str) -> None:
        """Drop a run, its task instances and its XComs. / 删除运行及其任务实例与 XCom。"""

    # ------------------------------------------------------------------
    # Task instances
    # 任务实例
    # ------------------------------------------------------------------

    @abstractmethod
    def get_task_instance(self, run_id: str, task_id: str) -> TaskInstance:
        """Raises TaskInstanceNotFound. / 不存在时抛出 TaskInstanceNotFound。"""

    @abstractmethod
    def list_task_instances(self, run_id: str, state: TaskState | None = None) -> list[TaskInstance]:
        """Instances of one run, in task insertion order. / 按任务插入顺序返回。"""

    @abstractmethod
    def transition_task_instance(
        self,
        run_id: str,
        task_id: str,
        expected: TaskState,
        new_state: TaskState,
        **changes: Any,
    ) -> TaskInstance | None:
        """
        Compare-and-set: apply `new_state` and `changes` only if the stored
        state is `expected`. Returns the updated instance, or None if it did
        not apply.
        比较并设置：仅当存储中的状态等于 `expected` 时才写入，返回更新后的实例；未生效时返回 None。
        """

    @abstractmethod
    def update_task_instance(self, run_id: str, task_id: str, **changes: Any) -> TaskInstance:
        """Unconditional update (explicit clear / recovery). / 无条件更新，仅用于清除和恢复。"""

    # ------------------------------------------------------------------
    # XCom
    # ------------------------------------------------------------------

    @abstractmethod
    def set_xcom(self, entry: XComEntry, overwrite: bool = False) -> None:
        """Raises XComConflict when the key exists and overwrite is False."""

    @abstractmethod
    def get_xcom(self, run_id: str, task_id: str, key: str) -> XComEntry | None:
        ...

    @abstractmethod
    def list_xcoms(self, run_id: str, task_id: str | None = None) -> list[XComEntry]:
        ...

    @abstractmethod
    def delete_xcoms(self, run_id: str, task_id: str | None = None) -> int:
        """Returns the number of entries removed. / 返回删除的条目数。"""

    # ------------------------------------------------------------------
    # DAG flags
    # DAG 标记
    # ------------------------------------------------------------------

    @abstractmethod
    def get_paused(self, dag_id: str) -> bool | None:
        """None when the DAG was never paused or unpaused. / 从未设置过时返回 None。"""

    @abstractmethod
    def set_paused(self, dag_id: str, paused: bool) -> None:
        ...

    # ------------------------------------------------------------------
    # Maintenance
    # 维护
    # ------------------------------------------------------------------

    @abstractmethod
    def clear(self) -> None:
        """Remove everything. / 清空全部数据。"""

    def flush(self) -> None:
        """Persist pending writes; a no-op for stores that write through."""

    # ------------------------------------------------------------------
    # Convenience queries built on the primitives above
    # 基于上述原语的便捷查询
    # ------------------------------------------------------------------

    def find_dag_run(self, run_id: str) -> DagRun | None:
        return next((r for r in self.list_dag_runs() if r.run_id == run_id), None)

    def active_dag_runs(self, dag_id: str | None = None) -> list[DagRun]:
        runs = self.list_dag_runs(dag_id)
        return [r for r in runs if r.is_active]

    def latest_dag_run(self, dag_id: str, run_type: DagRunType | None = None) -> DagRun | None:
        runs = [r for r in self.list_dag_runs(dag_id) if run_type is None or r.run_type == run_type]
        return runs[-1] if runs else None
