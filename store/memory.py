"""
In-memory State Store - dictionaries guarded by a re-entrant lock.
内存状态存储 —— 由可重入锁保护的字典。

Records are pydantic models; every read returns a copy so callers never
mutate stored state behind the lock's back.
记录均为 pydantic 模型；每次读取都返回副本，调用方无法绕过锁修改存储中的状态。
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator

from exceptions import DagRunAlreadyExists, DagRunNotFound, TaskInstanceNotFound, XComConflict
from schema import DagRun, DagRunState, TaskInstance, TaskState, XComEntry
from store.base import StateStore

logger = logging.getLogger(__name__)


class InMemoryStateStore(StateStore):
    """
    Process-local store. Also the base of JsonFileStateStore, which overrides
    `_guard` to share the state file between processes and `_mutated` to
    write the snapshot.
    进程内存储，同时也是 JsonFileStateStore 的基类（后者重写 `_guard` 以在进程间共享状态文件，
    重写 `_mutated` 以写入快照）。
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._runs: dict[str, DagRun] = {}
        self._task_instances: dict[str, dict[str, TaskInstance]] = {}   # run_id -> task_id -> TI
        self._xcoms: dict[tuple[str, str, str], XComEntry] = {}         # (run_id, task_id, key) -> entry
        self._paused: dict[str, bool] = {}

    @contextmanager
    def _guard(self) -> Iterator[None]:
        """Held around every read and write. / 每次读写都在其保护下进行。"""
        with self._lock:
            yield

    def _mutated(self) -> None:
        """Hook called (under the lock) after every successful write. / 每次写入成功后（持锁）调用的钩子。"""

    # ------------------------------------------------------------------
    # DAG runs
    # DAG 运行
    # ------------------------------------------------------------------

    def create_dag_run(self, run: DagRun, task_instances: list[TaskInstance]) -> DagRun:
        with self._guard():
            if run.run_id in self._runs:
                raise DagRunAlreadyExists(f"DagRun '{run.run_id}' already exists for DAG '{run.dag_id}'")
            self._runs[run.run_id] = run.model_copy(deep=True)
            self._task_instances[run.run_id] = {ti.task_id: ti.model_copy() for ti in task_instances}
            self._mutated()
            logger.debug("[Store] Created %s with %d task instances", run.run_id, len(task_instances))
            return run.model_copy(deep=True)

    def get_dag_run(self, run_id: str) -> DagRun:
        with self._guard():
            run = self._runs.get(run_id)
            if run is None:
                raise DagRunNotFound(f"DagRun '{run_id}' not found")
            return run.model_copy(deep=True)

    def find_dag_run(self, run_id: str) -> DagRun | None:
        with self._guard():
            run = self._runs.get(run_id)
            return run.model_copy(deep=True) if run else None

    def list_dag_runs(self, dag_id: str | None = None, state: DagRunState | None = None) -> list[DagRun]:
        with self._guard():
            runs = [
                r.model_copy(deep=True) for r in self._runs.values()
                if (dag_id is None or r.dag_id == dag_id) and (state is None or r.state == state)
            ]
        return sorted(runs, key=lambda r: (r.logical_date, r.created_at))

    def set_dag_run_state(
        self,
        run_id: str,
        expected: DagRunState,
        new_state: DagRunState,
        **changes: Any,
    ) -> DagRun | None:
        with self._guard():
            run = self._runs.get(run_id)
            if run is None:
                raise DagRunNotFound(f"DagRun '{run_id}' not found")
            if run.state != expected:
                return None
            updated = run.model_copy(update={**changes, "state": new_state})
            self._runs[run_id] = updated
            self._mutated()
            return updated.model_copy(deep=True)

    def delete_dag_run(self, run_id: str) -> None:
        with self._guard():
            if self._runs.pop(run_id, None) is None:
                raise DagRunNotFound(f"DagRun '{run_id}' not found")
            self._task_instances.pop(run_id, None)
            for key in [k for k in self._xcoms if k[0] == run_id]:
                del self._xcoms[key]
            self._mutated()
            logger.info("[Store] Deleted %s", run_id)

    # ------------------------------------------------------------------
    # Task instances
    # 任务实例
    # ------------------------------------------------------------------

    def _ti(self, run_id: str, task_id: str) -> TaskInstance:
        ti = self._task_instances.get(run_id, {}).get(task_id)
        if ti is None:
            raise TaskInstanceNotFound(f"Task instance '{task_id}' not found in run '{run_id}'")
        return ti

    def get_task_instance(self, run_id: str, task_id: str) -> TaskInstance:
        with self._guard():
            return self._ti(run_id, task_id).model_copy()

    def list_task_instances(self, run_id: str, state: TaskState | None = None) -> list[TaskInstance]:
        with self._guard():
            return [
                ti.model_copy() for ti in self._task_instances.get(run_id, {}).values()
                if state is None or ti.state == state
            ]

    def transition_task_instance(
        self,
        run_id: str,
        task_id: str,
        expected: TaskState,
        new_state: TaskState,
        **changes: Any,
    ) -> TaskInstance | None:
        with self._guard():
            ti = self._ti(run_id, task_id)
            if ti.state != expected:
                return None
            updated = ti.model_copy(update={**changes, "state": new_state})
            self._task_instances[run_id][task_id] = updated
            self._mutated()
            return updated.model_copy(deep=True)

    def update_task_instance(self, run_id: str, task_id: str, **changes: Any) -> TaskInstance:
        with self._guard():
            updated = self._ti(run_id, task_id).model_copy(update=changes)
            self._task_instances[run_id][task_id] = updated
            self._mutated()
            return updated.model_copy(deep=True)

    # ------------------------------------------------------------------
    # XCom
    # ------------------------------------------------------------------

    def set_xcom(self, entry: XComEntry, overwrite: bool = False) -> None:
        with self._guard():
            if entry.store_key in self._xcoms and not overwrite:
                raise XComConflict(
                    f"XCom '{entry.key}' of task '{entry.task_id}' in run '{entry.run_id}' is already set"
                )
            self._xcoms[entry.store_key] = entry.model_copy(deep=True)
            self._mutated()

    def get_xcom(self, run_id: str, task_id: str, key: str) -> XComEntry | None:
        with self._guard():
            entry = self._xcoms.get((run_id, task_id, key))
            return entry.model_copy(deep=True) if entry else None

    def list_xcoms(self, run_id: str, task_id: str | None = None) -> list[XComEntry]:
        with self._guard():
            return [
                e.model_copy(deep=True) for (rid, tid, _), e in self._xcoms.items()
                if rid == run_id and (task_id is None or tid == task_id)
            ]

    def delete_xcoms(self, run_id: str, task_id: str | None = None) -> int:
        with self._guard():
            keys = [
                k for k in self._xcoms
                if k[0] == run_id and (task_id is None or k[1] == task_id)
            ]
            for key in keys:
                del self._xcoms[key]
            if keys:
                self._mutated()
            return len(keys)

    # ------------------------------------------------------------------
    # DAG flags
    # DAG 标记
    # ------------------------------------------------------------------

    def get_paused(self, dag_id: str) -> bool | None:
        with self._guard():
            return self._paused.get(dag_id)

    def set_paused(self, dag_id: str, paused: bool) -> None:
        with self._guard():
            self._paused[dag_id] = paused
            self._mutated()

    # ------------------------------------------------------------------
    # Maintenance
    # 维护
    # ------------------------------------------------------------------

    def clear(self) -> None:
        with self._guard():
            self._runs.clear()
            self._task_instances.clear()
            self._xcoms.clear()
            self._paused.clear()
            self._mutated()
