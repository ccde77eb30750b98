"""
DAG Registry - Holds validated, frozen DAG definitions by id.
DAG 注册表 —— 按 ID 保存已校验、已冻结的 DAG 定义。

DAGs enter the registry either explicitly (`register`) or by scanning a
folder of Python files (`collect_dags`), which imports each file and picks
up every module-level DAG object. A file that fails to import or holds an
invalid DAG is recorded in `import_errors`; it never stops the rest of the
folder from loading.
DAG 可通过 `register` 显式注册，或通过 `collect_dags` 扫描目录中的 Python 文件自动收集
（导入每个文件并收集模块级 DAG 对象）。导入失败或定义非法的文件记录在 `import_errors` 中，
不会影响目录中其余文件的加载。

The paused flag lives in the StateStore when one is attached, so the CLI and
a running scheduler process see the same value.
关联了 StateStore 时，暂停标记保存在存储中，CLI 与正在运行的调度器看到的是同一个值。
"""

from __future__ import annotations

import importlib.util
import logging
import os
import sys
import threading
import traceback
from typing import TYPE_CHECKING

from dag.graph import DAG
from exceptions import DagNotFound, DagValidationError

if TYPE_CHECKING:
    from store.base import StateStore

logger = logging.getLogger(__name__)


class DagRegistry:
    """
    Name -> frozen DAG mapping.
    名称到已冻结 DAG 的映射。
    """

    def __init__(self, store: StateStore | None = None):
        self._dags: dict[str, DAG] = {}
        self._store = store
        self._local_paused: dict[str, bool] = {}   # 未关联存储时使用
        self._lock = threading.RLock()
        self.import_errors: dict[str, str] = {}    # 文件路径 -> 错误堆栈

    def attach_store(self, store: StateStore) -> None:
        self._store = store

    # ------------------------------------------------------------------
    # Registration
    # 注册
    # ------------------------------------------------------------------

    def register(self, dag: DAG) -> DAG:
        """
        Validate and freeze `dag`, then make it available by id. Registering
        the same id again replaces the previous definition.
        校验并冻结 `dag` 后按 ID 注册。重复注册同一 ID 会替换原有定义。
        """
        if not isinstance(dag, DAG):
            raise DagValidationError(f"Expected a DAG, got {type(dag).__name__}")
        dag.validate()          # 校验失败直接抛 DagValidationError
        dag.freeze()
        with self._lock:
            replaced = dag.dag_id in self._dags
            self._dags[dag.dag_id] = dag
        logger.info("[Registry] %s %s", "Replaced" if replaced else "Registered", dag.summary())
        return dag

    def unregister(self, dag_id: str) -> None:
        with self._lock:
            if self._dags.pop(dag_id, None) is None:
                raise DagNotFound(f"DAG '{dag_id}' is not registered")

    # ------------------------------------------------------------------
    # Lookup
    # 查询
    # ------------------------------------------------------------------

    def get(self, dag_id: str) -> DAG:
        with self._lock:
            dag = self._dags.get(dag_id)
        if dag is None:
            raise DagNotFound(f"DAG '{dag_id}' is not registered")
        return dag

    lookup = get

    def list(self) -> list[DAG]:
        """Registered DAGs sorted by id. / 按 ID 排序的已注册 DAG。"""
        with self._lock:
            return [self._dags[k] for k in sorted(self._dags)]

    def __contains__(self, dag_id: object) -> bool:
        return dag_id in self._dags

    def __len__(self) -> int:
        return len(self._dags)

    # ------------------------------------------------------------------
    # Paused flags
    # 暂停标记
    # ------------------------------------------------------------------

    def is_paused(self, dag_id: str) -> bool:
        dag = self.get(dag_id)
        stored = self._store.get_paused(dag_id) if self._store else self._local_paused.get(dag_id)
        return dag.is_paused_upon_creation if stored is None else stored

    def pause(self, dag_id: str) -> None:
        self._set_paused(dag_id, True)

    def unpause(self, dag_id: str) -> None:
        self._set_paused(dag_id, False)

    def _set_paused(self, dag_id: str, paused: bool) -> None:
        self.get(dag_id)   # 未注册时抛 DagNotFound
        if self._store:
            self._store.set_paused(dag_id, paused)
        else:
            self._local_paused[dag_id] = paused
        logger.info("[Registry] DAG '%s' %s", dag_id, "paused" if paused else "unpaused")

    # ------------------------------------------------------------------
    # Folder loading
    # 目录加载
    # ------------------------------------------------------------------

    def collect_dags(self, folder: str) -> list[DAG]:
        """
        Import every `*.py` file in `folder` (recursively, skipping names
        starting with `_` or `.`) and register the DAGs they define.
        导入 `folder` 下的所有 `*.py` 文件（递归，跳过以 `_` 或 `.` 开头的文件），并注册其中定义的 DAG。
        """
        found: list[DAG] = []
        if not os.path.isdir(folder):
            logger.warning("[Registry] DAG folder %s does not exist", folder)
            return found

        for root, dirs, files in os.walk(folder):
            dirs[:] = sorted(d for d in dirs if not d.startswith((".", "_")))
            for name in sorted(files):
                if not name.endswith(".py") or name.startswith(("_", ".")):
                    continue
                path = os.path.join(root, name)
                found.extend(self._process_file(path))

        logger.info(
            "[Registry] Collected %d DAGs from %s (%d import errors)",
            len(found), folder, len(self.import_errors),
        )
        return found

    def _process_file(self, path: str) -> list[DAG]:
        self.import_errors.pop(path, None)
        module_name = "minidag_dag_" + os.path.splitext(os.path.basename(path))[0]
        try:
            spec = importlib.util.spec_from_file_location(module_name, path)
            if spec is None or spec.loader is None:
                raise ImportError(f"Cannot load {path}")
            module = importlib.util.module_from_spec(spec)
            sys.modules[module_name] = module
            spec.loader.exec_module(module)
        except Exception:
            sys.modules.pop(module_name, None)
            self.import_errors[path] = traceback.format_exc()
            logger.error("[Registry] Failed to import %s", path, exc_info=True)
            return []

        registered: list[DAG] = []
        for value in list(vars(module).values()):
            if not isinstance(value, DAG):
                continue
            value.fileloc = path
            try:
                registered.append(self.register(value))
            except DagValidationError as exc:
                self.import_errors[path] = str(exc)
                logger.error("[Registry] Invalid DAG in %s: %s", path, exc)
        return registered
