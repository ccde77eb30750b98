"""
XCom Channel - run-scoped key/value exchange between task instances.
XCom 通道 —— 任务实例之间按运行隔离的键值数据交换。

Entries are addressed by (run_id, task_id, key). A key is write-once unless
the caller asks to overwrite; the task runner clears an instance's entries
when a new attempt starts, so a retried task can publish again.
条目以 (run_id, task_id, key) 寻址。除非显式 overwrite，每个 key 只能写一次；
新一次尝试开始时 TaskRunner 会清除该实例的条目，因此重试的任务可以重新发布。
"""

from __future__ import annotations

import json
import logging
from typing import Any

from exceptions import XComNotFound, XComSerializationError
from schema import XComEntry
from store.base import StateStore

logger = logging.getLogger(__name__)

RETURN_VALUE_KEY = "return_value"


def normalize_value(value: Any) -> Any:
    """
    Round-trip `value` through JSON, so every store hands back the same
    shape (tuples become lists). Raises XComSerializationError otherwise.
    将 `value` 经 JSON 往返一次，使各存储返回的结构一致（元组会变成列表）；
    无法序列化时抛出 XComSerializationError。
    """
    try:
        return json.loads(json.dumps(value))
    except (TypeError, ValueError) as exc:
        raise XComSerializationError(
            f"XCom value of type {type(value).__name__} is not JSON-serializable: {exc}"
        ) from exc


class XComChannel:
    """
    Thin facade over the StateStore's XCom table.
    StateStore XCom 表之上的轻量封装。
    """

    def __init__(self, store: StateStore):
        self._store = store

    def put(
        self,
        run_id: str,
        task_id: str,
        key: str,
        value: Any,
        overwrite: bool = False,
        dag_id: str = "",
    ) -> None:
        entry = XComEntry(
            run_id=run_id,
            dag_id=dag_id,
            task_id=task_id,
            key=key,
            value=normalize_value(value),
        )
        self._store.set_xcom(entry, overwrite=overwrite)   # 重复写入抛 XComConflict
        logger.debug("[XCom] %s/%s pushed '%s'", run_id, task_id, key)

    def get(self, run_id: str, task_id: str, key: str = RETURN_VALUE_KEY) -> Any:
        """
        Value of an existing key. Raises XComNotFound, never falls back to
        another run's value.
        读取已存在的 key。不存在时抛出 XComNotFound，绝不会返回其他运行的值。
        """
        entry = self._store.get_xcom(run_id, task_id, key)
        if entry is None:
            raise XComNotFound(f"No XCom '{key}' from task '{task_id}' in run '{run_id}'")
        return entry.value

    def get_or_default(self, run_id: str, task_id: str, key: str = RETURN_VALUE_KEY, default: Any = None) -> Any:
        try:
            return self.get(run_id, task_id, key)
        except XComNotFound:
            return default

    def clear(self, run_id: str, task_id: str | None = None) -> int:
        removed = self._store.delete_xcoms(run_id, task_id)
        if removed:
            logger.debug("[XCom] Cleared %d entries for %s/%s", removed, run_id, task_id or "*")
        return removed

    def entries(self, run_id: str, task_id: str | None = None) -> list[XComEntry]:
        return self._store.list_xcoms(run_id, task_id)
