"""
Store module - persistence for DAG runs, task instances and XComs.
存储模块 —— DAG 运行、任务实例与 XCom 的持久化。

Components:
  - base.py:      StateStore abstract interface (compare-and-set transitions)
  - memory.py:    InMemoryStateStore
  - json_file.py: JsonFileStateStore (atomic snapshot file)
  - xcom.py:      XComChannel

模块组成：
  - base.py:      StateStore 抽象接口（基于 compare-and-set 的状态转移）
  - memory.py:    内存存储
  - json_file.py: JSON 快照文件存储（原子写入）
  - xcom.py:      XCom 数据交换通道
"""

from store.base import StateStore
from store.memory import InMemoryStateStore
from store.json_file import JsonFileStateStore
from store.xcom import XComChannel

__all__ = ["StateStore", "InMemoryStateStore", "JsonFileStateStore", "XComChannel"]
