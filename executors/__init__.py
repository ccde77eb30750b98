"""
Executors module - execution backends for task instances.
执行器模块 —— 任务实例的执行后端。

Components:
  - base.py:       BaseExecutor abstract interface
  - sequential.py: SequentialExecutor (one at a time)
  - local.py:      LocalExecutor (thread pool)
  - queued.py:     QueuedExecutor (command queue + worker coroutines)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import config
from executors.base import BaseExecutor
from executors.local import LocalExecutor
from executors.queued import QueuedExecutor
from executors.sequential import SequentialExecutor

if TYPE_CHECKING:
    from runtime.task_runner import TaskRunner

EXECUTORS: dict[str, type[BaseExecutor]] = {
    "sequential": SequentialExecutor,
    "local": LocalExecutor,
    "queued": QueuedExecutor,
}


def create_executor(name: str | None, runner: TaskRunner, parallelism: int | None = None) -> BaseExecutor:
    """
    Build an executor by name ("sequential" | "local" | "queued").
    按名称创建执行器。
    """
    name = (name or config.EXECUTOR).lower()
    try:
        cls = EXECUTORS[name]
    except KeyError:
        raise ValueError(f"Unknown executor {name!r}; choose from {sorted(EXECUTORS)}") from None
    return cls(runner, parallelism=parallelism) if parallelism else cls(runner)


__all__ = ["BaseExecutor", "SequentialExecutor", "LocalExecutor", "QueuedExecutor", "create_executor"]
