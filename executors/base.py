"""
Base Executor - Abstract interface for execution backends.
执行后端的抽象接口。

An executor accepts TaskCommands (identifiers only), moves each instance
SCHEDULED -> QUEUED, runs it through a TaskRunner somewhere, and resolves an
asyncio future with the TaskOutcome. The DAG runner awaits those futures;
that await is its suspend point.
执行器接收 TaskCommand（仅含标识符），将实例从 SCHEDULED 置为 QUEUED，
通过 TaskRunner 在某处运行，并用 TaskOutcome 完成一个 asyncio future。
DagRunner 等待这些 future，这就是它的挂起点。
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from schema import TaskCommand, TaskOutcome

if TYPE_CHECKING:
    from runtime.task_runner import TaskRunner

logger = logging.getLogger(__name__)


class BaseExecutor(ABC):
    """
    Abstract base class for executors.
    所有执行器的抽象基类。
    """

    name: str = "base"

    def __init__(self, runner: TaskRunner, parallelism: int = 1):
        if parallelism < 1:
            raise ValueError(f"parallelism must be >= 1, got {parallelism}")
        self.runner = runner
        self.parallelism = parallelism
        self._running: set[asyncio.Future] = set()   # 尚未完成的 future
        self._started = False

    @property
    def slots_available(self) -> int:
        return max(self.parallelism - len(self._running), 0)

    async def start(self) -> None:
        self._started = True
        logger.info("[Executor] %s started (parallelism=%d)", self.name, self.parallelism)

    async def submit(self, command: TaskCommand) -> asyncio.Future:
        """
        Queue `command` and return a future resolving to its TaskOutcome.
        将 `command` 入队，返回一个最终得到 TaskOutcome 的 future。
        """
        if not self._started:
            await self.start()
        queued = self.runner.mark_queued(command, hostname=self.name)
        loop = asyncio.get_running_loop()
        if queued is None:
            # 入队的 CAS 失败：实例已被其他执行者处理
            current = self.runner.store.get_task_instance(command.run_id, command.task_id)
            future = loop.create_future()
            future.set_result(TaskOutcome(
                run_id=command.run_id, task_id=command.task_id, state=current.state,
                try_number=current.try_number, error="instance was not in scheduled state",
            ))
            return future

        future = self._dispatch(command)
        self._running.add(future)
        future.add_done_callback(self._running.discard)
        return future

    @abstractmethod
    def _dispatch(self, command: TaskCommand) -> asyncio.Future:
        """Hand a queued command to the backend. / 将已入队的命令交给后端。"""

    async def shutdown(self, wait: bool = True) -> None:
        """
        Stop accepting work; when `wait`, let in-flight attempts finish.
        停止接收新任务；`wait` 为 True 时等待在途尝试完成。
        """
        if wait and self._running:
            logger.info("[Executor] Waiting for %d in-flight task(s)", len(self._running))
            await asyncio.gather(*self._running, return_exceptions=True)
        self._started = False
        logger.info("[Executor] %s shut down", self.name)
