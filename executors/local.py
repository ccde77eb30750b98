"""
Local Executor - bounded thread pool on this host.
本地执行器 —— 本机上的有界线程池。

Each task attempt runs in a worker thread of a ThreadPoolExecutor sized by
`parallelism`; commands beyond that wait in the pool's queue.
每次任务尝试在 ThreadPoolExecutor 的一个工作线程中运行，线程数即 `parallelism`；
超出的命令在线程池队列中等待。
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING

import config
from executors.base import BaseExecutor
from schema import TaskCommand

if TYPE_CHECKING:
    from runtime.task_runner import TaskRunner

logger = logging.getLogger(__name__)


class LocalExecutor(BaseExecutor):

    name = "local"

    def __init__(self, runner: TaskRunner, parallelism: int | None = None):
        super().__init__(runner, parallelism=parallelism or config.PARALLELISM)
        self._pool: ThreadPoolExecutor | None = None

    async def start(self) -> None:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=self.parallelism, thread_name_prefix="minidag-worker")
        await super().start()

    def _dispatch(self, command: TaskCommand) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(self._pool, self.runner.run, command, self.name)

    async def shutdown(self, wait: bool = True) -> None:
        await super().shutdown(wait=wait)
        if self._pool is not None:
            self._pool.shutdown(wait=wait)
            self._pool = None
