"""
Sequential Executor - one task instance at a time.
顺序执行器 —— 同一时间只运行一个任务实例。
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from executors.base import BaseExecutor
from schema import TaskCommand

if TYPE_CHECKING:
    from runtime.task_runner import TaskRunner


class SequentialExecutor(BaseExecutor):

    name = "sequential"

    def __init__(self, runner: TaskRunner, parallelism: int = 1):
        super().__init__(runner, parallelism=1)
        self._lock: asyncio.Lock | None = None

    async def start(self) -> None:
        self._lock = asyncio.Lock()
        await super().start()

    def _dispatch(self, command: TaskCommand) -> asyncio.Future:
        return asyncio.ensure_future(self._run(command))

    async def _run(self, command: TaskCommand):
        async with self._lock:
            loop = asyncio.get_running_loop()
            # 在线程中运行，避免阻塞事件循环
            return await loop.run_in_executor(None, self.runner.run, command, self.name)
