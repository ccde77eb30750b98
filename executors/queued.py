"""
Queued Executor - a message queue of task commands and N worker coroutines.
队列执行器 —— 任务命令消息队列 + N 个 worker 协程。

Messages carry only (dag_id, run_id, task_id). Each worker resolves the task
from the registry itself, the shape a remote worker pool would have; here the
queue is an asyncio.Queue and the workers live in the same process.
消息只携带 (dag_id, run_id, task_id)。每个 worker 自行从注册表解析任务，
与远程 worker 池的形态一致；这里的队列是 asyncio.Queue，worker 在同一进程内运行。
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import config
from executors.base import BaseExecutor
from schema import TaskCommand

if TYPE_CHECKING:
    from runtime.task_runner import TaskRunner

logger = logging.getLogger(__name__)

_STOP = None  # worker 停止信号


class QueuedExecutor(BaseExecutor):

    name = "queued"

    def __init__(self, runner: TaskRunner, parallelism: int | None = None):
        super().__init__(runner, parallelism=parallelism or config.PARALLELISM)
        self._queue: asyncio.Queue[TaskCommand | None] | None = None
        self._workers: list[asyncio.Task] = []
        self._results: dict[tuple[str, str], asyncio.Future] = {}   # (run_id, task_id) -> 结果 future

    async def start(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
            self._workers = [
                asyncio.create_task(self._worker(f"queued-worker-{i + 1}"))
                for i in range(self.parallelism)
            ]
        await super().start()

    def _dispatch(self, command: TaskCommand) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self._results[(command.run_id, command.task_id)] = future
        self._queue.put_nowait(command)
        return future

    async def _worker(self, worker_name: str) -> None:
        loop = asyncio.get_running_loop()
        while True:
            command = await self._queue.get()
            try:
                if command is _STOP:
                    return
                future = self._results.pop((command.run_id, command.task_id), None)
                try:
                    outcome = await loop.run_in_executor(None, self.runner.run, command, worker_name)
                except Exception as exc:
                    # 运行器自身出错（如存储不可用）：交给 DagRunner 按 worker 崩溃处理，worker 继续消费
                    logger.exception("[Executor] %s crashed on %s", worker_name, command.label)
                    if future is not None and not future.done():
                        future.set_exception(exc)
                else:
                    if future is not None and not future.done():
                        future.set_result(outcome)
            finally:
                self._queue.task_done()

    async def shutdown(self, wait: bool = True) -> None:
        await super().shutdown(wait=wait)
        if self._queue is not None:
            for _ in self._workers:
                self._queue.put_nowait(_STOP)
            await asyncio.gather(*self._workers, return_exceptions=True)
            self._queue = None
            self._workers = []
