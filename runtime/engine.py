"""
Engine - the process-wide entry point that wires everything together.
引擎 —— 将所有组件组装在一起的进程级入口。

Lifecycle:
生命周期：
  1. start():        load the DAG folder, recover in-flight runs, start the executor
  2. run_dag():      trigger one run and drive it to completion (`dags test`)
     run_forever():  scheduler loop + run-driver loop, concurrently
  3. shutdown():     stop both loops, wait for in-flight attempts, flush the store

  1. start():        加载 DAG 目录、恢复在途运行、启动执行器
  2. run_dag():      触发一次运行并推进到完成（`dags test` 使用）
     run_forever():  并发运行调度循环与运行驱动循环
  3. shutdown():     停止两个循环、等待在途尝试结束、持久化存储

Recovery: instances a crashed process left SCHEDULED / QUEUED never started
and are cleared back to PENDING; a RUNNING one lost its attempt, which goes
through the retry policy (UP_FOR_RETRY or FAILED).
恢复：崩溃进程遗留在 SCHEDULED / QUEUED 的实例尚未启动，清回 PENDING；
遗留在 RUNNING 的实例已丢失本次尝试，按重试策略处理（UP_FOR_RETRY 或 FAILED）。
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable

import config
from exceptions import MiniDagException
from dag.registry import DagRegistry
from dag.state_machine import TaskStateMachine
from executors import BaseExecutor, create_executor
from runtime.dag_runner import DagRunner
from runtime.task_runner import TaskRunner
from scheduler.loop import SchedulerLoop
from schema import IN_FLIGHT_STATES, DagRun, DagRunState, TaskInstance, TaskState, utcnow
from store.base import StateStore
from store.json_file import JsonFileStateStore

logger = logging.getLogger(__name__)


class Engine:
    """
    Owns the registry, the store, the executor and both loops.
    持有注册表、状态存储、执行器以及两个循环。

    Usage:
        engine = Engine(store=InMemoryStateStore(), executor="sequential")
        await engine.start()
        run = await engine.run_dag("tutorial")
        await engine.shutdown()
    """

    def __init__(
        self,
        registry: DagRegistry | None = None,
        store: StateStore | None = None,
        executor: str | None = None,
        dags_folder: str | None = None,
        parallelism: int | None = None,
        log_folder: str | None = None,
        tick_seconds: float | None = None,
        on_event: Callable[[str, Any], None] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store if store is not None else JsonFileStateStore(config.STATE_FILE)
        self.registry = registry or DagRegistry()
        self.registry.attach_store(self.store)
        self.dags_folder = dags_folder
        self._on_event = on_event or (lambda event, data: None)

        self.runner = TaskRunner(
            self.registry, self.store, log_folder=log_folder, on_transition=self._on_transition,
        )
        self.executor: BaseExecutor = create_executor(executor, self.runner, parallelism)
        self.scheduler = SchedulerLoop(
            self.registry, self.store, tick_seconds=tick_seconds, clock=clock, on_event=self._emit,
        )
        self.dag_runner = DagRunner(self.registry, self.store, self.executor, on_event=self._emit, clock=clock)
        self.state_machine = TaskStateMachine(self.store)

        self._stop_event: asyncio.Event | None = None
        self._drivers: dict[str, asyncio.Task] = {}   # run_id -> 驱动该运行的协程
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # 生命周期
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        if self.dags_folder:
            self.registry.collect_dags(self.dags_folder)
        self.dag_runner.resume()
        recovered = self.recover()
        await self.executor.start()
        self._started = True
        self._emit("engine_started", {"dags": len(self.registry), "recovered": recovered})
        logger.info("[Engine] Started with %d DAG(s), executor=%s", len(self.registry), self.executor.name)

    def recover(self) -> int:
        """
        Settle instances left in flight by a previous process. Returns the
        number of instances recovered.
        处理上一个进程遗留的在途实例，返回恢复的实例数。
        """
        recovered = 0
        for run in self.store.active_dag_runs():
            for ti in self.store.list_task_instances(run.run_id):
                if ti.state not in IN_FLIGHT_STATES:
                    continue
                task = self._find_task(run.dag_id, ti.task_id)
                self.state_machine.abandon(ti, task, "Attempt lost by a crashed process")
                recovered += 1
        if recovered:
            logger.warning("[Engine] Recovered %d in-flight task instance(s)", recovered)
        return recovered

    def _find_task(self, dag_id: str, task_id: str):
        try:
            return self.registry.get(dag_id).get_task(task_id)
        except (MiniDagException, KeyError):
            return None

    async def shutdown(self) -> None:
        """
        Stop the loops, let in-flight attempts finish, persist the store.
        停止循环，等待在途尝试完成，持久化存储。
        """
        logger.info("[Engine] Shutting down")
        if self._stop_event is not None:
            self._stop_event.set()
        self.dag_runner.stop()
        if self._drivers:
            await asyncio.gather(*self._drivers.values(), return_exceptions=True)
            self._drivers.clear()
        await self.executor.shutdown(wait=True)
        self.store.flush()
        self._started = False
        self._emit("engine_stopped", None)

    # ------------------------------------------------------------------
    # Runs
    # 运行
    # ------------------------------------------------------------------

    def trigger(
        self,
        dag_id: str,
        logical_date: datetime | None = None,
        conf: dict[str, Any] | None = None,
    ) -> DagRun:
        return self.scheduler.trigger(dag_id, logical_date=logical_date, conf=conf)

    async def run_dag(
        self,
        dag_id: str,
        logical_date: datetime | None = None,
        conf: dict[str, Any] | None = None,
    ) -> DagRun:
        """
        Trigger a manual run and drive it to a terminal state.
        触发一次手动运行并推进到终态。
        """
        if not self._started:
            await self.start()
        run = self.trigger(dag_id, logical_date=logical_date, conf=conf)
        return await self.drive(run.run_id)

    async def drive(self, run_id: str) -> DagRun:
        if not self._started:
            await self.start()
        return await self.dag_runner.run(run_id)

    def cancel(self, run_id: str) -> DagRun | None:
        """
        Cancel a run: nothing new is dispatched, in-flight attempts finish.
        取消运行：不再派发新任务，在途尝试会跑完。
        """
        run = self.store.get_dag_run(run_id)
        if not run.is_active:
            return None
        updated = self.state_machine.transition_run(run, DagRunState.CANCELLED, end_date=utcnow())
        if updated is not None:
            self._emit("dag_run_cancelled", updated)
        return updated

    def clear_task(self, run_id: str, task_id: str) -> TaskInstance:
        """Explicitly clear a finished instance back to PENDING. / 显式将已结束实例清回 PENDING。"""
        ti = self.store.get_task_instance(run_id, task_id)
        return self.state_machine.reset(ti)

    # ------------------------------------------------------------------
    # Loops
    # 循环
    # ------------------------------------------------------------------

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> None:
        """
        Run the scheduler loop and the run-driver loop until stopped.
        并发运行调度循环与运行驱动循环，直到被停止。
        """
        await self.start()
        self._stop_event = stop_event or asyncio.Event()
        await asyncio.gather(
            self.scheduler.run_forever(self._stop_event),
            self._drive_forever(self._stop_event),
        )

    async def _drive_forever(self, stop_event: asyncio.Event) -> None:
        """
        Make sure every active run has a driver coroutine.
        确保每个活跃运行都有一个驱动协程。
        """
        while not stop_event.is_set():
            try:
                for run in self.store.active_dag_runs():
                    driver = self._drivers.get(run.run_id)
                    if driver is None or driver.done():
                        self._drivers[run.run_id] = asyncio.create_task(self._drive_safely(run.run_id))
                for run_id in [rid for rid, task in self._drivers.items() if task.done()]:
                    del self._drivers[run_id]
            except Exception:
                logger.exception("[Engine] Run-driver tick failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.dag_runner.poll_seconds)
            except asyncio.TimeoutError:
                pass

    async def _drive_safely(self, run_id: str) -> None:
        try:
            await self.dag_runner.run(run_id)
        except Exception:
            logger.exception("[Engine] Driver for %s failed", run_id)

    # ------------------------------------------------------------------
    # Events
    # 事件
    # ------------------------------------------------------------------

    def _on_transition(self, ti: TaskInstance, old: TaskState, new: TaskState) -> None:
        self._emit("task_state", ti)

    def _emit(self, event: str, data: Any = None) -> None:
        """
        Emit an event to the UI callback.
        向 UI 回调函数发送事件，UI 异常不影响主流程。
        """
        try:
            self._on_event(event, data)
        except Exception:
            logger.debug("[Engine] on_event callback failed", exc_info=True)
