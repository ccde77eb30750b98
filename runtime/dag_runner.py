"""
DAG Runner - drives one DagRun to a terminal state.
DAG 运行驱动器 —— 将一次 DagRun 推进到终态。

Each pass (a "super-step"):
每一轮（一个「Super-step」）：
  1. Read every task instance of the run from the store
  2. Walk them in topological order and evaluate trigger rules:
     unsatisfiable -> UPSTREAM_FAILED / SKIPPED (cascades within the pass)
     satisfied     -> claim (CAS PENDING -> SCHEDULED) and submit to the executor
     UP_FOR_RETRY whose timer is due -> claim and submit again
  3. Await the first completion, or the next retry timer
  4. When every instance is terminal, finalize the run from its leaves

  1. 从存储读取该运行的全部任务实例
  2. 按拓扑顺序遍历并评估触发规则：
     无法满足 -> UPSTREAM_FAILED / SKIPPED（同一轮内向下游级联）
     已满足   -> 认领（CAS PENDING -> SCHEDULED）并提交给执行器
     重试计时器到期的 UP_FOR_RETRY 实例 -> 重新认领并提交
  3. 等待第一个完成的任务，或下一个重试计时器到期
  4. 所有实例均为终态后，根据叶子节点确定运行结果

A run is FAILED when any leaf ends FAILED or UPSTREAM_FAILED, otherwise
SUCCESS. A CANCELLED run dispatches nothing new; in-flight attempts finish
and are recorded.
任一叶子节点为 FAILED 或 UPSTREAM_FAILED 时运行失败，否则成功。
被取消的运行不再派发新任务，在途尝试会跑完并记录结果。
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable

import config
from dag.graph import DAG
from dag.registry import DagRegistry
from dag.state_machine import TaskStateMachine, retry_due
from dag.trigger_rules import TriggerDecision, evaluate_trigger_rule
from executors.base import BaseExecutor
from schema import (
    FAILED_STATES,
    IN_FLIGHT_STATES,
    DagRun,
    DagRunState,
    TaskCommand,
    TaskInstance,
    TaskOutcome,
    TaskState,
    utcnow,
)
from store.base import StateStore

logger = logging.getLogger(__name__)


class DagRunner:
    """
    Dispatches ready task instances of DAG runs and records their outcomes.
    派发 DAG 运行中的就绪任务实例并记录结果。
    """

    def __init__(
        self,
        registry: DagRegistry,
        store: StateStore,
        executor: BaseExecutor,
        on_event: Callable[[str, Any], None] | None = None,
        poll_seconds: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.store = store
        self.executor = executor
        self.state_machine = TaskStateMachine(store)
        self._on_event = on_event or (lambda event, data: None)
        # 没有在途任务也没有重试计时器时的轮询间隔
        self.poll_seconds = poll_seconds if poll_seconds is not None else min(config.SCHEDULER_TICK_SECONDS, 1.0)
        self._clock = clock
        self._stopping = False

    def stop(self) -> None:
        """
        Stop dispatching; runs in progress return once their in-flight
        attempts finish, without being finalized.
        停止派发；进行中的运行在其在途尝试结束后返回，不做终态判定。
        """
        self._stopping = True

    def resume(self) -> None:
        """Allow dispatching again after stop(). / stop() 之后重新允许派发。"""
        self._stopping = False

    # ------------------------------------------------------------------
    # Main loop
    # 主循环
    # ------------------------------------------------------------------

    async def run(self, run_id: str) -> DagRun:
        """
        Drive `run_id` until it is terminal (or the runner is stopped).
        推进 `run_id` 直到终态（或 runner 被停止）。
        """
        run = self.store.get_dag_run(run_id)
        dag = self.registry.get(run.dag_id)
        if run.state == DagRunState.QUEUED:
            run = self.state_machine.transition_run(run, DagRunState.RUNNING, start_date=utcnow()) or run
        self._emit("dag_run_started", run)
        logger.info("[DagRunner] Driving %s (%s)", run_id, dag.summary())

        in_flight: dict[str, asyncio.Future] = {}
        step = 0
        while True:
            run = self.store.get_dag_run(run_id)
            halted = self._stopping or run.state != DagRunState.RUNNING

            if not halted:
                step += 1
                submitted = await self._dispatch_ready(dag, run, in_flight)
                if submitted:
                    logger.debug("[DagRunner] %s step %d: submitted %s", run_id, step, submitted)

            instances = self.store.list_task_instances(run_id)
            if not in_flight:
                if halted:
                    break
                if all(ti.is_terminal for ti in instances):
                    run = self._finalize(dag, run, instances)
                    break

            await self._wait(dag, run_id, in_flight, instances)

        self._emit("dag_run_finished", run)
        return run

    async def _dispatch_ready(
        self,
        dag: DAG,
        run: DagRun,
        in_flight: dict[str, asyncio.Future],
    ) -> list[str]:
        instances = {ti.task_id: ti for ti in self.store.list_task_instances(run.run_id)}
        states = {tid: ti.state for tid, ti in instances.items()}
        now = self._clock()
        submitted: list[str] = []

        for task_id in dag.topological_sort():
            ti = instances.get(task_id)
            if ti is None or task_id in in_flight:
                continue

            if ti.state == TaskState.PENDING:
                task = dag.get_task(task_id)
                decision = evaluate_trigger_rule(
                    task.trigger_rule, [states[u] for u in dag.upstream_ids(task_id) if u in states],
                )
                if decision == TriggerDecision.WAIT:
                    continue
                if decision.resolved_state is not None:
                    resolved = self.state_machine.resolve_without_running(ti, decision.resolved_state)
                    if resolved is not None:
                        states[task_id] = resolved.state   # 让同一轮内的下游看到该结果
                        self._emit("task_state", resolved)
                    continue
            elif not retry_due(ti, now):
                continue

            if self.executor.slots_available <= 0:
                continue
            claimed = self.state_machine.claim(ti)
            if claimed is None:
                continue   # 被其他调度者抢先认领
            states[task_id] = claimed.state
            command = TaskCommand(dag_id=dag.dag_id, run_id=run.run_id, task_id=task_id)
            in_flight[task_id] = await self.executor.submit(command)
            self._emit("task_state", claimed)
            submitted.append(task_id)
        return submitted

    async def _wait(
        self,
        dag: DAG,
        run_id: str,
        in_flight: dict[str, asyncio.Future],
        instances: list[TaskInstance],
    ) -> None:
        """
        Suspend until a task completes, a retry timer is due, or the poll
        interval elapses.
        挂起直到有任务完成、重试计时器到期，或轮询间隔结束。
        """
        timeout = self.poll_seconds
        retry_times = [ti.next_retry_at for ti in instances if ti.state == TaskState.UP_FOR_RETRY and ti.next_retry_at]
        if retry_times:
            until_retry = (min(retry_times) - self._clock()).total_seconds()
            timeout = max(min(timeout, until_retry), 0.0)

        if not in_flight:
            await asyncio.sleep(timeout)
            return

        done, _ = await asyncio.wait(set(in_flight.values()), timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        for task_id, future in list(in_flight.items()):
            if future not in done:
                continue
            del in_flight[task_id]
            self._record(dag, run_id, task_id, future)

    def _record(self, dag: DAG, run_id: str, task_id: str, future: asyncio.Future) -> None:
        try:
            outcome: TaskOutcome = future.result()
        except Exception as exc:
            # worker 崩溃：已启动的尝试按重试策略计入，未启动的实例清回 PENDING
            logger.exception("[DagRunner] Worker crashed while running %s", task_id)
            ti = self.store.get_task_instance(run_id, task_id)
            if ti.state in IN_FLIGHT_STATES:
                error = f"Worker crashed: {type(exc).__name__}: {exc}"
                self.state_machine.abandon(ti, dag.get_task(task_id), error)
            return

        self._emit("task_outcome", outcome)
        if outcome.state not in (TaskState.SCHEDULED, TaskState.QUEUED):
            return
        # 实例没有被启动：清回 PENDING 以便重新派发
        logger.warning("[DagRunner] %s was not started (%s)", task_id, outcome.error)
        ti = self.store.get_task_instance(run_id, task_id)
        if ti.state in (TaskState.SCHEDULED, TaskState.QUEUED):
            self.state_machine.reset(ti)

    # ------------------------------------------------------------------
    # Completion
    # 完成判定
    # ------------------------------------------------------------------

    def _finalize(self, dag: DAG, run: DagRun, instances: list[TaskInstance]) -> DagRun:
        states = {ti.task_id: ti.state for ti in instances}
        failed_leaves = [tid for tid in dag.leaves if states.get(tid) in FAILED_STATES]
        new_state = DagRunState.FAILED if failed_leaves else DagRunState.SUCCESS
        updated = self.state_machine.transition_run(run, new_state, end_date=utcnow())
        if updated is None:
            # 其他执行者已经结束了该运行
            return self.store.get_dag_run(run.run_id)
        if failed_leaves:
            logger.warning("[DagRunner] %s failed (leaves: %s)", run.run_id, ", ".join(failed_leaves))
        else:
            logger.info("[DagRunner] %s succeeded", run.run_id)
        return updated

    def _emit(self, event: str, data: Any = None) -> None:
        try:
            self._on_event(event, data)
        except Exception:
            logger.debug("[DagRunner] on_event callback failed", exc_info=True)  # UI 异常不能影响主流程
