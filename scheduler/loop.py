"""
Scheduler Loop - turns schedules into DAG runs.
调度循环 —— 将调度表达式转化为 DAG 运行。

Each tick walks every registered, unpaused DAG and asks its timetable for the
next data interval after the latest scheduled run:
每次心跳遍历所有已注册且未暂停的 DAG，询问其时间表在最近一次调度运行之后的下一个数据区间：

  1. interval is None          -> the DAG is done (or manual only) / DAG 不再调度
  2. interval.end > now        -> not due yet / 尚未到期
  3. max_active_runs reached   -> wait for a run to finish / 等待在途运行结束
  4. otherwise                 -> create the DagRun (running, all instances pending),
                                  then ask again (catchup creates every missed interval)
                                  创建 DagRun（running，所有实例 pending），然后继续询问（补跑会依次创建所有错过的区间）

After scheduling, finished runs beyond the newest DAG_RUN_RETENTION of each
DAG are deleted together with their task instances and XComs.
调度之后，每个 DAG 超出最新 DAG_RUN_RETENTION 个的已结束运行会连同其任务实例与 XCom 一起删除。

A failing DAG or a failing tick is logged and retried on the next tick; it
never stops the loop.
单个 DAG 或整次心跳出错只记录日志，下一次心跳重试，绝不会终止循环。
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable

import config
from dag.graph import DAG
from dag.registry import DagRegistry
from exceptions import DagRunNotFound
from schema import DagRun, DagRunState, DagRunType, DataInterval, TaskInstance, ensure_utc, utcnow
from store.base import StateStore

logger = logging.getLogger(__name__)


def make_run_id(run_type: DagRunType, logical_date: datetime) -> str:
    """e.g. scheduled__2024-01-01T00:00:00+00:00"""
    return f"{run_type.value}__{logical_date.isoformat()}"


class SchedulerLoop:
    """
    Periodically creates DAG runs that are due.
    周期性地创建已到期的 DAG 运行。
    """

    def __init__(
        self,
        registry: DagRegistry,
        store: StateStore,
        tick_seconds: float | None = None,
        clock: Callable[[], datetime] = utcnow,
        on_event: Callable[[str, Any], None] | None = None,
        retention: int | None = None,
    ):
        self.registry = registry
        self.store = store
        self.tick_seconds = tick_seconds if tick_seconds is not None else config.SCHEDULER_TICK_SECONDS
        self._clock = clock
        self._on_event = on_event or (lambda event, data: None)
        self.retention = retention if retention is not None else config.DAG_RUN_RETENTION   # 0 表示全部保留

    # ------------------------------------------------------------------
    # Ticks
    # 心跳
    # ------------------------------------------------------------------

    def run_once(self, now: datetime | None = None) -> list[DagRun]:
        """
        One scheduling pass over all DAGs. Returns the runs created.
        对所有 DAG 执行一次调度，返回本次创建的运行。
        """
        now = ensure_utc(now or self._clock())
        created: list[DagRun] = []
        try:
            dags = self.registry.list()
        except Exception:
            logger.exception("[Scheduler] Tick failed while listing DAGs")
            return created

        for dag in dags:
            try:
                created.extend(self._schedule_dag(dag, now))
                self.prune_dag_runs(dag.dag_id)
            except Exception as exc:
                # 单个 DAG 出错不影响其他 DAG，下次心跳重试
                logger.exception("[Scheduler] Failed to schedule DAG '%s'", dag.dag_id)
                self._emit("scheduler_error", {"dag_id": dag.dag_id, "error": str(exc)})
        if created:
            logger.info("[Scheduler] Tick at %s created %d run(s)", now.isoformat(), len(created))
        return created

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> None:
        """
        Tick every `tick_seconds` until `stop_event` is set.
        每隔 `tick_seconds` 执行一次心跳，直到 `stop_event` 被设置。
        """
        stop_event = stop_event or asyncio.Event()
        logger.info("[Scheduler] Started (tick every %.1fs)", self.tick_seconds)
        while not stop_event.is_set():
            self.run_once()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                pass  # 正常超时，进入下一次心跳
        logger.info("[Scheduler] Stopped")

    def _schedule_dag(self, dag: DAG, now: datetime) -> list[DagRun]:
        if self.registry.is_paused(dag.dag_id):
            return []

        created: list[DagRun] = []
        while True:
            active = self.store.active_dag_runs(dag.dag_id)
            if len(active) >= dag.max_active_runs:
                logger.debug(
                    "[Scheduler] DAG '%s' has %d active runs (max %d)",
                    dag.dag_id, len(active), dag.max_active_runs,
                )
                break

            last = self.store.latest_dag_run(dag.dag_id, DagRunType.SCHEDULED)
            interval = dag.timetable.next_interval(
                last.data_interval if last else None,
                dag.start_date,
                dag.end_date,
                dag.catchup,
                now,
            )
            if interval is None or not dag.timetable.is_due(interval, now):
                break
            created.append(self.create_dag_run(dag, interval, DagRunType.SCHEDULED))
        return created

    # ------------------------------------------------------------------
    # Retention
    # 保留策略
    # ------------------------------------------------------------------

    def prune_dag_runs(self, dag_id: str, keep: int | None = None) -> list[str]:
        """
        Delete finished runs of `dag_id` older than the newest `keep`, with
        their task instances and XComs. Active runs and the latest scheduled
        run (the anchor for the next interval) are never deleted; keep <= 0
        keeps everything. Returns the deleted run ids.
        删除 `dag_id` 中比最新 `keep` 个更旧的已结束运行（连同任务实例与 XCom）。
        活跃运行和最近一次调度运行（下一区间的计算依据）永不删除；keep <= 0 表示全部保留。返回被删除的 run_id。
        """
        keep = self.retention if keep is None else keep
        if keep <= 0:
            return []
        finished = [r for r in self.store.list_dag_runs(dag_id) if not r.is_active]
        anchor = self.store.latest_dag_run(dag_id, DagRunType.SCHEDULED)
        deleted: list[str] = []
        for run in finished[:-keep]:
            if anchor is not None and run.run_id == anchor.run_id:
                continue
            try:
                self.store.delete_dag_run(run.run_id)
            except DagRunNotFound:
                continue   # 已被其他进程删除
            deleted.append(run.run_id)
        if deleted:
            logger.info("[Scheduler] Pruned %d finished run(s) of DAG '%s'", len(deleted), dag_id)
        return deleted

    # ------------------------------------------------------------------
    # Run creation
    # 创建运行
    # ------------------------------------------------------------------

    def create_dag_run(
        self,
        dag: DAG,
        interval: DataInterval,
        run_type: DagRunType,
        conf: dict[str, Any] | None = None,
    ) -> DagRun:
        """
        Persist a running DagRun plus one pending TaskInstance per task.
        Raises DagRunAlreadyExists when the run id is taken.
        持久化一个 running 状态的 DagRun，并为每个任务创建 pending 的 TaskInstance。
        run_id 已存在时抛出 DagRunAlreadyExists。
        """
        logical_date = interval.start
        now = utcnow()
        run = DagRun(
            run_id=make_run_id(run_type, logical_date),
            dag_id=dag.dag_id,
            logical_date=logical_date,
            data_interval_start=interval.start,
            data_interval_end=interval.end,
            run_type=run_type,
            state=DagRunState.RUNNING,
            conf=dict(conf or {}),
            dag_version=dag.version,
            created_at=now,
            start_date=now,
        )
        task_instances = [
            TaskInstance(
                run_id=run.run_id,
                dag_id=dag.dag_id,
                task_id=task_id,
                max_tries=dag.get_task(task_id).retries,
            )
            for task_id in dag.topological_sort()
        ]
        run = self.store.create_dag_run(run, task_instances)
        logger.info("[Scheduler] Created %s for DAG '%s'", run.run_id, dag.dag_id)
        self._emit("dag_run_created", run)
        return run

    def trigger(
        self,
        dag_id: str,
        logical_date: datetime | None = None,
        conf: dict[str, Any] | None = None,
    ) -> DagRun:
        """
        Create a manual run. Manual runs ignore the paused flag and
        max_active_runs, as an explicit request from the user.
        创建手动运行。手动运行不受暂停标记和 max_active_runs 限制。
        """
        dag = self.registry.get(dag_id)
        logical_date = ensure_utc(logical_date or self._clock())
        interval = dag.timetable.manual_interval(logical_date)
        return self.create_dag_run(dag, interval, DagRunType.MANUAL, conf=conf)

    def _emit(self, event: str, data: Any = None) -> None:
        try:
            self._on_event(event, data)
        except Exception:
            logger.debug("[Scheduler] on_event callback failed", exc_info=True)  # UI 异常不能影响主流程
