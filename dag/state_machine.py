"""
State Machine - Validates and enforces task instance / DAG run transitions.
状态机 —— 校验并强制执行任务实例与 DAG 运行的合法状态转移。

The transition tables are the single source of truth for what state changes
are legal. Any invalid transition raises InvalidTransitionError. Every legal
transition is applied through the state store's compare-and-set, so two
schedulers racing for the same instance can never both win.
转移表是合法状态变化的唯一权威来源，任何非法转移都会抛出 InvalidTransitionError。
每次合法转移都通过状态存储的 compare-and-set 落盘，两个调度者同时争抢同一实例时只有一个能成功。

Transition graph:
转移图：
    PENDING ──> SCHEDULED ──> QUEUED ──> RUNNING ──> SUCCESS
                                                 ──> FAILED
                                                 ──> SKIPPED
                                                 ──> UP_FOR_RETRY ──> SCHEDULED ...
    PENDING ──> UPSTREAM_FAILED | SKIPPED           (trigger rule resolution / 触发规则判定)

Retries are timers, not loops: a failed attempt with retries left parks the
instance in UP_FOR_RETRY with `next_retry_at`; the DAG runner re-schedules it
once the timer is due.
重试是计时器而不是循环：还有重试次数的失败尝试会把实例置于 UP_FOR_RETRY 并记录
`next_retry_at`；DagRunner 在计时器到期后重新调度它。
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Callable

import config
from exceptions import InvalidTransitionError
from schema import DagRun, DagRunState, TaskInstance, TaskState, utcnow

if TYPE_CHECKING:
    from operators.base import BaseOperator
    from store.base import StateStore

logger = logging.getLogger(__name__)


# Transition tables for task instances and DAG runs.
# 任务实例与 DAG 运行的状态转移表。
VALID_TRANSITIONS: dict[TaskState, set[TaskState]] = {
    TaskState.PENDING:         {TaskState.SCHEDULED, TaskState.SKIPPED, TaskState.UPSTREAM_FAILED},
    TaskState.SCHEDULED:       {TaskState.QUEUED, TaskState.PENDING},
    TaskState.QUEUED:          {TaskState.RUNNING, TaskState.PENDING},
    TaskState.RUNNING:         {TaskState.SUCCESS, TaskState.FAILED, TaskState.UP_FOR_RETRY, TaskState.SKIPPED},
    TaskState.UP_FOR_RETRY:    {TaskState.SCHEDULED, TaskState.FAILED},
    # Terminal states: only an explicit clear (reset) leaves them
    # 终态：只有显式清除（reset）才能离开
    TaskState.SUCCESS:         set(),
    TaskState.FAILED:          set(),
    TaskState.UPSTREAM_FAILED: set(),
    TaskState.SKIPPED:         set(),
}

DAG_RUN_TRANSITIONS: dict[DagRunState, set[DagRunState]] = {
    DagRunState.QUEUED:    {DagRunState.RUNNING, DagRunState.CANCELLED},
    DagRunState.RUNNING:   {DagRunState.SUCCESS, DagRunState.FAILED, DagRunState.CANCELLED},
    DagRunState.SUCCESS:   set(),
    DagRunState.FAILED:    set(),
    DagRunState.CANCELLED: set(),
}


def retry_delay_for(task: BaseOperator, try_number: int) -> timedelta:
    """
    Backoff before attempt `try_number + 1`. Exponential when the task asks
    for it, capped by max_retry_delay.
    第 `try_number + 1` 次尝试前的退避时间。开启指数退避时按 2^(n-1) 放大，并受 max_retry_delay 限制。
    """
    delay = task.retry_delay
    if task.retry_exponential_backoff:
        delay = delay * (2 ** max(try_number - 1, 0))
    cap = task.max_retry_delay or timedelta(seconds=config.MAX_RETRY_DELAY_SECONDS)
    return min(delay, cap)


class TaskStateMachine:
    """
    Validates and applies state transitions against a StateStore.
    基于 StateStore 校验并应用状态转移。

    Provides a single `transition()` primitive plus intent-named helpers
    (claim / start / succeed / fail / ...) used by the runners:
      1. Checks the VALID_TRANSITIONS table
      2. Applies the change with compare-and-set on the prior state
      3. Fires an optional callback for UI/logging

    提供唯一的 `transition()` 原语，以及按意图命名的辅助方法（claim / start / succeed / fail 等）：
      1. 查询 VALID_TRANSITIONS 表校验合法性
      2. 以先前状态为条件做 compare-and-set 落盘
      3. 触发可选回调函数（用于 UI 更新或日志）
    """

    def __init__(
        self,
        store: StateStore,
        on_transition: Callable[[TaskInstance, TaskState, TaskState], None] | None = None,
    ):
        self._store = store
        self._on_transition = on_transition

    # ------------------------------------------------------------------
    # Core primitive
    # 核心原语
    # ------------------------------------------------------------------

    @staticmethod
    def can_transition(old: TaskState, new: TaskState) -> bool:
        return new in VALID_TRANSITIONS.get(old, set())

    def transition(
        self,
        ti: TaskInstance,
        new_state: TaskState,
        **changes,
    ) -> TaskInstance | None:
        """
        Move `ti` from its current state to `new_state`. Raises
        InvalidTransitionError if the table forbids it; returns None when
        another actor changed the instance first (CAS miss).

        将 `ti` 从当前状态转移到 `new_state`。转移表不允许时抛出 InvalidTransitionError；
        若其他执行者抢先修改了该实例（CAS 失败），返回 None。
        """
        old_state = ti.state
        if not self.can_transition(old_state, new_state):
            raise InvalidTransitionError(
                f"Task instance '{ti.task_id}' ({ti.run_id}): cannot transition from "
                f"{old_state.value} to {new_state.value}. "
                f"Valid targets: {sorted(s.value for s in VALID_TRANSITIONS.get(old_state, set()))}"
            )

        updated = self._store.transition_task_instance(
            ti.run_id, ti.task_id, expected=old_state, new_state=new_state, **changes,
        )
        if updated is None:
            logger.debug("[SM] %s/%s: CAS miss %s -> %s", ti.run_id, ti.task_id, old_state.value, new_state.value)
            return None

        logger.debug("[SM] %s/%s: %s -> %s", ti.run_id, ti.task_id, old_state.value, new_state.value)
        if self._on_transition:
            try:
                self._on_transition(updated, old_state, new_state)
            except Exception:
                logger.debug("[SM] on_transition callback failed", exc_info=True)  # UI 异常不能影响主流程
        return updated

    # ------------------------------------------------------------------
    # Intent-named helpers
    # 按意图命名的辅助方法
    # ------------------------------------------------------------------

    def claim(self, ti: TaskInstance) -> TaskInstance | None:
        """PENDING/UP_FOR_RETRY -> SCHEDULED. Only one claimer wins. / 只有一个认领者能成功。"""
        return self.transition(ti, TaskState.SCHEDULED)

    def enqueue(self, ti: TaskInstance, hostname: str = "") -> TaskInstance | None:
        return self.transition(ti, TaskState.QUEUED, hostname=hostname)

    def start(self, ti: TaskInstance, hostname: str = "", log_path: str = "") -> TaskInstance | None:
        """QUEUED -> RUNNING; a new attempt begins. / 新一次尝试开始，try_number + 1。"""
        return self.transition(
            ti,
            TaskState.RUNNING,
            try_number=ti.try_number + 1,
            start_date=utcnow(),
            end_date=None,
            next_retry_at=None,
            error=None,
            hostname=hostname or ti.hostname,
            log_path=log_path or ti.log_path,
        )

    def succeed(self, ti: TaskInstance) -> TaskInstance | None:
        return self.transition(ti, TaskState.SUCCESS, end_date=utcnow())

    def skip(self, ti: TaskInstance, reason: str = "") -> TaskInstance | None:
        return self.transition(ti, TaskState.SKIPPED, end_date=utcnow(), error=reason or None)

    def fail(
        self,
        ti: TaskInstance,
        task: BaseOperator,
        error: str,
        allow_retry: bool = True,
    ) -> TaskInstance | None:
        """
        RUNNING -> UP_FOR_RETRY (retries left) or FAILED (exhausted).
        RUNNING -> UP_FOR_RETRY（还有重试次数）或 FAILED（重试耗尽）。

        `ti.try_number` already counts the attempt that just failed, so an
        instance with retries=2 gets three attempts in total.
        `ti.try_number` 已包含刚失败的这次尝试，retries=2 的实例总共会尝试三次。
        """
        now = utcnow()
        if allow_retry and ti.try_number <= task.retries:
            delay = retry_delay_for(task, ti.try_number)
            logger.info(
                "[SM] %s/%s attempt %d failed, retrying in %.1fs",
                ti.run_id, ti.task_id, ti.try_number, delay.total_seconds(),
            )
            return self.transition(
                ti, TaskState.UP_FOR_RETRY, end_date=now, error=error, next_retry_at=now + delay,
            )
        return self.transition(ti, TaskState.FAILED, end_date=now, error=error)

    def abandon(self, ti: TaskInstance, task: BaseOperator | None, error: str) -> TaskInstance | None:
        """
        Settle an attempt whose worker went away. A RUNNING instance has used
        its attempt and goes through the retry policy (FAILED when the task is
        no longer known); SCHEDULED / QUEUED instances never started and are
        cleared back to PENDING.
        处理 worker 丢失的尝试：RUNNING 实例已消耗一次尝试，按重试策略处理（任务已不存在时直接 FAILED）；
        SCHEDULED / QUEUED 实例尚未启动，清回 PENDING。
        """
        if ti.state != TaskState.RUNNING:
            return self.reset(ti)
        if task is None:
            return self.transition(ti, TaskState.FAILED, end_date=utcnow(), error=error)
        return self.fail(ti, task, error=error)

    def resolve_without_running(self, ti: TaskInstance, state: TaskState) -> TaskInstance | None:
        """PENDING -> UPSTREAM_FAILED / SKIPPED by trigger rule. / 由触发规则直接判定终态。"""
        return self.transition(ti, state, end_date=utcnow())

    def reset(self, ti: TaskInstance) -> TaskInstance:
        """
        Explicit clear back to PENDING, bypassing the table (recovery after a
        crash, or a user clearing a finished task).
        显式清除回 PENDING，绕过转移表（崩溃后恢复，或用户清除已完成任务时使用）。
        """
        updated = self._store.update_task_instance(
            ti.run_id, ti.task_id,
            state=TaskState.PENDING, next_retry_at=None, end_date=None, hostname="",
        )
        logger.info("[SM] %s/%s reset from %s to pending", ti.run_id, ti.task_id, ti.state.value)
        return updated

    # ------------------------------------------------------------------
    # DAG run transitions
    # DAG 运行状态转移
    # ------------------------------------------------------------------

    @staticmethod
    def can_transition_run(old: DagRunState, new: DagRunState) -> bool:
        return new in DAG_RUN_TRANSITIONS.get(old, set())

    def transition_run(self, run: DagRun, new_state: DagRunState, **changes) -> DagRun | None:
        if not self.can_transition_run(run.state, new_state):
            raise InvalidTransitionError(
                f"DagRun '{run.run_id}': cannot transition from {run.state.value} to {new_state.value}"
            )
        updated = self._store.set_dag_run_state(
            run.run_id, expected=run.state, new_state=new_state, **changes,
        )
        if updated is not None:
            logger.info("[SM] DagRun %s: %s -> %s", run.run_id, run.state.value, new_state.value)
        return updated


def retry_due(ti: TaskInstance, now=None) -> bool:
    """True when an UP_FOR_RETRY instance's backoff timer has expired. / 重试退避计时器是否到期。"""
    if ti.state != TaskState.UP_FOR_RETRY:
        return False
    return ti.next_retry_at is None or ti.next_retry_at <= (now or utcnow())
