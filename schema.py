"""
Pydantic data models for minidag.
Defines the records the state store persists and the executors exchange.
minidag 的 Pydantic 数据模型。
定义了状态存储持久化、执行器之间传递的核心数据结构。

DAG definitions themselves are plain Python objects (dag/graph.py) because
they hold callables; everything in this module is plain data and round-trips
through JSON.
DAG 定义本身是普通 Python 对象（dag/graph.py），因为其中包含可调用对象；
本模块中的一切都是纯数据，可以与 JSON 互相转换。
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware current time in UTC. / 当前 UTC 时间（带时区）。"""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """
    Naive datetimes are taken as UTC; aware ones are converted.
    无时区的 datetime 视为 UTC；带时区的统一转换为 UTC。
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ======================================================================
# States
# 状态枚举
# ======================================================================

class TaskState(str, Enum):
    """
    Task instance lifecycle states, managed by TaskStateMachine.
    任务实例生命周期状态，由 TaskStateMachine 强制管理合法转移。

    Transition graph:
    转移图：
        PENDING -> SCHEDULED -> QUEUED -> RUNNING -> SUCCESS
                                                  -> FAILED
                                                  -> UP_FOR_RETRY -> SCHEDULED ...
                                                  -> SKIPPED
        PENDING -> UPSTREAM_FAILED | SKIPPED      (trigger rule resolution / 触发规则判定)
    """
    PENDING = "pending"                   # 等待上游完成
    SCHEDULED = "scheduled"               # 触发规则已满足，已被调度器认领
    QUEUED = "queued"                     # 已交给执行后端，等待 worker
    RUNNING = "running"                   # 正在执行
    SUCCESS = "success"                   # 成功（终态）
    FAILED = "failed"                     # 重试耗尽后失败（终态）
    UP_FOR_RETRY = "up_for_retry"         # 失败但还有重试次数，等待退避计时器
    UPSTREAM_FAILED = "upstream_failed"   # 上游失败，不再执行（终态）
    SKIPPED = "skipped"                   # 被跳过（终态）


TERMINAL_STATES = frozenset({
    TaskState.SUCCESS,
    TaskState.FAILED,
    TaskState.UPSTREAM_FAILED,
    TaskState.SKIPPED,
})

# States held by an instance that an executor currently owns.
# 执行器当前持有的实例所处的状态。
IN_FLIGHT_STATES = frozenset({
    TaskState.SCHEDULED,
    TaskState.QUEUED,
    TaskState.RUNNING,
})

FAILED_STATES = frozenset({TaskState.FAILED, TaskState.UPSTREAM_FAILED})


class DagRunState(str, Enum):
    """
    DAG run lifecycle. / DAG 运行的生命周期状态。
    """
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"   # 取消后不再派发新任务，在途任务跑完为止


ACTIVE_RUN_STATES = frozenset({DagRunState.QUEUED, DagRunState.RUNNING})


class DagRunType(str, Enum):
    SCHEDULED = "scheduled"   # 由调度循环按 schedule 创建
    MANUAL = "manual"         # 由 `dags trigger` 或 API 手动触发


class TriggerRule(str, Enum):
    """
    Readiness predicates over upstream outcomes.
    基于上游结果的就绪判定规则。
    """
    ALL_SUCCESS = "all_success"
    ALL_FAILED = "all_failed"
    ALL_DONE = "all_done"
    ONE_SUCCESS = "one_success"
    ONE_FAILED = "one_failed"
    NONE_FAILED = "none_failed"
    NONE_FAILED_MIN_ONE_SUCCESS = "none_failed_min_one_success"
    NONE_SKIPPED = "none_skipped"
    ALWAYS = "always"


# ======================================================================
# Run records
# 运行记录模型
# ======================================================================

class DataInterval(BaseModel):
    """
    The [start, end) window a scheduled run covers.
    一次调度运行所覆盖的数据区间 [start, end)。
    """
    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime


class DagRun(BaseModel):
    """
    One instantiated execution of a DAG at a logical date.
    DAG 在某个逻辑日期上的一次实例化执行。
    """
    run_id: str = Field(description="e.g. 'scheduled__2024-01-01T00:00:00+00:00'")  # 运行唯一 ID
    dag_id: str
    logical_date: datetime                                   # 逻辑执行时间（区间起点）
    data_interval_start: datetime
    data_interval_end: datetime
    run_type: DagRunType = DagRunType.MANUAL
    state: DagRunState = DagRunState.RUNNING
    conf: dict[str, Any] = Field(default_factory=dict)      # 手动触发时传入的参数
    dag_version: str = ""                                    # 创建时 DAG 结构的哈希
    created_at: datetime = Field(default_factory=utcnow)
    start_date: datetime | None = None
    end_date: datetime | None = None

    @property
    def data_interval(self) -> DataInterval:
        return DataInterval(start=self.data_interval_start, end=self.data_interval_end)

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_RUN_STATES


class TaskInstance(BaseModel):
    """
    Execution record of one task within one DAG run.
    某个任务在某次 DAG 运行中的执行记录。
    """
    run_id: str
    dag_id: str
    task_id: str
    state: TaskState = TaskState.PENDING
    try_number: int = 0                # 已开始的尝试次数（进入 RUNNING 时 +1）
    max_tries: int = 0                 # = retries，额外重试次数上限
    start_date: datetime | None = None
    end_date: datetime | None = None
    next_retry_at: datetime | None = None  # UP_FOR_RETRY 时的退避到期时间
    hostname: str = ""                 # 执行该实例的 worker 标识
    log_path: str = ""                 # 最近一次尝试的日志文件
    error: str | None = None           # 最近一次失败的错误信息

    @property
    def key(self) -> tuple[str, str]:
        return (self.run_id, self.task_id)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def duration(self) -> float | None:
        if self.start_date is None or self.end_date is None:
            return None
        return (self.end_date - self.start_date).total_seconds()


class XComEntry(BaseModel):
    """
    A small value published by one task instance for downstream tasks.
    任务实例发布给下游任务使用的小数据。
    """
    run_id: str
    dag_id: str
    task_id: str
    key: str = "return_value"
    value: Any = None
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def store_key(self) -> tuple[str, str, str]:
        return (self.run_id, self.task_id, self.key)


# ======================================================================
# Executor messages
# 执行器消息模型
# ======================================================================

class TaskCommand(BaseModel):
    """
    Work item handed to an executor backend. Carries identifiers only, so a
    worker resolves the task from its own DAG registry.
    交给执行后端的工作单元。只携带标识符，worker 从自己的 DAG 注册表中解析任务。
    """
    dag_id: str
    run_id: str
    task_id: str

    @property
    def label(self) -> str:
        return f"{self.dag_id}.{self.task_id}[{self.run_id}]"


class TaskOutcome(BaseModel):
    """
    Result of one attempt, reported back by the worker.
    单次尝试的结果，由 worker 回报。
    """
    run_id: str
    task_id: str
    state: TaskState                   # 本次尝试后实例所处状态
    try_number: int = 0
    return_value: Any = None
    error: str | None = None
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.state == TaskState.SUCCESS
