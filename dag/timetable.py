"""
Timetables - turn a DAG's `schedule` into concrete data intervals.
时间表 —— 将 DAG 的 `schedule` 表达式转换为具体的数据区间。

Supported schedule expressions:
支持的调度表达式：
  - None                  manual runs only / 仅手动触发
  - "@once"               a single run at start_date / 在 start_date 运行一次
  - "@hourly" ... "@yearly" presets / 预设表达式
  - "*/5 * * * *"         5-field cron, evaluated with APScheduler's CronTrigger
  - timedelta(hours=6)    fixed interval anchored at start_date / 以 start_date 为锚点的固定间隔

A scheduled run covers [start, end) and becomes due once `end <= now`;
its logical date is the interval start.
一次调度运行覆盖区间 [start, end)，当 `end <= now` 时到期；逻辑日期为区间起点。
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta

from apscheduler.triggers.cron import CronTrigger

from exceptions import ScheduleError
from schema import DataInterval, ensure_utc

logger = logging.getLogger(__name__)

CRON_PRESETS: dict[str, str] = {
    "@hourly": "0 * * * *",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@weekly": "0 0 * * sun",
    "@monthly": "0 0 1 * *",
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
}

# Standard cron numbers Sunday as 0 (and 7); APScheduler numbers Monday as 0,
# so numeric day-of-week fields are rewritten to names before parsing.
# 标准 cron 以 0（或 7）表示周日；APScheduler 以 0 表示周一，
# 因此解析前把数字形式的星期字段改写为英文缩写。
_DOW_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun"]


class Timetable(ABC):
    """
    Computes the next data interval for a DAG.
    计算 DAG 下一个数据区间的抽象基类。
    """

    summary: str = ""

    @abstractmethod
    def next_interval(
        self,
        last: DataInterval | None,
        start_date: datetime | None,
        end_date: datetime | None,
        catchup: bool,
        now: datetime,
    ) -> DataInterval | None:
        """
        The interval the next scheduled run should cover, or None when the
        DAG will never run again. The caller decides whether it is due yet.

        返回下一次调度运行应覆盖的区间；DAG 不会再运行时返回 None。
        是否已到期由调用方（调度循环）判断。
        """

    @staticmethod
    def is_due(interval: DataInterval, now: datetime) -> bool:
        return interval.end <= now

    def manual_interval(self, logical_date: datetime) -> DataInterval:
        """Manual runs cover the instant they were triggered for. / 手动运行的区间即触发时刻。"""
        logical_date = ensure_utc(logical_date)
        return DataInterval(start=logical_date, end=logical_date)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.summary}>"


class NullTimetable(Timetable):
    """schedule=None: never scheduled automatically. / 不自动调度。"""

    summary = "None"

    def next_interval(self, last, start_date, end_date, catchup, now):
        return None


class OnceTimetable(Timetable):
    """schedule="@once": one run whose interval is the start_date instant."""

    summary = "@once"

    def next_interval(self, last, start_date, end_date, catchup, now):
        if last is not None or start_date is None:
            return None
        return DataInterval(start=start_date, end=start_date)


class DeltaTimetable(Timetable):
    """
    Fixed-length intervals anchored at start_date.
    以 start_date 为锚点的固定长度区间。
    """

    def __init__(self, delta: timedelta):
        if delta <= timedelta(0):
            raise ScheduleError(f"Schedule interval must be positive, got {delta}")
        self.delta = delta
        self.summary = str(delta)

    def next_interval(self, last, start_date, end_date, catchup, now):
        if start_date is None:
            return None

        start = last.end if last is not None else start_date
        if not catchup:
            # 不补跑：直接跳到最近一个已完整结束的区间
            elapsed = (now - start_date) // self.delta
            if elapsed >= 1:
                latest_start = start_date + (elapsed - 1) * self.delta
                start = max(start, latest_start)

        if end_date is not None and start > end_date:
            return None
        return DataInterval(start=start, end=start + self.delta)


class CronTimetable(Timetable):
    """
    Cron-driven intervals: each run covers [fire_n, fire_n+1).
    cron 驱动的区间：每次运行覆盖 [第 n 次触发, 第 n+1 次触发)。
    """

    def __init__(self, expression: str):
        self.expression = expression
        self.summary = expression
        cron = CRON_PRESETS.get(expression, expression)
        fields = cron.split()
        if len(fields) != 5:
            raise ScheduleError(f"Invalid cron expression {expression!r}: expected 5 fields")
        fields[4] = _normalize_day_of_week(fields[4])
        try:
            self._trigger = CronTrigger.from_crontab(" ".join(fields), timezone="UTC")
        except ValueError as exc:
            raise ScheduleError(f"Invalid cron expression {expression!r}: {exc}") from exc

    def _fire_at_or_after(self, moment: datetime) -> datetime | None:
        fire = self._trigger.get_next_fire_time(None, moment)
        return ensure_utc(fire) if fire is not None else None

    def _fire_after(self, moment: datetime) -> datetime | None:
        # CronTrigger 会把时间向上取整到整秒，加 1 微秒即可得到严格大于 moment 的下一次触发
        return self._fire_at_or_after(moment + timedelta(microseconds=1))

    def _latest_complete_start(self, now: datetime, floor: datetime) -> datetime | None:
        """
        Start of the newest interval that has fully ended by `now`.
        CronTrigger only walks forward, so search a window behind `now` sized
        from the cron's own period and widen it until an interval is found.

        返回在 `now` 之前已完整结束的最新区间起点。
        CronTrigger 只能向前推算，因此在 `now` 之前按 cron 周期估算一个窗口，
        找不到时逐步扩大窗口。
        """
        first = self._fire_after(now)
        second = self._fire_after(first) if first else None
        if first is None or second is None:
            return None
        period = second - first

        for factor in (4, 16, 64, 256):
            window_start = max(now - period * factor, floor)
            latest = None
            cursor = self._fire_at_or_after(window_start)
            while cursor is not None:
                nxt = self._fire_after(cursor)
                if nxt is None or nxt > now:
                    break
                latest = cursor
                cursor = nxt
            if latest is not None or window_start == floor:
                return latest
        return None

    def next_interval(self, last, start_date, end_date, catchup, now):
        if start_date is None:
            return None

        start = self._fire_at_or_after(last.end if last is not None else start_date)
        if start is None:
            return None
        if not catchup:
            latest = self._latest_complete_start(now, floor=start)
            if latest is not None and latest > start:
                logger.debug("[Timetable] catchup disabled, skipping %s -> %s", start, latest)
                start = latest

        if end_date is not None and start > end_date:
            return None
        end = self._fire_after(start)
        if end is None:
            return None
        return DataInterval(start=start, end=end)


def _normalize_day_of_week(field: str) -> str:
    parts = []
    for part in field.split(","):
        base, slash, step = part.partition("/")
        ends = base.split("-")
        mapped = [_DOW_NAMES[int(e)] if e.isdigit() and int(e) < len(_DOW_NAMES) else e for e in ends]
        parts.append("-".join(mapped) + (slash + step if slash else ""))
    return ",".join(parts)


def create_timetable(schedule: str | timedelta | Timetable | None) -> Timetable:
    """
    Build the timetable for a `schedule` argument. Raises ScheduleError.
    根据 `schedule` 参数构建时间表，无法解析时抛出 ScheduleError。
    """
    if schedule is None:
        return NullTimetable()
    if isinstance(schedule, Timetable):
        return schedule
    if isinstance(schedule, timedelta):
        return DeltaTimetable(schedule)
    if isinstance(schedule, str):
        if schedule == "@once":
            return OnceTimetable()
        if schedule.startswith("@") and schedule not in CRON_PRESETS:
            raise ScheduleError(f"Unknown schedule preset {schedule!r}")
        return CronTimetable(schedule)
    raise ScheduleError(f"Unsupported schedule type: {type(schedule).__name__}")
