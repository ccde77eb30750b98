"""
Scheduler module - creates DAG runs from schedules.
调度模块 —— 根据调度表达式创建 DAG 运行。
"""

from scheduler.loop import SchedulerLoop, make_run_id

__all__ = ["SchedulerLoop", "make_run_id"]
