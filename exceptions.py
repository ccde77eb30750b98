"""
Exceptions raised across minidag.
minidag 全局异常定义。

Everything derives from MiniDagException so callers (the CLI, the scheduler
loop) can catch engine errors without swallowing programming errors.
所有异常都继承自 MiniDagException，调用方（CLI、调度循环）可以只捕获引擎错误，
而不会误吞编程错误。
"""

from __future__ import annotations


class MiniDagException(Exception):
    """Base class for all engine errors. / 所有引擎错误的基类。"""


# --- Registration / 注册阶段 ---

class DagValidationError(MiniDagException):
    """
    DAG rejected at registration: cycle, unknown task reference, duplicate id.
    DAG 在注册时被拒绝：存在环、引用了未知任务、任务 ID 重复等。
    """


class DagNotFound(MiniDagException):
    """No DAG with this id is registered. / 未注册该 ID 的 DAG。"""


class ScheduleError(MiniDagException):
    """Schedule expression could not be parsed. / 调度表达式无法解析。"""


# --- Runs & state / 运行与状态 ---

class DagRunNotFound(MiniDagException):
    pass


class DagRunAlreadyExists(MiniDagException):
    pass


class TaskInstanceNotFound(MiniDagException):
    pass


class InvalidTransitionError(MiniDagException):
    """
    Raised when an illegal state transition is attempted.
    当尝试非法状态转移时抛出此异常。
    """


# --- XCom ---

class XComNotFound(MiniDagException, KeyError):
    """No XCom value for (run, task, key). / 该 (run, task, key) 下没有 XCom 值。"""

    def __str__(self) -> str:
        # KeyError.__str__ 会给消息加引号，这里保持原样输出
        return str(self.args[0]) if self.args else ""


class XComConflict(MiniDagException):
    """Second write to a write-once XCom key. / 对只写一次的 XCom key 重复写入。"""


class XComSerializationError(MiniDagException):
    """Value cannot be stored as JSON. / 值无法序列化为 JSON。"""


# --- Raised from inside tasks / 任务内部抛出 ---

class TaskSkipped(MiniDagException):
    """
    Raise from a task to mark its instance SKIPPED instead of FAILED.
    在任务内部抛出，将任务实例标记为 SKIPPED 而不是 FAILED。
    """


class TaskFailedNoRetry(MiniDagException):
    """
    Raise from a task to fail immediately, ignoring remaining retries.
    在任务内部抛出，立即失败并忽略剩余重试次数。
    """


class TaskTimeout(MiniDagException):
    """Task exceeded its execution_timeout. / 任务执行超时。"""
