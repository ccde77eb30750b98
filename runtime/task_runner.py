"""
Task Runner - executes one attempt of one task instance.
任务运行器 —— 执行某个任务实例的一次尝试。

The runner is what a worker calls with a TaskCommand. It only receives
identifiers and resolves everything else (DAG, operator, run, instance)
from the registry and the state store, the same way a remote worker would.
worker 拿到 TaskCommand 后调用的就是 TaskRunner。它只接收标识符，
DAG、算子、运行和实例都从注册表与状态存储中解析，与远程 worker 的工作方式一致。

One attempt:
一次尝试：
  1. QUEUED -> RUNNING (try_number + 1, per-attempt log file)
  2. clear this instance's XComs left by a previous attempt
  3. execute(context), bounded by execution_timeout
  4. success: push the return value to XCom -> SUCCESS
     TaskSkipped -> SKIPPED; TaskFailedNoRetry -> FAILED
     any other error -> UP_FOR_RETRY or FAILED (retry policy)
     an error outside execute (log file, store) -> retry policy as well
  5. fire on_success / on_retry / on_failure callbacks

Runs synchronously; executors call it from worker threads.
同步执行；执行器在 worker 线程中调用。
"""

from __future__ import annotations

import concurrent.futures
import logging
import os
import socket
import time
import traceback
from typing import Any, Callable

import config
from dag.registry import DagRegistry
from dag.state_machine import TaskStateMachine
from exceptions import MiniDagException, TaskFailedNoRetry, TaskSkipped, TaskTimeout
from runtime.context import RuntimeTaskInstance, build_context
from schema import TaskCommand, TaskInstance, TaskOutcome, TaskState, utcnow
from store.base import StateStore
from store.xcom import RETURN_VALUE_KEY, XComChannel

logger = logging.getLogger(__name__)

_LOG_FORMAT = "[%(asctime)s] {%(filename)s:%(lineno)d} %(levelname)s - %(message)s"


def attempt_log_path(log_folder: str, dag_id: str, run_id: str, task_id: str, attempt: int) -> str:
    """<LOG_FOLDER>/dag_id=<d>/run_id=<r>/task_id=<t>/attempt=<n>.log"""
    return os.path.join(
        log_folder,
        f"dag_id={dag_id}",
        f"run_id={run_id}",
        f"task_id={task_id}",
        f"attempt={attempt}.log",
    )


class TaskRunner:
    """
    Runs task attempts against a registry and a store.
    基于注册表和状态存储运行任务尝试。
    """

    def __init__(
        self,
        registry: DagRegistry,
        store: StateStore,
        log_folder: str | None = None,
        on_transition: Callable[[TaskInstance, TaskState, TaskState], None] | None = None,
    ):
        self.registry = registry
        self.store = store
        self.log_folder = log_folder or config.LOG_FOLDER
        self.state_machine = TaskStateMachine(store, on_transition=on_transition)
        self.xcom = XComChannel(store)
        self._host = socket.gethostname()

    # ------------------------------------------------------------------
    # Queueing
    # 入队
    # ------------------------------------------------------------------

    def mark_queued(self, command: TaskCommand, hostname: str = "") -> TaskInstance | None:
        """SCHEDULED -> QUEUED, called by the executor on submit. / 执行器提交时调用。"""
        ti = self.store.get_task_instance(command.run_id, command.task_id)
        return self.state_machine.enqueue(ti, hostname=hostname or self._host)

    # ------------------------------------------------------------------
    # One attempt
    # 单次尝试
    # ------------------------------------------------------------------

    def run(self, command: TaskCommand, hostname: str = "") -> TaskOutcome:
        hostname = hostname or self._host
        ti = self.store.get_task_instance(command.run_id, command.task_id)
        attempt = ti.try_number + 1
        log_path = attempt_log_path(self.log_folder, command.dag_id, command.run_id, command.task_id, attempt)

        started = self.state_machine.start(ti, hostname=hostname, log_path=log_path)
        if started is None:
            # 其他执行者抢先处理了该实例
            current = self.store.get_task_instance(command.run_id, command.task_id)
            logger.warning("[Runner] %s was not queued (state %s), skipping", command.label, current.state.value)
            return TaskOutcome(
                run_id=command.run_id, task_id=command.task_id,
                state=current.state, try_number=current.try_number,
                error="instance was not in queued state",
            )

        begin = time.monotonic()
        task_log = None
        try:
            task_log = _open_task_log(started, log_path)
            return self._execute_attempt(command, started, task_log, begin)
        except Exception as exc:
            # 任务之外的失败（日志文件、存储、上下文）同样消耗本次尝试，走重试策略
            return self._fail_outside_task(command, exc, begin)
        finally:
            if task_log is not None:
                _close_task_log(task_log)

    def _execute_attempt(
        self,
        command: TaskCommand,
        ti: TaskInstance,
        task_log: logging.Logger,
        begin: float,
    ) -> TaskOutcome:
        task_log.info("Starting attempt %d of %d for %s", ti.try_number, ti.max_tries + 1, command.label)
        try:
            dag = self.registry.get(command.dag_id)
            task = dag.get_task(command.task_id)
            dag_run = self.store.get_dag_run(command.run_id)
        except (MiniDagException, KeyError) as exc:
            # DAG 已被删除或修改：无法运行，直接失败且不重试
            task_log.error("Cannot resolve task: %s", exc)
            failed = self.state_machine.transition(
                ti, TaskState.FAILED, error=f"Cannot resolve task: {exc}", end_date=utcnow(),
            )
            return self._outcome(failed or ti, begin, error=str(exc))

        self.xcom.clear(command.run_id, command.task_id)
        runtime_ti = RuntimeTaskInstance(ti, self.xcom)
        context = build_context(dag, task, dag_run, runtime_ti, task_log)

        try:
            result = _call_with_timeout(task.execute, context, task.execution_timeout)
            if task.do_xcom_push and result is not None:
                self.xcom.put(command.run_id, command.task_id, RETURN_VALUE_KEY, result, dag_id=command.dag_id)
        except TaskSkipped as exc:
            task_log.info("Task skipped: %s", exc)
            updated = self.state_machine.skip(ti, reason=str(exc))
            return self._outcome(updated or ti, begin)
        except TaskFailedNoRetry as exc:
            task_log.error("Task failed without retry: %s", exc)
            updated = self.state_machine.fail(ti, task, error=str(exc), allow_retry=False)
            self._fire(task.on_failure_callback, context, task_log)
            return self._outcome(updated or ti, begin, error=str(exc))
        except Exception as exc:
            task_log.error("Task failed with exception\n%s", traceback.format_exc())
            error = f"{type(exc).__name__}: {exc}"
            updated = self.state_machine.fail(ti, task, error=error)
            if updated is not None and updated.state == TaskState.UP_FOR_RETRY:
                task_log.info("Marking task as UP_FOR_RETRY, next attempt at %s", updated.next_retry_at)
                self._fire(task.on_retry_callback, context, task_log)
            else:
                task_log.info("Marking task as FAILED")
                self._fire(task.on_failure_callback, context, task_log)
            return self._outcome(updated or ti, begin, error=error)

        updated = self.state_machine.succeed(ti)
        task_log.info("Marking task as SUCCESS")
        self._fire(task.on_success_callback, context, task_log)
        return self._outcome(updated or ti, begin, return_value=result if task.do_xcom_push else None)

    # ------------------------------------------------------------------
    # Helpers
    # 辅助方法
    # ------------------------------------------------------------------

    def _fail_outside_task(self, command: TaskCommand, exc: Exception, begin: float) -> TaskOutcome:
        """
        An attempt that broke before or around `execute` (the log file could
        not be opened, the store failed, ...) still counts as an attempt.
        在 `execute` 之外出错的尝试（日志文件无法打开、存储出错等）同样计为一次尝试。
        """
        error = f"{type(exc).__name__}: {exc}"
        logger.error("[Runner] %s failed outside the task: %s", command.label, error, exc_info=True)
        current = self.store.get_task_instance(command.run_id, command.task_id)
        if current.state != TaskState.RUNNING:
            return self._outcome(current, begin, error=error)   # 已经记录过结果
        try:
            task = self.registry.get(command.dag_id).get_task(command.task_id)
        except (MiniDagException, KeyError):
            task = None
        updated = self.state_machine.abandon(current, task, error)
        return self._outcome(updated or current, begin, error=error)

    @staticmethod
    def _fire(callback: Callable[[dict[str, Any]], None] | None, context: dict[str, Any], task_log: logging.Logger) -> None:
        if callback is None:
            return
        try:
            callback(context)
        except Exception:
            # 回调异常只记录，不改变任务状态
            task_log.exception("Task callback %s failed", getattr(callback, "__name__", callback))

    @staticmethod
    def _outcome(ti: TaskInstance, begin: float, return_value: Any = None, error: str | None = None) -> TaskOutcome:
        outcome = TaskOutcome(
            run_id=ti.run_id,
            task_id=ti.task_id,
            state=ti.state,
            try_number=ti.try_number,
            return_value=return_value,
            error=error,
            duration=round(time.monotonic() - begin, 3),
        )
        logger.info(
            "[Runner] %s.%s try %d -> %s (%.2fs)",
            ti.dag_id, ti.task_id, ti.try_number, ti.state.value, outcome.duration,
        )
        return outcome


def _call_with_timeout(func: Callable[[dict[str, Any]], Any], context: dict[str, Any], timeout) -> Any:
    """
    Run `func(context)`, failing with TaskTimeout after `timeout`. The worker
    thread cannot be killed; it is abandoned and its result ignored.
    执行 `func(context)`，超时后抛出 TaskTimeout。工作线程无法被强制终止，超时后其结果被丢弃。
    """
    if not timeout:
        return func(context)
    seconds = timeout.total_seconds()
    pool = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="minidag-timeout")
    future = pool.submit(func, context)
    try:
        return future.result(timeout=seconds)
    except concurrent.futures.TimeoutError:
        raise TaskTimeout(f"Task exceeded execution_timeout of {seconds:.1f}s") from None
    finally:
        pool.shutdown(wait=False)


def _open_task_log(ti: TaskInstance, log_path: str) -> logging.Logger:
    """
    Per-attempt logger writing to `log_path`. It is built directly rather
    than through logging.getLogger, so it is not kept in the logging
    manager's registry after the attempt; it does not propagate to the console.
    每次尝试专用的 logger，写入 `log_path`。直接构造而非通过 logging.getLogger 获取，
    尝试结束后不会留在 logging 的全局注册表中；不向控制台传播。
    """
    os.makedirs(os.path.dirname(log_path), exist_ok=True)
    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    task_log = logging.Logger(f"minidag.task.{ti.dag_id}.{ti.task_id}", level=logging.INFO)
    task_log.propagate = False
    task_log.addHandler(handler)
    return task_log


def _close_task_log(task_log: logging.Logger) -> None:
    for handler in list(task_log.handlers):
        task_log.removeHandler(handler)
        handler.close()
