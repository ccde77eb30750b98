"""
端到端执行测试 —— 使用真实的 Engine / DagRunner / TaskRunner / 执行器，覆盖：
  1. 线性与菱形 DAG 在三种执行器下成功完成
  2. 失败传播：上游失败后下游为 UPSTREAM_FAILED 且从未运行
  3. 重试：try_number 计数、重试后成功
  4. TaskFlow：XComArg 在运行时注入上游返回值
  5. 触发规则 all_done / 任务内跳过 / 执行超时 / 回调
  6. 取消、恢复、调度器 + 运行驱动联合运行
  7. 任务之外的崩溃（日志目录不可用、worker 出错）消耗一次尝试，按重试策略结束

运行方式:
    pytest tests/test_dag_runner.py -v
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from datetime import datetime, timedelta, timezone

import pytest

from dag.decorators import dag, task
from dag.graph import DAG
from dag.registry import DagRegistry
from exceptions import TaskFailedNoRetry, TaskSkipped
from operators import EmptyOperator, PythonOperator
from runtime.engine import Engine
from schema import DagRunState, TaskState
from store.memory import InMemoryStateStore


def _engine(tmp_path, *dags: DAG, executor: str = "sequential", **kwargs) -> Engine:
    registry = DagRegistry()
    for d in dags:
        registry.register(d)
    return Engine(
        registry=registry,
        store=InMemoryStateStore(),
        executor=executor,
        log_folder=str(tmp_path / "logs"),
        **kwargs,
    )


def _states(engine: Engine, run_id: str) -> dict[str, TaskState]:
    return {ti.task_id: ti.state for ti in engine.store.list_task_instances(run_id)}


async def _run(engine: Engine, dag_id: str, **kwargs):
    try:
        return await engine.run_dag(dag_id, logical_date=datetime(2024, 1, 1), **kwargs)
    finally:
        await engine.shutdown()


# ======================================================================
# Success paths
# 成功路径
# ======================================================================


class TestSuccessfulRuns:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("executor", ["sequential", "local", "queued"])
    async def test_diamond_on_every_executor(self, tmp_path, executor):
        """
        场景: a >> [b, c] >> d，记录实际执行顺序。
        验证: 运行成功；a 最先、d 最后；每个实例恰好尝试一次。
        """
        order: list[str] = []

        def record(name):
            order.append(name)
            return name

        with DAG("diamond") as d:
            a = PythonOperator(task_id="a", python_callable=record, op_args=["a"])
            b = PythonOperator(task_id="b", python_callable=record, op_args=["b"])
            c = PythonOperator(task_id="c", python_callable=record, op_args=["c"])
            e = PythonOperator(task_id="d", python_callable=record, op_args=["d"])
            a >> [b, c] >> e

        engine = _engine(tmp_path, d, executor=executor, parallelism=2)
        run = await _run(engine, "diamond")

        assert run.state == DagRunState.SUCCESS
        assert run.end_date is not None
        assert order[0] == "a" and order[-1] == "d"
        assert sorted(order) == ["a", "b", "c", "d"]
        for ti in engine.store.list_task_instances(run.run_id):
            assert ti.state == TaskState.SUCCESS
            assert ti.try_number == 1

    @pytest.mark.asyncio
    async def test_return_values_and_per_attempt_logs(self, tmp_path):
        with DAG("logged") as d:
            PythonOperator(task_id="hello", python_callable=lambda: "hi")

        engine = _engine(tmp_path, d)
        run = await _run(engine, "logged")

        ti = engine.store.get_task_instance(run.run_id, "hello")
        assert engine.store.get_xcom(run.run_id, "hello", "return_value").value == "hi"
        assert ti.log_path.endswith(os.path.join("task_id=hello", "attempt=1.log"))
        assert f"run_id={run.run_id}" in ti.log_path
        with open(ti.log_path, encoding="utf-8") as f:
            content = f.read()
        assert "Marking task as SUCCESS" in content

    @pytest.mark.asyncio
    async def test_taskflow_passes_values_through_xcom(self, tmp_path):
        @dag(schedule=None, start_date=datetime(2024, 1, 1))
        def orders(multiplier: int = 2):
            @task
            def extract():
                return {"a": 1.5, "b": 2.5}

            @task
            def total(data, params=None):
                return sum(data.values()) * params["multiplier"]

            @task
            def report(value, ti=None, ds=None):
                ti.xcom_push("day", ds)
                return f"{ds}: {value}"

            report(total(extract()))

        engine = _engine(tmp_path, orders())
        run = await _run(engine, "orders", conf={"multiplier": 10})

        assert run.state == DagRunState.SUCCESS
        assert engine.store.get_xcom(run.run_id, "total", "return_value").value == 40.0
        assert engine.store.get_xcom(run.run_id, "report", "return_value").value == "2024-01-01: 40.0"
        assert engine.store.get_xcom(run.run_id, "report", "day").value == "2024-01-01"

    @pytest.mark.asyncio
    async def test_none_return_is_not_pushed(self, tmp_path):
        with DAG("quiet") as d:
            PythonOperator(task_id="noop", python_callable=lambda: None)
            PythonOperator(task_id="nopush", python_callable=lambda: 1, do_xcom_push=False)

        engine = _engine(tmp_path, d)
        run = await _run(engine, "quiet")
        assert engine.store.list_xcoms(run.run_id) == []


# ======================================================================
# Failures, retries and trigger rules
# 失败、重试与触发规则
# ======================================================================


def _boom():
    raise ValueError("boom")


class TestFailures:

    @pytest.mark.asyncio
    async def test_failure_propagates_downstream(self, tmp_path):
        """
        场景: a 失败 (retries=0)，b 依赖 a，c 依赖 b。
        验证: a=FAILED，b/c=UPSTREAM_FAILED 且从未运行，运行 FAILED。
        """
        ran: list[str] = []
        with DAG("failing") as d:
            a = PythonOperator(task_id="a", python_callable=_boom, retries=0)
            b = PythonOperator(task_id="b", python_callable=lambda: ran.append("b"))
            c = PythonOperator(task_id="c", python_callable=lambda: ran.append("c"))
            a >> b >> c

        engine = _engine(tmp_path, d)
        run = await _run(engine, "failing")

        assert run.state == DagRunState.FAILED
        assert _states(engine, run.run_id) == {
            "a": TaskState.FAILED,
            "b": TaskState.UPSTREAM_FAILED,
            "c": TaskState.UPSTREAM_FAILED,
        }
        assert ran == []
        a_ti = engine.store.get_task_instance(run.run_id, "a")
        assert "ValueError: boom" in a_ti.error
        assert engine.store.get_task_instance(run.run_id, "b").try_number == 0

    @pytest.mark.asyncio
    async def test_retries_until_success(self, tmp_path):
        attempts: list[int] = []

        def flaky(ti=None):
            attempts.append(ti.try_number)
            if ti.try_number < 3:
                raise RuntimeError(f"attempt {ti.try_number} failed")
            return "ok"

        with DAG("flaky") as d:
            PythonOperator(task_id="flaky", python_callable=flaky, retries=3, retry_delay=0)

        retried = []
        engine = _engine(tmp_path, d)
        d.get_task("flaky").on_retry_callback = lambda context: retried.append(context["try_number"])
        run = await _run(engine, "flaky")

        ti = engine.store.get_task_instance(run.run_id, "flaky")
        assert run.state == DagRunState.SUCCESS
        assert attempts == [1, 2, 3]
        assert ti.try_number == 3
        assert retried == [1, 2]
        assert os.path.exists(ti.log_path)
        assert ti.log_path.endswith("attempt=3.log")

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, tmp_path):
        failures = []
        with DAG("exhausted") as d:
            PythonOperator(
                task_id="always", python_callable=_boom, retries=1, retry_delay=0,
                on_failure_callback=lambda context: failures.append(context["ti"].try_number),
            )

        engine = _engine(tmp_path, d)
        run = await _run(engine, "exhausted")

        ti = engine.store.get_task_instance(run.run_id, "always")
        assert run.state == DagRunState.FAILED
        assert (ti.state, ti.try_number) == (TaskState.FAILED, 2)
        assert failures == [2]

    @pytest.mark.asyncio
    async def test_fail_without_retry(self, tmp_path):
        def fatal():
            raise TaskFailedNoRetry("bad input")

        with DAG("fatal") as d:
            PythonOperator(task_id="fatal", python_callable=fatal, retries=5, retry_delay=0)

        engine = _engine(tmp_path, d)
        run = await _run(engine, "fatal")
        ti = engine.store.get_task_instance(run.run_id, "fatal")
        assert (ti.state, ti.try_number) == (TaskState.FAILED, 1)

    @pytest.mark.asyncio
    async def test_all_done_cleanup_runs_and_decides_the_run(self, tmp_path):
        """
        场景: work 失败，cleanup 使用 all_done。
        验证: cleanup 仍然运行；运行结果由叶子节点决定，因此为 SUCCESS。
        """
        with DAG("cleanup") as d:
            work = PythonOperator(task_id="work", python_callable=_boom)
            cleanup = EmptyOperator(task_id="cleanup", trigger_rule="all_done")
            work >> cleanup

        engine = _engine(tmp_path, d)
        run = await _run(engine, "cleanup")

        assert _states(engine, run.run_id) == {"work": TaskState.FAILED, "cleanup": TaskState.SUCCESS}
        assert run.state == DagRunState.SUCCESS

    @pytest.mark.asyncio
    async def test_skip_cascades_without_failing(self, tmp_path):
        def skip():
            raise TaskSkipped("nothing to do today")

        with DAG("skipping") as d:
            first = PythonOperator(task_id="first", python_callable=skip)
            second = EmptyOperator(task_id="second")
            join = EmptyOperator(task_id="join", trigger_rule="none_failed")
            first >> second >> join

        engine = _engine(tmp_path, d)
        run = await _run(engine, "skipping")

        assert _states(engine, run.run_id) == {
            "first": TaskState.SKIPPED,
            "second": TaskState.SKIPPED,
            "join": TaskState.SUCCESS,
        }
        assert run.state == DagRunState.SUCCESS

    @pytest.mark.asyncio
    async def test_execution_timeout(self, tmp_path):
        with DAG("slow") as d:
            PythonOperator(
                task_id="slow", python_callable=lambda: time.sleep(2),
                execution_timeout=timedelta(milliseconds=200),
            )

        engine = _engine(tmp_path, d)
        run = await _run(engine, "slow")
        ti = engine.store.get_task_instance(run.run_id, "slow")
        assert ti.state == TaskState.FAILED
        assert "TaskTimeout" in ti.error

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_change_state(self, tmp_path):
        def broken_callback(context):
            raise RuntimeError("callback broke")

        with DAG("cb") as d:
            PythonOperator(task_id="ok", python_callable=lambda: 1, on_success_callback=broken_callback)

        engine = _engine(tmp_path, d)
        run = await _run(engine, "cb")
        assert run.state == DagRunState.SUCCESS


# ======================================================================
# Engine operations
# 引擎操作
# ======================================================================


def _linear(dag_id: str = "linear", retries: int = 0) -> DAG:
    with DAG(dag_id, schedule=timedelta(days=1), start_date=datetime(2024, 1, 1), catchup=False) as d:
        a = EmptyOperator(task_id="a", retries=retries, retry_delay=0)
        b = EmptyOperator(task_id="b")
        a >> b
    return d


class TestEngine:

    @pytest.mark.asyncio
    async def test_events_are_emitted(self, tmp_path):
        events: list[str] = []
        engine = _engine(tmp_path, _linear(), on_event=lambda name, data: events.append(name))
        await _run(engine, "linear")

        assert events[0] == "engine_started"
        assert "dag_run_created" in events
        assert "dag_run_started" in events
        assert "task_state" in events
        assert "task_outcome" in events
        assert events.index("dag_run_finished") < events.index("engine_stopped")

    @pytest.mark.asyncio
    async def test_broken_event_handler_is_ignored(self, tmp_path):
        def handler(name, data):
            raise RuntimeError("ui crashed")

        engine = _engine(tmp_path, _linear(), on_event=handler)
        run = await _run(engine, "linear")
        assert run.state == DagRunState.SUCCESS

    @pytest.mark.asyncio
    async def test_cancelled_run_dispatches_nothing(self, tmp_path):
        engine = _engine(tmp_path, _linear())
        run = engine.trigger("linear", logical_date=datetime(2024, 2, 1))
        cancelled = engine.cancel(run.run_id)
        assert cancelled.state == DagRunState.CANCELLED
        assert engine.cancel(run.run_id) is None   # 已结束的运行不能再取消

        try:
            finished = await engine.drive(run.run_id)
        finally:
            await engine.shutdown()
        assert finished.state == DagRunState.CANCELLED
        assert set(_states(engine, run.run_id).values()) == {TaskState.PENDING}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("retries, expected", [
        (1, TaskState.UP_FOR_RETRY),
        (0, TaskState.FAILED),
    ])
    async def test_recover_settles_in_flight_instances(self, tmp_path, retries, expected):
        """
        场景: 模拟进程崩溃，a 停留在 RUNNING（第 1 次尝试），b 停留在 QUEUED。
        验证: start() 时 a 按重试策略结算（消耗一次尝试），b 清回 PENDING。
        """
        store = InMemoryStateStore()
        registry = DagRegistry()
        registry.register(_linear(retries=retries))
        crashed = Engine(registry=registry, store=store, executor="sequential", log_folder=str(tmp_path))
        run = crashed.trigger("linear", logical_date=datetime(2024, 3, 1))
        store.update_task_instance(run.run_id, "a", state=TaskState.RUNNING, try_number=1)
        store.update_task_instance(run.run_id, "b", state=TaskState.QUEUED)

        engine = Engine(registry=registry, store=store, executor="sequential", log_folder=str(tmp_path))
        assert engine.recover() == 2
        a = store.get_task_instance(run.run_id, "a")
        assert (a.state, a.try_number) == (expected, 1)
        assert "crashed process" in a.error
        assert store.get_task_instance(run.run_id, "b").state == TaskState.PENDING

        try:
            finished = await engine.drive(run.run_id)
        finally:
            await engine.shutdown()
        if retries:
            assert finished.state == DagRunState.SUCCESS
            assert store.get_task_instance(run.run_id, "a").try_number == 2
        else:
            assert finished.state == DagRunState.FAILED
            assert store.get_task_instance(run.run_id, "b").state == TaskState.UPSTREAM_FAILED

    @pytest.mark.asyncio
    async def test_engine_can_be_started_again_after_shutdown(self, tmp_path):
        engine = _engine(tmp_path, _linear())
        first = await _run(engine, "linear")
        second = await engine.run_dag("linear", logical_date=datetime(2024, 1, 2))
        await engine.shutdown()
        assert first.state == DagRunState.SUCCESS
        assert second.state == DagRunState.SUCCESS
        assert set(_states(engine, second.run_id).values()) == {TaskState.SUCCESS}

    @pytest.mark.asyncio
    async def test_task_loggers_are_not_registered(self, tmp_path):
        def task_loggers() -> list[str]:
            return [name for name in logging.Logger.manager.loggerDict if name.startswith("minidag.task")]

        before = task_loggers()
        engine = _engine(tmp_path, _linear())
        try:
            for day in range(1, 4):
                await engine.run_dag("linear", logical_date=datetime(2024, 6, day))
        finally:
            await engine.shutdown()
        assert task_loggers() == before

    @pytest.mark.asyncio
    async def test_clear_task_reruns_it(self, tmp_path):
        engine = _engine(tmp_path, _linear())
        try:
            run = await engine.run_dag("linear", logical_date=datetime(2024, 4, 1))
            cleared = engine.clear_task(run.run_id, "b")
            assert cleared.state == TaskState.PENDING
        finally:
            await engine.shutdown()

    @pytest.mark.asyncio
    async def test_run_forever_schedules_and_drives(self, tmp_path):
        """
        场景: 固定时钟下启动调度循环 + 运行驱动循环。
        验证: 到期区间被创建并执行成功，停止信号后干净退出。
        """
        now = datetime(2024, 1, 3, 12, tzinfo=timezone.utc)
        engine = _engine(tmp_path, _linear(), tick_seconds=0.05, clock=lambda: now)
        stop = asyncio.Event()
        serving = asyncio.create_task(engine.run_forever(stop))
        try:
            for _ in range(100):
                runs = engine.store.list_dag_runs("linear", DagRunState.SUCCESS)
                if runs:
                    break
                await asyncio.sleep(0.05)
        finally:
            stop.set()
            await serving
            await engine.shutdown()

        assert [r.logical_date for r in runs] == [datetime(2024, 1, 2, tzinfo=timezone.utc)]


# ======================================================================
# Crashes outside the task
# 任务之外的崩溃
# ======================================================================


class TestCrashes:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("retries, tries", [(0, 1), (1, 2)])
    async def test_unusable_log_folder_fails_the_attempt(self, tmp_path, retries, tries):
        """
        场景: log_folder 指向一个普通文件，每次尝试都无法打开日志。
        验证: 运行在有限步内结束：a 按重试次数尝试后 FAILED，b 为 UPSTREAM_FAILED。
        """
        log_file = tmp_path / "not-a-dir"
        log_file.write_text("", encoding="utf-8")
        registry = DagRegistry()
        registry.register(_linear(retries=retries))
        engine = Engine(registry=registry, store=InMemoryStateStore(), executor="sequential",
                        log_folder=str(log_file))

        run = await asyncio.wait_for(_run(engine, "linear"), timeout=10)

        a = engine.store.get_task_instance(run.run_id, "a")
        assert run.state == DagRunState.FAILED
        assert (a.state, a.try_number) == (TaskState.FAILED, tries)
        assert a.error
        assert engine.store.get_task_instance(run.run_id, "b").state == TaskState.UPSTREAM_FAILED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("executor", ["sequential", "local", "queued"])
    async def test_worker_crash_after_start_uses_an_attempt(self, tmp_path, executor):
        """
        场景: 第一次尝试在 RUNNING 之后 worker 直接抛错（不返回结果）。
        验证: 该尝试按重试策略计入，第二次尝试成功。
        """
        engine = _engine(tmp_path, _linear(retries=1), executor=executor)
        real_run = engine.runner.run
        crashes: list[str] = []

        def crash_once(command, hostname=""):
            if command.task_id == "a" and not crashes:
                ti = engine.store.get_task_instance(command.run_id, command.task_id)
                engine.state_machine.start(ti, hostname=hostname)
                crashes.append(command.task_id)
                raise RuntimeError("worker lost")
            return real_run(command, hostname)

        engine.runner.run = crash_once
        run = await asyncio.wait_for(_run(engine, "linear"), timeout=10)

        a = engine.store.get_task_instance(run.run_id, "a")
        assert crashes == ["a"]
        assert run.state == DagRunState.SUCCESS
        assert (a.state, a.try_number) == (TaskState.SUCCESS, 2)

    @pytest.mark.asyncio
    async def test_worker_crash_without_retries_fails_the_run(self, tmp_path):
        engine = _engine(tmp_path, _linear(), executor="queued")

        def crash(command, hostname=""):
            ti = engine.store.get_task_instance(command.run_id, command.task_id)
            engine.state_machine.start(ti, hostname=hostname)
            raise RuntimeError("worker lost")

        engine.runner.run = crash
        run = await asyncio.wait_for(_run(engine, "linear"), timeout=10)

        a = engine.store.get_task_instance(run.run_id, "a")
        assert run.state == DagRunState.FAILED
        assert (a.state, a.try_number) == (TaskState.FAILED, 1)
        assert "Worker crashed: RuntimeError: worker lost" in a.error
