"""
状态存储测试 —— 内存存储与 JSON 文件存储共用同一组用例，另外覆盖：
  1. JSON 快照的重新加载与损坏文件处理
  2. XCom 通道：写一次、覆盖、按运行隔离、序列化校验
  3. 运行时 `ti` 句柄的 xcom_pull / xcom_push

运行方式:
    pytest tests/test_store.py -v
"""

from __future__ import annotations

import os
import subprocess
import sys
import threading
from datetime import datetime, timedelta, timezone

import pytest

from exceptions import (
    DagRunAlreadyExists,
    DagRunNotFound,
    TaskInstanceNotFound,
    XComConflict,
    XComNotFound,
    XComSerializationError,
)
from runtime.context import RuntimeTaskInstance
from schema import DagRun, DagRunState, DagRunType, TaskInstance, TaskState, XComEntry
from store.json_file import JsonFileStateStore
from store.memory import InMemoryStateStore
from store.xcom import XComChannel


def _run(run_id: str, dag_id: str = "etl", day: int = 1, run_type: DagRunType = DagRunType.SCHEDULED,
         state: DagRunState = DagRunState.RUNNING) -> DagRun:
    when = datetime(2024, 1, day, tzinfo=timezone.utc)
    return DagRun(
        run_id=run_id, dag_id=dag_id, logical_date=when,
        data_interval_start=when, data_interval_end=when + timedelta(days=1),
        run_type=run_type, state=state,
    )


def _instances(run_id: str, dag_id: str = "etl", task_ids=("extract", "load")) -> list[TaskInstance]:
    return [TaskInstance(run_id=run_id, dag_id=dag_id, task_id=t) for t in task_ids]


@pytest.fixture(params=["memory", "json"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryStateStore()
    return JsonFileStateStore(str(tmp_path / "state" / "state.json"))


class TestDagRuns:

    def test_create_and_read_back(self, store):
        store.create_dag_run(_run("r1"), _instances("r1"))
        run = store.get_dag_run("r1")
        assert run.dag_id == "etl"
        assert [ti.task_id for ti in store.list_task_instances("r1")] == ["extract", "load"]

    def test_duplicate_run_id_rejected(self, store):
        store.create_dag_run(_run("r1"), _instances("r1"))
        with pytest.raises(DagRunAlreadyExists):
            store.create_dag_run(_run("r1"), _instances("r1"))

    def test_missing_records(self, store):
        with pytest.raises(DagRunNotFound):
            store.get_dag_run("nope")
        assert store.find_dag_run("nope") is None
        store.create_dag_run(_run("r1"), _instances("r1"))
        with pytest.raises(TaskInstanceNotFound):
            store.get_task_instance("r1", "nope")

    def test_reads_return_copies(self, store):
        store.create_dag_run(_run("r1"), _instances("r1"))
        ti = store.get_task_instance("r1", "extract")
        ti.state = TaskState.SUCCESS
        assert store.get_task_instance("r1", "extract").state == TaskState.PENDING

    def test_listing_and_latest(self, store):
        store.create_dag_run(_run("s2", day=2), _instances("s2"))
        store.create_dag_run(_run("s1", day=1, state=DagRunState.SUCCESS), _instances("s1"))
        store.create_dag_run(_run("m3", day=3, run_type=DagRunType.MANUAL), _instances("m3"))
        store.create_dag_run(_run("other", dag_id="other"), _instances("other", dag_id="other"))

        assert [r.run_id for r in store.list_dag_runs("etl")] == ["s1", "s2", "m3"]
        assert [r.run_id for r in store.list_dag_runs("etl", DagRunState.SUCCESS)] == ["s1"]
        assert {r.run_id for r in store.active_dag_runs("etl")} == {"s2", "m3"}
        assert store.latest_dag_run("etl").run_id == "m3"
        assert store.latest_dag_run("etl", DagRunType.SCHEDULED).run_id == "s2"
        assert store.latest_dag_run("missing") is None

    def test_run_state_compare_and_set(self, store):
        store.create_dag_run(_run("r1"), _instances("r1"))
        updated = store.set_dag_run_state("r1", DagRunState.RUNNING, DagRunState.SUCCESS)
        assert updated.state == DagRunState.SUCCESS
        assert store.set_dag_run_state("r1", DagRunState.RUNNING, DagRunState.FAILED) is None

    def test_delete_run_drops_instances_and_xcoms(self, store):
        store.create_dag_run(_run("r1"), _instances("r1"))
        store.set_xcom(XComEntry(run_id="r1", dag_id="etl", task_id="extract", value=1))
        store.delete_dag_run("r1")

        assert store.find_dag_run("r1") is None
        assert store.list_task_instances("r1") == []
        assert store.list_xcoms("r1") == []
        with pytest.raises(DagRunNotFound):
            store.delete_dag_run("r1")


class TestTaskInstances:

    def test_transition_is_compare_and_set(self, store):
        store.create_dag_run(_run("r1"), _instances("r1"))
        first = store.transition_task_instance("r1", "extract", TaskState.PENDING, TaskState.SCHEDULED)
        second = store.transition_task_instance("r1", "extract", TaskState.PENDING, TaskState.SCHEDULED)
        assert first.state == TaskState.SCHEDULED
        assert second is None

    def test_transition_applies_changes(self, store):
        store.create_dag_run(_run("r1"), _instances("r1"))
        ti = store.transition_task_instance(
            "r1", "extract", TaskState.PENDING, TaskState.SCHEDULED, hostname="w1",
        )
        assert ti.hostname == "w1"
        assert store.list_task_instances("r1", TaskState.SCHEDULED)[0].task_id == "extract"

    def test_forced_update(self, store):
        store.create_dag_run(_run("r1"), _instances("r1"))
        ti = store.update_task_instance("r1", "load", state=TaskState.RUNNING, try_number=3)
        assert (ti.state, ti.try_number) == (TaskState.RUNNING, 3)


class TestPausedAndClear:

    def test_paused_flag(self, store):
        assert store.get_paused("etl") is None
        store.set_paused("etl", True)
        assert store.get_paused("etl") is True

    def test_clear(self, store):
        store.create_dag_run(_run("r1"), _instances("r1"))
        store.set_paused("etl", True)
        store.clear()
        assert store.list_dag_runs() == []
        assert store.get_paused("etl") is None


class TestJsonFileStore:
    """验证快照落盘：重新打开后状态完整恢复；损坏文件被移走。"""

    def test_reload_restores_everything(self, tmp_path):
        path = str(tmp_path / "state.json")
        first = JsonFileStateStore(path)
        first.create_dag_run(_run("r1", state=DagRunState.RUNNING), _instances("r1"))
        first.transition_task_instance("r1", "extract", TaskState.PENDING, TaskState.SCHEDULED)
        first.set_xcom(XComEntry(run_id="r1", dag_id="etl", task_id="extract", value={"rows": [1, 2]}))
        first.set_paused("etl", True)

        second = JsonFileStateStore(path)
        assert second.get_dag_run("r1").state == DagRunState.RUNNING
        assert second.get_dag_run("r1").logical_date == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert second.get_task_instance("r1", "extract").state == TaskState.SCHEDULED
        assert second.get_xcom("r1", "extract", "return_value").value == {"rows": [1, 2]}
        assert second.get_paused("etl") is True

    def test_no_temp_files_left_behind(self, tmp_path):
        path = str(tmp_path / "state.json")
        store = JsonFileStateStore(path)
        store.create_dag_run(_run("r1"), _instances("r1"))
        store.flush()
        assert sorted(os.listdir(tmp_path)) == ["state.json", "state.json.lock"]

    def test_corrupt_file_is_moved_aside(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json", encoding="utf-8")

        store = JsonFileStateStore(str(path))
        assert store.list_dag_runs() == []
        assert any(name.startswith("state.json.corrupt-") for name in os.listdir(tmp_path))

    def test_invalid_records_count_as_corrupt(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text('{"dag_runs": [{"run_id": "r1"}]}', encoding="utf-8")

        store = JsonFileStateStore(str(path))
        assert store.list_dag_runs() == []
        assert not path.exists()


class TestSharedJsonFile:
    """验证多个存储实例（如 CLI 与调度器进程）共享同一个状态文件。"""

    def test_writes_of_one_instance_are_seen_by_the_other(self, tmp_path):
        path = str(tmp_path / "state.json")
        scheduler = JsonFileStateStore(path)
        cli = JsonFileStateStore(path)

        cli.set_paused("etl", True)
        cli.create_dag_run(_run("manual_1", run_type=DagRunType.MANUAL), _instances("manual_1"))

        assert scheduler.get_paused("etl") is True
        assert [r.run_id for r in scheduler.list_dag_runs("etl")] == ["manual_1"]

    def test_write_does_not_drop_the_other_instances_changes(self, tmp_path):
        path = str(tmp_path / "state.json")
        scheduler = JsonFileStateStore(path)
        cli = JsonFileStateStore(path)

        cli.set_paused("etl", True)
        cli.create_dag_run(_run("manual_1", run_type=DagRunType.MANUAL), _instances("manual_1"))
        scheduler.set_paused("other", False)

        reopened = JsonFileStateStore(path)
        assert reopened.get_paused("etl") is True
        assert reopened.get_paused("other") is False
        assert reopened.find_dag_run("manual_1") is not None

    def test_compare_and_set_across_instances(self, tmp_path):
        path = str(tmp_path / "state.json")
        first = JsonFileStateStore(path)
        second = JsonFileStateStore(path)
        first.create_dag_run(_run("r1"), _instances("r1"))

        claimed = second.transition_task_instance("r1", "extract", TaskState.PENDING, TaskState.SCHEDULED)
        assert claimed is not None
        assert first.transition_task_instance("r1", "extract", TaskState.PENDING, TaskState.SCHEDULED) is None
        assert first.get_task_instance("r1", "extract").state == TaskState.SCHEDULED

    def test_concurrent_claims_from_two_instances(self, tmp_path):
        path = str(tmp_path / "state.json")
        stores = [JsonFileStateStore(path), JsonFileStateStore(path)]
        task_ids = tuple(f"t{i}" for i in range(20))
        stores[0].create_dag_run(_run("r1"), _instances("r1", task_ids=task_ids))
        wins: list[list[str]] = [[], []]

        def claim_all(index: int) -> None:
            for task_id in task_ids:
                if stores[index].transition_task_instance(
                    "r1", task_id, TaskState.PENDING, TaskState.SCHEDULED, hostname=f"w{index}",
                ) is not None:
                    wins[index].append(task_id)

        threads = [threading.Thread(target=claim_all, args=(i,)) for i in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        # 每个实例恰好被认领一次
        assert sorted(wins[0] + wins[1]) == sorted(task_ids)
        final = JsonFileStateStore(path)
        for ti in final.list_task_instances("r1"):
            assert ti.state == TaskState.SCHEDULED
            assert ti.task_id in wins[int(ti.hostname[1])]

    def test_separate_process_sees_and_keeps_changes(self, tmp_path):
        path = str(tmp_path / "state.json")
        store = JsonFileStateStore(path)
        store.create_dag_run(_run("r1"), _instances("r1"))
        root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        script = (
            "import sys\n"
            "from store.json_file import JsonFileStateStore\n"
            "from schema import TaskState\n"
            "other = JsonFileStateStore(sys.argv[1])\n"
            "assert other.find_dag_run('r1') is not None\n"
            "other.set_paused('etl', True)\n"
            "other.transition_task_instance('r1', 'load', TaskState.PENDING, TaskState.SCHEDULED)\n"
        )
        subprocess.run([sys.executable, "-c", script, path], cwd=root, check=True)

        assert store.get_paused("etl") is True
        assert store.get_task_instance("r1", "load").state == TaskState.SCHEDULED
        store.set_xcom(XComEntry(run_id="r1", dag_id="etl", task_id="extract", value=1))
        assert JsonFileStateStore(path).get_task_instance("r1", "load").state == TaskState.SCHEDULED


class TestXComChannel:

    def _channel(self, store) -> XComChannel:
        store.create_dag_run(_run("r1"), _instances("r1"))
        store.create_dag_run(_run("r2", day=2), _instances("r2"))
        return XComChannel(store)

    def test_put_and_get(self, store):
        xcom = self._channel(store)
        xcom.put("r1", "extract", "return_value", {"rows": (1, 2)})
        assert xcom.get("r1", "extract") == {"rows": [1, 2]}   # 元组经 JSON 规整为列表

    def test_missing_key_raises(self, store):
        xcom = self._channel(store)
        with pytest.raises(XComNotFound):
            xcom.get("r1", "extract", "nothing")
        with pytest.raises(KeyError):
            xcom.get("r1", "extract", "nothing")
        assert xcom.get_or_default("r1", "extract", "nothing", default=0) == 0

    def test_write_once_unless_overwrite(self, store):
        xcom = self._channel(store)
        xcom.put("r1", "extract", "k", 1)
        with pytest.raises(XComConflict):
            xcom.put("r1", "extract", "k", 2)
        xcom.put("r1", "extract", "k", 3, overwrite=True)
        assert xcom.get("r1", "extract", "k") == 3

    def test_runs_are_isolated(self, store):
        xcom = self._channel(store)
        xcom.put("r1", "extract", "return_value", "from r1")
        with pytest.raises(XComNotFound):
            xcom.get("r2", "extract")

    def test_unserializable_value_rejected(self, store):
        xcom = self._channel(store)
        with pytest.raises(XComSerializationError):
            xcom.put("r1", "extract", "k", object())
        assert xcom.entries("r1") == []

    def test_clear_by_task(self, store):
        xcom = self._channel(store)
        xcom.put("r1", "extract", "a", 1)
        xcom.put("r1", "extract", "b", 2)
        xcom.put("r1", "load", "a", 3)
        assert xcom.clear("r1", "extract") == 2
        assert [e.task_id for e in xcom.entries("r1")] == ["load"]


class TestRuntimeTaskInstance:
    """验证任务内 `ti` 句柄的 XCom 读写语义。"""

    def _ti(self, store, task_id: str) -> RuntimeTaskInstance:
        return RuntimeTaskInstance(store.get_task_instance("r1", task_id), XComChannel(store))

    def test_push_and_pull(self, store):
        store.create_dag_run(_run("r1"), _instances("r1"))
        extract = self._ti(store, "extract")
        extract.xcom_push("total", 42)
        extract.xcom_push("return_value", [1])

        load = self._ti(store, "load")
        assert load.xcom_pull("extract", key="total") == 42
        assert load.xcom_pull(["extract", "load"]) == [[1], None]
        assert load.xcom_pull("extract", key="missing", default="n/a") == "n/a"
        assert load.pull("extract", "total") == 42
        with pytest.raises(XComNotFound):
            load.pull("load")

    def test_pull_without_task_ids_reads_own_entries(self, store):
        store.create_dag_run(_run("r1"), _instances("r1"))
        extract = self._ti(store, "extract")
        extract.xcom_push("note", "mine")
        assert extract.xcom_pull(key="note") == "mine"
        assert extract.task_id == "extract"
        assert extract.run_id == "r1"
