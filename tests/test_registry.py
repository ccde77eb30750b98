"""
DAG 注册表测试 —— 显式注册、目录扫描、导入错误记录、暂停标记持久化。

运行方式:
    pytest tests/test_registry.py -v
"""

from __future__ import annotations

import textwrap

import pytest

import config
from dag.graph import DAG
from dag.registry import DagRegistry
from exceptions import DagNotFound, DagValidationError
from operators import EmptyOperator
from store.json_file import JsonFileStateStore

GOOD_DAG = textwrap.dedent('''
    from datetime import datetime

    from dag.graph import DAG
    from operators import EmptyOperator

    with DAG("from_file", schedule="@daily", start_date=datetime(2024, 1, 1)) as first:
        EmptyOperator(task_id="only")

    with DAG("also_from_file") as second:
        EmptyOperator(task_id="a") >> EmptyOperator(task_id="b")
''')

CYCLIC_DAG = textwrap.dedent('''
    from dag.graph import DAG
    from operators import EmptyOperator

    with DAG("cyclic_file") as d:
        a = EmptyOperator(task_id="a")
        b = EmptyOperator(task_id="b")
        a >> b >> a
''')


def _simple(dag_id: str) -> DAG:
    with DAG(dag_id) as d:
        EmptyOperator(task_id="t")
    return d


class TestRegistration:

    def test_register_and_lookup(self):
        registry = DagRegistry()
        registry.register(_simple("b_dag"))
        registry.register(_simple("a_dag"))

        assert "a_dag" in registry
        assert len(registry) == 2
        assert [d.dag_id for d in registry.list()] == ["a_dag", "b_dag"]
        assert registry.lookup("a_dag") is registry.get("a_dag")

    def test_unknown_dag(self):
        registry = DagRegistry()
        with pytest.raises(DagNotFound):
            registry.get("missing")
        with pytest.raises(DagNotFound):
            registry.unregister("missing")

    def test_reregister_replaces(self):
        registry = DagRegistry()
        registry.register(_simple("dup"))
        replacement = _simple("dup")
        registry.register(replacement)
        assert registry.get("dup") is replacement

    def test_rejects_non_dag(self):
        with pytest.raises(DagValidationError):
            DagRegistry().register("not a dag")

    def test_local_pause_without_store(self):
        registry = DagRegistry()
        registry.register(_simple("p"))
        assert not registry.is_paused("p")
        registry.pause("p")
        assert registry.is_paused("p")
        with pytest.raises(DagNotFound):
            registry.pause("missing")

    def test_pause_persists_in_store(self, tmp_path):
        path = str(tmp_path / "state.json")
        registry = DagRegistry(JsonFileStateStore(path))
        registry.register(_simple("p"))
        registry.pause("p")

        reopened = DagRegistry(JsonFileStateStore(path))
        reopened.register(_simple("p"))
        assert reopened.is_paused("p")


class TestCollectDags:
    """验证目录扫描：合法文件被注册，坏文件记录到 import_errors 且不影响其他文件。"""

    def test_collects_and_records_errors(self, tmp_path):
        (tmp_path / "good.py").write_text(GOOD_DAG, encoding="utf-8")
        (tmp_path / "cyclic.py").write_text(CYCLIC_DAG, encoding="utf-8")
        (tmp_path / "broken.py").write_text("import does_not_exist_anywhere\n", encoding="utf-8")
        (tmp_path / "_helpers.py").write_text("raise RuntimeError('must not be imported')\n", encoding="utf-8")
        (tmp_path / "notes.txt").write_text("not python", encoding="utf-8")
        nested = tmp_path / "team"
        nested.mkdir()
        (nested / "nested.py").write_text(
            "from dag.graph import DAG\nfrom operators import EmptyOperator\n"
            "with DAG('nested_dag') as d:\n    EmptyOperator(task_id='x')\n",
            encoding="utf-8",
        )

        registry = DagRegistry()
        found = registry.collect_dags(str(tmp_path))

        assert sorted(d.dag_id for d in found) == ["also_from_file", "from_file", "nested_dag"]
        assert registry.get("from_file").fileloc == str(tmp_path / "good.py")
        assert registry.get("from_file").is_frozen
        assert set(registry.import_errors) == {str(tmp_path / "cyclic.py"), str(tmp_path / "broken.py")}
        assert "cycle" in registry.import_errors[str(tmp_path / "cyclic.py")]
        assert "ModuleNotFoundError" in registry.import_errors[str(tmp_path / "broken.py")]

    def test_fixed_file_clears_its_error(self, tmp_path):
        path = tmp_path / "flaky.py"
        path.write_text("raise ValueError('not yet')\n", encoding="utf-8")
        registry = DagRegistry()
        registry.collect_dags(str(tmp_path))
        assert str(path) in registry.import_errors

        path.write_text(GOOD_DAG, encoding="utf-8")
        registry.collect_dags(str(tmp_path))
        assert registry.import_errors == {}
        assert "from_file" in registry

    def test_missing_folder(self, tmp_path):
        assert DagRegistry().collect_dags(str(tmp_path / "nope")) == []

    def test_example_dags_load(self):
        registry = DagRegistry()
        registry.collect_dags(config.DAGS_FOLDER)
        assert registry.import_errors == {}
        assert {"tutorial", "tutorial_taskflow"} <= {d.dag_id for d in registry.list()}
