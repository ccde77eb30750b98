"""
Runtime module - running DAGs.
运行时模块 —— 运行 DAG。

Components:
  - context.py:     task context and the `ti` handle given to tasks
  - task_runner.py: TaskRunner, one attempt of one task instance
  - dag_runner.py:  DagRunner, drives a DagRun to completion
  - engine.py:      Engine, wires registry, store, executor and loops

模块组成：
  - context.py:     任务上下文与传给任务的 `ti` 句柄
  - task_runner.py: 执行单个任务实例的一次尝试
  - dag_runner.py:  将 DagRun 推进到完成
  - engine.py:      组装注册表、存储、执行器与循环

Import the submodules directly, e.g. `from runtime.engine import Engine`.
请直接导入子模块，例如 `from runtime.engine import Engine`。
"""
