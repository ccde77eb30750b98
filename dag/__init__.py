"""
DAG module - Authoring model and graph semantics.
DAG 模块 —— DAG 编写模型与图语义。

Components:
  - graph.py:         DAG data structure and graph algorithms
  - timetable.py:     schedule expressions -> data intervals
  - trigger_rules.py: readiness from upstream states
  - state_machine.py: task instance / DAG run lifecycle
  - registry.py:      DagRegistry (register, lookup, folder loading)
  - decorators.py:    @dag / @task (import from dag.decorators)

模块组成：
  - graph.py:         DAG 数据结构与图算法（拓扑排序、环检测等）
  - timetable.py:     调度表达式 -> 数据区间
  - trigger_rules.py: 根据上游状态判定就绪
  - state_machine.py: 任务实例与 DAG 运行的生命周期状态机
  - registry.py:      DAG 注册表（注册、查询、目录加载）
  - decorators.py:    @dag / @task 装饰器（从 dag.decorators 导入）
"""

from dag.graph import DAG                        # 任务有向无环图
from dag.registry import DagRegistry             # DAG 注册表
from dag.state_machine import TaskStateMachine   # 任务状态机
