"""
Trigger rules - decide a task instance's fate from its upstream states.
触发规则 —— 根据上游实例的状态决定当前任务实例的去向。

Every rule resolves to one of:
每条规则的判定结果为以下之一：
  READY            dispatch it now / 立即派发
  WAIT             upstreams still running / 上游仍在运行，继续等待
  UPSTREAM_FAILED  a failed upstream makes it unrunnable / 上游失败导致无法运行
  SKIPPED          a skipped upstream (or unmet rule) makes it pointless / 因上游跳过或规则不满足而跳过

Only ONE_SUCCESS and ONE_FAILED can fire before every upstream is terminal.
只有 ONE_SUCCESS 和 ONE_FAILED 可以在上游全部终态之前提前触发。
"""

from __future__ import annotations

from collections import Counter
from enum import Enum
from typing import Iterable

from schema import TERMINAL_STATES, TaskState, TriggerRule


class TriggerDecision(str, Enum):
    READY = "ready"
    WAIT = "wait"
    UPSTREAM_FAILED = "upstream_failed"
    SKIPPED = "skipped"

    @property
    def resolved_state(self) -> TaskState | None:
        """Terminal state to write without running, if any. / 无需运行即可写入的终态。"""
        if self is TriggerDecision.UPSTREAM_FAILED:
            return TaskState.UPSTREAM_FAILED
        if self is TriggerDecision.SKIPPED:
            return TaskState.SKIPPED
        return None


def evaluate_trigger_rule(rule: TriggerRule, upstream_states: Iterable[TaskState]) -> TriggerDecision:
    """
    Evaluate `rule` against the current states of all direct upstreams.
    针对所有直接上游的当前状态评估 `rule`。
    """
    states = list(upstream_states)
    if not states or rule == TriggerRule.ALWAYS:
        return TriggerDecision.READY

    counts = Counter(states)
    total = len(states)
    success = counts[TaskState.SUCCESS]
    skipped = counts[TaskState.SKIPPED]
    failed = counts[TaskState.FAILED] + counts[TaskState.UPSTREAM_FAILED]
    done = sum(n for state, n in counts.items() if state in TERMINAL_STATES)
    all_done = done == total

    # --- rules that may fire early / 可以提前触发的规则 ---
    if rule == TriggerRule.ONE_SUCCESS:
        if success:
            return TriggerDecision.READY
        if not all_done:
            return TriggerDecision.WAIT
        return TriggerDecision.UPSTREAM_FAILED if failed else TriggerDecision.SKIPPED

    if rule == TriggerRule.ONE_FAILED:
        if failed:
            return TriggerDecision.READY
        if not all_done:
            return TriggerDecision.WAIT
        return TriggerDecision.SKIPPED

    # --- everything else waits for every upstream / 其余规则需等待上游全部终态 ---
    if not all_done:
        return TriggerDecision.WAIT

    if rule == TriggerRule.ALL_SUCCESS:
        if success == total:
            return TriggerDecision.READY
        return TriggerDecision.UPSTREAM_FAILED if failed else TriggerDecision.SKIPPED

    if rule == TriggerRule.ALL_FAILED:
        return TriggerDecision.READY if failed == total else TriggerDecision.SKIPPED

    if rule == TriggerRule.ALL_DONE:
        return TriggerDecision.READY

    if rule == TriggerRule.NONE_FAILED:
        return TriggerDecision.UPSTREAM_FAILED if failed else TriggerDecision.READY

    if rule == TriggerRule.NONE_FAILED_MIN_ONE_SUCCESS:
        if failed:
            return TriggerDecision.UPSTREAM_FAILED
        return TriggerDecision.READY if success else TriggerDecision.SKIPPED

    if rule == TriggerRule.NONE_SKIPPED:
        return TriggerDecision.SKIPPED if skipped else TriggerDecision.READY

    raise ValueError(f"Unknown trigger rule: {rule!r}")
