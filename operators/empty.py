"""
Empty Operator - a no-op task, useful as a join or fan-out point.
空算子 —— 不做任何事，常用作汇合点或扇出点。
"""

from __future__ import annotations

from typing import Any

from operators.base import BaseOperator


class EmptyOperator(BaseOperator):

    def execute(self, context: dict[str, Any]) -> Any:
        return None
