"""Declarative threshold conditions for rules defined in config files.

YAML cannot carry callables, so config rules describe their condition as
threshold lists::

    condition:
      any:
        - {metric: memoryUsage, op: ">", value: 0.9}
        - {metric: cpuUsage, op: ">", value: 0.85}

``compile_condition`` turns that into a ``metrics -> bool`` predicate. A
metric absent from the snapshot never satisfies a threshold.
"""

from __future__ import annotations

import operator
from collections.abc import Callable
from typing import Any, Literal

from pydantic import BaseModel, model_validator

from alertflow.models import MetricsSnapshot

_OPS: dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}


class ThresholdCondition(BaseModel):
    metric: str
    op: Literal[">", ">=", "<", "<=", "==", "!="]
    value: float

    def holds(self, metrics: MetricsSnapshot) -> bool:
        actual = metrics.get(self.metric)
        if actual is None:
            return False
        return _OPS[self.op](float(actual), self.value)


class ConditionSpec(BaseModel):
    """Exactly one of ``any`` / ``all``."""

    any: list[ThresholdCondition] | None = None
    all: list[ThresholdCondition] | None = None

    @model_validator(mode="after")
    def _one_branch(self) -> ConditionSpec:
        if (self.any is None) == (self.all is None):
            raise ValueError("condition needs exactly one of 'any' or 'all'")
        if not (self.any or self.all):
            raise ValueError("condition threshold list is empty")
        return self


def compile_condition(spec: dict[str, Any] | ConditionSpec) -> Callable[[MetricsSnapshot], bool]:
    """Compile a condition spec into a predicate over a metrics snapshot."""
    parsed = spec if isinstance(spec, ConditionSpec) else ConditionSpec(**spec)

    if parsed.any is not None:
        thresholds = parsed.any

        def any_holds(metrics: MetricsSnapshot) -> bool:
            return any(t.holds(metrics) for t in thresholds)

        return any_holds

    thresholds = parsed.all or []

    def all_hold(metrics: MetricsSnapshot) -> bool:
        return all(t.holds(metrics) for t in thresholds)

    return all_hold
