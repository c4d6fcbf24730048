"""Tests for declarative threshold conditions."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from alertflow.rules.conditions import ConditionSpec, ThresholdCondition, compile_condition


class TestThresholdCondition:
    @pytest.mark.parametrize(
        ("op", "value", "expected"),
        [
            (">", 0.9, True),
            (">=", 0.95, True),
            ("<", 0.9, False),
            ("<=", 0.95, True),
            ("==", 0.95, True),
            ("!=", 0.95, False),
        ],
    )
    def test_operators(self, op: str, value: float, expected: bool):
        cond = ThresholdCondition(metric="memoryUsage", op=op, value=value)
        assert cond.holds({"memoryUsage": 0.95}) is expected

    def test_missing_metric_never_holds(self):
        assert not ThresholdCondition(metric="x", op="<", value=1).holds({})
        assert not ThresholdCondition(metric="x", op="!=", value=1).holds({})

    def test_unknown_operator_rejected(self):
        with pytest.raises(ValidationError):
            ThresholdCondition(metric="x", op="~", value=1)


class TestCompileCondition:
    def test_any(self):
        cond = compile_condition({
            "any": [
                {"metric": "memoryUsage", "op": ">", "value": 0.9},
                {"metric": "cpuUsage", "op": ">", "value": 0.85},
            ],
        })
        assert cond({"memoryUsage": 0.5, "cpuUsage": 0.9})
        assert not cond({"memoryUsage": 0.5, "cpuUsage": 0.5})

    def test_all(self):
        cond = compile_condition({
            "all": [
                {"metric": "errorRate", "op": ">", "value": 0.05},
                {"metric": "avgResponseTime", "op": ">", "value": 2000},
            ],
        })
        assert cond({"errorRate": 0.1, "avgResponseTime": 2500})
        assert not cond({"errorRate": 0.1, "avgResponseTime": 100})

    def test_accepts_parsed_spec(self):
        spec = ConditionSpec(any=[ThresholdCondition(metric="x", op=">", value=1)])
        assert compile_condition(spec)({"x": 2})

    def test_both_branches_rejected(self):
        with pytest.raises(ValidationError):
            ConditionSpec(any=[], all=[])

    def test_no_branch_rejected(self):
        with pytest.raises(ValidationError):
            ConditionSpec()

    def test_empty_list_rejected(self):
        with pytest.raises(ValidationError):
            ConditionSpec(any=[])
