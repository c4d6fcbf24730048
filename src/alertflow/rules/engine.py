"""Rule engine: turns metric snapshots into alerts.

Two invocation paths share the same rule set:

- ``evaluate()`` (poll path) runs every rule against a merged snapshot,
  gated by each rule's cooldown.
- ``evaluate_realtime()`` (push path) runs only critical rules against a
  single metric-update event. Whether that path honours cooldowns is the
  explicit ``realtime_bypasses_cooldown`` switch.

A condition that raises counts as false for that rule in that cycle.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime

from alertflow.models import (
    ActionKind,
    Alert,
    AlertAction,
    AlertRule,
    AlertType,
    MetricsSnapshot,
    Severity,
)

logger = logging.getLogger(__name__)

TRIGGERED_BY_POLL = "automated_monitoring"
TRIGGERED_BY_REALTIME = "realtime_update"


class RuleEngine:
    """Holds alert rules and evaluates them against metric snapshots.

    Per-rule last-trigger times are kept in memory. Thread-safe via a lock
    on rule and cooldown state.
    """

    def __init__(
        self,
        clock: Callable[[], float] | None = None,
        realtime_bypasses_cooldown: bool = True,
    ) -> None:
        self._clock = clock or time.time
        self._realtime_bypasses_cooldown = realtime_bypasses_cooldown
        self._lock = threading.Lock()
        self._rules: dict[str, AlertRule] = {}
        self._last_triggered: dict[str, float] = {}

    @property
    def realtime_bypasses_cooldown(self) -> bool:
        return self._realtime_bypasses_cooldown

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def add_rule(self, rule: AlertRule) -> None:
        with self._lock:
            self._rules[rule.id] = rule
        logger.info("Added alert rule: %s (%s)", rule.id, rule.name)

    def remove_rule(self, rule_id: str) -> bool:
        with self._lock:
            removed = self._rules.pop(rule_id, None) is not None
            self._last_triggered.pop(rule_id, None)
        if removed:
            logger.info("Removed alert rule: %s", rule_id)
        return removed

    def get_rule(self, rule_id: str) -> AlertRule | None:
        return self._rules.get(rule_id)

    def get_rules(self) -> list[AlertRule]:
        return list(self._rules.values())

    def last_triggered(self, rule_id: str) -> float | None:
        return self._last_triggered.get(rule_id)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(
        self, snapshot: MetricsSnapshot, now: float | None = None,
    ) -> list[Alert]:
        """Evaluate every rule against a merged snapshot (poll path)."""
        now = self._clock() if now is None else now
        alerts: list[Alert] = []

        for rule in self.get_rules():
            if self._in_cooldown(rule, now):
                continue
            if not self.condition_holds(rule, snapshot):
                continue
            alerts.append(self._trigger(rule, snapshot, now, TRIGGERED_BY_POLL))

        return alerts

    def evaluate_realtime(
        self, data: MetricsSnapshot, now: float | None = None,
    ) -> list[Alert]:
        """Evaluate critical rules against one pushed metric update."""
        now = self._clock() if now is None else now
        alerts: list[Alert] = []

        for rule in self.get_rules():
            if rule.severity != Severity.CRITICAL:
                continue
            if not self._realtime_bypasses_cooldown and self._in_cooldown(rule, now):
                continue
            if not self.condition_holds(rule, data):
                continue
            alerts.append(
                self._trigger(
                    rule, data, now, TRIGGERED_BY_REALTIME,
                    record=not self._realtime_bypasses_cooldown,
                ),
            )

        return alerts

    @staticmethod
    def condition_holds(rule: AlertRule, metrics: MetricsSnapshot) -> bool:
        """Run a rule's condition; a raising condition counts as false."""
        try:
            return bool(rule.condition(metrics))
        except Exception as exc:
            logger.warning(
                "Condition for rule %s raised %s: %s",
                rule.id, type(exc).__name__, exc,
            )
            return False

    def _in_cooldown(self, rule: AlertRule, now: float) -> bool:
        last = self._last_triggered.get(rule.id)
        if last is None:
            return False
        return now - last < rule.cooldown_seconds

    def _trigger(
        self,
        rule: AlertRule,
        metrics: MetricsSnapshot,
        now: float,
        triggered_by: str,
        record: bool = True,
    ) -> Alert:
        if record:
            with self._lock:
                self._last_triggered[rule.id] = now

        alert = Alert(
            id=f"alt-{uuid.uuid4().hex[:12]}",
            type=rule.type,
            severity=rule.severity,
            title=rule.name,
            message=build_alert_message(rule, metrics),
            created_at=datetime.fromtimestamp(now, tz=UTC),
            metadata={
                "rule_id": rule.id,
                "metrics": dict(metrics),
                "triggered_by": triggered_by,
            },
            actions=list(rule.actions),
        )
        logger.info(
            "Rule %s triggered alert %s [%s]",
            rule.id, alert.id, alert.severity.value,
        )
        return alert


# ----------------------------------------------------------------------
# Messages
# ----------------------------------------------------------------------


def build_alert_message(rule: AlertRule, metrics: MetricsSnapshot) -> str:
    """Human-readable message for an alert, by alert type.

    Falls back to the rule name when the snapshot lacks the metrics the
    type-specific message needs.
    """
    try:
        match rule.type:
            case AlertType.PERFORMANCE:
                return (
                    "Performance degradation detected: "
                    f"Response time {float(metrics['avgResponseTime']):.0f}ms, "
                    f"Error rate {float(metrics['errorRate']) * 100:.2f}%"
                )
            case AlertType.MODEL_DRIFT:
                return (
                    "Model performance degraded: "
                    f"Accuracy {float(metrics['modelAccuracy']) * 100:.1f}%, "
                    f"Variance {float(metrics['predictionVariance']):.3f}"
                )
            case AlertType.ANOMALY:
                return (
                    "Data anomaly detected with score "
                    f"{float(metrics['anomalyScore']):.2f}"
                )
            case AlertType.SYSTEM:
                return (
                    "System resources critical: "
                    f"Memory {float(metrics['memoryUsage']) * 100:.1f}%, "
                    f"CPU {float(metrics['cpuUsage']) * 100:.1f}%"
                )
            case AlertType.BUSINESS:
                return (
                    "Business metric threshold exceeded: "
                    f"Conversion {float(metrics['conversionRate']) * 100:.2f}%, "
                    f"Engagement {float(metrics['userEngagement']) * 100:.1f}%"
                )
    except (KeyError, TypeError, ValueError):
        pass
    return rule.name


# ----------------------------------------------------------------------
# Default rule set
# ----------------------------------------------------------------------


def _above(metrics: MetricsSnapshot, key: str, threshold: float) -> bool:
    value = metrics.get(key)
    return value is not None and value > threshold


def _below(metrics: MetricsSnapshot, key: str, threshold: float) -> bool:
    value = metrics.get(key)
    return value is not None and value < threshold


def _log_action(message: str) -> Callable[[], None]:
    def handler() -> None:
        logger.info(message)

    return handler


def default_rules() -> list[AlertRule]:
    """The stock production monitoring rules."""
    return [
        AlertRule(
            id="performance_degradation",
            name="Performance Degradation Detected",
            type=AlertType.PERFORMANCE,
            condition=lambda m: (
                _above(m, "avgResponseTime", 2000) or _above(m, "errorRate", 0.05)
            ),
            severity=Severity.HIGH,
            cooldown_seconds=5 * 60,
            auto_resolve=True,
            actions=[
                AlertAction(
                    id="cache_warmup",
                    label="Warm Cache",
                    kind=ActionKind.AUTOMATIC,
                    handler=_log_action("Warming cache due to performance degradation"),
                ),
            ],
        ),
        AlertRule(
            id="model_drift",
            name="Statistical Model Drift Detected",
            type=AlertType.MODEL_DRIFT,
            condition=lambda m: (
                _below(m, "modelAccuracy", 0.8) or _above(m, "predictionVariance", 0.3)
            ),
            severity=Severity.MEDIUM,
            cooldown_seconds=15 * 60,
            auto_resolve=False,
            actions=[
                AlertAction(
                    id="retrain_model",
                    label="Trigger Model Retraining",
                    kind=ActionKind.MANUAL,
                    handler=_log_action("Triggering model retraining"),
                ),
            ],
        ),
        AlertRule(
            id="data_anomaly",
            name="Data Anomaly Detected",
            type=AlertType.ANOMALY,
            condition=lambda m: _above(m, "anomalyScore", 0.7),
            severity=Severity.MEDIUM,
            cooldown_seconds=10 * 60,
            auto_resolve=True,
        ),
        AlertRule(
            id="system_resources",
            name="System Resource Alert",
            type=AlertType.SYSTEM,
            condition=lambda m: (
                _above(m, "memoryUsage", 0.9) or _above(m, "cpuUsage", 0.85)
            ),
            severity=Severity.CRITICAL,
            cooldown_seconds=2 * 60,
            auto_resolve=True,
            actions=[
                AlertAction(
                    id="scale_resources",
                    label="Scale Resources",
                    kind=ActionKind.AUTOMATIC,
                    handler=_log_action("Scaling system resources"),
                ),
            ],
        ),
        AlertRule(
            id="business_threshold",
            name="Business Metric Threshold Exceeded",
            type=AlertType.BUSINESS,
            condition=lambda m: (
                _below(m, "conversionRate", 0.02) or _below(m, "userEngagement", 0.3)
            ),
            severity=Severity.HIGH,
            cooldown_seconds=30 * 60,
            auto_resolve=False,
            actions=[
                AlertAction(
                    id="notify_team",
                    label="Notify Business Team",
                    kind=ActionKind.MANUAL,
                    handler=_log_action("Notifying business team of threshold breach"),
                ),
            ],
        ),
    ]
