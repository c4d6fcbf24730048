"""Alerting service: wires metrics, rules, alerts, channels and escalation.

One ``AlertingService`` per process (or per test) owns its own registries;
there is no module-level state. Control flow for a trigger::

    metrics (poll or push) -> RuleEngine -> AlertStore.create
        -> automatic actions
        -> EscalationScheduler.schedule  (steps queued on the timer queue)
        -> ChannelDispatcher.dispatch    (immediate, gated by eligibility)
        -> auto-resolve check queued at created_at + cooldown

Every path (poll tick, push handler, timer) degrades failures to logs and
audit records; nothing escapes ``poll_once()``, ``handle_metric_update()``
or ``run_due_timers()``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from alertflow.alerts.store import DEFAULT_HISTORY_LIMIT, DEFAULT_MAX_ALERTS, AlertStore
from alertflow.audit.logger import AuditLogger, AuditSink, InMemoryAuditSink, safe_record
from alertflow.channels.dispatcher import ChannelDispatcher
from alertflow.channels.registry import ChannelRegistry
from alertflow.channels.transports import Transport
from alertflow.escalation.scheduler import EscalationScheduler
from alertflow.escalation.timers import TimerQueue
from alertflow.metrics.provider import (
    METRIC_UPDATE,
    MetricsFetchError,
    MetricsProvider,
    MetricUpdate,
    fetch_snapshot,
)
from alertflow.models import (
    ActionKind,
    Alert,
    AlertRule,
    AuditAction,
    ChannelType,
    EscalationPolicy,
    NotificationChannel,
    NotificationPayload,
    severity_to_audit_level,
)
from alertflow.rules.engine import RuleEngine, default_rules

if TYPE_CHECKING:
    from alertflow.config import AlertflowConfig

logger = logging.getLogger(__name__)

AUTO_RESOLVED_BY = "auto_resolved"
REALTIME_TOPIC = "alerting"
MAX_IDLE_SECONDS = 1.0


class AlertingService:
    """The alerting and escalation engine."""

    def __init__(
        self,
        metrics: MetricsProvider,
        *,
        audit: AuditSink | None = None,
        transports: dict[ChannelType, Transport] | None = None,
        clock: Callable[[], float] | None = None,
        poll_interval_seconds: float = 30.0,
        realtime_bypasses_cooldown: bool = True,
        send_timeout_seconds: float | None = 10.0,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        max_alerts: int = DEFAULT_MAX_ALERTS,
        action_base_url: str | None = None,
        default_escalation_policy: str | None = "default_escalation",
    ) -> None:
        self._metrics = metrics
        self._clock = clock or time.time
        self._poll_interval = poll_interval_seconds
        self._history_limit = history_limit
        self._action_base_url = action_base_url
        self._default_escalation_policy = default_escalation_policy

        self._audit: AuditSink = audit if audit is not None else InMemoryAuditSink()
        self._channels = ChannelRegistry()
        self._rules = RuleEngine(self._clock, realtime_bypasses_cooldown)
        self._dispatcher = ChannelDispatcher(
            self._channels, transports, self._audit, self._clock, send_timeout_seconds,
        )
        self._escalations = EscalationScheduler(self._dispatcher, self._clock)
        self._alerts = AlertStore(self._audit, self._escalations, self._clock, max_alerts)
        self._auto_resolve = TimerQueue()
        self._unsubscribe: Callable[[], None] | None = None

    @classmethod
    def from_config(
        cls,
        config: AlertflowConfig,
        metrics: MetricsProvider,
        *,
        transports: dict[ChannelType, Transport] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> AlertingService:
        """Build a service and populate it from a parsed config file."""
        from alertflow.config import build_channels, build_policies, build_rules

        audit: AuditSink = (
            AuditLogger(config.audit_log) if config.audit_log else InMemoryAuditSink()
        )
        service = cls(
            metrics,
            audit=audit,
            transports=transports,
            clock=clock,
            poll_interval_seconds=config.poll_interval_seconds,
            realtime_bypasses_cooldown=config.realtime_bypasses_cooldown,
            send_timeout_seconds=config.send_timeout_seconds,
            history_limit=config.history_limit,
            max_alerts=config.max_alerts,
            action_base_url=config.action_base_url,
            default_escalation_policy=config.default_escalation_policy,
        )

        for channel in build_channels(config):
            service.channels.add(channel, disable_invalid=True)
        for policy in build_policies(config):
            service.add_escalation_policy(policy)
        if config.use_default_rules:
            for rule in default_rules():
                service.add_rule(rule)
        for rule in build_rules(config):
            service.add_rule(rule)
        return service

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def audit(self) -> AuditSink:
        return self._audit

    @property
    def channels(self) -> ChannelRegistry:
        return self._channels

    @property
    def rules(self) -> RuleEngine:
        return self._rules

    @property
    def dispatcher(self) -> ChannelDispatcher:
        return self._dispatcher

    @property
    def escalations(self) -> EscalationScheduler:
        return self._escalations

    @property
    def alerts(self) -> AlertStore:
        return self._alerts

    # ------------------------------------------------------------------
    # Evaluation paths
    # ------------------------------------------------------------------

    async def poll_once(self) -> list[Alert]:
        """One poll tick: fetch, evaluate every rule, process triggers."""
        try:
            snapshot = await fetch_snapshot(self._metrics)
        except MetricsFetchError as exc:
            logger.warning("Skipping poll tick: %s", exc)
            return []

        alerts = self._rules.evaluate(snapshot)
        for alert in alerts:
            await self._process(alert)
        return alerts

    async def handle_metric_update(self, update: MetricUpdate) -> list[Alert]:
        """Push path: evaluate critical rules against one metric update."""
        if update.type != METRIC_UPDATE:
            return []
        alerts = self._rules.evaluate_realtime(update.data)
        for alert in alerts:
            await self._process(alert)
        return alerts

    def start_realtime(self, topic: str = REALTIME_TOPIC) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self._metrics.subscribe(topic, self.handle_metric_update)

    def stop_realtime(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def _process(self, alert: Alert) -> None:
        try:
            rule = self._rules.get_rule(alert.metadata.get("rule_id", ""))
            self._alerts.create(alert)
            await self._run_automatic_actions(alert)

            payload = NotificationPayload.from_alert(alert, self.action_url(alert))
            policy_id = (rule.escalation_policy_id if rule else None) or (
                self._default_escalation_policy
            )
            if policy_id:
                self._escalations.schedule(alert, payload, policy_id)

            dispatched = await self._dispatcher.dispatch(payload)
            safe_record(
                self._audit,
                AuditAction.ALERT_SENT,
                f"Multi-channel alert sent: {payload.title}",
                severity_to_audit_level(payload.severity),
                {
                    "alert_id": alert.id,
                    "severity": payload.severity.value,
                    "channels": dispatched,
                    "payload": payload.model_dump(mode="json"),
                },
            )

            if rule is not None and rule.auto_resolve:
                self._auto_resolve.schedule(
                    alert.id,
                    alert.created_at.timestamp() + rule.cooldown_seconds,
                    rule,
                )

            await self._escalations.fire_due()
        except Exception:
            logger.exception("Processing alert %s failed", alert.id)

    async def _run_automatic_actions(self, alert: Alert) -> None:
        for action in alert.actions:
            if action.kind != ActionKind.AUTOMATIC or action.handler is None:
                continue
            try:
                result = action.handler()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Automatic action %s failed for alert %s", action.id, alert.id,
                )

    def action_url(self, alert: Alert) -> str | None:
        if not self._action_base_url:
            return None
        sep = "&" if "?" in self._action_base_url else "?"
        return f"{self._action_base_url}{sep}alert={alert.id}"

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    async def run_due_timers(self, now: float | None = None) -> int:
        """Fire due escalation steps and auto-resolve checks."""
        now = self._clock() if now is None else now
        fired = await self._escalations.fire_due(now)

        while (entry := self._auto_resolve.pop_due(now)) is not None:
            try:
                await self.check_auto_resolve(entry.key, entry.payload)
            except Exception:
                logger.exception("Auto-resolve check for alert %s failed", entry.key)
            fired += 1
        return fired

    async def check_auto_resolve(self, alert_id: str, rule: AlertRule) -> bool:
        """Resolve *alert_id* if *rule* no longer holds on fresh metrics.

        Runs once per alert; an alert left open here is not checked again.
        """
        alert = self._alerts.get_alert(alert_id)
        if alert is None or alert.resolved:
            return False

        try:
            snapshot = await fetch_snapshot(self._metrics)
        except MetricsFetchError as exc:
            logger.warning("Auto-resolve check for alert %s skipped: %s", alert_id, exc)
            return False

        try:
            still_firing = bool(rule.condition(snapshot))
        except Exception as exc:
            logger.warning(
                "Auto-resolve condition for alert %s raised %s; leaving it open",
                alert_id, exc,
            )
            return False

        if still_firing:
            logger.info("Alert %s still firing; leaving it open", alert_id)
            return False
        return self._alerts.resolve_alert(alert_id, AUTO_RESOLVED_BY)

    def next_wakeup(self) -> float | None:
        candidates = [
            t for t in (self._escalations.next_fire_at(), self._auto_resolve.next_fire_at())
            if t is not None
        ]
        return min(candidates) if candidates else None

    async def run(self, stop: asyncio.Event | None = None) -> None:
        """Poll on a fixed interval and fire timers until *stop* is set."""
        stop = stop or asyncio.Event()
        self.start_realtime()
        next_poll = self._clock()
        logger.info("Alerting service started (poll every %gs)", self._poll_interval)
        try:
            while not stop.is_set():
                if self._clock() >= next_poll:
                    next_poll = self._clock() + self._poll_interval
                    await self.poll_once()
                await self.run_due_timers()

                wake = min(t for t in (next_poll, self.next_wakeup()) if t is not None)
                delay = min(max(0.0, wake - self._clock()), MAX_IDLE_SECONDS)
                try:
                    await asyncio.wait_for(stop.wait(), timeout=delay)
                except TimeoutError:
                    pass
        finally:
            self.stop_realtime()
            logger.info("Alerting service stopped")

    # ------------------------------------------------------------------
    # Query surface
    # ------------------------------------------------------------------

    def get_active_alerts(self) -> list[Alert]:
        return self._alerts.get_active_alerts()

    def get_alert_history(self, limit: int | None = None) -> list[Alert]:
        return self._alerts.get_alert_history(
            self._history_limit if limit is None else limit,
        )

    def get_channels(self) -> list[NotificationChannel]:
        return self._channels.list_channels()

    async def test_channel(self, channel_id: str) -> bool:
        return await self._dispatcher.test_channel(channel_id)

    def resolve_alert(self, alert_id: str, resolved_by: str = "manual") -> bool:
        return self._alerts.resolve_alert(alert_id, resolved_by)

    def subscribe(self, callback: Callable[[Alert], None]) -> Callable[[], None]:
        return self._alerts.subscribe(callback)

    # ------------------------------------------------------------------
    # Admin surface
    # ------------------------------------------------------------------

    def add_channel(self, channel: NotificationChannel) -> NotificationChannel:
        return self._channels.add(channel)

    def remove_channel(self, channel_id: str) -> bool:
        return self._channels.remove(channel_id)

    def update_channel(self, channel_id: str, **updates: Any) -> NotificationChannel | None:
        return self._channels.update(channel_id, **updates)

    def add_escalation_policy(self, policy: EscalationPolicy) -> None:
        self._escalations.add_policy(policy)

    def remove_escalation_policy(self, policy_id: str) -> bool:
        return self._escalations.remove_policy(policy_id)

    def add_rule(self, rule: AlertRule) -> None:
        self._rules.add_rule(rule)

    def remove_rule(self, rule_id: str) -> bool:
        return self._rules.remove_rule(rule_id)
