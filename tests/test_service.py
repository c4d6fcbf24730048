"""End-to-end tests for the alerting service."""

from __future__ import annotations

import asyncio

from alertflow.audit.logger import InMemoryAuditSink
from alertflow.metrics.provider import MetricUpdate, StaticMetricsProvider
from alertflow.models import (
    ActionKind,
    AlertAction,
    AlertRule,
    AlertType,
    AuditAction,
    ChannelType,
    ChatConfig,
    ChatPlatform,
    EmailConfig,
    EscalationPolicy,
    EscalationStep,
    NotificationChannel,
    NotificationPayload,
    Severity,
    SmsConfig,
)
from alertflow.rules.engine import TRIGGERED_BY_REALTIME, default_rules
from alertflow.service import AUTO_RESOLVED_BY, AlertingService

START = 1_700_000_000.0


class MockClock:
    """A controllable clock for testing time-dependent behavior."""

    def __init__(self, start: float = START) -> None:
        self._now = start

    def __call__(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds


class RecordingTransport:
    """Records (channel-ish target, payload) for every send."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, NotificationPayload]] = []

    def send(self, config, payload: NotificationPayload) -> None:
        target = getattr(config, "webhook_url", None) or config.type
        self.sent.append((target, payload))

    def titles(self, target: str) -> list[str]:
        return [p.title for t, p in self.sent if t == target]


class FailingProvider(StaticMetricsProvider):
    async def system_metrics(self):
        raise ConnectionError("metrics backend down")


def _make_service(
    provider: StaticMetricsProvider,
    clock: MockClock,
    **kwargs,
) -> tuple[AlertingService, RecordingTransport, InMemoryAuditSink]:
    transport = RecordingTransport()
    audit = InMemoryAuditSink()
    service = AlertingService(
        provider,
        audit=audit,
        transports={t: transport for t in ChannelType},
        clock=clock,
        action_base_url="https://app.example.com/monitoring",
        **kwargs,
    )
    return service, transport, audit


def _add_channels(service: AlertingService) -> None:
    service.add_channel(NotificationChannel(
        id="slack", name="Slack",
        config=ChatConfig(webhook_url="slack"),
        severity_filter={Severity.HIGH, Severity.CRITICAL},
    ))
    service.add_channel(NotificationChannel(
        id="discord", name="Discord",
        config=ChatConfig(platform=ChatPlatform.DISCORD, webhook_url="discord"),
        severity_filter={Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL},
    ))
    service.add_channel(NotificationChannel(
        id="email", name="Email",
        config=EmailConfig(from_address="alerts@example.com", recipients=["ops@example.com"]),
        severity_filter={Severity.CRITICAL},
    ))
    service.add_channel(NotificationChannel(
        id="sms", name="SMS",
        config=SmsConfig(account_sid="AC1", auth_token="t", from_number="+1",
                         recipients=["+2"]),
        severity_filter={Severity.CRITICAL},
        rate_limit_minutes=15,
    ))


def _default_policy() -> EscalationPolicy:
    return EscalationPolicy(
        id="default_escalation",
        name="Default Escalation",
        steps=[
            EscalationStep(delay_minutes=0, channel_ids=["slack", "discord"]),
            EscalationStep(
                delay_minutes=5, channel_ids=["email"],
                condition=lambda a: a.severity.at_least(Severity.HIGH),
            ),
            EscalationStep(
                delay_minutes=15, channel_ids=["sms"],
                condition=lambda a: a.severity == Severity.CRITICAL,
            ),
        ],
    )


def _system_service(clock: MockClock, **kwargs):
    provider = StaticMetricsProvider(system={"memoryUsage": 0.95, "cpuUsage": 0.4})
    service, transport, audit = _make_service(provider, clock, **kwargs)
    _add_channels(service)
    service.add_escalation_policy(_default_policy())
    for rule in default_rules():
        service.add_rule(rule)
    return service, provider, transport, audit


class TestPollPath:
    def test_system_resources_end_to_end(self):
        clock = MockClock()
        service, provider, transport, audit = _system_service(clock)

        alerts = asyncio.run(service.poll_once())

        assert [a.metadata["rule_id"] for a in alerts] == ["system_resources"]
        alert = alerts[0]
        assert service.get_active_alerts() == [alert]
        assert alert.message == "System resources critical: Memory 95.0%, CPU 40.0%"

        # Immediate dispatch: every channel whose filter admits critical.
        assert transport.titles("slack")[0] == "System Resource Alert"
        assert transport.titles("email") == ["System Resource Alert"]
        assert transport.titles("sms") == ["System Resource Alert"]
        _, payload = transport.sent[0]
        assert payload.action_url == f"https://app.example.com/monitoring?alert={alert.id}"

        # Step 0 of the escalation fires right away.
        assert "[ESCALATION 1] System Resource Alert" in transport.titles("slack")
        assert "[ESCALATION 1] System Resource Alert" in transport.titles("discord")

        assert len(audit.of_type(AuditAction.ALERT_TRIGGERED)) == 1
        sent = audit.of_type(AuditAction.ALERT_SENT)[0]
        assert sorted(sent.metadata["channels"]) == ["discord", "email", "slack", "sms"]

        # Within the 2 minute cooldown nothing re-triggers.
        clock.advance(30)
        assert asyncio.run(service.poll_once()) == []

        # Step 1 at 5 minutes reaches email despite its rate limit.
        clock.advance(4 * 60 + 30)
        provider.set("system", {"memoryUsage": 0.96, "cpuUsage": 0.4})
        asyncio.run(service.run_due_timers())
        assert "[ESCALATION 2] System Resource Alert" in transport.titles("email")

    def test_resolution_cancels_pending_escalation(self):
        clock = MockClock()
        service, _, transport, audit = _system_service(clock)
        alert = asyncio.run(service.poll_once())[0]

        assert service.resolve_alert(alert.id, "oncall") is True
        assert service.escalations.pending_count(alert.id) == 0

        sent_before = len(transport.sent)
        clock.advance(60 * 60)
        asyncio.run(service.run_due_timers())
        assert len(transport.sent) == sent_before
        assert len(audit.of_type(AuditAction.ALERT_RESOLVED)) == 1

    def test_metrics_failure_skips_tick(self):
        clock = MockClock()
        service, transport, audit = _make_service(FailingProvider(), clock)
        for rule in default_rules():
            service.add_rule(rule)

        assert asyncio.run(service.poll_once()) == []
        assert transport.sent == []
        assert audit.records == []

    def test_rule_specific_policy(self):
        clock = MockClock()
        provider = StaticMetricsProvider(performance={"errorRate": 0.5})
        service, transport, _ = _make_service(provider, clock)
        service.add_channel(NotificationChannel(
            id="pager", name="Pager", config=ChatConfig(webhook_url="pager"),
            severity_filter={Severity.CRITICAL},
        ))
        service.add_escalation_policy(EscalationPolicy(
            id="perf", name="Perf",
            steps=[EscalationStep(delay_minutes=1, channel_ids=["pager"])],
        ))
        service.add_rule(AlertRule(
            id="errors", name="Errors", type=AlertType.PERFORMANCE,
            condition=lambda m: m["errorRate"] > 0.1, severity=Severity.HIGH,
            escalation_policy_id="perf",
        ))

        alert = asyncio.run(service.poll_once())[0]
        assert transport.sent == []
        assert service.escalations.pending_count(alert.id) == 1

        clock.advance(60)
        asyncio.run(service.run_due_timers())
        assert transport.titles("pager") == ["[ESCALATION 1] Errors"]


class TestAutoResolve:
    def test_resolves_when_condition_clears(self):
        clock = MockClock()
        service, provider, _, _ = _system_service(clock)
        alert = asyncio.run(service.poll_once())[0]

        provider.set("system", {"memoryUsage": 0.5, "cpuUsage": 0.4})
        clock.advance(119)
        asyncio.run(service.run_due_timers())
        assert not alert.resolved

        clock.advance(1)
        asyncio.run(service.run_due_timers())
        assert alert.resolved
        assert alert.resolved_by == AUTO_RESOLVED_BY
        assert service.escalations.pending_count(alert.id) == 0

    def test_stays_open_while_condition_holds(self):
        clock = MockClock()
        service, _, _, _ = _system_service(clock)
        alert = asyncio.run(service.poll_once())[0]

        clock.advance(120)
        asyncio.run(service.run_due_timers())
        assert not alert.resolved

    def test_no_auto_resolve_for_rules_without_it(self):
        clock = MockClock()
        provider = StaticMetricsProvider(model={"modelAccuracy": 0.5})
        service, _, _ = _make_service(provider, clock)
        for rule in default_rules():
            service.add_rule(rule)

        alert = asyncio.run(service.poll_once())[0]
        assert alert.metadata["rule_id"] == "model_drift"
        provider.set("model", {"modelAccuracy": 0.99})
        clock.advance(60 * 60)
        asyncio.run(service.run_due_timers())
        assert not alert.resolved

    def test_metrics_failure_leaves_alert_open(self):
        clock = MockClock()
        service, provider, _, _ = _system_service(clock)
        alert = asyncio.run(service.poll_once())[0]

        async def broken():
            raise ConnectionError("down")

        provider.system_metrics = broken
        clock.advance(120)
        asyncio.run(service.run_due_timers())
        assert not alert.resolved


class TestRealtimePath:
    def test_push_triggers_critical_rules(self):
        clock = MockClock()
        service, provider, _, _ = _system_service(clock)
        provider.set("system", {})
        service.start_realtime()

        asyncio.run(provider.publish("alerting", {"memoryUsage": 0.97, "errorRate": 0.5}))

        active = service.get_active_alerts()
        assert [a.metadata["rule_id"] for a in active] == ["system_resources"]
        assert active[0].metadata["triggered_by"] == TRIGGERED_BY_REALTIME

    def test_bypass_allows_repeat_triggers(self):
        clock = MockClock()
        service, provider, _, _ = _system_service(clock, realtime_bypasses_cooldown=True)
        service.start_realtime()

        asyncio.run(provider.publish("alerting", {"memoryUsage": 0.97}))
        asyncio.run(provider.publish("alerting", {"memoryUsage": 0.97}))
        assert len(service.get_active_alerts()) == 2

    def test_cooldown_when_not_bypassing(self):
        clock = MockClock()
        service, provider, _, _ = _system_service(clock, realtime_bypasses_cooldown=False)
        service.start_realtime()

        asyncio.run(provider.publish("alerting", {"memoryUsage": 0.97}))
        asyncio.run(provider.publish("alerting", {"memoryUsage": 0.97}))
        assert len(service.get_active_alerts()) == 1

    def test_ignores_other_update_types(self):
        clock = MockClock()
        service, _, _, _ = _system_service(clock)
        update = MetricUpdate(type="heartbeat", data={"memoryUsage": 0.99})
        assert asyncio.run(service.handle_metric_update(update)) == []

    def test_stop_realtime_unsubscribes(self):
        clock = MockClock()
        service, provider, _, _ = _system_service(clock)
        service.start_realtime()
        service.stop_realtime()
        asyncio.run(provider.publish("alerting", {"memoryUsage": 0.97}))
        assert service.get_active_alerts() == []


class TestAutomaticActions:
    def test_sync_and_async_handlers_run(self):
        clock = MockClock()
        provider = StaticMetricsProvider(system={"memoryUsage": 0.95})
        service, _, _ = _make_service(provider, clock)
        ran: list[str] = []

        async def scale() -> None:
            ran.append("scale")

        def broken() -> None:
            raise RuntimeError("boom")

        service.add_rule(AlertRule(
            id="mem", name="Memory", type=AlertType.SYSTEM,
            condition=lambda m: m["memoryUsage"] > 0.9, severity=Severity.CRITICAL,
            actions=[
                AlertAction(id="broken", label="Broken", kind=ActionKind.AUTOMATIC,
                            handler=broken),
                AlertAction(id="scale", label="Scale", kind=ActionKind.AUTOMATIC,
                            handler=scale),
                AlertAction(id="page", label="Page", handler=lambda: ran.append("page")),
            ],
        ))

        alerts = asyncio.run(service.poll_once())
        assert len(alerts) == 1
        assert ran == ["scale"]
        assert [a.id for a in alerts[0].actions] == ["broken", "scale", "page"]


class TestQuerySurface:
    def test_history_limit_default(self):
        clock = MockClock()
        provider = StaticMetricsProvider(system={"memoryUsage": 0.95})
        service, _, _ = _make_service(provider, clock, history_limit=2)
        service.add_rule(AlertRule(
            id="mem", name="Memory", type=AlertType.SYSTEM,
            condition=lambda m: m["memoryUsage"] > 0.9, severity=Severity.LOW,
            cooldown_seconds=0,
        ))
        for _ in range(3):
            asyncio.run(service.poll_once())
            clock.advance(1)

        assert len(service.get_alert_history()) == 2
        assert len(service.get_alert_history(limit=10)) == 3

    def test_channel_admin(self):
        clock = MockClock()
        service, transport, _ = _make_service(StaticMetricsProvider(), clock)
        _add_channels(service)

        assert {c.id for c in service.get_channels()} == {"slack", "discord", "email", "sms"}
        assert asyncio.run(service.test_channel("slack")) is True
        assert transport.titles("slack") == ["Test Alert"]

        service.update_channel("slack", enabled=False)
        assert service.channels.get("slack").enabled is False
        assert service.remove_channel("slack") is True
        assert asyncio.run(service.test_channel("slack")) is False

    def test_subscribe(self):
        clock = MockClock()
        service, _, _, _ = _system_service(clock)
        seen = []
        service.subscribe(seen.append)
        asyncio.run(service.poll_once())
        assert len(seen) == 1


class TestRunLoop:
    def test_run_polls_until_stopped(self):
        provider = StaticMetricsProvider(system={"memoryUsage": 0.95})
        transport = RecordingTransport()
        service = AlertingService(
            provider,
            transports={t: transport for t in ChannelType},
            poll_interval_seconds=0.01,
            default_escalation_policy=None,
        )
        service.add_rule(AlertRule(
            id="mem", name="Memory", type=AlertType.SYSTEM,
            condition=lambda m: m.get("memoryUsage", 0) > 0.9,
            severity=Severity.CRITICAL, cooldown_seconds=3600,
        ))

        async def run_briefly() -> None:
            stop = asyncio.Event()
            task = asyncio.create_task(service.run(stop))
            await asyncio.sleep(0.1)
            stop.set()
            await asyncio.wait_for(task, timeout=5)

        asyncio.run(run_briefly())
        assert len(service.get_active_alerts()) == 1

        # Realtime subscription ends with the loop.
        asyncio.run(provider.publish("alerting", {"memoryUsage": 0.99}))
        assert len(service.get_active_alerts()) == 1
