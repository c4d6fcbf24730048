#!/usr/bin/env python3
"""Demo: Alert Dispatch + Timed Escalation.

Walks one critical alert through the alerting pipeline on a simulated
clock: immediate multi-channel dispatch, per-channel rate limits, timed
escalation steps gated by severity, and cancellation on resolve.
Notifications are printed instead of sent.

Run from the project root:
    python examples/demo_escalation.py
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from alertflow import AlertingService, StaticMetricsProvider, default_rules
from alertflow.audit.logger import InMemoryAuditSink
from alertflow.config import min_severity_condition
from alertflow.models import (
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

# ANSI colors
GREEN = "\033[92m"
RED = "\033[91m"
YELLOW = "\033[93m"
CYAN = "\033[96m"
BOLD = "\033[1m"
DIM = "\033[2m"
RESET = "\033[0m"

START = 1_700_000_000.0


class SimClock:
    def __init__(self) -> None:
        self.now = START

    def __call__(self) -> float:
        return self.now

    def minutes(self) -> str:
        return f"t+{(self.now - START) / 60:>4.0f}m"


class ConsoleTransport:
    def __init__(self, clock: SimClock) -> None:
        self._clock = clock

    def send(self, config, payload: NotificationPayload) -> None:
        target = getattr(config, "platform", None) or config.type
        color = RED if payload.title.startswith("[ESCALATION") else CYAN
        print(f"  {DIM}{self._clock.minutes()}{RESET}  {str(target):<8} "
              f"{color}{payload.title}{RESET}")


def _header(title: str) -> None:
    print(f"\n{BOLD}{'-' * 70}")
    print(f"  {title}")
    print(f"{'-' * 70}{RESET}")


async def main() -> None:
    clock = SimClock()
    metrics = StaticMetricsProvider(system={"memoryUsage": 0.95, "cpuUsage": 0.40})
    audit = InMemoryAuditSink()
    transport = ConsoleTransport(clock)

    service = AlertingService(
        metrics,
        audit=audit,
        transports={t: transport for t in ChannelType},
        clock=clock,
        action_base_url="https://ops.example.com/monitoring",
    )
    for rule in default_rules():
        service.add_rule(rule)

    service.add_channel(NotificationChannel(
        id="slack", name="Slack",
        config=ChatConfig(webhook_url="https://hooks.example.com/slack"),
        severity_filter={Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL},
        rate_limit_minutes=2,
    ))
    service.add_channel(NotificationChannel(
        id="discord", name="Discord",
        config=ChatConfig(
            platform=ChatPlatform.DISCORD, webhook_url="https://hooks.example.com/discord",
        ),
        severity_filter={Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL},
        rate_limit_minutes=2,
    ))
    service.add_channel(NotificationChannel(
        id="email", name="Email",
        config=EmailConfig(from_address="alerts@example.com", recipients=["ops@example.com"]),
        severity_filter={Severity.HIGH, Severity.CRITICAL},
    ))
    service.add_channel(NotificationChannel(
        id="sms", name="SMS",
        config=SmsConfig(
            account_sid="AC0", auth_token="t0k", from_number="+15550000",
            recipients=["+15551111"],
        ),
        severity_filter={Severity.CRITICAL},
        rate_limit_minutes=15,
    ))
    service.add_escalation_policy(EscalationPolicy(
        id="default_escalation", name="Default Escalation",
        steps=[
            EscalationStep(delay_minutes=0, channel_ids=["slack", "discord"]),
            EscalationStep(
                delay_minutes=5, channel_ids=["email"],
                condition=min_severity_condition(Severity.HIGH),
            ),
            EscalationStep(
                delay_minutes=15, channel_ids=["sms"],
                condition=min_severity_condition(Severity.CRITICAL),
            ),
        ],
    ))

    print(f"\n{BOLD}{'=' * 70}")
    print("  alertflow Demo: Dispatch + Timed Escalation")
    print(f"{'=' * 70}{RESET}")
    print(f"\n  {CYAN}Metrics:{RESET} memoryUsage=95%  cpuUsage=40%")

    # --- Phase 1: Trigger ---
    _header("Phase 1: Poll Tick Triggers a Critical Alert")
    alerts = await service.poll_once()
    alert = alerts[0]
    print(f"  {YELLOW}{alert.id}{RESET}  {alert.message}")
    print(f"  pending escalation steps: {service.escalations.pending_count(alert.id)}")

    # --- Phase 2: Cooldown ---
    _header("Phase 2: Second Poll Inside the Rule Cooldown")
    clock.now += 60
    again = await service.poll_once()
    print(f"  {clock.minutes()}  alerts triggered: {len(again)} "
          f"{DIM}(system_resources cooldown is 2m){RESET}")

    # --- Phase 3: Escalation ---
    _header("Phase 3: Alert Left Open, Escalation Steps Fire")
    metrics.set("system", {"memoryUsage": 0.96, "cpuUsage": 0.40})
    for minute in (5, 10):
        clock.now = START + minute * 60
        fired = await service.run_due_timers()
        print(f"  {DIM}{clock.minutes()}  {fired} timer(s) fired{RESET}")

    # --- Phase 4: Resolve ---
    _header("Phase 4: Operator Resolves, Remaining Steps Cancelled")
    service.resolve_alert(alert.id, "oncall")
    print(f"  {GREEN}resolved{RESET} by oncall; pending steps: "
          f"{service.escalations.pending_count(alert.id)}")
    clock.now = START + 20 * 60
    fired = await service.run_due_timers()
    print(f"  {DIM}{clock.minutes()}  {fired} timer(s) fired (sms step never sent){RESET}")

    # --- Summary ---
    _header("Audit Trail")
    for record in audit.records:
        print(f"  {record.action_type.value:<22} {record.description}")
    print()


if __name__ == "__main__":
    asyncio.run(main())
