"""Core data models for alertflow.

Defines the schemas for:
- Severities and alert types (ordered, with total lookup functions)
- Alerts and the rules that produce them
- Notification channels and their per-type transport configs
- Escalation policies
- Notification payloads (transport view of an alert)
- Audit records (what happened)
"""

from __future__ import annotations

import enum
from collections.abc import Callable
from datetime import datetime
from typing import Annotated, Any, Literal, assert_never

from pydantic import BaseModel, Field

MetricsSnapshot = dict[str, Any]
"""Flat metric-name -> value mapping handed to rule conditions."""

# --- Enums ---


class Severity(enum.StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return severity_rank(self)

    def at_least(self, other: Severity) -> bool:
        return self.rank >= other.rank


class AlertType(enum.StrEnum):
    PERFORMANCE = "performance"
    ANOMALY = "anomaly"
    MODEL_DRIFT = "model_drift"
    SYSTEM = "system"
    BUSINESS = "business"


class ActionKind(enum.StrEnum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class ChannelType(enum.StrEnum):
    EMAIL = "email"
    CHAT = "chat"
    SMS = "sms"
    PUSH = "push"
    WEBHOOK = "webhook"


class ChatPlatform(enum.StrEnum):
    SLACK = "slack"
    DISCORD = "discord"


class AuditAction(enum.StrEnum):
    ALERT_TRIGGERED = "alert_triggered"
    ALERT_RESOLVED = "alert_resolved"
    NOTIFICATION_FAILED = "notification_failed"
    ALERT_SENT = "alert_sent"


class AuditLevel(enum.StrEnum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# --- Severity lookups ---


def severity_rank(severity: Severity) -> int:
    """Position of *severity* in the low < medium < high < critical order."""
    match severity:
        case Severity.LOW:
            return 0
        case Severity.MEDIUM:
            return 1
        case Severity.HIGH:
            return 2
        case Severity.CRITICAL:
            return 3
        case _:
            assert_never(severity)


def severity_color(severity: Severity) -> str:
    """Hex colour used by chat and email renderings."""
    match severity:
        case Severity.LOW:
            return "#28a745"
        case Severity.MEDIUM:
            return "#ffc107"
        case Severity.HIGH:
            return "#fd7e14"
        case Severity.CRITICAL:
            return "#dc3545"
        case _:
            assert_never(severity)


def severity_to_audit_level(severity: Severity) -> AuditLevel:
    """Map an alert severity onto the five-level audit taxonomy."""
    match severity:
        case Severity.LOW:
            return AuditLevel.INFO
        case Severity.MEDIUM:
            return AuditLevel.WARNING
        case Severity.HIGH:
            return AuditLevel.ERROR
        case Severity.CRITICAL:
            return AuditLevel.CRITICAL
        case _:
            assert_never(severity)


# --- Alerts & Rules ---


class AlertAction(BaseModel):
    """A named handler attached to a rule and carried on its alerts.

    Automatic actions run when the alert triggers; manual ones are only
    offered to operators.
    """

    id: str
    label: str
    kind: ActionKind = ActionKind.MANUAL
    handler: Callable[[], Any] | None = Field(default=None, exclude=True)


class Alert(BaseModel):
    """A materialized rule trigger.

    Created by the rule engine, mutated only by resolution. Once
    ``resolved`` is true the alert is never re-opened.
    """

    id: str
    type: AlertType
    severity: Severity
    title: str
    message: str
    created_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)
    resolved: bool = False
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    actions: list[AlertAction] = Field(default_factory=list)


class AlertRule(BaseModel):
    """A named condition over a merged metrics snapshot.

    A rule never re-triggers within ``cooldown_seconds`` of its last trigger.
    """

    id: str
    name: str
    type: AlertType
    condition: Callable[[MetricsSnapshot], bool] = Field(exclude=True)
    severity: Severity
    cooldown_seconds: float = Field(300.0, ge=0)
    auto_resolve: bool = False
    actions: list[AlertAction] = Field(default_factory=list)
    escalation_policy_id: str | None = None
    description: str = ""


# --- Channel transport configs (tagged by ``type``) ---


class EmailConfig(BaseModel):
    type: Literal["email"] = "email"
    smtp_host: str = "localhost"
    smtp_port: int = 587
    use_tls: bool = True
    username: str | None = None
    password: str | None = None
    from_address: str = ""
    recipients: list[str] = Field(default_factory=list)

    def missing_fields(self) -> list[str]:
        missing = []
        if not self.from_address:
            missing.append("from_address")
        if not self.recipients:
            missing.append("recipients")
        return missing


class ChatConfig(BaseModel):
    type: Literal["chat"] = "chat"
    platform: ChatPlatform = ChatPlatform.SLACK
    webhook_url: str = ""
    channel: str | None = None
    username: str = "Production Monitor"
    avatar_url: str | None = None

    def missing_fields(self) -> list[str]:
        return [] if self.webhook_url else ["webhook_url"]


class SmsConfig(BaseModel):
    type: Literal["sms"] = "sms"
    account_sid: str = ""
    auth_token: str = ""
    from_number: str = ""
    recipients: list[str] = Field(default_factory=list)
    api_base: str = "https://api.twilio.com/2010-04-01"

    def missing_fields(self) -> list[str]:
        fields = {
            "account_sid": self.account_sid,
            "auth_token": self.auth_token,
            "from_number": self.from_number,
            "recipients": self.recipients,
        }
        return [name for name, value in fields.items() if not value]


class PushConfig(BaseModel):
    type: Literal["push"] = "push"
    server_key: str = ""
    topics: list[str] = Field(default_factory=list)
    endpoint: str = "https://fcm.googleapis.com/fcm/send"

    def missing_fields(self) -> list[str]:
        missing = []
        if not self.server_key:
            missing.append("server_key")
        if not self.topics:
            missing.append("topics")
        return missing


class WebhookConfig(BaseModel):
    type: Literal["webhook"] = "webhook"
    url: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    source: str = "production_monitoring"

    def missing_fields(self) -> list[str]:
        return [] if self.url else ["url"]


ChannelConfig = Annotated[
    EmailConfig | ChatConfig | SmsConfig | PushConfig | WebhookConfig,
    Field(discriminator="type"),
]


class NotificationChannel(BaseModel):
    """A configured notification destination.

    Eligible for a payload iff enabled, the payload severity is in
    ``severity_filter`` and the rate-limit window since ``last_sent``
    (epoch seconds) has elapsed.
    """

    id: str
    name: str
    config: ChannelConfig
    enabled: bool = True
    severity_filter: set[Severity] = Field(
        default_factory=lambda: set(Severity),
    )
    rate_limit_minutes: float = Field(5.0, ge=0)
    last_sent: float | None = None

    @property
    def type(self) -> ChannelType:
        return ChannelType(self.config.type)

    def summary(self) -> dict[str, Any]:
        """Public view of the channel. Transport config (secrets) is omitted."""
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "enabled": self.enabled,
            "severity_filter": [s.value for s in sorted(self.severity_filter, key=severity_rank)],
            "rate_limit_minutes": self.rate_limit_minutes,
            "last_sent": self.last_sent,
        }


# --- Escalation ---


class EscalationStep(BaseModel):
    """One timed re-notification, relative to alert creation."""

    delay_minutes: float = Field(0.0, ge=0)
    channel_ids: list[str] = Field(default_factory=list)
    condition: Callable[[Alert], bool] | None = Field(default=None, exclude=True)


class EscalationPolicy(BaseModel):
    id: str
    name: str
    enabled: bool = True
    steps: list[EscalationStep] = Field(default_factory=list)


# --- Payloads & Audit ---


class NotificationPayload(BaseModel):
    """Transport view of an alert. Built on demand, never stored."""

    title: str
    message: str
    severity: Severity
    timestamp: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)
    action_url: str | None = None

    @classmethod
    def from_alert(
        cls, alert: Alert, action_url: str | None = None,
    ) -> NotificationPayload:
        return cls(
            title=alert.title,
            message=alert.message,
            severity=alert.severity,
            timestamp=alert.created_at,
            metadata=alert.metadata,
            action_url=action_url,
        )


class AuditRecord(BaseModel):
    """An append-only audit entry.

    ``prev_hash``/``entry_hash`` are filled in by hash-chaining sinks.
    """

    record_id: str
    timestamp: datetime
    action_type: AuditAction
    description: str
    level: AuditLevel = AuditLevel.INFO
    metadata: dict[str, Any] = Field(default_factory=dict)
    prev_hash: str = ""
    entry_hash: str = ""
