"""alertflow: operational alerting and escalation engine."""

__version__ = "0.1.0"

from alertflow.alerts.store import AlertStore
from alertflow.audit.logger import AuditLogger, AuditSink, InMemoryAuditSink, verify_log
from alertflow.channels.dispatcher import ChannelDispatcher
from alertflow.channels.registry import ChannelRegistry, ConfigurationError
from alertflow.channels.transports import ChannelSendError
from alertflow.config import AlertflowConfig, find_config, load_config
from alertflow.escalation.scheduler import EscalationScheduler
from alertflow.metrics.provider import (
    FileMetricsProvider,
    MetricsFetchError,
    MetricsProvider,
    MetricUpdate,
    StaticMetricsProvider,
)
from alertflow.models import (
    Alert,
    AlertAction,
    AlertRule,
    AlertType,
    ChannelType,
    EscalationPolicy,
    EscalationStep,
    NotificationChannel,
    NotificationPayload,
    Severity,
)
from alertflow.rules.engine import RuleEngine, default_rules
from alertflow.service import AlertingService

__all__ = [
    "Alert",
    "AlertAction",
    "AlertflowConfig",
    "AlertingService",
    "AlertRule",
    "AlertStore",
    "AlertType",
    "AuditLogger",
    "AuditSink",
    "ChannelDispatcher",
    "ChannelRegistry",
    "ChannelSendError",
    "ChannelType",
    "ConfigurationError",
    "default_rules",
    "EscalationPolicy",
    "EscalationScheduler",
    "EscalationStep",
    "FileMetricsProvider",
    "find_config",
    "InMemoryAuditSink",
    "load_config",
    "MetricsFetchError",
    "MetricsProvider",
    "MetricUpdate",
    "NotificationChannel",
    "NotificationPayload",
    "RuleEngine",
    "Severity",
    "StaticMetricsProvider",
    "verify_log",
    "__version__",
]
