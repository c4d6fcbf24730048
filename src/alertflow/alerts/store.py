"""In-memory alert registry and lifecycle.

Alerts are created by the rule engine and only ever change by being
resolved; a resolved alert is never re-opened. Resolution cancels the
alert's pending escalation steps before anything else happens.

The store keeps at most ``max_alerts`` records, dropping the oldest
*resolved* alerts first. Active alerts are never dropped.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from alertflow.audit.logger import AuditSink, safe_record
from alertflow.escalation.scheduler import EscalationScheduler
from alertflow.models import Alert, AuditAction, AuditLevel, severity_to_audit_level

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50
DEFAULT_MAX_ALERTS = 1000

AlertSubscriber = Callable[[Alert], None]


class AlertStore:
    """Holds alerts by id. Thread-safe via a lock on mutations."""

    def __init__(
        self,
        audit: AuditSink | None = None,
        escalations: EscalationScheduler | None = None,
        clock: Callable[[], float] | None = None,
        max_alerts: int = DEFAULT_MAX_ALERTS,
    ) -> None:
        self._audit = audit
        self._escalations = escalations
        self._clock = clock or time.time
        self._max_alerts = max_alerts
        self._lock = threading.Lock()
        self._alerts: dict[str, Alert] = {}
        self._subscribers: dict[int, AlertSubscriber] = {}
        self._next_handle = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self, alert: Alert) -> Alert:
        with self._lock:
            self._alerts[alert.id] = alert
            self._prune()

        safe_record(
            self._audit,
            AuditAction.ALERT_TRIGGERED,
            alert.message,
            severity_to_audit_level(alert.severity),
            {
                "alert_id": alert.id,
                "alert_type": alert.type.value,
                "metrics": alert.metadata.get("metrics", {}),
            },
        )
        self._notify(alert)
        return alert

    def resolve_alert(self, alert_id: str, resolved_by: str) -> bool:
        """Resolve an open alert.

        No-op (returns False) when the alert is unknown or already resolved.
        """
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.resolved:
                return False
            alert.resolved = True
            alert.resolved_at = datetime.fromtimestamp(self._clock(), tz=UTC)
            alert.resolved_by = resolved_by

        if self._escalations is not None:
            self._escalations.cancel(alert_id)

        logger.info("Alert %s resolved by %s", alert_id, resolved_by)
        safe_record(
            self._audit,
            AuditAction.ALERT_RESOLVED,
            f"Alert resolved: {alert.title}",
            AuditLevel.INFO,
            {
                "alert_id": alert_id,
                "resolved_by": resolved_by,
                "original_severity": alert.severity.value,
            },
        )
        self._notify(alert)
        return True

    def _prune(self) -> None:
        overflow = len(self._alerts) - self._max_alerts
        if overflow <= 0:
            return
        resolved = sorted(
            (a for a in self._alerts.values() if a.resolved),
            key=lambda a: a.created_at,
        )
        for alert in resolved[:overflow]:
            del self._alerts[alert.id]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_alert(self, alert_id: str) -> Alert | None:
        return self._alerts.get(alert_id)

    def get_active_alerts(self) -> list[Alert]:
        return [a for a in self._alerts.values() if not a.resolved]

    def get_alert_history(self, limit: int = DEFAULT_HISTORY_LIMIT) -> list[Alert]:
        """All alerts, newest first, truncated to *limit*."""
        ordered = sorted(
            self._alerts.values(), key=lambda a: a.created_at, reverse=True,
        )
        return ordered[:max(limit, 0)]

    def __len__(self) -> int:
        return len(self._alerts)

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(self, callback: AlertSubscriber) -> Callable[[], None]:
        """Call *callback* on every create and resolve. Returns an unsubscribe."""
        with self._lock:
            handle = self._next_handle
            self._next_handle += 1
            self._subscribers[handle] = callback

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(handle, None)

        return unsubscribe

    def _notify(self, alert: Alert) -> None:
        for callback in list(self._subscribers.values()):
            try:
                callback(alert)
            except Exception:
                logger.exception("Alert subscriber failed for alert %s", alert.id)
