"""Tests for the HTTP API.

Uses FastAPI TestClient against a service with an in-memory metrics
provider and a recording transport.
"""

from __future__ import annotations

import asyncio

import pytest

fastapi = pytest.importorskip("fastapi", reason="fastapi not installed")

from fastapi.testclient import TestClient  # noqa: E402

from alertflow import __version__  # noqa: E402
from alertflow.api.app import create_app  # noqa: E402
from alertflow.audit.logger import InMemoryAuditSink  # noqa: E402
from alertflow.metrics.provider import StaticMetricsProvider  # noqa: E402
from alertflow.models import (  # noqa: E402
    AlertRule,
    AlertType,
    ChannelType,
    ChatConfig,
    NotificationChannel,
    NotificationPayload,
    Severity,
)
from alertflow.rules.engine import default_rules  # noqa: E402
from alertflow.service import AlertingService  # noqa: E402

SECRET_WEBHOOK = "https://hooks.slack.com/services/T000/B000/secret"


class RecordingTransport:
    def __init__(self) -> None:
        self.sent: list[NotificationPayload] = []

    def send(self, config, payload: NotificationPayload) -> None:
        self.sent.append(payload)


def _make_client() -> tuple[TestClient, AlertingService, RecordingTransport]:
    transport = RecordingTransport()
    service = AlertingService(
        StaticMetricsProvider(system={"memoryUsage": 0.95, "cpuUsage": 0.40}),
        audit=InMemoryAuditSink(),
        transports={t: transport for t in ChannelType},
        default_escalation_policy=None,
    )
    for rule in default_rules():
        service.add_rule(rule)
    service.add_channel(
        NotificationChannel(
            id="slack",
            name="Slack",
            config=ChatConfig(webhook_url=SECRET_WEBHOOK),
            severity_filter={Severity.HIGH, Severity.CRITICAL},
            rate_limit_minutes=2,
        )
    )
    service.add_channel(
        NotificationChannel(
            id="discord",
            name="Discord",
            config=ChatConfig(platform="discord"),
            enabled=False,
        )
    )
    asyncio.run(service.poll_once())
    return TestClient(create_app(service)), service, transport


# --- health ---


class TestHealth:
    def test_health(self):
        client, _, _ = _make_client()
        resp = client.get("/api/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["version"] == __version__
        assert data["active_alerts"] == 1
        assert data["channels"] == 2
        assert data["rules"] == 5
        assert data["pending_escalations"] == 0


# --- alerts ---


class TestAlerts:
    def test_active(self):
        client, _, _ = _make_client()
        resp = client.get("/api/alerts/active")
        assert resp.status_code == 200
        data = resp.json()
        assert len(data) == 1
        assert data[0]["severity"] == "critical"
        assert data[0]["metadata"]["rule_id"] == "system_resources"
        assert data[0]["actions"][0]["id"] == "scale_resources"
        assert "handler" not in data[0]["actions"][0]

    def test_history_limit(self):
        client, service, _ = _make_client()
        service.add_rule(
            AlertRule(
                id="always", name="Always", type=AlertType.BUSINESS,
                condition=lambda m: True, severity=Severity.LOW,
            )
        )
        asyncio.run(service.poll_once())
        assert len(client.get("/api/alerts/history").json()) == 2
        resp = client.get("/api/alerts/history", params={"limit": 1})
        assert resp.status_code == 200
        assert len(resp.json()) == 1

    def test_history_limit_validated(self):
        client, _, _ = _make_client()
        assert client.get("/api/alerts/history", params={"limit": 0}).status_code == 422

    def test_resolve(self):
        client, _, _ = _make_client()
        alert_id = client.get("/api/alerts/active").json()[0]["id"]

        resp = client.post(
            f"/api/alerts/{alert_id}/resolve", json={"resolved_by": "oncall"},
        )
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}
        assert client.get("/api/alerts/active").json() == []

        history = client.get("/api/alerts/history").json()
        assert history[0]["resolved"] is True
        assert history[0]["resolved_by"] == "oncall"

    def test_resolve_twice_is_noop(self):
        client, _, _ = _make_client()
        alert_id = client.get("/api/alerts/active").json()[0]["id"]
        client.post(f"/api/alerts/{alert_id}/resolve")
        resp = client.post(f"/api/alerts/{alert_id}/resolve")
        assert resp.status_code == 200
        assert resp.json() == {"ok": False}

    def test_resolve_unknown(self):
        client, _, _ = _make_client()
        assert client.post("/api/alerts/alt-missing/resolve").status_code == 404


# --- channels ---


class TestChannels:
    def test_list_hides_secrets(self):
        client, _, _ = _make_client()
        resp = client.get("/api/channels")
        assert resp.status_code == 200
        by_id = {c["id"]: c for c in resp.json()}
        assert by_id["slack"]["type"] == "chat"
        assert by_id["slack"]["severity_filter"] == ["high", "critical"]
        assert by_id["slack"]["last_sent"] is not None
        assert by_id["discord"]["enabled"] is False
        assert "secret" not in resp.text
        assert "config" not in by_id["slack"]

    def test_test_channel(self):
        client, _, transport = _make_client()
        resp = client.post("/api/channels/slack/test")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}
        assert transport.sent[-1].title == "Test Alert"

    def test_test_unknown_channel(self):
        client, _, _ = _make_client()
        assert client.post("/api/channels/ghost/test").status_code == 404

    def test_patch(self):
        client, service, _ = _make_client()
        resp = client.patch(
            "/api/channels/slack",
            json={"severity_filter": ["critical"], "rate_limit_minutes": 0},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["severity_filter"] == ["critical"]
        assert data["rate_limit_minutes"] == 0
        assert service.channels.get("slack").severity_filter == {Severity.CRITICAL}

    def test_patch_enabling_incomplete_channel_conflicts(self):
        client, service, _ = _make_client()
        resp = client.patch("/api/channels/discord", json={"enabled": True})
        assert resp.status_code == 409
        assert "webhook_url" in resp.json()["detail"]
        assert service.channels.get("discord").enabled is False

    def test_patch_unknown(self):
        client, _, _ = _make_client()
        resp = client.patch("/api/channels/ghost", json={"enabled": False})
        assert resp.status_code == 404

    def test_delete(self):
        client, service, _ = _make_client()
        assert client.delete("/api/channels/slack").json() == {"ok": True}
        assert service.channels.get("slack") is None
        assert client.delete("/api/channels/slack").status_code == 404
