"""Tests for the channel registry."""

from __future__ import annotations

import pytest

from alertflow.channels.registry import ChannelRegistry, ConfigurationError
from alertflow.models import (
    ChatConfig,
    EmailConfig,
    NotificationChannel,
    Severity,
    WebhookConfig,
)


def _make_channel(**overrides) -> NotificationChannel:
    defaults = {
        "id": "ops-webhook",
        "name": "Ops Webhook",
        "config": WebhookConfig(url="https://hooks.example.com/alerts"),
    }
    defaults.update(overrides)
    return NotificationChannel(**defaults)


class TestAdd:
    def test_add_and_get(self):
        registry = ChannelRegistry()
        registry.add(_make_channel())
        assert "ops-webhook" in registry
        assert len(registry) == 1
        assert registry.get("ops-webhook").name == "Ops Webhook"

    def test_incomplete_config_rejected(self):
        registry = ChannelRegistry()
        with pytest.raises(ConfigurationError, match="webhook_url"):
            registry.add(_make_channel(id="slack", config=ChatConfig()))
        assert "slack" not in registry

    def test_incomplete_config_disabled_when_requested(self):
        registry = ChannelRegistry()
        added = registry.add(
            _make_channel(id="email", config=EmailConfig()), disable_invalid=True,
        )
        assert added.enabled is False
        assert registry.get("email").enabled is False

    def test_disabled_incomplete_channel_accepted(self):
        registry = ChannelRegistry()
        registry.add(_make_channel(id="email", config=EmailConfig(), enabled=False))
        assert "email" in registry

    def test_configuration_error_is_value_error(self):
        assert issubclass(ConfigurationError, ValueError)


class TestUpdate:
    def test_update_fields(self):
        registry = ChannelRegistry()
        registry.add(_make_channel())
        updated = registry.update(
            "ops-webhook",
            severity_filter={Severity.CRITICAL},
            rate_limit_minutes=1,
        )
        assert updated.severity_filter == {Severity.CRITICAL}
        assert registry.get("ops-webhook").rate_limit_minutes == 1

    def test_update_keeps_last_sent(self):
        registry = ChannelRegistry()
        registry.add(_make_channel())
        registry.mark_sent("ops-webhook", 1234.0)
        updated = registry.update("ops-webhook", enabled=False)
        assert updated.last_sent == 1234.0

    def test_update_unknown(self):
        assert ChannelRegistry().update("nope", enabled=False) is None

    def test_enabling_incomplete_channel_rejected(self):
        registry = ChannelRegistry()
        registry.add(_make_channel(id="email", config=EmailConfig(), enabled=False))
        with pytest.raises(ConfigurationError):
            registry.update("email", enabled=True)
        assert registry.get("email").enabled is False

    def test_update_cannot_change_id(self):
        registry = ChannelRegistry()
        registry.add(_make_channel())
        updated = registry.update("ops-webhook", id="other")
        assert updated.id == "ops-webhook"
        assert "other" not in registry


class TestRemoveAndList:
    def test_remove(self):
        registry = ChannelRegistry()
        registry.add(_make_channel())
        assert registry.remove("ops-webhook") is True
        assert registry.remove("ops-webhook") is False

    def test_list_channels(self):
        registry = ChannelRegistry()
        registry.add(_make_channel(id="a"))
        registry.add(_make_channel(id="b"))
        assert [c.id for c in registry.list_channels()] == ["a", "b"]

    def test_mark_sent_unknown(self):
        assert ChannelRegistry().mark_sent("nope", 1.0) is False
