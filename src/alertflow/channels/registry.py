"""In-memory registry of notification channels.

Channels are validated on the way in: an enabled channel whose transport
config lacks required fields is rejected with ConfigurationError (or, for
config-file loading, kept but disabled) instead of failing at send time.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from alertflow.models import NotificationChannel

logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Raised when a channel's transport config is incomplete."""


def _check_config(channel: NotificationChannel) -> str | None:
    missing = channel.config.missing_fields()
    if not missing or not channel.enabled:
        return None
    return (
        f"Channel '{channel.id}' ({channel.type.value}) is missing "
        f"required config: {', '.join(missing)}"
    )


class ChannelRegistry:
    """Holds configured channels by id. Thread-safe via a lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._channels: dict[str, NotificationChannel] = {}

    def add(
        self,
        channel: NotificationChannel,
        *,
        disable_invalid: bool = False,
    ) -> NotificationChannel:
        """Register *channel*, replacing any channel with the same id."""
        problem = _check_config(channel)
        if problem is not None:
            if not disable_invalid:
                raise ConfigurationError(problem)
            logger.warning("%s; registering it disabled", problem)
            channel = channel.model_copy(update={"enabled": False})

        with self._lock:
            self._channels[channel.id] = channel
        logger.info(
            "Added channel: %s (%s, enabled=%s)",
            channel.id, channel.type.value, channel.enabled,
        )
        return channel

    def remove(self, channel_id: str) -> bool:
        with self._lock:
            removed = self._channels.pop(channel_id, None) is not None
        if removed:
            logger.info("Removed channel: %s", channel_id)
        return removed

    def update(self, channel_id: str, **updates: Any) -> NotificationChannel | None:
        """Apply field updates to a channel and re-validate it.

        Returns the updated channel, or None if no such channel exists.
        ``last_sent`` is carried over unless explicitly updated.
        """
        with self._lock:
            current = self._channels.get(channel_id)
            if current is None:
                return None

            data = current.model_dump()
            data["config"] = current.config
            data.update(updates)
            data["id"] = channel_id
            updated = NotificationChannel.model_validate(data)

            problem = _check_config(updated)
            if problem is not None:
                raise ConfigurationError(problem)

            self._channels[channel_id] = updated
        logger.info("Updated channel %s: %s", channel_id, sorted(updates))
        return updated

    def get(self, channel_id: str) -> NotificationChannel | None:
        return self._channels.get(channel_id)

    def list_channels(self) -> list[NotificationChannel]:
        return list(self._channels.values())

    def mark_sent(self, channel_id: str, sent_at: float) -> bool:
        """Record a successful send on the registered channel."""
        with self._lock:
            channel = self._channels.get(channel_id)
            if channel is None:
                return False
            channel.last_sent = sent_at
        return True

    def __len__(self) -> int:
        return len(self._channels)

    def __contains__(self, channel_id: object) -> bool:
        return channel_id in self._channels
