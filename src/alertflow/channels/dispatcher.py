"""Fan notification payloads out to eligible channels.

A channel is eligible for a payload iff it is enabled, the payload's
severity is in its severity filter, and its rate-limit window since the
last successful send has elapsed. All eligible channels are attempted
concurrently and joined settled: one failing or slow channel never blocks,
delays or suppresses the others, and nothing propagates out of dispatch().

Delivery is fire-and-forget at the provider level. A send counts as
successful when the transport returns without raising; there is no
downstream acknowledgement.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime

from alertflow.audit.logger import AuditSink, safe_record
from alertflow.channels.registry import ChannelRegistry
from alertflow.channels.transports import ChannelSendError, Transport, build_transports
from alertflow.models import (
    AuditAction,
    AuditLevel,
    ChannelType,
    NotificationChannel,
    NotificationPayload,
    Severity,
)

logger = logging.getLogger(__name__)


class ChannelDispatcher:
    """Sends payloads through registered channels and their transports."""

    def __init__(
        self,
        registry: ChannelRegistry,
        transports: dict[ChannelType, Transport] | None = None,
        audit: AuditSink | None = None,
        clock: Callable[[], float] | None = None,
        send_timeout: float | None = 10.0,
    ) -> None:
        self._registry = registry
        self._transports: dict[ChannelType, Transport] = (
            transports if transports is not None else build_transports()
        )
        self._audit = audit
        self._clock = clock or time.time
        self._send_timeout = send_timeout
        self._in_flight: set[str] = set()

    @property
    def registry(self) -> ChannelRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    def should_send(
        self,
        channel: NotificationChannel,
        payload: NotificationPayload,
        now: float | None = None,
    ) -> bool:
        if not channel.enabled:
            return False
        if payload.severity not in channel.severity_filter:
            return False
        if channel.last_sent is not None:
            now = self._clock() if now is None else now
            if now - channel.last_sent < channel.rate_limit_minutes * 60:
                return False
        return True

    def eligible_channels(
        self, payload: NotificationPayload, now: float | None = None,
    ) -> list[NotificationChannel]:
        now = self._clock() if now is None else now
        eligible = [
            c for c in self._registry.list_channels()
            if self.should_send(c, payload, now)
        ]
        logger.debug(
            "Payload %r [%s] eligible for channels: %s",
            payload.title, payload.severity.value, [c.id for c in eligible],
        )
        return eligible

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def dispatch(self, payload: NotificationPayload) -> list[str]:
        """Send *payload* to every eligible channel.

        Returns the ids of the channels that were attempted.
        """
        # Select and reserve with no await in between: an overlapping dispatch
        # must not pick a rate-limited channel whose send is still in flight.
        eligible = [
            c for c in self.eligible_channels(payload)
            if c.rate_limit_minutes <= 0 or c.id not in self._in_flight
        ]
        reserved = {c.id for c in eligible if c.rate_limit_minutes > 0}
        self._in_flight.update(reserved)
        try:
            await self.send_many(eligible, payload)
        finally:
            self._in_flight.difference_update(reserved)
        return [c.id for c in eligible]

    async def send_many(
        self,
        channels: list[NotificationChannel],
        payload: NotificationPayload,
    ) -> dict[str, bool]:
        """Attempt every channel concurrently, bypassing eligibility checks."""
        if not channels:
            return {}
        outcomes = await asyncio.gather(
            *(self.send_to_channel(c, payload) for c in channels),
            return_exceptions=True,
        )
        return {
            c.id: outcome is True
            for c, outcome in zip(channels, outcomes, strict=True)
        }

    async def send_to_channel(
        self,
        channel: NotificationChannel,
        payload: NotificationPayload,
    ) -> bool:
        """One send attempt. Failures are logged and audited, never raised."""
        try:
            await self._deliver(channel, payload)
        except Exception as exc:
            logger.warning(
                "Failed to send %r via %s channel %s: %s",
                payload.title, channel.type.value, channel.id, exc,
            )
            safe_record(
                self._audit,
                AuditAction.NOTIFICATION_FAILED,
                f"Failed to send {channel.type.value} notification",
                AuditLevel.ERROR,
                {
                    "channel_id": channel.id,
                    "channel_type": channel.type.value,
                    "error": str(exc),
                    "payload": payload.model_dump(mode="json"),
                },
            )
            return False

        sent_at = self._clock()
        channel.last_sent = sent_at
        self._registry.mark_sent(channel.id, sent_at)
        return True

    async def _deliver(
        self,
        channel: NotificationChannel,
        payload: NotificationPayload,
    ) -> None:
        transport: Transport | None = self._transports.get(channel.type)
        if transport is None:
            raise ChannelSendError(
                f"No transport registered for channel type {channel.type.value}"
            )

        if inspect.iscoroutinefunction(transport.send):
            attempt = transport.send(channel.config, payload)
        else:
            attempt = asyncio.to_thread(transport.send, channel.config, payload)

        if self._send_timeout is None:
            await attempt
            return
        try:
            await asyncio.wait_for(attempt, timeout=self._send_timeout)
        except TimeoutError as exc:
            raise ChannelSendError(
                f"Send timed out after {self._send_timeout:g}s"
            ) from exc

    async def test_channel(self, channel_id: str) -> bool:
        """Run the full send path with a synthetic low-severity payload."""
        channel = self._registry.get(channel_id)
        if channel is None:
            return False

        payload = NotificationPayload(
            title="Test Alert",
            message="This is a test alert to verify channel configuration.",
            severity=Severity.LOW,
            timestamp=datetime.fromtimestamp(self._clock(), tz=UTC),
            metadata={"test": True},
        )
        return await self.send_to_channel(channel, payload)
