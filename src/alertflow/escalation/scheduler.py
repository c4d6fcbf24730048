"""Timed escalation of unresolved alerts.

When an alert is created under an enabled policy, every policy step is
queued at ``created_at + delay_minutes``. A firing step:

1. is skipped if its condition is false or raises (later steps unaffected);
2. otherwise sends an escalated payload directly to the enabled channels
   it names, without the severity-filter / rate-limit gate used for the
   first dispatch.

Resolving an alert cancels all of its pending steps synchronously. No step
fires after cancellation: each step is popped from the timer queue
individually, right before it runs.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from alertflow.channels.dispatcher import ChannelDispatcher
from alertflow.escalation.timers import TimerQueue
from alertflow.models import (
    Alert,
    EscalationPolicy,
    EscalationStep,
    NotificationPayload,
)

logger = logging.getLogger(__name__)


class EscalationConditionError(Exception):
    """Raised (and contained) when an escalation step condition fails."""


@dataclass(frozen=True)
class PendingStep:
    alert: Alert
    payload: NotificationPayload
    policy_id: str
    step_index: int
    step: EscalationStep


def escalated_payload(
    payload: NotificationPayload, step_index: int, step: EscalationStep,
) -> NotificationPayload:
    return payload.model_copy(
        update={
            "title": f"[ESCALATION {step_index + 1}] {payload.title}",
            "message": (
                f"This alert has been escalated after {step.delay_minutes:g} "
                f"minutes. {payload.message}"
            ),
        },
    )


class EscalationScheduler:
    """Holds escalation policies and the per-alert queue of pending steps."""

    def __init__(
        self,
        dispatcher: ChannelDispatcher,
        clock: Callable[[], float] | None = None,
        timers: TimerQueue | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._clock = clock or time.time
        self._timers = timers or TimerQueue()
        self._lock = threading.Lock()
        self._policies: dict[str, EscalationPolicy] = {}

    @property
    def dispatcher(self) -> ChannelDispatcher:
        return self._dispatcher

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    def add_policy(self, policy: EscalationPolicy) -> None:
        with self._lock:
            self._policies[policy.id] = policy
        logger.info("Added escalation policy: %s (%s)", policy.id, policy.name)

    def remove_policy(self, policy_id: str) -> bool:
        with self._lock:
            removed = self._policies.pop(policy_id, None) is not None
        if removed:
            logger.info("Removed escalation policy: %s", policy_id)
        return removed

    def get_policy(self, policy_id: str) -> EscalationPolicy | None:
        return self._policies.get(policy_id)

    def get_policies(self) -> list[EscalationPolicy]:
        return list(self._policies.values())

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule(
        self,
        alert: Alert,
        payload: NotificationPayload,
        policy_id: str,
    ) -> int:
        """Queue every step of *policy_id* for *alert*.

        Returns the number of steps queued (0 when the policy is missing,
        disabled or empty).
        """
        policy = self._policies.get(policy_id)
        if policy is None:
            logger.debug("No escalation policy %s for alert %s", policy_id, alert.id)
            return 0
        if not policy.enabled or not policy.steps:
            logger.debug("Escalation policy %s is inactive", policy_id)
            return 0

        base = alert.created_at.timestamp()
        for index, step in enumerate(policy.steps):
            self._timers.schedule(
                alert.id,
                base + step.delay_minutes * 60,
                PendingStep(
                    alert=alert,
                    payload=payload,
                    policy_id=policy.id,
                    step_index=index,
                    step=step,
                ),
            )

        logger.info(
            "Scheduled %d escalation step(s) for alert %s (policy %s)",
            len(policy.steps), alert.id, policy.id,
        )
        return len(policy.steps)

    def cancel(self, alert_id: str) -> int:
        """Cancel every pending step for *alert_id*."""
        cancelled = self._timers.cancel(alert_id)
        if cancelled:
            logger.info(
                "Cancelled %d pending escalation step(s) for alert %s",
                cancelled, alert_id,
            )
        return cancelled

    def pending_count(self, alert_id: str | None = None) -> int:
        return self._timers.pending(alert_id)

    def next_fire_at(self) -> float | None:
        return self._timers.next_fire_at()

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    async def fire_due(self, now: float | None = None) -> int:
        """Run every step due at *now*. Returns how many steps ran."""
        now = self._clock() if now is None else now
        fired = 0
        while (entry := self._timers.pop_due(now)) is not None:
            pending: PendingStep = entry.payload
            try:
                await self._fire(pending)
            except Exception:
                logger.exception(
                    "Escalation step %d for alert %s failed",
                    pending.step_index, pending.alert.id,
                )
            fired += 1
        return fired

    async def _fire(self, pending: PendingStep) -> None:
        alert = pending.alert
        if alert.resolved:
            return

        step = pending.step
        if step.condition is not None and not self._condition_holds(pending):
            logger.debug(
                "Skipping escalation step %d for alert %s: condition false",
                pending.step_index, alert.id,
            )
            return

        registry = self._dispatcher.registry
        channels = [
            channel
            for channel in (registry.get(cid) for cid in step.channel_ids)
            if channel is not None and channel.enabled
        ]
        if not channels:
            logger.info(
                "Escalation step %d for alert %s has no enabled channels",
                pending.step_index, alert.id,
            )
            return

        payload = escalated_payload(pending.payload, pending.step_index, step)
        results = await self._dispatcher.send_many(channels, payload)
        logger.info(
            "Escalation step %d for alert %s sent: %s",
            pending.step_index, alert.id, results,
        )

    @staticmethod
    def _condition_holds(pending: PendingStep) -> bool:
        try:
            return bool(pending.step.condition(pending.alert))  # type: ignore[misc]
        except Exception as exc:
            error = EscalationConditionError(
                f"Condition for escalation step {pending.step_index} of "
                f"policy {pending.policy_id} raised: {exc}"
            )
            logger.warning("%s; skipping step", error)
            return False
