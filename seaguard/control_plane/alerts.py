"""
seaguard/control_plane/alerts.py
─────────────────────────────────
AlertDispatcher: turns committed status transitions into alert records and
hands them to the notification channels.

Rules
──────
  Escalation (active→ghost_suspected, active→ghost_confirmed,
  ghost_suspected→ghost_confirmed):
      open alert exists → update its new_status / confidence in place
      no open alert     → create one
  De-escalation or recovery:
      close the open alert, if any (acknowledge or resolve, per
      settings.alert_closure). Never create one.

So there is never more than one open alert per net. Work for a single net
is serialised behind a per-net lock, so two transitions for the same net
landing back to back cannot both decide "no open alert yet".

Delivery
─────────
Each enabled channel gets the alert in its own background task. Delivery
is fire-and-forget with respect to the state machine: a channel that
raises is logged and counted, nothing else. drain() waits for outstanding
deliveries (shutdown, tests).
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Set

from seaguard.shared.config import SeaGuardSettings
from seaguard.shared.models import Alert, AlertClosure, StatusTransition
from seaguard.telemetry.store import TelemetryStore

logger = logging.getLogger(__name__)


class NotificationChannel(abc.ABC):
    """A delivery route for alerts (mail, SMS, push, ...)."""

    name: str = "channel"

    @abc.abstractmethod
    async def deliver(self, alert: Alert) -> None:
        """Send the alert. May raise; the dispatcher logs and moves on."""


class LoggingChannel(NotificationChannel):
    """
    Writes alerts to the log.

    Stands in for a toggled-on channel (email / sms / push) until a real
    transport is registered under the same name.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._log = logging.getLogger(f"{__name__}.{name}")

    async def deliver(self, alert: Alert) -> None:
        self._log.warning(
            "[%s] Net %s: %s -> %s (confidence=%s)",
            self.name.upper(),
            alert.net_id,
            alert.previous_status.value,
            alert.new_status.value,
            f"{alert.confidence:.2f}" if alert.confidence is not None else "n/a",
        )


def channels_from_settings(settings: SeaGuardSettings) -> List[NotificationChannel]:
    toggles = settings.alerts
    enabled = [
        ("email", toggles.email_enabled),
        ("sms", toggles.sms_enabled),
        ("push", toggles.push_enabled),
    ]
    return [LoggingChannel(name) for name, on in enabled if on]


class AlertDispatcher:
    """
    Args:
        store:    TelemetryStore for alert persistence.
        settings: reads alert_closure and the per-channel toggles.
        channels: Explicit channel list. None → built from settings toggles.
    """

    def __init__(
        self,
        store: TelemetryStore,
        settings: SeaGuardSettings,
        channels: Optional[List[NotificationChannel]] = None,
    ) -> None:
        self._store = store
        self._closure = settings.alert_closure
        self._channels: Dict[str, NotificationChannel] = {}
        for channel in channels if channels is not None else channels_from_settings(settings):
            self.register_channel(channel)

        self._net_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._pending: Set[asyncio.Task] = set()
        self._delivered = 0
        self._delivery_failures = 0

    # ── Channels ───────────────────────────────────────────────────────────────

    def register_channel(self, channel: NotificationChannel) -> None:
        """Add or replace (by name) a delivery channel."""
        self._channels[channel.name] = channel

    def remove_channel(self, name: str) -> None:
        self._channels.pop(name, None)

    @property
    def channel_names(self) -> List[str]:
        return sorted(self._channels)

    # ── Transition handling ───────────────────────────────────────────────────

    async def on_transition(self, transition: StatusTransition) -> Optional[Alert]:
        """
        React to one committed transition.

        Returns the created/updated alert for escalations, the closed alert
        for de-escalations and recovery, or None when there was nothing to do.
        """
        async with self._net_locks[transition.net_id]:
            if transition.is_escalation:
                alert = await self._raise_or_update(transition)
                self._deliver(alert)
                return alert
            return await self._close_open_alert(transition)

    async def acknowledge(self, alert_id: str) -> Optional[Alert]:
        """Operator acknowledgement. Returns None for an unknown alert_id."""
        alert = await self._store.get_alert(alert_id)
        if alert is None:
            return None
        async with self._net_locks[alert.net_id]:
            alert = await self._store.get_alert(alert_id)
            if alert.acknowledged:
                return alert
            alert.acknowledged = True
            alert.updated_at = datetime.utcnow()
            await self._store.save_alert(alert)
            logger.info("Alert %s for net %s acknowledged", alert.alert_id, alert.net_id)
            return alert

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight deliveries (bounded by `timeout` seconds)."""
        if not self._pending:
            return
        done, pending = await asyncio.wait(set(self._pending), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Abandoned %d alert deliveries after %.1fs", len(pending), timeout or 0.0)

    def get_metrics(self) -> dict:
        return {
            "channels": self.channel_names,
            "delivered": self._delivered,
            "delivery_failures": self._delivery_failures,
            "pending_deliveries": len(self._pending),
        }

    # ── Private helpers ───────────────────────────────────────────────────────

    async def _raise_or_update(self, transition: StatusTransition) -> Alert:
        existing = await self._store.get_open_alert(transition.net_id)
        if existing is not None:
            existing.new_status = transition.new_status
            existing.confidence = transition.confidence
            existing.updated_at = transition.occurred_at
            existing.escalation_count += 1
            await self._store.save_alert(existing)
            logger.info(
                "Alert %s for net %s updated -> %s",
                existing.alert_id, transition.net_id, transition.new_status.value,
            )
            return existing

        alert = Alert(
            net_id=transition.net_id,
            triggered_at=transition.occurred_at,
            updated_at=transition.occurred_at,
            previous_status=transition.previous_status,
            new_status=transition.new_status,
            confidence=transition.confidence,
        )
        await self._store.save_alert(alert)
        logger.info(
            "Alert %s raised for net %s: %s -> %s",
            alert.alert_id, alert.net_id, alert.previous_status.value, alert.new_status.value,
        )
        return alert

    async def _close_open_alert(self, transition: StatusTransition) -> Optional[Alert]:
        alert = await self._store.get_open_alert(transition.net_id)
        if alert is None:
            return None
        now = transition.occurred_at
        if self._closure is AlertClosure.ACKNOWLEDGE:
            alert.acknowledged = True
        else:
            alert.resolved = True
            alert.resolved_at = now
        alert.updated_at = now
        await self._store.save_alert(alert)
        logger.info(
            "Alert %s for net %s closed (%s) on %s -> %s",
            alert.alert_id, alert.net_id, self._closure.value,
            transition.previous_status.value, transition.new_status.value,
        )
        return alert

    def _deliver(self, alert: Alert) -> None:
        for channel in list(self._channels.values()):
            task = asyncio.get_running_loop().create_task(
                self._deliver_one(channel, alert.model_copy(deep=True))
            )
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver_one(self, channel: NotificationChannel, alert: Alert) -> None:
        try:
            await channel.deliver(alert)
            self._delivered += 1
        except Exception:
            self._delivery_failures += 1
            logger.exception("Delivery of alert %s via %s failed", alert.alert_id, channel.name)
