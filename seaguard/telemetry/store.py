"""
seaguard/telemetry/store.py
───────────────────────────
TelemetryStore: the persistence boundary of the core.

What this is
─────────────
Every component reads and writes through this interface: the ping log,
the net registry, prediction history, alerts and recovery records. The
concrete storage engine is not the core's business; `TelemetryStore` is
the contract and `InMemoryTelemetryStore` is the reference
implementation used by the entry point and the test-suite.

The one non-trivial operation
──────────────────────────────
set_net_status(net_id, expected_prior, new) is a compare-and-set. It
succeeds only if the stored status still equals `expected_prior`. This is
what lets a manual recovery confirmation win against a classification
sweep that read the status before the recovery landed: the sweep's write
names the stale prior status and is refused.

Concurrency
────────────
All methods are coroutines. InMemoryTelemetryStore serialises mutations
behind one asyncio.Lock; reads hand out deep copies so callers cannot
mutate stored state behind the compare-and-set's back.
"""

from __future__ import annotations

import abc
import asyncio
import bisect
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from seaguard.shared.models import (
    Alert,
    GeoPoint,
    Net,
    NetStatus,
    Ping,
    Prediction,
    RecoveryRecord,
)

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """
    Raised when the store cannot complete an operation.

    Fatal for the operation in progress. The fleet scheduler isolates it to
    the net being processed and carries on with the others.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class UnknownNetError(StoreError):
    """The referenced net_id was never registered."""

    def __init__(self, net_id: str) -> None:
        self.net_id = net_id
        super().__init__(f"Unknown net {net_id!r}")


class DuplicateNetError(StoreError):
    """A net with this net_id or qr_code_id already exists."""


class TelemetryStore(abc.ABC):
    """Abstract persistence interface. See module docstring."""

    # ── Ping log ──────────────────────────────────────────────────────────────

    @abc.abstractmethod
    async def append_ping(self, ping: Ping) -> bool:
        """Append a ping. False (no-op) if (net_id, timestamp, source) exists."""

    @abc.abstractmethod
    async def get_pings_in_window(self, net_id: str, start: datetime, end: datetime) -> List[Ping]:
        """Pings with start <= timestamp <= end, oldest first."""

    @abc.abstractmethod
    async def get_latest_pings(self, net_id: str, limit: int = 10) -> List[Ping]:
        """Newest pings first, at most `limit`."""

    # ── Net registry ──────────────────────────────────────────────────────────

    @abc.abstractmethod
    async def register_net(self, net: Net) -> Net: ...

    @abc.abstractmethod
    async def get_net(self, net_id: str) -> Optional[Net]: ...

    @abc.abstractmethod
    async def get_net_by_qr_code(self, qr_code_id: str) -> Optional[Net]: ...

    @abc.abstractmethod
    async def list_nets(self, statuses: Optional[Iterable[NetStatus]] = None) -> List[Net]: ...

    @abc.abstractmethod
    async def set_net_status(
        self, net_id: str, expected_prior: NetStatus, new_status: NetStatus
    ) -> bool:
        """Compare-and-set on status. True if written, False on mismatch."""

    @abc.abstractmethod
    async def update_net(self, net_id: str, **fields) -> Net:
        """Update descriptive fields. Refuses to touch `status`."""

    # ── Predictions ───────────────────────────────────────────────────────────

    @abc.abstractmethod
    async def save_prediction(self, prediction: Prediction) -> Prediction: ...

    @abc.abstractmethod
    async def get_latest_prediction(self, net_id: str) -> Optional[Prediction]: ...

    @abc.abstractmethod
    async def get_predictions(self, net_id: str) -> List[Prediction]: ...

    # ── Alerts ────────────────────────────────────────────────────────────────

    @abc.abstractmethod
    async def save_alert(self, alert: Alert) -> Alert: ...

    @abc.abstractmethod
    async def get_alert(self, alert_id: str) -> Optional[Alert]: ...

    @abc.abstractmethod
    async def get_open_alert(self, net_id: str) -> Optional[Alert]: ...

    @abc.abstractmethod
    async def list_alerts(self, net_id: Optional[str] = None, open_only: bool = False) -> List[Alert]: ...

    # ── Recoveries ────────────────────────────────────────────────────────────

    @abc.abstractmethod
    async def save_recovery(self, record: RecoveryRecord) -> RecoveryRecord: ...

    @abc.abstractmethod
    async def get_recovery(self, net_id: str) -> Optional[RecoveryRecord]: ...

    # ── Health ────────────────────────────────────────────────────────────────

    @abc.abstractmethod
    async def ping(self) -> bool:
        """Cheap liveness probe used by the health check."""


class InMemoryTelemetryStore(TelemetryStore):
    """
    Dict-backed TelemetryStore.

    Pings are kept per net in a list sorted by timestamp (bisect insertion),
    so late-arriving pings land in order and window reads are two bisects.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()

        self._nets: Dict[str, Net] = {}
        self._qr_index: Dict[str, str] = {}

        self._pings: Dict[str, List[Ping]] = defaultdict(list)
        self._ping_times: Dict[str, List[datetime]] = defaultdict(list)
        self._ping_keys: Set[tuple] = set()

        self._predictions: Dict[str, List[Prediction]] = defaultdict(list)

        self._alerts: Dict[str, Alert] = {}
        self._open_alert_by_net: Dict[str, str] = {}

        self._recoveries: Dict[str, RecoveryRecord] = {}

    # ── Ping log ──────────────────────────────────────────────────────────────

    async def append_ping(self, ping: Ping) -> bool:
        async with self._lock:
            net = self._require_net(ping.net_id)
            if ping.dedup_key in self._ping_keys:
                return False

            times = self._ping_times[ping.net_id]
            idx = bisect.bisect_right(times, ping.timestamp)
            times.insert(idx, ping.timestamp)
            self._pings[ping.net_id].insert(idx, ping)
            self._ping_keys.add(ping.dedup_key)

            # Only a ping newer than anything seen moves the last known position
            if net.last_ping_at is None or ping.timestamp >= net.last_ping_at:
                net.last_ping_at = ping.timestamp
                net.last_known_location = GeoPoint(latitude=ping.latitude, longitude=ping.longitude)
            return True

    async def get_pings_in_window(self, net_id: str, start: datetime, end: datetime) -> List[Ping]:
        times = self._ping_times.get(net_id, [])
        lo = bisect.bisect_left(times, start)
        hi = bisect.bisect_right(times, end)
        return list(self._pings.get(net_id, [])[lo:hi])

    async def get_latest_pings(self, net_id: str, limit: int = 10) -> List[Ping]:
        pings = self._pings.get(net_id, [])
        if limit <= 0:
            return []
        return list(reversed(pings[-limit:]))

    # ── Net registry ──────────────────────────────────────────────────────────

    async def register_net(self, net: Net) -> Net:
        async with self._lock:
            if net.net_id in self._nets:
                raise DuplicateNetError(f"Net {net.net_id!r} is already registered")
            if net.qr_code_id in self._qr_index:
                raise DuplicateNetError(
                    f"QR code {net.qr_code_id!r} is already bound to net "
                    f"{self._qr_index[net.qr_code_id]!r}"
                )
            stored = net.model_copy(deep=True)
            self._nets[net.net_id] = stored
            self._qr_index[net.qr_code_id] = net.net_id
            return stored.model_copy(deep=True)

    async def get_net(self, net_id: str) -> Optional[Net]:
        net = self._nets.get(net_id)
        return net.model_copy(deep=True) if net is not None else None

    async def get_net_by_qr_code(self, qr_code_id: str) -> Optional[Net]:
        net_id = self._qr_index.get(qr_code_id)
        if net_id is None:
            return None
        return await self.get_net(net_id)

    async def list_nets(self, statuses: Optional[Iterable[NetStatus]] = None) -> List[Net]:
        wanted = set(statuses) if statuses is not None else None
        return [
            net.model_copy(deep=True)
            for net in self._nets.values()
            if wanted is None or net.status in wanted
        ]

    async def set_net_status(
        self, net_id: str, expected_prior: NetStatus, new_status: NetStatus
    ) -> bool:
        async with self._lock:
            net = self._require_net(net_id)
            if net.status != expected_prior:
                logger.debug(
                    "CAS refused for %s: expected=%s actual=%s new=%s",
                    net_id, expected_prior.value, net.status.value, new_status.value,
                )
                return False
            net.status = new_status
            net.status_changed_at = datetime.utcnow()
            return True

    async def update_net(self, net_id: str, **fields) -> Net:
        if "status" in fields:
            raise StoreError("status can only change through set_net_status()")
        async with self._lock:
            net = self._require_net(net_id)
            for name, value in fields.items():
                if name not in Net.model_fields:
                    raise StoreError(f"Net has no field {name!r}")
                setattr(net, name, value)
            return net.model_copy(deep=True)

    # ── Predictions ───────────────────────────────────────────────────────────

    async def save_prediction(self, prediction: Prediction) -> Prediction:
        async with self._lock:
            self._require_net(prediction.net_id)
            history = self._predictions[prediction.net_id]
            keys = [p.timestamp for p in history]
            history.insert(bisect.bisect_right(keys, prediction.timestamp), prediction.model_copy(deep=True))
            return prediction

    async def get_latest_prediction(self, net_id: str) -> Optional[Prediction]:
        history = self._predictions.get(net_id)
        if not history:
            return None
        return history[-1].model_copy(deep=True)

    async def get_predictions(self, net_id: str) -> List[Prediction]:
        return [p.model_copy(deep=True) for p in self._predictions.get(net_id, [])]

    # ── Alerts ────────────────────────────────────────────────────────────────

    async def save_alert(self, alert: Alert) -> Alert:
        async with self._lock:
            self._require_net(alert.net_id)
            open_id = self._open_alert_by_net.get(alert.net_id)
            if alert.is_open:
                if open_id is not None and open_id != alert.alert_id:
                    raise StoreError(
                        f"Net {alert.net_id!r} already has open alert {open_id!r}"
                    )
                self._open_alert_by_net[alert.net_id] = alert.alert_id
            elif open_id == alert.alert_id:
                del self._open_alert_by_net[alert.net_id]
            self._alerts[alert.alert_id] = alert.model_copy(deep=True)
            return alert

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        alert = self._alerts.get(alert_id)
        return alert.model_copy(deep=True) if alert is not None else None

    async def get_open_alert(self, net_id: str) -> Optional[Alert]:
        alert_id = self._open_alert_by_net.get(net_id)
        if alert_id is None:
            return None
        return await self.get_alert(alert_id)

    async def list_alerts(self, net_id: Optional[str] = None, open_only: bool = False) -> List[Alert]:
        alerts = [
            a for a in self._alerts.values()
            if (net_id is None or a.net_id == net_id) and (not open_only or a.is_open)
        ]
        alerts.sort(key=lambda a: a.triggered_at)
        return [a.model_copy(deep=True) for a in alerts]

    # ── Recoveries ────────────────────────────────────────────────────────────

    async def save_recovery(self, record: RecoveryRecord) -> RecoveryRecord:
        async with self._lock:
            self._require_net(record.net_id)
            self._recoveries[record.net_id] = record.model_copy(deep=True)
            return record

    async def get_recovery(self, net_id: str) -> Optional[RecoveryRecord]:
        record = self._recoveries.get(net_id)
        return record.model_copy(deep=True) if record is not None else None

    async def ping(self) -> bool:
        return True

    # ── Private helpers ───────────────────────────────────────────────────────

    def _require_net(self, net_id: str) -> Net:
        net = self._nets.get(net_id)
        if net is None:
            raise UnknownNetError(net_id)
        return net

    def __repr__(self) -> str:
        return (
            f"InMemoryTelemetryStore("
            f"nets={len(self._nets)}, "
            f"pings={len(self._ping_keys)}, "
            f"alerts={len(self._alerts)})"
        )
