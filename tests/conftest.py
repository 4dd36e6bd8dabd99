"""
tests/conftest.py
──────────────────
Shared fakes and fixtures.

FakeOracle      — scripted PredictionOracle. Per-net queues of responses
                  (floats, OracleResponse objects or exceptions to raise);
                  optional gate (asyncio.Event) to hold calls in flight.
RecordingSleep  — drop-in for asyncio.sleep that records requested delays
                  and returns immediately.
RecordingChannel — NotificationChannel that keeps every delivered alert.

Pings are seeded relative to the real clock (the `now` fixture), because
the scheduler path reads "now" itself.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from datetime import datetime, timedelta
from typing import Deque, Dict, List, Optional

import pytest

from seaguard.control_plane.alerts import NotificationChannel
from seaguard.control_plane.monitoring_service import MonitoringService
from seaguard.control_plane.oracle import (
    OracleDriftRequest,
    OracleRequest,
    OracleResponse,
    PredictionOracle,
)
from seaguard.control_plane.retry import RetryPolicy
from seaguard.shared.config import SeaGuardSettings
from seaguard.shared.geo import project_position
from seaguard.shared.models import Alert, GeoPoint, HorizonForecast, Net, Ping, PingSource
from seaguard.telemetry.store import InMemoryTelemetryStore


# ─────────────────────────────────────────────────────────────────────────────
# Fakes
# ─────────────────────────────────────────────────────────────────────────────

class FakeOracle(PredictionOracle):
    """
    Scripted oracle.

        oracle.script("NET-1", 0.9)                         # next answer
        oracle.script("NET-1", OracleTimeoutError("slow"))  # next raises
        oracle.default_confidence = 0.1                     # when the queue is empty
        oracle.gate = asyncio.Event()                       # hold calls until set()
        oracle.gated_nets = {"NET-1"}                       # ...only for these nets
    """

    def __init__(self, default_confidence: float = 0.1) -> None:
        self.default_confidence = default_confidence
        self.gate: Optional[asyncio.Event] = None
        self.gated_nets: Optional[set] = None
        self.calls: List[OracleRequest] = []
        self.drift_calls: List[OracleDriftRequest] = []
        self.cancelled = 0
        self.closed = False
        self.health = {"status": "healthy"}
        self._script: Dict[str, Deque] = defaultdict(deque)
        self._drift_script: Dict[str, Deque] = defaultdict(deque)

    def script(self, net_id: str, *items) -> None:
        self._script[net_id].extend(items)

    def script_drift(self, net_id: str, *items) -> None:
        self._drift_script[net_id].extend(items)

    async def classify(self, request: OracleRequest) -> OracleResponse:
        self.calls.append(request)
        await self._hold(request.net_id)
        item = self._script[request.net_id].popleft() if self._script[request.net_id] else self.default_confidence
        return self._resolve(item)

    async def forecast_drift(self, request: OracleDriftRequest) -> OracleResponse:
        self.drift_calls.append(request)
        await self._hold(request.net_id)
        queue = self._drift_script[request.net_id]
        if queue:
            return self._resolve(queue.popleft())
        return OracleResponse(
            confidence=0.9,
            label="drifting",
            horizon_forecasts=[
                HorizonForecast(horizon_hours=h, location=GeoPoint(latitude=10.0, longitude=20.0))
                for h in request.horizons_hours
            ],
        )

    async def health_check(self) -> dict:
        return dict(self.health)

    async def aclose(self) -> None:
        self.closed = True

    async def _hold(self, net_id: str) -> None:
        if self.gate is None or (self.gated_nets is not None and net_id not in self.gated_nets):
            return
        try:
            await self.gate.wait()
        except asyncio.CancelledError:
            self.cancelled += 1
            raise

    @staticmethod
    def _resolve(item) -> OracleResponse:
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, OracleResponse):
            return item
        return OracleResponse(confidence=float(item), label="scripted")


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class RecordingChannel(NotificationChannel):
    def __init__(self, name: str = "recording", fail: bool = False) -> None:
        self.name = name
        self.fail = fail
        self.delivered: List[Alert] = []

    async def deliver(self, alert: Alert) -> None:
        if self.fail:
            raise RuntimeError(f"{self.name} transport down")
        self.delivered.append(alert)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def make_net(net_id: str = "NET-001", lat: float = 54.0, lon: float = 7.0) -> Net:
    return Net(
        net_id=net_id,
        qr_code_id=f"QR-{net_id}",
        owner_id="owner-1",
        deployment_location=GeoPoint(latitude=lat, longitude=lon),
    )


def drifting_pings(
    net_id: str,
    end: datetime,
    count: int = 8,
    step_minutes: float = 60.0,
    north_kmh: float = 1.0,
    east_kmh: float = 0.5,
    start: tuple = (54.0, 7.0),
    source: PingSource = PingSource.LORA,
) -> List[Ping]:
    """`count` pings ending at `end`, moving at a constant velocity."""
    pings = []
    for i in range(count):
        hours = i * step_minutes / 60.0
        lat, lon = project_position(start[0], start[1], north_kmh * hours, east_kmh * hours)
        ts = end - timedelta(minutes=step_minutes * (count - 1 - i))
        pings.append(Ping(net_id=net_id, latitude=lat, longitude=lon, timestamp=ts, source=source))
    return pings


async def seed_net(store: InMemoryTelemetryStore, net_id: str, now: datetime, pings: int = 8) -> Net:
    net = await store.register_net(make_net(net_id))
    for ping in drifting_pings(net_id, end=now - timedelta(minutes=1), count=pings):
        await store.append_ping(ping)
    return net


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def now() -> datetime:
    return datetime.utcnow().replace(microsecond=0)


@pytest.fixture
def settings() -> SeaGuardSettings:
    return SeaGuardSettings(
        batch_processing_interval_ms=20,
        drift_prediction_interval_ms=20,
        shutdown_grace_period_s=0.5,
    )


@pytest.fixture
def store() -> InMemoryTelemetryStore:
    return InMemoryTelemetryStore()


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def retry_policy(settings, sleep) -> RetryPolicy:
    return RetryPolicy.from_settings(settings.oracle, sleep=sleep)


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def service(store, oracle, settings, retry_policy, channel) -> MonitoringService:
    return MonitoringService(store, oracle, settings, retry_policy=retry_policy, channels=[channel])
